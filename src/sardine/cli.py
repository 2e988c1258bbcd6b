"""
Sardine's command line interface. Commands are task names: `sardine build`,
`sardine serve`, and so on.
"""
from __future__ import annotations

import argparse
import importlib
import runpy
import sys
import typing as t
from pathlib import Path

from .core import Stage, StageRegistry
from .errors import DependencyFailed, StageUnavailableError
from .pretty_utils import print_with_style
from .recipe import InputBuildSettings, SiteRecipe, resolve_settings
from .tasks import Orchestrator, TaskGraph

if t.TYPE_CHECKING:
    from .core import StageFactory
    from .tasks import BuildReport


DEFAULT_CONFIG = Path('sardine_config.py')


def load_config(config_file: Path | None, module: t.Any = None):
    """
    Read `SETTINGS` and `STAGES` from a config file or an imported module.
    Without either, `sardine_config.py` in the current directory is used if
    it exists.
    """
    if module is not None:
        namespace = vars(module)
    else:
        if config_file is None and DEFAULT_CONFIG.exists():
            config_file = DEFAULT_CONFIG
        namespace = runpy.run_path(str(config_file)) if config_file else {}

    settings: InputBuildSettings | None = namespace.get('SETTINGS')
    stages: dict[str, StageFactory] | None = namespace.get('STAGES')
    return settings, stages


def parse_args(arguments: list[str] | None = None):
    parser = argparse.ArgumentParser(prog='sardine', description='Build and serve a static site.')
    parser.add_argument('task',
                        nargs='?',
                        default='default',
                        help='task to run, e.g. clean, build, serve or serve:dist (default: %(default)s)')

    group = parser.add_mutually_exclusive_group()
    group.add_argument('-c', '--config',
                       help='file path to a config file',
                       type=Path,
                       dest='config_file')
    group.add_argument('-m',
                       help='import path of a config module',
                       type=importlib.import_module,
                       dest='module')

    parser.add_argument('--source',
                        help='directory holding templates, styles, images and static files',
                        type=Path,
                        dest='source_dir')
    parser.add_argument('--working',
                        help='directory for compiled but unoptimized files',
                        type=Path,
                        dest='working_dir')
    parser.add_argument('--output',
                        help='directory for the final optimized build',
                        type=Path,
                        dest='output_dir')

    cache_group = parser.add_mutually_exclusive_group()
    cache_group.add_argument('--cache-dir',
                             help='directory for the transform cache',
                             type=Path)
    cache_group.add_argument('--no-cache',
                             help='disable the transform cache',
                             action='store_true')

    parser.add_argument('-p', '--port',
                        help='port to serve from',
                        type=int)
    parser.add_argument('--strict',
                        help='fail a task when any of its files fails a stage',
                        action=argparse.BooleanOptionalAction,
                        default=None)
    parser.add_argument('--list',
                        help='list tasks and their dependencies instead of running one',
                        action='store_true',
                        dest='list_tasks')
    parser.add_argument('--audit-stages',
                        help='show which stages are available instead of running a task',
                        action='store_true')
    return parser.parse_args(arguments)


def pprint_stage(stage: t.Type[Stage]):
    """
    Prettily display dependency information for the given Stage class.
    """
    missing = [str(d) for d in stage.get_dependencies() if not d.satisfied]
    if missing:
        text = ', '.join(missing)
        print_with_style(f'✗ {stage.stage_id} ({stage.__name__}, missing: {text})', style='red')
    else:
        print_with_style(f'✓ {stage.stage_id} ({stage.__name__})', style='green')


def pprint_missing_deps(error: StageUnavailableError):
    """
    Prettily display an error for a Stage with missing dependencies.
    """
    stage = error.stage
    print_with_style(
        f'Stage {stage.stage_id!r} is unavailable due to missing dependencies!',
        file='stderr',
        style='red'
    )
    for dep in stage.get_dependencies():
        if dep.satisfied:
            print_with_style(f'✓ {dep}', style='green')
        else:
            print_with_style(f'✗ {dep}: {dep.install_hint}', style='red')


def pprint_tasks(graph: TaskGraph):
    for task in graph:
        deps = f' → {", ".join(task.dependencies)}' if task.dependencies else ''
        print_with_style(f'{task.name}{deps}', style='bold', end='')
        print_with_style(f'  {task.description}' if task.description else '')


def summarize(report: BuildReport):
    """
    Print the final verdict for a run, naming every failure.
    """
    if report.ok:
        print_with_style(f"✓ '{report.task}' succeeded", style='green')
        return
    for error in report.root_causes():
        print_with_style(f'  {error}', file='stderr', style='red')
    not_run = [name for name, error in report.errors.items() if isinstance(error, DependencyFailed)]
    if not_run:
        print_with_style(f'  not run: {", ".join(not_run)}', file='stderr', style='yellow')
    print_with_style(f"✗ '{report.task}' failed", file='stderr', style='red')


def main(arguments: list[str] | None = None):
    """
    Sardine main function. Builds the site's tasks from a config file and
    command line arguments, then runs the requested task, staying up while it
    serves.
    """
    args = parse_args(arguments)
    settings, stages = load_config(args.config_file, args.module)
    resolved = resolve_settings(
        settings,
        source_dir=args.source_dir,
        working_dir=args.working_dir,
        output_dir=args.output_dir,
        cache_dir=args.cache_dir,
        port=args.port,
        strict=args.strict,
    )
    if args.no_cache:
        resolved['cache_dir'] = None

    registry = StageRegistry.default()
    if stages:
        registry.update(stages)

    if args.audit_stages:
        all_stages = Stage.get_all_stages()
        print(f'Stages ({len(all_stages)})')
        for stage in all_stages:
            pprint_stage(stage)
        return

    graph = SiteRecipe(resolved, registry).graph()
    if args.list_tasks:
        pprint_tasks(graph)
        return

    with Orchestrator(graph, strict=resolved['strict'], max_workers=resolved['workers']) as orchestrator:
        report = orchestrator.run_task(args.task)
        summarize(report)
        if not report.ok:
            for error in report.root_causes():
                if isinstance(error, StageUnavailableError):
                    pprint_missing_deps(error)
            sys.exit(1)
        if orchestrator.serving:
            print_with_style('Press Ctrl+C to stop', style='cyan')
            try:
                orchestrator.wait()
            except KeyboardInterrupt:
                pass


if __name__ == '__main__':
    main()
