"""
The site build: settings, and the tasks which compile templates and styles,
optimize everything into a distributable tree, and serve either version.
"""
from __future__ import annotations

import gzip
import shutil
import typing as t
from pathlib import Path

from .cache import TransformCache
from .core import Pipeline, StageRegistry, pipeline_action
from .css import DEFAULT_BROWSERS
from .paths import GlobSet
from .pretty_utils import format_size, notify, print_with_style
from .server import DEFAULT_PORT, ServerSession
from .tasks import Task, TaskGraph
from .watcher import DEFAULT_DEBOUNCE, Watcher, WatchBinding

if t.TYPE_CHECKING:
    from .tasks import Orchestrator


class InputBuildSettings(t.TypedDict, total=False):
    """
    TypedDict for defining build settings in a Sardine config file.
    """
    source_dir: Path
    working_dir: Path
    output_dir: Path
    cache_dir: Path | None
    port: int
    stylesheet_name: str
    browsers: list[str]
    strict: bool
    debounce: float
    workers: int | None


class BuildSettings(t.TypedDict):
    """
    TypedDict for complete build settings, as used by the recipe.
    """
    source_dir: Path
    working_dir: Path
    output_dir: Path
    cache_dir: Path | None
    port: int
    stylesheet_name: str
    browsers: list[str]
    strict: bool
    debounce: float
    workers: int | None


DEFAULT_SETTINGS = BuildSettings(
    source_dir=Path('app'),
    working_dir=Path('.tmp'),
    output_dir=Path('dist'),
    cache_dir=Path('.sardine-cache'),
    port=DEFAULT_PORT,
    stylesheet_name='main.css',
    browsers=list(DEFAULT_BROWSERS),
    strict=True,
    debounce=DEFAULT_DEBOUNCE,
    workers=None,
)


def resolve_settings(settings: InputBuildSettings | None = None, **overrides: t.Any) -> BuildSettings:
    """
    Fill in defaults for anything missing from @settings. @overrides whose
    value is None are ignored.
    """
    resolved = dict(DEFAULT_SETTINGS)
    resolved.update(settings or {})
    resolved.update({k: v for k, v in overrides.items() if v is not None})
    for key in ('source_dir', 'working_dir', 'output_dir'):
        resolved[key] = Path(resolved[key])
    if resolved['cache_dir'] is not None:
        resolved['cache_dir'] = Path(resolved['cache_dir'])
    return t.cast(BuildSettings, resolved)


def report_sizes(directory: Path, title: str = 'build'):
    """
    Print the total size of everything below @directory, raw and gzipped.
    Returns the two totals.
    """
    total = 0
    gzipped = 0
    paths = sorted(directory.rglob('*')) if directory.is_dir() else []
    for path in paths:
        if path.is_file():
            data = path.read_bytes()
            total += len(data)
            gzipped += len(gzip.compress(data))
    print_with_style(
        f"{title} all files {format_size(total)} ({format_size(gzipped)} gzipped)",
        style='bold'
    )
    return total, gzipped


class SiteRecipe:
    """
    Declares the site's tasks over @settings. Stages come from @registry, so
    tests (or config files) can swap any of them out.
    """
    def __init__(self,
                 settings: BuildSettings,
                 registry: StageRegistry | None = None,
                 cache: TransformCache | None = None):
        self.settings = settings
        self.registry = registry or StageRegistry.default()
        if cache is None and settings['cache_dir'] is not None:
            cache = TransformCache(settings['cache_dir'])
        self.cache = cache

    @property
    def source(self):
        return self.settings['source_dir']

    @property
    def working(self):
        return self.settings['working_dir']

    @property
    def output(self):
        return self.settings['output_dir']

    def stage(self, stage_id: str, **config: t.Any):
        return self.registry.create(stage_id, **config)

    def pipeline(self, name: str, inputs: GlobSet, output_dir: Path, stages, cached: bool = False):
        return Pipeline(
            name,
            inputs,
            output_dir,
            stages,
            cache=self.cache if cached else None,
            max_workers=self.settings['workers'],
        )

    def notifying(self, pipeline: Pipeline, title: str, message: str):
        """
        Task action running @pipeline and showing a notice if every file made
        it through.
        """
        run_pipeline = pipeline_action(pipeline)

        def action(orchestrator: Orchestrator):
            result = run_pipeline(orchestrator)
            if result.ok:
                notify(title, message, 'Compile')
            return result
        return action

    # Pipelines

    def templates_pipeline(self):
        templates = self.source / 'templates'
        return self.pipeline(
            'templates',
            GlobSet(templates, '*.jinja'),
            self.working,
            [self.stage('jinja', search_path=templates)],
        )

    def styles_pipeline(self):
        styles = self.source / 'styles'
        return self.pipeline(
            'styles',
            GlobSet(styles, ['*.scss', '!_*.scss']),
            self.working / 'styles',
            [
                self.stage('sass', include_paths=[styles]),
                self.stage('autoprefix', browsers_list=self.settings['browsers']),
                self.stage('rename', name=self.settings['stylesheet_name']),
            ],
        )

    def html_pipeline(self):
        return self.pipeline(
            'html',
            GlobSet(self.working, '**/*.*'),
            self.output,
            [
                self.stage('bundle', search_path=self.working),
                self.stage('cssmin', browsers_list=self.settings['browsers']),
                self.stage('jsmin'),
                self.stage('htmlmin'),
            ],
        )

    def images_pipeline(self):
        return self.pipeline(
            'images',
            GlobSet(self.source / 'images', '**/*'),
            self.output / 'images',
            [self.stage('imagemin')],
            cached=True,
        )

    def extras_pipeline(self):
        return self.pipeline(
            'extras',
            GlobSet(self.source, ['*.*', '!*.html'], dot=True),
            self.output,
            [self.stage('copy')],
        )

    # Side-effect tasks

    def clean(self, _orchestrator: Orchestrator):
        """
        Delete the working and output directories.
        """
        for directory in (self.working, self.output):
            if directory.exists():
                shutil.rmtree(directory)

    def build(self, _orchestrator: Orchestrator):
        report_sizes(self.output)
        notify('PRODUCTION', 'Created optimized version of project', 'Compile')

    def watch_bindings(self):
        return [
            WatchBinding(self.source, '*.html', reload='full'),
            WatchBinding(self.source, 'templates/**/*.jinja', task='templates', reload='full'),
            WatchBinding(self.source, 'styles/**/*.scss', task='styles', reload='css'),
        ]

    def serve(self, orchestrator: Orchestrator):
        """
        Serve the working files and sources with live reload, re-running
        tasks as sources change.
        """
        session = orchestrator.keep_alive(
            ServerSession([self.working, self.source], self.settings['port'])
        )
        orchestrator.keep_alive(
            Watcher(session, orchestrator, self.watch_bindings(), self.settings['debounce'])
        )

    def serve_dist(self, orchestrator: Orchestrator):
        """
        Serve the optimized build.
        """
        orchestrator.keep_alive(
            ServerSession([self.output], self.settings['port'], live_reload=False)
        )

    def tasks(self) -> list[Task]:
        return [
            Task('clean', self.clean,
                 description='Delete the working and output directories'),
            Task('templates',
                 self.notifying(self.templates_pipeline(), 'TEMPLATES', 'Your templates were generated'),
                 ['clean'],
                 'Compile templates into HTML'),
            Task('styles',
                 self.notifying(self.styles_pipeline(), 'SCSS', 'Your stylesheet was generated'),
                 ['clean'],
                 'Compile and prefix stylesheets'),
            Task('html', pipeline_action(self.html_pipeline()), ['templates', 'styles'],
                 'Bundle and minify compiled files into the output directory'),
            Task('images', pipeline_action(self.images_pipeline()), ['clean'],
                 'Optimize images into the output directory'),
            Task('extras', pipeline_action(self.extras_pipeline()), ['clean'],
                 'Copy other root files into the output directory'),
            Task('build', self.build, ['html', 'images', 'extras'],
                 'Create the optimized output tree'),
            Task('serve', self.serve, ['templates', 'styles'],
                 'Development server with live reload'),
            Task('serve:dist', self.serve_dist, ['build'],
                 'Production server over the output tree'),
            Task('default', None, ['build'],
                 'Same as build'),
        ]

    def graph(self) -> TaskGraph:
        return TaskGraph(self.tasks())


def build_graph(settings: BuildSettings,
                registry: StageRegistry | None = None,
                cache: TransformCache | None = None) -> TaskGraph:
    """
    Declare the site tasks for @settings.
    """
    return SiteRecipe(settings, registry, cache).graph()
