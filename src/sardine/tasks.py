"""
Named tasks, their dependency graph, and the orchestrator which runs them.
"""
from __future__ import annotations

import contextlib
import enum
import threading
import typing as t
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait

from .core import PipelineResult
from .errors import (
    BuildError, CycleDetected, DependencyFailed, StageError, StageFailed, UnknownTask,
)
from .pretty_utils import print_diagnostic, print_with_style

if t.TYPE_CHECKING:
    from collections.abc import Iterable, Sequence


TaskAction = t.Callable[['Orchestrator'], t.Any]
R = t.TypeVar('R', bound=contextlib.AbstractContextManager)


class TaskState(enum.Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


class Task:
    """
    A named unit of work. @action receives the running Orchestrator and may
    return a PipelineResult, which is then checked for stage errors.
    """
    def __init__(self,
                 name: str,
                 action: TaskAction | None = None,
                 dependencies: Sequence[str] = (),
                 description: str = ''):
        self.name = name
        self.action = action
        self.dependencies = tuple(dependencies)
        self.description = description

    def __repr__(self):
        return f'Task({self.name!r}, dependencies={list(self.dependencies)!r})'


class TaskGraph:
    """
    A set of Tasks keyed by name, with dependency resolution.
    """
    def __init__(self, tasks: Iterable[Task] = ()):
        self.tasks: dict[str, Task] = {}
        for task in tasks:
            self.add(task)

    def __contains__(self, name: str):
        return name in self.tasks

    def __getitem__(self, name: str) -> Task:
        try:
            return self.tasks[name]
        except KeyError:
            raise UnknownTask(name) from None

    def __iter__(self):
        return iter(self.tasks.values())

    def add(self, task: Task):
        if task.name in self.tasks:
            raise ValueError(f'Task {task.name!r} is already declared')
        self.tasks[task.name] = task
        return task

    def task(self, name: str, dependencies: Sequence[str] = (), description: str = ''):
        """
        Decorator declaring the decorated function as the action of a new Task.
        """
        def decorator(action: TaskAction):
            self.add(Task(name, action, dependencies, description or (action.__doc__ or '').strip()))
            return action
        return decorator

    def plan(self, name: str) -> list[Task]:
        """
        Return @name and everything it transitively depends on, dependencies
        first. Raises UnknownTask or CycleDetected before anything could run.
        """
        order: list[Task] = []
        done: set[str] = set()
        stack: list[str] = []

        def visit(task_name: str, required_by: str | None):
            if task_name in done:
                return
            if task_name in stack:
                raise CycleDetected(stack[stack.index(task_name):] + [task_name])
            if task_name not in self.tasks:
                raise UnknownTask(task_name, required_by)
            stack.append(task_name)
            for dependency in self.tasks[task_name].dependencies:
                visit(dependency, task_name)
            stack.pop()
            done.add(task_name)
            order.append(self.tasks[task_name])

        visit(name, None)
        return order

    def validate(self):
        """
        Check every task, raising the first configuration error found.
        """
        for name in self.tasks:
            self.plan(name)


class BuildReport:
    """
    The outcome of one `Orchestrator.run_task()` call.
    """
    def __init__(self, task: str):
        self.task = task
        self.states: dict[str, TaskState] = {}
        self.errors: dict[str, BuildError] = {}
        self.results: dict[str, PipelineResult] = {}
        self.config_error: BuildError | None = None

    @property
    def ok(self):
        return self.config_error is None and self.states.get(self.task) is TaskState.SUCCEEDED

    @property
    def error(self) -> BuildError | None:
        """
        Why the requested task failed, if it did.
        """
        if self.config_error:
            return self.config_error
        return self.errors.get(self.task)

    @property
    def stage_errors(self) -> list[StageError]:
        return [e for r in self.results.values() for e in r.errors]

    def root_causes(self) -> list[BuildError]:
        """
        Every failure that wasn't merely a consequence of another.
        """
        if self.config_error:
            return [self.config_error]
        return [e for e in self.errors.values() if not isinstance(e, DependencyFailed)]

    def __repr__(self):
        states = ', '.join(f'{k}={v.value}' for k, v in self.states.items())
        return f'<BuildReport {self.task} ok={self.ok} [{states}]>'


class Orchestrator:
    """
    Runs Tasks from a TaskGraph. Independent tasks run concurrently; a task
    starts only once all of its dependencies have succeeded, and the
    dependents of a failed task fail without running.

    In @strict mode a pipeline task with any stage errors fails; otherwise
    those errors are only reported.

    Tasks may hand long-lived resources (servers, watchers) to
    `keep_alive()`; they are released by `close()`.
    """
    def __init__(self,
                 graph: TaskGraph,
                 *,
                 strict: bool = True,
                 max_workers: int | None = None,
                 quiet: bool = False):
        self.graph = graph
        self.strict = strict
        self.max_workers = max_workers or max(4, len(graph.tasks))
        self.quiet = quiet
        self._resources = contextlib.ExitStack()
        self._resource_lock = threading.Lock()
        self._kept = 0
        self._closed = threading.Event()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    @property
    def serving(self):
        """
        Whether any task left resources running.
        """
        return self._kept > 0 and not self._closed.is_set()

    def keep_alive(self, resource: R) -> R:
        """
        Enter @resource and keep it open until the orchestrator closes.
        """
        with self._resource_lock:
            entered = self._resources.enter_context(resource)
            self._kept += 1
        return entered

    def close(self):
        with self._resource_lock:
            self._resources.close()
            self._closed.set()

    def wait(self, timeout: float | None = None):
        """
        Block until `close()` is called (or @timeout passes).
        """
        return self._closed.wait(timeout)

    def run_task(self, name: str, *, dependencies: bool = True) -> BuildReport:
        """
        Run task @name, after its dependencies unless @dependencies is False.
        Never raises for build failures; inspect the returned report.
        """
        report = BuildReport(name)
        try:
            plan = self.graph.plan(name) if dependencies else [self.graph[name]]
        except BuildError as e:
            report.config_error = e
            print_diagnostic(e)
            return report

        planned = {task.name for task in plan}
        for task in plan:
            report.states[task.name] = TaskState.PENDING

        with ThreadPoolExecutor(self.max_workers, thread_name_prefix='sardine-task') as pool:
            running: dict[Future[BuildError | None], str] = {}
            while True:
                # `plan` is in dependency order, so failures cascade in one pass.
                for task in plan:
                    if report.states[task.name] is not TaskState.PENDING:
                        continue
                    deps = [d for d in task.dependencies if d in planned]
                    failed = [d for d in deps if report.states[d] is TaskState.FAILED]
                    if failed:
                        self._finish(report, task.name, DependencyFailed(task.name, failed))
                    elif all(report.states[d] is TaskState.SUCCEEDED for d in deps):
                        report.states[task.name] = TaskState.RUNNING
                        running[pool.submit(self._execute, task, report)] = task.name

                if not running:
                    break
                done, _pending = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    self._finish(report, running.pop(future), future.result())

        return report

    def _finish(self, report: BuildReport, name: str, error: BuildError | None):
        if error is None:
            report.states[name] = TaskState.SUCCEEDED
            return
        report.states[name] = TaskState.FAILED
        report.errors[name] = error
        # Stage errors of pipeline tasks were already reported one by one.
        if not isinstance(error, DependencyFailed) and name not in report.results:
            print_diagnostic(error)

    def _execute(self, task: Task, report: BuildReport) -> BuildError | None:
        if not self.quiet:
            print_with_style(f"Starting '{task.name}'...", style='cyan')
        try:
            outcome = task.action(self) if task.action else None
        except BuildError as e:
            e.task = e.task or task.name
            return e
        except Exception as e:
            message = str(e).strip() or e.__class__.__name__
            return StageFailed(task.name, StageError(task.name, None, message))

        if isinstance(outcome, PipelineResult):
            report.results[task.name] = outcome
            for stage_error in outcome.errors:
                print_diagnostic(stage_error, task.name)
            if outcome.errors and self.strict:
                return StageFailed(task.name, outcome.errors[0])

        if not self.quiet:
            print_with_style(f"Finished '{task.name}'", style='cyan')
        return None

