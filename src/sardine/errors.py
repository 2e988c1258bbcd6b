"""
Exception types for Sardine builds.

Everything a build run can fail with derives from `BuildError`. Failures of
a single stage on a single file are not exceptions at all; they travel as
`StageError` values inside pipeline results, and only become a
`StageFailed` when a task is judged as a whole.
"""
from __future__ import annotations

import typing as t
from pathlib import Path

if t.TYPE_CHECKING:
    from collections.abc import Iterable
    from .core import Stage


class StageError:
    """
    A single stage failing on a single file. @path is None when the failure
    isn't tied to an input file (e.g. a task action raising).
    """
    def __init__(self, stage_id: str, path: Path | None, message: str):
        self.stage_id = stage_id
        self.path = path
        self.message = message

    def __str__(self):
        where = f' ({self.path})' if self.path else ''
        return f'[{self.stage_id}]{where} {self.message}'

    def __repr__(self):
        return f'StageError({self.stage_id!r}, {self.path!r}, {self.message!r})'


class BuildError(Exception):
    """
    Base class for anything which fails a task or a whole run.
    """
    task: str | None = None


class ConfigError(BuildError):
    """
    The build is misconfigured; nothing should be retried.
    """


class UnknownTask(ConfigError):
    """
    A task name, requested or named as a dependency, isn't declared.
    """
    def __init__(self, task: str, required_by: str | None = None):
        self.task = task
        self.required_by = required_by
        if required_by:
            msg = f'Unknown task {task!r} (required by {required_by!r})'
        else:
            msg = f'Unknown task {task!r}'
        super().__init__(msg)


class CycleDetected(ConfigError):
    """
    The dependency graph contains a cycle. @members lists the tasks on it,
    starting and ending with the same task.
    """
    def __init__(self, members: list[str]):
        self.members = members
        self.task = members[0] if members else None
        super().__init__(f'Dependency cycle: {" -> ".join(members)}')


class StageUnavailableError(ConfigError):
    """
    A stage to be used is unavailable due to missing dependencies.
    """
    def __init__(self, stage: Stage):
        self.stage = stage
        hints = '; '.join(
            d.install_hint for d in stage.get_dependencies() if not d.satisfied
        )
        super().__init__(f'Stage {stage.stage_id!r} is unavailable ({hints})')


class StageFailed(BuildError):
    """
    Task @task failed because of @error.
    """
    def __init__(self, task: str, error: StageError):
        self.task = task
        self.error = error
        super().__init__(f'Task {task!r} failed: {error}')


class DependencyFailed(BuildError):
    """
    Task @task was never started because its dependencies @failed failed.
    """
    def __init__(self, task: str, failed: Iterable[str]):
        self.task = task
        self.failed = sorted(failed)
        super().__init__(f'Task {task!r} skipped: dependency failed ({", ".join(self.failed)})')


class ServerBindError(BuildError):
    """
    The development server could not listen on its port.
    """
    def __init__(self, host: str, port: int, reason: OSError):
        self.host = host
        self.port = port
        self.reason = reason
        super().__init__(f'Cannot serve on {host}:{port}: {reason.strerror or reason}')
