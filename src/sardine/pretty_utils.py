"""
Internal utilities for progress bars, notices and diagnostics.
"""
from __future__ import annotations

import contextlib
import sys
import threading
import typing as t

import rich.console
import rich.progress

if t.TYPE_CHECKING:
    from .errors import BuildError, StageError


_consoles = {
    'stdout': rich.console.Console(file=sys.stdout, highlight=False),
    'stderr': rich.console.Console(file=sys.stderr, highlight=False),
}
# Tasks print from worker threads; keep lines whole.
_print_lock = threading.Lock()
# Pipelines running side by side share one live display.
_progress_lock = threading.Lock()
_progress: rich.progress.Progress | None = None
_progress_users = 0

T = t.TypeVar('T')


@contextlib.contextmanager
def shared_progress(console: rich.console.Console):
    """
    The progress display shared by every concurrent tracker, started by the
    first to enter and stopped by the last to leave.
    """
    global _progress, _progress_users
    with _progress_lock:
        if _progress is None:
            _progress = rich.progress.Progress(console=console, transient=True)
            _progress.start()
        _progress_users += 1
        progress = _progress
    try:
        yield progress
    finally:
        with _progress_lock:
            _progress_users -= 1
            if not _progress_users:
                progress.stop()
                _progress = None


def track_progress(iterable: t.Iterable[T], desc: str, total: int | None = None) -> t.Iterable[T]:
    """
    Progress tracker drawing a rich progress bar on interactive terminals and
    staying quiet otherwise. Trackers running at the same time each get a bar
    in the same display.
    """
    console = _consoles['stdout']
    if not console.is_terminal:
        yield from iterable
        return
    with shared_progress(console) as progress:
        task_id = progress.add_task(desc, total=total)
        try:
            for value in iterable:
                yield value
                progress.advance(task_id)
        finally:
            progress.remove_task(task_id)


def print_with_style(*args, sep=' ', end='\n', file: str = 'stdout', style=None):
    """
    print() replacement which goes through the rich console for @file,
    applying @style.
    """
    with _print_lock:
        _consoles[file].print(*args, sep=sep, end=end, style=style, markup=False)


def notify(title: str, message: str, subtitle: str | None = None):
    """
    Show a short success notice for a finished unit of work.
    """
    label = f'{title} {subtitle}' if subtitle else title
    print_with_style(f'[{label}] {message}', style='green')


def print_diagnostic(error: StageError | BuildError, task: str | None = None):
    """
    Report an error on stderr, naming the task, stage and file involved when
    they are known.
    """
    prefix = f'{task}: ' if task else ''
    print_with_style(f'✗ {prefix}{error}', file='stderr', style='red')


def format_size(size: float) -> str:
    """
    Human-readable byte count, e.g. `1.3 kB`.
    """
    for unit in ('B', 'kB', 'MB'):
        if size < 1000 or unit == 'MB':
            return f'{size:.0f} {unit}' if unit == 'B' else f'{size:.1f} {unit}'
        size /= 1000
    return f'{size:.1f} MB'
