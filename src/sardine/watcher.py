"""
Re-run tasks and reload viewers when watched files change.
"""
from __future__ import annotations

import threading
import typing as t
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .paths import GlobSet
from .pretty_utils import print_with_style

if t.TYPE_CHECKING:
    from collections.abc import Sequence
    from .server import ServerSession
    from .tasks import Orchestrator


DEFAULT_DEBOUNCE = 0.1
# Opened/closed notifications don't change anything.
CHANGE_EVENTS = {'created', 'modified', 'moved', 'deleted'}


class WatchBinding:
    """
    Files under @root matching @patterns. On change, @task (if any) is re-run,
    then viewers get a @reload of kind 'full' or 'css' (if any).
    """
    def __init__(self,
                 root: Path,
                 patterns: str | Sequence[str],
                 task: str | None = None,
                 reload: str | None = 'full'):
        self.globs = GlobSet(root, patterns)
        self.task = task
        self.reload = reload

    def __repr__(self):
        return f'WatchBinding({self.globs!r}, task={self.task!r}, reload={self.reload!r})'

    def matches(self, path: Path):
        return self.globs.match(path) is not None


class _BindingState:
    def __init__(self):
        self.timer: threading.Timer | None = None
        self.running = False
        self.pending = False


class _EventHandler(FileSystemEventHandler):
    def __init__(self, watcher: Watcher):
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent):
        if event.is_directory or event.event_type not in CHANGE_EVENTS:
            return
        self.watcher.dispatch(Path(_fspath(event.src_path)))
        dest = getattr(event, 'dest_path', '')
        if dest:
            self.watcher.dispatch(Path(_fspath(dest)))


def _fspath(path: str | bytes) -> str:
    return path.decode() if isinstance(path, bytes) else path


class Watcher:
    """
    Watches the files of a set of WatchBindings. Bursts of changes within
    @debounce seconds trigger a single re-run; changes arriving while a
    binding's task is running cause exactly one follow-up run. Failed re-runs
    are reported and watching carries on.
    """
    def __init__(self,
                 session: ServerSession,
                 orchestrator: Orchestrator,
                 bindings: Sequence[WatchBinding],
                 debounce: float = DEFAULT_DEBOUNCE):
        self.session = session
        self.orchestrator = orchestrator
        self.bindings = list(bindings)
        self.debounce = debounce
        self._states = {id(b): _BindingState() for b in self.bindings}
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._observer: t.Any = None
        self._stopped = False

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc_info):
        self.stop()

    def watched_dirs(self) -> list[Path]:
        """
        The directories to watch recursively. Directories inside another
        watched one are left out, so each change is seen once.
        """
        bases = sorted({
            base for binding in self.bindings for base in binding.globs.base_dirs() if base.is_dir()
        })
        dirs: list[Path] = []
        for base in bases:
            if not any(base.is_relative_to(d) for d in dirs):
                dirs.append(base)
        return dirs

    def start(self):
        if self._observer:
            return
        self._stopped = False
        self._observer = Observer()
        handler = _EventHandler(self)
        for directory in self.watched_dirs():
            self._observer.schedule(handler, str(directory), recursive=True)
        self._observer.start()

    def stop(self):
        """
        Cancel pending re-runs and close the file watches. A re-run already in
        progress finishes, but triggers nothing further.
        """
        with self._lock:
            self._stopped = True
            for state in self._states.values():
                if state.timer:
                    state.timer.cancel()
                    state.timer = None
                state.pending = False
            self._idle.notify_all()
        if self._observer:
            self._observer.stop()
            self._observer.join()
            self._observer = None

    def dispatch(self, path: Path):
        """
        Handle a change to @path, scheduling every binding it matches.
        """
        for binding in self.bindings:
            if binding.matches(path):
                self.schedule(binding)

    def schedule(self, binding: WatchBinding):
        with self._lock:
            if self._stopped:
                return
            state = self._states[id(binding)]
            if state.running:
                state.pending = True
                return
            if state.timer:
                state.timer.cancel()
            state.timer = threading.Timer(self.debounce, self._fire, (binding,))
            state.timer.daemon = True
            state.timer.start()

    def _fire(self, binding: WatchBinding):
        state = self._states[id(binding)]
        with self._lock:
            # A timer cancelled too late to stop it has been superseded.
            if state.timer is not threading.current_thread():
                return
            state.timer = None
            if self._stopped or state.running:
                self._idle.notify_all()
                return
            state.running = True
        try:
            while True:
                self.rerun(binding)
                with self._lock:
                    if not state.pending or self._stopped:
                        break
                    state.pending = False
        finally:
            with self._lock:
                state.running = False
                self._idle.notify_all()

    def rerun(self, binding: WatchBinding):
        """
        Re-run @binding's task on its own and, if that worked, reload viewers.
        """
        if binding.task:
            report = self.orchestrator.run_task(binding.task, dependencies=False)
            if not report.ok:
                print_with_style(f"'{binding.task}' failed; still watching", file='stderr', style='yellow')
                return False
        if binding.reload:
            self.session.notify(binding.reload)
        return True

    def busy(self):
        return any(s.timer or s.running for s in self._states.values())

    def wait_idle(self, timeout: float | None = None) -> bool:
        """
        Block until no re-run is scheduled or in progress. Returns False if
        @timeout expired first.
        """
        with self._idle:
            return self._idle.wait_for(lambda: not self.busy(), timeout)
