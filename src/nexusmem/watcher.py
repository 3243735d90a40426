"""Background file monitoring and indexing.

A single actor thread owns all watch state. Callers talk to it through a
bounded control queue (watch / stop / shutdown); watchdog observers feed a
second bounded queue with file changes. The loop polls both without blocking
and sleeps briefly between ticks.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import os
import queue
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from nexusmem.config import ARCHITECTURE_FILENAME
from nexusmem.errors import FileReadError, WatchSetupError
from nexusmem.index.indexer import Indexer
from nexusmem.utils.files import DEFAULT_EXTENSIONS, has_watched_extension

LOGGER = logging.getLogger(__name__)

CONTROL_QUEUE_SIZE = 100
EVENT_QUEUE_SIZE = 1000


class DebounceTable:
    """Paths processed recently, each with an expiry time.

    Expiries live in one min-heap and are purged lazily whenever the table is
    consulted, so no timer thread is needed per entry.
    """

    def __init__(self, window: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.window = window
        self._clock = clock
        self._expiry: Dict[Path, float] = {}
        self._heap: List[Tuple[float, int, Path]] = []
        self._counter = itertools.count()

    def __len__(self) -> int:
        self.purge()
        return len(self._expiry)

    def __contains__(self, path: Path) -> bool:
        self.purge()
        return path in self._expiry

    def purge(self) -> None:
        now = self._clock()
        while self._heap and self._heap[0][0] <= now:
            expiry, _, path = heapq.heappop(self._heap)
            if self._expiry.get(path) == expiry:
                del self._expiry[path]

    def try_acquire(self, path: Path) -> bool:
        """Return True and start a window for ``path`` unless one is open."""
        self.purge()
        if path in self._expiry:
            return False
        expiry = self._clock() + self.window
        self._expiry[path] = expiry
        heapq.heappush(self._heap, (expiry, next(self._counter), path))
        return True

    def clear(self) -> None:
        self._expiry.clear()
        self._heap.clear()


@dataclass(slots=True)
class WatchProject:
    project_id: str
    roots: Tuple[Path, ...]


@dataclass(slots=True)
class StopWatching:
    pass


@dataclass(slots=True)
class Shutdown:
    pass


@dataclass(slots=True)
class FileChange:
    path: Path
    kind: str


@dataclass(slots=True)
class WatchSession:
    project_id: str
    roots: Tuple[Path, ...]
    debounce: DebounceTable
    observer: Any = field(default=None, repr=False)


class _ChangeForwarder(FileSystemEventHandler):
    """Forwards create, modify and move events for files; everything else is ignored.

    A move is reported for its destination only. Editors that save atomically
    write a temp file and rename it over the target, so the destination is the
    path that changed; the source path is left for `prune` to clean up.
    """

    def __init__(self, submit: Callable[[Path, str], None]) -> None:
        super().__init__()
        self._submit = submit

    def _forward(self, event: FileSystemEvent, kind: str) -> None:
        if event.is_directory:
            return
        self._submit(Path(os.fsdecode(event.src_path)), kind)

    def on_created(self, event: FileSystemEvent) -> None:
        self._forward(event, "created")

    def on_modified(self, event: FileSystemEvent) -> None:
        self._forward(event, "modified")

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._submit(Path(os.fsdecode(event.dest_path)), "moved")


class ChangeWatcher:
    """Watches a project's roots and indexes changed files."""

    def __init__(
        self,
        indexer: Indexer,
        *,
        debounce_seconds: float = 5.0,
        poll_interval: float = 0.1,
        extensions: Sequence[str] = DEFAULT_EXTENSIONS,
        architecture_filename: str = ARCHITECTURE_FILENAME,
        observer_factory: Callable[[], Any] = Observer,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.indexer = indexer
        self.debounce_seconds = debounce_seconds
        self.poll_interval = poll_interval
        self.extensions = tuple(extensions)
        self.architecture_filename = architecture_filename
        self._observer_factory = observer_factory
        self._clock = clock
        self._control: "queue.Queue[object]" = queue.Queue(maxsize=CONTROL_QUEUE_SIZE)
        self._events: "queue.Queue[FileChange]" = queue.Queue(maxsize=EVENT_QUEUE_SIZE)
        self._thread: Optional[threading.Thread] = None
        self._session: Optional[WatchSession] = None

    # -- caller side ---------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def project_id(self) -> Optional[str]:
        session = self._session
        return session.project_id if session else None

    @property
    def roots(self) -> Tuple[Path, ...]:
        session = self._session
        return session.roots if session else ()

    def start(self) -> "ChangeWatcher":
        if self.is_running:
            raise RuntimeError("Watcher already running")
        self._thread = threading.Thread(target=self._run, name="nexusmem-watcher", daemon=True)
        self._thread.start()
        return self

    def watch_project(self, project_id: str, roots: Sequence[Path]) -> None:
        self._control.put(WatchProject(project_id, tuple(Path(root) for root in roots)))

    def stop_watching(self) -> None:
        self._control.put(StopWatching())

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Ask the loop to exit and wait for it."""
        if self._thread is None:
            return
        self._control.put(Shutdown())
        self._thread.join(timeout)
        if self._thread.is_alive():
            LOGGER.warning("Watcher thread did not exit within %s seconds", timeout)
            return
        self._thread = None

    def submit_change(self, path: Path, kind: str = "modified") -> None:
        """Queue a file change; dropped with a warning when the queue is full."""
        try:
            self._events.put_nowait(FileChange(Path(path), kind))
        except queue.Full:
            LOGGER.warning("Event queue full, dropping change for %s", path)

    # -- actor side ----------------------------------------------------------

    def _run(self) -> None:
        LOGGER.info("Watcher started")
        try:
            while True:
                try:
                    message = self._control.get_nowait()
                except queue.Empty:
                    message = None

                if isinstance(message, Shutdown):
                    LOGGER.info("Watcher shutting down")
                    break
                if message is not None:
                    self._handle_control(message)

                self._drain_events()
                time.sleep(self.poll_interval)
        finally:
            self._teardown()

    def _handle_control(self, message: object) -> None:
        if isinstance(message, WatchProject):
            LOGGER.info("Starting watch for project '%s'", message.project_id)
            try:
                self._start_session(message.project_id, message.roots)
            except WatchSetupError as e:
                LOGGER.error(f"Failed to watch project {message.project_id}: {e}")
        elif isinstance(message, StopWatching):
            LOGGER.info("Stopping watch")
            self._teardown()

    def _start_session(self, project_id: str, roots: Sequence[Path]) -> None:
        # Never merge with an existing session
        self._teardown()

        observer = self._observer_factory()
        handler = _ChangeForwarder(self.submit_change)
        watched: List[Path] = []
        try:
            for root in roots:
                if not root.exists():
                    LOGGER.warning("Skipping missing root %s", root)
                    continue
                observer.schedule(handler, str(root), recursive=True)
                watched.append(root)
                LOGGER.info("Watching: %s", root)
            observer.start()
        except (OSError, RuntimeError) as exc:
            raise WatchSetupError(f"Failed to watch {roots}: {exc}") from exc

        self._session = WatchSession(
            project_id=project_id,
            roots=tuple(watched),
            debounce=DebounceTable(self.debounce_seconds, self._clock),
            observer=observer,
        )

    def _teardown(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        try:
            session.observer.stop()
            session.observer.join(timeout=5.0)
        except RuntimeError as e:
            LOGGER.warning(f"Failed to stop observer cleanly: {e}")
        session.debounce.clear()
        # Events from the old roots must not be indexed under a new project
        while True:
            try:
                self._events.get_nowait()
            except queue.Empty:
                break

    def _drain_events(self) -> None:
        while True:
            try:
                change = self._events.get_nowait()
            except queue.Empty:
                return
            try:
                self.handle_change(change.path)
            except Exception:
                LOGGER.exception("Error handling change for %s", change.path)

    def handle_change(self, path: Path) -> bool:
        """Process one changed path. Returns True if an indexing pass ran."""
        session = self._session
        if session is None:
            return False

        path = Path(path).absolute()
        if not path.is_file() or not has_watched_extension(path, self.extensions):
            return False

        if not session.debounce.try_acquire(path):
            LOGGER.debug("Debounced change for %s", path)
            return False

        if path.name == self.architecture_filename:
            LOGGER.info(
                "%s changed - triggering full re-index for %s",
                self.architecture_filename,
                session.project_id,
            )
            try:
                stats = self.indexer.index_roots(session.project_id, session.roots)
                LOGGER.info(
                    "Re-index complete: %d files, %d chunks, %d failed",
                    stats.indexed,
                    stats.chunks,
                    stats.failed,
                )
            except Exception as e:
                LOGGER.error(f"Full re-index of {session.project_id} failed: {e}")
            return True

        LOGGER.info("Indexing: %s", path)
        try:
            self.indexer.index_file(path, session.project_id)
        except FileReadError as e:
            LOGGER.warning(f"Skipping unreadable file {e}")
        except Exception as e:
            LOGGER.error(f"Failed to index {path}: {e}")
        return True
