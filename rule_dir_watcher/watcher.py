"""
Recursive directory watcher implementation using watchdog.

Responsibility:
    This module is solely responsible for keeping a live registration over a
    directory tree and coalescing the file system notifications it receives
    into a single "something changed" signal. It knows nothing about what is
    rebuilt when a change is detected; that is the scheduler's concern.

Design:
    - **One observer watch, one key per directory**: The root is scheduled as a
      single watchdog watch (recursive when the watcher is). Every directory
      under the root is represented by a :class:`WatchKey`, an opaque handle
      mapped to the directory it stands for. Incoming events are routed to the
      key of the directory that contains the affected entry.
    - **Bounded drain**: The watchdog dispatcher thread only enqueues
      notifications. :meth:`DirWatcher.process_events` blocks on that queue for
      at most the given timeout, so callers are never blocked indefinitely.
    - **Self-healing registration**: Directories created at runtime are
      registered while their creation event is processed, before the drain
      returns. A key is invalidated as soon as its directory is deleted or
      moved away, and dropped from the registration table when it then fails
      to re-arm.
    - **Overflow tolerance**: The pending queue is bounded. Notifications that
      do not fit are dropped and reported as a single OVERFLOW event for the
      affected key; overflow alone never sets the change signal.

Key Invariants:
    - Exactly one registration exists per non-symlink directory under the root.
    - Symbolic links are never followed when walking or registering.
    - A registration is removed only when its key fails to re-arm.
    - Nothing inside the drain path raises; errors are logged per event.
"""

from __future__ import annotations

import errno
import logging
import os
import queue
import stat
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler, FileSystemMovedEvent
from watchdog.observers import Observer

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "DEFAULT_MAX_PENDING_EVENTS",
    "DirWatcher",
    "EventKind",
    "PendingEvent",
    "WatchKey",
    "WatcherState",
]

DEFAULT_MAX_PENDING_EVENTS = 4096

# Placed on the queue by close() to wake a blocked drain.
_WAKEUP = object()


class EventKind(Enum):
    """Kinds of notifications delivered for a watched directory."""

    CREATED = "ENTRY_CREATE"
    DELETED = "ENTRY_DELETE"
    MODIFIED = "ENTRY_MODIFY"
    OVERFLOW = "OVERFLOW"


class WatcherState(Enum):
    """Lifecycle states of a :class:`DirWatcher`."""

    UNOPENED = "unopened"
    WATCHING = "watching"
    CLOSED = "closed"


@dataclass(frozen=True)
class PendingEvent:
    """One observed file system occurrence.

    Attributes:
        kind (EventKind): What happened.
        directory (Path): The registered directory the event was routed to.
        name (Optional[str]): Entry path relative to ``directory``. ``"."``
            means the directory itself; ``None`` for OVERFLOW.
    """

    kind: EventKind
    directory: Path
    name: Optional[str] = None

    @property
    def child(self) -> Path:
        """Return the absolute path the event refers to."""
        if not self.name or self.name == ".":
            return self.directory
        return self.directory / self.name


def _identity(path: Path) -> Optional[Tuple[int, int]]:
    """Return ``(st_dev, st_ino)`` of the directory at ``path``, or None if there is none."""
    try:
        st = os.stat(path)
    except OSError:
        return None
    if not stat.S_ISDIR(st.st_mode):
        return None
    return (st.st_dev, st.st_ino)


def _is_real_directory(path: Path) -> bool:
    """Return True for a directory that is not reached through a symlink."""
    try:
        return stat.S_ISDIR(os.lstat(path).st_mode)
    except OSError:
        return False


def _raise_walk_error(error: OSError) -> None:
    raise error


def _event_path(path: Union[str, bytes]) -> Path:
    return Path(os.fsdecode(path))


class WatchKey:
    """Opaque handle for a single directory registration.

    Keys hash by identity, so each registration is unique even when a
    directory is registered again after being replaced.

    Attributes:
        directory (Path): The directory this key stands for.
    """

    def __init__(self, directory: Path, identity: Optional[Tuple[int, int]]) -> None:
        self.directory = directory
        self._identity = identity
        self._cancelled = False

    def reset(self) -> bool:
        """Re-arm the key for further notifications.

        Returns:
            bool: True if the key is still valid. False if the key was
            cancelled (its directory was deleted, moved away or released) or
            the path no longer holds the directory that was registered.
        """
        if self._cancelled:
            return False
        current = _identity(self.directory)
        return current is not None and current == self._identity

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __repr__(self) -> str:
        return f"<WatchKey directory={self.directory} cancelled={self._cancelled}>"


class _EventRouter(FileSystemEventHandler):
    """Forward watchdog callbacks for the root watch to the owning watcher."""

    def __init__(self, watcher: DirWatcher) -> None:
        super().__init__()
        self._watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        self._watcher._route(EventKind.CREATED, _event_path(event.src_path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._watcher._route(EventKind.DELETED, _event_path(event.src_path), gone=True)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._watcher._route(EventKind.MODIFIED, _event_path(event.src_path))

    def on_moved(self, event: FileSystemMovedEvent) -> None:
        # A rename is reported as the old name going away and the new one appearing,
        # each in the directory that holds it.
        self._watcher._route(EventKind.DELETED, _event_path(event.src_path), gone=True)
        self._watcher._route(EventKind.CREATED, _event_path(event.dest_path))


class DirWatcher:
    """Watch a directory tree and report whether anything changed.

    The watcher owns the watchdog observer, the registration table (key to
    directory) and the queue of pending notifications. Only
    :meth:`process_events` consumes the queue.

    Attributes:
        root (Path): Absolute path originally requested for watching.
        recursive (bool): Whether subdirectories are registered too.

    Example:
        >>> watcher = DirWatcher(Path("/srv/rules"), recursive=True)
        >>> if watcher.process_events(1.0):
        ...     rebuild()
        >>> watcher.close()
    """

    def __init__(
        self,
        root: Union[str, Path],
        recursive: bool = True,
        max_pending_events: int = DEFAULT_MAX_PENDING_EVENTS,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        """Start the observer, register the root (and its subtree when recursive) and watch it.

        Args:
            root (Union[str, Path]): Directory to watch.
            recursive (bool): Register every subdirectory, including ones created later.
            max_pending_events (int): Capacity of the pending notification queue.
            observer_factory (Callable[[], Any]): Builds the watchdog observer.

        Raises:
            OSError: If the root (or part of its tree) cannot be walked or watched.
            ValueError: If ``max_pending_events`` is not positive.
        """
        if max_pending_events < 1:
            raise ValueError(f"max_pending_events must be positive, got {max_pending_events}")

        self.root = Path(root).absolute()
        self.recursive = recursive
        self.max_pending_events = max_pending_events

        self._lock = threading.Lock()
        self._keys: Dict[WatchKey, Path] = {}
        self._paths: Dict[Path, WatchKey] = {}
        self._overflowed: Set[WatchKey] = set()
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=max_pending_events)
        self._state = WatcherState.UNOPENED
        self._router = _EventRouter(self)

        # Metrics
        self.events_detected: int = 0
        self.overflows: int = 0
        self.dropped_events: int = 0
        self.drains: int = 0
        self.changes_detected: int = 0
        self.start_time: float = time.monotonic()

        self._observer = observer_factory()
        self._observer.start()
        try:
            if recursive:
                logger.info(f"Scanning {self.root} ...")
                self.register_all(self.root)
                logger.info("Done.")
            else:
                self.register(self.root)
            self._observer.schedule(self._router, str(self.root), recursive=recursive)
        except Exception:
            self._stop_observer()
            raise

        self._state = WatcherState.WATCHING

    @property
    def state(self) -> WatcherState:
        return self._state

    def register(self, directory: Path) -> WatchKey:
        """Register a single directory.

        Registering a directory that already has a valid key is a no-op. A key
        left over from a directory that has since been deleted, moved away or
        replaced at the same path is cancelled and superseded.

        Args:
            directory (Path): The directory to register.

        Returns:
            WatchKey: The key now registered for ``directory``.

        Raises:
            OSError: If ``directory`` does not exist or is not a directory.
        """
        directory = Path(directory)
        st = os.stat(directory)
        if not stat.S_ISDIR(st.st_mode):
            raise NotADirectoryError(errno.ENOTDIR, os.strerror(errno.ENOTDIR), str(directory))

        with self._lock:
            existing = self._paths.get(directory)
            if existing is not None and existing.reset():
                return existing
            key = WatchKey(directory, (st.st_dev, st.st_ino))
            if existing is not None:
                self._keys.pop(existing, None)
                self._overflowed.discard(existing)
                existing.cancel()
            self._keys[key] = directory
            self._paths[directory] = key
        logger.debug(f"Registered {directory}")
        return key

    def register_all(self, start: Path) -> None:
        """Register ``start`` and every directory below it.

        Symbolic links are not followed, so a directory reachable only through
        a symlink is never registered.

        Args:
            start (Path): Root of the subtree to register.

        Raises:
            OSError: If the tree cannot be walked.
        """
        for dirpath, _dirnames, _filenames in os.walk(
            start, topdown=True, onerror=_raise_walk_error, followlinks=False
        ):
            self.register(Path(dirpath))

    def process_events(self, timeout: float) -> bool:
        """Drain pending notifications and report whether anything changed.

        Blocks for at most ``timeout`` seconds waiting for the first
        notification, then processes everything already queued without
        blocking again. Notifications are grouped per key and each group is
        handled in arrival order:

        1. Unknown keys are logged and skipped.
        2. OVERFLOW is logged and does not set the change signal.
        3. Any other event is logged and sets the change signal. A directory
           created under a recursive watch is registered immediately.
        4. The key is re-armed; keys that fail to re-arm are removed.

        Args:
            timeout (float): Maximum time to wait, in seconds.

        Returns:
            bool: True if at least one non-overflow event was observed.
        """
        if self._state is not WatcherState.WATCHING:
            return False

        with self._lock:
            overflow_pending = bool(self._overflowed)

        first: Any = None
        try:
            if overflow_pending:
                first = self._queue.get_nowait()
            else:
                first = self._queue.get(timeout=max(timeout, 0.0))
        except queue.Empty:
            if not overflow_pending:
                return False

        if first is _WAKEUP or self._state is not WatcherState.WATCHING:
            return False

        batches = self._collect(first)
        self.drains += 1

        changes_detected = False
        for key, events in batches.items():
            if self._state is not WatcherState.WATCHING:
                # Closed mid-drain; leave the remaining batches untouched.
                break
            if self._process_batch(key, events):
                changes_detected = True

        if changes_detected:
            self.changes_detected += 1
        return changes_detected

    def _collect(self, first: Optional[Tuple[WatchKey, PendingEvent]]) -> Dict[WatchKey, List[PendingEvent]]:
        """Group the first item and everything queued behind it by key."""
        batches: Dict[WatchKey, List[PendingEvent]] = {}
        item: Any = first
        while True:
            if item is not None and item is not _WAKEUP:
                key, event = item
                batches.setdefault(key, []).append(event)
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break

        with self._lock:
            overflowed = self._overflowed
            self._overflowed = set()
        for key in overflowed:
            overflow = PendingEvent(EventKind.OVERFLOW, key.directory)
            batches.setdefault(key, []).insert(0, overflow)
        return batches

    def _process_batch(self, key: WatchKey, events: List[PendingEvent]) -> bool:
        with self._lock:
            directory = self._keys.get(key)
        if directory is None:
            if key.cancelled or self._state is WatcherState.CLOSED:
                # Superseded while this drain was running, or the watcher was closed.
                logger.debug(f"Skipping {len(events)} event(s) for released {key!r}")
            else:
                logger.error(f"WatchKey not recognized: {key!r}. Skipping {len(events)} event(s).")
            return False

        changes_detected = False
        for event in events:
            if event.kind is EventKind.OVERFLOW:
                logger.error(f"OVERFLOW in {directory}. Processing next record ...")
                continue

            child = event.child
            logger.info(f"{event.kind.value} {child}")
            self.events_detected += 1
            changes_detected = True

            if self.recursive and event.kind is EventKind.CREATED and _is_real_directory(child):
                try:
                    self.register_all(child)
                except OSError as e:
                    logger.error(f"Failed to register new directory {child}: {e}", exc_info=True)

        if not key.reset():
            self._remove(key)
            logger.info(f"Directory no longer accessible, dropped registration: {directory}")
        return changes_detected

    def _route(self, kind: EventKind, path: Path, gone: bool = False) -> None:
        """Queue an event for the registered directory that contains ``path``.

        Called from the observer's dispatcher thread. An event about a path
        with no registered ancestor is attributed to the directory itself when
        that is registered (the root, for example). When ``gone`` is set and
        ``path`` is a registered directory, its key and the keys below it are
        cancelled, and each receives a DELETED event for itself so the next
        drain removes them.
        """
        if self._state is WatcherState.CLOSED:
            return

        target: Optional[WatchKey] = None
        name = "."
        doomed: List[WatchKey] = []
        with self._lock:
            for parent in path.parents:
                owner = self._paths.get(parent)
                if owner is not None:
                    target = owner
                    name = path.relative_to(parent).as_posix()
                    break
            else:
                target = self._paths.get(path)

            if gone and path in self._paths:
                doomed = [k for d, k in self._paths.items() if d == path or path in d.parents]
                for key in doomed:
                    key.cancel()

        if target is None:
            logger.debug(f"No registered directory for {path}, ignoring {kind.value}")
        else:
            self._post(target, PendingEvent(kind, target.directory, name))
        for key in doomed:
            if key is not target:
                self._post(key, PendingEvent(EventKind.DELETED, key.directory, "."))

    def _post(self, key: WatchKey, event: PendingEvent) -> None:
        """Queue a notification, recording overflow when the queue is full."""
        try:
            self._queue.put_nowait((key, event))
        except queue.Full:
            with self._lock:
                self.dropped_events += 1
                if key not in self._overflowed:
                    self._overflowed.add(key)
                    self.overflows += 1

    def _remove(self, key: WatchKey) -> None:
        """Drop a key from the registration table."""
        with self._lock:
            directory = self._keys.pop(key, None)
            if directory is not None and self._paths.get(directory) is key:
                del self._paths[directory]
            self._overflowed.discard(key)
        key.cancel()

    def registered_directories(self) -> Set[Path]:
        """Return a snapshot of the directories currently registered."""
        with self._lock:
            return set(self._keys.values())

    def close(self) -> None:
        """Release the observer and every registration.

        Wakes a drain blocked in :meth:`process_events`, which then reports no
        change.

        Returns:
            None
        """
        with self._lock:
            if self._state is WatcherState.CLOSED:
                logger.debug(f"Watcher for {self.root} already closed")
                return
            self._state = WatcherState.CLOSED
            for key in self._keys:
                key.cancel()
            self._keys.clear()
            self._paths.clear()
            self._overflowed.clear()

        try:
            self._queue.put_nowait(_WAKEUP)
        except queue.Full:
            pass  # a drain will not block on a full queue

        self._stop_observer()
        logger.info(f"Stopped watching {self.root}")

    def _stop_observer(self) -> None:
        try:
            self._observer.stop()
            self._observer.join(timeout=5.0)
            if self._observer.is_alive():
                logger.warning("Observer thread did not terminate within timeout.")
        except RuntimeError as e:
            logger.error(f"Error stopping observer: {e}")

    def get_statistics(self) -> Dict[str, Any]:
        """Return usage statistics.

        Returns:
            Dict[str, Any]: Counters and the current registration count.
        """
        with self._lock:
            registrations = len(self._keys)
        return {
            "events_detected": self.events_detected,
            "overflows": self.overflows,
            "dropped_events": self.dropped_events,
            "drains": self.drains,
            "changes_detected": self.changes_detected,
            "registrations": registrations,
            "uptime": time.monotonic() - self.start_time,
        }

    def __enter__(self) -> DirWatcher:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<DirWatcher root={self.root} recursive={self.recursive} state={self._state.value}>"
