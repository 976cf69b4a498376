"""
Periodic rebuild trigger driven by a :class:`~rule_dir_watcher.watcher.DirWatcher`.

Responsibility:
    Owns the recurring timer and the enabled flag. On every tick it drains the
    watcher with a bounded wait and, when something changed, invokes the
    rebuild callable. It is the only caller of ``process_events``.

Error Handling:
    - Construction of the watcher is the only failure that propagates
      (from :meth:`RuleDirScheduler.start`); the scheduler then stays disabled.
    - Any exception raised while draining or rebuilding is logged and the next
      tick runs as usual.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from rule_dir_watcher.watcher import DEFAULT_MAX_PENDING_EVENTS, DirWatcher

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["RuleDirScheduler"]


class RuleDirScheduler:
    """Run the watch-and-rebuild loop on a fixed cadence.

    Attributes:
        rules_folder (Optional[Path]): Folder to watch. None keeps the scheduler disabled.
        rebuild (Callable[[], Any]): Invoked after a tick observed a change.
        period (float): Seconds between the starts of consecutive ticks.
        drain_timeout (float): Max seconds a tick waits for notifications.
        enabled (bool): True between a successful :meth:`start` and :meth:`stop`.

    Example:
        >>> scheduler = RuleDirScheduler(Path("/srv/rules"), builder.rebuild)
        >>> scheduler.start()
        >>> # ...
        >>> scheduler.stop()
    """

    def __init__(
        self,
        rules_folder: Optional[Union[str, Path]],
        rebuild: Callable[[], Any],
        period: float = 5.0,
        drain_timeout: float = 1.0,
        recursive: bool = True,
        max_pending_events: int = DEFAULT_MAX_PENDING_EVENTS,
        watcher_factory: Callable[..., DirWatcher] = DirWatcher,
    ) -> None:
        """Initialize the scheduler without starting it.

        Raises:
            ValueError: If ``period`` is not positive or ``drain_timeout`` is not
                shorter than ``period``.
        """
        if period <= 0:
            raise ValueError(f"period must be positive, got {period}")
        if not 0 < drain_timeout < period:
            raise ValueError(f"drain_timeout must be positive and shorter than period ({period}), got {drain_timeout}")

        self.rules_folder = Path(rules_folder).absolute() if rules_folder else None
        self.rebuild = rebuild
        self.period = period
        self.drain_timeout = drain_timeout
        self.recursive = recursive
        self.max_pending_events = max_pending_events
        self._watcher_factory = watcher_factory

        self.watcher: Optional[DirWatcher] = None
        self.enabled = False
        self._stopping = False
        self._timer: Optional[threading.Timer] = None
        self._timer_lock = threading.Lock()

        self.ticks = 0
        self.rebuilds = 0
        self.rebuild_failures = 0

    def start(self) -> None:
        """Create the watcher and start ticking.

        Does nothing but log when no rules folder is configured.

        Raises:
            OSError: If the rules folder cannot be watched.
        """
        if self.rules_folder is None:
            logger.info("No rules folder configured; directory watching is disabled.")
            return

        self._stopping = False
        self.watcher = self._watcher_factory(
            self.rules_folder,
            recursive=self.recursive,
            max_pending_events=self.max_pending_events,
        )
        logger.info(f"Start monitoring folder {self.rules_folder}")
        self.enabled = True
        self._schedule(self.period)

    def tick(self) -> bool:
        """Drain the watcher once and rebuild if anything changed.

        Returns:
            bool: True if the rebuild was invoked.
        """
        watcher = self.watcher
        if not self.enabled or watcher is None:
            return False

        self.ticks += 1
        try:
            changed = watcher.process_events(self.drain_timeout)
        except Exception as e:
            logger.error(f"Error processing directory events: {e}", exc_info=True)
            return False
        if not changed:
            return False

        self.rebuilds += 1
        try:
            result = self.rebuild()
        except Exception as e:
            self.rebuild_failures += 1
            logger.error(f"Rebuild failed: {e}", exc_info=True)
        else:
            logger.debug(f"Rebuild finished: {result!r}")
        return True

    def stop(self) -> None:
        """Stop ticking and close the watcher.

        Safe to call when the scheduler was never started.

        Returns:
            None
        """
        self._stopping = True
        self.enabled = False
        with self._timer_lock:
            if self._timer:
                self._timer.cancel()
                self._timer = None

        watcher, self.watcher = self.watcher, None
        if watcher is not None:
            try:
                watcher.close()
            except Exception as e:
                logger.error(f"Error closing watcher: {e}")

    def _schedule(self, delay: float) -> None:
        with self._timer_lock:
            if self._stopping:
                return
            self._timer = threading.Timer(max(delay, 0.0), self._run_tick)
            self._timer.daemon = True
            self._timer.start()

    def _run_tick(self) -> None:
        """Execute one tick and re-arm the timer so the next starts ``period`` after this one."""
        if self._stopping:
            return
        started = time.monotonic()
        try:
            self.tick()
        except Exception as e:
            logger.error(f"Unexpected error in scheduler tick: {e}", exc_info=True)
        finally:
            self._schedule(self.period - (time.monotonic() - started))

    def get_statistics(self) -> Dict[str, Any]:
        """Return scheduler counters merged with the watcher's statistics."""
        stats: Dict[str, Any] = {
            "enabled": self.enabled,
            "ticks": self.ticks,
            "rebuilds": self.rebuilds,
            "rebuild_failures": self.rebuild_failures,
        }
        if self.watcher is not None:
            stats.update(self.watcher.get_statistics())
        return stats

    def __repr__(self) -> str:
        return f"<RuleDirScheduler folder={self.rules_folder} enabled={self.enabled}>"
