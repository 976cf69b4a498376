from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from rule_dir_watcher.scheduler import RuleDirScheduler


@pytest.fixture
def mock_watcher() -> MagicMock:
    watcher = MagicMock()
    watcher.process_events.return_value = False
    watcher.get_statistics.return_value = {"registrations": 3}
    return watcher


@pytest.fixture
def watcher_factory(mock_watcher: MagicMock) -> MagicMock:
    return MagicMock(return_value=mock_watcher)


def _scheduler(folder: Any, rebuild: Any, factory: Any, **kwargs: Any) -> RuleDirScheduler:
    kwargs.setdefault("period", 60.0)
    kwargs.setdefault("drain_timeout", 0.5)
    return RuleDirScheduler(folder, rebuild, watcher_factory=factory, **kwargs)


def test_disabled_without_rules_folder(watcher_factory: MagicMock, caplog: pytest.LogCaptureFixture) -> None:
    rebuild = MagicMock()
    scheduler = _scheduler(None, rebuild, watcher_factory)

    with caplog.at_level(logging.INFO, logger="rule_dir_watcher.scheduler"):
        scheduler.start()

    assert scheduler.enabled is False
    assert scheduler.tick() is False
    watcher_factory.assert_not_called()
    rebuild.assert_not_called()
    assert "directory watching is disabled" in caplog.text
    scheduler.stop()


def test_start_creates_recursive_watcher(temp_dir: Path, watcher_factory: MagicMock) -> None:
    scheduler = _scheduler(temp_dir, MagicMock(), watcher_factory, max_pending_events=10)
    scheduler.start()
    try:
        assert scheduler.enabled is True
        watcher_factory.assert_called_once_with(temp_dir, recursive=True, max_pending_events=10)
    finally:
        scheduler.stop()


def test_construction_failure_propagates_and_stays_disabled(temp_dir: Path) -> None:
    factory = MagicMock(side_effect=FileNotFoundError("gone"))
    scheduler = _scheduler(temp_dir / "gone", MagicMock(), factory)

    with pytest.raises(OSError):
        scheduler.start()

    assert scheduler.enabled is False
    assert scheduler.tick() is False
    assert scheduler._timer is None


def test_tick_rebuilds_only_on_change(temp_dir: Path, watcher_factory: MagicMock, mock_watcher: MagicMock) -> None:
    rebuild = MagicMock()
    scheduler = _scheduler(temp_dir, rebuild, watcher_factory, drain_timeout=0.25)
    scheduler.start()
    try:
        assert scheduler.tick() is False
        rebuild.assert_not_called()

        mock_watcher.process_events.return_value = True
        assert scheduler.tick() is True
        rebuild.assert_called_once_with()
        mock_watcher.process_events.assert_called_with(0.25)
    finally:
        scheduler.stop()


def test_rebuild_failure_does_not_stop_later_ticks(
    temp_dir: Path, watcher_factory: MagicMock, mock_watcher: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    rebuild = MagicMock(side_effect=[RuntimeError("boom"), "v2"])
    mock_watcher.process_events.return_value = True
    scheduler = _scheduler(temp_dir, rebuild, watcher_factory)
    scheduler.start()
    try:
        with caplog.at_level(logging.ERROR, logger="rule_dir_watcher.scheduler"):
            assert scheduler.tick() is True
        assert "Rebuild failed: boom" in caplog.text

        assert scheduler.tick() is True
        assert rebuild.call_count == 2
        assert scheduler.rebuild_failures == 1
        assert scheduler.rebuilds == 2
    finally:
        scheduler.stop()


def test_drain_error_is_contained(
    temp_dir: Path, watcher_factory: MagicMock, mock_watcher: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    rebuild = MagicMock()
    mock_watcher.process_events.side_effect = RuntimeError("queue broke")
    scheduler = _scheduler(temp_dir, rebuild, watcher_factory)
    scheduler.start()
    try:
        with caplog.at_level(logging.ERROR, logger="rule_dir_watcher.scheduler"):
            assert scheduler.tick() is False
        rebuild.assert_not_called()
        assert "queue broke" in caplog.text
    finally:
        scheduler.stop()


def test_timer_keeps_ticking(temp_dir: Path, watcher_factory: MagicMock, mock_watcher: MagicMock) -> None:
    ticked = threading.Event()
    calls = []

    def rebuild() -> None:
        calls.append(time.monotonic())
        if len(calls) == 1:
            raise RuntimeError("first rebuild fails")
        ticked.set()

    mock_watcher.process_events.return_value = True
    scheduler = _scheduler(temp_dir, rebuild, watcher_factory, period=0.05, drain_timeout=0.01)
    scheduler.start()
    try:
        assert ticked.wait(5.0)
    finally:
        scheduler.stop()

    assert len(calls) >= 2


def test_stop_closes_watcher_and_cancels_timer(
    temp_dir: Path, watcher_factory: MagicMock, mock_watcher: MagicMock
) -> None:
    scheduler = _scheduler(temp_dir, MagicMock(), watcher_factory)
    scheduler.start()
    timer = scheduler._timer

    scheduler.stop()

    mock_watcher.close.assert_called_once_with()
    assert scheduler.enabled is False
    assert scheduler.watcher is None
    assert scheduler._timer is None
    assert timer is not None and timer.finished.is_set()
    assert scheduler.tick() is False

    scheduler.stop()
    mock_watcher.close.assert_called_once_with()


def test_stop_logs_close_errors(
    temp_dir: Path, watcher_factory: MagicMock, mock_watcher: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    mock_watcher.close.side_effect = OSError("busy")
    scheduler = _scheduler(temp_dir, MagicMock(), watcher_factory)
    scheduler.start()

    with caplog.at_level(logging.ERROR, logger="rule_dir_watcher.scheduler"):
        scheduler.stop()

    assert "Error closing watcher: busy" in caplog.text


def test_no_tick_scheduled_after_stop(temp_dir: Path, watcher_factory: MagicMock) -> None:
    scheduler = _scheduler(temp_dir, MagicMock(), watcher_factory)
    scheduler.start()
    scheduler.stop()

    with patch("rule_dir_watcher.scheduler.threading.Timer") as timer_cls:
        scheduler._run_tick()

    timer_cls.assert_not_called()


@pytest.mark.parametrize(
    "period,drain_timeout",
    [(0.0, 0.1), (1.0, 1.0), (1.0, 2.0), (1.0, 0.0)],
    ids=["zero-period", "equal", "longer", "zero-timeout"],
)
def test_invalid_timing(period: float, drain_timeout: float) -> None:
    with pytest.raises(ValueError):
        RuleDirScheduler(None, MagicMock(), period=period, drain_timeout=drain_timeout)


def test_statistics_include_watcher(temp_dir: Path, watcher_factory: MagicMock) -> None:
    scheduler = _scheduler(temp_dir, MagicMock(), watcher_factory)
    scheduler.start()
    try:
        scheduler.tick()
        stats = scheduler.get_statistics()
    finally:
        scheduler.stop()

    assert stats["enabled"] is True
    assert stats["ticks"] == 1
    assert stats["registrations"] == 3


def test_stop_during_tick_does_not_break_drain(
    temp_dir: Path, watcher_factory: MagicMock, mock_watcher: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    scheduler = _scheduler(temp_dir, MagicMock(), watcher_factory)
    scheduler.start()

    class StopsWhenCounted(int):
        def __add__(self, other: int) -> int:
            scheduler.stop()
            return int(self) + other

    scheduler.ticks = StopsWhenCounted(0)

    with caplog.at_level(logging.ERROR, logger="rule_dir_watcher.scheduler"):
        assert scheduler.tick() is False

    mock_watcher.process_events.assert_called_once_with(0.5)
    assert "Error processing directory events" not in caplog.text
    assert scheduler.watcher is None
