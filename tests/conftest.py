from pathlib import Path
import os
from types import SimpleNamespace
from typing import Any, Generator, List, Tuple
from unittest.mock import MagicMock, patch
import tempfile

import pytest

from watchdog.events import FileSystemEvent, FileSystemEventHandler

from rule_dir_watcher.config import Config


class FakeObserver:
    """Stand-in for a watchdog Observer that lets tests deliver events by hand."""

    def __init__(self) -> None:
        self.handlers: List[FileSystemEventHandler] = []
        self.scheduled: List[Tuple[str, bool]] = []
        self.started = False
        self.stopped = False

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True
        self.handlers.clear()

    def join(self, timeout: Any = None) -> None:
        pass

    def is_alive(self) -> bool:
        return self.started and not self.stopped

    def schedule(self, handler: FileSystemEventHandler, path: str, recursive: bool = False) -> Any:
        self.handlers.append(handler)
        self.scheduled.append((path, recursive))
        return SimpleNamespace(path=path, handler=handler, is_recursive=recursive)

    def fire(self, event: FileSystemEvent) -> None:
        """Deliver ``event`` to every scheduled handler."""
        for handler in list(self.handlers):
            handler.dispatch(event)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Fixture for a temporary directory using tempfile.TemporaryDirectory.

    Resolved so that paths reported by the OS match the ones we register.
    """
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname).resolve()


@pytest.fixture
def fake_observer() -> FakeObserver:
    """Fixture for an observer whose events are fired by the test via ``fire``."""
    return FakeObserver()


@pytest.fixture
def observer_factory(fake_observer: FakeObserver) -> Any:
    return lambda: fake_observer


@pytest.fixture
def rules_tree(temp_dir: Path) -> Path:
    """Fixture for a small rules tree: root/a.toml, root/sub/nested/b.toml, root/other/."""
    root = temp_dir / "rules"
    (root / "sub" / "nested").mkdir(parents=True)
    (root / "other").mkdir()
    (root / "a.toml").write_text('name = "a"\n', encoding="utf-8")
    (root / "sub" / "nested" / "b.toml").write_text('name = "b"\n', encoding="utf-8")
    return root


@pytest.fixture
def symlinks_supported(temp_dir: Path) -> None:
    target = temp_dir / "symlink-probe-target"
    target.mkdir()
    try:
        os.symlink(target, temp_dir / "symlink-probe", target_is_directory=True)
    except (OSError, NotImplementedError):
        pytest.skip("Symlinks are not supported on this platform")


@pytest.fixture
def mock_config() -> Config:
    """Fixture for a default Config object."""
    return Config(
        rules_folder=None,
        bundled_rules_folder=None,
        period=5.0,
        drain_timeout=1.0,
        recursive=True,
        max_pending_events=4096,
        log_file=None,
        log_level="INFO",
    )


@pytest.fixture
def mock_signal() -> Generator[MagicMock, None, None]:
    """Fixture for mocking signal.signal."""
    with patch("signal.signal") as mock:
        yield mock


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, temp_dir: Path) -> None:
    """Remove RULE_DIR_WATCHER_* variables and isolate config file lookup."""
    for name in list(os.environ):
        if name.startswith("RULE_DIR_WATCHER_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(temp_dir / "xdg"))
    monkeypatch.setenv("HOME", str(temp_dir / "home"))
    monkeypatch.chdir(temp_dir)
