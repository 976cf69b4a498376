"""Rule artifact builder.

Collects every rule file from an optional bundled rules folder and from the
watched rules folder into a new immutable, versioned :class:`RuleArtifact`.
Bundled files are loaded first; a watched file with the same relative path
replaces the bundled one. TOML rule files are parsed with ``tomli`` so that a
malformed file fails the build instead of producing a broken artifact.

A failed build is logged and the previously built artifact stays current.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterator, Mapping, Optional, Tuple, Union

import tomli

from rule_dir_watcher.paths import relative_path

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["RuleArtifact", "RuleArtifactBuilder"]

RULE_FILE_ENCODING = "utf-8"
TOML_SUFFIX = ".toml"


@dataclass(frozen=True)
class RuleArtifact:
    """An immutable snapshot of the rule files.

    Attributes:
        version (str): Build time in epoch milliseconds, strictly increasing per process.
        files (Mapping[str, str]): Relative rule path (forward slashes) to file content.
        rules (Mapping[str, Mapping[str, object]]): Parsed content of the TOML rule files.
    """

    version: str
    files: Mapping[str, str] = field(default_factory=dict)
    rules: Mapping[str, Mapping[str, object]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.files)


def _raise_walk_error(error: OSError) -> None:
    raise error


def _iter_rule_files(folder: Path) -> Iterator[Path]:
    """Yield regular files under ``folder``, skipping hidden entries."""
    for dirpath, dirnames, filenames in os.walk(folder, onerror=_raise_walk_error):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for name in sorted(filenames):
            if name.startswith("."):
                continue
            path = Path(dirpath) / name
            if path.is_file():
                yield path


class RuleArtifactBuilder:
    """Build rule artifacts from the bundled and watched rules folders.

    Attributes:
        rules_folder (Optional[Path]): The watched folder, if configured.
        bundled_folder (Optional[Path]): Rules shipped with the deployment, loaded first.
    """

    def __init__(
        self,
        rules_folder: Optional[Union[str, Path]] = None,
        bundled_folder: Optional[Union[str, Path]] = None,
    ) -> None:
        self.rules_folder = Path(rules_folder).absolute() if rules_folder else None
        self.bundled_folder = Path(bundled_folder).absolute() if bundled_folder else None
        self._lock = threading.Lock()
        self._current: Optional[RuleArtifact] = None
        self._last_version = 0
        self.builds_succeeded = 0
        self.builds_failed = 0

    @property
    def current(self) -> Optional[RuleArtifact]:
        """Return the most recently built artifact, or None before the first build."""
        with self._lock:
            return self._current

    def build(self) -> RuleArtifact:
        """Read every rule file and return a new artifact without installing it.

        Returns:
            RuleArtifact: The freshly built artifact.

        Raises:
            OSError: If a rules folder or file cannot be read.
            ValueError: If a rule file is not valid UTF-8 or a TOML rule file is malformed.
        """
        files: Dict[str, str] = {}
        rules: Dict[str, Mapping[str, object]] = {}
        for folder in (self.bundled_folder, self.rules_folder):
            if folder is None:
                continue
            for name, content, parsed in self._load_folder(folder):
                files[name] = content
                if parsed is not None:
                    rules[name] = parsed
                else:
                    rules.pop(name, None)

        return RuleArtifact(
            version=self._next_version(),
            files=MappingProxyType(files),
            rules=MappingProxyType(rules),
        )

    def _load_folder(self, folder: Path) -> Iterator[Tuple[str, str, Optional[Mapping[str, object]]]]:
        for path in _iter_rule_files(folder):
            name = relative_path(path, folder)
            if name is None:
                continue
            content = path.read_text(encoding=RULE_FILE_ENCODING)
            parsed = None
            if path.suffix == TOML_SUFFIX:
                try:
                    parsed = tomli.loads(content)
                except tomli.TOMLDecodeError as e:
                    raise ValueError(f"Malformed rule file {path}: {e}") from e
            logger.debug(f"Added file: {path} as {name}.")
            yield name, content, parsed

    def _next_version(self) -> str:
        with self._lock:
            version = max(int(time.time() * 1000), self._last_version + 1)
            self._last_version = version
        return str(version)

    def rebuild(self) -> Optional[RuleArtifact]:
        """Build a new artifact and make it current.

        A failed build is logged and leaves the current artifact in place.

        Returns:
            Optional[RuleArtifact]: The new artifact, or None if the build failed.
        """
        try:
            artifact = self.build()
        except (OSError, ValueError) as e:
            self.builds_failed += 1
            logger.error(f"Error building new rule artifact: {e}")
            return None

        with self._lock:
            previous = self._current
            self._current = artifact
        self.builds_succeeded += 1
        if previous is not None:
            logger.debug(f"Discarded rule artifact version {previous.version}")
        logger.info(f"New rule artifact built. Version: {artifact.version} ({len(artifact)} files)")
        return artifact
