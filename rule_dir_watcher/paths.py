"""Path helpers shared by the rule artifact builder."""

from __future__ import annotations

import os
from pathlib import Path, PurePath
from typing import Optional, Union

__all__ = ["relative_path"]


def relative_path(file_path: Union[str, PurePath], folder_path: Union[str, PurePath]) -> Optional[str]:
    """Return ``file_path`` relative to ``folder_path`` using forward slashes.

    The comparison is purely lexical: neither path is touched on disk and
    symlinks are not resolved.

    Args:
        file_path (Union[str, PurePath]): Absolute path of the file.
        folder_path (Union[str, PurePath]): Absolute path of the base folder.

    Returns:
        Optional[str]: The relative path (e.g. ``"sub/rules.toml"``), or None
        if ``file_path`` is not inside ``folder_path``.

    Examples:
        >>> relative_path("/srv/rules/a/b.toml", "/srv/rules")
        'a/b.toml'
        >>> relative_path("/srv/other/b.toml", "/srv/rules") is None
        True
    """
    file_parts = Path(os.path.normpath(file_path)).parts
    folder_parts = Path(os.path.normpath(folder_path)).parts
    if len(file_parts) <= len(folder_parts) or file_parts[: len(folder_parts)] != folder_parts:
        return None
    return "/".join(file_parts[len(folder_parts):])
