"""Rule folder watcher.

This package watches a rules folder recursively and rebuilds a versioned rule
artifact whenever anything under it is created, deleted or modified.
"""

__version__ = "0.1.0"
