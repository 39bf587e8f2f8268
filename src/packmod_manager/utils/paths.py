"""Path helpers shared by installers and the updater.

Relative paths are stored as strings with native separators. State files
written on Windows use backslashes, so anything read back from disk goes
through :func:`to_native_relative` before being joined to a root.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class RootedPath:
    """A location addressed as ``root`` + ``relative``."""

    root: str
    relative: str = ""

    @property
    def full(self) -> str:
        return os.path.join(self.root, self.relative) if self.relative else self.root


def to_native_relative(relative_path: str) -> str:
    """Normalise separators of a relative path to the running OS."""
    if os.sep == "/":
        return relative_path.replace("\\", "/")
    return relative_path.replace("/", os.sep)


def path_key(relative_path: str) -> str:
    """Case- and separator-insensitive key for comparing relative paths."""
    return relative_path.replace("\\", "/").casefold()


def ancestors_up_to(root: str, path: str) -> list[str]:
    """Return the parent directories of *path*, deepest first, stopping before *root*."""
    root = os.path.normpath(root)
    ancestors: list[str] = []
    current = os.path.dirname(os.path.normpath(path))
    while current and current != root:
        parent = os.path.dirname(current)
        if parent == current:
            # Reached the filesystem root without meeting *root*
            return []
        ancestors.append(current)
        current = parent
    return ancestors
