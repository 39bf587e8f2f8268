"""Locate the installable root(s) inside an extracted package.

A package is laid out arbitrarily by its author: the payload may sit at the
top level or be wrapped in one or more folders (``MyMod/v2/Vehicles/...``).
The root is the directory that *contains* a recognised content-type folder
such as ``Vehicles`` or ``Tracks``. Nested roots are collapsed into their
shallowest ancestor.
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterable
from dataclasses import dataclass, field

_SEPARATORS = re.compile(r"[\\/]+")


def _segments(path: str) -> list[str]:
    return [s for s in _SEPARATORS.split(path) if s and s != "."]


@dataclass
class RootPaths:
    roots: list[str] = field(default_factory=list)

    def path_from_root(self, path: str) -> str | None:
        """Return *path* relative to the first root containing it, or ``None``."""
        path_segments = _segments(path)
        for root in self.roots:
            root_segments = _segments(root)
            # Segment-wise comparison so that "D1" is not an ancestor of "D11"
            if path_segments[: len(root_segments)] == root_segments:
                rest = path_segments[len(root_segments) :]
                return os.path.join(*rest) if rest else ""
        return None

    def add_if_ancestor_not_present(self, path: str) -> RootPaths:
        if self.path_from_root(path) is None:
            self.roots.append(path)
        return self

    def __bool__(self) -> bool:
        return bool(self.roots)


class ContainedDirsRootFinder:
    """Finds roots by the content-type directories they contain."""

    def __init__(self, dirs_at_root: Iterable[str]) -> None:
        self._dirs_at_root = frozenset(d.casefold() for d in dirs_at_root)

    def _candidate(self, directory: str) -> str | None:
        before_marker: list[str] = []
        for segment in _segments(directory):
            if segment.casefold() in self._dirs_at_root:
                return os.path.join(*before_marker) if before_marker else ""
            before_marker.append(segment)
        return None

    def from_directory_list(self, directories: Iterable[str]) -> RootPaths:
        candidates = {c for d in directories if (c := self._candidate(d)) is not None}
        roots = RootPaths()
        # Sorted so that ancestors are always seen before their descendants
        for candidate in sorted(candidates, key=_segments):
            roots.add_if_ancestor_not_present(candidate)
        return roots
