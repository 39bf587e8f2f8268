"""Glob matching for install and config exclusion lists.

Patterns follow gitignore syntax (``pathspec``'s ``gitwildmatch``) with two
differences: they are anchored at the package root, and they are matched
case-insensitively. ``*`` and ``?`` never cross a directory boundary, ``**``
matches any number of whole directories, and a pattern ending in ``/`` or
``/**`` excludes everything below that directory.
"""

from __future__ import annotations

from collections.abc import Iterable

import pathspec

# Appended to the last segment of patterns and to every path, so that a match
# on a directory does not spill over to the files below it
_END = "\x00"


def _to_gitwildmatch(pattern: str) -> str:
    negate = pattern.startswith("!")
    normalised = pattern.removeprefix("!").replace("\\", "/").strip().casefold()
    if not (normalised.endswith("/") or normalised.endswith("**")):
        normalised += _END
    anchored = "/" + normalised.lstrip("/")
    return f"!{anchored}" if negate else anchored


class ExcludingMatcher:
    """Accepts every path except those matched by one of the exclusion patterns."""

    def __init__(self, exclusions: Iterable[str] = ()) -> None:
        lines = [_to_gitwildmatch(p) for p in exclusions if p.strip()]
        self._spec = pathspec.PathSpec.from_lines("gitwildmatch", lines)

    def matches(self, relative_path: str) -> bool:
        candidate = relative_path.replace("\\", "/").strip("/").casefold()
        return not self._spec.match_file(candidate + _END)


def excluding_patterns(exclusions: Iterable[str]) -> ExcludingMatcher:
    return ExcludingMatcher(exclusions)
