"""Transitive value collection over a dependency graph.

Used by the updater to find every package a recorded package relies on
through shadowing. Results are memoized per key. A key met again while it is
still being resolved contributes nothing, which stops cycles without raising;
on a cyclic graph the sets of the keys on the cycle may therefore be
incomplete, depending on which key was visited first.
"""

from __future__ import annotations

from collections.abc import Callable, Collection, Hashable, Mapping
from typing import TypeVar

K = TypeVar("K", bound=Hashable)
I = TypeVar("I")  # noqa: E741
V = TypeVar("V", bound=Hashable)


def collect_values(
    items: Mapping[K, I],
    dependencies_of: Callable[[I], Collection[K]],
    value_of: Callable[[I], V],
) -> dict[K, set[V]]:
    """Collect each item's value together with the values of its transitive dependencies.

    Dependency keys that are not in *items* are ignored.
    """
    resolved: dict[K, set[V]] = {}
    in_progress: set[K] = set()

    def resolve(key: K) -> set[V]:
        if key in resolved:
            return resolved[key]
        if key in in_progress:
            return set()
        in_progress.add(key)
        item = items[key]
        values = {value_of(item)}
        for dep in dependencies_of(item):
            if dep in items:
                values |= resolve(dep)
        in_progress.discard(key)
        resolved[key] = values
        return values

    for key in items:
        resolve(key)
    return resolved


def transitive(graph: Mapping[K, Collection[K]]) -> dict[K, set[K]]:
    """Return, for each key in *graph*, every key reachable from it.

    Keys referenced but absent from *graph* are reachable leaves.
    """
    resolved: dict[K, set[K]] = {}
    in_progress: set[K] = set()

    def resolve(key: K) -> set[K]:
        if key in resolved:
            return resolved[key]
        if key in in_progress:
            return set()
        in_progress.add(key)
        reachable: set[K] = set()
        for dep in graph[key]:
            reachable.add(dep)
            if dep in graph:
                reachable |= resolve(dep)
        in_progress.discard(key)
        resolved[key] = reachable
        return reachable

    for key in graph:
        resolve(key)
    return resolved
