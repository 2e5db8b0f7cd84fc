"""Graph helpers over ``blocks`` edges: blocked closure and cycle paths."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping


def build_dependents(edges: Iterable[tuple[str, str]]) -> dict[str, list[str]]:
    """Map ``depends_on_id -> [task_id, ...]`` from ``(task_id, depends_on_id)`` pairs."""

    dependents: dict[str, list[str]] = {}
    for task_id, depends_on_id in edges:
        dependents.setdefault(depends_on_id, []).append(task_id)
    return dependents


def blocked_closure(
    *,
    edges: Iterable[tuple[str, str]],
    unresolved: set[str],
) -> set[str]:
    """Return every task transitively blocked by an unresolved blocker.

    Seeds are the direct dependents of unresolved tasks; the mark is then
    propagated along ``blocks`` edges breadth-first. The visited set keeps
    the walk finite even if a cycle slipped into storage.
    """

    dependents = build_dependents(edges)
    blocked: set[str] = set()
    queue: deque[str] = deque()
    for blocker in unresolved:
        for dependent in dependents.get(blocker, ()):
            if dependent not in blocked:
                blocked.add(dependent)
                queue.append(dependent)

    while queue:
        current = queue.popleft()
        for dependent in dependents.get(current, ()):
            if dependent in blocked:
                continue
            blocked.add(dependent)
            queue.append(dependent)
    return blocked


def find_path(
    dependencies: Mapping[str, Iterable[str]],
    *,
    start: str,
    goal: str,
) -> list[str] | None:
    """Shortest ``start -> ... -> goal`` path following ``task -> depends_on`` edges."""

    if start == goal:
        return [start]
    parents: dict[str, str] = {}
    visited = {start}
    queue: deque[str] = deque([start])
    while queue:
        current = queue.popleft()
        for nxt in dependencies.get(current, ()):
            if nxt in visited:
                continue
            parents[nxt] = current
            if nxt == goal:
                path = [goal]
                while path[-1] != start:
                    path.append(parents[path[-1]])
                return list(reversed(path))
            visited.add(nxt)
            queue.append(nxt)
    return None
