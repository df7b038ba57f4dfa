"""Cycle detection and install ordering over resolved dependency trees."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable

from .errors import InternalError

if TYPE_CHECKING:
    from .resolver import DependencyNode


@dataclass(frozen=True)
class Cycle:
    path: tuple[str, ...]  # node keys, first element repeated at the end
    repeated: str

    def describe(self) -> str:
        return " → ".join(self.path)


def node_key(node: "DependencyNode") -> str:
    return f"{node.name}@{node.version}"


def detect_cycles(root: "DependencyNode") -> list[Cycle]:
    """Return every cycle reachable from ``root``.

    Three-color DFS keyed on name@version. A back-edge to a node that is
    still in progress records the slice of the current path starting at
    that node's first occurrence.
    """
    in_progress: set[str] = set()
    done: set[str] = set()
    path: list[str] = []
    cycles: list[Cycle] = []

    def visit(node: "DependencyNode") -> None:
        key = node_key(node)
        if key in in_progress:
            start = path.index(key)
            cycles.append(Cycle(path=tuple(path[start:]) + (key,), repeated=key))
            return
        if key in done:
            return

        in_progress.add(key)
        path.append(key)
        for child in node.children:
            visit(child)
        path.pop()
        in_progress.discard(key)
        done.add(key)

    visit(root)
    return cycles


def topological_sort(nodes: Iterable["DependencyNode"]) -> list["DependencyNode"]:
    """Kahn's algorithm; every dependency precedes its dependents in the result."""
    by_key: dict[str, "DependencyNode"] = {}
    for node in nodes:
        by_key.setdefault(node_key(node), node)

    # Edge dependency -> dependent.
    dependents: dict[str, list[str]] = {key: [] for key in by_key}
    in_degree: dict[str, int] = {key: 0 for key in by_key}
    for key, node in by_key.items():
        seen_children: set[str] = set()
        for child in node.children:
            child_key = node_key(child)
            if child_key not in by_key or child_key in seen_children:
                continue
            seen_children.add(child_key)
            dependents[child_key].append(key)
            in_degree[key] += 1

    queue = deque(key for key, deg in in_degree.items() if deg == 0)
    ordered: list["DependencyNode"] = []
    while queue:
        key = queue.popleft()
        ordered.append(by_key[key])
        for dependent in dependents[key]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if len(ordered) != len(by_key):
        stuck = sorted(key for key, deg in in_degree.items() if deg > 0)
        raise InternalError(
            f"Topological sort visited {len(ordered)} of {len(by_key)} nodes; unresolved: {', '.join(stuck)}",
            remedy="This is a bug in skillpm. Re-run with --verbose and report the output.",
        )
    return ordered
