"""Recursive dependency resolution against the registry."""

from __future__ import annotations

import asyncio
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Hashable, TypeVar

from .client import RegistryClient
from .errors import DependencyError, SkillNotFoundError
from .graph import detect_cycles, node_key
from .manifest import EXTERNAL_REQUIREMENT_PREFIX, DependencyRef
from .registry import SkillVersionRecord

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 10
DEFAULT_CACHE_CAPACITY = 100
DEFAULT_LOOKUP_DELAY_S = 0.1

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_EXACT_VERSION_RE = re.compile(r"^[=v]?(\d+\.\d+\.\d+)$")


class LRUCache(Generic[K, V]):
    def __init__(self, capacity: int = DEFAULT_CACHE_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._data: OrderedDict[K, V] = OrderedDict()

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def get(self, key: K) -> V | None:
        if key not in self._data:
            return None
        self._data.move_to_end(key)
        return self._data[key]

    def put(self, key: K, value: V) -> None:
        self._data[key] = value
        self._data.move_to_end(key)
        while len(self._data) > self.capacity:
            self._data.popitem(last=False)

    def clear(self) -> None:
        self._data.clear()


@dataclass
class DependencyNode:
    name: str
    version: str
    content_id: str
    depth: int = 0
    children: list["DependencyNode"] = field(default_factory=list)
    already_installed: bool = False
    external_requirements: tuple[str, ...] = ()

    @property
    def key(self) -> str:
        return node_key(self)


@dataclass(frozen=True)
class DependencyTree:
    root: DependencyNode
    flat_list: list[DependencyNode]
    max_depth: int
    total_count: int
    installed_count: int


def exact_version(constraint: str | None) -> str | None:
    """Map a declared constraint to a single version, or None for latest."""
    if not constraint:
        return None
    m = _EXACT_VERSION_RE.match(constraint.strip())
    if m:
        return m.group(1)
    logger.debug("version constraint %r is not an exact version; using latest", constraint)
    return None


def flatten(root: DependencyNode) -> list[DependencyNode]:
    """Pre-order walk, keeping the first occurrence of each name@version."""
    seen: set[str] = set()
    out: list[DependencyNode] = []

    def walk(node: DependencyNode) -> None:
        if node.key not in seen:
            seen.add(node.key)
            out.append(node)
        for child in node.children:
            walk(child)

    walk(root)
    return out


InstalledCheck = Callable[[str, str], bool]


class DependencyResolver:
    def __init__(
        self,
        registry: RegistryClient,
        *,
        cache_capacity: int = DEFAULT_CACHE_CAPACITY,
        lookup_delay_s: float = DEFAULT_LOOKUP_DELAY_S,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.cache: LRUCache[tuple[str, str | None], SkillVersionRecord] = LRUCache(cache_capacity)
        self.lookup_delay_s = lookup_delay_s
        self._sleep = sleep
        self._in_flight: dict[tuple[str, str | None], asyncio.Task[SkillVersionRecord | None]] = {}
        self._miss_lock: asyncio.Lock | None = None
        self._miss_count = 0

    def _reset(self) -> None:
        self._in_flight = {}
        self._miss_lock = asyncio.Lock()
        self._miss_count = 0

    async def resolve(
        self,
        name: str,
        *,
        version: str | None = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
        skip_installed: bool = True,
        is_installed: InstalledCheck | None = None,
    ) -> DependencyTree:
        self._reset()
        try:
            root = await self._build(
                DependencyRef(name=name, version_constraint=version),
                depth=0,
                path=(),
                max_depth=max_depth,
                skip_installed=skip_installed,
                is_installed=is_installed,
            )
        finally:
            for task in self._in_flight.values():
                if not task.done():
                    task.cancel()
            self._in_flight = {}

        cycles = detect_cycles(root)
        if cycles:
            described = "\n".join(f"  - {c.describe()}" for c in cycles)
            first = cycles[0]
            raise DependencyError(
                f"Circular dependency detected:\n{described}",
                dependency_name=first.repeated.split("@", 1)[0],
                dependency_path=list(first.path),
                remedy="Remove circular dependencies from skill manifests.",
            )

        flat = flatten(root)
        tree = DependencyTree(
            root=root,
            flat_list=flat,
            max_depth=max(n.depth for n in flat),
            total_count=len(flat),
            installed_count=sum(1 for n in flat if n.already_installed),
        )
        logger.debug(
            "resolved %s: %d nodes (%d already installed), depth %d",
            root.key,
            tree.total_count,
            tree.installed_count,
            tree.max_depth,
        )
        return tree

    async def _build(
        self,
        ref: DependencyRef,
        *,
        depth: int,
        path: tuple[str, ...],
        max_depth: int,
        skip_installed: bool,
        is_installed: InstalledCheck | None,
    ) -> DependencyNode:
        full_path = [*path, ref.name]
        # Ancestors on this branch are the nodes currently being expanded.
        if ref.name in path:
            start = path.index(ref.name)
            cycle = full_path[start:]
            raise DependencyError(
                f"Circular dependency detected: {' → '.join(cycle)}",
                dependency_name=ref.name,
                dependency_path=full_path,
                remedy="Remove circular dependencies from skill manifests.",
            )
        if depth > max_depth:
            raise DependencyError(
                f"Dependency depth limit exceeded (max: {max_depth} levels). Path: {' → '.join(full_path)}",
                dependency_name=ref.name,
                dependency_path=full_path,
                remedy="Reduce dependency nesting or check for circular dependencies.",
            )

        record = await self._lookup(ref.name, exact_version(ref.version_constraint))
        if record is None:
            if path:
                raise DependencyError(
                    f"Dependency '{ref.name}' not found in registry (required by {' → '.join(path)})",
                    dependency_name=ref.name,
                    dependency_path=full_path,
                    remedy="Verify the skill name and ensure it has been published.",
                )
            raise SkillNotFoundError(ref.name, ref.version_constraint, dependency_path=full_path)

        installed = bool(is_installed and is_installed(record.name, record.version))
        node = DependencyNode(
            name=record.name,
            version=record.version,
            content_id=record.content_id,
            depth=depth,
            already_installed=installed,
            external_requirements=_external_requirements(record),
        )
        if installed and skip_installed:
            logger.debug("%s already installed; not expanding", node.key)
            return node

        deps = [d for d in record.dependencies if not d.name.startswith(EXTERNAL_REQUIREMENT_PREFIX)]
        if deps:
            tasks = [
                asyncio.ensure_future(
                    self._build(
                        dep,
                        depth=depth + 1,
                        path=tuple(full_path),
                        max_depth=max_depth,
                        skip_installed=skip_installed,
                        is_installed=is_installed,
                    )
                )
                for dep in deps
            ]
            try:
                node.children = list(await asyncio.gather(*tasks))
            except BaseException:
                for t in tasks:
                    t.cancel()
                raise
        return node

    async def _lookup(self, name: str, version: str | None) -> SkillVersionRecord | None:
        key = (name, version)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch(name, version))
            self._in_flight[key] = task
        return await asyncio.shield(task)

    async def _fetch(self, name: str, version: str | None) -> SkillVersionRecord | None:
        assert self._miss_lock is not None
        async with self._miss_lock:
            if self._miss_count and self.lookup_delay_s > 0:
                await self._sleep(self.lookup_delay_s)
            self._miss_count += 1

        logger.debug("fetching metadata for %s%s", name, f"@{version}" if version else "")
        record = await self.registry.get_skill(name, version)
        if record is not None:
            self.cache.put((name, version), record)
            self.cache.put((name, record.version), record)
        return record


def _external_requirements(record: SkillVersionRecord) -> tuple[str, ...]:
    # Entries misplaced in the dependency list are reported, never resolved.
    misplaced = [d.name for d in record.dependencies if d.name.startswith(EXTERNAL_REQUIREMENT_PREFIX)]
    return tuple(dict.fromkeys([*record.external_requirements, *misplaced]))
