import unittest

from skillpm.errors import DependencyError, SkillNotFoundError
from skillpm.manifest import DependencyRef
from skillpm.registry import SkillVersionRecord
from skillpm.resolver import DependencyResolver, LRUCache, exact_version


def _record(name: str, version: str = "1.0.0", deps=(), external=()) -> SkillVersionRecord:
    return SkillVersionRecord(
        name=name,
        version=version,
        description=f"{name} skill",
        author="tester",
        owner="owner",
        content_id=(name + "-" * 43)[:43],
        dependencies=tuple(DependencyRef.from_raw(d) for d in deps),
        external_requirements=tuple(external),
    )


class _FakeRegistry:
    def __init__(self, *records: SkillVersionRecord) -> None:
        self.records: dict[str, dict[str, SkillVersionRecord]] = {}
        self.latest: dict[str, str] = {}
        for r in records:
            self.records.setdefault(r.name, {})[r.version] = r
            self.latest[r.name] = r.version
        self.calls: list[tuple[str, str | None]] = []

    async def get_skill(self, name, version=None):
        self.calls.append((name, version))
        versions = self.records.get(name)
        if versions is None:
            return None
        return versions.get(version or self.latest[name])


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class TestResolve(unittest.IsolatedAsyncioTestCase):
    def _resolver(self, registry, **kwargs) -> tuple[DependencyResolver, _Sleeps]:
        sleeps = _Sleeps()
        return DependencyResolver(registry, sleep=sleeps, **kwargs), sleeps

    async def test_returns_each_transitive_dependency_once(self) -> None:
        registry = _FakeRegistry(
            _record("a", deps=["b", "c"]),
            _record("b", deps=["d"]),
            _record("c", deps=["d"]),
            _record("d"),
        )
        resolver, _ = self._resolver(registry)

        tree = await resolver.resolve("a")

        keys = [n.key for n in tree.flat_list]
        self.assertEqual(tree.total_count, 4)
        self.assertEqual(len(set(keys)), 4)
        self.assertEqual(keys[0], "a@1.0.0")
        self.assertEqual(tree.max_depth, 2)
        self.assertEqual(tree.installed_count, 0)
        self.assertEqual([c.name for c in tree.root.children], ["b", "c"])

    async def test_concurrent_lookups_for_the_same_skill_are_shared(self) -> None:
        registry = _FakeRegistry(
            _record("a", deps=["b", "c"]),
            _record("b", deps=["d"]),
            _record("c", deps=["d"]),
            _record("d"),
        )
        resolver, _ = self._resolver(registry)

        await resolver.resolve("a")

        self.assertEqual(sum(1 for name, _ in registry.calls if name == "d"), 1)

    async def test_cycle_fails_with_path(self) -> None:
        registry = _FakeRegistry(
            _record("a", deps=["b"]),
            _record("b", deps=["c"]),
            _record("c", deps=["a"]),
        )
        resolver, _ = self._resolver(registry)

        with self.assertRaises(DependencyError) as ctx:
            await resolver.resolve("a")

        self.assertIn("Circular dependency", str(ctx.exception))
        self.assertEqual(ctx.exception.dependency_path, ["a", "b", "c", "a"])

    async def test_depth_limit_stops_before_querying_deeper_levels(self) -> None:
        registry = _FakeRegistry(*[_record(f"s{i}", deps=[f"s{i + 1}"]) for i in range(5)], _record("s5"))
        resolver, _ = self._resolver(registry)

        with self.assertRaises(DependencyError) as ctx:
            await resolver.resolve("s0", max_depth=2)

        self.assertIn("depth limit exceeded", str(ctx.exception))
        self.assertEqual(ctx.exception.dependency_path, ["s0", "s1", "s2", "s3"])
        self.assertEqual([name for name, _ in registry.calls], ["s0", "s1", "s2"])

    async def test_missing_root_is_skill_not_found(self) -> None:
        resolver, _ = self._resolver(_FakeRegistry())
        with self.assertRaises(SkillNotFoundError):
            await resolver.resolve("ghost")

    async def test_missing_dependency_names_the_requiring_chain(self) -> None:
        resolver, _ = self._resolver(_FakeRegistry(_record("a", deps=["ghost"])))

        with self.assertRaises(DependencyError) as ctx:
            await resolver.resolve("a")

        self.assertNotIsInstance(ctx.exception, SkillNotFoundError)
        self.assertEqual(ctx.exception.dependency_name, "ghost")
        self.assertIn("required by a", str(ctx.exception))

    async def test_delay_applies_only_between_cache_misses(self) -> None:
        registry = _FakeRegistry(_record("a", deps=["b"]), _record("b"))
        resolver, sleeps = self._resolver(registry, lookup_delay_s=0.25)

        await resolver.resolve("a")
        self.assertEqual(sleeps.delays, [0.25])
        self.assertEqual(len(registry.calls), 2)

        # Second resolve is served entirely from the cache.
        await resolver.resolve("a")
        self.assertEqual(sleeps.delays, [0.25])
        self.assertEqual(len(registry.calls), 2)

    async def test_exact_version_constraint_is_honoured(self) -> None:
        registry = _FakeRegistry(
            _record("a", deps=[{"name": "b", "version": "1.0.0"}]),
            _record("b", "1.0.0"),
            _record("b", "2.0.0"),
        )
        resolver, _ = self._resolver(registry)

        tree = await resolver.resolve("a")

        self.assertEqual(tree.root.children[0].version, "1.0.0")
        self.assertIn(("b", "1.0.0"), registry.calls)

    async def test_installed_nodes_are_not_expanded(self) -> None:
        registry = _FakeRegistry(_record("a", deps=["b"]), _record("b", deps=["c"]), _record("c"))
        resolver, _ = self._resolver(registry)

        tree = await resolver.resolve("a", is_installed=lambda name, version: name == "b")

        self.assertEqual([n.name for n in tree.flat_list], ["a", "b"])
        self.assertEqual(tree.installed_count, 1)
        self.assertNotIn("c", [name for name, _ in registry.calls])

    async def test_installed_nodes_expand_when_not_skipping(self) -> None:
        registry = _FakeRegistry(_record("a", deps=["b"]), _record("b", deps=["c"]), _record("c"))
        resolver, _ = self._resolver(registry)

        tree = await resolver.resolve("a", skip_installed=False, is_installed=lambda name, version: name == "b")

        self.assertEqual([n.name for n in tree.flat_list], ["a", "b", "c"])

    async def test_external_requirements_are_reported_not_resolved(self) -> None:
        registry = _FakeRegistry(_record("a", deps=["mcp__browser", "b"], external=["mcp__search"]), _record("b"))
        resolver, _ = self._resolver(registry)

        tree = await resolver.resolve("a")

        self.assertEqual([c.name for c in tree.root.children], ["b"])
        self.assertEqual(tree.root.external_requirements, ("mcp__search", "mcp__browser"))
        self.assertNotIn("mcp__browser", [name for name, _ in registry.calls])


class TestLRUCache(unittest.TestCase):
    def test_evicts_least_recently_used(self) -> None:
        cache: LRUCache[str, int] = LRUCache(2)
        cache.put("a", 1)
        cache.put("b", 2)
        self.assertEqual(cache.get("a"), 1)
        cache.put("c", 3)

        self.assertIn("a", cache)
        self.assertNotIn("b", cache)
        self.assertIn("c", cache)
        self.assertEqual(len(cache), 2)

    def test_rejects_zero_capacity(self) -> None:
        with self.assertRaises(ValueError):
            LRUCache(0)


class TestExactVersion(unittest.TestCase):
    def test_exact_forms(self) -> None:
        self.assertEqual(exact_version("1.2.3"), "1.2.3")
        self.assertEqual(exact_version("=1.2.3"), "1.2.3")
        self.assertEqual(exact_version("v1.2.3"), "1.2.3")

    def test_ranges_fall_back_to_latest(self) -> None:
        self.assertIsNone(exact_version(None))
        self.assertIsNone(exact_version("^1.0.0"))
        self.assertIsNone(exact_version(">=1.0.0 <2.0.0"))
