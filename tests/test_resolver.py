import pytest

from cellar.modules.resolver import PENDING, SKIPPED, Resolver
from cellar.modules.state import InstalledRecord


def plan_for(builder, store, roots, flags=None, reinstall=()):
    graph = builder.build_graph(roots, flags)
    return Resolver(store, reinstall=reinstall).plan(graph)


def test_plan_order_and_status(diamond, builder, store):
    plan = plan_for(builder, store, ["d"])
    assert plan.names() == ["a", "b", "c", "d"]
    assert all(t.status == PENDING for t in plan)
    assert plan.roots == ["core/d"]


def test_plan_is_topological(tap, builder, store):
    tap.add("zlib")
    tap.add("libpng", depends=["zlib"])
    tap.add("hdf5", depends=["zlib", {"cmake": "build"}])
    tap.add("cmake")
    tap.add("h5utils", depends=["libpng", "hdf5"])
    plan = plan_for(builder, store, ["h5utils"])
    for task in plan:
        for dep in task.prerequisites:
            assert plan.index_of(dep) < plan.index_of(task.identity)


def test_plan_is_deterministic(diamond, builder, store):
    first = plan_for(builder, store, ["d"]).identities()
    for _ in range(3):
        assert plan_for(builder, store, ["d"]).identities() == first


def test_installed_matching_record_is_skipped(diamond, builder, store, repository):
    a = repository.load("a")
    store.put(InstalledRecord("core/a", a.version, a.source_hash, []))
    plan = plan_for(builder, store, ["d"])
    assert plan.get("core/a").status == SKIPPED
    assert [t.status for t in plan if t.name != "a"] == [PENDING] * 3
    assert plan.names() == ["a", "b", "c", "d"]


def test_record_with_other_options_is_rebuilt(tap, builder, store, repository):
    tap.add("gdal", options=["with-python"])
    gdal = repository.load("gdal")
    store.put(InstalledRecord("core/gdal", gdal.version, gdal.source_hash, ["without-python"]))
    assert plan_for(builder, store, ["gdal"]).get("core/gdal").status == SKIPPED
    assert plan_for(builder, store, ["gdal"], ["with-python"]).get("core/gdal").status == PENDING


def test_record_with_other_source_hash_is_rebuilt(diamond, builder, store):
    store.put(InstalledRecord("core/a", "0.9", "sha256:" + "0" * 64, []))
    assert plan_for(builder, store, ["d"]).get("core/a").status == PENDING


def test_reinstall_forces_pending(diamond, builder, store, repository):
    a = repository.load("a")
    store.put(InstalledRecord("core/a", a.version, a.source_hash, []))
    assert plan_for(builder, store, ["a"], reinstall=["a"]).get("core/a").status == PENDING


def test_build_only_flag(tap, builder, store):
    tap.add("cmake")
    tap.add("zlib")
    tap.add("hdf5", depends=[{"cmake": "build"}, "zlib"])
    plan = plan_for(builder, store, ["hdf5"])
    assert plan.get("core/cmake").build_only
    assert not plan.get("core/zlib").build_only
    assert not plan.get("core/hdf5").build_only
    assert plan.get("core/hdf5").runtime_dependencies == ["core/zlib"]


def test_dependency_reached_both_ways_is_not_build_only(diamond, builder, store):
    plan = plan_for(builder, store, ["d"])
    assert not plan.get("core/a").build_only


def test_transitive_dependents(diamond, builder, store):
    plan = plan_for(builder, store, ["d"])
    assert [t.name for t in plan.transitive_dependents("core/a")] == ["b", "c", "d"]
    assert [t.name for t in plan.transitive_dependents("core/c")] == ["d"]
    assert plan.get("core/a").dependents == ["core/b", "core/c"]


@pytest.mark.parametrize("roots", [["d", "a"], ["a", "d"]])
def test_multiple_roots(diamond, builder, store, roots):
    plan = plan_for(builder, store, roots)
    assert len(plan) == 4
    assert plan.get("core/a").requested
    assert plan.get("core/d").requested
    assert not plan.get("core/a").build_only
