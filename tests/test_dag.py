from __future__ import annotations

import pytest

from jobgraph.dag import JobGraph
from jobgraph.dsl import artifact, job, sh
from jobgraph.errors import CycleError, ValidationError


def _job(name, needs=(), **kwargs):
    return job(name, sh("noop", "ok"), needs=list(needs), **kwargs)


def test_topo_levels_groups_independent_jobs() -> None:
    graph = JobGraph(
        [
            _job("build-test"),
            _job("clippy"),
            _job("build-debian-package"),
            _job("run-ci-ubuntu-latest", ["build-debian-package"]),
            _job("run-ci-debian-10", ["build-debian-package"]),
            _job("create-release", ["run-ci-ubuntu-latest", "run-ci-debian-10"]),
        ]
    )
    assert graph.topo_levels() == [
        ["build-debian-package", "build-test", "clippy"],
        ["run-ci-debian-10", "run-ci-ubuntu-latest"],
        ["create-release"],
    ]


def test_duplicate_names_rejected() -> None:
    with pytest.raises(ValidationError, match="Duplicate job names"):
        JobGraph([_job("a"), _job("a")])


def test_unknown_need_rejected() -> None:
    with pytest.raises(ValidationError, match="needs missing job 'ghost'"):
        JobGraph([_job("a", ["ghost"])])


def test_two_job_cycle_is_reported_with_its_path() -> None:
    graph = JobGraph([_job("a", ["b"]), _job("b", ["a"])])
    with pytest.raises(CycleError) as info:
        graph.validate()
    cycle = info.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b"}
    assert "Dependency cycle detected" in str(info.value)


def test_cycle_ignores_jobs_outside_it() -> None:
    graph = JobGraph(
        [
            _job("root"),
            _job("x", ["root", "z"]),
            _job("y", ["x"]),
            _job("z", ["y"]),
        ]
    )
    with pytest.raises(CycleError) as info:
        graph.topo_levels()
    assert set(info.value.cycle) == {"x", "y", "z"}
    assert len(info.value.cycle) == 4


def test_self_dependency_is_a_cycle() -> None:
    with pytest.raises(CycleError):
        JobGraph([_job("a", ["a"])]).validate()


def test_non_callable_condition_rejected() -> None:
    graph = JobGraph([_job("a", condition="github.event.release")])
    with pytest.raises(ValidationError, match="not callable"):
        graph.validate()


def test_consumed_artifact_needs_a_producer() -> None:
    graph = JobGraph([_job("a", consumes=["deb-package"])])
    with pytest.raises(ValidationError, match="no job produces"):
        graph.validate()


def test_consumer_must_transitively_need_the_producer() -> None:
    graph = JobGraph(
        [
            _job("pkg", produces=[artifact("deb-package", "*.deb")]),
            _job("ci", consumes=["deb-package"]),
        ]
    )
    with pytest.raises(ValidationError, match="does not \\(transitively\\) need it"):
        graph.validate()


def test_transitive_producer_is_accepted() -> None:
    graph = JobGraph(
        [
            _job("pkg", produces=[artifact("deb-package", "*.deb")]),
            _job("ci", ["pkg"]),
            _job("release", ["ci"], consumes=["deb-package"]),
        ]
    )
    graph.validate()
    assert graph.ancestors("release") == {"ci", "pkg"}


def test_artifact_with_two_producers_rejected() -> None:
    graph = JobGraph(
        [
            _job("a", produces=[artifact("out", "a.txt")]),
            _job("b", produces=[artifact("out", "b.txt")]),
        ]
    )
    with pytest.raises(ValidationError, match="produced by both"):
        graph.producers()


def test_ready_set_waits_for_every_need() -> None:
    graph = JobGraph([_job("a"), _job("b"), _job("c", ["a", "b"])])
    assert graph.ready_set(set(), set()) == {"a", "b"}
    assert graph.ready_set({"a"}, set(), started={"b"}) == set()
    assert graph.ready_set({"a", "b"}, set()) == {"c"}


def test_skip_set_returns_one_frontier_at_a_time() -> None:
    graph = JobGraph([_job("a"), _job("b", ["a"]), _job("c", ["b"])])
    assert graph.skip_set({"a"}, set()) == {"b"}
    assert graph.skip_set({"a"}, {"b"}) == {"c"}
