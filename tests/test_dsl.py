from __future__ import annotations

import pytest

from jobgraph.dsl import artifact, build, container, job, matrix, pipeline, release, sh, wf
from jobgraph.model import ContainerEnvironment, HostEnvironment
from jobgraph.trigger import always, on_release


def test_job_defaults() -> None:
    j = job("build-test", sh("Build", "cargo build --verbose"))
    assert isinstance(j.runs_on, HostEnvironment)
    assert j.needs == ()
    assert j.condition is always
    assert j.checkout == "."


def test_job_requires_a_step() -> None:
    with pytest.raises(ValueError, match="at least one step"):
        job("empty")


def test_job_default_cwd_applies_only_to_steps_without_one() -> None:
    j = job("pkg", sh("a", "x"), sh("b", "y", cwd="other"), cwd="clone")
    assert [s.cwd for s in j.steps] == ["clone", "other"]


def test_container_descriptor_keeps_bootstrap_and_options() -> None:
    env = container("debian:10", sh("deps", "apt-get update"), options=["--privileged"], toolchain="rust")
    assert isinstance(env, ContainerEnvironment)
    assert env.kind == "container"
    assert env.bootstrap[0].run == "apt-get update"
    assert env.options == ("--privileged",)


def test_artifact_requires_paths() -> None:
    with pytest.raises(ValueError):
        artifact("deb-package")


def test_builder_matches_functional_form() -> None:
    built = (
        build("create-release")
        .define_step("List", "ls")
        .depends_on("run-ci-ubuntu-latest", "run-ci-debian-10")
        .consumes("deb-package")
        .with_env(HAVE_SYSTEMD=1)
        .when(on_release)
        .timeout(60)
        .build()
    )
    assert built.needs == ("run-ci-ubuntu-latest", "run-ci-debian-10")
    assert built.env == {"HAVE_SYSTEMD": "1"}
    assert built.condition is on_release
    assert built.timeout == 60


def test_matrix_expands_variants_and_wf_flattens() -> None:
    variants = matrix("distro", ["ubuntu-latest", "debian-10"])
    jobs = wf(
        job("build-debian-package", sh("b", "x")),
        variants.jobs(lambda d: job(f"run-ci-{d}", sh("CI", "ci/test.sh"), needs=["build-debian-package"])),
    )
    assert [j.name for j in jobs] == ["build-debian-package", "run-ci-ubuntu-latest", "run-ci-debian-10"]
    assert variants.names(lambda d: f"run-ci-{d}") == ["run-ci-ubuntu-latest", "run-ci-debian-10"]


def test_pipeline_carries_release_plan() -> None:
    p = pipeline(
        job("a", sh("x", "ok"), produces=[artifact("out", "*.deb")]),
        release=release(requires=["a"], artifacts=["out"]),
        name="test",
    )
    assert p.release.requires == ("a",)
    assert p.release.artifacts == ("out",)
    assert p.name == "test"
