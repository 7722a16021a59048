# jobgraph_workflow.py
# Test and release pipeline for a Rust service shipped as a Debian package.
from __future__ import annotations

from jobgraph.dsl import artifact, container, host, job, matrix, pipeline, release, sh
from jobgraph.trigger import on_release

DEBIAN_10 = "debian:10"


def _debian_deps(*extra: str):
    return sh(
        "Install dependencies",
        " && ".join(
            [
                "apt-get update",
                "apt-get -y install build-essential dpkg-dev ca-certificates sudo curl",
                *extra,
            ]
        ),
    )


def _run_ci(distro: str):
    if distro == "ubuntu-latest":
        runs_on = None
        have_systemd = "1"
    else:
        runs_on = container(DEBIAN_10, sh("Install dependencies", "apt-get update && apt-get -y install build-essential"))
        have_systemd = "0"
    return job(
        f"run-ci-{distro}",
        sh("CI", "ci/test.sh"),
        runs_on=runs_on,
        needs=["build-debian-package"],
        consumes=["deb-package"],
        env={"HAVE_SYSTEMD": have_systemd},
    )


RUN_CI = matrix("distro", ["ubuntu-latest", "debian-10"])


def workflow():
    return pipeline(
        job(
            "build-test",
            sh("Build", "cargo build --verbose"),
            sh("Run tests", "cargo test --verbose"),
            runs_on=host("rust"),
            env={"CARGO_TERM_COLOR": "always"},
        ),
        job(
            "coverage",
            sh("Generate code coverage", "cargo tarpaulin --all-features --workspace --timeout 120 --out xml"),
            runs_on=container(
                "xd009642/tarpaulin:develop",
                options=["--security-opt", "seccomp=unconfined"],
                toolchain="rust",
            ),
            env={"CARGO_TERM_COLOR": "always"},
        ),
        job(
            "build-debian-10",
            sh("Build", "cargo build --verbose"),
            runs_on=container(DEBIAN_10, _debian_deps("apt-get -y build-dep ."), toolchain="rust"),
            env={"CARGO_TERM_COLOR": "always"},
        ),
        job(
            "clippy",
            sh("Install clippy", "rustup component add clippy"),
            sh("rust-clippy-check", "cargo clippy --all-targets -- -D warnings"),
            runs_on=host("rust"),
        ),
        job(
            "build-debian-package",
            sh("Vendor", "debian/rules vendor", cwd="clone"),
            sh("Build package", "dpkg-buildpackage --no-sign", cwd="clone"),
            runs_on=container(DEBIAN_10, _debian_deps("cd clone", "apt-get build-dep -y ."), toolchain="rust"),
            checkout="clone",
            # the package files land next to the checkout
            produces=[artifact("deb-package", "*", "!clone/**")],
        ),
        RUN_CI.jobs(_run_ci),
        job(
            "create-release",
            sh("List release files", "ls -la"),
            needs=RUN_CI.names(lambda d: f"run-ci-{d}"),
            consumes=["deb-package"],
            condition=on_release,
            checkout=None,
        ),
        release=release(
            requires=RUN_CI.names(lambda d: f"run-ci-{d}"),
            artifacts=["deb-package"],
        ),
        name="test",
    )
