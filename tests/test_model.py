from __future__ import annotations

import pytest

from jobgraph.dsl import job, sh
from jobgraph.errors import CycleError, InfrastructureFailure, StepFailure
from jobgraph.model import IllegalTransition, JobRun, JobStatus, RunId


def _run() -> JobRun:
    return JobRun(job=job("build-test", sh("Build", "cargo build")), run_id=RunId("inv", "build-test"))


def test_lifecycle_sets_timestamps() -> None:
    run = _run()
    run.advance(JobStatus.PENDING, JobStatus.READY)
    run.advance(JobStatus.READY, JobStatus.RUNNING)
    assert run.started_at is not None and run.ended_at is None
    run.advance(JobStatus.RUNNING, JobStatus.SUCCEEDED)
    assert run.status.terminal
    assert run.duration is not None and run.duration >= 0


@pytest.mark.parametrize(
    "path",
    [
        [JobStatus.RUNNING],
        [JobStatus.READY, JobStatus.SKIPPED],
        [JobStatus.SKIPPED, JobStatus.READY],
        [JobStatus.READY, JobStatus.RUNNING, JobStatus.SKIPPED],
    ],
)
def test_illegal_transitions_rejected(path) -> None:
    run = _run()
    with pytest.raises(IllegalTransition):
        for new in path:
            run.advance(run.status, new)


def test_terminal_status_is_final() -> None:
    run = _run()
    run.advance(JobStatus.PENDING, JobStatus.SKIPPED)
    for new in JobStatus:
        with pytest.raises(IllegalTransition):
            run.advance(JobStatus.SKIPPED, new)


def test_compare_and_set_rejects_stale_expectation() -> None:
    run = _run()
    run.advance(JobStatus.PENDING, JobStatus.BLOCKED)
    with pytest.raises(IllegalTransition):
        run.advance(JobStatus.PENDING, JobStatus.READY)
    assert run.status is JobStatus.BLOCKED


def test_run_id_string() -> None:
    assert str(RunId("inv1", "clippy")) == "inv1/clippy"


def test_error_messages() -> None:
    assert str(CycleError(["a", "b", "a"])) == "Dependency cycle detected: a -> b -> a"
    assert str(StepFailure(job="ci", step="CI", cmd="ci/test.sh", exit_code=1)) == (
        "[ci] step 'CI' failed (exit=1): ci/test.sh"
    )
    text = str(InfrastructureFailure(job="pkg", message="no docker", details={"hint": "install"}))
    assert text.splitlines() == ["infrastructure: no docker", "job=pkg", "hint=install"]
