# model.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, Union

from .errors import JobGraphError
from .trigger import always


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a job."""
    name: str
    run: str
    cwd: str | None = None


# ---------------------------------------------------------------------
# Environment descriptors
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class HostEnvironment:
    """Run directly on the coordinating host with a selectable toolchain channel."""
    toolchain: str | None = None
    kind: str = field(default="host", init=False)


@dataclass(frozen=True)
class ContainerEnvironment:
    """
    Run inside a container image.

    `bootstrap` steps (package manager setup and the like) run before the
    job's own steps and count as provisioning: if they fail, the failure is
    an infrastructure failure rather than a step failure.
    """
    image: str
    bootstrap: Tuple[Step, ...] = ()
    options: Tuple[str, ...] = ()
    toolchain: str | None = None
    kind: str = field(default="container", init=False)


EnvironmentDescriptor = Union[HostEnvironment, ContainerEnvironment]


@dataclass(frozen=True)
class Artifact:
    """
    Declaration of a named output.

    `paths` are globs relative to the workspace; a leading "!" excludes.
    """
    name: str
    paths: Tuple[str, ...]


# ---------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Job:
    """
    A declared unit of work. Immutable for the lifetime of a run.

    `needs` lists the jobs that must succeed before this one starts.
    `condition` is a predicate over TriggerParameters.
    """
    name: str
    steps: Tuple[Step, ...]
    runs_on: EnvironmentDescriptor = field(default_factory=HostEnvironment)
    needs: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict, hash=False)
    produces: Tuple[Artifact, ...] = ()
    consumes: Tuple[str, ...] = ()
    condition: Callable = field(default=always, hash=False)
    timeout: Optional[float] = None
    checkout: Optional[str] = "."

    @property
    def produced_names(self) -> List[str]:
        return [a.name for a in self.produces]


# ---------------------------------------------------------------------
# Job Run
# ---------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED)


_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.BLOCKED, JobStatus.READY, JobStatus.SKIPPED},
    JobStatus.BLOCKED: {JobStatus.READY, JobStatus.SKIPPED},
    JobStatus.READY: {JobStatus.RUNNING},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED},
}


class IllegalTransition(JobGraphError):
    def __init__(self, job: str, current: JobStatus, wanted: JobStatus):
        self.job = job
        self.current = current
        self.wanted = wanted
        super().__init__(f"job '{job}': cannot move from {current.value} to {wanted.value}")


@dataclass(frozen=True)
class RunId:
    """Identifies one Job Run inside one invocation."""
    invocation: str
    job: str

    def __str__(self) -> str:
        return f"{self.invocation}/{self.job}"


@dataclass(frozen=True)
class ArtifactRef:
    run_id: RunId
    name: str
    sha256: str
    size: int


@dataclass
class JobRun:
    job: Job
    run_id: RunId
    status: JobStatus = JobStatus.PENDING
    started_at: float | None = None
    ended_at: float | None = None
    exit_code: int | None = None
    output: str = ""
    failure_kind: str | None = None   # step | infrastructure | timeout | internal
    diagnostics: str | None = None
    skip_reason: str | None = None
    attempts: int = 0
    artifacts: List[ArtifactRef] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def name(self) -> str:
        return self.job.name

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return self.ended_at - self.started_at

    def advance(self, expected: JobStatus, new: JobStatus) -> None:
        """
        Compare-and-set the status.

        Fails if the run is no longer in `expected` or if the move is not a
        legal lifecycle transition.
        """
        with self._lock:
            if self.status is not expected or new not in _TRANSITIONS.get(expected, ()):
                raise IllegalTransition(self.name, self.status, new)
            self.status = new
            now = time.time()
            if new is JobStatus.RUNNING:
                self.started_at = now
            elif new.terminal:
                self.ended_at = now


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    # every non-skipped job succeeded but the release could not be published
    PARTIAL = "partial"
