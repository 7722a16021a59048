# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class JobGraphError(Exception):
    """Base class for every error raised by jobgraph."""


class ValidationError(JobGraphError):
    """
    The pipeline definition cannot be executed.

    Raised before any job is dispatched; never retried.
    """


class CycleError(ValidationError):
    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


@dataclass
class InfrastructureFailure(JobGraphError):
    """
    The environment or the artifact store failed, not the job's own steps.

    The scheduler may retry these a bounded number of times.
    """
    job: str
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"infrastructure: {self.message}", f"job={self.job}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class StepFailure(JobGraphError):
    job: str
    step: str
    cmd: str
    exit_code: int | None
    output: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class ArtifactNotFound(JobGraphError):
    run_id: str
    name: str

    def __str__(self) -> str:
        return f"artifact '{self.name}' not found for run {self.run_id}"


@dataclass
class ReleaseError(JobGraphError):
    """
    Publishing a release failed.

    `ambiguous` is True when the release may or may not exist remotely;
    such failures are reported to the operator and never retried.
    """
    tag: str
    message: str
    ambiguous: bool = False

    def __str__(self) -> str:
        suffix = " (state unknown, check before re-publishing)" if self.ambiguous else ""
        return f"release {self.tag}: {self.message}{suffix}"
