from .dsl import job, sh, host, container, artifact, matrix, wf, release, pipeline, JobBuilder, build, Pipeline
from .model import Job, Step, JobStatus, Outcome
from .runner import load_workflow, run_pipeline
from .scheduler import Scheduler, RetryPolicy
from .trigger import Event, EventKind, always, on_release, on_events

__all__ = [
    "job",
    "sh",
    "host",
    "container",
    "artifact",
    "matrix",
    "wf",
    "release",
    "pipeline",
    "JobBuilder",
    "build",
    "Pipeline",
    "Job",
    "Step",
    "JobStatus",
    "Outcome",
    "load_workflow",
    "run_pipeline",
    "Scheduler",
    "RetryPolicy",
    "Event",
    "EventKind",
    "always",
    "on_release",
    "on_events",
]
