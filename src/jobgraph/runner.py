# runner.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Dict, Optional

from .artifacts import ArtifactStore, FileArtifactStore, MemoryArtifactStore, RedisArtifactStore
from .dsl import Pipeline, wf
from .environments import DockerProvisioner, HostProvisioner, Provisioner
from .git import commit_metadata
from .model import Job
from .release import DirectoryReleasePublisher, HttpReleasePublisher, ReleasePlan, ReleasePublisher
from .scheduler import PipelineInvocation, RetryPolicy, Scheduler
from .settings import Settings
from .trigger import Event, resolve


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Pipeline:
    """
    Load a workflow from a python file path.

    The file must define one of:
      - workflow() -> List[Job] | Pipeline
      - JOBS = [Job, ...]
    and may define RELEASE = release(...) when workflow() returns a list.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"jobgraph_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    loaded = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        loaded = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        loaded = globals_dict["JOBS"]

    if isinstance(loaded, Pipeline):
        pipeline = loaded
    elif isinstance(loaded, list) and all(isinstance(j, Job) for j in loaded):
        pipeline = Pipeline(jobs=wf(*loaded))
    else:
        raise TypeError(
            "Workflow must return/define a List[Job] or a Pipeline. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...]."
        )

    plan = globals_dict.get("RELEASE")
    if pipeline.release is None and isinstance(plan, ReleasePlan):
        pipeline.release = plan
    if pipeline.name == "pipeline":
        pipeline.name = wf_path.stem
    return pipeline


# ----------------------------------------------------------------------
# Wiring
# ----------------------------------------------------------------------

def build_store(settings: Settings) -> ArtifactStore:
    if settings.artifact_backend == "memory":
        return MemoryArtifactStore()
    if settings.artifact_backend == "redis":
        return RedisArtifactStore(settings.redis_url)
    return FileArtifactStore(settings.artifact_dir)


def build_provisioners(settings: Settings) -> Dict[str, Provisioner]:
    kwargs = {"workspace_root": settings.workspace_root, "source_root": settings.source_root}
    return {
        "host": HostProvisioner(**kwargs),
        "container": DockerProvisioner(**kwargs),
    }


def build_publisher(settings: Settings) -> ReleasePublisher:
    if settings.release_url:
        return HttpReleasePublisher(settings.release_url)
    return DirectoryReleasePublisher(settings.release_dir)


def build_scheduler(
    settings: Settings,
    release_plan: Optional[ReleasePlan] = None,
    *,
    store: Optional[ArtifactStore] = None,
    provisioners: Optional[Dict[str, Provisioner]] = None,
    publisher: Optional[ReleasePublisher] = None,
) -> Scheduler:
    return Scheduler(
        provisioners if provisioners is not None else build_provisioners(settings),
        store if store is not None else build_store(settings),
        max_workers=settings.workers,
        retry=RetryPolicy(infrastructure_retries=settings.infra_retries),
        job_timeout=settings.job_timeout,
        provision_timeout=settings.provision_timeout,
        release_plan=release_plan,
        publisher=publisher if publisher is not None else build_publisher(settings),
        release_metadata=commit_metadata(settings.source_root),
        keep_artifacts=settings.keep_artifacts,
    )


def run_pipeline(
    pipeline: Pipeline,
    event: Event,
    settings: Optional[Settings] = None,
    *,
    scheduler: Optional[Scheduler] = None,
    invocation_id: Optional[str] = None,
) -> PipelineInvocation:
    """Resolve the event once and run the whole graph for it."""
    settings = settings or Settings.from_env()
    params = resolve(event)
    scheduler = scheduler or build_scheduler(settings, pipeline.release)
    return scheduler.run(pipeline.jobs, params, invocation_id=invocation_id)
