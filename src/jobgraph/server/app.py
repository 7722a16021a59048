from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import sqlalchemy as sa
from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from jobgraph import errors
from jobgraph.dsl import Pipeline
from jobgraph.release import ReleasePlan
from jobgraph.runner import build_scheduler, load_workflow, run_pipeline
from jobgraph.scheduler import PipelineInvocation, Scheduler
from jobgraph.settings import Settings
from jobgraph.trigger import Event
from jobgraph.ui.console import get_console

from .db import make_engine, make_sessionmaker
from .models import Base, InvocationRecord, JobRunRecord

SchedulerFactory = Callable[[Settings, Optional[ReleasePlan]], Scheduler]

# -------------------- Schemas --------------------

class EventIn(BaseModel):
    kind: str
    tag: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)


class ArtifactOut(BaseModel):
    name: str
    sha256: str
    size: int


class JobRunOut(BaseModel):
    name: str
    status: str
    exit_code: Optional[int] = None
    failure_kind: Optional[str] = None
    diagnostics: Optional[str] = None
    skip_reason: Optional[str] = None
    attempts: int = 0
    artifacts: list[ArtifactOut] = Field(default_factory=list)
    logs: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class ReleaseOut(BaseModel):
    action: Optional[str] = None
    reason: Optional[str] = None
    reference: Optional[str] = None
    error: Optional[str] = None


class InvocationSummary(BaseModel):
    id: str
    workflow: str
    event: str
    channel: str
    release_tag: Optional[str] = None
    outcome: str
    started_at: datetime
    ended_at: Optional[datetime] = None


class InvocationOut(InvocationSummary):
    release: Optional[ReleaseOut] = None
    jobs: list[JobRunOut] = Field(default_factory=list)


# -------------------- Conversion --------------------

def _ts(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def to_record(invocation: PipelineInvocation, workflow: str) -> InvocationRecord:
    release = invocation.release
    record = InvocationRecord(
        id=invocation.id,
        workflow=workflow,
        event=invocation.params.event.value,
        channel=invocation.params.channel,
        release_tag=invocation.params.release_tag,
        outcome=invocation.outcome.value,
        release_action=release.decision.action if release else None,
        release_reason=release.decision.reason if release else None,
        release_reference=release.reference if release else None,
        release_error=release.error if release else None,
        started_at=_ts(invocation.started_at),
        ended_at=_ts(invocation.ended_at),
    )
    for position, (name, run) in enumerate(invocation.runs.items()):
        record.jobs.append(
            JobRunRecord(
                position=position,
                job_name=name,
                status=run.status.value,
                exit_code=run.exit_code,
                failure_kind=run.failure_kind,
                diagnostics=run.diagnostics,
                skip_reason=run.skip_reason,
                attempts=run.attempts,
                artifacts_json=[{"name": a.name, "sha256": a.sha256, "size": a.size} for a in run.artifacts],
                logs=run.output or None,
                started_at=_ts(run.started_at),
                ended_at=_ts(run.ended_at),
            )
        )
    return record


def _summary(record: InvocationRecord) -> InvocationSummary:
    return InvocationSummary(
        id=record.id,
        workflow=record.workflow,
        event=record.event,
        channel=record.channel,
        release_tag=record.release_tag,
        outcome=record.outcome,
        started_at=record.started_at,
        ended_at=record.ended_at,
    )


def _detail(record: InvocationRecord) -> InvocationOut:
    release = None
    if record.release_action is not None:
        release = ReleaseOut(
            action=record.release_action,
            reason=record.release_reason,
            reference=record.release_reference,
            error=record.release_error,
        )
    return InvocationOut(
        **_summary(record).model_dump(),
        release=release,
        jobs=[
            JobRunOut(
                name=j.job_name,
                status=j.status,
                exit_code=j.exit_code,
                failure_kind=j.failure_kind,
                diagnostics=j.diagnostics,
                skip_reason=j.skip_reason,
                attempts=j.attempts,
                artifacts=[ArtifactOut(**a) for a in j.artifacts_json or []],
                logs=j.logs,
                started_at=j.started_at,
                ended_at=j.ended_at,
            )
            for j in record.jobs
        ],
    )


# -------------------- App --------------------

def create_app(
    workflow_path: str | Path | None = None,
    settings: Optional[Settings] = None,
    *,
    pipeline: Optional[Pipeline] = None,
    scheduler_factory: Optional[SchedulerFactory] = None,
) -> FastAPI:
    """
    Event intake for one workflow.

    Each POST /events runs a whole invocation on a worker thread, then
    archives it; the response is the archived invocation.
    """
    settings = settings or Settings.from_env()
    if pipeline is None:
        path = workflow_path or settings.workflow
        if path is None:
            raise ValueError("create_app needs a workflow path or a pipeline")
        pipeline = load_workflow(path)
    make_scheduler = scheduler_factory or build_scheduler

    engine = make_engine(settings.database_url)
    sessions = make_sessionmaker(engine)

    app = FastAPI(title="jobgraph event intake")
    app.state.pipeline = pipeline
    app.state.engine = engine

    @app.on_event("startup")
    async def startup() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await engine.dispose()

    @app.post("/events", response_model=InvocationOut)
    async def post_event(body: EventIn):
        event = Event(kind=body.kind, tag=body.tag, payload=body.payload)
        try:
            scheduler = make_scheduler(settings, pipeline.release)
            invocation = await run_in_threadpool(run_pipeline, pipeline, event, settings, scheduler=scheduler)
        except errors.ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))

        record = to_record(invocation, pipeline.name)
        async with sessions() as s:
            async with s.begin():
                s.add(record)
        get_console().print_debug(f"archived invocation {invocation.id} ({invocation.outcome.value})")
        return _detail(record)

    @app.get("/invocations", response_model=list[InvocationSummary])
    async def list_invocations(limit: int = 50):
        async with sessions() as s:
            q = sa.select(InvocationRecord).order_by(InvocationRecord.started_at.desc()).limit(limit)
            records = (await s.execute(q)).scalars().all()
            return [_summary(r) for r in records]

    @app.get("/invocations/{invocation_id}", response_model=InvocationOut)
    async def get_invocation(invocation_id: str):
        """Get one invocation with every job run, including logs."""
        async with sessions() as s:
            record = await s.get(InvocationRecord, invocation_id)
            if not record:
                raise HTTPException(status_code=404, detail="Invocation not found")
            return _detail(record)

    return app
