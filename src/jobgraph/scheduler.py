# scheduler.py
from __future__ import annotations

import os
import tarfile
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from .artifacts import ArtifactStore, MemoryArtifactStore, pack, unpack
from .dag import JobGraph
from .environments.base import Provisioner, provisioned, toolchain_env
from .errors import ArtifactNotFound, InfrastructureFailure, ReleaseError, StepFailure, ValidationError
from .model import ArtifactRef, Job, JobRun, JobStatus, Outcome, RunId
from .release import ReleasePlan, ReleasePublisher, ReleaseResult, decide
from .trigger import TriggerParameters
from .ui.console import get_console

_STORE_ERRORS = (ArtifactNotFound, OSError, tarfile.TarError, ValueError)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Step failures are never retried. Infrastructure failures (provisioning,
    artifact store) are retried up to `infrastructure_retries` extra times.
    """
    infrastructure_retries: int = 1
    backoff_seconds: float = 0.0


@dataclass
class PipelineInvocation:
    id: str
    params: TriggerParameters
    runs: Dict[str, JobRun]
    outcome: Optional[Outcome] = None
    release: Optional[ReleaseResult] = None
    started_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None

    def statuses(self) -> Dict[str, str]:
        return {name: run.status.value for name, run in self.runs.items()}

    def with_status(self, *statuses: JobStatus) -> Set[str]:
        return {name for name, run in self.runs.items() if run.status in statuses}


@dataclass
class _Completion:
    """Message a worker hands back to the coordinator."""
    name: str
    ok: bool
    exit_code: Optional[int] = None
    output: str = ""
    failure_kind: Optional[str] = None
    diagnostics: Optional[str] = None
    attempts: int = 1
    artifacts: List[ArtifactRef] = field(default_factory=list)


# ---------------------------------------------------------------------
# Scheduling tick (pure)
# ---------------------------------------------------------------------

def evaluate(
    graph: JobGraph,
    statuses: Mapping[str, JobStatus],
    conditions: Mapping[str, bool],
) -> Dict[str, Tuple[JobStatus, Optional[str]]]:
    """
    Decide the next status of every job that has not started yet.

    Returns {name: (status, reason)} only for jobs whose status changes.
    Skips are found one frontier at a time; call again until it returns
    nothing to reach a fixed point.
    """
    succeeded = {n for n, s in statuses.items() if s is JobStatus.SUCCEEDED}
    failed = {n for n, s in statuses.items() if s is JobStatus.FAILED}
    skipped = {n for n, s in statuses.items() if s is JobStatus.SKIPPED}
    waiting = {n for n, s in statuses.items() if s in (JobStatus.PENDING, JobStatus.BLOCKED)}
    started = set(statuses) - waiting - failed - skipped - succeeded

    decisions: Dict[str, Tuple[JobStatus, Optional[str]]] = {}

    for name in graph.skip_set(failed, skipped, started=started | succeeded):
        if name not in waiting:
            continue
        dead = sorted(d for d in graph.needs(name) if d in failed or d in skipped)
        decisions[name] = (JobStatus.SKIPPED, f"needs '{dead[0]}' which {statuses[dead[0]].value}")

    for name in sorted(waiting - set(decisions)):
        if not conditions.get(name, True):
            decisions[name] = (JobStatus.SKIPPED, "condition not met")

    for name in graph.ready_set(succeeded, failed | skipped, started=started):
        if name in waiting and name not in decisions:
            decisions[name] = (JobStatus.READY, None)

    for name in waiting - set(decisions):
        if statuses[name] is JobStatus.PENDING:
            decisions[name] = (JobStatus.BLOCKED, None)

    return decisions


def outcome_of(runs: Mapping[str, JobRun]) -> Outcome:
    """Success iff every job that was not skipped succeeded."""
    ok = all(
        run.status is JobStatus.SUCCEEDED
        for run in runs.values()
        if run.status is not JobStatus.SKIPPED
    )
    return Outcome.SUCCESS if ok else Outcome.FAILURE


# ---------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------

class Scheduler:
    """
    Runs one Job Graph per call to run().

    The calling thread is the coordinator: it is the only writer of Job Run
    status. Jobs execute on a thread pool; workers never touch status and
    report back through _Completion values.
    """

    def __init__(
        self,
        provisioners: Mapping[str, Provisioner],
        store: Optional[ArtifactStore] = None,
        *,
        max_workers: Optional[int] = None,
        retry: RetryPolicy = RetryPolicy(),
        job_timeout: Optional[float] = None,
        provision_timeout: Optional[float] = None,
        release_plan: Optional[ReleasePlan] = None,
        publisher: Optional[ReleasePublisher] = None,
        release_metadata: Optional[dict] = None,
        keep_artifacts: bool = False,
    ):
        self.provisioners = dict(provisioners)
        self.store = store if store is not None else MemoryArtifactStore()
        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(1, c - 1)
        self.max_workers = max_workers
        self.retry = retry
        self.job_timeout = job_timeout
        self.provision_timeout = provision_timeout
        self.release_plan = release_plan
        self.publisher = publisher
        self.release_metadata = dict(release_metadata or {})
        self.keep_artifacts = keep_artifacts
        self.current: Optional[PipelineInvocation] = None

    # -----------------------------------------------------------------
    # Validation
    # -----------------------------------------------------------------

    def prepare(
        self,
        jobs: Union[JobGraph, Iterable[Job]],
        params: TriggerParameters,
    ) -> Tuple[JobGraph, Dict[str, bool]]:
        """
        Validate everything that can be checked before dispatch and
        evaluate each job's condition once for this invocation.
        """
        graph = jobs if isinstance(jobs, JobGraph) else JobGraph(jobs)
        graph.validate()

        for job in graph:
            if job.runs_on.kind not in self.provisioners:
                raise ValidationError(
                    f"Job '{job.name}' runs on '{job.runs_on.kind}' but no provisioner is configured for it"
                )

        if self.release_plan is not None:
            producers = graph.producers()
            for name in self.release_plan.requires:
                if name not in graph.jobs:
                    raise ValidationError(f"Release requires unknown job '{name}'")
            for name in self.release_plan.artifacts:
                if name not in producers:
                    raise ValidationError(f"Release artifact '{name}' is not produced by any job")

        conditions: Dict[str, bool] = {}
        for job in graph:
            try:
                conditions[job.name] = bool(job.condition(params))
            except Exception as e:
                raise ValidationError(f"Job '{job.name}' has a malformed condition: {e}") from e
        return graph, conditions

    # -----------------------------------------------------------------
    # Coordinator
    # -----------------------------------------------------------------

    def run(
        self,
        jobs: Union[JobGraph, Iterable[Job]],
        params: TriggerParameters,
        *,
        invocation_id: Optional[str] = None,
    ) -> PipelineInvocation:
        graph, conditions = self.prepare(jobs, params)
        producers = graph.producers()
        console = get_console()

        inv_id = invocation_id or uuid.uuid4().hex[:12]
        invocation = PipelineInvocation(
            id=inv_id,
            params=params,
            runs={job.name: JobRun(job=job, run_id=RunId(inv_id, job.name)) for job in graph},
        )
        self.current = invocation

        try:
            in_flight: Dict[Future, str] = {}
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                while True:
                    self._settle(graph, invocation, conditions)

                    for name in graph.order:
                        run = invocation.runs[name]
                        if run.status is not JobStatus.READY:
                            continue
                        run.advance(JobStatus.READY, JobStatus.RUNNING)
                        console.print_job_start(name, run.job.runs_on.kind)
                        fut = pool.submit(self._execute, run.job, run.run_id, params, producers)
                        in_flight[fut] = name

                    if not in_flight:
                        break

                    # wait for at least one completion, then recompute the frontier
                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                    for fut in done:
                        name = in_flight.pop(fut)
                        try:
                            completion = fut.result()
                        except Exception as e:
                            completion = _Completion(
                                name=name,
                                ok=False,
                                failure_kind="internal",
                                diagnostics=f"{type(e).__name__}: {e}",
                            )
                        self._record(invocation.runs[name], completion)

            invocation.outcome = outcome_of(invocation.runs)
            self._release(invocation, producers)
            invocation.ended_at = time.time()
            return invocation
        finally:
            if not self.keep_artifacts:
                self.store.expire(inv_id)

    def _settle(self, graph: JobGraph, invocation: PipelineInvocation, conditions: Mapping[str, bool]) -> None:
        console = get_console()
        while True:
            statuses = {name: run.status for name, run in invocation.runs.items()}
            decisions = evaluate(graph, statuses, conditions)
            if not decisions:
                return
            for name, (status, reason) in decisions.items():
                run = invocation.runs[name]
                run.advance(statuses[name], status)
                if status is JobStatus.SKIPPED:
                    run.skip_reason = reason
                    console.print_job_skipped(name, reason or "skipped")

    def _record(self, run: JobRun, c: _Completion) -> None:
        console = get_console()
        run.exit_code = c.exit_code
        run.output = c.output
        run.failure_kind = c.failure_kind
        run.diagnostics = c.diagnostics
        run.attempts = c.attempts
        run.artifacts = list(c.artifacts)
        run.advance(JobStatus.RUNNING, JobStatus.SUCCEEDED if c.ok else JobStatus.FAILED)

        if c.ok:
            for ref in run.artifacts:
                console.print_artifact_published(run.name, ref.name, ref.sha256, ref.size)
        else:
            console.print_failure(
                run.name,
                c.diagnostics or "failed",
                exit_code=c.exit_code,
                hint=f"{c.failure_kind} failure" if c.failure_kind else None,
                output=c.output,
            )
        console.print_job_finished(run.name, run.status.value, run.duration)

    # -----------------------------------------------------------------
    # Worker side
    # -----------------------------------------------------------------

    def step_env(self, job: Job, run_id: RunId, params: TriggerParameters) -> Dict[str, str]:
        env = {
            "JOBGRAPH_INVOCATION": run_id.invocation,
            "JOBGRAPH_JOB": job.name,
            "JOBGRAPH_EVENT": params.event.value,
            "JOBGRAPH_CONTAINERIZED": "1" if job.runs_on.kind == "container" else "0",
        }
        env.update(toolchain_env(job.runs_on, params.channel))
        if params.release_tag:
            env["JOBGRAPH_RELEASE_TAG"] = params.release_tag
        env.update({k: str(v) for k, v in job.env.items()})
        return env

    def _execute(
        self,
        job: Job,
        run_id: RunId,
        params: TriggerParameters,
        producers: Mapping[str, str],
    ) -> _Completion:
        env = self.step_env(job, run_id, params)
        attempts = self.retry.infrastructure_retries + 1
        last: Optional[InfrastructureFailure] = None

        for attempt in range(1, attempts + 1):
            try:
                completion = self._attempt(job, run_id, env, producers)
                completion.attempts = attempt
                return completion
            except InfrastructureFailure as e:
                last = e
                if attempt < attempts:
                    get_console().print_retry(job.name, attempt, attempts - 1, str(e))
                    if self.retry.backoff_seconds:
                        time.sleep(self.retry.backoff_seconds * attempt)

        return _Completion(
            name=job.name,
            ok=False,
            failure_kind="infrastructure",
            diagnostics=str(last),
            attempts=attempts,
        )

    def _attempt(
        self,
        job: Job,
        run_id: RunId,
        env: Dict[str, str],
        producers: Mapping[str, str],
    ) -> _Completion:
        provisioner = self.provisioners[job.runs_on.kind]
        timeout = job.timeout if job.timeout is not None else self.job_timeout

        with provisioned(
            provisioner,
            job.runs_on,
            job=job.name,
            checkout=job.checkout,
            env=env,
            timeout=self.provision_timeout,
        ) as handle:
            for name in job.consumes:
                source = RunId(run_id.invocation, producers[name])
                try:
                    unpack(self.store.fetch(source, name), handle.workspace)
                except _STORE_ERRORS as e:
                    raise InfrastructureFailure(
                        job=job.name,
                        message=f"could not download artifact '{name}'",
                        details={"producer": source.job, "error": e},
                    ) from e

            result = provisioner.execute(handle, job.steps, timeout=timeout)

            if not result.ok:
                if result.timed_out:
                    return _Completion(
                        name=job.name,
                        ok=False,
                        output=result.output,
                        failure_kind="timeout",
                        diagnostics=f"[{job.name}] step '{result.failed_step}' timed out after {timeout}s",
                    )
                failure = StepFailure(
                    job=job.name,
                    step=result.failed_step or "?",
                    cmd=result.command or "",
                    exit_code=result.exit_code,
                    output=result.output,
                )
                return _Completion(
                    name=job.name,
                    ok=False,
                    exit_code=result.exit_code,
                    output=result.output,
                    failure_kind="step",
                    diagnostics=str(failure),
                )

            # pack everything first so a failure publishes nothing
            blobs: Dict[str, bytes] = {}
            for artifact in job.produces:
                blob, files = pack(handle.workspace, artifact.paths)
                if not files:
                    return _Completion(
                        name=job.name,
                        ok=False,
                        exit_code=result.exit_code,
                        output=result.output,
                        failure_kind="step",
                        diagnostics=f"[{job.name}] artifact '{artifact.name}' matched no files: {list(artifact.paths)}",
                    )
                blobs[artifact.name] = blob

            refs: List[ArtifactRef] = []
            for name, blob in blobs.items():
                try:
                    refs.append(self.store.publish(run_id, name, blob))
                except _STORE_ERRORS as e:
                    raise InfrastructureFailure(
                        job=job.name,
                        message=f"could not upload artifact '{name}'",
                        details={"error": e},
                    ) from e

            return _Completion(
                name=job.name,
                ok=True,
                exit_code=result.exit_code,
                output=result.output,
                artifacts=refs,
            )

    # -----------------------------------------------------------------
    # Release
    # -----------------------------------------------------------------

    def _release(self, invocation: PipelineInvocation, producers: Mapping[str, str]) -> None:
        if self.release_plan is None or self.publisher is None:
            return
        params = invocation.params
        decision = decide(self.release_plan, invocation.outcome, invocation.runs, params)
        if decision.action == "not_applicable":
            return

        console = get_console()
        tag = params.release_tag or ""
        result = ReleaseResult(tag=tag, decision=decision)
        invocation.release = result

        if not decision.publish:
            console.print_release(tag, "refused", decision.reason)
            return

        try:
            blobs = {
                name: self.store.fetch(RunId(invocation.id, producers[name]), name)
                for name in self.release_plan.artifacts
            }
        except _STORE_ERRORS as e:
            result.error = f"could not collect release artifacts: {e}"
            invocation.outcome = Outcome.PARTIAL
            console.print_error("Release not published", result.error)
            return

        metadata = dict(self.release_metadata)
        metadata.update({"invocation": invocation.id, "event": params.event.value})
        try:
            # never retried: a second attempt could publish twice
            result.reference = self.publisher.publish(tag, blobs, metadata)
        except ReleaseError as e:
            result.error = str(e)
            invocation.outcome = Outcome.PARTIAL
            console.print_error(
                "Release publish failed",
                str(e),
                suggestion="The release was not retried. Check the release target before publishing again.",
            )
            return

        console.print_release(tag, "published", decision.reason, result.reference)
