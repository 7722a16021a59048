from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from jobgraph.artifacts import MemoryArtifactStore
from jobgraph.environments.base import EnvironmentHandle, ExecutionResult, Provisioner
from jobgraph.errors import InfrastructureFailure
from jobgraph.model import EnvironmentDescriptor, Step
from jobgraph.scheduler import RetryPolicy, Scheduler
from jobgraph.trigger import Event, TriggerParameters, resolve
from jobgraph.ui.console import Console, set_console


class FakeProvisioner(Provisioner):
    """
    In-process environment. Each step's `run` is a tiny command language:

      ok                  succeed
      exit N              fail with exit code N
      sleep S             sleep S seconds, then succeed
      write PATH TEXT     write TEXT to PATH in the workspace
      check PATH          exit 1 unless PATH exists in the workspace
      hang                report a timeout
      boom                raise RuntimeError
    """

    def __init__(self, root: Path, *, provision_failures: Optional[Dict[str, int]] = None):
        super().__init__(workspace_root=root / "work", source_root=root / "src")
        self.provision_failures = dict(provision_failures or {})
        self.provisioned: List[str] = []
        self.torn_down: List[str] = []
        self.envs: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()

    def provision(
        self,
        descriptor: EnvironmentDescriptor,
        *,
        job: str,
        checkout: Optional[str] = ".",
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> EnvironmentHandle:
        with self._lock:
            self.provisioned.append(job)
            if self.provision_failures.get(job, 0) > 0:
                self.provision_failures[job] -= 1
                raise InfrastructureFailure(job=job, message="environment unavailable")
            self.envs[job] = dict(env or {})
        handle_id, workspace = self._new_workspace(job, None)
        return EnvironmentHandle(
            id=handle_id, descriptor=descriptor, workspace=workspace, job=job, env=dict(env or {})
        )

    def execute(
        self,
        handle: EnvironmentHandle,
        steps: Sequence[Step],
        *,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ExecutionResult:
        ran: List[str] = []
        for step in steps:
            ran.append(step.name)
            op, _, rest = step.run.partition(" ")
            failed = None
            if op == "exit":
                failed = ExecutionResult(ok=False, exit_code=int(rest), output=f"exit {rest}")
            elif op == "sleep":
                time.sleep(float(rest))
            elif op == "write":
                path, _, text = rest.partition(" ")
                target = handle.workspace / path
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(text, encoding="utf-8")
            elif op == "check":
                if not (handle.workspace / rest).exists():
                    failed = ExecutionResult(ok=False, exit_code=1, output=f"missing {rest}")
            elif op == "hang":
                failed = ExecutionResult(ok=False, timed_out=True)
            elif op == "boom":
                raise RuntimeError("provisioner exploded")
            if failed is not None:
                failed.failed_step = step.name
                failed.command = step.run
                failed.steps_run = ran
                return failed
        return ExecutionResult(ok=True, exit_code=0, output="ok", steps_run=ran)

    def teardown(self, handle: EnvironmentHandle) -> None:
        with self._lock:
            self.torn_down.append(handle.job)
        self._remove_workspace(handle.workspace)


def params_for(kind: str = "push", tag: Optional[str] = None) -> TriggerParameters:
    return resolve(Event(kind=kind, tag=tag))


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(quiet=True))
    yield
    set_console(Console())


@pytest.fixture()
def fake(tmp_path: Path) -> FakeProvisioner:
    (tmp_path / "src").mkdir()
    return FakeProvisioner(tmp_path)


@pytest.fixture()
def store() -> MemoryArtifactStore:
    return MemoryArtifactStore()


@pytest.fixture()
def make_scheduler(fake: FakeProvisioner, store: MemoryArtifactStore):
    def _make(**kwargs) -> Scheduler:
        kwargs.setdefault("max_workers", 4)
        kwargs.setdefault("retry", RetryPolicy(infrastructure_retries=1))
        kwargs.setdefault("keep_artifacts", True)
        provisioners = kwargs.pop("provisioners", {"host": fake, "container": fake})
        return Scheduler(provisioners, kwargs.pop("store", store), **kwargs)

    return _make
