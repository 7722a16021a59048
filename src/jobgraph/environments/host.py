# environments/host.py
from __future__ import annotations

import os
import signal
import subprocess
import time
from typing import Dict, Optional, Sequence, Tuple

from ..errors import InfrastructureFailure
from ..model import EnvironmentDescriptor, HostEnvironment, Step
from ..ui.console import get_console
from .base import EnvironmentHandle, ExecutionResult, Provisioner, tail


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def _run_step(cmd: str, *, cwd: str, env: Dict[str, str], timeout: Optional[float]) -> Tuple[int, str]:
    """
    Run one shell step in its own process group.

    On timeout the whole group is killed, so children of the shell do not
    outlive the step, and TimeoutExpired is raised with the output so far.
    """
    proc = subprocess.Popen(
        cmd,
        shell=True,
        cwd=cwd,
        env=env,
        text=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        start_new_session=True,
    )
    try:
        stdout, _ = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill_group(proc)
        stdout, _ = proc.communicate()
        raise subprocess.TimeoutExpired(cmd, timeout, output=stdout)
    except BaseException:
        _kill_group(proc)
        proc.wait()
        raise
    return proc.returncode, stdout


class HostProvisioner(Provisioner):
    """Bare host: a fresh workspace directory, steps run through the shell."""

    def provision(
        self,
        descriptor: EnvironmentDescriptor,
        *,
        job: str,
        checkout: Optional[str] = ".",
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> EnvironmentHandle:
        if not isinstance(descriptor, HostEnvironment):
            raise InfrastructureFailure(
                job=job,
                message="host provisioner cannot prepare this environment",
                details={"descriptor": descriptor},
            )
        try:
            handle_id, workspace = self._new_workspace(job, checkout)
        except OSError as e:
            raise InfrastructureFailure(
                job=job,
                message="could not prepare workspace",
                details={"error": e, "root": self.workspace_root},
            ) from e
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
        full_env = os.environ.copy()
        full_env.update(handle.env)
        full_env.update(env or {})

        deadline = time.monotonic() + timeout if timeout else None
        output: list[str] = []
        ran: list[str] = []

        for step in steps:
            cwd = (handle.workspace / (step.cwd or ".")).resolve()
            if not cwd.is_dir():
                return ExecutionResult(
                    ok=False,
                    failed_step=step.name,
                    command=step.run,
                    output=f"step cwd not found: {cwd}",
                    steps_run=ran,
                )

            remaining = None
            if deadline is not None:
                remaining = max(deadline - time.monotonic(), 0.001)

            get_console().print_step(handle.job, step.name)
            ran.append(step.name)
            try:
                returncode, stdout = _run_step(step.run, cwd=str(cwd), env=full_env, timeout=remaining)
            except subprocess.TimeoutExpired as e:
                output.append(e.output or "")
                return ExecutionResult(
                    ok=False,
                    failed_step=step.name,
                    command=step.run,
                    output=tail("".join(output)),
                    timed_out=True,
                    steps_run=ran,
                )

            output.append(stdout or "")
            if returncode != 0:
                return ExecutionResult(
                    ok=False,
                    exit_code=returncode,
                    failed_step=step.name,
                    command=step.run,
                    output=tail("".join(output)),
                    steps_run=ran,
                )

        return ExecutionResult(ok=True, exit_code=0, output=tail("".join(output)), steps_run=ran)

    def teardown(self, handle: EnvironmentHandle) -> None:
        self._remove_workspace(handle.workspace)
