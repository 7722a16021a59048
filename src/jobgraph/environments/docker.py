# environments/docker.py
from __future__ import annotations

import subprocess
import time
from typing import Dict, List, Optional, Sequence

from ..errors import InfrastructureFailure
from ..model import ContainerEnvironment, EnvironmentDescriptor, Step
from ..ui.console import get_console
from .base import EnvironmentHandle, ExecutionResult, Provisioner, tail

CONTAINER_WORKDIR = "/workspace"

DOCKER_HINT = "Install Docker and ensure the daemon is running."


class DockerProvisioner(Provisioner):
    """
    Containerized environment.

    The job workspace is a host directory bind-mounted at /workspace in a
    long-lived container; every step is a `docker exec` into it, so files
    written by one step are visible to the next and to artifact packing.
    """

    def __init__(self, *args, docker: str = "docker", **kwargs):
        super().__init__(*args, **kwargs)
        self.docker = docker

    def _run(self, args: List[str], *, timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        return subprocess.run(
            [self.docker, *args],
            shell=False,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
        )

    def _check_docker_available(self, job: str) -> None:
        try:
            self._run(["--version"], timeout=30).check_returncode()
        except (subprocess.CalledProcessError, FileNotFoundError, subprocess.TimeoutExpired) as e:
            raise InfrastructureFailure(
                job=job,
                message="Docker is not available",
                details={"hint": DOCKER_HINT, "error": e},
            ) from e

    def _exec_cmd(self, handle: EnvironmentHandle, step: Step, env: Dict[str, str]) -> List[str]:
        step_cwd = (step.cwd or ".").strip("/")
        container_cwd = CONTAINER_WORKDIR if step_cwd in ("", ".") else f"{CONTAINER_WORKDIR}/{step_cwd}"
        cmd = ["exec", "-w", container_cwd]
        for key, value in env.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.extend([handle.container_id, "sh", "-c", step.run])
        return cmd

    def provision(
        self,
        descriptor: EnvironmentDescriptor,
        *,
        job: str,
        checkout: Optional[str] = ".",
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> EnvironmentHandle:
        if not isinstance(descriptor, ContainerEnvironment):
            raise InfrastructureFailure(
                job=job,
                message="docker provisioner cannot prepare this environment",
                details={"descriptor": descriptor},
            )
        self._check_docker_available(job)

        try:
            handle_id, workspace = self._new_workspace(job, checkout)
        except OSError as e:
            raise InfrastructureFailure(
                job=job, message="could not prepare workspace", details={"error": e}
            ) from e

        handle = EnvironmentHandle(
            id=handle_id, descriptor=descriptor, workspace=workspace, job=job, env=dict(env or {})
        )
        deadline = time.monotonic() + timeout if timeout else None

        def remaining() -> Optional[float]:
            if deadline is None:
                return None
            left = deadline - time.monotonic()
            if left <= 0:
                raise subprocess.TimeoutExpired(cmd="provision", timeout=timeout)
            return left

        # named before `docker run` so teardown can find a half-started container
        handle.container_name = f"jobgraph-{handle_id}"

        try:
            cmd = [
                "run", "-d",
                "--name", handle.container_name,
                "-v", f"{workspace}:{CONTAINER_WORKDIR}",
                "-w", CONTAINER_WORKDIR,
                *descriptor.options,
                "--entrypoint", "tail",
                descriptor.image, "-f", "/dev/null",
            ]
            proc = self._run(cmd, timeout=remaining())
            if proc.returncode != 0:
                raise InfrastructureFailure(
                    job=job,
                    message=f"could not start container from {descriptor.image}",
                    details={"exit_code": proc.returncode, "output": tail(proc.stdout, 1000)},
                )
            handle.container_id = proc.stdout.strip().splitlines()[-1]

            for step in descriptor.bootstrap:
                proc = self._run(self._exec_cmd(handle, step, handle.env), timeout=remaining())
                if proc.returncode != 0:
                    raise InfrastructureFailure(
                        job=job,
                        message=f"bootstrap step '{step.name}' failed",
                        details={"exit_code": proc.returncode, "output": tail(proc.stdout, 1000)},
                    )
        except subprocess.TimeoutExpired as e:
            self.teardown(handle)
            raise InfrastructureFailure(
                job=job, message="provisioning timed out", details={"timeout": timeout}
            ) from e
        except InfrastructureFailure:
            self.teardown(handle)
            raise

        return handle

    def execute(
        self,
        handle: EnvironmentHandle,
        steps: Sequence[Step],
        *,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ExecutionResult:
        step_env = dict(handle.env)
        step_env.update(env or {})

        deadline = time.monotonic() + timeout if timeout else None
        output: list[str] = []
        ran: list[str] = []

        for step in steps:
            remaining = None
            if deadline is not None:
                remaining = max(deadline - time.monotonic(), 0.001)
            get_console().print_step(handle.job, step.name)
            ran.append(step.name)
            try:
                proc = self._run(self._exec_cmd(handle, step, step_env), timeout=remaining)
            except subprocess.TimeoutExpired:
                return ExecutionResult(
                    ok=False,
                    failed_step=step.name,
                    command=step.run,
                    output=tail("".join(output)),
                    timed_out=True,
                    steps_run=ran,
                )
            output.append(proc.stdout or "")
            if proc.returncode != 0:
                return ExecutionResult(
                    ok=False,
                    exit_code=proc.returncode,
                    failed_step=step.name,
                    command=step.run,
                    output=tail("".join(output)),
                    steps_run=ran,
                )

        return ExecutionResult(ok=True, exit_code=0, output=tail("".join(output)), steps_run=ran)

    def teardown(self, handle: EnvironmentHandle) -> None:
        target = handle.container_id or handle.container_name
        try:
            if target:
                # kills anything still running from a timed-out step
                self._run(["rm", "-f", target], timeout=120)
        finally:
            self._remove_workspace(handle.workspace)
