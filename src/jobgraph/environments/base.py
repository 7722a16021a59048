# environments/base.py
from __future__ import annotations

import shutil
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from ..model import EnvironmentDescriptor, Step

# Native channel selector for toolchains we know about.
TOOLCHAIN_ENV = {
    "rust": "RUSTUP_TOOLCHAIN",
}

# Never copied into a job workspace.
WORKSPACE_IGNORE = (".git", ".jobgraph", "__pycache__", ".venv")

OUTPUT_TAIL = 4000


@dataclass
class EnvironmentHandle:
    """A provisioned environment; `workspace` is always a host directory."""
    id: str
    descriptor: EnvironmentDescriptor
    workspace: Path
    job: str = ""
    container_id: Optional[str] = None
    container_name: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class ExecutionResult:
    ok: bool
    exit_code: Optional[int] = None
    failed_step: Optional[str] = None
    command: Optional[str] = None
    output: str = ""
    timed_out: bool = False
    steps_run: List[str] = field(default_factory=list)


class Provisioner:
    """
    Prepare, use and dispose of one isolated environment.

    provision() raises InfrastructureFailure when the environment cannot be
    made ready. execute() reports step failures in its result instead of
    raising.
    """

    def __init__(self, workspace_root: str | Path = ".jobgraph/work", source_root: str | Path = "."):
        self.workspace_root = Path(workspace_root).resolve()
        self.source_root = Path(source_root).resolve()

    def provision(
        self,
        descriptor: EnvironmentDescriptor,
        *,
        job: str,
        checkout: Optional[str] = ".",
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> EnvironmentHandle:
        raise NotImplementedError

    def execute(
        self,
        handle: EnvironmentHandle,
        steps: Sequence[Step],
        *,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ExecutionResult:
        raise NotImplementedError

    def teardown(self, handle: EnvironmentHandle) -> None:
        raise NotImplementedError

    # -----------------------------------------------------------------
    # Shared helpers
    # -----------------------------------------------------------------

    def _new_workspace(self, job: str, checkout: Optional[str]) -> tuple[str, Path]:
        handle_id = f"{_slug(job)}-{uuid.uuid4().hex[:8]}"
        workspace = self.workspace_root / handle_id
        workspace.mkdir(parents=True, exist_ok=False)
        if checkout is not None:
            dest = (workspace / checkout).resolve()
            if dest == workspace:
                for entry in self.source_root.iterdir():
                    if entry.name in WORKSPACE_IGNORE or entry.resolve() == self.workspace_root:
                        continue
                    _copy_entry(entry, workspace / entry.name)
            else:
                shutil.copytree(
                    self.source_root,
                    dest,
                    ignore=shutil.ignore_patterns(*WORKSPACE_IGNORE),
                    symlinks=True,
                )
        return handle_id, workspace

    @staticmethod
    def _remove_workspace(workspace: Path) -> None:
        if workspace.exists():
            shutil.rmtree(workspace)


@contextmanager
def provisioned(
    provisioner: Provisioner,
    descriptor: EnvironmentDescriptor,
    **kwargs,
) -> Iterator[EnvironmentHandle]:
    """
    Scoped acquisition of an environment.

    Teardown runs on every exit path once provisioning has returned a
    handle, including step failures, timeouts and exceptions.
    """
    handle = provisioner.provision(descriptor, **kwargs)
    try:
        yield handle
    finally:
        provisioner.teardown(handle)


def toolchain_env(descriptor: EnvironmentDescriptor, channel: str) -> Dict[str, str]:
    """Variables that select the toolchain channel inside the environment."""
    env = {"JOBGRAPH_TOOLCHAIN": channel}
    native = TOOLCHAIN_ENV.get((descriptor.toolchain or "").lower())
    if native:
        env[native] = channel
    return env


def tail(text: str | None, limit: int = OUTPUT_TAIL) -> str:
    if not text:
        return ""
    return text[-limit:]


def _slug(name: str) -> str:
    return "".join(c if c.isalnum() or c in "-_" else "-" for c in name.lower()) or "job"


def _copy_entry(src: Path, dst: Path) -> None:
    if src.is_dir() and not src.is_symlink():
        shutil.copytree(src, dst, ignore=shutil.ignore_patterns(*WORKSPACE_IGNORE), symlinks=True)
    else:
        shutil.copy2(src, dst, follow_symlinks=False)
