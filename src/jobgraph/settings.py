from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

WORKSPACE_ROOT = ".jobgraph/work"
ARTIFACT_DIR = ".jobgraph/artifacts"
RELEASE_DIR = ".jobgraph/releases"
DATABASE_URL = "sqlite+aiosqlite:///.jobgraph/archive.db"
REDIS_URL = "redis://localhost:6379/0"


def _int(env: Mapping[str, str], name: str, default: Optional[int]) -> Optional[int]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], name: str, default: Optional[float]) -> Optional[float]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}") from None


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    workers: Optional[int] = None
    source_root: str = "."
    workspace_root: str = WORKSPACE_ROOT
    artifact_backend: str = "file"  # file | memory | redis
    artifact_dir: str = ARTIFACT_DIR
    redis_url: str = REDIS_URL
    infra_retries: int = 1
    job_timeout: Optional[float] = 3600.0
    provision_timeout: Optional[float] = 600.0
    keep_artifacts: bool = False
    release_dir: str = RELEASE_DIR
    release_url: Optional[str] = None
    database_url: str = DATABASE_URL
    workflow: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        backend = env.get("JOBGRAPH_ARTIFACT_BACKEND", "file").strip().lower()
        if backend not in ("file", "memory", "redis"):
            raise ValueError(f"JOBGRAPH_ARTIFACT_BACKEND must be file, memory or redis, got {backend!r}")
        return cls(
            workers=_int(env, "JOBGRAPH_WORKERS", None),
            source_root=env.get("JOBGRAPH_SOURCE_ROOT", "."),
            workspace_root=env.get("JOBGRAPH_WORKSPACE_ROOT", WORKSPACE_ROOT),
            artifact_backend=backend,
            artifact_dir=env.get("JOBGRAPH_ARTIFACT_DIR", ARTIFACT_DIR),
            redis_url=env.get("JOBGRAPH_REDIS_URL", REDIS_URL),
            infra_retries=_int(env, "JOBGRAPH_INFRA_RETRIES", 1),
            job_timeout=_float(env, "JOBGRAPH_JOB_TIMEOUT", 3600.0),
            provision_timeout=_float(env, "JOBGRAPH_PROVISION_TIMEOUT", 600.0),
            keep_artifacts=_bool(env, "JOBGRAPH_KEEP_ARTIFACTS", False),
            release_dir=env.get("JOBGRAPH_RELEASE_DIR", RELEASE_DIR),
            release_url=env.get("JOBGRAPH_RELEASE_URL") or None,
            database_url=env.get("JOBGRAPH_DATABASE_URL", DATABASE_URL),
            workflow=env.get("JOBGRAPH_WORKFLOW") or None,
        )

    def override(self, **changes) -> "Settings":
        """Return a copy with every non-None value in `changes` applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
