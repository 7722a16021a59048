# git.py
# Small wrapper around the Git CLI.
# Used for the run header and for the commit recorded in release metadata;
# nothing in the scheduler depends on git being present.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def get_remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)


def get_current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Current branch name, or the commit SHA when HEAD is detached.
    """
    ref = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if ref == "HEAD":
        return head_sha(cwd=cwd)
    return ref


def repository_name(cwd: Optional[str | Path] = None) -> str:
    """Name for display: the origin URL's last segment, else the directory name."""
    try:
        url = get_remote_url("origin", cwd=cwd)
        return url.rstrip("/").split("/")[-1].replace(".git", "")
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(cwd or ".").resolve().name


def commit_metadata(cwd: Optional[str | Path] = None) -> dict:
    """Commit and ref for release metadata; empty outside a git checkout."""
    try:
        return {"commit": head_sha(cwd=cwd), "ref": get_current_ref(cwd=cwd)}
    except (subprocess.CalledProcessError, FileNotFoundError):
        return {}
