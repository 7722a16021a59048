# release.py
from __future__ import annotations

import base64
import json
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional
from urllib.parse import urljoin

from .artifacts import sha256_bytes
from .errors import ReleaseError
from .model import JobRun, JobStatus, Outcome
from .trigger import TriggerParameters


@dataclass(frozen=True)
class ReleasePlan:
    """
    What a release needs.

    requires:  jobs that must have Succeeded before anything is published
    artifacts: artifact names handed to the publisher
    """
    requires: tuple = ()
    artifacts: tuple = ()


@dataclass(frozen=True)
class ReleaseDecision:
    action: str  # publish | not_applicable | refused
    reason: str

    @property
    def publish(self) -> bool:
        return self.action == "publish"


@dataclass
class ReleaseResult:
    tag: str
    decision: ReleaseDecision
    reference: Optional[str] = None
    error: Optional[str] = None

    @property
    def published(self) -> bool:
        return self.reference is not None


def decide(
    plan: ReleasePlan,
    outcome: Outcome,
    runs: Mapping[str, JobRun],
    params: TriggerParameters,
) -> ReleaseDecision:
    """
    Decide whether the invocation may publish a release.

    Only a release event carrying a tag is considered at all; after that
    every required job must have Succeeded and the graph outcome must be
    a success. Anything else is an explicit refusal.
    """
    if not params.is_release:
        return ReleaseDecision("not_applicable", f"event is {params.event.value}, not a release")

    not_ok = [
        f"{name}={runs[name].status.value}" if name in runs else f"{name}=missing"
        for name in plan.requires
        if name not in runs or runs[name].status is not JobStatus.SUCCEEDED
    ]
    if not_ok:
        return ReleaseDecision("refused", "prerequisites did not succeed: " + ", ".join(not_ok))
    if outcome is not Outcome.SUCCESS:
        return ReleaseDecision("refused", f"pipeline outcome is {outcome.value}")
    return ReleaseDecision("publish", f"release {params.release_tag} approved")


# ---------------------------------------------------------------------
# Publishers
# ---------------------------------------------------------------------

class ReleasePublisher:
    """
    Publishes a release record. This is an external, irreversible action;
    callers must not retry a failed publish automatically.
    """

    def publish(self, tag: str, artifacts: Dict[str, bytes], metadata: Optional[dict] = None) -> str:
        """Return a reference (path, URL, id) to the published release."""
        raise NotImplementedError


def _manifest(tag: str, artifacts: Dict[str, bytes], metadata: Optional[dict]) -> dict:
    return {
        "tag": tag,
        "metadata": dict(metadata or {}),
        "artifacts": [
            {"name": name, "sha256": sha256_bytes(blob), "size": len(blob)}
            for name, blob in sorted(artifacts.items())
        ],
    }


class DirectoryReleasePublisher(ReleasePublisher):
    """
    Local release directory:
      root/
        <tag>/
          <artifact>.tar.gz
          release.json
    """

    def __init__(self, root: str | Path = ".jobgraph/releases"):
        self.root = Path(root).resolve()

    def publish(self, tag: str, artifacts: Dict[str, bytes], metadata: Optional[dict] = None) -> str:
        # tag becomes a single directory name under root
        if not tag or tag.startswith(".") or "/" in tag or "\\" in tag:
            raise ReleaseError(tag=tag, message="tag is not a valid directory name")
        target = self.root / tag
        if target.exists():
            raise ReleaseError(tag=tag, message=f"release already exists at {target}")
        tmp = self.root / f".{tag}.partial"
        try:
            tmp.mkdir(parents=True, exist_ok=False)
            for name, blob in artifacts.items():
                (tmp / f"{name}.tar.gz").write_bytes(blob)
            (tmp / "release.json").write_text(
                json.dumps(_manifest(tag, artifacts, metadata), sort_keys=True, indent=2),
                encoding="utf-8",
            )
            tmp.rename(target)
        except OSError as e:
            raise ReleaseError(tag=tag, message=f"could not write release: {e}") from e
        return str(target)


class HttpReleasePublisher(ReleasePublisher):
    """POST the release to an HTTP endpoint (`<base>/releases`)."""

    def __init__(self, base_url: str, *, timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def publish(self, tag: str, artifacts: Dict[str, bytes], metadata: Optional[dict] = None) -> str:
        body = _manifest(tag, artifacts, metadata)
        for entry in body["artifacts"]:
            entry["content_b64"] = base64.b64encode(artifacts[entry["name"]]).decode("ascii")

        url = urljoin(self.base_url + "/", "releases")
        req = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response_data = response.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise ReleaseError(
                tag=tag,
                message=f"release API returned {e.code} {e.reason}. {error_body}".strip(),
                # a 5xx may have been processed before failing
                ambiguous=e.code >= 500,
            ) from e
        except (urllib.error.URLError, TimeoutError) as e:
            raise ReleaseError(tag=tag, message=f"network error: {e}", ambiguous=True) from e

        try:
            result = json.loads(response_data) if response_data else {}
        except json.JSONDecodeError as e:
            raise ReleaseError(tag=tag, message=f"invalid JSON response: {e}", ambiguous=True) from e
        return str(result.get("url") or result.get("id") or url)

