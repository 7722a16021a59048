from __future__ import annotations

import io
import json
import sys
import urllib.error
from pathlib import Path

import pytest

from conftest import params_for

from jobgraph.dsl import job, release, sh
from jobgraph.errors import ReleaseError
from jobgraph.model import JobRun, JobStatus, Outcome, RunId
from jobgraph.release import DirectoryReleasePublisher, HttpReleasePublisher, decide

PLAN = release(requires=["run-ci-ubuntu-latest", "run-ci-debian-10"], artifacts=["deb-package"])


def _runs(**statuses: JobStatus) -> dict:
    out = {}
    for name, status in statuses.items():
        name = name.replace("_", "-")
        run = JobRun(job=job(name, sh("x", "ok")), run_id=RunId("inv", name))
        run.status = status
        out[name] = run
    return out


def test_decide_not_applicable_outside_release_events() -> None:
    runs = _runs(run_ci_ubuntu_latest=JobStatus.SUCCEEDED, run_ci_debian_10=JobStatus.SUCCEEDED)
    decision = decide(PLAN, Outcome.SUCCESS, runs, params_for("schedule"))
    assert decision.action == "not_applicable"
    assert not decision.publish


def test_decide_refuses_when_a_prerequisite_did_not_succeed() -> None:
    runs = _runs(run_ci_ubuntu_latest=JobStatus.SUCCEEDED, run_ci_debian_10=JobStatus.SKIPPED)
    decision = decide(PLAN, Outcome.SUCCESS, runs, params_for("release.published", "v1.0"))
    assert decision.action == "refused"
    assert "run-ci-debian-10=skipped" in decision.reason


def test_decide_refuses_on_failed_outcome() -> None:
    runs = _runs(run_ci_ubuntu_latest=JobStatus.SUCCEEDED, run_ci_debian_10=JobStatus.SUCCEEDED)
    decision = decide(PLAN, Outcome.FAILURE, runs, params_for("release.published", "v1.0"))
    assert decision.action == "refused"


def test_decide_publishes_when_everything_succeeded() -> None:
    runs = _runs(run_ci_ubuntu_latest=JobStatus.SUCCEEDED, run_ci_debian_10=JobStatus.SUCCEEDED)
    decision = decide(PLAN, Outcome.SUCCESS, runs, params_for("release.published", "v1.0"))
    assert decision.publish


def test_directory_publisher_writes_blobs_and_manifest(tmp_path: Path) -> None:
    publisher = DirectoryReleasePublisher(tmp_path)
    ref = publisher.publish("v1.0", {"deb-package": b"tarball"}, {"commit": "abc"})

    target = tmp_path / "v1.0"
    assert ref == str(target)
    assert (target / "deb-package.tar.gz").read_bytes() == b"tarball"
    manifest = json.loads((target / "release.json").read_text())
    assert manifest["tag"] == "v1.0"
    assert manifest["metadata"] == {"commit": "abc"}
    assert manifest["artifacts"][0]["name"] == "deb-package"
    assert manifest["artifacts"][0]["size"] == 7


def test_directory_publisher_refuses_existing_tag(tmp_path: Path) -> None:
    publisher = DirectoryReleasePublisher(tmp_path)
    publisher.publish("v1.0", {"deb-package": b"a"})
    with pytest.raises(ReleaseError, match="already exists"):
        publisher.publish("v1.0", {"deb-package": b"b"})
    assert (tmp_path / "v1.0" / "deb-package.tar.gz").read_bytes() == b"a"


@pytest.mark.parametrize("tag", ["../escaped", "v1/../../x", "nested/v1", "..", ".hidden", ""])
def test_directory_publisher_rejects_tags_outside_root(tmp_path: Path, tag: str) -> None:
    publisher = DirectoryReleasePublisher(tmp_path / "releases")
    with pytest.raises(ReleaseError, match="not a valid directory name") as exc:
        publisher.publish(tag, {"deb-package": b"a"})
    assert not exc.value.ambiguous
    assert not (tmp_path / "escaped").exists()
    assert not (tmp_path / "releases").exists()


class _Response(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def test_http_publisher_posts_manifest(monkeypatch) -> None:
    seen = {}

    def fake_urlopen(req, timeout=None):
        seen["url"] = req.full_url
        seen["body"] = json.loads(req.data.decode("utf-8"))
        return _Response(json.dumps({"url": "https://releases.example/v1.0"}).encode())

    monkeypatch.setattr(sys.modules["jobgraph.release"].urllib.request, "urlopen", fake_urlopen)
    ref = HttpReleasePublisher("https://releases.example/api/").publish("v1.0", {"deb-package": b"tar"})

    assert ref == "https://releases.example/v1.0"
    assert seen["url"] == "https://releases.example/api/releases"
    assert seen["body"]["artifacts"][0]["content_b64"] == "dGFy"


def test_http_publisher_server_error_is_ambiguous(monkeypatch) -> None:
    def fake_urlopen(req, timeout=None):
        raise urllib.error.HTTPError(req.full_url, 502, "Bad Gateway", {}, io.BytesIO(b"upstream"))

    monkeypatch.setattr(sys.modules["jobgraph.release"].urllib.request, "urlopen", fake_urlopen)
    with pytest.raises(ReleaseError) as info:
        HttpReleasePublisher("https://releases.example").publish("v1.0", {})
    assert info.value.ambiguous


def test_http_publisher_client_error_is_definite(monkeypatch) -> None:
    def fake_urlopen(req, timeout=None):
        raise urllib.error.HTTPError(req.full_url, 422, "Unprocessable", {}, io.BytesIO(b""))

    monkeypatch.setattr(sys.modules["jobgraph.release"].urllib.request, "urlopen", fake_urlopen)
    with pytest.raises(ReleaseError) as info:
        HttpReleasePublisher("https://releases.example").publish("v1.0", {})
    assert not info.value.ambiguous


def test_http_publisher_network_error_is_ambiguous(monkeypatch) -> None:
    def fake_urlopen(req, timeout=None):
        raise urllib.error.URLError("connection reset")

    monkeypatch.setattr(sys.modules["jobgraph.release"].urllib.request, "urlopen", fake_urlopen)
    with pytest.raises(ReleaseError) as info:
        HttpReleasePublisher("https://releases.example").publish("v1.0", {})
    assert info.value.ambiguous
