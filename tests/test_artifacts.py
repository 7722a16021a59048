from __future__ import annotations

import io
import tarfile
from pathlib import Path

import pytest
import redis

from jobgraph.artifacts import (
    FileArtifactStore,
    MemoryArtifactStore,
    RedisArtifactStore,
    pack,
    select_files,
    sha256_bytes,
    unpack,
)
from jobgraph.errors import ArtifactNotFound
from jobgraph.model import RunId


@pytest.fixture()
def deb_workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "ws"
    (ws / "clone" / "debian").mkdir(parents=True)
    (ws / "clone" / "debian" / "rules").write_text("#!/usr/bin/make -f\n")
    (ws / "clone" / "Cargo.toml").write_text("[package]\n")
    (ws / "svc_1.0_amd64.deb").write_bytes(b"deb-bytes")
    (ws / "svc_1.0_amd64.changes").write_text("changes")
    (ws / "svc_1.0.dsc").write_text("dsc")
    return ws


def test_select_files_honours_excludes(deb_workspace: Path) -> None:
    assert select_files(deb_workspace, ["*", "!clone/**"]) == [
        "svc_1.0.dsc",
        "svc_1.0_amd64.changes",
        "svc_1.0_amd64.deb",
    ]


def test_select_files_directory_selects_everything_below(deb_workspace: Path) -> None:
    assert select_files(deb_workspace, ["./clone"]) == ["clone/Cargo.toml", "clone/debian/rules"]


def test_select_files_extension_glob(deb_workspace: Path) -> None:
    assert select_files(deb_workspace, ["*.deb"]) == ["svc_1.0_amd64.deb"]


def test_pack_is_deterministic(deb_workspace: Path, tmp_path: Path) -> None:
    first, files = pack(deb_workspace, ["*.deb", "*.dsc"])
    (deb_workspace / "svc_1.0.dsc").touch()  # new mtime, same content
    second, _ = pack(deb_workspace, ["*.deb", "*.dsc"])
    assert first == second
    assert files == ["svc_1.0.dsc", "svc_1.0_amd64.deb"]


def test_unpack_restores_files(deb_workspace: Path, tmp_path: Path) -> None:
    blob, _ = pack(deb_workspace, ["*", "!clone/**"])
    dest = tmp_path / "consumer"
    names = unpack(blob, dest)
    assert sorted(names) == ["svc_1.0.dsc", "svc_1.0_amd64.changes", "svc_1.0_amd64.deb"]
    assert (dest / "svc_1.0_amd64.deb").read_bytes() == b"deb-bytes"


def test_unpack_refuses_paths_outside_destination(tmp_path: Path) -> None:
    raw = io.BytesIO()
    with tarfile.open(fileobj=raw, mode="w:gz") as tar:
        info = tarfile.TarInfo("../escape.txt")
        info.size = 1
        tar.addfile(info, io.BytesIO(b"x"))
    with pytest.raises(ValueError, match="escapes"):
        unpack(raw.getvalue(), tmp_path / "dest")
    assert not (tmp_path / "escape.txt").exists()


def test_memory_store_scopes_by_invocation() -> None:
    store = MemoryArtifactStore()
    ref = store.publish(RunId("inv1", "pkg"), "deb", b"one")
    assert ref.sha256 == sha256_bytes(b"one") and ref.size == 3
    store.publish(RunId("inv2", "pkg"), "deb", b"two")

    assert store.fetch(RunId("inv1", "pkg"), "deb") == b"one"
    store.expire("inv1")
    with pytest.raises(ArtifactNotFound):
        store.fetch(RunId("inv1", "pkg"), "deb")
    assert store.fetch(RunId("inv2", "pkg"), "deb") == b"two"


def test_file_store_round_trip_and_expire(tmp_path: Path) -> None:
    store = FileArtifactStore(tmp_path / "artifacts")
    run_id = RunId("inv1", "build-debian-package")
    store.publish(run_id, "deb-package", b"payload")
    assert store.fetch(run_id, "deb-package") == b"payload"

    store.expire("inv1")
    assert not (tmp_path / "artifacts" / "inv1").exists()
    with pytest.raises(ArtifactNotFound):
        store.fetch(run_id, "deb-package")


def test_file_store_detects_corruption(tmp_path: Path) -> None:
    store = FileArtifactStore(tmp_path)
    run_id = RunId("inv1", "pkg")
    store.publish(run_id, "deb", b"payload")
    (tmp_path / "inv1" / "pkg" / "deb.blob").write_bytes(b"tampered")
    with pytest.raises(OSError, match="corrupt"):
        store.fetch(run_id, "deb")


class FakeRedis:
    """The handful of redis commands the store uses."""

    def __init__(self, fail: bool = False):
        self.data = {}
        self.sets = {}
        self.fail = fail

    def _check(self):
        if self.fail:
            raise redis.exceptions.ConnectionError("connection refused")

    def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value

    def get(self, key):
        self._check()
        return self.data.get(key)

    def sadd(self, key, *members):
        self._check()
        self.sets.setdefault(key, set()).update(members)

    def smembers(self, key):
        self._check()
        return set(self.sets.get(key, set()))

    def expire(self, key, seconds):
        self._check()

    def delete(self, *keys):
        self._check()
        for key in keys:
            self.data.pop(key, None)
            self.sets.pop(key, None)


def test_redis_store_round_trip_and_expire() -> None:
    client = FakeRedis()
    store = RedisArtifactStore(client=client)
    run_id = RunId("inv1", "pkg")
    store.publish(run_id, "deb", b"payload")
    assert client.data == {
        "jobgraph:artifact:inv1:pkg:deb": b"payload",
        "jobgraph:artifact:inv1:pkg:deb:sha256": sha256_bytes(b"payload"),
    }
    assert store.fetch(run_id, "deb") == b"payload"

    store.expire("inv1")
    assert client.data == {} and client.sets == {}
    with pytest.raises(ArtifactNotFound):
        store.fetch(run_id, "deb")


def test_redis_store_rejects_tampered_blob() -> None:
    client = FakeRedis()
    store = RedisArtifactStore(client=client)
    run_id = RunId("inv1", "pkg")
    store.publish(run_id, "deb", b"payload")
    client.data["jobgraph:artifact:inv1:pkg:deb"] = b"tampered"
    with pytest.raises(OSError, match="sha256 mismatch"):
        store.fetch(run_id, "deb")


def test_redis_outage_surfaces_as_oserror() -> None:
    store = RedisArtifactStore(client=FakeRedis(fail=True))
    with pytest.raises(OSError, match="unavailable"):
        store.publish(RunId("inv1", "pkg"), "deb", b"x")
