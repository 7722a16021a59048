# artifacts.py
from __future__ import annotations

import fnmatch
import gzip
import hashlib
import io
import json
import shutil
import tarfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Tuple

import redis

from .errors import ArtifactNotFound
from .model import ArtifactRef, RunId

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# An artifact is an opaque blob published under (invocation, job, name).
# The engine packs the workspace files a job declares into a gzip tarball;
# stores never look inside the bytes.
#
#   store.publish(RunId(inv, "build"), "deb-package", blob) -> ArtifactRef
#   store.fetch(RunId(inv, "build"), "deb-package")         -> blob
#   store.expire(inv)                                       -> drop the invocation
#
# Every store keys by invocation first, so nothing is visible across
# invocations. Re-publishing the same key overwrites.
# ---------------------------------------------------------------------


DEFAULT_ARTIFACT_DIR = ".jobgraph/artifacts"


def sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


# ---------------------------------------------------------------------
# Packing
# ---------------------------------------------------------------------

def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _normalize_pattern(pattern: str) -> str:
    pattern = pattern.strip()
    while pattern.startswith("./"):
        pattern = pattern[2:]
    return pattern or "*"


def _matches(rel: str, pattern: str) -> bool:
    if fnmatch.fnmatchcase(rel, pattern):
        return True
    # "dir/**" also matches "dir" itself and anything below it
    if pattern.endswith("/**") and (rel == pattern[:-3] or rel.startswith(pattern[:-2])):
        return True
    return False


def select_files(workspace: Path, patterns: Iterable[str]) -> List[str]:
    """
    Resolve include/exclude globs to sorted workspace-relative file paths.

    Patterns are matched against the relative path of every file under
    `workspace`; a plain directory name selects everything below it.
    Patterns starting with "!" remove files selected by earlier ones.
    """
    includes: List[str] = []
    excludes: List[str] = []
    for raw in patterns:
        if raw.startswith("!"):
            excludes.append(_normalize_pattern(raw[1:]))
        else:
            includes.append(_normalize_pattern(raw))

    workspace = workspace.resolve()
    selected: List[str] = []
    for f in _iter_files_under(workspace):
        rel = f.relative_to(workspace).as_posix()
        hit = any(
            _matches(rel, pat) or rel.startswith(pat.rstrip("/") + "/")
            for pat in includes
        )
        if hit and not any(_matches(rel, pat) for pat in excludes):
            selected.append(rel)
    return selected


def pack(workspace: Path, patterns: Iterable[str]) -> Tuple[bytes, List[str]]:
    """
    Pack matching files into a gzip tarball.

    Member metadata is normalized (mtime, owner, mode) so identical file
    contents always produce identical bytes.
    """
    files = select_files(workspace, patterns)
    raw = io.BytesIO()
    with tarfile.open(fileobj=raw, mode="w") as tar:
        for rel in files:
            data = (workspace / rel).read_bytes()
            info = tarfile.TarInfo(name=rel)
            info.size = len(data)
            info.mtime = 0
            info.mode = 0o755 if (workspace / rel).stat().st_mode & 0o111 else 0o644
            info.uid = info.gid = 0
            info.uname = info.gname = ""
            tar.addfile(info, io.BytesIO(data))

    out = io.BytesIO()
    with gzip.GzipFile(fileobj=out, mode="wb", mtime=0) as gz:
        gz.write(raw.getvalue())
    return out.getvalue(), files


def unpack(blob: bytes, dest: Path) -> List[str]:
    """Extract a packed artifact into `dest`. Returns extracted paths."""
    dest = dest.resolve()
    dest.mkdir(parents=True, exist_ok=True)
    names: List[str] = []
    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
        for member in tar.getmembers():
            target = (dest / member.name).resolve()
            if dest != target and dest not in target.parents:
                raise ValueError(f"artifact member escapes workspace: {member.name}")
            if not member.isfile():
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            src = tar.extractfile(member)
            target.write_bytes(src.read() if src else b"")
            target.chmod(member.mode)
            names.append(member.name)
    return names


# ---------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------

class ArtifactStore:
    """Interface every artifact backend implements."""

    def publish(self, run_id: RunId, name: str, blob: bytes) -> ArtifactRef:
        raise NotImplementedError

    def fetch(self, run_id: RunId, name: str) -> bytes:
        raise NotImplementedError

    def expire(self, invocation: str) -> None:
        raise NotImplementedError


class MemoryArtifactStore(ArtifactStore):
    """Process-local store. Fine for tests and single-shot CLI runs."""

    def __init__(self):
        self._blobs: Dict[Tuple[str, str, str], bytes] = {}
        self._lock = threading.Lock()

    def publish(self, run_id: RunId, name: str, blob: bytes) -> ArtifactRef:
        blob = bytes(blob)
        with self._lock:
            self._blobs[(run_id.invocation, run_id.job, name)] = blob
        return ArtifactRef(run_id=run_id, name=name, sha256=sha256_bytes(blob), size=len(blob))

    def fetch(self, run_id: RunId, name: str) -> bytes:
        with self._lock:
            try:
                return self._blobs[(run_id.invocation, run_id.job, name)]
            except KeyError:
                raise ArtifactNotFound(str(run_id), name) from None

    def expire(self, invocation: str) -> None:
        with self._lock:
            for key in [k for k in self._blobs if k[0] == invocation]:
                del self._blobs[key]


class FileArtifactStore(ArtifactStore):
    """
    File-based store:
      root/
        <invocation>/
          <job>/
            <name>.blob
            <name>.manifest.json
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _paths(self, run_id: RunId, name: str) -> Tuple[Path, Path]:
        d = self.root / run_id.invocation / run_id.job
        return d / f"{name}.blob", d / f"{name}.manifest.json"

    def publish(self, run_id: RunId, name: str, blob: bytes) -> ArtifactRef:
        art, man = self._paths(run_id, name)
        art.parent.mkdir(parents=True, exist_ok=True)
        ref = ArtifactRef(run_id=run_id, name=name, sha256=sha256_bytes(blob), size=len(blob))

        tmp = art.with_suffix(".blob.tmp")
        try:
            # write tmp, then atomic rename
            tmp.write_bytes(blob)
            tmp.replace(art)
            man.write_text(
                json.dumps(
                    {
                        "run_id": str(run_id),
                        "name": name,
                        "sha256": ref.sha256,
                        "size": ref.size,
                        "published_at_unix": int(time.time()),
                    },
                    sort_keys=True,
                    indent=2,
                ),
                encoding="utf-8",
            )
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)
        return ref

    def fetch(self, run_id: RunId, name: str) -> bytes:
        art, man = self._paths(run_id, name)
        if not art.exists() or not man.exists():
            raise ArtifactNotFound(str(run_id), name)
        blob = art.read_bytes()
        expected = json.loads(man.read_text(encoding="utf-8")).get("sha256")
        if expected != sha256_bytes(blob):
            raise OSError(f"artifact '{name}' for {run_id} is corrupt (sha256 mismatch)")
        return blob

    def expire(self, invocation: str) -> None:
        d = self.root / invocation
        if d.exists():
            shutil.rmtree(d)


@contextmanager
def _redis_errors() -> Iterator[None]:
    # callers treat OSError as a store outage
    try:
        yield
    except redis.exceptions.RedisError as e:
        raise OSError(f"redis artifact store unavailable: {e}") from e


class RedisArtifactStore(ArtifactStore):
    """
    Redis-backed store, for sharing artifacts with an external inspector
    while an invocation runs. Keys:
      jobgraph:artifact:<invocation>:<job>:<name>          -> blob
      jobgraph:artifact:<invocation>:<job>:<name>:sha256   -> hex digest of blob
      jobgraph:artifacts:<invocation>                      -> set of the keys above
    """

    def __init__(self, url: str | None = None, *, client=None, ttl_seconds: int = 24 * 3600):
        if client is None:
            client = redis.Redis.from_url(url or "redis://localhost:6379/0")
        self.r = client
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(run_id: RunId, name: str) -> str:
        return f"jobgraph:artifact:{run_id.invocation}:{run_id.job}:{name}"

    @staticmethod
    def _index_key(invocation: str) -> str:
        return f"jobgraph:artifacts:{invocation}"

    def publish(self, run_id: RunId, name: str, blob: bytes) -> ArtifactRef:
        key = self._key(run_id, name)
        index = self._index_key(run_id.invocation)
        ref = ArtifactRef(run_id=run_id, name=name, sha256=sha256_bytes(blob), size=len(blob))
        with _redis_errors():
            self.r.set(key, blob, ex=self.ttl_seconds)
            self.r.set(f"{key}:sha256", ref.sha256, ex=self.ttl_seconds)
            self.r.sadd(index, key, f"{key}:sha256")
            self.r.expire(index, self.ttl_seconds)
        return ref

    def fetch(self, run_id: RunId, name: str) -> bytes:
        key = self._key(run_id, name)
        with _redis_errors():
            blob = self.r.get(key)
            expected = self.r.get(f"{key}:sha256")
        if blob is None or expected is None:
            raise ArtifactNotFound(str(run_id), name)
        if isinstance(expected, bytes):
            expected = expected.decode("ascii")
        blob = bytes(blob)
        if expected != sha256_bytes(blob):
            raise OSError(f"artifact '{name}' for {run_id} is corrupt (sha256 mismatch)")
        return blob

    def expire(self, invocation: str) -> None:
        index = self._index_key(invocation)
        with _redis_errors():
            keys = list(self.r.smembers(index))
            if keys:
                self.r.delete(*keys)
            self.r.delete(index)
