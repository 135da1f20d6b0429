from __future__ import annotations

import hashlib
import os
import secrets
import tempfile
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

URI_PREFIX = "cas://sha256/"


class ArtifactNotFoundError(KeyError):
    pass


class BaseArtifactStore:
    """Content-addressed, immutable blob store."""

    def put(self, data: bytes) -> str:
        raise NotImplementedError

    def get(self, uri: str) -> bytes:
        raise NotImplementedError

    def exists(self, uri: str) -> bool:
        try:
            self.get(uri)
        except ArtifactNotFoundError:
            return False
        return True


class MemoryArtifactStore(BaseArtifactStore):
    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes) -> str:
        digest = hash_bytes(data)
        with self._lock:
            self._blobs.setdefault(digest, bytes(data))
        return content_uri(digest)

    def get(self, uri: str) -> bytes:
        digest = parse_uri(uri)
        try:
            return self._blobs[digest]
        except KeyError:
            raise ArtifactNotFoundError(uri) from None


class FileArtifactStore(BaseArtifactStore):
    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def put(self, data: bytes) -> str:
        digest = hash_bytes(data)
        path = self._path(digest)
        if path.exists():
            return content_uri(digest)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            try:
                os.link(tmp_name, path)
            except FileExistsError:
                pass
        finally:
            os.unlink(tmp_name)
        return content_uri(digest)

    def get(self, uri: str) -> bytes:
        path = self._path(parse_uri(uri))
        if not path.exists():
            raise ArtifactNotFoundError(uri)
        data = path.read_bytes()
        if hash_bytes(data) != path.name:
            raise ValueError(f"Artifact content does not match its address: {uri}")
        return data

    def _path(self, digest: str) -> Path:
        return self.root / "sha256" / digest[:2] / digest


def create_artifact_store(config: Optional[Dict[str, Any]], root: Path) -> BaseArtifactStore:
    config = config or {}
    backend = config.get("backend", "memory")
    if backend == "memory":
        return MemoryArtifactStore()
    if backend == "file":
        path = Path(config.get("root") or "artifacts")
        if not path.is_absolute():
            path = root / path
        return FileArtifactStore(path)
    raise ValueError(f"Unsupported artifact backend: {backend!r}")


def content_uri(digest: str) -> str:
    return f"{URI_PREFIX}{digest}"


def parse_uri(uri: str) -> str:
    if not isinstance(uri, str) or not uri.startswith(URI_PREFIX):
        raise ValueError(f"Not a content URI: {uri!r}")
    digest = uri[len(URI_PREFIX):]
    if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
        raise ValueError(f"Malformed content digest: {uri!r}")
    return digest


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def safe_run_id(prefix: str = "run") -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    pid = os.getpid()
    nonce = secrets.token_hex(4)
    return f"{prefix}-{ts}-{pid}-{time.time_ns()}-{nonce}"
