from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

from .diagnostics import CacheUnavailableError
from .fingerprint import Fingerprint
from .models import CacheEntry
from .retry import BackoffPolicy, with_backoff

logger = logging.getLogger(__name__)


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    writes: int = 0
    races_lost: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "writes": self.writes,
            "races_lost": self.races_lost,
        }


class BaseCacheStore(ABC):
    """Append-only fingerprint -> CacheEntry mapping.

    Writes are first-writer-wins: ``put`` on an existing key discards the
    caller's entry and returns the stored one. Mutations are serialized per
    key only. Backend failures are retried with backoff, then surface as
    ``CacheUnavailableError``; they are never reported as a miss.
    """

    def __init__(self, backoff: Optional[BackoffPolicy] = None) -> None:
        self.backoff = backoff or BackoffPolicy()
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._stats = CacheStats()

    async def exists(self, fp: Fingerprint) -> bool:
        return await self._guarded(lambda: self._exists(fp.key), "cache.exists")

    async def get(self, fp: Fingerprint) -> Optional[CacheEntry]:
        entry = await self._guarded(lambda: self._read(fp.key), "cache.get")
        if entry is None:
            self._stats.misses += 1
        else:
            self._stats.hits += 1
        return entry

    async def put(self, fp: Fingerprint, entry: CacheEntry) -> CacheEntry:
        if entry.fingerprint != fp.key:
            raise ValueError("CacheEntry fingerprint does not match the key it is stored under")
        async with self._locks[fp.key]:
            stored, written = await self._guarded(
                lambda: self._write_if_absent(fp.key, entry), "cache.put"
            )
        if written:
            self._stats.writes += 1
            logger.debug("Cache write %s (tier %s)", fp.short(), entry.tier)
        else:
            self._stats.races_lost += 1
            logger.debug("Cache entry %s already present; keeping first writer", fp.short())
        return stored

    def stats(self) -> Dict[str, int]:
        return self._stats.to_dict()

    async def _guarded(self, op, what: str) -> Any:
        async def attempt() -> Any:
            try:
                return await op()
            except OSError as exc:
                raise CacheUnavailableError(f"{what} failed: {exc}") from exc

        return await with_backoff(
            attempt, self.backoff, retry_on=(CacheUnavailableError,), what=what
        )

    @abstractmethod
    async def _exists(self, key: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def _read(self, key: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    @abstractmethod
    async def _write_if_absent(self, key: str, entry: CacheEntry) -> tuple[CacheEntry, bool]:
        """Store ``entry`` unless ``key`` exists; return (stored entry, written)."""
        raise NotImplementedError


def _detached(entry: CacheEntry) -> CacheEntry:
    return replace(entry, metrics=dict(entry.metrics))


class MemoryCacheStore(BaseCacheStore):
    def __init__(self, backoff: Optional[BackoffPolicy] = None) -> None:
        super().__init__(backoff)
        self._entries: Dict[str, CacheEntry] = {}

    async def _exists(self, key: str) -> bool:
        return key in self._entries

    async def _read(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        return _detached(entry) if entry is not None else None

    async def _write_if_absent(self, key: str, entry: CacheEntry) -> tuple[CacheEntry, bool]:
        existing = self._entries.get(key)
        if existing is not None:
            return _detached(existing), False
        # entries are write-once; never share the caller's metrics dict
        self._entries[key] = _detached(entry)
        return _detached(entry), True

    def __len__(self) -> int:
        return len(self._entries)


class FileCacheStore(BaseCacheStore):
    """One JSON file per fingerprint, sharded by key prefix.

    New entries are written to a temp file and hard-linked into place, so
    concurrent writers in other processes also resolve to a single winner.
    """

    def __init__(self, root: Path, backoff: Optional[BackoffPolicy] = None) -> None:
        super().__init__(backoff)
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _entry_path(self, key: str) -> Path:
        return self.root / key[:2] / f"{key}.json"

    async def _exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._entry_path(key).exists)

    async def _read(self, key: str) -> Optional[CacheEntry]:
        return await asyncio.to_thread(self._read_sync, key)

    async def _write_if_absent(self, key: str, entry: CacheEntry) -> tuple[CacheEntry, bool]:
        return await asyncio.to_thread(self._write_sync, key, entry)

    def _read_sync(self, key: str) -> Optional[CacheEntry]:
        path = self._entry_path(key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return CacheEntry.from_dict(json.loads(raw))
        except (ValueError, KeyError) as exc:
            raise CacheUnavailableError(f"Corrupt cache entry {path}: {exc}") from exc

    def _write_sync(self, key: str, entry: CacheEntry) -> tuple[CacheEntry, bool]:
        path = self._entry_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(entry.to_dict(), sort_keys=True, indent=2)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            try:
                os.link(tmp_name, path)
            except FileExistsError:
                existing = self._read_sync(key)
                if existing is None:
                    raise CacheUnavailableError(f"Cache entry {path} vanished during write")
                return existing, False
        finally:
            os.unlink(tmp_name)
        return entry, True


def create_cache_store(config: Optional[Dict[str, Any]], root: Path) -> BaseCacheStore:
    """Instantiate the configured cache backend."""
    config = config or {}
    backend = config.get("backend", "memory")
    backoff = BackoffPolicy.from_dict(config.get("retry"))
    if backend == "memory":
        return MemoryCacheStore(backoff)
    if backend == "file":
        path = Path(config.get("root") or "cache")
        if not path.is_absolute():
            path = root / path
        return FileCacheStore(path, backoff)
    raise ValueError(f"Unsupported cache backend: {backend!r}")
