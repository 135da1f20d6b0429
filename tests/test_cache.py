from __future__ import annotations

import asyncio

import pytest

from simladder.core.cache import FileCacheStore, MemoryCacheStore, create_cache_store
from simladder.core.diagnostics import CacheUnavailableError
from simladder.core.retry import BackoffPolicy

from stubs import FAST_BACKOFF, make_entry, make_fp


class FlakyStore(MemoryCacheStore):
    def __init__(self, failures: int) -> None:
        super().__init__(FAST_BACKOFF)
        self.failures = failures
        self.reads = 0

    async def _read(self, key):
        self.reads += 1
        if self.failures > 0:
            self.failures -= 1
            raise OSError("backend offline")
        return await super()._read(key)


@pytest.mark.asyncio
async def test_memory_store_miss_then_hit():
    store = MemoryCacheStore(FAST_BACKOFF)
    fp = make_fp()
    assert await store.get(fp) is None
    assert not await store.exists(fp)
    entry = make_entry(fp)
    assert await store.put(fp, entry) == entry
    assert await store.exists(fp)
    assert await store.get(fp) == entry
    assert store.stats() == {"hits": 1, "misses": 1, "writes": 1, "races_lost": 0}


@pytest.mark.asyncio
async def test_first_writer_wins():
    store = MemoryCacheStore(FAST_BACKOFF)
    fp = make_fp()
    first = make_entry(fp, q=10.0)
    second = make_entry(fp, q=99.0)
    assert await store.put(fp, first) == first
    stored = await store.put(fp, second)
    assert stored.metrics == {"q_peak": 10.0}
    assert store.stats()["races_lost"] == 1


@pytest.mark.asyncio
async def test_memory_entries_do_not_share_metrics_with_callers():
    store = MemoryCacheStore(FAST_BACKOFF)
    fp = make_fp()
    entry = make_entry(fp, q=10.0)
    stored = await store.put(fp, entry)
    entry.metrics["q_peak"] = -1.0
    stored.metrics["q_peak"] = -2.0
    (await store.get(fp)).metrics["q_peak"] = -3.0
    assert (await store.get(fp)).metrics == {"q_peak": 10.0}


@pytest.mark.asyncio
async def test_concurrent_puts_resolve_to_one_entry(tmp_path):
    store = FileCacheStore(tmp_path / "cache", FAST_BACKOFF)
    fp = make_fp()
    entries = [make_entry(fp, q=float(i)) for i in range(8)]
    stored = await asyncio.gather(*(store.put(fp, entry) for entry in entries))
    assert len({item.metrics["q_peak"] for item in stored}) == 1
    assert (await store.get(fp)).metrics == stored[0].metrics
    assert store.stats()["writes"] == 1


@pytest.mark.asyncio
async def test_file_store_survives_reopen(tmp_path):
    fp = make_fp()
    entry = make_entry(fp, tier=1, q=17.5)
    await FileCacheStore(tmp_path, FAST_BACKOFF).put(fp, entry)
    reopened = FileCacheStore(tmp_path, FAST_BACKOFF)
    assert await reopened.get(fp) == entry
    assert not list(tmp_path.rglob(".tmp-*"))


@pytest.mark.asyncio
async def test_put_rejects_mismatched_fingerprint():
    store = MemoryCacheStore(FAST_BACKOFF)
    with pytest.raises(ValueError):
        await store.put(make_fp(1), make_entry(make_fp(2)))


@pytest.mark.asyncio
async def test_transient_backend_failure_is_retried():
    store = FlakyStore(failures=2)
    assert await store.get(make_fp()) is None
    assert store.reads == 3


@pytest.mark.asyncio
async def test_unreachable_backend_raises_instead_of_missing():
    store = FlakyStore(failures=100)
    with pytest.raises(CacheUnavailableError):
        await store.get(make_fp())
    assert store.reads == FAST_BACKOFF.max_attempts
    assert store.stats()["misses"] == 0


@pytest.mark.asyncio
async def test_corrupt_entry_is_unavailable(tmp_path):
    store = FileCacheStore(tmp_path, BackoffPolicy(max_attempts=1))
    fp = make_fp()
    path = tmp_path / fp.key[:2] / f"{fp.key}.json"
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(CacheUnavailableError):
        await store.get(fp)


def test_create_cache_store_resolves_relative_root(tmp_path):
    store = create_cache_store({"backend": "file", "root": "entries"}, tmp_path)
    assert isinstance(store, FileCacheStore)
    assert store.root == tmp_path / "entries"
    assert isinstance(create_cache_store(None, tmp_path), MemoryCacheStore)
    with pytest.raises(ValueError):
        create_cache_store({"backend": "redis"}, tmp_path)
