from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Tuple

from .cache import BaseCacheStore
from .fingerprint import Fingerprint
from .models import CacheEntry

logger = logging.getLogger(__name__)

Work = Callable[[], Awaitable[CacheEntry]]


@dataclass(frozen=True)
class DedupOutcome:
    entry: CacheEntry
    cached: bool


@dataclass
class _Flight:
    task: asyncio.Task
    waiters: int = 0


class InFlightDeduplicator:
    """Collapse concurrent requests for the same fingerprint into one execution.

    A cache hit returns without running anything. Otherwise the first caller
    registers a shared execution and later callers join it; every waiter sees
    the same entry or the same exception. Failures are never written to the
    cache, so the next request executes again.
    """

    def __init__(self, cache: BaseCacheStore) -> None:
        self.cache = cache
        self._flights: Dict[str, _Flight] = {}

    def in_flight(self) -> int:
        return len(self._flights)

    async def run_once(self, fp: Fingerprint, work: Work) -> DedupOutcome:
        flight = self._flights.get(fp.key)
        if flight is None:
            entry = await self.cache.get(fp)
            if entry is not None:
                return DedupOutcome(entry=entry, cached=True)
            # Another caller may have registered while we were reading.
            flight = self._flights.get(fp.key)
            if flight is None:
                flight = _Flight(task=asyncio.create_task(self._execute(fp, work)))
                flight.task.add_done_callback(_consume_exception)
                self._flights[fp.key] = flight
                logger.debug("Registered execution for %s", fp.short())
            else:
                logger.debug("Joined execution for %s", fp.short())

        flight.waiters += 1
        try:
            entry, executed = await asyncio.shield(flight.task)
        except asyncio.CancelledError:
            flight.waiters -= 1
            if flight.waiters == 0 and not flight.task.done():
                logger.info("All waiters for %s cancelled; cancelling execution", fp.short())
                if self._flights.get(fp.key) is flight:
                    del self._flights[fp.key]
                flight.task.cancel()
            raise
        flight.waiters -= 1
        return DedupOutcome(entry=entry, cached=not executed)

    async def _execute(self, fp: Fingerprint, work: Work) -> Tuple[CacheEntry, bool]:
        try:
            entry = await self.cache.get(fp)
            if entry is not None:
                return entry, False
            produced = await work()
            stored = await self.cache.put(fp, produced)
            return stored, True
        finally:
            flight = self._flights.get(fp.key)
            if flight is not None and flight.task is asyncio.current_task():
                del self._flights[fp.key]


def _consume_exception(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()
