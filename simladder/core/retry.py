"""Exponential backoff shared by the cache boundary and the job scheduler."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Tuple, Type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackoffPolicy:
    max_attempts: int = 3
    base_delay_s: float = 0.5
    factor: float = 2.0
    max_delay_s: float = 30.0
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = self.base_delay_s * (self.factor ** max(attempt - 1, 0))
        delay = min(delay, self.max_delay_s)
        if self.jitter:
            delay *= 0.5 + random.random()  # noqa: S311
        return delay

    @classmethod
    def from_dict(cls, data: Any) -> "BackoffPolicy":
        if isinstance(data, BackoffPolicy):
            return data
        data = dict(data or {})
        return cls(
            max_attempts=int(data.get("max_attempts", cls.max_attempts)),
            base_delay_s=float(data.get("base_delay_s", cls.base_delay_s)),
            factor=float(data.get("factor", cls.factor)),
            max_delay_s=float(data.get("max_delay_s", cls.max_delay_s)),
            jitter=bool(data.get("jitter", cls.jitter)),
        )


async def with_backoff(
    fn: Callable[[], Awaitable[Any]],
    policy: BackoffPolicy,
    *,
    retry_on: Tuple[Type[BaseException], ...],
    what: str = "operation",
) -> Any:
    """Await ``fn()``, retrying on ``retry_on`` until attempts run out.

    The last error is re-raised unchanged.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except retry_on as exc:
            if attempt >= policy.max_attempts:
                raise
            delay = policy.delay(attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                what,
                attempt,
                policy.max_attempts,
                delay,
                exc,
            )
            await asyncio.sleep(delay)
