"""Bounded asyncio job scheduler with retry, deadline and cancellation.

Lifecycle per job::

    queued -> running -> succeeded
                      -> failed -> retrying -> running ...
                      -> timed_out -> retrying -> running ...
                      -> timed_out -> failed
                      -> cancelled

A job is terminal once its result future is settled: ``succeeded``,
``failed`` (retries exhausted or not retryable) or ``cancelled``. Each
resource class admits at most ``limit`` running jobs; the rest wait in FIFO
order, with promotion-triggered jobs optionally ranked ahead of fresh ones.
"""

from __future__ import annotations

import asyncio
import heapq
import inspect
import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from .artifacts import safe_run_id
from .diagnostics import (
    AdapterError,
    InvalidInputError,
    JobCancelledError,
    JobFailedError,
    SolverTimeoutError,
)
from .logging import NullEventLogger, log_event
from .retry import BackoffPolicy

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED})


@dataclass
class JobContext:
    job_id: str
    fingerprint: str
    attempt: int
    deadline: Optional[float]
    cancel_event: asyncio.Event

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - asyncio.get_running_loop().time())


Runner = Callable[[JobContext], Awaitable[Any]]


@dataclass
class SimJob:
    fingerprint: str
    tier: int
    runner: Runner
    resource_class: str = "default"
    timeout_s: Optional[float] = None
    max_attempts: int = 1
    side_effect_free: bool = True
    promotion: bool = False
    on_cancel: Optional[Callable[[str], Any]] = None
    job_id: str = field(default_factory=lambda: safe_run_id("job"))
    state: JobState = JobState.QUEUED
    attempts: int = 0
    cancel_requested: bool = False
    failure_reason: Optional[str] = None
    history: List[Tuple[str, float]] = field(default_factory=list)


@dataclass(frozen=True)
class JobHandle:
    job_id: str
    fingerprint: str


@dataclass
class _JobRecord:
    job: SimJob
    future: asyncio.Future
    order: Tuple[int, int]
    task: Optional[asyncio.Task] = None
    cancel_event: Optional[asyncio.Event] = None


class JobScheduler:
    def __init__(
        self,
        *,
        resource_limits: Optional[Mapping[str, int]] = None,
        default_limit: int = 4,
        prioritize_promotions: bool = True,
        backoff: Optional[BackoffPolicy] = None,
        event_logger=None,
    ) -> None:
        if default_limit < 1:
            raise ValueError("default_limit must be >= 1")
        self.resource_limits = dict(resource_limits or {})
        self.default_limit = default_limit
        self.prioritize_promotions = prioritize_promotions
        self.backoff = backoff or BackoffPolicy()
        self.event_logger = event_logger or NullEventLogger()
        self._jobs: Dict[str, _JobRecord] = {}
        self._queues: Dict[str, List[Tuple[int, int, str]]] = {}
        self._running: Dict[str, int] = {}
        self._seq = itertools.count()
        self._closed = False

    def limit(self, resource_class: str) -> int:
        return int(self.resource_limits.get(resource_class, self.default_limit))

    def submit(self, job: SimJob) -> JobHandle:
        if self._closed:
            raise RuntimeError("Scheduler is closed")
        if job.job_id in self._jobs:
            raise ValueError(f"Duplicate job id {job.job_id}")
        if job.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        loop = asyncio.get_running_loop()
        rank = 0 if (job.promotion and self.prioritize_promotions) else 1
        record = _JobRecord(job=job, future=loop.create_future(), order=(rank, next(self._seq)))
        record.future.add_done_callback(_consume_exception)
        self._jobs[job.job_id] = record
        self._transition(job, JobState.QUEUED)
        self._enqueue(record)
        self._dispatch(job.resource_class)
        return JobHandle(job_id=job.job_id, fingerprint=job.fingerprint)

    def status(self, handle: JobHandle) -> JobState:
        return self._record(handle).job.state

    def job(self, handle: JobHandle) -> SimJob:
        return self._record(handle).job

    async def wait(self, handle: JobHandle) -> Any:
        """Suspend until the job settles; cancelling the waiter leaves the job alone."""
        record = self._record(handle)
        return await asyncio.shield(record.future)

    def cancel(self, handle: JobHandle) -> bool:
        record = self._record(handle)
        if record.future.done():
            return False
        job = record.job
        was_running = job.state == JobState.RUNNING
        job.cancel_requested = True
        self._transition(job, JobState.CANCELLED)
        if record.cancel_event is not None:
            record.cancel_event.set()
        if was_running:
            self._notify_adapter_cancel(job)
        if record.task is not None and not record.task.done():
            record.task.cancel()
        record.future.set_exception(
            JobCancelledError(f"Job {job.job_id} cancelled", data={"job_id": job.job_id})
        )
        return True

    async def close(self) -> None:
        self._closed = True
        tasks = []
        for record in list(self._jobs.values()):
            if not record.future.done():
                self.cancel(JobHandle(record.job.job_id, record.job.fingerprint))
            if record.task is not None:
                tasks.append(record.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def stats(self) -> Dict[str, Any]:
        states: Dict[str, int] = {}
        for record in self._jobs.values():
            states[record.job.state.value] = states.get(record.job.state.value, 0) + 1
        return {
            "states": states,
            "running": dict(self._running),
            "queued": {name: len(queue) for name, queue in self._queues.items()},
        }

    def _record(self, handle: JobHandle) -> _JobRecord:
        try:
            return self._jobs[handle.job_id]
        except KeyError:
            raise KeyError(f"Unknown job {handle.job_id}") from None

    def _enqueue(self, record: _JobRecord) -> None:
        queue = self._queues.setdefault(record.job.resource_class, [])
        heapq.heappush(queue, (record.order[0], record.order[1], record.job.job_id))

    def _dispatch(self, resource_class: str) -> None:
        queue = self._queues.get(resource_class, [])
        while queue and self._running.get(resource_class, 0) < self.limit(resource_class):
            _, _, job_id = heapq.heappop(queue)
            record = self._jobs[job_id]
            if record.future.done():
                continue
            self._running[resource_class] = self._running.get(resource_class, 0) + 1
            task = asyncio.create_task(self._run_attempt(record))
            task.add_done_callback(lambda _t, rc=resource_class: self._release(rc))
            record.task = task

    def _release(self, resource_class: str) -> None:
        self._running[resource_class] = max(0, self._running.get(resource_class, 0) - 1)
        if not self._closed:
            self._dispatch(resource_class)

    async def _run_attempt(self, record: _JobRecord) -> None:
        job = record.job
        loop = asyncio.get_running_loop()
        job.attempts += 1
        deadline = loop.time() + job.timeout_s if job.timeout_s is not None else None
        ctx = JobContext(
            job_id=job.job_id,
            fingerprint=job.fingerprint,
            attempt=job.attempts,
            deadline=deadline,
            cancel_event=asyncio.Event(),
        )
        record.cancel_event = ctx.cancel_event
        self._transition(job, JobState.RUNNING, attempt=job.attempts)

        try:
            if job.timeout_s is not None:
                result = await asyncio.wait_for(job.runner(ctx), timeout=job.timeout_s)
            else:
                result = await job.runner(ctx)
        except asyncio.CancelledError:
            if not record.future.done():
                self.cancel(JobHandle(job.job_id, job.fingerprint))
            raise
        except (asyncio.TimeoutError, SolverTimeoutError):
            self._transition(job, JobState.TIMED_OUT, attempt=job.attempts)
            self._notify_adapter_cancel(job)
            error: Exception = SolverTimeoutError(
                f"Job {job.job_id} exceeded its {job.timeout_s}s deadline",
                data={"job_id": job.job_id, "attempt": job.attempts},
            )
            retryable = job.side_effect_free
            kind = "timeout"
        except JobCancelledError:
            if not record.future.done():
                self.cancel(JobHandle(job.job_id, job.fingerprint))
            return
        except InvalidInputError as exc:
            error, retryable, kind = exc, False, "invalid-input"
        except AdapterError as exc:
            error, retryable, kind = exc, exc.retryable and job.side_effect_free, "adapter-error"
        except Exception as exc:
            error = AdapterError(f"{type(exc).__name__}: {exc}")
            error.__cause__ = exc
            retryable, kind = job.side_effect_free, "adapter-error"
        else:
            if not record.future.done():
                self._transition(job, JobState.SUCCEEDED, attempt=job.attempts)
                record.future.set_result(result)
            return

        if record.future.done():
            return
        if job.state != JobState.TIMED_OUT:
            self._transition(job, JobState.FAILED, attempt=job.attempts, error=str(error))
        if retryable and job.attempts < job.max_attempts:
            delay = self.backoff.delay(job.attempts)
            self._transition(job, JobState.RETRYING, attempt=job.attempts, delay_s=delay)
            logger.warning(
                "Job %s attempt %d/%d failed (%s), retrying in %.2fs",
                job.job_id,
                job.attempts,
                job.max_attempts,
                error,
                delay,
            )
            record.task = asyncio.create_task(self._requeue_after(record, delay))
            return

        if not retryable:
            reason = f"{kind}(non-retryable)"
        else:
            reason = f"{kind}(retries-exhausted)"
        job.failure_reason = reason
        if job.state != JobState.FAILED:
            self._transition(job, JobState.FAILED, attempt=job.attempts, reason=reason)
        logger.error("Job %s failed after %d attempt(s): %s", job.job_id, job.attempts, reason)
        record.future.set_exception(
            JobFailedError(
                f"Job {job.job_id} failed: {error}",
                reason=reason,
                attempts=job.attempts,
                cause=error,
                data={"job_id": job.job_id, "reason": reason},
            )
        )

    async def _requeue_after(self, record: _JobRecord, delay: float) -> None:
        await asyncio.sleep(delay)
        if record.future.done() or self._closed:
            return
        self._enqueue(record)
        self._dispatch(record.job.resource_class)

    def _notify_adapter_cancel(self, job: SimJob) -> None:
        if job.on_cancel is None:
            return
        try:
            outcome = job.on_cancel(job.job_id)
        except Exception as exc:
            logger.warning("Adapter cancel hook for %s raised: %s", job.job_id, exc)
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            task.add_done_callback(_log_hook_failure)

    def _transition(self, job: SimJob, state: JobState, **data: Any) -> None:
        job.state = state
        job.history.append((state.value, time.time()))
        log_event(
            self.event_logger,
            "job.state",
            job_id=job.job_id,
            fingerprint=job.fingerprint,
            tier=job.tier,
            state=state.value,
            **data,
        )


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


def _log_hook_failure(task: asyncio.Future) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.warning("Adapter cancel hook failed: %s", task.exception())
