from __future__ import annotations

import asyncio

import pytest

from simladder.core.diagnostics import (
    AdapterError,
    InvalidInputError,
    JobCancelledError,
    JobFailedError,
    SolverTimeoutError,
)
from simladder.core.logging import MemoryEventLogger
from simladder.core.retry import BackoffPolicy
from simladder.core.scheduler import JobScheduler, JobState, SimJob

from stubs import FAST_BACKOFF


def _states(job):
    return [state for state, _ in job.history]


@pytest.mark.asyncio
async def test_successful_job_reports_result_and_history():
    events = MemoryEventLogger()
    scheduler = JobScheduler(backoff=FAST_BACKOFF, event_logger=events)

    async def runner(ctx):
        assert ctx.attempt == 1
        return ctx.fingerprint

    handle = scheduler.submit(SimJob(fingerprint="fp-1", tier=0, runner=runner))
    assert await scheduler.wait(handle) == "fp-1"
    job = scheduler.job(handle)
    assert job.state == JobState.SUCCEEDED
    assert _states(job) == ["queued", "running", "succeeded"]
    assert [event["state"] for event in events.of("job.state")] == ["queued", "running", "succeeded"]


@pytest.mark.asyncio
async def test_resource_class_limit_is_respected():
    scheduler = JobScheduler(resource_limits={"em": 2}, backoff=FAST_BACKOFF)
    running = 0
    peak = 0

    async def runner(ctx):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1

    handles = [
        scheduler.submit(SimJob(fingerprint=f"fp-{i}", tier=1, runner=runner, resource_class="em"))
        for i in range(6)
    ]
    assert scheduler.stats()["running"]["em"] == 2
    await asyncio.gather(*(scheduler.wait(handle) for handle in handles))
    assert peak == 2


@pytest.mark.asyncio
async def test_classes_do_not_share_slots():
    scheduler = JobScheduler(resource_limits={"em": 1, "fast": 1}, backoff=FAST_BACKOFF)
    gate = asyncio.Event()

    async def blocked(ctx):
        await gate.wait()

    async def quick(ctx):
        return "done"

    slow = scheduler.submit(SimJob(fingerprint="a", tier=1, runner=blocked, resource_class="em"))
    fast = scheduler.submit(SimJob(fingerprint="b", tier=0, runner=quick, resource_class="fast"))
    assert await asyncio.wait_for(scheduler.wait(fast), timeout=1) == "done"
    assert scheduler.status(slow) == JobState.RUNNING
    gate.set()
    await scheduler.wait(slow)


@pytest.mark.asyncio
async def test_fifo_within_class_and_promotions_first():
    scheduler = JobScheduler(default_limit=1, backoff=FAST_BACKOFF)
    gate = asyncio.Event()
    order = []

    async def blocker(ctx):
        await gate.wait()

    def recorder(name):
        async def runner(ctx):
            order.append(name)

        return runner

    handles = [scheduler.submit(SimJob(fingerprint="block", tier=0, runner=blocker))]
    handles.append(scheduler.submit(SimJob(fingerprint="f1", tier=0, runner=recorder("f1"))))
    handles.append(scheduler.submit(SimJob(fingerprint="f2", tier=0, runner=recorder("f2"))))
    handles.append(
        scheduler.submit(SimJob(fingerprint="p1", tier=1, runner=recorder("p1"), promotion=True))
    )
    handles.append(scheduler.submit(SimJob(fingerprint="f3", tier=0, runner=recorder("f3"))))
    gate.set()
    await asyncio.gather(*(scheduler.wait(handle) for handle in handles))
    assert order == ["p1", "f1", "f2", "f3"]


@pytest.mark.asyncio
async def test_plain_fifo_when_promotions_are_not_prioritized():
    scheduler = JobScheduler(default_limit=1, prioritize_promotions=False, backoff=FAST_BACKOFF)
    gate = asyncio.Event()
    order = []

    async def blocker(ctx):
        await gate.wait()

    def recorder(name):
        async def runner(ctx):
            order.append(name)

        return runner

    handles = [scheduler.submit(SimJob(fingerprint="block", tier=0, runner=blocker))]
    handles.append(scheduler.submit(SimJob(fingerprint="f1", tier=0, runner=recorder("f1"))))
    handles.append(
        scheduler.submit(SimJob(fingerprint="p1", tier=1, runner=recorder("p1"), promotion=True))
    )
    gate.set()
    await asyncio.gather(*(scheduler.wait(handle) for handle in handles))
    assert order == ["f1", "p1"]


@pytest.mark.asyncio
async def test_retryable_failure_is_retried():
    scheduler = JobScheduler(backoff=FAST_BACKOFF)
    attempts = []

    async def runner(ctx):
        attempts.append(ctx.attempt)
        if ctx.attempt == 1:
            raise AdapterError("license server busy")
        return "ok"

    handle = scheduler.submit(SimJob(fingerprint="fp", tier=0, runner=runner, max_attempts=3))
    assert await scheduler.wait(handle) == "ok"
    job = scheduler.job(handle)
    assert attempts == [1, 2]
    assert job.attempts == 2
    assert _states(job) == ["queued", "running", "failed", "retrying", "running", "succeeded"]


@pytest.mark.asyncio
async def test_retries_exhausted():
    scheduler = JobScheduler(backoff=FAST_BACKOFF)

    async def runner(ctx):
        raise AdapterError("always broken")

    handle = scheduler.submit(SimJob(fingerprint="fp", tier=0, runner=runner, max_attempts=3))
    with pytest.raises(JobFailedError) as info:
        await scheduler.wait(handle)
    assert info.value.reason == "adapter-error(retries-exhausted)"
    assert info.value.attempts == 3
    assert isinstance(info.value.cause, AdapterError)
    assert scheduler.status(handle) == JobState.FAILED


@pytest.mark.asyncio
async def test_non_retryable_errors_fail_immediately():
    scheduler = JobScheduler(backoff=FAST_BACKOFF)

    async def bad_adapter(ctx):
        raise AdapterError("malformed output", retryable=False)

    async def bad_input(ctx):
        raise InvalidInputError("layout references unknown layer")

    first = scheduler.submit(SimJob(fingerprint="a", tier=0, runner=bad_adapter, max_attempts=3))
    second = scheduler.submit(SimJob(fingerprint="b", tier=0, runner=bad_input, max_attempts=3))
    with pytest.raises(JobFailedError) as adapter_info:
        await scheduler.wait(first)
    with pytest.raises(JobFailedError) as input_info:
        await scheduler.wait(second)
    assert adapter_info.value.reason == "adapter-error(non-retryable)"
    assert adapter_info.value.attempts == 1
    assert input_info.value.reason == "invalid-input(non-retryable)"
    assert input_info.value.attempts == 1


@pytest.mark.asyncio
async def test_unexpected_exception_is_wrapped_as_adapter_error():
    scheduler = JobScheduler(backoff=FAST_BACKOFF)

    async def runner(ctx):
        raise KeyError("q_peak")

    handle = scheduler.submit(SimJob(fingerprint="fp", tier=0, runner=runner, max_attempts=1))
    with pytest.raises(JobFailedError) as info:
        await scheduler.wait(handle)
    assert isinstance(info.value.cause, AdapterError)
    assert info.value.reason == "adapter-error(retries-exhausted)"


@pytest.mark.asyncio
async def test_timeout_on_side_effecting_job_is_not_retried():
    scheduler = JobScheduler(backoff=FAST_BACKOFF)
    notified = []
    calls = 0

    async def runner(ctx):
        nonlocal calls
        calls += 1
        await asyncio.sleep(10)

    handle = scheduler.submit(
        SimJob(
            fingerprint="fp",
            tier=1,
            runner=runner,
            timeout_s=0.05,
            max_attempts=3,
            side_effect_free=False,
            on_cancel=notified.append,
        )
    )
    with pytest.raises(JobFailedError) as info:
        await scheduler.wait(handle)
    assert info.value.reason == "timeout(non-retryable)"
    assert isinstance(info.value.cause, SolverTimeoutError)
    assert calls == 1
    assert notified == [handle.job_id]
    assert _states(scheduler.job(handle)) == ["queued", "running", "timed_out", "failed"]


@pytest.mark.asyncio
async def test_timeout_on_side_effect_free_job_is_retried():
    scheduler = JobScheduler(backoff=FAST_BACKOFF)

    async def runner(ctx):
        assert ctx.remaining() is not None
        await asyncio.sleep(10)

    handle = scheduler.submit(
        SimJob(fingerprint="fp", tier=0, runner=runner, timeout_s=0.02, max_attempts=2)
    )
    with pytest.raises(JobFailedError) as info:
        await scheduler.wait(handle)
    assert info.value.reason == "timeout(retries-exhausted)"
    assert info.value.attempts == 2
    assert "retrying" in _states(scheduler.job(handle))


@pytest.mark.asyncio
async def test_runner_reported_timeout_counts_as_timeout():
    scheduler = JobScheduler(backoff=FAST_BACKOFF)

    async def runner(ctx):
        raise SolverTimeoutError("solver hit its own wall clock")

    handle = scheduler.submit(
        SimJob(fingerprint="fp", tier=1, runner=runner, max_attempts=3, side_effect_free=False)
    )
    with pytest.raises(JobFailedError) as info:
        await scheduler.wait(handle)
    assert info.value.reason == "timeout(non-retryable)"


@pytest.mark.asyncio
async def test_backoff_releases_the_slot():
    scheduler = JobScheduler(
        default_limit=1, backoff=BackoffPolicy(base_delay_s=0.1, jitter=False)
    )
    order = []

    async def flaky(ctx):
        order.append(f"A{ctx.attempt}")
        if ctx.attempt == 1:
            raise AdapterError("transient")

    async def other(ctx):
        order.append("B")

    first = scheduler.submit(SimJob(fingerprint="a", tier=0, runner=flaky, max_attempts=2))
    second = scheduler.submit(SimJob(fingerprint="b", tier=0, runner=other))
    await asyncio.gather(scheduler.wait(first), scheduler.wait(second))
    assert order == ["A1", "B", "A2"]


@pytest.mark.asyncio
async def test_cancel_queued_job_never_runs():
    scheduler = JobScheduler(default_limit=1, backoff=FAST_BACKOFF)
    gate = asyncio.Event()
    ran = []

    async def blocker(ctx):
        await gate.wait()

    async def runner(ctx):
        ran.append(ctx.job_id)

    first = scheduler.submit(SimJob(fingerprint="a", tier=0, runner=blocker))
    queued = scheduler.submit(SimJob(fingerprint="b", tier=0, runner=runner))
    assert scheduler.status(queued) == JobState.QUEUED
    assert scheduler.cancel(queued)
    assert scheduler.status(queued) == JobState.CANCELLED
    gate.set()
    await scheduler.wait(first)
    with pytest.raises(JobCancelledError):
        await scheduler.wait(queued)
    assert ran == []


@pytest.mark.asyncio
async def test_cancel_running_job_signals_runner_and_adapter():
    scheduler = JobScheduler(backoff=FAST_BACKOFF)
    notified = []
    seen_cancel = asyncio.Event()

    async def runner(ctx):
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            if ctx.cancelled:
                seen_cancel.set()
            raise

    handle = scheduler.submit(
        SimJob(fingerprint="fp", tier=0, runner=runner, on_cancel=notified.append)
    )
    await asyncio.sleep(0.01)
    assert scheduler.status(handle) == JobState.RUNNING
    assert scheduler.cancel(handle)
    with pytest.raises(JobCancelledError):
        await scheduler.wait(handle)
    await asyncio.wait_for(seen_cancel.wait(), timeout=1)
    assert notified == [handle.job_id]
    assert not scheduler.cancel(handle)
    await asyncio.sleep(0.01)
    assert scheduler.stats()["running"]["default"] == 0


@pytest.mark.asyncio
async def test_close_cancels_outstanding_jobs():
    scheduler = JobScheduler(default_limit=1, backoff=FAST_BACKOFF)

    async def runner(ctx):
        await asyncio.sleep(10)

    handles = [scheduler.submit(SimJob(fingerprint=f"fp{i}", tier=0, runner=runner)) for i in range(3)]
    await asyncio.sleep(0.01)
    await scheduler.close()
    assert all(scheduler.status(handle) == JobState.CANCELLED for handle in handles)
    with pytest.raises(RuntimeError):
        scheduler.submit(SimJob(fingerprint="late", tier=0, runner=runner))
