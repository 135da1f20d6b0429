from __future__ import annotations

import asyncio

import pytest

from simladder.core.cache import MemoryCacheStore
from simladder.core.pipeline import PipelineState
from simladder.core.promotion import PromotionReason

from stubs import (
    FAST_BACKOFF,
    StubChecker,
    StubSolver,
    make_coordinator,
    make_revision,
    two_tier_ladder,
)


def _solvers(**kwargs):
    tier0 = StubSolver("t0", **{"uncertainty": 0.9, **kwargs.get("t0", {})})
    tier1 = StubSolver("t1", metrics={"q_peak": 12.4}, uncertainty=0.2, **kwargs.get("t1", {}))
    return {"t0": tier0, "t1": tier1}


@pytest.mark.asyncio
async def test_uncertain_result_is_promoted_then_settles():
    solvers = _solvers()
    coordinator = make_coordinator(solvers, two_tier_ladder())
    record = await coordinator.run(make_revision())

    assert record.state == PipelineState.SUCCEEDED
    assert [result.tier for result in record.results] == [0, 1]
    assert [decision.reason for decision in record.decisions] == [
        PromotionReason.UNCERTAINTY_EXCEEDED,
        PromotionReason.MAX_TIER_REACHED,
    ]
    assert record.decisions[0].to_tier == 1
    assert record.spent == pytest.approx(6.0)
    assert record.results[1].metrics == {"q_peak": 12.4}
    assert solvers["t0"].calls == 1
    assert solvers["t1"].calls == 1
    assert len(record.jobs) == 2
    assert len(coordinator.persistence.results(record.revision_id)) == 2
    assert coordinator.persistence.outcomes(record.revision_id)[-1]["state"] == "succeeded"


@pytest.mark.asyncio
async def test_check_failure_spends_nothing():
    solvers = _solvers()
    checker = StubChecker(passed=False)
    coordinator = make_coordinator(solvers, two_tier_ladder(), checker=checker)
    record = await coordinator.run(make_revision())

    assert record.state == PipelineState.CHECK_FAILED
    assert record.spent == 0.0
    assert record.results == []
    assert solvers["t0"].calls == 0
    reports = coordinator.persistence.reports(record.revision_id)
    assert len(reports) == 1
    assert reports[0]["passed"] is False


@pytest.mark.asyncio
async def test_rerun_is_served_from_cache():
    solvers = _solvers()
    coordinator = make_coordinator(solvers, two_tier_ladder())
    first = await coordinator.run(make_revision())
    second = await coordinator.run(make_revision())

    assert second.state == PipelineState.SUCCEEDED
    assert all(result.cached for result in second.results)
    assert [result.tier for result in second.results] == [0, 1]
    assert second.decisions[0].reason == PromotionReason.CACHED
    assert second.spent == 0.0
    assert second.jobs == []
    assert solvers["t0"].calls == 1
    assert solvers["t1"].calls == 1
    assert [r.metrics for r in second.results] == [r.metrics for r in first.results]


@pytest.mark.asyncio
async def test_cached_higher_tier_is_fetched_even_without_budget():
    solvers = _solvers()
    coordinator = make_coordinator(solvers, two_tier_ladder())
    await coordinator.run(make_revision())
    record = await coordinator.run(make_revision(), budget=1.0)

    assert [result.tier for result in record.results] == [0, 1]
    assert record.decisions[0].fetch_only
    assert solvers["t1"].calls == 1


@pytest.mark.asyncio
async def test_budget_stops_promotion():
    solvers = _solvers()
    coordinator = make_coordinator(solvers, two_tier_ladder())
    record = await coordinator.run(make_revision(), budget=3.0)

    assert record.state == PipelineState.SUCCEEDED
    assert [result.tier for result in record.results] == [0]
    assert record.decisions[0].reason == PromotionReason.BUDGET_EXHAUSTED
    assert record.spent == pytest.approx(1.0)
    assert solvers["t1"].calls == 0


@pytest.mark.asyncio
async def test_concurrent_identical_pipelines_share_one_execution():
    solvers = _solvers(t0={"delay": 0.05}, t1={"delay": 0.05})
    coordinator = make_coordinator(solvers, two_tier_ladder())
    first, second = await asyncio.gather(
        coordinator.run(make_revision()), coordinator.run(make_revision())
    )

    assert solvers["t0"].calls == 1
    assert solvers["t1"].calls == 1
    assert first.state == second.state == PipelineState.SUCCEEDED
    assert [(r.tier, r.fingerprint, r.metrics) for r in first.results] == [
        (r.tier, r.fingerprint, r.metrics) for r in second.results
    ]
    assert len(coordinator.cache) == 2


@pytest.mark.asyncio
async def test_distinct_revisions_run_in_parallel_up_to_the_limit():
    solvers = _solvers(t0={"delay": 0.2})
    coordinator = make_coordinator(solvers, two_tier_ladder(), budget=1.0, default_limit=2)
    records = await asyncio.gather(*(coordinator.run(make_revision(i)) for i in range(4)))

    assert all(record.state == PipelineState.SUCCEEDED for record in records)
    assert solvers["t0"].calls == 4
    assert solvers["t0"].max_running == 2


@pytest.mark.asyncio
async def test_tier_fingerprints_differ_per_tier():
    coordinator = make_coordinator(_solvers(), two_tier_ladder())
    revision = make_revision()
    tier0 = coordinator.tier_fingerprint(revision, coordinator.ladder.tier(0))
    tier1 = coordinator.tier_fingerprint(revision, coordinator.ladder.tier(1))
    assert tier0 != tier1
    assert tier0 == coordinator.tier_fingerprint(revision, coordinator.ladder.tier(0))


@pytest.mark.asyncio
async def test_failed_job_is_not_cached_and_rerun_executes_again():
    solvers = _solvers(t0={"failures": 5, "retryable": False})
    coordinator = make_coordinator(solvers, two_tier_ladder())
    revision = make_revision()
    record = await coordinator.run(revision)

    assert record.state == PipelineState.FAILED
    assert record.failure_reason == "adapter-error(non-retryable)"
    assert record.results == []
    fp = coordinator.tier_fingerprint(revision, coordinator.ladder.tier(0))
    assert not await coordinator.cache.exists(fp)

    solvers["t0"].failures = 0
    retry = await coordinator.run(revision)
    assert retry.state == PipelineState.SUCCEEDED
    assert solvers["t0"].calls == 2


@pytest.mark.asyncio
async def test_transient_failures_are_retried_within_the_tier():
    solvers = _solvers(t0={"failures": 2})
    coordinator = make_coordinator(solvers, two_tier_ladder())
    record = await coordinator.run(make_revision())

    assert record.state == PipelineState.SUCCEEDED
    assert solvers["t0"].calls == 3
    assert record.spent == pytest.approx(6.0)


@pytest.mark.asyncio
async def test_side_effecting_solver_timeout_fails_without_retry():
    solvers = _solvers(t1={"delay": 5.0, "side_effect_free": False})
    tiers = two_tier_ladder(tier1={"timeout_s": 0.05, "max_attempts": 3})
    coordinator = make_coordinator(solvers, tiers)
    revision = make_revision()
    record = await coordinator.run(revision)

    assert record.state == PipelineState.FAILED
    assert record.failure_reason == "timeout(non-retryable)"
    assert solvers["t1"].calls == 1
    assert solvers["t1"].cancelled == [record.jobs[1]]
    assert [result.tier for result in record.results] == [0]
    fp = coordinator.tier_fingerprint(revision, coordinator.ladder.tier(1))
    assert not await coordinator.cache.exists(fp)


@pytest.mark.asyncio
async def test_cancelling_pipeline_cancels_its_job():
    gate = asyncio.Event()
    solvers = _solvers(t0={"gate": gate})
    coordinator = make_coordinator(solvers, two_tier_ladder())
    revision = make_revision()
    task = asyncio.create_task(coordinator.run(revision))
    await asyncio.sleep(0.05)
    assert solvers["t0"].running == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.sleep(0.05)

    assert coordinator.scheduler.stats()["states"] == {"cancelled": 1}
    assert solvers["t0"].running == 0
    assert len(solvers["t0"].cancelled) == 1
    assert coordinator.dedup.in_flight() == 0
    outcome = coordinator.persistence.outcomes(revision.revision_id)[-1]
    assert outcome["state"] == "cancelled"


@pytest.mark.asyncio
async def test_confident_first_tier_is_not_promoted():
    solvers = _solvers(t0={"uncertainty": 0.1})
    coordinator = make_coordinator(solvers, two_tier_ladder())
    record = await coordinator.run(make_revision())

    assert [result.tier for result in record.results] == [0]
    assert record.decisions[0].reason == PromotionReason.BELOW_THRESHOLD
    assert solvers["t1"].calls == 0


class _OfflineCache(MemoryCacheStore):
    def __init__(self, *, reads: bool = True, lookups: bool = True) -> None:
        super().__init__(FAST_BACKOFF)
        self.reads_fail = reads
        self.lookups_fail = lookups

    async def _read(self, key):
        if self.reads_fail:
            raise OSError("cache volume unmounted")
        return await super()._read(key)

    async def _exists(self, key):
        if self.lookups_fail:
            raise OSError("cache volume unmounted")
        return await super()._exists(key)


@pytest.mark.asyncio
async def test_unreachable_cache_fails_pipeline_without_running_jobs():
    solvers = _solvers()
    coordinator = make_coordinator(solvers, two_tier_ladder(), cache=_OfflineCache())
    record = await coordinator.run(make_revision())

    assert record.state == PipelineState.FAILED
    assert record.failure_reason == "E-CACHE-UNAVAILABLE"
    assert record.jobs == []
    assert solvers["t0"].calls == 0
    assert record.spent == 0
    outcome = coordinator.persistence.outcomes(record.revision_id)[-1]
    assert outcome["state"] == "failed"


@pytest.mark.asyncio
async def test_cache_lookup_failure_while_promoting_stops_the_pipeline():
    solvers = _solvers()
    cache = _OfflineCache(reads=False)
    coordinator = make_coordinator(solvers, two_tier_ladder(), cache=cache)
    record = await coordinator.run(make_revision())

    assert record.state == PipelineState.FAILED
    assert record.failure_reason == "E-CACHE-UNAVAILABLE"
    assert solvers["t0"].calls == 1
    assert solvers["t1"].calls == 0
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_normalizer_error_ends_pipeline_as_failed():
    class BrokenNormalizer:
        def normalize(self, raw, artifacts):
            raise RuntimeError("normalizer blew up")

    solvers = _solvers()
    coordinator = make_coordinator(solvers, two_tier_ladder())
    coordinator.normalizer = BrokenNormalizer()
    revision = make_revision()
    record = await coordinator.run(revision)

    assert record.state == PipelineState.FAILED
    assert record.failure_reason == "RuntimeError"
    assert "normalizer blew up" in record.error
    assert coordinator.dedup.in_flight() == 0
    assert len(coordinator.cache) == 0
    outcome = coordinator.persistence.outcomes(revision.revision_id)[-1]
    assert outcome["state"] == "failed"


@pytest.mark.asyncio
async def test_checker_error_ends_pipeline_as_failed():
    class ExplodingChecker:
        def check(self, revision, pdk):
            raise KeyError("stackup")

    solvers = _solvers()
    coordinator = make_coordinator(solvers, two_tier_ladder(), checker=ExplodingChecker())
    revision = make_revision()
    record = await coordinator.run(revision)

    assert record.state == PipelineState.FAILED
    assert record.failure_reason == "KeyError"
    assert solvers["t0"].calls == 0
    assert coordinator.persistence.outcomes(revision.revision_id)[-1]["state"] == "failed"
