"""Per-revision sequencing: check, simulate, promote, repeat.

The coordinator never runs a solver directly. Every tier goes through the
in-flight deduplicator, which either answers from the cache, joins an
execution already running for the same fingerprint, or submits exactly one
job to the scheduler.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set

from .artifacts import BaseArtifactStore, safe_run_id
from .cache import BaseCacheStore
from .dedup import InFlightDeduplicator
from .diagnostics import JobCancelledError, JobFailedError, SimLadderError
from .fingerprint import Fingerprint, fingerprint
from .ladder import FidelityLadder, FidelityTier
from .logging import NullEventLogger, log_event
from .models import (
    CacheEntry,
    ConstraintReport,
    FrequencyPlan,
    LayoutRevision,
    PDKVersion,
    SimResult,
    SolverSettings,
    utc_now,
)
from .persistence import MemoryPersistence
from .plugin_api import (
    CheckerPlugin,
    LayoutKernelPlugin,
    NormalizerPlugin,
    SolverAdapterPlugin,
    SolverContext,
)
from .promotion import PromotionDecision, PromotionPolicy
from .scheduler import JobContext, JobScheduler, SimJob

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    PENDING = "pending"
    CHECKING = "checking"
    SIMULATING = "simulating"
    SUCCEEDED = "succeeded"
    CHECK_FAILED = "check_failed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_PIPELINE_STATES = frozenset(
    {
        PipelineState.SUCCEEDED,
        PipelineState.CHECK_FAILED,
        PipelineState.FAILED,
        PipelineState.CANCELLED,
    }
)


@dataclass
class PipelineRecord:
    pipeline_id: str
    budget: float
    revision_id: Optional[str] = None
    state: PipelineState = PipelineState.PENDING
    spent: float = 0.0
    current_tier: Optional[int] = None
    report: Optional[ConstraintReport] = None
    results: List[SimResult] = field(default_factory=list)
    decisions: List[PromotionDecision] = field(default_factory=list)
    jobs: List[str] = field(default_factory=list)
    failure_reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def remaining_budget(self) -> float:
        return self.budget - self.spent

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_PIPELINE_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "revision_id": self.revision_id,
            "state": self.state.value,
            "budget": self.budget,
            "spent": self.spent,
            "current_tier": self.current_tier,
            "report": self.report.to_dict() if self.report else None,
            "results": [result.to_dict() for result in self.results],
            "decisions": [decision.to_dict() for decision in self.decisions],
            "jobs": list(self.jobs),
            "failure_reason": self.failure_reason,
            "error": self.error,
        }


class PipelineCoordinator:
    def __init__(
        self,
        *,
        ladder: FidelityLadder,
        scheduler: JobScheduler,
        cache: BaseCacheStore,
        policy: PromotionPolicy,
        solvers: Mapping[str, SolverAdapterPlugin],
        normalizer: NormalizerPlugin,
        checker: CheckerPlugin,
        pdk: PDKVersion,
        plan: FrequencyPlan,
        artifacts: BaseArtifactStore,
        kernel: Optional[LayoutKernelPlugin] = None,
        persistence: Any = None,
        event_logger: Any = None,
        work_root: Optional[Path] = None,
        default_budget: float = 10.0,
    ) -> None:
        missing = [adapter for adapter in ladder.adapter_ids() if adapter not in solvers]
        if missing:
            raise SimLadderError(f"No solver adapter for tier adapter(s): {', '.join(missing)}")
        self.ladder = ladder
        self.scheduler = scheduler
        self.cache = cache
        self.dedup = InFlightDeduplicator(cache)
        self.policy = policy
        self.solvers = dict(solvers)
        self.normalizer = normalizer
        self.checker = checker
        self.kernel = kernel
        self.pdk = pdk
        self.plan = plan
        self.artifacts = artifacts
        self.persistence = persistence if persistence is not None else MemoryPersistence()
        self.event_logger = event_logger or NullEventLogger()
        self.work_root = Path(work_root) if work_root is not None else Path.cwd() / ".simladder"
        self.default_budget = default_budget

    def new_record(self, budget: Optional[float] = None, revision_id: Optional[str] = None) -> PipelineRecord:
        return PipelineRecord(
            pipeline_id=safe_run_id("pipeline"),
            budget=self.default_budget if budget is None else float(budget),
            revision_id=revision_id,
        )

    def tier_settings(self, tier: FidelityTier) -> SolverSettings:
        solver = self.solvers[tier.adapter_id]
        return SolverSettings.from_any(tier.settings).merged(
            {"adapter_id": tier.adapter_id, "plugin_version": solver.meta().plugin_version}
        )

    def tier_fingerprint(self, revision: LayoutRevision, tier: FidelityTier) -> Fingerprint:
        return fingerprint(revision.pdk_hash, revision.layout_hash, self.tier_settings(tier), self.plan)

    async def run_params(
        self,
        params: Dict[str, Any],
        *,
        budget: Optional[float] = None,
        record: Optional[PipelineRecord] = None,
    ) -> PipelineRecord:
        if self.kernel is None:
            raise SimLadderError("No layout kernel configured")
        record = record or self.new_record(budget)
        try:
            revision = await asyncio.to_thread(self.kernel.generate, params, self.pdk)
        except asyncio.CancelledError:
            self._set_state(record, PipelineState.CANCELLED)
            self._persist_outcome(record)
            raise
        except SimLadderError as exc:
            self._fail(record, exc.diagnostic.code, exc)
            self._persist_outcome(record)
            return record
        except Exception as exc:
            self._fail(record, type(exc).__name__, exc)
            self._persist_outcome(record)
            return record
        return await self.run(revision, budget=budget, record=record)

    async def run(
        self,
        revision: LayoutRevision,
        *,
        budget: Optional[float] = None,
        record: Optional[PipelineRecord] = None,
    ) -> PipelineRecord:
        record = record or self.new_record(budget, revision.revision_id)
        record.revision_id = revision.revision_id
        try:
            await self._run(revision, record)
        except asyncio.CancelledError:
            self._set_state(record, PipelineState.CANCELLED)
            self._persist_outcome(record)
            raise
        except JobCancelledError as exc:
            record.error = str(exc)
            self._set_state(record, PipelineState.CANCELLED)
        except JobFailedError as exc:
            self._fail(record, exc.reason, exc)
        except SimLadderError as exc:
            self._fail(record, exc.diagnostic.code, exc)
        except Exception as exc:
            # plugin bugs (checker, normalizer) still end the pipeline
            self._fail(record, type(exc).__name__, exc)
        self._persist_outcome(record)
        return record

    def mark_cancelled(self, record: PipelineRecord) -> bool:
        """Close out a record whose task was cancelled before it could do so."""
        if record.done:
            return False
        self._set_state(record, PipelineState.CANCELLED)
        self._persist_outcome(record)
        return True

    async def _run(self, revision: LayoutRevision, record: PipelineRecord) -> None:
        self._set_state(record, PipelineState.CHECKING)
        report = await asyncio.to_thread(self.checker.check, revision, self.pdk)
        record.report = report
        self.persistence.persist_report(report)
        if not report.passed:
            logger.info(
                "Revision %s failed checks (%d violation(s)); no simulation",
                revision.revision_id,
                len(report.violations),
            )
            self._set_state(record, PipelineState.CHECK_FAILED)
            return

        self._set_state(record, PipelineState.SIMULATING)
        tier = self.ladder.first()
        while True:
            record.current_tier = tier.index
            fp = self.tier_fingerprint(revision, tier)
            outcome = await self.dedup.run_once(fp, self._work(revision, tier, fp, record))
            if not outcome.cached:
                record.spent += tier.cost_weight
            result = SimResult.from_entry(revision.revision_id, outcome.entry, cached=outcome.cached)
            record.results.append(result)
            self.persistence.persist_result(result)
            log_event(
                self.event_logger,
                "pipeline.tier",
                pipeline_id=record.pipeline_id,
                revision_id=revision.revision_id,
                tier=tier.index,
                fingerprint=fp.key,
                cached=outcome.cached,
                spent=record.spent,
            )

            decision = self.policy.decide(
                current_tier=tier.index,
                metrics=result.metrics,
                uncertainty=result.uncertainty,
                remaining_budget=record.remaining_budget,
                fingerprint=fp.key,
                cached_tiers=await self._cached_tiers(revision, tier.index),
            )
            record.decisions.append(decision)
            log_event(
                self.event_logger,
                "pipeline.decision",
                pipeline_id=record.pipeline_id,
                revision_id=revision.revision_id,
                **decision.to_dict(),
            )
            if not decision.promote:
                break
            tier = self.ladder.tier(decision.to_tier)

        self._set_state(record, PipelineState.SUCCEEDED)

    async def _cached_tiers(self, revision: LayoutRevision, current: int) -> Set[int]:
        cached: Set[int] = set()
        highest = min(current + self.policy.max_step, self.ladder.ceiling)
        for index in range(current + 1, highest + 1):
            if await self.cache.exists(self.tier_fingerprint(revision, self.ladder.tier(index))):
                cached.add(index)
        return cached

    def _work(self, revision: LayoutRevision, tier: FidelityTier, fp: Fingerprint, record: PipelineRecord):
        solver = self.solvers[tier.adapter_id]
        settings = self.tier_settings(tier)

        async def runner(ctx: JobContext):
            work_dir = self.work_root / "jobs" / ctx.job_id
            solver_ctx = SolverContext(
                job_id=ctx.job_id,
                attempt=ctx.attempt,
                tier=tier.index,
                work_dir=work_dir,
                logs_dir=work_dir / "logs",
                cancel_event=ctx.cancel_event,
                deadline=ctx.deadline,
                artifacts=self.artifacts,
            )
            return await solver.run(revision, settings, self.plan, solver_ctx)

        async def work() -> CacheEntry:
            job = SimJob(
                fingerprint=fp.key,
                tier=tier.index,
                runner=runner,
                resource_class=tier.resource_class,
                timeout_s=tier.timeout_s,
                max_attempts=tier.max_attempts,
                side_effect_free=solver.side_effect_free(settings),
                promotion=tier.index > 0,
                on_cancel=solver.cancel,
            )
            handle = self.scheduler.submit(job)
            record.jobs.append(handle.job_id)
            try:
                raw = await self.scheduler.wait(handle)
            except asyncio.CancelledError:
                self.scheduler.cancel(handle)
                raise
            normalized = await asyncio.to_thread(self.normalizer.normalize, raw, self.artifacts)
            return CacheEntry(
                fingerprint=fp.key,
                tier=tier.index,
                metrics=dict(normalized.metrics),
                artifact_ref=normalized.artifact_ref,
                completed_at=utc_now(),
                uncertainty=normalized.uncertainty,
                adapter_id=tier.adapter_id,
            )

        return work

    def _fail(self, record: PipelineRecord, reason: str, exc: BaseException) -> None:
        record.failure_reason = reason
        record.error = str(exc)
        logger.error("Pipeline %s failed: %s (%s)", record.pipeline_id, reason, exc)
        self._set_state(record, PipelineState.FAILED)

    def _set_state(self, record: PipelineRecord, state: PipelineState) -> None:
        record.state = state
        log_event(
            self.event_logger,
            "pipeline.state",
            pipeline_id=record.pipeline_id,
            revision_id=record.revision_id,
            state=state.value,
            reason=record.failure_reason,
        )

    def _persist_outcome(self, record: PipelineRecord) -> None:
        outcome = record.to_dict()
        outcome.pop("results")
        self.persistence.persist_outcome(outcome)
