from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .artifacts import create_artifact_store
from .cache import create_cache_store
from .config import EngineConfig, parse_engine_config
from .logging import get_event_logger, get_logger
from .models import LayoutRevision, SimResult
from .persistence import load_persistence
from .pipeline import PipelineCoordinator, PipelineRecord, PipelineState
from .plugin_loader import PluginRegistry
from .promotion import PromotionPolicy
from .retry import BackoffPolicy
from .scheduler import JobScheduler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineHandle:
    pipeline_id: str
    revision_id: Optional[str] = None


class SimEngine:
    """Engine boundary: submit pipelines, observe them, fetch results.

    Components are built once from an ``EngineConfig``; solver adapters are
    resolved for every tier up front so a misconfigured ladder fails at
    startup rather than mid-pipeline.
    """

    def __init__(
        self,
        config: EngineConfig,
        *,
        registry: Optional[PluginRegistry] = None,
        root: Optional[Path] = None,
        persistence: Any = None,
        event_logger: Any = None,
    ) -> None:
        self.config = config
        self.root = Path(root) if root is not None else Path(config.root)
        if registry is None:
            registry = PluginRegistry()
            registry.discover(config.plugins.libs)
        self.registry = registry

        logs_dir = Path(config.logging.dir) if config.logging.dir else None
        if logs_dir is not None and not logs_dir.is_absolute():
            logs_dir = self.root / logs_dir
        if logs_dir is not None:
            get_logger("simladder", logs_dir, config.logging.level)
        self.event_logger = event_logger or get_event_logger(logs_dir)

        self.ladder = config.build_ladder()
        self.pdk = config.build_pdk()
        self.plan = config.build_plan()
        self.artifacts = create_artifact_store(config.artifacts.model_dump(), self.root)
        self.cache = create_cache_store(config.cache.model_dump(), self.root)
        self.persistence = (
            persistence if persistence is not None else load_persistence(config.persistence, self.root)
        )
        self.scheduler = JobScheduler(
            resource_limits=config.scheduler.resource_classes,
            default_limit=config.scheduler.default_limit,
            prioritize_promotions=config.scheduler.prioritize_promotions,
            backoff=BackoffPolicy.from_dict(config.scheduler.retry.model_dump()),
            event_logger=self.event_logger,
        )
        self.policy = PromotionPolicy(
            self.ladder,
            metric=config.promotion.metric,
            max_step=config.promotion.max_step,
            novelty_history=config.promotion.novelty_history,
        )
        solvers = {name: registry.get("solver", name) for name in self.ladder.adapter_ids()}
        self.coordinator = PipelineCoordinator(
            ladder=self.ladder,
            scheduler=self.scheduler,
            cache=self.cache,
            policy=self.policy,
            solvers=solvers,
            normalizer=registry.get("normalizer", config.plugins.normalizer),
            checker=registry.get("checker", config.plugins.checker),
            kernel=registry.get("layout_kernel", config.plugins.layout_kernel),
            pdk=self.pdk,
            plan=self.plan,
            artifacts=self.artifacts,
            persistence=self.persistence,
            event_logger=self.event_logger,
            work_root=self.root / "work",
            default_budget=config.promotion.budget,
        )
        self._pipelines: Dict[str, PipelineRecord] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    @classmethod
    def from_dict(cls, config: Dict[str, Any], **kwargs: Any) -> "SimEngine":
        return cls(parse_engine_config(config), **kwargs)

    async def __aenter__(self) -> "SimEngine":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def submit_pipeline(self, revision: LayoutRevision, *, budget: Optional[float] = None) -> PipelineHandle:
        record = self.coordinator.new_record(budget, revision.revision_id)
        task = asyncio.create_task(self.coordinator.run(revision, record=record))
        return self._track(record, task)

    def submit_params(self, params: Dict[str, Any], *, budget: Optional[float] = None) -> PipelineHandle:
        record = self.coordinator.new_record(budget)
        task = asyncio.create_task(self.coordinator.run_params(params, record=record))
        return self._track(record, task)

    def status(self, handle: PipelineHandle) -> PipelineState:
        return self.record(handle).state

    def record(self, handle: PipelineHandle) -> PipelineRecord:
        try:
            return self._pipelines[handle.pipeline_id]
        except KeyError:
            raise KeyError(f"Unknown pipeline {handle.pipeline_id}") from None

    def cancel(self, handle: PipelineHandle) -> bool:
        record = self.record(handle)
        task = self._tasks[handle.pipeline_id]
        if task.done() or record.done:
            return False
        logger.info("Cancelling pipeline %s", handle.pipeline_id)
        task.cancel()
        return True

    async def wait(self, handle: PipelineHandle) -> PipelineRecord:
        record = self.record(handle)
        task = self._tasks[handle.pipeline_id]
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                self.coordinator.mark_cancelled(record)
                return record
            raise

    def get_results(self, revision_id: str) -> List[SimResult]:
        """Persisted results for a revision, one per fingerprint, lowest tier first."""
        seen: Dict[str, SimResult] = {}
        for result in self.persistence.results(revision_id):
            seen.setdefault(result.fingerprint, result)
        return sorted(seen.values(), key=lambda result: result.tier)

    def stats(self) -> Dict[str, Any]:
        return {
            "cache": self.cache.stats(),
            "scheduler": self.scheduler.stats(),
            "in_flight": self.coordinator.dedup.in_flight(),
            "pipelines": {
                state.value: sum(1 for r in self._pipelines.values() if r.state == state)
                for state in PipelineState
            },
        }

    async def close(self) -> None:
        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.scheduler.close()

    def _on_task_done(self, record: PipelineRecord, task: asyncio.Task) -> None:
        # a task cancelled before its first step never reaches the coordinator's handlers
        if task.cancelled():
            self.coordinator.mark_cancelled(record)

    def _track(self, record: PipelineRecord, task: asyncio.Task) -> PipelineHandle:
        self._pipelines[record.pipeline_id] = record
        self._tasks[record.pipeline_id] = task
        task.add_done_callback(_consume_exception)
        task.add_done_callback(functools.partial(self._on_task_done, record))
        return PipelineHandle(pipeline_id=record.pipeline_id, revision_id=record.revision_id)


def _consume_exception(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Pipeline task failed: %s", task.exception())


def build_engine(
    config: Union[Dict[str, Any], EngineConfig],
    *,
    root: Optional[Path] = None,
    registry: Optional[PluginRegistry] = None,
) -> SimEngine:
    if not isinstance(config, EngineConfig):
        config = parse_engine_config(config)
    return SimEngine(config, root=root, registry=registry)
