from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .artifacts import BaseArtifactStore
from .external import ExternalRunResult
from .models import (
    ConstraintReport,
    FrequencyPlan,
    LayoutRevision,
    NormalizedResult,
    PDKVersion,
    RawResult,
    SimResult,
    SolverSettings,
)


API_VERSION = "1.0.0"


@dataclass(frozen=True)
class PluginMeta:
    name: str
    api_version: str
    plugin_version: str
    capabilities: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SolverContext:
    job_id: str
    attempt: int
    tier: int
    work_dir: Path
    logs_dir: Path
    cancel_event: asyncio.Event
    deadline: Optional[float] = None
    artifacts: Optional[BaseArtifactStore] = None
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - asyncio.get_running_loop().time())


class EventSink(Protocol):
    def record(self, event: Dict[str, Any]) -> None: ...


class Persistence(Protocol):
    def persist_result(self, result: SimResult) -> None: ...

    def persist_report(self, report: ConstraintReport) -> None: ...

    def persist_outcome(self, outcome: Dict[str, Any]) -> None: ...

    def results(self, revision_id: str) -> List[SimResult]: ...


class Plugin(ABC):
    @abstractmethod
    def meta(self) -> PluginMeta:
        raise NotImplementedError


class LayoutKernelPlugin(Plugin):
    @abstractmethod
    def generate(self, params: Dict[str, Any], pdk: PDKVersion) -> LayoutRevision:
        raise NotImplementedError


class CheckerPlugin(Plugin):
    @abstractmethod
    def check(self, revision: LayoutRevision, pdk: PDKVersion) -> ConstraintReport:
        raise NotImplementedError


class SolverAdapterPlugin(Plugin):
    """One fidelity tier's solver.

    ``run`` must watch ``ctx.cancel_event`` for long computations and raise
    ``AdapterError`` (optionally ``retryable=False``) on solver failure.
    """

    @abstractmethod
    async def run(
        self,
        revision: LayoutRevision,
        settings: SolverSettings,
        plan: FrequencyPlan,
        ctx: SolverContext,
    ) -> RawResult:
        raise NotImplementedError

    def cancel(self, job_id: str) -> None:
        return

    def side_effect_free(self, settings: Optional[SolverSettings] = None) -> bool:
        """Whether a timed-out or failed attempt may be re-run safely."""
        features = self.meta().capabilities.get("features") or {}
        return bool(features.get("side_effect_free", False))

    def record_external_run(
        self,
        result: ExternalRunResult,
        ctx: SolverContext,
        raw: RawResult,
        *,
        tool_version: Optional[str] = None,
    ) -> None:
        if not tool_version:
            raise ValueError(f"tool_version is required for external run {result.name}")
        summary = result.to_dict()
        summary["tool_version"] = tool_version
        summary["job_id"] = ctx.job_id
        summary["attempt"] = ctx.attempt
        summary_path = ctx.logs_dir / f"{result.name}.run.json"
        summary_path.write_text(json.dumps(summary, indent=2, sort_keys=True), encoding="utf-8")
        raw.external_runs.append(summary)


class NormalizerPlugin(Plugin):
    @abstractmethod
    def normalize(self, raw: RawResult, artifacts: BaseArtifactStore) -> NormalizedResult:
        raise NotImplementedError
