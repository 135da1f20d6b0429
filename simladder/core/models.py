from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from .artifacts import hash_bytes
from .canonical import canonical_json_bytes
from .diagnostics import InvalidInputError
from .units import normalize_quantity

SWEEP_KINDS = ("linear", "log", "list")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class PDKVersion:
    version: str
    content_hash: str
    stackup: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PDKVersion":
        version = str(data.get("version") or "")
        if not version:
            raise InvalidInputError("PDK version is required", location="pdk.version")
        stackup = dict(data.get("stackup") or {})
        content_hash = data.get("content_hash") or hash_bytes(
            canonical_json_bytes({"version": version, "stackup": stackup})
        )
        return cls(version=version, content_hash=str(content_hash), stackup=stackup)

    def rules(self) -> Dict[str, Any]:
        return dict(self.stackup.get("rules") or {})


@dataclass(frozen=True)
class LayoutRevision:
    revision_id: str
    pdk_hash: str
    layout_hash: str
    parent_id: Optional[str] = None
    gds_ref: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "revision_id": self.revision_id,
            "parent_id": self.parent_id,
            "pdk_hash": self.pdk_hash,
            "layout_hash": self.layout_hash,
            "gds_ref": self.gds_ref,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LayoutRevision":
        try:
            return cls(
                revision_id=str(data["revision_id"]),
                pdk_hash=str(data["pdk_hash"]),
                layout_hash=str(data["layout_hash"]),
                parent_id=data.get("parent_id"),
                gds_ref=data.get("gds_ref"),
                metadata=dict(data.get("metadata") or {}),
            )
        except KeyError as exc:
            raise InvalidInputError(f"Layout revision missing field {exc.args[0]}") from exc


@dataclass(frozen=True)
class SolverSettings:
    values: Dict[str, Any] = field(default_factory=dict, hash=False)

    @classmethod
    def from_any(cls, value: Any) -> "SolverSettings":
        if isinstance(value, SolverSettings):
            return value
        if value is None:
            return cls()
        if not isinstance(value, Mapping):
            raise InvalidInputError(
                f"Solver settings must be a mapping, got {type(value).__name__}",
                location="solver_settings",
            )
        return cls(values=dict(value))

    def merged(self, extra: Mapping[str, Any]) -> "SolverSettings":
        values = dict(self.values)
        values.update(extra)
        return SolverSettings(values=values)

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def content_hash(self) -> str:
        return hash_bytes(canonical_json_bytes(self.values))


@dataclass(frozen=True)
class FrequencyPlan:
    start_hz: float
    stop_hz: float
    points: int = 1
    sweep: str = "linear"
    extra: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @classmethod
    def from_any(cls, value: Any) -> "FrequencyPlan":
        if isinstance(value, FrequencyPlan):
            return value
        if not isinstance(value, Mapping):
            raise InvalidInputError(
                f"Frequency plan must be a mapping, got {type(value).__name__}",
                location="frequency_plan",
            )
        data = dict(value)
        sweep = str(data.pop("sweep", "linear")).lower()
        if sweep not in SWEEP_KINDS:
            raise InvalidInputError(f"Unknown sweep kind: {sweep}", location="frequency_plan.sweep")
        if sweep == "list":
            raw_points = data.pop("frequencies", None) or []
            freqs = [_frequency(item, f"frequency_plan.frequencies.{i}") for i, item in enumerate(raw_points)]
            if not freqs:
                raise InvalidInputError("List sweep requires frequencies", location="frequency_plan")
            data.pop("start", None)
            data.pop("stop", None)
            data.pop("points", None)
            extra = dict(data)
            extra["frequencies"] = sorted(freqs)
            return cls(min(freqs), max(freqs), len(freqs), sweep, extra)

        if "start" not in data or "stop" not in data:
            raise InvalidInputError("Frequency plan requires start and stop", location="frequency_plan")
        start = _frequency(data.pop("start"), "frequency_plan.start")
        stop = _frequency(data.pop("stop"), "frequency_plan.stop")
        points = data.pop("points", 1)
        if isinstance(points, bool) or not isinstance(points, int) or points < 1:
            raise InvalidInputError("points must be a positive integer", location="frequency_plan.points")
        if stop < start:
            raise InvalidInputError("stop must not be below start", location="frequency_plan")
        if sweep == "log" and start <= 0:
            raise InvalidInputError("log sweep requires start > 0", location="frequency_plan.start")
        return cls(start, stop, points, sweep, data)

    def frequencies(self) -> List[float]:
        if self.sweep == "list":
            return list(self.extra["frequencies"])
        if self.points == 1:
            return [self.start_hz]
        step = 1.0 / (self.points - 1)
        if self.sweep == "log":
            ratio = self.stop_hz / self.start_hz
            return [self.start_hz * ratio ** (i * step) for i in range(self.points)]
        span = self.stop_hz - self.start_hz
        return [self.start_hz + span * i * step for i in range(self.points)]

    def to_dict(self) -> Dict[str, Any]:
        payload = dict(self.extra)
        payload.update(
            {
                "start_hz": self.start_hz,
                "stop_hz": self.stop_hz,
                "points": self.points,
                "sweep": self.sweep,
            }
        )
        return payload

    def content_hash(self) -> str:
        return hash_bytes(canonical_json_bytes(self.to_dict()))


def _frequency(value: Any, field_name: str) -> float:
    hz, diags = normalize_quantity(value, "frequency", field_name, default_unit="hz")
    if diags:
        raise InvalidInputError(diags[0].message, location=field_name)
    if not math.isfinite(hz) or hz < 0:
        raise InvalidInputError(f"Invalid frequency {value!r}", location=field_name)
    return hz


@dataclass
class RawResult:
    metrics: Dict[str, Any]
    uncertainty: Optional[float] = None
    payload: Any = None
    external_runs: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class NormalizedResult:
    metrics: Dict[str, float]
    uncertainty: Optional[float]
    artifact_ref: Optional[str] = None


@dataclass(frozen=True)
class CacheEntry:
    fingerprint: str
    tier: int
    metrics: Dict[str, float] = field(hash=False)
    artifact_ref: Optional[str] = None
    completed_at: str = ""
    uncertainty: Optional[float] = None
    adapter_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "tier": self.tier,
            "metrics": self.metrics,
            "artifact_ref": self.artifact_ref,
            "completed_at": self.completed_at,
            "uncertainty": self.uncertainty,
            "adapter_id": self.adapter_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CacheEntry":
        return cls(
            fingerprint=str(data["fingerprint"]),
            tier=int(data["tier"]),
            metrics=dict(data.get("metrics") or {}),
            artifact_ref=data.get("artifact_ref"),
            completed_at=str(data.get("completed_at") or ""),
            uncertainty=data.get("uncertainty"),
            adapter_id=data.get("adapter_id"),
        )


@dataclass(frozen=True)
class SimResult:
    revision_id: str
    fingerprint: str
    tier: int
    metrics: Dict[str, float] = field(hash=False)
    artifact_ref: Optional[str] = None
    uncertainty: Optional[float] = None
    cached: bool = False
    completed_at: str = ""

    @classmethod
    def from_entry(cls, revision_id: str, entry: CacheEntry, *, cached: bool) -> "SimResult":
        return cls(
            revision_id=revision_id,
            fingerprint=entry.fingerprint,
            tier=entry.tier,
            metrics=dict(entry.metrics),
            artifact_ref=entry.artifact_ref,
            uncertainty=entry.uncertainty,
            cached=cached,
            completed_at=entry.completed_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "revision_id": self.revision_id,
            "fingerprint": self.fingerprint,
            "tier": self.tier,
            "metrics": self.metrics,
            "artifact_ref": self.artifact_ref,
            "uncertainty": self.uncertainty,
            "cached": self.cached,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SimResult":
        return cls(
            revision_id=str(data["revision_id"]),
            fingerprint=str(data["fingerprint"]),
            tier=int(data["tier"]),
            metrics=dict(data.get("metrics") or {}),
            artifact_ref=data.get("artifact_ref"),
            uncertainty=data.get("uncertainty"),
            cached=bool(data.get("cached", False)),
            completed_at=str(data.get("completed_at") or ""),
        )


@dataclass(frozen=True)
class ConstraintReport:
    revision_id: str
    passed: bool
    violations: List[Dict[str, Any]] = field(default_factory=list, hash=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "revision_id": self.revision_id,
            "passed": self.passed,
            "violations": self.violations,
        }
