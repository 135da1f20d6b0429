from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import jsonschema
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .diagnostics import Diagnostic, Diagnostics, InvalidInputError
from .ladder import FidelityLadder
from .models import FrequencyPlan, PDKVersion


DEFAULT_CONFIG: Dict[str, Any] = {
    "root": ".",
    "pdk": {"version": "generic-2p", "stackup": {}},
    "frequency_plan": {"start": "1 GHz", "stop": "10 GHz", "points": 10, "sweep": "linear"},
    "promotion": {"metric": "uncertainty", "max_tier": None, "max_step": 1, "budget": 10.0},
    "scheduler": {"default_limit": 4, "resource_classes": {}, "prioritize_promotions": True},
    "cache": {"backend": "memory"},
    "artifacts": {"backend": "memory"},
    "persistence": {"backend": "memory"},
    "logging": {"dir": None, "level": "INFO"},
    "plugins": {
        "libs": [],
        "layout_kernel": "baseline_spiral",
        "checker": "rule_deck",
        "normalizer": "scalar",
    },
}


class RetryModel(BaseModel):
    max_attempts: int = 3
    base_delay_s: float = 0.5
    factor: float = 2.0
    max_delay_s: float = 30.0
    jitter: bool = True


class TierModel(BaseModel):
    model_config = ConfigDict(extra="forbid")
    name: str | None = None
    adapter: str
    cost_weight: float
    promotion_threshold: float = 0.5
    resource_class: str = "default"
    timeout_s: float | None = None
    max_attempts: int = 3
    settings: Dict[str, Any] = Field(default_factory=dict)


class LadderModel(BaseModel):
    tiers: List[TierModel]


class PromotionModel(BaseModel):
    metric: str = "uncertainty"
    max_tier: int | None = None
    max_step: int = 1
    novelty_history: int = 256
    budget: float = 10.0


class SchedulerModel(BaseModel):
    default_limit: int = 4
    resource_classes: Dict[str, int] = Field(default_factory=dict)
    prioritize_promotions: bool = True
    retry: RetryModel = Field(default_factory=RetryModel)


class StoreModel(BaseModel):
    model_config = ConfigDict(extra="allow")
    backend: str = "memory"
    root: str | None = None
    retry: RetryModel | None = None


class LoggingModel(BaseModel):
    dir: str | None = None
    level: str = "INFO"


class PluginsModel(BaseModel):
    model_config = ConfigDict(extra="allow")
    libs: List[str] = Field(default_factory=list)
    layout_kernel: str = "baseline_spiral"
    checker: str = "rule_deck"
    normalizer: str = "scalar"


class EngineConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    root: str = "."
    pdk: Dict[str, Any] = Field(default_factory=dict)
    frequency_plan: Dict[str, Any] = Field(default_factory=dict)
    ladder: LadderModel
    promotion: PromotionModel = Field(default_factory=PromotionModel)
    scheduler: SchedulerModel = Field(default_factory=SchedulerModel)
    cache: StoreModel = Field(default_factory=StoreModel)
    artifacts: StoreModel = Field(default_factory=StoreModel)
    persistence: Dict[str, Any] = Field(default_factory=dict)
    logging: LoggingModel = Field(default_factory=LoggingModel)
    plugins: PluginsModel = Field(default_factory=PluginsModel)

    def build_ladder(self) -> FidelityLadder:
        tiers = [tier.model_dump() for tier in self.ladder.tiers]
        return FidelityLadder.from_config(tiers, ceiling=self.promotion.max_tier)

    def build_plan(self) -> FrequencyPlan:
        return FrequencyPlan.from_any(self.frequency_plan)

    def build_pdk(self) -> PDKVersion:
        return PDKVersion.from_dict(self.pdk)


def load_engine_config(path: Path) -> Dict[str, Any]:
    data = load_data(path)
    if not isinstance(data, dict):
        raise ValueError("Engine config must be a mapping")
    if "simladder" in data and isinstance(data["simladder"], dict):
        data = data["simladder"]
    return data


def normalize_engine_config(config: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(DEFAULT_CONFIG))
    return _deep_merge(merged, config)


def validate_engine_config(config: Dict[str, Any], schema_path: Optional[Path] = None) -> Diagnostics:
    """Schema, model and semantic checks; never raises for bad input."""
    diagnostics = Diagnostics()
    schema_path = schema_path or default_schema_dir() / "engine_config.schema.json"
    if schema_path.exists():
        schema = json.loads(schema_path.read_text(encoding="utf-8"))
        schema["$id"] = schema_path.resolve().as_uri()
        validator = jsonschema.Draft202012Validator(schema)
        for error in sorted(validator.iter_errors(config), key=str):
            diagnostics.add(
                Diagnostic(
                    code="E-CONFIG-SCHEMA",
                    message=error.message,
                    location="/".join(str(x) for x in error.path),
                )
            )
    else:
        diagnostics.add(
            Diagnostic(
                code="W-CONFIG-SCHEMA-MISSING",
                message=f"Config schema not found at {schema_path}; skipping schema checks",
                severity="WARNING",
            )
        )
    if diagnostics.has_errors():
        return diagnostics

    try:
        model = EngineConfig.model_validate(config)
    except ValidationError as exc:
        diagnostics.add(Diagnostic(code="E-CONFIG-MODEL", message=str(exc), location="config"))
        return diagnostics

    for location, build in (
        ("ladder", model.build_ladder),
        ("frequency_plan", model.build_plan),
        ("pdk", model.build_pdk),
    ):
        try:
            build()
        except InvalidInputError as exc:
            diag = exc.diagnostic
            diagnostics.add(
                Diagnostic(
                    code="E-CONFIG-VALUE",
                    message=diag.message,
                    location=diag.location or location,
                )
            )
    return diagnostics


def parse_engine_config(config: Dict[str, Any], schema_path: Optional[Path] = None) -> EngineConfig:
    normalized = normalize_engine_config(config)
    validate_engine_config(normalized, schema_path).raise_for_errors()
    return EngineConfig.model_validate(normalized)


def default_schema_dir() -> Path:
    return Path(__file__).resolve().parent.parent.parent / "schemas"


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def load_data(path: Path) -> Any:
    if path.suffix in {".yaml", ".yml"}:
        import yaml  # type: ignore

        with path.open("r", encoding="utf-8") as handle:
            return yaml.safe_load(handle)
    if path.suffix == ".toml":
        import tomllib

        with path.open("rb") as handle:
            return tomllib.load(handle)
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)
