from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, Optional

from simladder.core.artifacts import BaseArtifactStore
from simladder.core.canonical import round_metric
from simladder.core.models import NormalizedResult, RawResult
from simladder.core.plugin_api import NormalizerPlugin, PluginMeta

logger = logging.getLogger(__name__)


class ScalarNormalizer(NormalizerPlugin):
    """Keep finite scalar metrics and archive the raw solver payload."""

    def meta(self) -> PluginMeta:
        return PluginMeta(
            name="scalar",
            api_version="1.0.0",
            plugin_version="0.1.0",
            capabilities={
                "capabilities_version": "1.0.0",
                "plugin_kind": "normalizer",
                "io": {
                    "inputs": [{"name": "raw", "category": "data", "data_kind": "raw_result"}],
                    "outputs": [{"name": "raw.json", "category": "artifact", "artifact_kind": "raw.json"}],
                },
                "features": {"rounding": "fixed-12"},
            },
        )

    def normalize(self, raw: RawResult, artifacts: BaseArtifactStore) -> NormalizedResult:
        metrics: Dict[str, float] = {}
        dropped = []
        for key, value in sorted(raw.metrics.items()):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                dropped.append(key)
                continue
            if not math.isfinite(value):
                dropped.append(key)
                continue
            metrics[key] = round_metric(float(value))
        if dropped:
            logger.debug("Dropped non-scalar metrics: %s", ", ".join(dropped))

        document = {
            "metrics": raw.metrics,
            "uncertainty": raw.uncertainty,
            "payload": raw.payload,
            "external_runs": raw.external_runs,
        }
        blob = json.dumps(document, sort_keys=True, ensure_ascii=True, default=str).encode("utf-8")
        return NormalizedResult(
            metrics=metrics,
            uncertainty=_uncertainty(raw.uncertainty),
            artifact_ref=artifacts.put(blob),
        )


def _uncertainty(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return min(1.0, max(0.0, number))
