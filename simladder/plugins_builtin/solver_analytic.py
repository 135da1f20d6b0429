from __future__ import annotations

import math
from typing import Any, Dict, List, Mapping

from simladder.core.diagnostics import AdapterError, JobCancelledError
from simladder.core.models import FrequencyPlan, LayoutRevision, RawResult, SolverSettings
from simladder.core.plugin_api import PluginMeta, SolverAdapterPlugin, SolverContext

MU0 = 4.0e-7 * math.pi

# Modified Wheeler coefficients (Mohan et al., 1999).
WHEELER_K = {
    "square": (2.34, 2.75),
    "hexagonal": (2.33, 3.82),
    "octagonal": (2.25, 3.55),
}


class AnalyticSpiralSolver(SolverAdapterPlugin):
    """Closed-form tier: modified Wheeler inductance with a skin-effect Q."""

    def meta(self) -> PluginMeta:
        return PluginMeta(
            name="analytic",
            api_version="1.0.0",
            plugin_version="0.1.0",
            capabilities={
                "capabilities_version": "1.0.0",
                "plugin_kind": "solver",
                "io": {
                    "inputs": [{"name": "revision", "category": "data", "data_kind": "layout_revision"}],
                    "outputs": [
                        {"name": "inductance_nh", "category": "metric", "metric": "inductance_nh"},
                        {"name": "q_peak", "category": "metric", "metric": "q_peak"},
                    ],
                },
                "features": {"side_effect_free": True, "fidelity": "analytic"},
            },
        )

    async def run(
        self,
        revision: LayoutRevision,
        settings: SolverSettings,
        plan: FrequencyPlan,
        ctx: SolverContext,
    ) -> RawResult:
        geometry = revision.metadata.get("geometry")
        if not isinstance(geometry, Mapping):
            raise AdapterError(
                f"Revision {revision.revision_id} has no spiral geometry", retryable=False
            )
        if ctx.cancelled:
            raise JobCancelledError(f"Job {ctx.job_id} cancelled before solve")
        metrics = spiral_metrics(
            geometry,
            plan.frequencies(),
            thickness_m=float(settings.get("thickness_um", 3.0)) * 1e-6,
            resistivity=float(settings.get("resistivity_ohm_m", 2.65e-8)),
        )
        return RawResult(
            metrics=metrics,
            uncertainty=float(settings.get("uncertainty", 0.9)),
            payload={"model": "modified_wheeler", "geometry": dict(geometry)},
        )


def spiral_metrics(
    geometry: Mapping[str, Any],
    frequencies: List[float],
    *,
    thickness_m: float,
    resistivity: float,
    inductance_scale: float = 1.0,
) -> Dict[str, float]:
    shape = str(geometry.get("shape", "square"))
    k1, k2 = WHEELER_K.get(shape, WHEELER_K["square"])
    n = float(geometry["turns"])
    d_out = float(geometry["outer_diameter_m"])
    d_in = float(geometry["inner_diameter_m"])
    width = float(geometry["width_m"])
    if d_in <= 0 or d_out <= d_in:
        raise AdapterError("Spiral inner diameter must be positive", retryable=False)

    d_avg = 0.5 * (d_out + d_in)
    fill = (d_out - d_in) / (d_out + d_in)
    inductance = inductance_scale * k1 * MU0 * n * n * d_avg / (1.0 + k2 * fill)
    r_dc = resistivity * float(geometry["trace_length_m"]) / (width * thickness_m)

    q_values = []
    for freq in frequencies:
        if freq <= 0:
            continue
        delta = math.sqrt(resistivity / (math.pi * freq * MU0))
        ratio = thickness_m / delta
        r_ac = r_dc * ratio / (1.0 - math.exp(-ratio))
        q_values.append((2.0 * math.pi * freq * inductance / r_ac, freq))

    metrics = {
        "inductance_nh": inductance * 1e9,
        "r_dc_ohm": r_dc,
        "fill_ratio": fill,
    }
    if q_values:
        q_peak, f_peak = max(q_values)
        metrics["q_peak"] = q_peak
        metrics["f_q_peak_hz"] = f_peak
        metrics["q_center"] = q_values[len(q_values) // 2][0]
    return metrics
