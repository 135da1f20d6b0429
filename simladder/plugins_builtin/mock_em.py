"""Stand-in EM solver executable.

Reads an input JSON written by ``ExternalSolverAdapter`` and writes a metrics
JSON. Starts from the closed-form model and adds an oxide parasitic so the
quality factor rolls off towards self-resonance.

    python -m simladder.plugins_builtin.mock_em INPUT OUTPUT
"""

from __future__ import annotations

import json
import math
import sys
import time
from pathlib import Path
from typing import Any, Dict

from simladder.plugins_builtin.solver_analytic import spiral_metrics


def solve(request: Dict[str, Any]) -> Dict[str, Any]:
    settings = request.get("settings") or {}
    geometry = request["revision"]["metadata"]["geometry"]
    frequencies = [float(f) for f in request.get("frequencies") or []]
    metrics = spiral_metrics(
        geometry,
        frequencies,
        thickness_m=float(settings.get("thickness_um", 3.0)) * 1e-6,
        resistivity=float(settings.get("resistivity_ohm_m", 2.65e-8)),
        inductance_scale=float(settings.get("inductance_scale", 0.97)),
    )

    inductance = metrics["inductance_nh"] * 1e-9
    d_avg = 0.5 * (geometry["outer_diameter_m"] + geometry["inner_diameter_m"])
    area_um2 = geometry["trace_length_m"] * geometry["width_m"] * 1e12
    cap = float(settings.get("oxide_ff_per_um2", 0.03)) * area_um2 * 1e-15
    f_sr = 1.0 / (2.0 * math.pi * math.sqrt(inductance * cap)) if cap > 0 else math.inf
    metrics["f_self_resonance_hz"] = f_sr
    metrics["d_avg_m"] = d_avg

    q_values = []
    for freq in frequencies:
        if freq <= 0 or freq >= f_sr:
            continue
        ratio = (freq / f_sr) ** 2
        r_dc = metrics["r_dc_ohm"]
        q_ideal = 2.0 * math.pi * freq * inductance / r_dc
        q_values.append((q_ideal * (1.0 - ratio) / (1.0 + ratio), freq))
    if q_values:
        q_peak, f_peak = max(q_values)
        metrics["q_peak"] = q_peak
        metrics["f_q_peak_hz"] = f_peak
        metrics["q_center"] = q_values[len(q_values) // 2][0]

    return {"metrics": metrics, "uncertainty": float(settings.get("uncertainty", 0.2))}


def main(argv=None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) != 2:
        print("usage: mock_em INPUT OUTPUT", file=sys.stderr)
        return 2
    request = json.loads(Path(args[0]).read_text(encoding="utf-8"))
    delay = float((request.get("settings") or {}).get("sleep_s", 0.0))
    if delay > 0:
        time.sleep(delay)
    result = solve(request)
    Path(args[1]).write_text(json.dumps(result, indent=2, sort_keys=True), encoding="utf-8")
    print(f"mock_em: {len(result['metrics'])} metrics")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
