from __future__ import annotations

from typing import Any, Dict

from simladder.core.artifacts import hash_bytes
from simladder.core.canonical import canonical_json_bytes
from simladder.core.diagnostics import InvalidInputError
from simladder.core.models import LayoutRevision, PDKVersion
from simladder.core.plugin_api import LayoutKernelPlugin, PluginMeta
from simladder.core.units import normalize_quantity

SHAPES = ("square", "hexagonal", "octagonal")


class BaselineSpiralKernel(LayoutKernelPlugin):
    """Planar spiral inductor from a handful of geometric parameters.

    Lengths accept unit strings and default to micrometres. The layout hash
    covers the PDK identity and the normalized geometry, so equal inputs
    always produce the same revision identity.
    """

    def meta(self) -> PluginMeta:
        return PluginMeta(
            name="baseline_spiral",
            api_version="1.0.0",
            plugin_version="0.1.0",
            capabilities={
                "capabilities_version": "1.0.0",
                "plugin_kind": "layout_kernel",
                "io": {
                    "inputs": [{"name": "params", "category": "data", "data_kind": "spiral_params"}],
                    "outputs": [{"name": "revision", "category": "data", "data_kind": "layout_revision"}],
                },
                "features": {"shapes": list(SHAPES)},
            },
        )

    def generate(self, params: Dict[str, Any], pdk: PDKVersion) -> LayoutRevision:
        geometry = spiral_geometry(params)
        layout_hash = hash_bytes(
            canonical_json_bytes({"pdk": pdk.content_hash, "geometry": geometry})
        )
        revision_id = str(params.get("revision_id") or f"rev-{layout_hash[:16]}")
        return LayoutRevision(
            revision_id=revision_id,
            parent_id=params.get("parent_id"),
            pdk_hash=pdk.content_hash,
            layout_hash=layout_hash,
            gds_ref=None,
            metadata={"kernel": self.meta().name, "geometry": geometry},
        )


def spiral_geometry(params: Dict[str, Any]) -> Dict[str, Any]:
    shape = str(params.get("shape", "square")).lower()
    if shape not in SHAPES:
        raise InvalidInputError(f"Unsupported spiral shape: {shape}", location="params.shape")
    turns = params.get("turns")
    if isinstance(turns, bool) or not isinstance(turns, (int, float)) or turns <= 0:
        raise InvalidInputError("turns must be a positive number", location="params.turns")

    lengths: Dict[str, float] = {}
    for name in ("width", "spacing", "outer_diameter"):
        if name not in params:
            raise InvalidInputError(f"Missing spiral parameter {name}", location=f"params.{name}")
        value, diags = normalize_quantity(params[name], "length", f"params.{name}", default_unit="um")
        if diags:
            raise InvalidInputError(diags[0].message, location=f"params.{name}")
        if value <= 0:
            raise InvalidInputError(f"{name} must be positive", location=f"params.{name}")
        lengths[name] = value

    width = lengths["width"]
    spacing = lengths["spacing"]
    d_out = lengths["outer_diameter"]
    n = float(turns)
    d_in = d_out - 2.0 * n * width - 2.0 * max(n - 1.0, 0.0) * spacing
    d_avg = 0.5 * (d_out + d_in)
    return {
        "shape": shape,
        "layer": str(params.get("layer", "top_metal")),
        "turns": n,
        "width_m": width,
        "spacing_m": spacing,
        "outer_diameter_m": d_out,
        "inner_diameter_m": d_in,
        # Mean trace length for a square spiral; other shapes scale by perimeter ratio.
        "trace_length_m": _PERIMETER[shape] * n * d_avg,
    }


_PERIMETER = {"square": 4.0, "hexagonal": 3.464, "octagonal": 3.314}
