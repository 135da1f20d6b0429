from __future__ import annotations

from typing import Any, Dict, List

from simladder.core.models import ConstraintReport, LayoutRevision, PDKVersion
from simladder.core.plugin_api import CheckerPlugin, PluginMeta

DEFAULT_RULES = {
    "min_width_um": 2.0,
    "min_spacing_um": 2.0,
    "max_turns": 20,
    "min_inner_diameter_um": 10.0,
}


class RuleDeckChecker(CheckerPlugin):
    """Geometric design rules read from ``pdk.stackup["rules"]``."""

    def meta(self) -> PluginMeta:
        return PluginMeta(
            name="rule_deck",
            api_version="1.0.0",
            plugin_version="0.1.0",
            capabilities={
                "capabilities_version": "1.0.0",
                "plugin_kind": "checker",
                "io": {
                    "inputs": [{"name": "revision", "category": "data", "data_kind": "layout_revision"}],
                    "outputs": [{"name": "report", "category": "data", "data_kind": "constraint_report"}],
                },
                "features": {"rules": sorted(DEFAULT_RULES)},
            },
        )

    def check(self, revision: LayoutRevision, pdk: PDKVersion) -> ConstraintReport:
        rules = dict(DEFAULT_RULES)
        rules.update(pdk.rules())
        violations: List[Dict[str, Any]] = []

        if revision.pdk_hash != pdk.content_hash:
            violations.append(
                {
                    "rule": "pdk_match",
                    "message": "Revision was generated against a different PDK",
                    "value": revision.pdk_hash,
                    "limit": pdk.content_hash,
                }
            )

        geometry = revision.metadata.get("geometry")
        if not isinstance(geometry, dict):
            violations.append(
                {"rule": "geometry_present", "message": "Revision carries no geometry", "value": None, "limit": None}
            )
            return ConstraintReport(revision.revision_id, False, violations)

        def _min(rule: str, value_um: float, label: str) -> None:
            if value_um < float(rules[rule]):
                violations.append(
                    {
                        "rule": rule,
                        "message": f"{label} {value_um:g} um below minimum {rules[rule]} um",
                        "value": value_um,
                        "limit": rules[rule],
                    }
                )

        _min("min_width_um", geometry["width_m"] * 1e6, "Trace width")
        _min("min_spacing_um", geometry["spacing_m"] * 1e6, "Trace spacing")
        _min("min_inner_diameter_um", geometry["inner_diameter_m"] * 1e6, "Inner diameter")

        if geometry["turns"] > float(rules["max_turns"]):
            violations.append(
                {
                    "rule": "max_turns",
                    "message": f"{geometry['turns']:g} turns exceeds {rules['max_turns']}",
                    "value": geometry["turns"],
                    "limit": rules["max_turns"],
                }
            )

        layers = pdk.stackup.get("layers")
        if layers and geometry.get("layer") not in layers:
            violations.append(
                {
                    "rule": "layer_exists",
                    "message": f"Layer {geometry.get('layer')} not in PDK stackup",
                    "value": geometry.get("layer"),
                    "limit": sorted(layers),
                }
            )

        return ConstraintReport(
            revision_id=revision.revision_id,
            passed=not violations,
            violations=violations,
        )
