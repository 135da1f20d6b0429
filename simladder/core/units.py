from __future__ import annotations

import math
import re
from typing import Any, Dict, List, Optional, Tuple

from .diagnostics import Diagnostic

_SCALES: Dict[str, Dict[str, float]] = {
    "frequency": {"hz": 1.0, "khz": 1.0e3, "mhz": 1.0e6, "ghz": 1.0e9, "thz": 1.0e12},
    "length": {"m": 1.0, "mm": 1.0e-3, "um": 1.0e-6, "µm": 1.0e-6, "nm": 1.0e-9},
    "time": {"s": 1.0, "ms": 1.0e-3, "us": 1.0e-6, "ns": 1.0e-9},
}

_QUANTITY_RE = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)\s*([^\s\d]*)\s*$")


def _lookup(unit: str) -> Optional[Tuple[str, float]]:
    key = unit.strip().lower()
    for kind, scales in _SCALES.items():
        if key in scales:
            return kind, scales[key]
    return None


def split_quantity(value: Any) -> Tuple[float, str]:
    """Split ``"2.4 GHz"`` / ``{"value": 2.4, "unit": "GHz"}`` / ``2.4`` into number and unit."""
    if isinstance(value, bool):
        raise ValueError("booleans are not quantities")
    if isinstance(value, (int, float)):
        number, unit = float(value), ""
    elif isinstance(value, str):
        match = _QUANTITY_RE.match(value)
        if match is None:
            raise ValueError(f"cannot read {value!r} as a number with a unit")
        number, unit = float(match.group(1)), match.group(2)
    elif isinstance(value, dict):
        number, unit = float(value["value"]), str(value.get("unit") or "")
    else:
        raise ValueError(f"unsupported quantity type {type(value).__name__}")
    if not math.isfinite(number):
        raise ValueError("quantity must be finite")
    return number, unit


def normalize_quantity(
    value: Any, expected_kind: str, field: str, *, default_unit: str = ""
) -> Tuple[float, List[Diagnostic]]:
    """Convert ``value`` to SI for ``expected_kind``.

    Bare numbers are read in ``default_unit``; without one they are an error.
    """

    def fail(code: str, message: str) -> Tuple[float, List[Diagnostic]]:
        return 0.0, [Diagnostic(code=code, message=message, location=field)]

    try:
        number, unit = split_quantity(value)
    except (KeyError, TypeError, ValueError) as exc:
        return fail("E-UNIT-PARSE", f"{field}: {exc}")

    unit = unit or default_unit
    if not unit:
        return fail("E-UNIT-MISSING", f"{field} needs a {expected_kind} unit")
    found = _lookup(unit)
    if found is None:
        return fail("E-UNIT-UNKNOWN", f"{field}: unit '{unit}' is not recognised")
    kind, scale = found
    if kind != expected_kind:
        return fail("E-UNIT-KIND", f"{field}: '{unit}' is a {kind} unit, {expected_kind} expected")
    return number * scale, []
