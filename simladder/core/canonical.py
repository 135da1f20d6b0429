from __future__ import annotations

import json
import math
from decimal import ROUND_HALF_EVEN, Context, Decimal
from typing import Any, Mapping, Union

from .diagnostics import InvalidInputError

SIGNIFICANT_DIGITS = 12

_CONTEXT = Context(prec=SIGNIFICANT_DIGITS, rounding=ROUND_HALF_EVEN)
_EXACT_INT_LIMIT = 2**53


def fixed_decimal(value: float) -> str:
    """Render a float as a decimal string at ``SIGNIFICANT_DIGITS`` precision.

    Goes through ``repr`` so the result depends only on the IEEE-754 value,
    never on platform formatting. Rounding is relative, so ``1e-13`` and
    ``1e-14`` stay distinct while ``0.1 + 0.2`` reads as ``0.3``.
    """
    if not math.isfinite(value):
        raise InvalidInputError(f"Non-finite float cannot be canonicalized: {value!r}")
    rounded = _CONTEXT.plus(Decimal(repr(value)))
    if rounded.is_zero():
        return "0"
    rounded = rounded.normalize(_CONTEXT)
    if abs(rounded.adjusted()) <= SIGNIFICANT_DIGITS:
        return format(rounded, "f")
    return format(rounded, "e")


def canonical_number(value: Union[int, float]) -> Any:
    """Ints stay ints; integral floats encode like the matching int."""
    if isinstance(value, int):
        return value
    if math.isfinite(value) and value.is_integer() and abs(value) < _EXACT_INT_LIMIT:
        return int(value)
    text = fixed_decimal(value)
    rounded = Decimal(text)
    if rounded == rounded.to_integral_value() and abs(rounded) < _EXACT_INT_LIMIT:
        return int(rounded)
    return {"$f": text}


def canonicalize(value: Any, path: str = "$") -> Any:
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, (int, float)):
        return canonical_number(value)
    if isinstance(value, (list, tuple)):
        return [canonicalize(item, f"{path}[{idx}]") for idx, item in enumerate(value)]
    if isinstance(value, (set, frozenset)):
        items = [canonicalize(item, f"{path}{{}}") for item in value]
        return sorted(items, key=lambda item: json.dumps(item, sort_keys=True))
    if isinstance(value, Mapping):
        out = {}
        for key, val in value.items():
            if not isinstance(key, str):
                raise InvalidInputError(
                    f"Mapping keys must be strings, got {type(key).__name__}",
                    location=path,
                )
            out[key] = canonicalize(val, f"{path}.{key}")
        return out
    raise InvalidInputError(
        f"Unsupported value type for canonical encoding: {type(value).__name__}",
        location=path,
    )


def canonical_json_bytes(value: Any) -> bytes:
    canonical = canonicalize(value)
    return json.dumps(canonical, sort_keys=True, separators=(",", ":"), ensure_ascii=True).encode(
        "utf-8"
    )


def round_metric(value: float) -> float:
    return float(fixed_decimal(value))
