"""Deterministic cache keys for simulation requests.

A fingerprint depends only on the PDK identity, the layout content hash, the
solver settings and the frequency plan. Settings and plans go through the
canonical encoder first, so dict ordering and float formatting never leak
into the key.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Any

from .canonical import canonical_json_bytes
from .diagnostics import InvalidInputError
from .models import FrequencyPlan, SolverSettings

FINGERPRINT_VERSION = 2

_HASH_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9:._\-]*$")


@dataclass(frozen=True)
class Fingerprint:
    pdk_hash: str
    layout_hash: str
    settings_hash: str
    plan_hash: str
    digest: bytes

    @property
    def key(self) -> str:
        return self.digest.hex()

    @property
    def bytes(self) -> bytes:
        return self.digest

    def short(self) -> str:
        return self.key[:12]

    def __str__(self) -> str:
        return self.key


def fingerprint(
    pdk_hash: str,
    layout_hash: str,
    solver_settings: Any,
    frequency_plan: Any,
) -> Fingerprint:
    pdk_hash = _require_hash(pdk_hash, "pdk_hash")
    layout_hash = _require_hash(layout_hash, "layout_hash")
    settings = SolverSettings.from_any(solver_settings)
    plan = FrequencyPlan.from_any(frequency_plan)
    settings_hash = settings.content_hash()
    plan_hash = plan.content_hash()
    envelope = {
        "fingerprint_version": FINGERPRINT_VERSION,
        "pdk": pdk_hash,
        "layout": layout_hash,
        "settings": settings_hash,
        "plan": plan_hash,
    }
    digest = hashlib.sha256(canonical_json_bytes(envelope)).digest()
    return Fingerprint(
        pdk_hash=pdk_hash,
        layout_hash=layout_hash,
        settings_hash=settings_hash,
        plan_hash=plan_hash,
        digest=digest,
    )


def _require_hash(value: Any, name: str) -> str:
    if not isinstance(value, str):
        raise InvalidInputError(f"{name} must be a string, got {type(value).__name__}", location=name)
    if not _HASH_PATTERN.match(value):
        raise InvalidInputError(f"{name} is empty or malformed: {value!r}", location=name)
    return value
