from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from .diagnostics import InvalidInputError


@dataclass(frozen=True)
class FidelityTier:
    index: int
    name: str
    cost_weight: float
    adapter_id: str
    promotion_threshold: float = 0.5
    resource_class: str = "default"
    timeout_s: Optional[float] = None
    max_attempts: int = 3
    settings: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @classmethod
    def from_dict(cls, index: int, data: Dict[str, Any]) -> "FidelityTier":
        return cls(
            index=index,
            name=str(data.get("name") or f"tier{index}"),
            cost_weight=float(data.get("cost_weight", 1.0)),
            adapter_id=str(data["adapter"]),
            promotion_threshold=float(data.get("promotion_threshold", 0.5)),
            resource_class=str(data.get("resource_class") or "default"),
            timeout_s=float(data["timeout_s"]) if data.get("timeout_s") is not None else None,
            max_attempts=int(data.get("max_attempts", 3)),
            settings=dict(data.get("settings") or {}),
        )


class FidelityLadder:
    """Ordered, static registry of fidelity tiers.

    Index order is promotion order. ``ceiling`` caps how far promotion can
    go and defaults to the last tier.
    """

    def __init__(self, tiers: Sequence[FidelityTier], *, ceiling: Optional[int] = None) -> None:
        if not tiers:
            raise InvalidInputError("Fidelity ladder needs at least one tier", location="ladder")
        ordered = sorted(tiers, key=lambda tier: tier.index)
        for expected, tier in enumerate(ordered):
            if tier.index != expected:
                raise InvalidInputError(
                    f"Tier indices must be contiguous from 0, got {tier.index} at position {expected}",
                    location="ladder.tiers",
                )
            if tier.cost_weight <= 0:
                raise InvalidInputError(
                    f"Tier {tier.name} cost_weight must be positive", location="ladder.tiers"
                )
            if tier.max_attempts < 1:
                raise InvalidInputError(
                    f"Tier {tier.name} max_attempts must be >= 1", location="ladder.tiers"
                )
        self._tiers: List[FidelityTier] = list(ordered)
        top = len(self._tiers) - 1
        if ceiling is None:
            ceiling = top
        if ceiling < 0 or ceiling > top:
            raise InvalidInputError(
                f"Ladder ceiling {ceiling} outside 0..{top}", location="promotion.max_tier"
            )
        self.ceiling = ceiling

    @classmethod
    def from_config(cls, tiers: Iterable[Dict[str, Any]], *, ceiling: Optional[int] = None) -> "FidelityLadder":
        return cls(
            [FidelityTier.from_dict(idx, item) for idx, item in enumerate(tiers)],
            ceiling=ceiling,
        )

    def __len__(self) -> int:
        return len(self._tiers)

    def __iter__(self) -> Iterator[FidelityTier]:
        return iter(self._tiers)

    def tier(self, index: int) -> FidelityTier:
        if index < 0 or index >= len(self._tiers):
            raise InvalidInputError(f"No tier with index {index}", location="ladder")
        return self._tiers[index]

    def first(self) -> FidelityTier:
        return self._tiers[0]

    def next(self, index: int) -> Optional[FidelityTier]:
        if index >= self.ceiling:
            return None
        return self._tiers[index + 1]

    def adapter_ids(self) -> List[str]:
        return sorted({tier.adapter_id for tier in self._tiers})

    def to_list(self) -> List[Dict[str, Any]]:
        return [
            {
                "index": tier.index,
                "name": tier.name,
                "cost_weight": tier.cost_weight,
                "adapter": tier.adapter_id,
                "promotion_threshold": tier.promotion_threshold,
                "resource_class": tier.resource_class,
            }
            for tier in self._tiers
        ]
