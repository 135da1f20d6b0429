from __future__ import annotations

import logging
import math
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Collection, Dict, Mapping, Optional, Tuple

from .ladder import FidelityLadder

logger = logging.getLogger(__name__)

SCORE_METRICS = ("uncertainty", "novelty", "max")


class PromotionReason(str, Enum):
    UNCERTAINTY_EXCEEDED = "uncertainty-exceeded"
    NOVELTY = "novelty"
    CACHED = "cached"
    BELOW_THRESHOLD = "below-threshold"
    BUDGET_EXHAUSTED = "budget-exhausted"
    MAX_TIER_REACHED = "max-tier-reached"


@dataclass(frozen=True)
class PromotionDecision:
    from_tier: int
    to_tier: Optional[int]
    reason: PromotionReason
    score: Optional[float] = None
    fetch_only: bool = False

    @property
    def promote(self) -> bool:
        return self.to_tier is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_tier": self.from_tier,
            "to_tier": self.to_tier,
            "reason": self.reason.value,
            "score": self.score,
            "fetch_only": self.fetch_only,
        }


class NoveltyTracker:
    """Distance of a metric vector to what each tier has already produced.

    Novelty is the smallest mean relative difference to any previously seen
    vector from a different fingerprint, clipped to [0, 1]; 1.0 when there is
    nothing to compare against.
    """

    def __init__(self, history: int = 256) -> None:
        self.history = history
        self._seen: Dict[int, "OrderedDict[str, Dict[str, float]]"] = {}

    def score(self, tier: int, fingerprint: str, metrics: Mapping[str, Any]) -> float:
        vector = _numeric(metrics)
        best = 1.0
        for other_fp, other in self._seen.get(tier, {}).items():
            if other_fp == fingerprint:
                continue
            keys = vector.keys() & other.keys()
            if not keys:
                continue
            diffs = [
                abs(vector[k] - other[k]) / max(abs(vector[k]), abs(other[k]), 1e-12) for k in keys
            ]
            best = min(best, sum(diffs) / len(diffs))
        return max(0.0, min(1.0, best))

    def observe(self, tier: int, fingerprint: str, metrics: Mapping[str, Any]) -> None:
        seen = self._seen.setdefault(tier, OrderedDict())
        seen[fingerprint] = _numeric(metrics)
        seen.move_to_end(fingerprint)
        while len(seen) > self.history:
            seen.popitem(last=False)


class PromotionPolicy:
    """Decide whether a completed tier result earns the next, costlier tier.

    The score is compared against the completed tier's promotion threshold;
    a score exactly at the threshold promotes. Promotion is forward only and
    by one tier unless ``max_step`` is raised in configuration.
    """

    def __init__(
        self,
        ladder: FidelityLadder,
        *,
        metric: str = "uncertainty",
        max_step: int = 1,
        novelty_history: int = 256,
    ) -> None:
        if metric not in SCORE_METRICS:
            raise ValueError(f"Unknown promotion metric {metric!r}; expected one of {SCORE_METRICS}")
        if max_step < 1:
            raise ValueError("max_step must be >= 1")
        self.ladder = ladder
        self.metric = metric
        self.max_step = max_step
        self.novelty = NoveltyTracker(novelty_history)

    def score(
        self,
        tier: int,
        fingerprint: str,
        metrics: Mapping[str, Any],
        uncertainty: Optional[float],
    ) -> Tuple[float, PromotionReason]:
        # Undeclared uncertainty counts as fully uncertain.
        unc = 1.0 if uncertainty is None or not math.isfinite(uncertainty) else float(uncertainty)
        if self.metric == "uncertainty":
            return unc, PromotionReason.UNCERTAINTY_EXCEEDED
        nov = self.novelty.score(tier, fingerprint, metrics)
        if self.metric == "novelty" or nov > unc:
            return nov, PromotionReason.NOVELTY
        return unc, PromotionReason.UNCERTAINTY_EXCEEDED

    def decide(
        self,
        *,
        current_tier: int,
        metrics: Mapping[str, Any],
        uncertainty: Optional[float],
        remaining_budget: float,
        fingerprint: str = "",
        cached_tiers: Collection[int] = (),
    ) -> PromotionDecision:
        tier = self.ladder.tier(current_tier)
        score, reason = self.score(current_tier, fingerprint, metrics, uncertainty)
        self.novelty.observe(current_tier, fingerprint, metrics)

        if current_tier >= self.ladder.ceiling:
            decision = PromotionDecision(current_tier, None, PromotionReason.MAX_TIER_REACHED, score)
        elif score < tier.promotion_threshold:
            decision = PromotionDecision(current_tier, None, PromotionReason.BELOW_THRESHOLD, score)
        else:
            decision = self._select_target(current_tier, score, reason, remaining_budget, cached_tiers)

        logger.debug(
            "Promotion tier %d -> %s (%s, score=%.3f, budget=%.3f)",
            current_tier,
            decision.to_tier,
            decision.reason.value,
            score,
            remaining_budget,
        )
        return decision

    def _select_target(
        self,
        current_tier: int,
        score: float,
        reason: PromotionReason,
        remaining_budget: float,
        cached_tiers: Collection[int],
    ) -> PromotionDecision:
        highest = min(current_tier + self.max_step, self.ladder.ceiling)
        for index in range(highest, current_tier, -1):
            if index in cached_tiers:
                return PromotionDecision(
                    current_tier, index, PromotionReason.CACHED, score, fetch_only=True
                )
            if remaining_budget >= self.ladder.tier(index).cost_weight:
                return PromotionDecision(current_tier, index, reason, score)
        return PromotionDecision(current_tier, None, PromotionReason.BUDGET_EXHAUSTED, score)


def _numeric(metrics: Mapping[str, Any]) -> Dict[str, float]:
    out: Dict[str, float] = {}
    for key, value in metrics.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if math.isfinite(value):
            out[key] = float(value)
    return out
