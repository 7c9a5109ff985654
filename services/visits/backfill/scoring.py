"""
Backfill tiers and confidence scoring.

Tiers are concentric rings around a place, measured in multiples of the base
radius (settings.max_search_radius_m):

    tier k covers distance <= min(k, multiplier) * base      k = 1..ceil(multiplier)
    weight(k)          = 1 / k
    required_hits(k)   = k * settings.required_hits

Hit counts are cumulative: a ping inside tier 1 also counts for tiers 2..N.

confidence_score(hits, mean_distance):
    hit_score = min(95, 40 + 5.5 * hits)
    penalty   = min(20, 20 * (mean - min_radius) / (base * multiplier - min_radius))
                only when mean > min_radius
    score     = round(weight * max(0, hit_score - penalty))        in [0, 100]

Non-decreasing in hits at a fixed distance, non-increasing in mean distance
at a fixed hit count.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

from services.visits.settings_provider import VisitSettings

MAX_HIT_SCORE = 95.0
BASE_HIT_SCORE = 40.0
PER_HIT_SCORE = 5.5
MAX_DISTANCE_PENALTY = 20.0


@dataclass(frozen=True, slots=True)
class Tier:
    level: int
    radius_m: float
    weight: float
    required_hits: int


def build_tiers(settings: VisitSettings) -> list[Tier]:
    base = settings.max_search_radius_m
    multiplier = settings.suggestion_radius_multiplier
    count = max(1, math.ceil(multiplier))
    return [
        Tier(
            level=k,
            radius_m=min(k, multiplier) * base,
            weight=1.0 / k,
            required_hits=k * settings.required_hits,
        )
        for k in range(1, count + 1)
    ]


def confidence_score(
    hits: int,
    mean_distance_m: float | None,
    settings: VisitSettings,
    weight: float = 1.0,
) -> int:
    if hits <= 0:
        return 0

    hit_score = min(MAX_HIT_SCORE, BASE_HIT_SCORE + PER_HIT_SCORE * hits)

    penalty = 0.0
    outer_radius = settings.max_search_radius_m * settings.suggestion_radius_multiplier
    span = outer_radius - settings.min_radius_m
    if mean_distance_m is not None and mean_distance_m > settings.min_radius_m:
        if span > 0:
            penalty = min(MAX_DISTANCE_PENALTY, MAX_DISTANCE_PENALTY * (mean_distance_m - settings.min_radius_m) / span)
        else:
            penalty = MAX_DISTANCE_PENALTY

    score = round(weight * max(0.0, hit_score - penalty))
    return max(0, min(100, score))


def qualifying_tier(tier_hits: Sequence[int], tiers: Sequence[Tier]) -> Tier | None:
    """Innermost tier whose own hit threshold is met."""
    for tier, hits in zip(tiers, tier_hits):
        if hits >= tier.required_hits:
            return tier
    return None


def cross_tier_level(tier_hits: Sequence[int]) -> int | None:
    """
    Cross-tier evidence: at least one hit in tier k backed by k + 1 hits in
    tier k + 1 (1 + 2, 2 + 3, ...). Returns the inner tier level k.
    """
    for k in range(1, len(tier_hits)):
        if tier_hits[k - 1] >= 1 and tier_hits[k] >= k + 1:
            return k
    return None


def suggestion_reason(
    tier_hits: Sequence[int],
    tiers: Sequence[Tier],
    hits_total: int,
    has_checkin: bool,
) -> str:
    if has_checkin:
        return "User checked in nearby"

    level = cross_tier_level(tier_hits)
    if level is not None:
        inner, outer = tiers[level - 1], tiers[level]
        return (
            f"Cross-tier: {tier_hits[level - 1]} within {inner.radius_m:.0f}m"
            f" + {tier_hits[level]} within {outer.radius_m:.0f}m"
        )

    for tier, hits in zip(tiers, tier_hits):
        if hits >= 1:
            plural = "s" if hits > 1 else ""
            return f"{hits} ping{plural} within {tier.radius_m:.0f}m"

    return f"{hits_total} pings within extended range"
