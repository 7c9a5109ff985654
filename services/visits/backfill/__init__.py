"""Retroactive visit reconstruction from the ping archive."""

from services.visits.backfill.engine import BackfillAnalysisEngine
from services.visits.backfill.models import (
    BackfillCandidate,
    BackfillCreateVisit,
    BackfillInfo,
    BackfillPreview,
    BackfillResult,
    BackfillSelection,
    ExistingVisit,
    FailedChunk,
    StaleVisit,
    SuggestedVisit,
)
from services.visits.backfill.scoring import Tier, build_tiers, confidence_score

__all__ = [
    "BackfillAnalysisEngine",
    "BackfillCandidate",
    "BackfillCreateVisit",
    "BackfillInfo",
    "BackfillPreview",
    "BackfillResult",
    "BackfillSelection",
    "ExistingVisit",
    "FailedChunk",
    "StaleVisit",
    "SuggestedVisit",
    "Tier",
    "build_tiers",
    "confidence_score",
]
