# hc_core/common/outcomes.py
from __future__ import annotations

from enum import Enum
from typing import Sequence


class RankingOutcome(str, Enum):
    """
    Terminal outcome of a Rank/FindMatches call.

    NO_MATCH is a valid business outcome (every candidate gated out).
    FAULT means nothing ranked and at least one candidate could not be
    evaluated, so callers must not present it as "no eligible candidate".
    """
    MATCHED = "MATCHED"
    NO_MATCH = "NO_MATCH"
    FAULT = "FAULT"


def resolve_outcome(ranked: Sequence, results: Sequence) -> RankingOutcome:
    if ranked:
        return RankingOutcome.MATCHED
    if any(getattr(r, "fault", None) for r in results):
        return RankingOutcome.FAULT
    return RankingOutcome.NO_MATCH
