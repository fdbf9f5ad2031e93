from __future__ import annotations

from dataclasses import replace
from typing import Collection

from .scoring import MatchCandidateResult


def rank_key(result: MatchCandidateResult) -> tuple[float, str]:
    return (-result.overall_score, result.candidate_user_id)


def apply_diversity_filter(
    results: list[MatchCandidateResult],
    recent_candidate_ids: Collection[str],
    penalty: float = 0.3,
) -> list[MatchCandidateResult]:
    """Push recently matched candidates down without excluding them.

    The breakdown keeps the unpenalized sub-scores; only ``overall_score`` moves.
    """
    if not recent_candidate_ids:
        return results

    adjusted = [
        replace(r, overall_score=max(0.0, r.overall_score - penalty)) if r.candidate_user_id in recent_candidate_ids else r
        for r in results
    ]
    adjusted.sort(key=rank_key)
    return adjusted
