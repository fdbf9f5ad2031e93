from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Collection, Iterable

from ..schemas import CandidateProfile, UserProfile
from .diversity import apply_diversity_filter, rank_key
from .scoring import MatchCandidateResult, combined_score


def score_candidates(
    user: UserProfile,
    candidates: Iterable[CandidateProfile],
    *,
    cycle: str,
    cfg: dict[str, Any] | None = None,
    now: datetime | None = None,
    max_radius_km: float = 50.0,
) -> list[MatchCandidateResult]:
    now = now or datetime.now(timezone.utc)
    out: list[MatchCandidateResult] = []
    for candidate in candidates:
        breakdown = combined_score(user, candidate, cfg, now=now, max_radius_km=max_radius_km)
        out.append(
            MatchCandidateResult(
                requesting_user_id=user.user_id,
                candidate_user_id=candidate.user_id,
                overall_score=breakdown.overall_score,
                score_breakdown=breakdown,
                match_cycle=cycle,
            )
        )
    return out


def select_matches(
    user: UserProfile,
    candidates: Iterable[CandidateProfile],
    *,
    cycle: str,
    quota: int = 2,
    existing_match_ids: Collection[str] = (),
    recent_match_ids: Collection[str] = (),
    cfg: dict[str, Any] | None = None,
    now: datetime | None = None,
    max_radius_km: float = 50.0,
    diversity_penalty: float = 0.3,
) -> list[MatchCandidateResult]:
    if quota <= 0:
        return []

    excluded = set(existing_match_ids)
    seen: set[str] = set()
    eligible: list[CandidateProfile] = []
    for candidate in candidates:
        cid = candidate.user_id
        if cid == user.user_id or cid in excluded or cid in seen:
            continue
        seen.add(cid)
        eligible.append(candidate)

    scored = score_candidates(user, eligible, cycle=cycle, cfg=cfg, now=now, max_radius_km=max_radius_km)
    ranked = apply_diversity_filter(scored, set(recent_match_ids), penalty=diversity_penalty)
    return sorted(ranked, key=rank_key)[:quota]
