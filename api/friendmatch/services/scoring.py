from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from ..schemas import CandidateProfile, RankedInterest, UserProfile

EARTH_RADIUS_KM = 6371.0088

# (upper bound in days, score); anything older falls through to the floor.
ACTIVITY_TIERS: tuple[tuple[float, float], ...] = ((1, 1.0), (7, 0.8), (30, 0.6), (90, 0.4))
ACTIVITY_FLOOR = 0.2


@dataclass(frozen=True)
class ScoreBreakdown:
    interest_score: float
    proximity_score: float
    activity_score: float
    overall_score: float

    def to_dict(self) -> dict[str, float]:
        return {
            "interest_score": round(self.interest_score, 6),
            "proximity_score": round(self.proximity_score, 6),
            "activity_score": round(self.activity_score, 6),
            "overall_score": round(self.overall_score, 6),
        }


@dataclass(frozen=True)
class MatchCandidateResult:
    requesting_user_id: str
    candidate_user_id: str
    overall_score: float
    score_breakdown: ScoreBreakdown
    match_cycle: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "requesting_user_id": self.requesting_user_id,
            "candidate_user_id": self.candidate_user_id,
            "overall_score": round(self.overall_score, 6),
            "score_breakdown": self.score_breakdown.to_dict(),
            "match_cycle": self.match_cycle,
        }


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _rank_map(interests: Iterable[RankedInterest] | dict[str, int]) -> dict[str, int]:
    if isinstance(interests, dict):
        return interests
    return {i.interest_id: i.preference_rank for i in interests}


def interest_score(
    a: Iterable[RankedInterest] | dict[str, int],
    b: Iterable[RankedInterest] | dict[str, int],
    cfg: dict[str, Any] | None = None,
) -> float:
    cfg = cfg or {}
    ranks_a = _rank_map(a)
    ranks_b = _rank_map(b)
    if not ranks_a or not ranks_b:
        return 0.0

    shared = [interest_id for interest_id in ranks_a if interest_id in ranks_b]
    if not shared:
        return 0.0

    gap_scale = float(cfg.get("RANK_GAP_SCALE", 10))
    weighted = 0.0
    total_weight = 0.0
    for interest_id in shared:
        rank_a = ranks_a[interest_id]
        rank_b = ranks_b[interest_id]
        # Higher-priority interests (lower rank) carry more weight.
        weight = max(1.0 / math.sqrt(rank_a), 1.0 / math.sqrt(rank_b))
        agreement = max(0.0, 1.0 - abs(rank_a - rank_b) / gap_scale)
        weighted += agreement * weight
        total_weight += weight

    bonus = min(
        float(cfg.get("SHARED_BONUS_CAP", 0.2)),
        float(cfg.get("SHARED_BONUS_STEP", 0.05)) * len(shared),
    )
    return _clamp(weighted / total_weight + bonus)


def proximity_score(distance_km: float | None, max_radius_km: float = 50.0) -> float:
    if distance_km is None or max_radius_km <= 0:
        return 0.0
    if distance_km > max_radius_km:
        return 0.0
    return _clamp(math.exp(-max(0.0, distance_km) / (max_radius_km / 3.0)))


def activity_score(last_active: datetime | None, now: datetime | None = None) -> float:
    if last_active is None:
        return ACTIVITY_FLOOR
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    if last_active.tzinfo is None:
        last_active = last_active.replace(tzinfo=timezone.utc)

    days = (now - last_active).total_seconds() / 86400.0
    for upper, score in ACTIVITY_TIERS:
        if days < upper:
            return score
    return ACTIVITY_FLOOR


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


def candidate_distance_km(user: UserProfile, candidate: UserProfile) -> float | None:
    distance = getattr(candidate, "distance_km", None)
    if distance is not None:
        return float(distance)
    if None in (user.latitude, user.longitude, candidate.latitude, candidate.longitude):
        return None
    return haversine_km(user.latitude, user.longitude, candidate.latitude, candidate.longitude)


def combined_score(
    user: UserProfile,
    candidate: CandidateProfile | UserProfile,
    cfg: dict[str, Any] | None = None,
    *,
    now: datetime | None = None,
    max_radius_km: float = 50.0,
) -> ScoreBreakdown:
    cfg = cfg or {}
    now = now or datetime.now(timezone.utc)

    interests = interest_score(user.interests, candidate.interests, cfg)
    proximity = proximity_score(candidate_distance_km(user, candidate), max_radius_km)
    activity = (activity_score(user.last_active, now) + activity_score(candidate.last_active, now)) / 2.0

    overall = (
        float(cfg.get("INTEREST_W", 0.6)) * interests
        + float(cfg.get("PROXIMITY_W", 0.3)) * proximity
        + float(cfg.get("ACTIVITY_W", 0.1)) * activity
    )
    return ScoreBreakdown(
        interest_score=interests,
        proximity_score=proximity,
        activity_score=activity,
        overall_score=_clamp(overall),
    )
