from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .. import config
from ..errors import (
    CandidateLookupError,
    ExclusionLookupError,
    MatchEngineError,
    NoEligibleCandidatesError,
    PersistenceError,
    ProfileLookupError,
    ValidationError,
)
from ..sources import CandidateSource, MatchStore, PendingMatch, ProfileSource
from .cycles import cycle_window
from .scoring import MatchCandidateResult
from .selection import select_matches

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineSettings:
    scoring: dict[str, Any] = field(default_factory=lambda: dict(config.DEFAULT_SCORING_CONFIG))
    diversity_penalty: float = config.DIVERSITY_PENALTY
    diversity_lookback_cycles: int = config.DIVERSITY_LOOKBACK_CYCLES
    exclusion_lookback_cycles: int = config.EXCLUSION_LOOKBACK_CYCLES


@dataclass(frozen=True)
class UserGenerationOutcome:
    user_id: str
    selected: list[MatchCandidateResult]
    persisted: int


def _guard(step_error: type[MatchEngineError], user_id: str, what: str, fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except MatchEngineError:
        raise
    except Exception as exc:
        raise step_error(f"{what} failed: {exc}", user_id=user_id) from exc


def generate_matches_for_user(
    user_id: str,
    cycle: str,
    *,
    profiles: ProfileSource,
    candidates: CandidateSource,
    store: MatchStore,
    settings: EngineSettings | None = None,
    now: datetime | None = None,
    persist: bool = True,
) -> UserGenerationOutcome:
    settings = settings or EngineSettings()
    now = now or datetime.now(timezone.utc)

    matching_profile = _guard(ProfileLookupError, user_id, "profile lookup", profiles.fetch_profile, user_id)
    if matching_profile is None:
        raise ValidationError("profile missing or incomplete", user_id=user_id)
    profile = matching_profile.profile
    prefs = matching_profile.preferences

    pool = _guard(
        CandidateLookupError,
        user_id,
        "candidate lookup",
        candidates.fetch_candidates,
        user_id,
        profile.latitude,
        profile.longitude,
        prefs.radius_km,
        prefs.age_min,
        prefs.age_max,
    )
    if not pool:
        raise NoEligibleCandidatesError("no candidates within radius", user_id=user_id)

    existing = _guard(
        ExclusionLookupError,
        user_id,
        "existing match lookup",
        store.existing_match_ids,
        user_id,
        cycle=cycle,
        lookback_cycles=settings.exclusion_lookback_cycles,
    )
    # Always spans at least the current cycle; quota accounting reads it.
    recent = _guard(
        ExclusionLookupError,
        user_id,
        "recent match lookup",
        store.recent_matches,
        user_id,
        cycle=cycle,
        lookback_cycles=max(1, settings.diversity_lookback_cycles),
    )
    diversity_cycles = set(cycle_window(cycle, settings.diversity_lookback_cycles))

    held_this_cycle = {r.candidate_user_id for r in recent if r.match_cycle == cycle}
    remaining_quota = max(0, prefs.match_quota - len(held_this_cycle))

    # Candidates whose own quota is already used up this cycle.
    full_candidates: set[str] = set()
    if remaining_quota > 0:
        full_candidates = _guard(
            ExclusionLookupError,
            user_id,
            "candidate quota lookup",
            store.users_at_quota,
            [c.user_id for c in pool],
            cycle=cycle,
        )

    selected = select_matches(
        profile,
        pool,
        cycle=cycle,
        quota=remaining_quota,
        existing_match_ids=set(existing) | held_this_cycle | set(full_candidates),
        recent_match_ids={r.candidate_user_id for r in recent if r.match_cycle in diversity_cycles},
        cfg=settings.scoring,
        now=now,
        max_radius_km=prefs.radius_km,
        diversity_penalty=settings.diversity_penalty,
    )
    logger.debug(
        "[MATCHING] user=%s cycle=%s pool=%s excluded=%s full=%s quota_left=%s selected=%s",
        user_id,
        cycle,
        len(pool),
        len(existing),
        len(full_candidates),
        remaining_quota,
        len(selected),
    )

    if not persist or not selected:
        return UserGenerationOutcome(user_id=user_id, selected=selected, persisted=0)

    pending = [
        PendingMatch(user_a=r.requesting_user_id, user_b=r.candidate_user_id, score=r.overall_score, cycle=cycle)
        for r in selected
    ]
    persisted = _guard(PersistenceError, user_id, "match persistence", store.persist, pending)
    return UserGenerationOutcome(user_id=user_id, selected=selected, persisted=int(persisted or 0))
