"""PostgreSQL-backed collaborators for the match engine.

Every method opens its own short-lived session from the injected factory so
that concurrent workers never share a connection.
"""
from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import text
from sqlalchemy.orm import Session

from . import config
from .errors import ValidationError
from .schemas import CandidateProfile, MatchingPreferences, MatchingProfile, UserProfile
from .services.cycles import cycle_window
from .sources import PendingMatch, RecentMatchRecord

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def fetch_interests(db, user_ids: list[str]) -> dict[str, list[dict[str, Any]]]:
    if not user_ids:
        return {}
    rows = db.execute(
        text(
            """
            SELECT CAST(user_id AS text) AS user_id, interest_id, preference_rank
            FROM user_interests
            WHERE user_id = ANY(CAST(:user_ids AS uuid[]))
            ORDER BY user_id, preference_rank ASC
            """
        ),
        {"user_ids": list(user_ids)},
    ).mappings().all()
    by_user: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for row in rows:
        by_user[str(row["user_id"])].append(
            {"interest_id": str(row["interest_id"]), "preference_rank": int(row["preference_rank"])}
        )
    return by_user


class SqlUserEligibilitySource:
    def __init__(self, session_factory: SessionFactory, default_quota: int = config.MATCH_QUOTA) -> None:
        self._session_factory = session_factory
        self._default_quota = default_quota

    def users_needing_matches(self, cycle: str) -> list[str]:
        with self._session_factory() as db:
            rows = db.execute(
                text(
                    """
                    SELECT CAST(u.id AS text) AS user_id
                    FROM users u
                    WHERE u.is_profile_complete = TRUE
                      AND u.is_active = TRUE
                      AND u.latitude IS NOT NULL
                      AND u.longitude IS NOT NULL
                      AND (
                        SELECT COUNT(1)
                        FROM matches m
                        WHERE m.match_week = :cycle
                          AND (m.user_1_id = u.id OR m.user_2_id = u.id)
                      ) < COALESCE(u.match_frequency, :default_quota)
                    ORDER BY u.id
                    """
                ),
                {"cycle": cycle, "default_quota": self._default_quota},
            ).mappings().all()
        return [str(r["user_id"]) for r in rows]


class SqlProfileSource:
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def fetch_profile(self, user_id: str) -> MatchingProfile | None:
        with self._session_factory() as db:
            row = db.execute(
                text(
                    """
                    SELECT CAST(id AS text) AS user_id, latitude, longitude, last_active,
                           distance_radius, age_range_min, age_range_max, match_frequency
                    FROM users
                    WHERE id = CAST(:user_id AS uuid)
                    """
                ),
                {"user_id": user_id},
            ).mappings().first()
            if not row:
                return None
            user_id = str(row["user_id"])
            interests = fetch_interests(db, [user_id]).get(user_id, [])

        if not interests:
            raise ValidationError("user has no ranked interests", user_id=user_id)
        try:
            return MatchingProfile(
                profile=UserProfile(
                    user_id=user_id,
                    interests=interests,
                    latitude=row["latitude"],
                    longitude=row["longitude"],
                    last_active=row["last_active"],
                ),
                preferences=MatchingPreferences(
                    radius_km=row["distance_radius"] or config.MATCH_RADIUS_KM,
                    age_min=row["age_range_min"] or config.MATCH_AGE_MIN,
                    age_max=row["age_range_max"] or config.MATCH_AGE_MAX,
                    match_quota=config.MATCH_QUOTA if row["match_frequency"] is None else row["match_frequency"],
                ),
            )
        except PydanticValidationError as exc:
            raise ValidationError(f"invalid profile: {exc.error_count()} error(s)", user_id=user_id) from exc


class SqlCandidateSource:
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def fetch_candidates(
        self,
        user_id: str,
        lat: float,
        lng: float,
        radius_km: float,
        age_min: int,
        age_max: int,
    ) -> list[CandidateProfile]:
        with self._session_factory() as db:
            rows = db.execute(
                text(
                    """
                    SELECT CAST(user_id AS text) AS user_id, latitude, longitude, last_active, distance_km
                    FROM get_match_candidates(
                      CAST(:user_id AS uuid), :latitude, :longitude, :radius_km, :age_min, :age_max
                    )
                    """
                ),
                {
                    "user_id": user_id,
                    "latitude": lat,
                    "longitude": lng,
                    "radius_km": radius_km,
                    "age_min": age_min,
                    "age_max": age_max,
                },
            ).mappings().all()
            interests = fetch_interests(db, [str(r["user_id"]) for r in rows])

        candidates: list[CandidateProfile] = []
        for row in rows:
            cid = str(row["user_id"])
            try:
                candidates.append(
                    CandidateProfile(
                        user_id=cid,
                        interests=interests.get(cid, []),
                        latitude=row["latitude"],
                        longitude=row["longitude"],
                        last_active=row["last_active"],
                        distance_km=row["distance_km"],
                    )
                )
            except PydanticValidationError as exc:
                logger.warning("[MATCHING] skipping malformed candidate %s for user %s: %s", cid, user_id, exc.error_count())
        return candidates


class SqlMatchStore:
    def __init__(self, session_factory: SessionFactory, default_quota: int = config.MATCH_QUOTA) -> None:
        self._session_factory = session_factory
        self._default_quota = default_quota

    def existing_match_ids(self, user_id: str, *, cycle: str, lookback_cycles: int) -> set[str]:
        return {r.candidate_user_id for r in self.recent_matches(user_id, cycle=cycle, lookback_cycles=lookback_cycles)}

    def recent_matches(self, user_id: str, *, cycle: str, lookback_cycles: int) -> list[RecentMatchRecord]:
        cycles = cycle_window(cycle, lookback_cycles)
        if not cycles:
            return []
        # Postgres renders uuids lowercase; compare in the same form.
        user_id = str(uuid.UUID(user_id))
        with self._session_factory() as db:
            rows = db.execute(
                text(
                    """
                    SELECT CAST(user_1_id AS text) AS user_1_id,
                           CAST(user_2_id AS text) AS user_2_id,
                           similarity_score,
                           match_week
                    FROM matches
                    WHERE (user_1_id = CAST(:user_id AS uuid) OR user_2_id = CAST(:user_id AS uuid))
                      AND match_week = ANY(:cycles)
                    ORDER BY created_at DESC
                    """
                ),
                {"user_id": user_id, "cycles": cycles},
            ).mappings().all()

        records = []
        for r in rows:
            other = r["user_2_id"] if r["user_1_id"] == user_id else r["user_1_id"]
            score = r["similarity_score"]
            records.append(
                RecentMatchRecord(
                    candidate_user_id=str(other),
                    match_cycle=str(r["match_week"]),
                    score=float(score) if score is not None else None,
                )
            )
        return records

    def users_at_quota(self, user_ids: list[str], *, cycle: str) -> set[str]:
        if not user_ids:
            return set()
        with self._session_factory() as db:
            rows = db.execute(
                text(
                    """
                    SELECT CAST(u.id AS text) AS user_id
                    FROM users u
                    WHERE u.id = ANY(CAST(:user_ids AS uuid[]))
                      AND (
                        SELECT COUNT(1)
                        FROM matches m
                        WHERE m.match_week = :cycle
                          AND (m.user_1_id = u.id OR m.user_2_id = u.id)
                      ) >= COALESCE(u.match_frequency, :default_quota)
                    """
                ),
                {"user_ids": list(user_ids), "cycle": cycle, "default_quota": self._default_quota},
            ).mappings().all()
        return {str(r["user_id"]) for r in rows}

    def persist(self, matches: list[PendingMatch]) -> int:
        if not matches:
            return 0
        created = 0
        with self._session_factory() as db:
            for match in matches:
                if match.user_a == match.user_b:
                    continue
                res = db.execute(
                    text(
                        """
                        INSERT INTO matches (id, user_1_id, user_2_id, similarity_score, match_week)
                        VALUES (:id, CAST(:user_1_id AS uuid), CAST(:user_2_id AS uuid), :similarity_score, :match_week)
                        ON CONFLICT (LEAST(user_1_id, user_2_id), GREATEST(user_1_id, user_2_id), match_week)
                        DO NOTHING
                        """
                    ),
                    {
                        "id": str(uuid.uuid4()),
                        "user_1_id": match.user_a,
                        "user_2_id": match.user_b,
                        "similarity_score": round(match.score, 6),
                        "match_week": match.cycle,
                    },
                )
                created += int(res.rowcount or 0)
            db.commit()
        return created

    def delete_cycle(self, cycle: str) -> int:
        with self._session_factory() as db:
            res = db.execute(text("DELETE FROM matches WHERE match_week = :cycle"), {"cycle": cycle})
            db.commit()
        return int(res.rowcount or 0)
