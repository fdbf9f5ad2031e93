"""Contracts for the collaborators the match engine reads from and writes to.

``repo.py`` has the PostgreSQL implementations; tests use in-memory fakes.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from .schemas import CandidateProfile, MatchingProfile


def canonical_pair(user_a: str, user_b: str) -> tuple[str, str]:
    return tuple(sorted((user_a, user_b)))


@dataclass(frozen=True)
class RecentMatchRecord:
    candidate_user_id: str
    match_cycle: str
    score: float | None = None


@dataclass(frozen=True)
class PendingMatch:
    user_a: str
    user_b: str
    score: float
    cycle: str

    @property
    def pair_key(self) -> tuple[str, str, str]:
        a, b = canonical_pair(self.user_a, self.user_b)
        return (a, b, self.cycle)


class UserEligibilitySource(Protocol):
    def users_needing_matches(self, cycle: str) -> list[str]: ...


class ProfileSource(Protocol):
    def fetch_profile(self, user_id: str) -> MatchingProfile | None: ...


class CandidateSource(Protocol):
    def fetch_candidates(
        self,
        user_id: str,
        lat: float,
        lng: float,
        radius_km: float,
        age_min: int,
        age_max: int,
    ) -> list[CandidateProfile]: ...


class MatchStore(Protocol):
    def existing_match_ids(self, user_id: str, *, cycle: str, lookback_cycles: int) -> set[str]: ...

    def recent_matches(self, user_id: str, *, cycle: str, lookback_cycles: int) -> list[RecentMatchRecord]: ...

    def users_at_quota(self, user_ids: list[str], *, cycle: str) -> set[str]:
        """Return the ids among ``user_ids`` already holding their full quota in ``cycle``."""
        ...

    def persist(self, matches: list[PendingMatch]) -> int:
        """Insert matches; a pair already stored for the same cycle is left untouched."""
        ...

    def delete_cycle(self, cycle: str) -> int: ...
