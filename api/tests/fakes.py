import threading
from datetime import datetime, timedelta, timezone

from friendmatch.schemas import CandidateProfile, MatchingPreferences, MatchingProfile, UserProfile
from friendmatch.services.cycles import cycle_window
from friendmatch.sources import PendingMatch, RecentMatchRecord

# Wednesday of ISO week 2026-W42.
NOW = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)
CYCLE = "2026-W42"


def interests(*pairs):
    return [{"interest_id": i, "preference_rank": r} for i, r in pairs]


def make_profile(user_id, ranked=(("hiking", 1),), lat=40.75, lng=-73.99, last_active=NOW, **prefs):
    return MatchingProfile(
        profile=UserProfile(user_id=user_id, interests=interests(*ranked), latitude=lat, longitude=lng, last_active=last_active),
        preferences=MatchingPreferences(**prefs),
    )


def make_candidate(user_id, ranked=(("hiking", 1),), distance_km=5.0, last_active=NOW, lat=40.76, lng=-73.98):
    return CandidateProfile(
        user_id=user_id,
        interests=interests(*ranked),
        latitude=lat,
        longitude=lng,
        last_active=last_active,
        distance_km=distance_km,
    )


class InMemoryDirectory:
    """Eligibility, profile and candidate source backed by dicts."""

    def __init__(self, profiles=None, pools=None, eligible=None):
        self.profiles = dict(profiles or {})
        self.pools = dict(pools or {})
        self.eligible = list(eligible if eligible is not None else self.profiles)
        self.calls = []
        self._lock = threading.Lock()

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)

    def users_needing_matches(self, cycle):
        self._record("users_needing_matches", cycle)
        return list(self.eligible)

    def fetch_profile(self, user_id):
        self._record("fetch_profile", user_id)
        return self.profiles.get(user_id)

    def fetch_candidates(self, user_id, lat, lng, radius_km, age_min, age_max):
        self._record("fetch_candidates", user_id, radius_km, age_min, age_max)
        return list(self.pools.get(user_id, []))


class InMemoryMatchStore:
    def __init__(self, quotas=None, default_quota=2):
        self.rows = {}
        self.quotas = dict(quotas or {})
        self.default_quota = default_quota
        self.persist_calls = 0
        self._lock = threading.Lock()

    def seed(self, user_a, user_b, cycle, score=0.5):
        self.persist([PendingMatch(user_a=user_a, user_b=user_b, score=score, cycle=cycle)])

    def _records_for(self, user_id, cycles):
        out = []
        with self._lock:
            for (a, b, cycle), match in self.rows.items():
                if cycle in cycles and user_id in (a, b):
                    other = b if a == user_id else a
                    out.append(RecentMatchRecord(candidate_user_id=other, match_cycle=cycle, score=match.score))
        return out

    def existing_match_ids(self, user_id, *, cycle, lookback_cycles):
        return {r.candidate_user_id for r in self._records_for(user_id, set(cycle_window(cycle, lookback_cycles)))}

    def recent_matches(self, user_id, *, cycle, lookback_cycles):
        return self._records_for(user_id, set(cycle_window(cycle, lookback_cycles)))

    def users_at_quota(self, user_ids, *, cycle):
        with self._lock:
            counts = {}
            for a, b, row_cycle in self.rows:
                if row_cycle == cycle:
                    counts[a] = counts.get(a, 0) + 1
                    counts[b] = counts.get(b, 0) + 1
        return {uid for uid in user_ids if counts.get(uid, 0) >= self.quotas.get(uid, self.default_quota)}

    def persist(self, matches):
        created = 0
        with self._lock:
            self.persist_calls += 1
            for match in matches:
                if match.pair_key in self.rows:
                    continue
                self.rows[match.pair_key] = match
                created += 1
        return created

    def delete_cycle(self, cycle):
        with self._lock:
            doomed = [k for k in self.rows if k[2] == cycle]
            for k in doomed:
                del self.rows[k]
        return len(doomed)


def days_ago(days):
    return NOW - timedelta(days=days)
