from datetime import datetime, timezone

import pytest

from friendmatch.errors import ValidationError
from friendmatch.repo import SqlCandidateSource, SqlMatchStore, SqlProfileSource, SqlUserEligibilitySource, fetch_interests
from friendmatch.sources import PendingMatch

U = "00000000-0000-0000-0000-000000000001"
A = "00000000-0000-0000-0000-00000000000a"
B = "00000000-0000-0000-0000-00000000000b"


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def mappings(self):
        return self

    def all(self):
        return list(self._rows)

    def first(self):
        return self._rows[0] if self._rows else None


class FakeDB:
    """Answers each execute() with the next scripted result and records the SQL."""

    def __init__(self, results=None):
        self.calls = []
        self.results = list(results or [])
        self.commits = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, stmt, params=None):
        self.calls.append((str(stmt), params))
        return self.results.pop(0) if self.results else FakeResult()

    def commit(self):
        self.commits += 1


def _user_row(**overrides):
    row = {
        "user_id": U,
        "latitude": 40.75,
        "longitude": -73.99,
        "last_active": datetime(2026, 10, 13, tzinfo=timezone.utc),
        "distance_radius": 25,
        "age_range_min": 21,
        "age_range_max": 35,
        "match_frequency": 3,
    }
    row.update(overrides)
    return row


def test_fetch_interests_groups_by_user():
    db = FakeDB([FakeResult([
        {"user_id": U, "interest_id": "hiking", "preference_rank": 1},
        {"user_id": U, "interest_id": "chess", "preference_rank": 2},
        {"user_id": A, "interest_id": "yoga", "preference_rank": 1},
    ])])
    out = fetch_interests(db, [U, A])
    assert [i["interest_id"] for i in out[U]] == ["hiking", "chess"]
    assert out[A] == [{"interest_id": "yoga", "preference_rank": 1}]
    assert db.calls[0][1] == {"user_ids": [U, A]}


def test_fetch_interests_skips_query_for_empty_input():
    db = FakeDB()
    assert fetch_interests(db, []) == {}
    assert db.calls == []


def test_eligibility_query_filters_on_cycle_and_quota():
    db = FakeDB([FakeResult([{"user_id": U}, {"user_id": A}])])
    source = SqlUserEligibilitySource(lambda: db, default_quota=2)
    assert source.users_needing_matches("2026-W42") == [U, A]
    sql, params = db.calls[0]
    assert "is_profile_complete = TRUE" in sql
    assert "COALESCE(u.match_frequency, :default_quota)" in sql
    assert params == {"cycle": "2026-W42", "default_quota": 2}


def test_profile_source_builds_preferences():
    db = FakeDB([
        FakeResult([_user_row()]),
        FakeResult([{"user_id": U, "interest_id": "hiking", "preference_rank": 1}]),
    ])
    profile = SqlProfileSource(lambda: db).fetch_profile(U)
    assert profile.user_id == U
    assert profile.profile.interest_ranks() == {"hiking": 1}
    assert profile.preferences.radius_km == 25
    assert (profile.preferences.age_min, profile.preferences.age_max) == (21, 35)
    assert profile.preferences.match_quota == 3


def test_profile_source_applies_defaults_for_missing_preferences():
    db = FakeDB([
        FakeResult([_user_row(distance_radius=None, age_range_min=None, age_range_max=None, match_frequency=None)]),
        FakeResult([{"user_id": U, "interest_id": "hiking", "preference_rank": 1}]),
    ])
    prefs = SqlProfileSource(lambda: db).fetch_profile(U).preferences
    assert prefs.radius_km == 50
    assert (prefs.age_min, prefs.age_max) == (18, 100)
    assert prefs.match_quota == 2


def test_profile_source_returns_none_for_unknown_user():
    db = FakeDB([FakeResult([])])
    assert SqlProfileSource(lambda: db).fetch_profile(U) is None


def test_profile_without_interests_is_invalid():
    db = FakeDB([FakeResult([_user_row()]), FakeResult([])])
    with pytest.raises(ValidationError):
        SqlProfileSource(lambda: db).fetch_profile(U)


def test_profile_with_bad_coordinates_is_invalid():
    db = FakeDB([
        FakeResult([_user_row(latitude=123.0)]),
        FakeResult([{"user_id": U, "interest_id": "hiking", "preference_rank": 1}]),
    ])
    with pytest.raises(ValidationError) as exc:
        SqlProfileSource(lambda: db).fetch_profile(U)
    assert exc.value.user_id == U


def test_candidate_source_calls_radius_function_and_skips_malformed_rows():
    db = FakeDB([
        FakeResult([
            {"user_id": A, "latitude": 40.76, "longitude": -73.98, "last_active": None, "distance_km": 1.5},
            {"user_id": B, "latitude": 40.77, "longitude": -73.97, "last_active": None, "distance_km": 2.0},
        ]),
        FakeResult([
            {"user_id": A, "interest_id": "hiking", "preference_rank": 1},
            {"user_id": B, "interest_id": "hiking", "preference_rank": 1},
            {"user_id": B, "interest_id": "chess", "preference_rank": 1},
        ]),
    ])
    out = SqlCandidateSource(lambda: db).fetch_candidates(U, 40.75, -73.99, 25, 21, 35)
    assert [c.user_id for c in out] == [A]
    assert out[0].distance_km == 1.5
    sql, params = db.calls[0]
    assert "get_match_candidates" in sql
    assert params["radius_km"] == 25
    assert (params["age_min"], params["age_max"]) == (21, 35)


def test_recent_matches_reports_the_other_user():
    db = FakeDB([FakeResult([
        {"user_1_id": U, "user_2_id": A, "similarity_score": 0.81, "match_week": "2026-W42"},
        {"user_1_id": B, "user_2_id": U, "similarity_score": None, "match_week": "2026-W40"},
    ])])
    store = SqlMatchStore(lambda: db)
    records = store.recent_matches(U, cycle="2026-W42", lookback_cycles=4)
    assert [(r.candidate_user_id, r.match_cycle, r.score) for r in records] == [(A, "2026-W42", 0.81), (B, "2026-W40", None)]
    assert db.calls[0][1]["cycles"] == ["2026-W42", "2026-W41", "2026-W40", "2026-W39"]


def test_existing_match_ids_with_zero_lookback_skips_query():
    db = FakeDB()
    assert SqlMatchStore(lambda: db).existing_match_ids(U, cycle="2026-W42", lookback_cycles=0) == set()
    assert db.calls == []


def test_persist_is_idempotent_per_pair_and_cycle():
    db = FakeDB([FakeResult(rowcount=1), FakeResult(rowcount=0)])
    store = SqlMatchStore(lambda: db)
    created = store.persist([
        PendingMatch(user_a=U, user_b=A, score=0.9, cycle="2026-W42"),
        PendingMatch(user_a=U, user_b=B, score=0.8, cycle="2026-W42"),
        PendingMatch(user_a=U, user_b=U, score=1.0, cycle="2026-W42"),
    ])
    assert created == 1
    assert len(db.calls) == 2
    sql, params = db.calls[0]
    assert "ON CONFLICT (LEAST(user_1_id, user_2_id), GREATEST(user_1_id, user_2_id), match_week)" in sql
    assert "DO NOTHING" in sql
    assert params["match_week"] == "2026-W42"
    assert db.commits == 1


def test_persist_nothing_opens_no_session():
    def factory():
        raise AssertionError("session should not be opened")

    assert SqlMatchStore(factory).persist([]) == 0


def test_delete_cycle_returns_rowcount():
    db = FakeDB([FakeResult(rowcount=4)])
    assert SqlMatchStore(lambda: db).delete_cycle("2026-W42") == 4
    assert db.calls[0][1] == {"cycle": "2026-W42"}
    assert db.commits == 1


def test_recent_matches_accepts_uppercase_user_id():
    db = FakeDB([FakeResult([
        {"user_1_id": A, "user_2_id": U, "similarity_score": 0.7, "match_week": "2026-W42"},
        {"user_1_id": U, "user_2_id": B, "similarity_score": 0.6, "match_week": "2026-W42"},
    ])])
    store = SqlMatchStore(lambda: db)
    ids = store.existing_match_ids(U.upper(), cycle="2026-W42", lookback_cycles=1)
    assert ids == {A, B}
    assert db.calls[0][1]["user_id"] == U


def test_profile_source_returns_database_form_of_the_id():
    upper = A.upper()
    db = FakeDB([
        FakeResult([_user_row(user_id=A)]),
        FakeResult([{"user_id": A, "interest_id": "hiking", "preference_rank": 1}]),
    ])
    profile = SqlProfileSource(lambda: db).fetch_profile(upper)
    assert profile.user_id == A
    assert db.calls[1][1] == {"user_ids": [A]}


def test_users_at_quota_compares_cycle_count_with_frequency():
    db = FakeDB([FakeResult([{"user_id": A}])])
    store = SqlMatchStore(lambda: db, default_quota=2)
    assert store.users_at_quota([A, B], cycle="2026-W42") == {A}
    sql, params = db.calls[0]
    assert ">= COALESCE(u.match_frequency, :default_quota)" in sql
    assert params == {"user_ids": [A, B], "cycle": "2026-W42", "default_quota": 2}


def test_users_at_quota_skips_query_for_empty_pool():
    db = FakeDB()
    assert SqlMatchStore(lambda: db).users_at_quota([], cycle="2026-W42") == set()
    assert db.calls == []
