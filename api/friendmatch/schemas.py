from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class RankedInterest(BaseModel):
    model_config = ConfigDict(frozen=True)

    interest_id: str = Field(min_length=1)
    preference_rank: int = Field(ge=1)


class UserProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1)
    interests: list[RankedInterest] = Field(default_factory=list)
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    last_active: datetime | None = None

    @field_validator("interests")
    @classmethod
    def _distinct_ranks(cls, value: list[RankedInterest]) -> list[RankedInterest]:
        ranks = [i.preference_rank for i in value]
        if len(set(ranks)) != len(ranks):
            raise ValueError("preference ranks must be distinct")
        ids = [i.interest_id for i in value]
        if len(set(ids)) != len(ids):
            raise ValueError("interest ids must be distinct")
        return sorted(value, key=lambda i: i.preference_rank)

    @field_validator("last_active")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def interest_ranks(self) -> dict[str, int]:
        return {i.interest_id: i.preference_rank for i in self.interests}


class CandidateProfile(UserProfile):
    distance_km: float | None = Field(default=None, ge=0)


class MatchingPreferences(BaseModel):
    model_config = ConfigDict(frozen=True)

    radius_km: float = Field(default=50.0, gt=0)
    age_min: int = Field(default=18, ge=0)
    age_max: int = Field(default=100, ge=0)
    match_quota: int = Field(default=2, ge=0)

    @model_validator(mode="after")
    def _age_range(self) -> "MatchingPreferences":
        if self.age_min > self.age_max:
            raise ValueError("age_min must not exceed age_max")
        return self


class MatchingProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    profile: UserProfile
    preferences: MatchingPreferences = Field(default_factory=MatchingPreferences)

    @property
    def user_id(self) -> str:
        return self.profile.user_id


class MatchOut(BaseModel):
    candidate_user_id: str
    overall_score: float
    match_cycle: str
    score_breakdown: dict[str, float]


class UserGenerationResponse(BaseModel):
    user_id: str
    match_cycle: str
    matches: list[MatchOut] = Field(default_factory=list)
    persisted: int = 0
    message: str | None = None
