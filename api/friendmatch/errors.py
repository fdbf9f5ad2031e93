"""Error taxonomy for weekly match generation.

Only ``FatalEnumerationError`` aborts a run. Everything else is caught at the
per-user boundary and recorded in the run report under its ``kind``.
"""
from __future__ import annotations


class MatchEngineError(Exception):
    def __init__(self, message: str, *, user_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.user_id = user_id

    @property
    def kind(self) -> str:
        return type(self).__name__


class FatalEnumerationError(MatchEngineError):
    """The list of users to process could not be retrieved."""


class CandidateLookupError(MatchEngineError):
    pass


class ProfileLookupError(CandidateLookupError):
    """The requesting user's own profile could not be loaded."""


class ExclusionLookupError(MatchEngineError):
    pass


class PersistenceError(MatchEngineError):
    pass


class ValidationError(MatchEngineError):
    """Malformed profile data detected before scoring."""


class NoEligibleCandidatesError(MatchEngineError):
    """Empty candidate pool. A normal zero-match outcome, not a failure."""


UNEXPECTED_ERROR_KIND = "UnexpectedError"
