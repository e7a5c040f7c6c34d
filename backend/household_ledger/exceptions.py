"""Domain exceptions. The HTTP layer turns these into HTTPException responses."""

from typing import List, Optional


class LedgerError(Exception):
    """Base class for all Household Ledger errors."""


class FileRejectedError(LedgerError):
    """Uploaded file refused before any row is processed (extension, size, empty, unreadable)."""


class MappingError(LedgerError):
    """Column mapping cannot proceed to validation."""

    def __init__(self, message: str, missing_fields: Optional[List[str]] = None):
        super().__init__(message)
        self.missing_fields = missing_fields or []


class CommitError(LedgerError):
    """Commit refused (already committed, throttled)."""


class InvalidRowsError(CommitError):
    """Commit refused because rows still fail validation."""


class StoreError(LedgerError):
    """The backing store rejected a read or write."""


class SessionNotFoundError(LedgerError):
    """Unknown import session, or a session owned by another user."""


class RequestRejected(LedgerError):
    """A request refused with a specific HTTP status (auth, limits, payload, upstream)."""

    def __init__(self, message: str, status_code: int = 400, details: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


class RateLimitedError(RequestRejected):
    def __init__(self, message: str = "Rate limit exceeded."):
        super().__init__(message, status_code=429)


class ChallengeError(RequestRejected):
    """Phone verification challenge is malformed, forged, expired or for someone else."""
