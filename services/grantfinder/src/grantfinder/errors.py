from __future__ import annotations


class GrantFinderError(Exception):
    """Base class for errors raised by the recommendation engine."""


class FilterValidationError(GrantFinderError, ValueError):
    """A filter spec or page request is malformed. Raised before any I/O."""


class TransientBackendError(GrantFinderError):
    """A ledger write or candidate fetch failed; the caller may retry."""

    retryable = True


class DataQualityError(GrantFinderError, ValueError):
    """A single grant carries scoring attributes that cannot be interpreted."""

    def __init__(self, grant_id: str, reason: str) -> None:
        super().__init__(f"grant {grant_id}: {reason}")
        self.grant_id = grant_id
        self.reason = reason
