"""
Reconciliation error taxonomy.

Every error carries the platform whose run failed. Any of them aborts that
platform's run with nothing committed; other platforms are unaffected.
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base class for reconciliation failures."""

    def __init__(self, message: str, platform: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.platform = platform

    @property
    def error_class(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {
            "platform": self.platform,
            "error": self.error_class,
            "message": self.message,
        }


class FetchError(ReconciliationError):
    """Obtaining an account set failed (connectivity or bad data)."""

    def __init__(self, message: str, platform: Optional[str] = None, side: Optional[str] = None):
        super().__init__(message, platform)
        self.side = side

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["side"] = self.side
        return data


class ConflictError(ReconciliationError):
    """Open-record guard tripped or a concurrent write was detected. Retryable."""


class NotFoundError(ConflictError):
    """Targeted record is absent or already resolved."""


class StaleRunTimeError(ReconciliationError):
    """
    Run time is not later than history already recorded for a key.

    Not retryable with the same timestamp; the run needs a later ``at``.
    """


class InvariantViolation(ReconciliationError):
    """More than one open record exists for a single key."""


class PersistenceError(ReconciliationError):
    """Database failure while reconciling."""
