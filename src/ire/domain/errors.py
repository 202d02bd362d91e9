from __future__ import annotations


class AppError(Exception):
    """Base app error."""

    http_status = 500


class ValidationError(AppError):
    http_status = 400


class NotFoundError(AppError):
    http_status = 404


class InvalidTransitionError(AppError):
    """A workflow was asked to leave a state through an edge it does not have."""

    http_status = 400


class PersistenceError(AppError):
    http_status = 500


class QuotaExceededError(AppError):
    """Daily or monthly budget for an external API is spent.

    Carries both windows so callers can choose between waiting and manual entry.
    """

    http_status = 429

    def __init__(
        self,
        reason: str,
        daily_current: int,
        daily_limit: int,
        monthly_current: int,
        monthly_limit: int,
    ):
        self.reason = reason
        self.daily_current = daily_current
        self.daily_limit = daily_limit
        self.monthly_current = monthly_current
        self.monthly_limit = monthly_limit
        if reason == "daily_exceeded":
            msg = f"Daily usage limit reached ({daily_current}/{daily_limit})."
        else:
            msg = f"Monthly usage limit reached ({monthly_current}/{monthly_limit})."
        super().__init__(msg)


class UpstreamExtractionError(AppError):
    """External OCR/LLM call failed. ``kind`` is meant for programmatic handling."""

    KINDS = ("missing_credentials", "timeout", "network", "upstream_status", "malformed_response")

    def __init__(self, kind: str, message: str):
        if kind not in self.KINDS:
            raise ValueError(f"Unknown extraction failure kind: {kind}")
        self.kind = kind
        super().__init__(message)

    @property
    def http_status(self) -> int:  # type: ignore[override]
        if self.kind == "timeout":
            return 504
        if self.kind in ("network", "upstream_status"):
            return 502
        return 500


class AtomicIncrementUnavailable(AppError):
    """Raised by a repository whose store cannot upsert-and-increment in one statement."""
