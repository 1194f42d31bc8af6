"""
Domain errors raised by the services and rendered by the API.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


class BloomFundError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500

    def __init__(self, detail: str, *, errors: Optional[list[str]] = None):
        super().__init__(detail)
        self.detail = detail
        self.errors = errors

    def as_dict(self) -> dict:
        payload: dict = {"detail": self.detail}
        if self.errors:
            payload["errors"] = list(self.errors)
        return payload

    def headers(self) -> Optional[dict[str, str]]:
        return None


class NotFoundError(BloomFundError):
    status_code = 404


class AuthenticationRequiredError(BloomFundError):
    status_code = 401


class PermissionDeniedError(BloomFundError):
    status_code = 403


class ConflictError(BloomFundError):
    status_code = 409


class ValidationFailedError(BloomFundError):
    status_code = 400

    def __init__(self, errors: list[str], detail: str = "Validation failed"):
        super().__init__(detail, errors=errors)


class PayoutNotEligibleError(BloomFundError):
    status_code = 400


class PayoutAccountRequiredError(BloomFundError):
    status_code = 400

    def __init__(self):
        super().__init__("Payout account required")
        self.action = "setup_payout_account"

    def as_dict(self) -> dict:
        return {
            "detail": self.detail,
            "action": self.action,
            "message": "You need to set up your payout account to receive payouts",
        }


class RateLimitExceededError(BloomFundError):
    status_code = 429

    def __init__(self, reset_at: float, retry_after: int):
        super().__init__("Too many requests. Please try again later.")
        self.reset_at = reset_at
        self.retry_after = retry_after

    def as_dict(self) -> dict:
        return {
            "detail": self.detail,
            "error": "Rate limit exceeded",
            "resetTime": _iso(self.reset_at),
        }

    def headers(self) -> Optional[dict[str, str]]:
        return {
            "Retry-After": str(self.retry_after),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": _iso(self.reset_at),
        }


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()
