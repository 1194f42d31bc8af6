"""
Fixed-window rate limiting for API routes.
"""

from __future__ import annotations

import hashlib
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import Request, Response

from bloomfund.errors import RateLimitExceededError


@dataclass(frozen=True)
class LimitRule:
    max_requests: int
    window_seconds: float


MINUTE = 60.0
HOUR = 60 * MINUTE

DEFAULT_LIMITS: Dict[str, Dict[str, LimitRule]] = {
    "auth": {
        "signIn": LimitRule(5, 15 * MINUTE),
        "signUp": LimitRule(3, HOUR),
        "passwordReset": LimitRule(3, HOUR),
    },
    "api": {
        "campaigns": LimitRule(100, MINUTE),
        "search": LimitRule(50, MINUTE),
        "upload": LimitRule(10, MINUTE),
        "support": LimitRule(5, HOUR),
    },
    "general": {
        "pageViews": LimitRule(1000, MINUTE),
        "formSubmissions": LimitRule(20, MINUTE),
    },
}

# Reported for actions without a configured rule.
UNLIMITED_REMAINING = 999


@dataclass
class RateDecision:
    allowed: bool
    remaining: int
    reset_at: float


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Counts requests per `<client>:<type>:<action>` key in fixed windows."""

    def __init__(
        self,
        limits: Optional[Dict[str, Dict[str, LimitRule]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.limits = limits or DEFAULT_LIMITS
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def rule_for(self, kind: str, action: str) -> Optional[LimitRule]:
        return self.limits.get(kind, {}).get(action)

    def check(self, identifier: str, kind: str, action: str) -> RateDecision:
        now = self._clock()
        rule = self.rule_for(kind, action)
        if rule is None:
            return RateDecision(True, UNLIMITED_REMAINING, now + MINUTE)

        key = f"{identifier}:{kind}:{action}"
        with self._lock:
            window = self._windows.get(key)
            if window is None or now > window.reset_at:
                window = _Window(count=1, reset_at=now + rule.window_seconds)
                self._windows[key] = window
                return RateDecision(True, rule.max_requests - 1, window.reset_at)

            if window.count >= rule.max_requests:
                return RateDecision(False, 0, window.reset_at)

            window.count += 1
            return RateDecision(True, rule.max_requests - window.count, window.reset_at)

    def reset(self, identifier: str, kind: str, action: str) -> None:
        with self._lock:
            self._windows.pop(f"{identifier}:{kind}:{action}", None)

    def cleanup(self) -> int:
        """Drop expired windows; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, window in self._windows.items() if now > window.reset_at]
            for key in expired:
                del self._windows[key]
            return len(expired)

    def snapshot(self) -> Dict[str, dict]:
        with self._lock:
            result = {}
            for key, window in self._windows.items():
                _, kind, action = key.rsplit(":", 2)
                rule = self.rule_for(kind, action)
                remaining = (
                    max(0, rule.max_requests - window.count) if rule else UNLIMITED_REMAINING
                )
                result[key] = {
                    "count": window.count,
                    "reset_at": window.reset_at,
                    "remaining": remaining,
                }
            return result


def client_identifier(request: Request) -> str:
    """Stable hash of the caller's user agent and forwarded addresses."""
    raw = "".join(
        [
            request.headers.get("user-agent", ""),
            request.headers.get("x-forwarded-for", ""),
            request.headers.get("x-real-ip", ""),
        ]
    )
    if not raw and request.client:
        raw = request.client.host
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def rate_limit(kind: str, action: str):
    """
    FastAPI dependency factory enforcing one rate-limit rule on a route.

    Raises RateLimitExceededError when the window is exhausted and sets the
    remaining/reset headers on successful responses.
    """

    def dependency(request: Request, response: Response) -> None:
        # Imported lazily to avoid a cycle with the dependency wiring module.
        from bloomfund.config import get_settings
        from bloomfund.dependencies import get_rate_limiter

        if not get_settings().rate_limit_enabled:
            return
        limiter = get_rate_limiter()
        decision = limiter.check(client_identifier(request), kind, action)
        if not decision.allowed:
            retry_after = max(1, int(decision.reset_at - time.time() + 0.999))
            raise RateLimitExceededError(decision.reset_at, retry_after)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        response.headers["X-RateLimit-Reset"] = str(int(decision.reset_at))

    return dependency
