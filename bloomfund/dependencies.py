"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Header

from bloomfund.analytics import AnalyticsService
from bloomfund.cache import TTLCache
from bloomfund.campaigns import CampaignService
from bloomfund.config import get_settings
from bloomfund.db import DbClient, InMemoryDbClient, SqlDbClient
from bloomfund.errors import AuthenticationRequiredError
from bloomfund.monitoring import RequestMonitor
from bloomfund.payouts import PayoutService
from bloomfund.pledges import PledgeService
from bloomfund.queue import EventQueue, InMemoryEventQueue, RedisEventQueue
from bloomfund.rate_limit import RateLimiter
from bloomfund.storage import InMemoryStorageClient, S3StorageClient, StorageClient

_db_client: DbClient | None = None
_storage_client: StorageClient | None = None
_event_queue: EventQueue | None = None
_cache: TTLCache | None = None
_rate_limiter: RateLimiter | None = None
_analytics: AnalyticsService | None = None
_monitor: RequestMonitor | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so state persists across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = SqlDbClient(settings.database_url)
    return _db_client


def get_storage_client() -> StorageClient:
    global _storage_client
    if _storage_client:
        return _storage_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.storage_bucket:
        _storage_client = InMemoryStorageClient()
    else:
        _storage_client = S3StorageClient(
            bucket=settings.storage_bucket,
            region=settings.storage_region or "",
            endpoint=settings.storage_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            public_base_url=settings.storage_public_base_url,
        )
    return _storage_client


def get_event_queue() -> EventQueue:
    """
    Return a singleton buffer for analytics events.
    """
    global _event_queue
    if _event_queue:
        return _event_queue

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _event_queue = RedisEventQueue(
            url=settings.redis_url,
            queue_key=settings.redis_events_key,
        )
    else:
        _event_queue = InMemoryEventQueue()
    return _event_queue


def get_cache() -> TTLCache:
    global _cache
    if _cache is None:
        _cache = TTLCache(default_ttl=get_settings().cache_ttl_seconds)
    return _cache


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def get_analytics_service() -> AnalyticsService:
    global _analytics
    if _analytics is None:
        _analytics = AnalyticsService(
            get_db_client(),
            get_event_queue(),
            batch_size=get_settings().analytics_batch_size,
        )
    return _analytics


def get_request_monitor() -> RequestMonitor:
    global _monitor
    if _monitor is None:
        _monitor = RequestMonitor(window_size=get_settings().monitoring_window_size)
    return _monitor


# Services are cheap wrappers over the singletons above.


def get_campaign_service() -> CampaignService:
    return CampaignService(
        get_db_client(),
        get_cache(),
        get_analytics_service(),
        retry_attempts=get_settings().retry_attempts,
    )


def get_pledge_service() -> PledgeService:
    return PledgeService(
        get_db_client(),
        get_cache(),
        get_analytics_service(),
        retry_attempts=get_settings().retry_attempts,
    )


def get_payout_service() -> PayoutService:
    return PayoutService(get_db_client(), get_cache())


def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> Optional[str]:
    """Caller identity forwarded by the gateway after authentication."""
    return x_user_id.strip() if x_user_id and x_user_id.strip() else None


def require_payments_secret(
    x_payments_secret: Optional[str] = Header(default=None, alias="X-Payments-Secret"),
) -> None:
    """Only the payment integration may confirm pledges or settle payouts."""
    expected = get_settings().payments_webhook_secret
    if not expected or not x_payments_secret:
        raise AuthenticationRequiredError("Payments secret required")
    if not hmac.compare_digest(x_payments_secret.encode(), expected.encode()):
        raise AuthenticationRequiredError("Invalid payments secret")


def reset_backends() -> None:
    """Drop every singleton so the next request rebuilds them from settings."""
    global _db_client, _storage_client, _event_queue, _cache, _rate_limiter, _analytics, _monitor
    _db_client = None
    _storage_client = None
    _event_queue = None
    _cache = None
    _rate_limiter = None
    _analytics = None
    _monitor = None
