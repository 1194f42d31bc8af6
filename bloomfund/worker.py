"""
Background worker for periodic housekeeping.

Each pass flushes buffered analytics, completes campaigns past their end date,
recomputes payout status and drops expired cache and rate-limit entries.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

from bloomfund.analytics import AnalyticsService
from bloomfund.cache import TTLCache
from bloomfund.campaigns import CampaignService
from bloomfund.config import get_settings
from bloomfund.dependencies import (
    get_analytics_service,
    get_cache,
    get_campaign_service,
    get_payout_service,
    get_rate_limiter,
)
from bloomfund.payouts import PayoutService
from bloomfund.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


def run_once(
    *,
    analytics: Optional[AnalyticsService] = None,
    campaigns: Optional[CampaignService] = None,
    payouts: Optional[PayoutService] = None,
    cache: Optional[TTLCache] = None,
    limiter: Optional[RateLimiter] = None,
) -> Dict[str, Optional[int]]:
    """
    Run every housekeeping task once. A failing task is logged and reported
    as None without stopping the others.
    """
    if analytics is None:
        analytics = get_analytics_service()
    if campaigns is None:
        campaigns = get_campaign_service()
    if payouts is None:
        payouts = get_payout_service()
    if cache is None:
        cache = get_cache()
    if limiter is None:
        limiter = get_rate_limiter()

    tasks: Dict[str, Callable[[], int]] = {
        "analytics_flushed": analytics.flush,
        "campaigns_completed": campaigns.complete_ended_campaigns,
        "payouts_updated": payouts.sweep_statuses,
        "cache_purged": cache.purge_expired,
        "rate_limits_purged": limiter.cleanup,
    }
    results: Dict[str, Optional[int]] = {}
    for name, task in tasks.items():
        try:
            results[name] = task()
        except Exception:
            logger.exception("Worker task %s failed", name)
            results[name] = None
    return results


def run_loop(poll_interval_seconds: float = 60.0) -> None:
    """
    Simple polling loop. Intended to be run under systemd/supervisor.
    """
    logging.basicConfig(level=get_settings().log_level.upper())
    while True:
        results = run_once()
        logger.info("Worker pass finished: %s", results)
        time.sleep(poll_interval_seconds)


if __name__ == "__main__":
    run_loop()
