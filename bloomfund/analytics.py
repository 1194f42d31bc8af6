"""
Analytics event tracking and reporting.

Events are buffered in an EventQueue and written to the database in batches,
either when the buffer fills up, when the worker flushes, or right before a
report is computed.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, List, Optional

from bloomfund.db import AnalyticsEventRecord, DbClient
from bloomfund.enums import AnalyticsEventType
from bloomfund.errors import ValidationFailedError
from bloomfund.queue import EventQueue

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60
PERIODS = {"7d": 7, "30d": 30, "90d": 90, "all": None}

_COUNTER_EVENTS = {
    AnalyticsEventType.CAMPAIGN_VIEW: "views_count",
    AnalyticsEventType.SOCIAL_SHARE: "shares_count",
}


class AnalyticsService:
    def __init__(
        self,
        db: DbClient,
        queue: EventQueue,
        *,
        batch_size: int = 50,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.queue = queue
        self.batch_size = batch_size
        self._clock = clock

    def track(
        self,
        event_type: AnalyticsEventType | str,
        *,
        user_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
        session_id: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> AnalyticsEventRecord:
        try:
            kind = AnalyticsEventType(event_type)
        except ValueError:
            raise ValidationFailedError([f"Unknown event type {event_type!r}"]) from None

        record = AnalyticsEventRecord(
            event_type=kind.value,
            user_id=user_id,
            campaign_id=campaign_id,
            session_id=session_id,
            data=dict(data or {}),
            timestamp=self._clock(),
        )
        pending = self.queue.push(record.as_dict())

        counter = _COUNTER_EVENTS.get(kind)
        if counter and campaign_id:
            self.db.increment_campaign_counter(campaign_id, counter)

        if pending >= self.batch_size:
            try:
                self.flush()
            except Exception:
                # Events stay queued; the worker retries the flush.
                logger.exception("Analytics flush failed; events re-queued")
        return record

    def flush(self) -> int:
        """Move every buffered event into the database; returns the count written."""
        written = 0
        while True:
            batch = self.queue.pop_batch(self.batch_size)
            if not batch:
                return written
            try:
                events = [AnalyticsEventRecord(**payload) for payload in batch]
                self.db.save_analytics_events(events)
            except Exception:
                self.queue.requeue(batch)
                raise
            written += len(batch)

    def _window(self, period: str) -> Optional[float]:
        if period not in PERIODS:
            raise ValidationFailedError(
                [f"Period must be one of {', '.join(PERIODS)}"], detail="Invalid period"
            )
        days = PERIODS[period]
        return None if days is None else self._clock() - days * DAY_SECONDS

    def campaign_report(self, campaign_id: str, period: str = "30d") -> dict:
        start = self._window(period)
        self.flush()
        events = self.db.list_analytics_events(campaign_id=campaign_id, start=start)
        return summarize_campaign(events)

    def user_report(
        self, user_id: str, start: Optional[float] = None, end: Optional[float] = None
    ) -> dict:
        self.flush()
        return summarize_user(
            self.db.list_analytics_events(user_id=user_id, start=start, end=end)
        )

    def platform_report(
        self, start: Optional[float] = None, end: Optional[float] = None
    ) -> dict:
        self.flush()
        return summarize_platform(self.db.list_analytics_events(start=start, end=end))


def _of_type(events: Iterable[AnalyticsEventRecord], kind: AnalyticsEventType) -> List[AnalyticsEventRecord]:
    return [e for e in events if e.event_type == kind.value]


def summarize_campaign(events: List[AnalyticsEventRecord]) -> dict:
    views = len(_of_type(events, AnalyticsEventType.CAMPAIGN_VIEW))
    shares = len(_of_type(events, AnalyticsEventType.SOCIAL_SHARE))
    donations = _of_type(events, AnalyticsEventType.DONATION)
    total_donated = sum(int(e.data.get("amount") or 0) for e in donations)
    # Anonymous donations share one donor slot.
    donors = {e.user_id or None for e in donations}
    return {
        "views": views,
        "donations": len(donations),
        "total_donated": total_donated,
        "unique_donors": len(donors),
        "shares": shares,
        "conversion_rate": (len(donations) / views * 100) if views else 0.0,
        "average_donation": (total_donated / len(donations)) if donations else 0.0,
    }


def summarize_user(events: List[AnalyticsEventRecord]) -> dict:
    page_views = len(_of_type(events, AnalyticsEventType.PAGE_VIEW))
    interactions = len(_of_type(events, AnalyticsEventType.INTERACTION))
    donations = len(_of_type(events, AnalyticsEventType.DONATION))
    created = len(_of_type(events, AnalyticsEventType.CAMPAIGN_CREATED))
    return {
        "page_views": page_views,
        "interactions": interactions,
        "donations": donations,
        "campaigns_created": created,
        "engagement_score": (
            page_views + interactions * 2 + donations * 5 + created * 10
        ) / 10,
    }


def summarize_platform(events: List[AnalyticsEventRecord]) -> dict:
    users = {e.user_id for e in events if e.user_id}
    counts: dict[str, int] = {}
    for event in events:
        counts[event.event_type] = counts.get(event.event_type, 0) + 1
    return {
        "total_events": len(events),
        "unique_users": len(users),
        "event_types": counts,
        "average_events_per_user": (len(events) / len(users)) if users else 0.0,
    }
