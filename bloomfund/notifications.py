"""
Helpers for writing in-app notifications.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from bloomfund.db import DbClient, NotificationRecord

logger = logging.getLogger(__name__)

DEFAULT_AVATAR_URL = "https://api.dicebear.com/7.x/avataaars/svg?seed={seed}"


def notify(
    db: DbClient,
    user_id: Optional[str],
    kind: str,
    title: str,
    message: str,
    **metadata,
) -> Optional[NotificationRecord]:
    """Create one notification; anonymous recipients are skipped."""
    if not user_id:
        return None
    record = NotificationRecord(
        user_id=user_id,
        type=kind,
        title=title,
        message=message,
        metadata=metadata or None,
    )
    db.create_notification(record)
    logger.debug("Notified %s (%s): %s", user_id, kind, title)
    return record


def notify_many(
    db: DbClient,
    user_ids: Iterable[Optional[str]],
    kind: str,
    title: str,
    message: str,
    **metadata,
) -> int:
    sent = 0
    for user_id in dict.fromkeys(u for u in user_ids if u):
        notify(db, user_id, kind, title, message, **metadata)
        sent += 1
    return sent


def format_amount(cents: int) -> str:
    return f"${cents / 100:,.2f}"
