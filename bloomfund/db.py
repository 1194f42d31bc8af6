"""
Database abstraction for Postgres (via SQLAlchemy) and an in-memory test implementation.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import date
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    Float,
    Integer,
    String,
    Text,
    create_engine,
    select,
    update,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from bloomfund.enums import (
    CampaignStatus,
    FulfillmentStatus,
    MediaType,
    PayoutStatus,
    PledgeStatus,
)


def new_id() -> str:
    return uuid.uuid4().hex


def _now() -> float:
    return time.time()


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return dict(value)
    return value


class _Record:
    """Mixin giving dataclass records a plain-dict view."""

    def as_dict(self) -> dict:
        return {f.name: _plain(getattr(self, f.name)) for f in fields(self)}


@dataclass
class UserRecord(_Record):
    id: str
    email: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    bio: Optional[str] = None
    location: Optional[str] = None
    website: Optional[str] = None
    social_links: Optional[dict] = None
    payout_account_id: Optional[str] = None
    created_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)


@dataclass
class CampaignRecord(_Record):
    title: str
    description: str
    business_name: str
    owner_name: str
    funding_goal: int
    category: str
    location: str
    start_date: date
    end_date: date
    owner_id: Optional[str] = None
    subtitle: Optional[str] = None
    owner_avatar: Optional[str] = None
    min_contribution: int = 0
    current_funding: int = 0
    website: Optional[str] = None
    cover_image: Optional[str] = None
    status: CampaignStatus = CampaignStatus.ACTIVE
    views_count: int = 0
    shares_count: int = 0
    payout_status: PayoutStatus = PayoutStatus.NOT_ELIGIBLE
    payout_amount: Optional[int] = None
    payout_requested_at: Optional[float] = None
    payout_reference: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)

    def __post_init__(self):
        self.status = CampaignStatus(self.status)
        self.payout_status = PayoutStatus(self.payout_status)


@dataclass
class RewardTierRecord(_Record):
    campaign_id: str
    amount: int
    title: str
    description: str
    display_order: int = 0
    estimated_delivery: Optional[date] = None
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=_now)


@dataclass
class MediaRecord(_Record):
    campaign_id: str
    media_type: MediaType
    media_url: str
    caption: Optional[str] = None
    display_order: int = 0
    storage_path: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=_now)

    def __post_init__(self):
        self.media_type = MediaType(self.media_type)


@dataclass
class MilestoneRecord(_Record):
    campaign_id: str
    title: str
    description: str
    target_amount: int
    display_order: int = 0
    is_completed: bool = False
    completed_at: Optional[float] = None
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=_now)


@dataclass
class PledgeRecord(_Record):
    campaign_id: str
    amount: int
    platform_fee: int
    total_charge: int
    currency: str = "usd"
    status: PledgeStatus = PledgeStatus.PENDING
    user_id: Optional[str] = None
    donor_name: Optional[str] = None
    donor_email: Optional[str] = None
    donor_message: Optional[str] = None
    is_anonymous: bool = False
    reward_tier_id: Optional[str] = None
    fulfillment_status: Optional[FulfillmentStatus] = None
    tracking_number: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)

    def __post_init__(self):
        self.status = PledgeStatus(self.status)
        if self.fulfillment_status is not None:
            self.fulfillment_status = FulfillmentStatus(self.fulfillment_status)


@dataclass
class NotificationRecord(_Record):
    user_id: str
    type: str
    title: str
    message: str
    metadata: Optional[dict] = None
    is_read: bool = False
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=_now)


@dataclass
class CampaignUpdateRecord(_Record):
    campaign_id: str
    title: str
    content: str
    is_public: bool = True
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=_now)


@dataclass
class AnalyticsEventRecord(_Record):
    event_type: str
    user_id: Optional[str] = None
    campaign_id: Optional[str] = None
    session_id: Optional[str] = None
    data: dict = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    timestamp: float = field(default_factory=_now)


@dataclass
class PledgeSettlement:
    """Result of settling a pending pledge."""

    pledge: PledgeRecord
    campaign: Optional[CampaignRecord] = None
    funded_before: int = 0
    milestones: List[MilestoneRecord] = field(default_factory=list)


class DbClient(Protocol):
    """Interface for database access."""

    def create_user(self, user: UserRecord) -> UserRecord:
        ...

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        ...

    def update_user(self, user_id: str, **changes) -> Optional[UserRecord]:
        ...

    def create_campaign(self, campaign: CampaignRecord) -> CampaignRecord:
        ...

    def get_campaign(self, campaign_id: str) -> Optional[CampaignRecord]:
        ...

    def update_campaign(self, campaign_id: str, **changes) -> Optional[CampaignRecord]:
        ...

    def list_campaigns(
        self,
        *,
        status: Optional[CampaignStatus] = None,
        category: Optional[str] = None,
        owner_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[CampaignRecord]:
        ...

    def increment_campaign_counter(self, campaign_id: str, counter: str) -> None:
        ...

    def create_reward_tiers(self, tiers: List[RewardTierRecord]) -> List[RewardTierRecord]:
        ...

    def get_reward_tier(self, tier_id: str) -> Optional[RewardTierRecord]:
        ...

    def list_reward_tiers(self, campaign_id: str) -> List[RewardTierRecord]:
        ...

    def create_media(self, media: List[MediaRecord]) -> List[MediaRecord]:
        ...

    def list_media(self, campaign_id: str) -> List[MediaRecord]:
        ...

    def create_milestones(self, milestones: List[MilestoneRecord]) -> List[MilestoneRecord]:
        ...

    def list_milestones(self, campaign_id: str) -> List[MilestoneRecord]:
        ...

    def create_pledge(self, pledge: PledgeRecord) -> PledgeRecord:
        ...

    def get_pledge(self, pledge_id: str) -> Optional[PledgeRecord]:
        ...

    def update_pledge(self, pledge_id: str, **changes) -> Optional[PledgeRecord]:
        ...

    def settle_pledge(
        self, pledge_id: str, to_status: PledgeStatus
    ) -> Optional[PledgeSettlement]:
        """
        Move a pending pledge to ``to_status`` in one write.

        A succeeded pledge also credits its campaign and completes every
        milestone the new total reaches. Returns None when the pledge is
        missing or no longer pending.
        """
        ...

    def list_pledges(
        self,
        *,
        campaign_id: Optional[str] = None,
        user_id: Optional[str] = None,
        status: Optional[PledgeStatus] = None,
    ) -> List[PledgeRecord]:
        ...

    def create_notification(self, notification: NotificationRecord) -> NotificationRecord:
        ...

    def get_notification(self, notification_id: str) -> Optional[NotificationRecord]:
        ...

    def list_notifications(self, user_id: str, limit: int = 20) -> List[NotificationRecord]:
        ...

    def mark_notification_read(self, notification_id: str) -> Optional[NotificationRecord]:
        ...

    def create_campaign_update(self, update: CampaignUpdateRecord) -> CampaignUpdateRecord:
        ...

    def list_campaign_updates(
        self, campaign_id: str, *, public_only: bool = True
    ) -> List[CampaignUpdateRecord]:
        ...

    def save_analytics_events(self, events: Iterable[AnalyticsEventRecord]) -> int:
        ...

    def list_analytics_events(
        self,
        *,
        campaign_id: Optional[str] = None,
        user_id: Optional[str] = None,
        start: Optional[float] = None,
        end: Optional[float] = None,
    ) -> List[AnalyticsEventRecord]:
        ...

    def ping(self) -> bool:
        ...


COUNTERS = ("views_count", "shares_count")


def _apply_changes(record: Any, changes: Dict[str, Any]) -> None:
    for key, value in changes.items():
        if not hasattr(record, key):
            raise AttributeError(f"{type(record).__name__} has no field {key!r}")
        setattr(record, key, value)
    if hasattr(record, "__post_init__"):
        record.__post_init__()
    if hasattr(record, "updated_at"):
        record.updated_at = _now()


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self._lock = threading.RLock()
        self.users: Dict[str, UserRecord] = {}
        self.campaigns: Dict[str, CampaignRecord] = {}
        self.reward_tiers: Dict[str, RewardTierRecord] = {}
        self.media: Dict[str, MediaRecord] = {}
        self.milestones: Dict[str, MilestoneRecord] = {}
        self.pledges: Dict[str, PledgeRecord] = {}
        self.notifications: Dict[str, NotificationRecord] = {}
        self.updates: Dict[str, CampaignUpdateRecord] = {}
        self.events: List[AnalyticsEventRecord] = []

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.users.clear()
            self.campaigns.clear()
            self.reward_tiers.clear()
            self.media.clear()
            self.milestones.clear()
            self.pledges.clear()
            self.notifications.clear()
            self.updates.clear()
            self.events.clear()

    def ping(self) -> bool:
        return True

    # Users

    def create_user(self, user: UserRecord) -> UserRecord:
        self.users[user.id] = user
        return user

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        return self.users.get(user_id)

    def update_user(self, user_id: str, **changes) -> Optional[UserRecord]:
        user = self.users.get(user_id)
        if user:
            _apply_changes(user, changes)
        return user

    # Campaigns

    def create_campaign(self, campaign: CampaignRecord) -> CampaignRecord:
        self.campaigns[campaign.id] = campaign
        return campaign

    def get_campaign(self, campaign_id: str) -> Optional[CampaignRecord]:
        return self.campaigns.get(campaign_id)

    def update_campaign(self, campaign_id: str, **changes) -> Optional[CampaignRecord]:
        with self._lock:
            campaign = self.campaigns.get(campaign_id)
            if campaign:
                _apply_changes(campaign, changes)
            return campaign

    def list_campaigns(
        self,
        *,
        status: Optional[CampaignStatus] = None,
        category: Optional[str] = None,
        owner_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[CampaignRecord]:
        items = [
            campaign
            for campaign in self.campaigns.values()
            if (status is None or campaign.status == status)
            and (category is None or campaign.category == category)
            and (owner_id is None or campaign.owner_id == owner_id)
        ]
        items.sort(key=lambda c: c.created_at, reverse=True)
        end = None if limit is None else offset + limit
        return items[offset:end]

    def increment_campaign_counter(self, campaign_id: str, counter: str) -> None:
        if counter not in COUNTERS:
            raise ValueError(f"Unknown counter {counter!r}")
        with self._lock:
            campaign = self.campaigns.get(campaign_id)
            if campaign:
                setattr(campaign, counter, getattr(campaign, counter) + 1)

    # Reward tiers, media, milestones

    def create_reward_tiers(self, tiers: List[RewardTierRecord]) -> List[RewardTierRecord]:
        for tier in tiers:
            self.reward_tiers[tier.id] = tier
        return list(tiers)

    def get_reward_tier(self, tier_id: str) -> Optional[RewardTierRecord]:
        return self.reward_tiers.get(tier_id)

    def list_reward_tiers(self, campaign_id: str) -> List[RewardTierRecord]:
        tiers = [t for t in self.reward_tiers.values() if t.campaign_id == campaign_id]
        return sorted(tiers, key=lambda t: t.display_order)

    def create_media(self, media: List[MediaRecord]) -> List[MediaRecord]:
        for item in media:
            self.media[item.id] = item
        return list(media)

    def list_media(self, campaign_id: str) -> List[MediaRecord]:
        items = [m for m in self.media.values() if m.campaign_id == campaign_id]
        return sorted(items, key=lambda m: m.display_order)

    def create_milestones(self, milestones: List[MilestoneRecord]) -> List[MilestoneRecord]:
        for milestone in milestones:
            self.milestones[milestone.id] = milestone
        return list(milestones)

    def list_milestones(self, campaign_id: str) -> List[MilestoneRecord]:
        items = [m for m in self.milestones.values() if m.campaign_id == campaign_id]
        return sorted(items, key=lambda m: m.display_order)

    # Pledges

    def create_pledge(self, pledge: PledgeRecord) -> PledgeRecord:
        self.pledges[pledge.id] = pledge
        return pledge

    def get_pledge(self, pledge_id: str) -> Optional[PledgeRecord]:
        return self.pledges.get(pledge_id)

    def update_pledge(self, pledge_id: str, **changes) -> Optional[PledgeRecord]:
        with self._lock:
            pledge = self.pledges.get(pledge_id)
            if pledge:
                _apply_changes(pledge, changes)
            return pledge

    def settle_pledge(
        self, pledge_id: str, to_status: PledgeStatus
    ) -> Optional[PledgeSettlement]:
        with self._lock:
            pledge = self.pledges.get(pledge_id)
            if not pledge or pledge.status != PledgeStatus.PENDING:
                return None
            campaign = None
            if to_status == PledgeStatus.SUCCEEDED:
                campaign = self.campaigns.get(pledge.campaign_id)
                if campaign is None:
                    raise LookupError(f"Campaign {pledge.campaign_id} not found")

            now = _now()
            pledge.status = to_status
            pledge.updated_at = now
            if campaign is None:
                return PledgeSettlement(pledge=replace(pledge))

            funded_before = campaign.current_funding
            campaign.current_funding += pledge.amount
            campaign.updated_at = now
            reached = []
            for milestone in self.list_milestones(campaign.id):
                if not milestone.is_completed and milestone.target_amount <= campaign.current_funding:
                    milestone.is_completed = True
                    milestone.completed_at = now
                    reached.append(replace(milestone))
            return PledgeSettlement(
                pledge=replace(pledge),
                campaign=replace(campaign),
                funded_before=funded_before,
                milestones=reached,
            )

    def list_pledges(
        self,
        *,
        campaign_id: Optional[str] = None,
        user_id: Optional[str] = None,
        status: Optional[PledgeStatus] = None,
    ) -> List[PledgeRecord]:
        items = [
            pledge
            for pledge in self.pledges.values()
            if (campaign_id is None or pledge.campaign_id == campaign_id)
            and (user_id is None or pledge.user_id == user_id)
            and (status is None or pledge.status == status)
        ]
        return sorted(items, key=lambda p: p.created_at, reverse=True)

    # Notifications and campaign updates

    def create_notification(self, notification: NotificationRecord) -> NotificationRecord:
        self.notifications[notification.id] = notification
        return notification

    def get_notification(self, notification_id: str) -> Optional[NotificationRecord]:
        return self.notifications.get(notification_id)

    def list_notifications(self, user_id: str, limit: int = 20) -> List[NotificationRecord]:
        items = [n for n in self.notifications.values() if n.user_id == user_id]
        items.sort(key=lambda n: n.created_at, reverse=True)
        return items[:limit]

    def mark_notification_read(self, notification_id: str) -> Optional[NotificationRecord]:
        notification = self.notifications.get(notification_id)
        if notification:
            notification.is_read = True
        return notification

    def create_campaign_update(self, update: CampaignUpdateRecord) -> CampaignUpdateRecord:
        self.updates[update.id] = update
        return update

    def list_campaign_updates(
        self, campaign_id: str, *, public_only: bool = True
    ) -> List[CampaignUpdateRecord]:
        items = [
            u
            for u in self.updates.values()
            if u.campaign_id == campaign_id and (u.is_public or not public_only)
        ]
        return sorted(items, key=lambda u: u.created_at, reverse=True)

    # Analytics

    def save_analytics_events(self, events: Iterable[AnalyticsEventRecord]) -> int:
        batch = list(events)
        with self._lock:
            self.events.extend(batch)
        return len(batch)

    def list_analytics_events(
        self,
        *,
        campaign_id: Optional[str] = None,
        user_id: Optional[str] = None,
        start: Optional[float] = None,
        end: Optional[float] = None,
    ) -> List[AnalyticsEventRecord]:
        return [
            event
            for event in self.events
            if (campaign_id is None or event.campaign_id == campaign_id)
            and (user_id is None or event.user_id == user_id)
            and (start is None or event.timestamp >= start)
            and (end is None or event.timestamp <= end)
        ]


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, index=True)
    full_name = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)
    bio = Column(Text, nullable=True)
    location = Column(String, nullable=True)
    website = Column(String, nullable=True)
    social_links = Column(JSON, nullable=True)
    payout_account_id = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class CampaignRow(Base):
    __tablename__ = "campaigns"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    subtitle = Column(String, nullable=True)
    description = Column(Text, nullable=False)
    business_name = Column(String, nullable=False)
    owner_id = Column(String, nullable=True, index=True)
    owner_name = Column(String, nullable=False)
    owner_avatar = Column(String, nullable=True)
    funding_goal = Column(Integer, nullable=False)
    min_contribution = Column(Integer, nullable=False, default=0)
    current_funding = Column(Integer, nullable=False, default=0)
    category = Column(String, nullable=False, index=True)
    location = Column(String, nullable=False)
    website = Column(String, nullable=True)
    cover_image = Column(String, nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    status = Column(String, nullable=False, index=True)
    views_count = Column(Integer, nullable=False, default=0)
    shares_count = Column(Integer, nullable=False, default=0)
    payout_status = Column(String, nullable=False, default=PayoutStatus.NOT_ELIGIBLE.value)
    payout_amount = Column(Integer, nullable=True)
    payout_requested_at = Column(Float, nullable=True)
    payout_reference = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class RewardTierRow(Base):
    __tablename__ = "reward_tiers"

    id = Column(String, primary_key=True)
    campaign_id = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    display_order = Column(Integer, nullable=False, default=0)
    estimated_delivery = Column(Date, nullable=True)
    created_at = Column(Float, nullable=False)


class MediaRow(Base):
    __tablename__ = "campaign_media"

    id = Column(String, primary_key=True)
    campaign_id = Column(String, nullable=False, index=True)
    media_type = Column(String, nullable=False)
    media_url = Column(String, nullable=False)
    caption = Column(String, nullable=True)
    display_order = Column(Integer, nullable=False, default=0)
    storage_path = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class MilestoneRow(Base):
    __tablename__ = "campaign_milestones"

    id = Column(String, primary_key=True)
    campaign_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    target_amount = Column(Integer, nullable=False)
    display_order = Column(Integer, nullable=False, default=0)
    is_completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)


class PledgeRow(Base):
    __tablename__ = "pledges"

    id = Column(String, primary_key=True)
    campaign_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)
    amount = Column(Integer, nullable=False)
    platform_fee = Column(Integer, nullable=False)
    total_charge = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="usd")
    status = Column(String, nullable=False, index=True)
    donor_name = Column(String, nullable=True)
    donor_email = Column(String, nullable=True)
    donor_message = Column(Text, nullable=True)
    is_anonymous = Column(Boolean, nullable=False, default=False)
    reward_tier_id = Column(String, nullable=True)
    fulfillment_status = Column(String, nullable=True)
    tracking_number = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class NotificationRow(Base):
    __tablename__ = "notifications"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    data = Column("metadata", JSON, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)


class CampaignUpdateRow(Base):
    __tablename__ = "campaign_updates"

    id = Column(String, primary_key=True)
    campaign_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    is_public = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)


class AnalyticsEventRow(Base):
    __tablename__ = "analytics_events"

    id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)
    campaign_id = Column(String, nullable=True, index=True)
    session_id = Column(String, nullable=True)
    data = Column(JSON, nullable=False)
    timestamp = Column(Float, nullable=False, index=True)


# `metadata` is reserved on declarative classes, so the notification column
# attribute is `data` and is renamed on the way in and out.
_ROW_RENAMES = {NotificationRow: {"metadata": "data"}}


class SqlDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlDbClient")
        engine_kwargs: dict = {"future": True, "pool_pre_ping": True}
        if database_url.startswith("sqlite") and ":memory:" in database_url:
            # One shared connection, otherwise every session sees an empty database.
            engine_kwargs.update(
                poolclass=StaticPool, connect_args={"check_same_thread": False}
            )
        else:
            engine_kwargs["pool_recycle"] = 1800
        self.engine = create_engine(database_url, **engine_kwargs)
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    # Generic row <-> record helpers

    @staticmethod
    def _to_record(record_cls, row):
        renames = _ROW_RENAMES.get(type(row), {})
        values = {
            f.name: getattr(row, renames.get(f.name, f.name)) for f in fields(record_cls)
        }
        return record_cls(**values)

    @staticmethod
    def _row_values(row_cls, values: Dict[str, Any]) -> Dict[str, Any]:
        renames = _ROW_RENAMES.get(row_cls, {})
        return {renames.get(key, key): _plain(value) for key, value in values.items()}

    def _insert(self, row_cls, records: List[Any]) -> None:
        with self.Session() as session:
            for record in records:
                session.add(row_cls(**self._row_values(row_cls, record.as_dict())))
            session.commit()

    def _get(self, row_cls, record_cls, key: str):
        with self.Session() as session:
            row = session.get(row_cls, key)
            return self._to_record(record_cls, row) if row else None

    def _update(self, row_cls, record_cls, key: str, changes: Dict[str, Any]):
        with self.Session() as session:
            row = session.get(row_cls, key)
            if not row:
                return None
            record = self._to_record(record_cls, row)
            _apply_changes(record, changes)
            for column, value in self._row_values(row_cls, record.as_dict()).items():
                setattr(row, column, value)
            session.commit()
            return record

    def _select(self, record_cls, stmt) -> list:
        with self.Session() as session:
            rows = session.execute(stmt).scalars().all()
            return [self._to_record(record_cls, row) for row in rows]

    def ping(self) -> bool:
        with self.Session() as session:
            session.execute(select(1))
        return True

    # Users

    def create_user(self, user: UserRecord) -> UserRecord:
        self._insert(UserRow, [user])
        return user

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        return self._get(UserRow, UserRecord, user_id)

    def update_user(self, user_id: str, **changes) -> Optional[UserRecord]:
        return self._update(UserRow, UserRecord, user_id, changes)

    # Campaigns

    def create_campaign(self, campaign: CampaignRecord) -> CampaignRecord:
        self._insert(CampaignRow, [campaign])
        return campaign

    def get_campaign(self, campaign_id: str) -> Optional[CampaignRecord]:
        return self._get(CampaignRow, CampaignRecord, campaign_id)

    def update_campaign(self, campaign_id: str, **changes) -> Optional[CampaignRecord]:
        return self._update(CampaignRow, CampaignRecord, campaign_id, changes)

    def list_campaigns(
        self,
        *,
        status: Optional[CampaignStatus] = None,
        category: Optional[str] = None,
        owner_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[CampaignRecord]:
        stmt = select(CampaignRow)
        if status is not None:
            stmt = stmt.where(CampaignRow.status == _plain(status))
        if category is not None:
            stmt = stmt.where(CampaignRow.category == category)
        if owner_id is not None:
            stmt = stmt.where(CampaignRow.owner_id == owner_id)
        stmt = stmt.order_by(CampaignRow.created_at.desc()).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return self._select(CampaignRecord, stmt)

    def increment_campaign_counter(self, campaign_id: str, counter: str) -> None:
        if counter not in COUNTERS:
            raise ValueError(f"Unknown counter {counter!r}")
        column = getattr(CampaignRow, counter)
        with self.Session() as session:
            session.execute(
                update(CampaignRow)
                .where(CampaignRow.id == campaign_id)
                .values({column: column + 1})
            )
            session.commit()

    # Reward tiers, media, milestones

    def create_reward_tiers(self, tiers: List[RewardTierRecord]) -> List[RewardTierRecord]:
        self._insert(RewardTierRow, tiers)
        return list(tiers)

    def get_reward_tier(self, tier_id: str) -> Optional[RewardTierRecord]:
        return self._get(RewardTierRow, RewardTierRecord, tier_id)

    def list_reward_tiers(self, campaign_id: str) -> List[RewardTierRecord]:
        stmt = (
            select(RewardTierRow)
            .where(RewardTierRow.campaign_id == campaign_id)
            .order_by(RewardTierRow.display_order.asc())
        )
        return self._select(RewardTierRecord, stmt)

    def create_media(self, media: List[MediaRecord]) -> List[MediaRecord]:
        self._insert(MediaRow, media)
        return list(media)

    def list_media(self, campaign_id: str) -> List[MediaRecord]:
        stmt = (
            select(MediaRow)
            .where(MediaRow.campaign_id == campaign_id)
            .order_by(MediaRow.display_order.asc())
        )
        return self._select(MediaRecord, stmt)

    def create_milestones(self, milestones: List[MilestoneRecord]) -> List[MilestoneRecord]:
        self._insert(MilestoneRow, milestones)
        return list(milestones)

    def list_milestones(self, campaign_id: str) -> List[MilestoneRecord]:
        stmt = (
            select(MilestoneRow)
            .where(MilestoneRow.campaign_id == campaign_id)
            .order_by(MilestoneRow.display_order.asc())
        )
        return self._select(MilestoneRecord, stmt)

    # Pledges

    def create_pledge(self, pledge: PledgeRecord) -> PledgeRecord:
        self._insert(PledgeRow, [pledge])
        return pledge

    def get_pledge(self, pledge_id: str) -> Optional[PledgeRecord]:
        return self._get(PledgeRow, PledgeRecord, pledge_id)

    def update_pledge(self, pledge_id: str, **changes) -> Optional[PledgeRecord]:
        return self._update(PledgeRow, PledgeRecord, pledge_id, changes)

    def settle_pledge(
        self, pledge_id: str, to_status: PledgeStatus
    ) -> Optional[PledgeSettlement]:
        now = _now()
        # Leaving the block without commit rolls every step back.
        with self.Session() as session:
            result = session.execute(
                update(PledgeRow)
                .where(
                    PledgeRow.id == pledge_id,
                    PledgeRow.status == PledgeStatus.PENDING.value,
                )
                .values(status=to_status.value, updated_at=now)
            )
            if not result.rowcount:
                session.rollback()
                return None
            pledge_row = session.get(PledgeRow, pledge_id, populate_existing=True)
            pledge = self._to_record(PledgeRecord, pledge_row)
            if to_status != PledgeStatus.SUCCEEDED:
                session.commit()
                return PledgeSettlement(pledge=pledge)

            session.execute(
                update(CampaignRow)
                .where(CampaignRow.id == pledge.campaign_id)
                .values(
                    current_funding=CampaignRow.current_funding + pledge.amount,
                    updated_at=now,
                )
            )
            campaign_row = session.get(CampaignRow, pledge.campaign_id, populate_existing=True)
            if campaign_row is None:
                raise LookupError(f"Campaign {pledge.campaign_id} not found")
            milestone_rows = (
                session.execute(
                    select(MilestoneRow)
                    .where(
                        MilestoneRow.campaign_id == pledge.campaign_id,
                        MilestoneRow.is_completed.is_(False),
                        MilestoneRow.target_amount <= campaign_row.current_funding,
                    )
                    .order_by(MilestoneRow.display_order.asc())
                    .with_for_update()
                )
                .scalars()
                .all()
            )
            for row in milestone_rows:
                row.is_completed = True
                row.completed_at = now
            session.flush()

            campaign = self._to_record(CampaignRecord, campaign_row)
            milestones = [self._to_record(MilestoneRecord, row) for row in milestone_rows]
            session.commit()
        return PledgeSettlement(
            pledge=pledge,
            campaign=campaign,
            funded_before=campaign.current_funding - pledge.amount,
            milestones=milestones,
        )

    def list_pledges(
        self,
        *,
        campaign_id: Optional[str] = None,
        user_id: Optional[str] = None,
        status: Optional[PledgeStatus] = None,
    ) -> List[PledgeRecord]:
        stmt = select(PledgeRow)
        if campaign_id is not None:
            stmt = stmt.where(PledgeRow.campaign_id == campaign_id)
        if user_id is not None:
            stmt = stmt.where(PledgeRow.user_id == user_id)
        if status is not None:
            stmt = stmt.where(PledgeRow.status == status.value)
        stmt = stmt.order_by(PledgeRow.created_at.desc())
        return self._select(PledgeRecord, stmt)

    # Notifications and campaign updates

    def create_notification(self, notification: NotificationRecord) -> NotificationRecord:
        self._insert(NotificationRow, [notification])
        return notification

    def get_notification(self, notification_id: str) -> Optional[NotificationRecord]:
        return self._get(NotificationRow, NotificationRecord, notification_id)

    def list_notifications(self, user_id: str, limit: int = 20) -> List[NotificationRecord]:
        stmt = (
            select(NotificationRow)
            .where(NotificationRow.user_id == user_id)
            .order_by(NotificationRow.created_at.desc())
            .limit(limit)
        )
        return self._select(NotificationRecord, stmt)

    def mark_notification_read(self, notification_id: str) -> Optional[NotificationRecord]:
        return self._update(
            NotificationRow, NotificationRecord, notification_id, {"is_read": True}
        )

    def create_campaign_update(self, update: CampaignUpdateRecord) -> CampaignUpdateRecord:
        self._insert(CampaignUpdateRow, [update])
        return update

    def list_campaign_updates(
        self, campaign_id: str, *, public_only: bool = True
    ) -> List[CampaignUpdateRecord]:
        stmt = select(CampaignUpdateRow).where(CampaignUpdateRow.campaign_id == campaign_id)
        if public_only:
            stmt = stmt.where(CampaignUpdateRow.is_public.is_(True))
        stmt = stmt.order_by(CampaignUpdateRow.created_at.desc())
        return self._select(CampaignUpdateRecord, stmt)

    # Analytics

    def save_analytics_events(self, events: Iterable[AnalyticsEventRecord]) -> int:
        batch = list(events)
        if batch:
            self._insert(AnalyticsEventRow, batch)
        return len(batch)

    def list_analytics_events(
        self,
        *,
        campaign_id: Optional[str] = None,
        user_id: Optional[str] = None,
        start: Optional[float] = None,
        end: Optional[float] = None,
    ) -> List[AnalyticsEventRecord]:
        stmt = select(AnalyticsEventRow)
        if campaign_id is not None:
            stmt = stmt.where(AnalyticsEventRow.campaign_id == campaign_id)
        if user_id is not None:
            stmt = stmt.where(AnalyticsEventRow.user_id == user_id)
        if start is not None:
            stmt = stmt.where(AnalyticsEventRow.timestamp >= start)
        if end is not None:
            stmt = stmt.where(AnalyticsEventRow.timestamp <= end)
        stmt = stmt.order_by(AnalyticsEventRow.timestamp.asc())
        return self._select(AnalyticsEventRecord, stmt)
