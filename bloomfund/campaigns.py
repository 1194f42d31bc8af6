"""
Campaign browsing, creation and owner management.
"""

from __future__ import annotations

import json
import logging
import math
from datetime import date, datetime, time as dt_time, timezone
from typing import Callable, List, Optional

from bloomfund.analytics import AnalyticsService
from bloomfund.cache import (
    CAMPAIGN_LISTS_PREFIX,
    PLATFORM_STATS_KEY,
    TTLCache,
    campaign_key,
    invalidate_campaign,
)
from bloomfund.db import CampaignRecord, CampaignUpdateRecord, DbClient
from bloomfund.enums import AnalyticsEventType, CampaignStatus, PledgeStatus
from bloomfund.errors import (
    AuthenticationRequiredError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationFailedError,
)
from bloomfund.notifications import notify_many
from bloomfund.retry import DEFAULT_ATTEMPTS, with_retry
from bloomfund.schemas import CampaignDraft, CampaignPatch, CampaignSearchParams
from bloomfund.wizard import build_campaign, validate_draft

logger = logging.getLogger(__name__)

ALL_CATEGORIES = "all categories"
DAY_SECONDS = 24 * 60 * 60

EDITABLE_FIELDS = ("title", "subtitle", "description", "website", "cover_image", "location")
CANCELLABLE = (CampaignStatus.DRAFT, CampaignStatus.ACTIVE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _midnight(day: date) -> datetime:
    return datetime.combine(day, dt_time.min, tzinfo=timezone.utc)


def days_remaining(end_date: date, now: Optional[datetime] = None) -> int:
    now = now or _utcnow()
    seconds = (_midnight(end_date) - now).total_seconds()
    return max(0, math.ceil(seconds / DAY_SECONDS))


def funding_percentage(current_funding: int, funding_goal: int) -> int:
    if funding_goal <= 0:
        return 0
    return min(int(current_funding * 100 / funding_goal + 0.5), 100)


def funding_progress(campaign: CampaignRecord) -> float:
    return campaign.current_funding / campaign.funding_goal if campaign.funding_goal else 0.0


def _parse_status(status: str) -> CampaignStatus:
    try:
        return CampaignStatus(status)
    except ValueError:
        raise ValidationFailedError([f"Unknown status {status!r}"]) from None


class CampaignService:
    def __init__(
        self,
        db: DbClient,
        cache: TTLCache,
        analytics: Optional[AnalyticsService] = None,
        *,
        retry_attempts: int = DEFAULT_ATTEMPTS,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.cache = cache
        self.analytics = analytics
        self.retry_attempts = retry_attempts
        self._now = now

    def _read(self, fn, *args, **kwargs):
        return with_retry(fn, *args, attempts=self.retry_attempts, **kwargs)

    def _today(self) -> date:
        return self._now().date()

    def get_campaign(self, campaign_id: str) -> CampaignRecord:
        campaign = self._read(self.db.get_campaign, campaign_id)
        if not campaign:
            raise NotFoundError("Campaign not found")
        return campaign

    def require_owner(self, campaign_id: str, user_id: Optional[str]) -> CampaignRecord:
        if not user_id:
            raise AuthenticationRequiredError("Authentication required")
        campaign = self.get_campaign(campaign_id)
        if campaign.owner_id != user_id:
            raise PermissionDeniedError("Only the campaign owner can do this")
        return campaign

    # Reads

    def list_campaigns(
        self,
        *,
        status: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> List[dict]:
        campaign_status = _parse_status(status) if status else None
        key = f"{CAMPAIGN_LISTS_PREFIX}list:{status}:{category}:{limit}:{offset}"

        def load() -> List[dict]:
            campaigns = self._read(
                self.db.list_campaigns,
                status=campaign_status,
                category=category,
                limit=limit,
                offset=offset,
            )
            return [c.as_dict() for c in campaigns]

        return self.cache.get_or_load(key, load)

    def get_campaign_detail(self, campaign_id: str) -> dict:
        def load() -> Optional[dict]:
            campaign = self._read(self.db.get_campaign, campaign_id)
            if not campaign:
                return None
            backers = self._read(
                self.db.list_pledges, campaign_id=campaign_id, status=PledgeStatus.SUCCEEDED
            )
            detail = campaign.as_dict()
            detail["reward_tiers"] = [
                t.as_dict() for t in self._read(self.db.list_reward_tiers, campaign_id)
            ]
            detail["campaign_media"] = [
                m.as_dict() for m in self._read(self.db.list_media, campaign_id)
            ]
            detail["campaign_milestones"] = [
                m.as_dict() for m in self._read(self.db.list_milestones, campaign_id)
            ]
            detail["total_backers"] = len(backers)
            detail["days_remaining"] = days_remaining(campaign.end_date, self._now())
            detail["funding_percentage"] = funding_percentage(
                campaign.current_funding, campaign.funding_goal
            )
            return detail

        detail = self.cache.get_or_load(campaign_key(campaign_id), load)
        if detail is None:
            raise NotFoundError("Campaign not found")
        return detail

    def search(
        self, params: CampaignSearchParams, user_id: Optional[str] = None
    ) -> List[dict]:
        key = CAMPAIGN_LISTS_PREFIX + "search:" + json.dumps(
            params.model_dump(), sort_keys=True
        )
        status = None if params.status == "all" else _parse_status(params.status)

        def load() -> List[dict]:
            campaigns = self._read(self.db.list_campaigns, status=status)
            if params.query:
                term = params.query.strip().lower()
                campaigns = [
                    c
                    for c in campaigns
                    if term in c.title.lower()
                    or term in c.description.lower()
                    or term in c.business_name.lower()
                ]
            if params.category and params.category.lower() != ALL_CATEGORIES:
                campaigns = [c for c in campaigns if c.category == params.category.lower()]
            campaigns.sort(
                key=lambda c: getattr(c, params.sort_by),
                reverse=params.sort_order == "desc",
            )
            page = campaigns[params.offset : params.offset + params.limit]
            return [c.as_dict() for c in page]

        results = self.cache.get_or_load(key, load)
        if self.analytics and params.query:
            self.analytics.track(
                AnalyticsEventType.SEARCH,
                user_id=user_id,
                data={"query": params.query, "results": len(results)},
            )
        return results

    def recommended(self, current_campaign_id: Optional[str] = None, limit: int = 3) -> List[dict]:
        campaigns = self._read(self.db.list_campaigns, status=CampaignStatus.ACTIVE)
        campaigns = [c for c in campaigns if c.id != current_campaign_id]
        campaigns.sort(key=funding_progress, reverse=True)
        return [c.as_dict() for c in campaigns[:limit]]

    def user_campaigns(self, user_id: str) -> List[dict]:
        return [c.as_dict() for c in self._read(self.db.list_campaigns, owner_id=user_id)]

    def platform_stats(self) -> dict:
        def load() -> dict:
            active = self._read(self.db.list_campaigns, status=CampaignStatus.ACTIVE)
            succeeded = self._read(self.db.list_pledges, status=PledgeStatus.SUCCEEDED)
            return {
                "total_campaigns": len(active),
                "total_raised": sum(p.amount for p in succeeded),
                "total_backers": len(succeeded),
            }

        return self.cache.get_or_load(PLATFORM_STATS_KEY, load)

    # Writes

    def create_campaign(self, draft: CampaignDraft, owner_id: Optional[str]) -> dict:
        if not owner_id:
            raise AuthenticationRequiredError("You must be signed in to create a campaign.")
        errors = validate_draft(draft, today=self._today())
        if errors:
            raise ValidationFailedError(errors)

        owner = self._read(self.db.get_user, owner_id)
        plan = build_campaign(draft, owner_id, owner=owner, today=self._today())
        campaign = self.db.create_campaign(plan.campaign)
        if plan.reward_tiers:
            self.db.create_reward_tiers(plan.reward_tiers)
        if plan.media:
            self.db.create_media(plan.media)
        if plan.milestones:
            self.db.create_milestones(plan.milestones)
        logger.info(
            "Campaign %s created by %s (%d tiers, %d media, %d milestones)",
            campaign.id,
            owner_id,
            len(plan.reward_tiers),
            len(plan.media),
            len(plan.milestones),
        )

        invalidate_campaign(self.cache, campaign.id)
        if self.analytics:
            self.analytics.track(
                AnalyticsEventType.CAMPAIGN_CREATED,
                user_id=owner_id,
                campaign_id=campaign.id,
                data={"category": campaign.category, "funding_goal": campaign.funding_goal},
            )
        return self.get_campaign_detail(campaign.id)

    def update_campaign(
        self, campaign_id: str, user_id: Optional[str], patch: CampaignPatch
    ) -> dict:
        campaign = self.require_owner(campaign_id, user_id)
        changes = {
            name: value
            for name, value in patch.model_dump(exclude_unset=True).items()
            if name in EDITABLE_FIELDS and value is not None
        }
        if patch.status == CampaignStatus.CANCELLED.value:
            if campaign.status not in CANCELLABLE:
                raise ConflictError(f"A {campaign.status.value} campaign cannot be cancelled")
            changes["status"] = CampaignStatus.CANCELLED
        if not changes:
            return self.get_campaign_detail(campaign_id)

        self.db.update_campaign(campaign_id, **changes)
        invalidate_campaign(self.cache, campaign_id)
        logger.info("Campaign %s updated: %s", campaign_id, sorted(changes))
        return self.get_campaign_detail(campaign_id)

    def post_update(
        self,
        campaign_id: str,
        user_id: Optional[str],
        *,
        title: str,
        content: str,
        is_public: bool = True,
    ) -> dict:
        campaign = self.require_owner(campaign_id, user_id)
        update = self.db.create_campaign_update(
            CampaignUpdateRecord(
                campaign_id=campaign_id,
                title=title.strip(),
                content=content.strip(),
                is_public=is_public,
            )
        )
        if is_public:
            backers = self._read(
                self.db.list_pledges, campaign_id=campaign_id, status=PledgeStatus.SUCCEEDED
            )
            notify_many(
                self.db,
                (p.user_id for p in backers),
                "campaign_update",
                f"New update from {campaign.title}",
                update.title,
                campaign_id=campaign_id,
                update_id=update.id,
            )
        return update.as_dict()

    def list_updates(self, campaign_id: str) -> List[dict]:
        self.get_campaign(campaign_id)
        return [u.as_dict() for u in self._read(self.db.list_campaign_updates, campaign_id)]

    def complete_ended_campaigns(self) -> int:
        """Mark active campaigns whose end date has passed as completed."""
        today = self._today()
        completed = 0
        for campaign in self.db.list_campaigns(status=CampaignStatus.ACTIVE):
            if campaign.end_date < today:
                self.db.update_campaign(campaign.id, status=CampaignStatus.COMPLETED)
                invalidate_campaign(self.cache, campaign.id)
                completed += 1
        if completed:
            logger.info("Completed %d ended campaigns", completed)
        return completed
