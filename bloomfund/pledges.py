"""
Pledges: creation, confirmation, reward fulfillment and backer listings.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from bloomfund.analytics import AnalyticsService
from bloomfund.cache import TTLCache, invalidate_campaign
from bloomfund.db import CampaignRecord, DbClient, PledgeRecord
from bloomfund.enums import (
    FULFILLMENT_ORDER,
    AnalyticsEventType,
    CampaignStatus,
    FulfillmentStatus,
    PledgeStatus,
)
from bloomfund.errors import (
    AuthenticationRequiredError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationFailedError,
)
from bloomfund.fees import minimum_pledge, platform_fee, total_charge
from bloomfund.notifications import format_amount, notify
from bloomfund.retry import DEFAULT_ATTEMPTS, with_retry
from bloomfund.schemas import PledgeRequest

logger = logging.getLogger(__name__)

ANONYMOUS_NAME = "Anonymous"
LEADERBOARD_SIZE = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def public_donor_name(pledge: PledgeRecord) -> str:
    if pledge.is_anonymous or not pledge.donor_name:
        return ANONYMOUS_NAME
    return pledge.donor_name


class PledgeService:
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

    def _campaign(self, campaign_id: str) -> CampaignRecord:
        campaign = self._read(self.db.get_campaign, campaign_id)
        if not campaign:
            raise NotFoundError("Campaign not found")
        return campaign

    def _pledge(self, pledge_id: str) -> PledgeRecord:
        pledge = self._read(self.db.get_pledge, pledge_id)
        if not pledge:
            raise NotFoundError("Pledge not found")
        return pledge

    def create_pledge(
        self, campaign_id: str, request: PledgeRequest, user_id: Optional[str] = None
    ) -> PledgeRecord:
        campaign = self._campaign(campaign_id)
        if campaign.status != CampaignStatus.ACTIVE:
            raise ConflictError("Campaign is not accepting pledges")
        if campaign.end_date < self._now().date():
            raise ConflictError("Campaign has ended")

        errors: List[str] = []
        floor = minimum_pledge(campaign.min_contribution)
        if request.amount < floor:
            errors.append(f"Minimum pledge is {format_amount(floor)}")

        fulfillment = None
        if request.reward_tier_id:
            tier = self._read(self.db.get_reward_tier, request.reward_tier_id)
            if not tier or tier.campaign_id != campaign.id:
                errors.append("Reward tier does not belong to this campaign")
            elif request.amount < tier.amount:
                errors.append(f"The {tier.title} reward requires at least {format_amount(tier.amount)}")
            fulfillment = FulfillmentStatus.PENDING
        if errors:
            raise ValidationFailedError(errors)

        pledge = self.db.create_pledge(
            PledgeRecord(
                campaign_id=campaign.id,
                amount=request.amount,
                platform_fee=platform_fee(request.amount),
                total_charge=total_charge(request.amount),
                currency=request.currency.lower(),
                user_id=user_id,
                donor_name=request.donor_name.strip(),
                donor_email=request.donor_email.strip(),
                donor_message=request.donor_message,
                is_anonymous=request.is_anonymous,
                reward_tier_id=request.reward_tier_id,
                fulfillment_status=fulfillment,
            )
        )
        logger.info(
            "Pledge %s of %d created for campaign %s", pledge.id, pledge.amount, campaign.id
        )
        return pledge

    def confirm_pledge(self, pledge_id: str, status: PledgeStatus) -> PledgeRecord:
        """
        Settle a pending pledge once the payment processor reports back.

        Only pending pledges move; a second confirmation is a conflict and
        never credits the campaign twice.
        """
        status = PledgeStatus(status)
        if status == PledgeStatus.PENDING:
            raise ValidationFailedError(["A pledge cannot be confirmed as pending"])
        self._pledge(pledge_id)
        settled = self.db.settle_pledge(pledge_id, status)
        if settled is None:
            raise ConflictError(f"Pledge is already {self._pledge(pledge_id).status.value}")
        pledge = settled.pledge
        if status != PledgeStatus.SUCCEEDED:
            logger.info("Pledge %s marked %s", pledge_id, status.value)
            return pledge

        campaign, reached = settled.campaign, settled.milestones
        goal, funded_before = campaign.funding_goal, settled.funded_before
        invalidate_campaign(self.cache, campaign.id)
        logger.info(
            "Pledge %s succeeded; campaign %s now at %d of %d",
            pledge_id,
            campaign.id,
            campaign.current_funding,
            goal,
        )

        donor = public_donor_name(pledge)
        notify(
            self.db,
            campaign.owner_id,
            "new_pledge",
            "New pledge received",
            f"{donor} pledged {format_amount(pledge.amount)} to {campaign.title}.",
            campaign_id=campaign.id,
            pledge_id=pledge.id,
        )
        for milestone in reached:
            notify(
                self.db,
                campaign.owner_id,
                "milestone_reached",
                "Milestone reached",
                f"{campaign.title} reached the milestone {milestone.title}.",
                campaign_id=campaign.id,
                milestone_id=milestone.id,
            )
        if funded_before < goal <= campaign.current_funding:
            notify(
                self.db,
                campaign.owner_id,
                "campaign_funded",
                "Campaign fully funded",
                f"{campaign.title} reached its goal of {format_amount(goal)}.",
                campaign_id=campaign.id,
            )

        if self.analytics:
            self.analytics.track(
                AnalyticsEventType.DONATION,
                user_id=pledge.user_id,
                campaign_id=campaign.id,
                data={"amount": pledge.amount, "reward_tier_id": pledge.reward_tier_id},
            )
        return pledge

    def update_fulfillment(
        self,
        pledge_id: str,
        status: FulfillmentStatus,
        user_id: Optional[str],
        tracking_number: Optional[str] = None,
    ) -> PledgeRecord:
        if not user_id:
            raise AuthenticationRequiredError("Authentication required")
        pledge = self._pledge(pledge_id)
        campaign = self._campaign(pledge.campaign_id)
        if campaign.owner_id != user_id:
            raise PermissionDeniedError("Only the campaign owner can update fulfillment")
        if not pledge.reward_tier_id:
            raise ConflictError("Pledge has no reward to fulfill")
        if pledge.status != PledgeStatus.SUCCEEDED:
            raise ConflictError("Only successful pledges can be fulfilled")

        target = FulfillmentStatus(status)
        current = pledge.fulfillment_status or FulfillmentStatus.PENDING
        if FULFILLMENT_ORDER.index(target) <= FULFILLMENT_ORDER.index(current):
            raise ConflictError(
                f"Fulfillment cannot move from {current.value} to {target.value}"
            )

        changes = {"fulfillment_status": target}
        if tracking_number:
            changes["tracking_number"] = tracking_number.strip()
        pledge = self.db.update_pledge(pledge_id, **changes)

        message = f"Your reward from {campaign.title} is now {target.value}."
        if pledge.tracking_number:
            message += f" Tracking number: {pledge.tracking_number}."
        notify(
            self.db,
            pledge.user_id,
            "reward_update",
            "Reward update",
            message,
            campaign_id=campaign.id,
            pledge_id=pledge.id,
        )
        return pledge

    def leaderboard(self, campaign_id: str, limit: int = LEADERBOARD_SIZE) -> List[dict]:
        self._campaign(campaign_id)
        pledges = self._read(
            self.db.list_pledges, campaign_id=campaign_id, status=PledgeStatus.SUCCEEDED
        )
        pledges.sort(key=lambda p: p.amount, reverse=True)
        return [
            {
                "amount": p.amount,
                "donor_name": public_donor_name(p),
                "is_anonymous": p.is_anonymous,
                "created_at": p.created_at,
            }
            for p in pledges[:limit]
        ]

    def campaign_stats(self, campaign_id: str) -> dict:
        pledges = self._read(
            self.db.list_pledges, campaign_id=campaign_id, status=PledgeStatus.SUCCEEDED
        )
        return {
            "campaign_id": campaign_id,
            "total_amount": sum(p.amount for p in pledges),
            "backer_count": len(pledges),
        }

    def user_pledges(self, user_id: str) -> List[dict]:
        result = []
        for pledge in self._read(
            self.db.list_pledges, user_id=user_id, status=PledgeStatus.SUCCEEDED
        ):
            item = pledge.as_dict()
            campaign = self._read(self.db.get_campaign, pledge.campaign_id)
            item["campaign"] = (
                {
                    "id": campaign.id,
                    "title": campaign.title,
                    "cover_image": campaign.cover_image,
                    "status": campaign.status.value,
                }
                if campaign
                else None
            )
            tier = (
                self._read(self.db.get_reward_tier, pledge.reward_tier_id)
                if pledge.reward_tier_id
                else None
            )
            item["reward_tier"] = (
                {"id": tier.id, "title": tier.title, "amount": tier.amount} if tier else None
            )
            result.append(item)
        return result

    def campaign_pledges(self, campaign_id: str, user_id: Optional[str]) -> List[dict]:
        """Every pledge of a campaign, with donor contact details, for its owner."""
        if not user_id:
            raise AuthenticationRequiredError("Authentication required")
        campaign = self._campaign(campaign_id)
        if campaign.owner_id != user_id:
            raise PermissionDeniedError("Only the campaign owner can view pledges")
        return [p.as_dict() for p in self._read(self.db.list_pledges, campaign_id=campaign_id)]
