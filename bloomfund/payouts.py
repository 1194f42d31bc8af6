"""
Payout policy and payout requests for campaign owners.

A successful campaign can claim its funds starting 7 days after its end date
and for 30 days after that.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from datetime import date, datetime, time as dt_time, timezone
from typing import Callable, Optional

from bloomfund.cache import TTLCache, invalidate_campaign
from bloomfund.db import CampaignRecord, DbClient
from bloomfund.enums import CampaignStatus, PayoutStatus
from bloomfund.errors import (
    AuthenticationRequiredError,
    ConflictError,
    NotFoundError,
    PayoutAccountRequiredError,
    PayoutNotEligibleError,
    PermissionDeniedError,
    ValidationFailedError,
)
from bloomfund.notifications import format_amount, notify

logger = logging.getLogger(__name__)

DAYS_AFTER_CAMPAIGN_END = 7
CLAIM_WINDOW_DAYS = 30
MINIMUM_GOAL_REQUIRED = True

DAY_SECONDS = 24 * 60 * 60

# A request in one of these states owns the payout; the sweep leaves it alone.
ACTIVE_REQUEST_STATES = (
    PayoutStatus.REQUESTED,
    PayoutStatus.PROCESSING,
    PayoutStatus.PAID,
)

_SETTLE_FROM = {
    PayoutStatus.PROCESSING: (PayoutStatus.REQUESTED,),
    PayoutStatus.PAID: (PayoutStatus.REQUESTED, PayoutStatus.PROCESSING),
    PayoutStatus.FAILED: (PayoutStatus.REQUESTED, PayoutStatus.PROCESSING),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def days_since_end(end_date: date, now: datetime) -> int:
    end = datetime.combine(end_date, dt_time.min, tzinfo=timezone.utc)
    return math.floor((now - end).total_seconds() / DAY_SECONDS)


@dataclass
class PayoutEligibility:
    eligible: bool
    reason: Optional[str] = None


def check_payout_eligibility(
    campaign: CampaignRecord, now: Optional[datetime] = None
) -> PayoutEligibility:
    """Return eligibility, or the first rule the campaign fails."""
    now = now or _utcnow()
    elapsed = days_since_end(campaign.end_date, now)

    if campaign.status != CampaignStatus.COMPLETED and elapsed < 0:
        return PayoutEligibility(False, "Campaign has not ended")
    if elapsed < DAYS_AFTER_CAMPAIGN_END:
        return PayoutEligibility(
            False, f"Payout available in {DAYS_AFTER_CAMPAIGN_END - elapsed} days"
        )
    if elapsed > DAYS_AFTER_CAMPAIGN_END + CLAIM_WINDOW_DAYS:
        return PayoutEligibility(False, "Payout window has expired")
    if MINIMUM_GOAL_REQUIRED and campaign.current_funding < campaign.funding_goal:
        return PayoutEligibility(False, "Campaign did not reach funding goal")
    return PayoutEligibility(True)


def payout_days_remaining(end_date: date, now: Optional[datetime] = None) -> int:
    now = now or _utcnow()
    window = DAYS_AFTER_CAMPAIGN_END + CLAIM_WINDOW_DAYS
    return max(0, window - days_since_end(end_date, now))


class PayoutService:
    def __init__(
        self,
        db: DbClient,
        cache: Optional[TTLCache] = None,
        *,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.cache = cache
        self._now = now

    def _campaign(self, campaign_id: str) -> CampaignRecord:
        campaign = self.db.get_campaign(campaign_id)
        if not campaign:
            raise NotFoundError("Campaign not found")
        return campaign

    def _owned_campaign(self, campaign_id: str, user_id: Optional[str]) -> CampaignRecord:
        if not user_id:
            raise AuthenticationRequiredError("Authentication required")
        campaign = self._campaign(campaign_id)
        if campaign.owner_id != user_id:
            raise PermissionDeniedError("Unauthorized")
        return campaign

    def _invalidate(self, campaign_id: str) -> None:
        if self.cache is not None:
            invalidate_campaign(self.cache, campaign_id)

    def eligibility(self, campaign_id: str, user_id: Optional[str]) -> dict:
        campaign = self._owned_campaign(campaign_id, user_id)
        now = self._now()
        result = check_payout_eligibility(campaign, now)
        return {
            "campaign_id": campaign.id,
            "eligible": result.eligible,
            "reason": result.reason,
            "days_remaining": payout_days_remaining(campaign.end_date, now),
            "payout_status": campaign.payout_status,
            "payout_amount": campaign.payout_amount or campaign.current_funding,
        }

    def request_payout(self, campaign_id: str, user_id: Optional[str]) -> dict:
        campaign = self._owned_campaign(campaign_id, user_id)
        if campaign.payout_status in ACTIVE_REQUEST_STATES:
            raise ConflictError(f"Payout already {campaign.payout_status.value}")

        result = check_payout_eligibility(campaign, self._now())
        if not result.eligible:
            raise PayoutNotEligibleError(result.reason or "Campaign is not eligible for payout")

        owner = self.db.get_user(user_id)
        if not owner or not owner.payout_account_id:
            raise PayoutAccountRequiredError()

        updated = self.db.update_campaign(
            campaign.id,
            payout_status=PayoutStatus.REQUESTED,
            payout_amount=campaign.current_funding,
            payout_requested_at=time.time(),
        )
        self._invalidate(campaign.id)
        logger.info(
            "Payout of %s requested for campaign %s", updated.payout_amount, campaign.id
        )
        notify(
            self.db,
            campaign.owner_id,
            "payout_requested",
            "Payout requested",
            f"Your payout of {format_amount(updated.payout_amount)} for "
            f"{campaign.title} has been requested.",
            campaign_id=campaign.id,
        )
        return {
            "campaign_id": campaign.id,
            "payout_status": updated.payout_status,
            "payout_amount": updated.payout_amount,
            "payout_reference": updated.payout_reference,
            "message": "Payout request submitted successfully",
        }

    def settle_payout(
        self, campaign_id: str, status: str, reference: Optional[str] = None
    ) -> dict:
        """Record the processor's progress on a requested payout."""
        try:
            target = PayoutStatus(status)
        except ValueError:
            raise ValidationFailedError([f"Unknown payout status {status!r}"]) from None
        if target not in _SETTLE_FROM:
            raise ValidationFailedError([f"Cannot settle a payout as {target.value}"])

        campaign = self._campaign(campaign_id)
        if campaign.payout_status not in _SETTLE_FROM[target]:
            raise ConflictError(
                f"Cannot move payout from {campaign.payout_status.value} to {target.value}"
            )

        changes = {"payout_status": target}
        if reference:
            changes["payout_reference"] = reference
        updated = self.db.update_campaign(campaign.id, **changes)
        self._invalidate(campaign.id)
        logger.info("Payout for campaign %s is now %s", campaign.id, target.value)

        if target in (PayoutStatus.PAID, PayoutStatus.FAILED):
            title = "Payout sent" if target == PayoutStatus.PAID else "Payout failed"
            notify(
                self.db,
                campaign.owner_id,
                f"payout_{target.value}",
                title,
                f"Payout for {campaign.title}: {target.value}.",
                campaign_id=campaign.id,
            )
        return {
            "campaign_id": campaign.id,
            "payout_status": updated.payout_status,
            "payout_amount": updated.payout_amount,
            "payout_reference": updated.payout_reference,
        }

    def sweep_statuses(self) -> int:
        """Recompute payout status for ended campaigns; returns how many changed."""
        now = self._now()
        changed = 0
        for status in (CampaignStatus.ACTIVE, CampaignStatus.COMPLETED):
            for campaign in self.db.list_campaigns(status=status):
                if campaign.payout_status in ACTIVE_REQUEST_STATES:
                    continue
                if campaign.payout_status == PayoutStatus.FAILED:
                    continue
                elapsed = days_since_end(campaign.end_date, now)
                if elapsed > DAYS_AFTER_CAMPAIGN_END + CLAIM_WINDOW_DAYS:
                    target = PayoutStatus.EXPIRED
                elif check_payout_eligibility(campaign, now).eligible:
                    target = PayoutStatus.ELIGIBLE
                else:
                    target = PayoutStatus.NOT_ELIGIBLE
                if target == campaign.payout_status:
                    continue

                self.db.update_campaign(campaign.id, payout_status=target)
                self._invalidate(campaign.id)
                changed += 1
                if target == PayoutStatus.ELIGIBLE:
                    notify(
                        self.db,
                        campaign.owner_id,
                        "payout_eligible",
                        "Payout available",
                        f"{campaign.title} can now request its payout of "
                        f"{format_amount(campaign.current_funding)}.",
                        campaign_id=campaign.id,
                    )
        if changed:
            logger.info("Payout sweep updated %d campaigns", changed)
        return changed
