"""
Multi-step campaign creation wizard: per-step validation and normalization.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from bloomfund.db import (
    CampaignRecord,
    MediaRecord,
    MilestoneRecord,
    RewardTierRecord,
    UserRecord,
)
from bloomfund.enums import CampaignStatus, MediaType
from bloomfund.schemas import CampaignDraft

STEPS = ("category", "basics", "media", "goal", "rewards", "milestones", "review")

DEFAULT_OWNER_NAME = "Campaign Owner"


def _blank(value: Optional[str]) -> bool:
    return not (value or "").strip()


def step_index(step: str) -> int:
    try:
        return STEPS.index(step)
    except ValueError:
        raise ValueError(f"Unknown wizard step {step!r}") from None


def progress_percent(step: str) -> float:
    return (step_index(step) + 1) / len(STEPS) * 100


def validate_step(draft: CampaignDraft, step: str, today: Optional[date] = None) -> List[str]:
    """Return the human-readable errors blocking `step`; empty when valid."""
    today = today or date.today()
    step_index(step)
    errors: List[str] = []

    if step == "category":
        if _blank(draft.business_category):
            errors.append("Please select a business category")
    elif step == "basics":
        if _blank(draft.title):
            errors.append("Campaign title is required")
        if _blank(draft.subtitle):
            errors.append("Campaign subtitle is required")
        if _blank(draft.business_name):
            errors.append("Business name is required")
        if _blank(draft.business_description):
            errors.append("Business description is required")
        if _blank(draft.location):
            errors.append("Location is required")
    elif step == "media":
        if not draft.media:
            errors.append("At least one media item is required")
    elif step == "goal":
        if not draft.funding_goal or draft.funding_goal <= 0:
            errors.append("Valid funding goal is required")
        if not draft.min_contribution or draft.min_contribution <= 0:
            errors.append("Valid minimum contribution is required")
        if draft.campaign_deadline <= today:
            errors.append("Campaign deadline must be in the future")
    # rewards, milestones and review are optional steps.
    return errors


def validate_draft(draft: CampaignDraft, today: Optional[date] = None) -> List[str]:
    """Collect the errors of every step before review, in step order."""
    errors: List[str] = []
    for step in STEPS[:-1]:
        errors.extend(validate_step(draft, step, today=today))
    return errors


@dataclass
class WizardPosition:
    step: str
    errors: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def progress(self) -> float:
        return progress_percent(self.step)


def next_step(draft: CampaignDraft, step: str, today: Optional[date] = None) -> WizardPosition:
    """Advance only when the current step validates; otherwise stay with its errors."""
    errors = validate_step(draft, step, today=today)
    if errors:
        return WizardPosition(step=step, errors=errors)
    index = step_index(step)
    return WizardPosition(step=STEPS[min(index + 1, len(STEPS) - 1)])


def previous_step(step: str) -> WizardPosition:
    index = step_index(step)
    return WizardPosition(step=STEPS[max(index - 1, 0)])


@dataclass
class CampaignPlan:
    """Normalized rows ready to be written for a submitted draft."""

    campaign: CampaignRecord
    reward_tiers: List[RewardTierRecord]
    media: List[MediaRecord]
    milestones: List[MilestoneRecord]


def owner_display_name(owner: Optional[UserRecord]) -> str:
    if owner is None:
        return DEFAULT_OWNER_NAME
    if owner.full_name and owner.full_name.strip():
        return owner.full_name.strip()
    if owner.email and owner.email.split("@")[0]:
        return owner.email.split("@")[0]
    return DEFAULT_OWNER_NAME


def build_campaign(
    draft: CampaignDraft,
    owner_id: str,
    owner: Optional[UserRecord] = None,
    today: Optional[date] = None,
) -> CampaignPlan:
    today = today or date.today()
    cover_image = next(
        (item.url for item in draft.media if item.type == MediaType.IMAGE), None
    )
    campaign = CampaignRecord(
        title=draft.title.strip(),
        subtitle=draft.subtitle.strip() or None,
        description=draft.business_description.strip(),
        business_name=draft.business_name.strip(),
        owner_id=owner_id,
        owner_name=owner_display_name(owner),
        owner_avatar=owner.avatar_url if owner else None,
        funding_goal=int(draft.funding_goal),
        min_contribution=int(draft.min_contribution),
        category=draft.business_category.strip().lower(),
        location=draft.location.strip(),
        website=(draft.website or "").strip() or None,
        cover_image=cover_image,
        start_date=today,
        end_date=draft.campaign_deadline,
        status=CampaignStatus.ACTIVE,
    )

    kept_tiers = [
        tier for tier in draft.reward_tiers if tier.amount > 0 and not _blank(tier.title)
    ]
    reward_tiers = [
        RewardTierRecord(
            campaign_id=campaign.id,
            amount=int(tier.amount),
            title=tier.title.strip(),
            description=tier.description.strip() or tier.title.strip(),
            display_order=index,
            estimated_delivery=tier.estimated_delivery,
        )
        for index, tier in enumerate(kept_tiers)
    ]

    media = [
        MediaRecord(
            campaign_id=campaign.id,
            media_type=item.type,
            media_url=item.url,
            caption=item.caption or None,
            display_order=index,
            storage_path=item.storage_path,
        )
        for index, item in enumerate(draft.media)
    ]

    kept_milestones = [
        m for m in draft.milestones if not _blank(m.title) and m.target_amount > 0
    ]
    milestones = [
        MilestoneRecord(
            campaign_id=campaign.id,
            title=m.title.strip(),
            description=m.description.strip() or m.title.strip(),
            target_amount=int(m.target_amount),
            display_order=index,
        )
        for index, m in enumerate(kept_milestones)
    ]

    return CampaignPlan(
        campaign=campaign,
        reward_tiers=reward_tiers,
        media=media,
        milestones=milestones,
    )
