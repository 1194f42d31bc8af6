"""
Pydantic schemas for the BloomFund API.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Literal, Optional

from pydantic import BaseModel, Field

from bloomfund.enums import (
    AnalyticsEventType,
    FulfillmentStatus,
    MediaType,
    PayoutStatus,
    PledgeStatus,
)


def _default_deadline() -> date:
    return date.today() + timedelta(days=30)


class RewardTierDraft(BaseModel):
    amount: int = 0
    title: str = ""
    description: str = ""
    image: Optional[str] = None
    estimated_delivery: Optional[date] = None


class MilestoneDraft(BaseModel):
    title: str = ""
    description: str = ""
    target_amount: int = 0


class MediaDraft(BaseModel):
    type: MediaType
    url: str
    caption: Optional[str] = None
    storage_path: Optional[str] = None


class CampaignDraft(BaseModel):
    """Everything the creation wizard collects, in integer cents."""

    title: str = ""
    subtitle: str = ""
    business_name: str = ""
    business_description: str = ""
    business_category: str = ""
    location: str = ""
    website: Optional[str] = None
    funding_goal: int = 500_000
    min_contribution: int = 1_000
    campaign_deadline: date = Field(default_factory=_default_deadline)
    reward_tiers: list[RewardTierDraft] = Field(default_factory=list)
    milestones: list[MilestoneDraft] = Field(default_factory=list)
    media: list[MediaDraft] = Field(default_factory=list)


WizardStep = Literal[
    "category", "basics", "media", "goal", "rewards", "milestones", "review"
]


class WizardStepRequest(BaseModel):
    step: WizardStep
    draft: CampaignDraft
    direction: Literal["stay", "next", "previous"] = "stay"


class WizardStepResponse(BaseModel):
    step: str
    valid: bool
    errors: list[str]
    progress_percent: float


class CampaignPatch(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    subtitle: Optional[str] = None
    description: Optional[str] = None
    website: Optional[str] = None
    cover_image: Optional[str] = None
    location: Optional[str] = None
    status: Optional[Literal["cancelled"]] = None


class CampaignSearchParams(BaseModel):
    query: Optional[str] = None
    category: Optional[str] = None
    status: str = "active"
    sort_by: Literal[
        "created_at", "funding_goal", "current_funding", "end_date", "title"
    ] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"
    limit: int = Field(default=12, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class CampaignListResponse(BaseModel):
    campaigns: list[dict]


class CampaignDetailResponse(BaseModel):
    campaign: dict


class PlatformStatsResponse(BaseModel):
    total_campaigns: int
    total_raised: int
    total_backers: int


class CampaignUpdatePayload(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1)
    is_public: bool = True


class PledgeRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Pledge amount in cents")
    currency: str = Field(default="usd", min_length=3, max_length=3)
    donor_name: str = Field(..., min_length=1, max_length=200)
    donor_email: str = Field(..., min_length=3, max_length=320)
    donor_message: Optional[str] = Field(default=None, max_length=1000)
    is_anonymous: bool = False
    reward_tier_id: Optional[str] = None


class PledgeResponse(BaseModel):
    pledge: dict


class PledgeConfirmRequest(BaseModel):
    status: Literal["succeeded", "failed", "cancelled"]

    def as_status(self) -> PledgeStatus:
        return PledgeStatus(self.status)


class FulfillmentUpdateRequest(BaseModel):
    status: FulfillmentStatus
    tracking_number: Optional[str] = Field(default=None, max_length=100)


class LeaderboardEntry(BaseModel):
    amount: int
    donor_name: str
    is_anonymous: bool
    created_at: float


class LeaderboardResponse(BaseModel):
    entries: list[LeaderboardEntry]


class CampaignStatsResponse(BaseModel):
    campaign_id: str
    total_amount: int
    backer_count: int


class PledgeListResponse(BaseModel):
    pledges: list[dict]


class PayoutEligibilityResponse(BaseModel):
    campaign_id: str
    eligible: bool
    reason: Optional[str] = None
    days_remaining: int
    payout_status: PayoutStatus
    payout_amount: int


class PayoutSettleRequest(BaseModel):
    status: Literal["processing", "paid", "failed"]
    reference: Optional[str] = None


class PayoutResponse(BaseModel):
    campaign_id: str
    payout_status: PayoutStatus
    payout_amount: Optional[int] = None
    payout_reference: Optional[str] = None
    message: Optional[str] = None


class UserCreateRequest(BaseModel):
    id: str = Field(..., min_length=1, max_length=64)
    email: str = Field(..., min_length=3, max_length=320)
    full_name: Optional[str] = None


class UserPatch(BaseModel):
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    bio: Optional[str] = Field(default=None, max_length=2000)
    location: Optional[str] = None
    website: Optional[str] = None
    social_links: Optional[dict[str, str]] = None
    payout_account_id: Optional[str] = None


class UserResponse(BaseModel):
    user: dict


class NotificationListResponse(BaseModel):
    notifications: list[dict]


class MediaUploadResponse(BaseModel):
    media: list[dict]


class SignUrlResponse(BaseModel):
    url: str
    path: str


class TrackEventRequest(BaseModel):
    event_type: AnalyticsEventType
    campaign_id: Optional[str] = None
    session_id: Optional[str] = None
    data: dict = Field(default_factory=dict)


class TrackEventResponse(BaseModel):
    status: Literal["queued"]
    event_id: str


class HealthResponse(BaseModel):
    status: Literal["healthy", "degraded"]
    checks: dict[str, dict]


class MonitoringStatusResponse(BaseModel):
    window_seconds: float
    requests: int
    errors: int
    error_rate: float
    average_response_time_ms: float
    recent_errors: list[dict]
