"""
Shared enums for campaign, pledge, fulfillment and payout state.
"""

from __future__ import annotations

from enum import Enum


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PledgeStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FulfillmentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"


# Fulfillment only ever moves forward through this order.
FULFILLMENT_ORDER = [
    FulfillmentStatus.PENDING,
    FulfillmentStatus.PROCESSING,
    FulfillmentStatus.SHIPPED,
    FulfillmentStatus.DELIVERED,
]


class PayoutStatus(str, Enum):
    NOT_ELIGIBLE = "not_eligible"
    ELIGIBLE = "eligible"
    REQUESTED = "requested"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class AnalyticsEventType(str, Enum):
    PAGE_VIEW = "page_view"
    CAMPAIGN_VIEW = "campaign_view"
    INTERACTION = "interaction"
    DONATION = "donation"
    CAMPAIGN_CREATED = "campaign_created"
    USER_REGISTERED = "user_registered"
    SEARCH = "search"
    SOCIAL_SHARE = "social_share"
    ERROR = "error"
    PERFORMANCE = "performance"
