"""
HTTP routes for the BloomFund API.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile

from bloomfund.analytics import AnalyticsService
from bloomfund.campaigns import CampaignService
from bloomfund.config import get_settings
from bloomfund.db import DbClient, UserRecord
from bloomfund.dependencies import (
    get_analytics_service,
    get_campaign_service,
    get_current_user_id,
    get_db_client,
    get_event_queue,
    get_payout_service,
    get_pledge_service,
    get_request_monitor,
    get_storage_client,
    require_payments_secret,
)
from bloomfund.enums import AnalyticsEventType
from bloomfund.monitoring import RequestMonitor
from bloomfund.errors import (
    AuthenticationRequiredError,
    ConflictError,
    PermissionDeniedError,
    ValidationFailedError,
)
from bloomfund.notifications import DEFAULT_AVATAR_URL
from bloomfund.payouts import PayoutService
from bloomfund.pledges import PledgeService
from bloomfund.queue import EventQueue
from bloomfund.rate_limit import rate_limit
from bloomfund.schemas import (
    CampaignDetailResponse,
    CampaignDraft,
    CampaignListResponse,
    CampaignPatch,
    CampaignSearchParams,
    CampaignStatsResponse,
    CampaignUpdatePayload,
    FulfillmentUpdateRequest,
    HealthResponse,
    LeaderboardResponse,
    MediaUploadResponse,
    MonitoringStatusResponse,
    NotificationListResponse,
    PayoutEligibilityResponse,
    PayoutResponse,
    PayoutSettleRequest,
    PledgeConfirmRequest,
    PledgeListResponse,
    PledgeRequest,
    PledgeResponse,
    PlatformStatsResponse,
    SignUrlResponse,
    TrackEventRequest,
    TrackEventResponse,
    UserCreateRequest,
    UserPatch,
    UserResponse,
    WizardStepRequest,
    WizardStepResponse,
)
from bloomfund.storage import (
    ALLOWED_IMAGE_TYPES,
    ALLOWED_VIDEO_TYPES,
    MAX_FILES_PER_UPLOAD,
    StorageClient,
    generate_object_path,
    is_owned_by,
    media_type_for,
    owner_folder,
    validate_upload,
)
from bloomfund.wizard import WizardPosition, next_step, previous_step, validate_step

logger = logging.getLogger(__name__)

router = APIRouter()

# Percentage of 5xx responses above which the service reports itself degraded.
ERROR_RATE_THRESHOLD = 10.0


def _require_user(user_id: Optional[str]) -> str:
    if not user_id:
        raise AuthenticationRequiredError("Authentication required")
    return user_id


@router.get("/health", response_model=HealthResponse)
def health(
    db: DbClient = Depends(get_db_client),
    queue: EventQueue = Depends(get_event_queue),
    monitor: RequestMonitor = Depends(get_request_monitor),
):
    checks = {}
    try:
        db.ping()
        checks["database"] = {"status": "healthy"}
    except Exception as exc:
        logger.warning("Database health check failed: %s", exc)
        checks["database"] = {"status": "unhealthy", "error": str(exc)}
    try:
        checks["analytics_queue"] = {"status": "healthy", "pending": queue.size()}
    except Exception as exc:
        logger.warning("Analytics queue health check failed: %s", exc)
        checks["analytics_queue"] = {"status": "unhealthy", "error": str(exc)}
    error_rate = monitor.error_rate()
    checks["requests"] = {
        "status": "healthy" if error_rate < ERROR_RATE_THRESHOLD else "unhealthy",
        "error_rate": error_rate,
        "average_response_time_ms": monitor.average_response_time(),
    }
    healthy = all(check["status"] == "healthy" for check in checks.values())
    return HealthResponse(status="healthy" if healthy else "degraded", checks=checks)


@router.get("/monitoring/status", response_model=MonitoringStatusResponse)
def monitoring_status(
    window_seconds: int = Query(default=3600, ge=1, le=24 * 60 * 60),
    monitor: RequestMonitor = Depends(get_request_monitor),
):
    return MonitoringStatusResponse(**monitor.status(window_seconds))


# Campaign creation wizard


@router.post("/wizard/step", response_model=WizardStepResponse)
def wizard_step(payload: WizardStepRequest):
    """
    Validate the current wizard step and optionally move forward or back.

    Moving forward is refused while the current step has errors.
    """
    if payload.direction == "next":
        position = next_step(payload.draft, payload.step)
    elif payload.direction == "previous":
        position = previous_step(payload.step)
        position.errors = validate_step(payload.draft, position.step)
    else:
        position = WizardPosition(
            step=payload.step, errors=validate_step(payload.draft, payload.step)
        )
    return WizardStepResponse(
        step=position.step,
        valid=position.valid,
        errors=position.errors,
        progress_percent=position.progress,
    )


# Campaigns


@router.get(
    "/campaigns",
    response_model=CampaignListResponse,
    dependencies=[Depends(rate_limit("api", "campaigns"))],
)
def list_campaigns(
    status: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    campaigns: CampaignService = Depends(get_campaign_service),
):
    items = campaigns.list_campaigns(
        status=status, category=category, limit=limit, offset=offset
    )
    return CampaignListResponse(campaigns=items)


@router.get(
    "/campaigns/search",
    response_model=CampaignListResponse,
    dependencies=[Depends(rate_limit("api", "search"))],
)
def search_campaigns(
    params: CampaignSearchParams = Depends(),
    user_id: Optional[str] = Depends(get_current_user_id),
    campaigns: CampaignService = Depends(get_campaign_service),
):
    return CampaignListResponse(campaigns=campaigns.search(params, user_id=user_id))


@router.get("/campaigns/recommended", response_model=CampaignListResponse)
def recommended_campaigns(
    exclude: Optional[str] = Query(None, description="Campaign currently being viewed"),
    limit: int = Query(3, ge=1, le=20),
    campaigns: CampaignService = Depends(get_campaign_service),
):
    return CampaignListResponse(campaigns=campaigns.recommended(exclude, limit=limit))


@router.get("/campaigns/stats", response_model=PlatformStatsResponse)
def platform_stats(campaigns: CampaignService = Depends(get_campaign_service)):
    return PlatformStatsResponse(**campaigns.platform_stats())


@router.post(
    "/campaigns",
    response_model=CampaignDetailResponse,
    status_code=201,
    dependencies=[Depends(rate_limit("general", "formSubmissions"))],
)
def create_campaign(
    draft: CampaignDraft,
    user_id: Optional[str] = Depends(get_current_user_id),
    campaigns: CampaignService = Depends(get_campaign_service),
):
    return CampaignDetailResponse(campaign=campaigns.create_campaign(draft, user_id))


@router.get(
    "/campaigns/{campaign_id}",
    response_model=CampaignDetailResponse,
    dependencies=[Depends(rate_limit("api", "campaigns"))],
)
def get_campaign(
    campaign_id: str, campaigns: CampaignService = Depends(get_campaign_service)
):
    return CampaignDetailResponse(campaign=campaigns.get_campaign_detail(campaign_id))


@router.patch("/campaigns/{campaign_id}", response_model=CampaignDetailResponse)
def update_campaign(
    campaign_id: str,
    patch: CampaignPatch,
    user_id: Optional[str] = Depends(get_current_user_id),
    campaigns: CampaignService = Depends(get_campaign_service),
):
    return CampaignDetailResponse(
        campaign=campaigns.update_campaign(campaign_id, user_id, patch)
    )


@router.get("/campaigns/{campaign_id}/updates")
def list_campaign_updates(
    campaign_id: str, campaigns: CampaignService = Depends(get_campaign_service)
):
    return {"updates": campaigns.list_updates(campaign_id)}


@router.post("/campaigns/{campaign_id}/updates", status_code=201)
def post_campaign_update(
    campaign_id: str,
    payload: CampaignUpdatePayload,
    user_id: Optional[str] = Depends(get_current_user_id),
    campaigns: CampaignService = Depends(get_campaign_service),
):
    update = campaigns.post_update(
        campaign_id,
        user_id,
        title=payload.title,
        content=payload.content,
        is_public=payload.is_public,
    )
    return {"update": update}


# Pledges


@router.post(
    "/campaigns/{campaign_id}/pledges",
    response_model=PledgeResponse,
    status_code=201,
    dependencies=[Depends(rate_limit("general", "formSubmissions"))],
)
def create_pledge(
    campaign_id: str,
    payload: PledgeRequest,
    user_id: Optional[str] = Depends(get_current_user_id),
    pledges: PledgeService = Depends(get_pledge_service),
):
    pledge = pledges.create_pledge(campaign_id, payload, user_id=user_id)
    return PledgeResponse(pledge=pledge.as_dict())


@router.get("/campaigns/{campaign_id}/pledges", response_model=PledgeListResponse)
def campaign_pledges(
    campaign_id: str,
    user_id: Optional[str] = Depends(get_current_user_id),
    pledges: PledgeService = Depends(get_pledge_service),
):
    return PledgeListResponse(pledges=pledges.campaign_pledges(campaign_id, user_id))


@router.get("/campaigns/{campaign_id}/leaderboard", response_model=LeaderboardResponse)
def leaderboard(
    campaign_id: str,
    limit: int = Query(10, ge=1, le=100),
    pledges: PledgeService = Depends(get_pledge_service),
):
    return LeaderboardResponse(entries=pledges.leaderboard(campaign_id, limit=limit))


@router.get("/campaigns/{campaign_id}/pledge-stats", response_model=CampaignStatsResponse)
def pledge_stats(campaign_id: str, pledges: PledgeService = Depends(get_pledge_service)):
    return CampaignStatsResponse(**pledges.campaign_stats(campaign_id))


@router.post(
    "/pledges/{pledge_id}/confirm",
    response_model=PledgeResponse,
    dependencies=[Depends(require_payments_secret)],
)
def confirm_pledge(
    pledge_id: str,
    payload: PledgeConfirmRequest,
    pledges: PledgeService = Depends(get_pledge_service),
):
    """
    Record the payment outcome for a pending pledge.

    Called by the payment integration once the processor settles the charge.
    """
    pledge = pledges.confirm_pledge(pledge_id, payload.as_status())
    return PledgeResponse(pledge=pledge.as_dict())


@router.patch("/pledges/{pledge_id}/fulfillment", response_model=PledgeResponse)
def update_fulfillment(
    pledge_id: str,
    payload: FulfillmentUpdateRequest,
    user_id: Optional[str] = Depends(get_current_user_id),
    pledges: PledgeService = Depends(get_pledge_service),
):
    pledge = pledges.update_fulfillment(
        pledge_id, payload.status, user_id, tracking_number=payload.tracking_number
    )
    return PledgeResponse(pledge=pledge.as_dict())


# Payouts


@router.get("/campaigns/{campaign_id}/payout", response_model=PayoutEligibilityResponse)
def payout_eligibility(
    campaign_id: str,
    user_id: Optional[str] = Depends(get_current_user_id),
    payouts: PayoutService = Depends(get_payout_service),
):
    return PayoutEligibilityResponse(**payouts.eligibility(campaign_id, user_id))


@router.post("/campaigns/{campaign_id}/payout", response_model=PayoutResponse)
def request_payout(
    campaign_id: str,
    user_id: Optional[str] = Depends(get_current_user_id),
    payouts: PayoutService = Depends(get_payout_service),
):
    return PayoutResponse(**payouts.request_payout(campaign_id, user_id))


@router.post(
    "/campaigns/{campaign_id}/payout/settle",
    response_model=PayoutResponse,
    dependencies=[Depends(require_payments_secret)],
)
def settle_payout(
    campaign_id: str,
    payload: PayoutSettleRequest,
    payouts: PayoutService = Depends(get_payout_service),
):
    return PayoutResponse(
        **payouts.settle_payout(campaign_id, payload.status, payload.reference)
    )


# Users and notifications


@router.post(
    "/users",
    response_model=UserResponse,
    status_code=201,
    dependencies=[Depends(rate_limit("auth", "signUp"))],
)
def create_user(
    payload: UserCreateRequest,
    db: DbClient = Depends(get_db_client),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    """Create the profile row for a freshly signed-up account."""
    if db.get_user(payload.id):
        raise ConflictError("User already exists")
    user = db.create_user(
        UserRecord(
            id=payload.id,
            email=payload.email.strip().lower(),
            full_name=(payload.full_name or "").strip() or None,
            avatar_url=DEFAULT_AVATAR_URL.format(seed=payload.email.strip().lower()),
        )
    )
    analytics.track(AnalyticsEventType.USER_REGISTERED, user_id=user.id)
    return UserResponse(user=user.as_dict())


@router.get("/users/me", response_model=UserResponse)
def get_me(
    user_id: Optional[str] = Depends(get_current_user_id),
    db: DbClient = Depends(get_db_client),
):
    user = db.get_user(_require_user(user_id))
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return UserResponse(user=user.as_dict())


@router.patch("/users/me", response_model=UserResponse)
def update_me(
    patch: UserPatch,
    user_id: Optional[str] = Depends(get_current_user_id),
    db: DbClient = Depends(get_db_client),
):
    changes = patch.model_dump(exclude_unset=True)
    user = db.update_user(_require_user(user_id), **changes)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return UserResponse(user=user.as_dict())


@router.get("/users/me/pledges", response_model=PledgeListResponse)
def my_pledges(
    user_id: Optional[str] = Depends(get_current_user_id),
    pledges: PledgeService = Depends(get_pledge_service),
):
    return PledgeListResponse(pledges=pledges.user_pledges(_require_user(user_id)))


@router.get("/users/me/campaigns", response_model=CampaignListResponse)
def my_campaigns(
    user_id: Optional[str] = Depends(get_current_user_id),
    campaigns: CampaignService = Depends(get_campaign_service),
):
    return CampaignListResponse(campaigns=campaigns.user_campaigns(_require_user(user_id)))


@router.get("/users/{profile_id}", response_model=UserResponse)
def get_user(profile_id: str, db: DbClient = Depends(get_db_client)):
    user = db.get_user(profile_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    profile = user.as_dict()
    # Contact and payout details stay private.
    profile.pop("email", None)
    profile.pop("payout_account_id", None)
    return UserResponse(user=profile)


@router.get("/notifications", response_model=NotificationListResponse)
def list_notifications(
    limit: int = Query(20, ge=1, le=100),
    user_id: Optional[str] = Depends(get_current_user_id),
    db: DbClient = Depends(get_db_client),
):
    items = db.list_notifications(_require_user(user_id), limit=limit)
    return NotificationListResponse(notifications=[n.as_dict() for n in items])


@router.post("/notifications/{notification_id}/read")
def mark_notification_read(
    notification_id: str,
    user_id: Optional[str] = Depends(get_current_user_id),
    db: DbClient = Depends(get_db_client),
):
    notification = db.get_notification(notification_id)
    if not notification or notification.user_id != _require_user(user_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    db.mark_notification_read(notification_id)
    return {"status": "ok"}


# Media


@router.post(
    "/media/upload",
    response_model=MediaUploadResponse,
    status_code=201,
    dependencies=[Depends(rate_limit("api", "upload"))],
)
async def upload_media(
    files: List[UploadFile] = File(...),
    folder: str = Form("campaigns"),
    user_id: Optional[str] = Depends(get_current_user_id),
    storage: StorageClient = Depends(get_storage_client),
):
    user_id = _require_user(user_id)
    if len(files) > MAX_FILES_PER_UPLOAD:
        raise ValidationFailedError(
            [f"At most {MAX_FILES_PER_UPLOAD} files can be uploaded at once"],
            detail="Invalid upload",
        )

    settings = get_settings()
    payloads = []
    for upload in files:
        data = await upload.read()
        content_type = upload.content_type or ""
        validate_upload(
            upload.filename or "",
            content_type,
            len(data),
            max_size=settings.max_upload_bytes,
            allowed_types=ALLOWED_IMAGE_TYPES + ALLOWED_VIDEO_TYPES,
        )
        payloads.append((upload.filename, content_type, data))

    uploaded = []
    for filename, content_type, data in payloads:
        path = generate_object_path(owner_folder(folder, user_id), filename)
        storage.upload_bytes(path, data, content_type)
        uploaded.append(
            {
                "type": media_type_for(content_type).value,
                "url": storage.public_url(path),
                "storage_path": path,
                "content_type": content_type,
                "size": len(data),
            }
        )
    logger.info("Uploaded %d media files for %s", len(uploaded), user_id)
    return MediaUploadResponse(media=uploaded)


@router.delete("/media", status_code=204)
def delete_media(
    path: str = Query(..., description="Object path in storage"),
    user_id: Optional[str] = Depends(get_current_user_id),
    storage: StorageClient = Depends(get_storage_client),
):
    if not is_owned_by(path, _require_user(user_id)):
        raise PermissionDeniedError("You can only delete your own uploads")
    storage.delete(path)


@router.get("/sign-url", response_model=SignUrlResponse)
def sign_url(
    path: Optional[str] = Query(None, description="Object path in storage, for reads"),
    op: str = Query("get", pattern="^(get|put)$"),
    expires_in: int = Query(3600, ge=60, le=86400),
    filename: Optional[str] = Query(None, description="Original file name, for uploads"),
    content_type: Optional[str] = Query(None),
    folder: str = Query("campaigns"),
    user_id: Optional[str] = Depends(get_current_user_id),
    storage: StorageClient = Depends(get_storage_client),
):
    """
    Presign a read of an existing object, or an upload of a new one.

    Upload keys are generated under the caller's own folder; the caller
    cannot choose them.
    """
    if op == "get":
        if not path:
            raise ValidationFailedError(["path is required"], detail="Invalid request")
        return SignUrlResponse(url=storage.presign_get(path, expires_in=expires_in), path=path)

    user_id = _require_user(user_id)
    allowed = ALLOWED_IMAGE_TYPES + ALLOWED_VIDEO_TYPES
    errors = []
    if not filename:
        errors.append("filename is required")
    if content_type not in allowed:
        errors.append(f"File type {content_type} is not allowed")
    if errors:
        raise ValidationFailedError(errors, detail="Invalid upload")

    key = generate_object_path(owner_folder(folder, user_id), filename)
    url = storage.presign_put(key, expires_in=expires_in, content_type=content_type)
    return SignUrlResponse(url=url, path=key)


# Analytics


@router.post(
    "/analytics/events",
    response_model=TrackEventResponse,
    status_code=202,
    dependencies=[Depends(rate_limit("general", "pageViews"))],
)
def track_event(
    payload: TrackEventRequest,
    user_id: Optional[str] = Depends(get_current_user_id),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    event = analytics.track(
        payload.event_type,
        user_id=user_id,
        campaign_id=payload.campaign_id,
        session_id=payload.session_id,
        data=payload.data,
    )
    return TrackEventResponse(status="queued", event_id=event.id)


@router.get("/analytics/campaigns/{campaign_id}")
def campaign_analytics(
    campaign_id: str,
    period: str = Query("30d"),
    user_id: Optional[str] = Depends(get_current_user_id),
    campaigns: CampaignService = Depends(get_campaign_service),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    campaigns.require_owner(campaign_id, user_id)
    return analytics.campaign_report(campaign_id, period=period)


@router.get("/analytics/users/me")
def my_analytics(
    start: Optional[float] = Query(None),
    end: Optional[float] = Query(None),
    user_id: Optional[str] = Depends(get_current_user_id),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    return analytics.user_report(_require_user(user_id), start=start, end=end)


@router.get("/analytics/platform")
def platform_analytics(
    start: Optional[float] = Query(None),
    end: Optional[float] = Query(None),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    return analytics.platform_report(start=start, end=end)
