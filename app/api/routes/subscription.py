import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.db.session import get_db
from app.dependencies.auth import get_current_user, require_admin
from app.models.user import User
from app.schemas.subscription import ActivateRequest, ActivateResponse, SubscriptionStatusResponse
from app.services.access import subscription_status
from app.services.entitlements import EntitlementStore
from app.services.provider_clients import ProviderUnavailableError, fetch_whop_membership

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/status", response_model=SubscriptionStatusResponse)
def get_subscription_status(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return subscription_status(db, user, settings)


@router.get("/membership/{membership_id}/verify")
async def verify_membership(
    membership_id: str,
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
):
    """Ask Whop directly whether a membership is valid. Read only; webhooks stay the source of truth."""
    if not settings.whop_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Whop API not configured"
        )
    try:
        membership = await fetch_whop_membership(membership_id, settings)
    except ProviderUnavailableError as e:
        raise HTTPException(
            status_code=e.status_code or status.HTTP_502_BAD_GATEWAY,
            detail=str(e)
        )

    return {
        "valid": bool(membership.get("valid")) or membership.get("status") == "active",
        "status": membership.get("status"),
        "membership": membership,
    }


@router.post("/activate", response_model=ActivateResponse)
def activate_subscription(
    body: ActivateRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Support override: grant or extend a plan without a payment."""
    user = db.query(User).filter(User.id == body.user_id).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    try:
        EntitlementStore(db, settings).activate_manually(user, body.plan, body.duration_days)
    except SQLAlchemyError:
        logger.exception("[Entitlements] Manual activation failed for user %s", body.user_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to activate subscription"
        )

    db.refresh(user)
    logger.info("[Entitlements] Admin %s activated %s for user %s", admin.id, user.subscription_plan, user.id)
    return ActivateResponse(
        success=True,
        user_id=user.id,
        plan=user.subscription_plan,
        status=user.subscription_status,
        expiresAt=user.subscription_expires_at,
    )
