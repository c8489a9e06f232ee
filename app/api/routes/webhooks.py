"""
Inbound payment webhooks for Stripe and Whop.

Register https://your-backend.com/webhooks/stripe and /webhooks/whop in the
provider dashboards. Every delivery goes verify -> parse -> normalize -> one
entitlement transaction; notifications are sent only after that commits.
"""
import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.db.session import get_db
from app.services.entitlements import EntitlementStore
from app.services.events import Provider
from app.services.normalizer import normalize
from app.services.notifications import dispatch_notifications
from app.services.provider_clients import ProviderUnavailableError
from app.services.signatures import SignatureVerifier, WebhookConfigError, WebhookSignatureError

logger = logging.getLogger(__name__)

router = APIRouter()

WEBHOOK_PROVIDERS = (Provider.STRIPE.value, Provider.WHOP.value)


@router.post("/{provider}")
async def payment_webhook(
    provider: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    if provider not in WEBHOOK_PROVIDERS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown provider")

    tag = f"[{provider.capitalize()} webhook]"
    payload = await request.body()

    try:
        SignatureVerifier(settings).verify(provider, payload, request.headers)
    except WebhookConfigError as e:
        logger.error("%s %s", tag, e)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook secret not configured")
    except WebhookSignatureError as e:
        logger.warning("%s Rejected delivery: %s", tag, e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook signature")

    try:
        envelope = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")

    try:
        event = normalize(provider, envelope, settings)
    except ProviderUnavailableError as e:
        logger.error("%s Could not complete event from provider API: %s", tag, e)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Provider lookup failed")

    if event is None:
        return {"received": True}

    logger.info(
        "%s %s (%s) subscription=%s email=%s",
        tag, event.event_type, event.kind.value, event.subscription_id, event.email,
    )

    try:
        result = EntitlementStore(db, settings).apply(event)
    except SQLAlchemyError:
        logger.exception("%s Database error while applying %s", tag, event.event_type)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to process webhook")

    if result and result.notifications:
        background_tasks.add_task(dispatch_notifications, result.notifications, settings)

    return {"received": True}
