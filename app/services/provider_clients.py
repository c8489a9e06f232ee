"""
Out-of-band calls to the payment providers.

Webhooks stay the source of truth; these are only used to fill gaps in a payload
or to let support verify a membership by hand.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

import httpx
import stripe

from app.core.config import Settings

logger = logging.getLogger(__name__)


class ProviderUnavailableError(Exception):
    """Provider API failed in a way that is worth retrying."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _from_unix(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def fetch_stripe_subscription_period(
    subscription_id: str,
    settings: Settings,
) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Return (current_period_start, current_period_end) for a Stripe subscription."""
    try:
        sub = stripe.Subscription.retrieve(subscription_id, api_key=settings.stripe_api_key)
    except stripe.StripeError as e:
        logger.error("[Stripe] Failed to retrieve subscription %s: %s", subscription_id, e)
        raise ProviderUnavailableError(f"Stripe subscription lookup failed: {e}") from e

    data = sub.to_dict() if hasattr(sub, "to_dict") else dict(sub)
    start = data.get("current_period_start")
    end = data.get("current_period_end")
    # Newer API versions moved the period onto the subscription items
    if end is None:
        items = (data.get("items") or {}).get("data") or []
        if items:
            start = items[0].get("current_period_start")
            end = items[0].get("current_period_end")
    return _from_unix(start), _from_unix(end)


async def fetch_whop_membership(membership_id: str, settings: Settings) -> dict:
    """GET /memberships/{id} on the Whop API. Raises ProviderUnavailableError on any non-200."""
    url = f"{settings.whop_api_base}/memberships/{membership_id}"
    headers = {"Authorization": f"Bearer {settings.whop_api_key}"}
    try:
        async with httpx.AsyncClient(timeout=15.0) as client:
            r = await client.get(url, headers=headers)
    except httpx.TimeoutException as e:
        logger.error("[Whop] Timeout verifying membership %s: %s", membership_id, e)
        raise ProviderUnavailableError("Whop API timeout", status_code=504) from e
    except httpx.RequestError as e:
        logger.error("[Whop] Request error verifying membership %s: %s", membership_id, e)
        raise ProviderUnavailableError(f"Whop request failed: {e}", status_code=502) from e

    if r.status_code != 200:
        logger.warning("[Whop] Membership %s lookup returned %s: %s", membership_id, r.status_code, r.text[:200])
        raise ProviderUnavailableError("Failed to verify membership", status_code=r.status_code)
    return r.json()
