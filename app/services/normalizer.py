"""
Map provider webhook envelopes onto canonical PaymentEvents.

Returns None for anything we do not act on. Providers add event types all the
time; an unknown type must be acknowledged, never turned into an error that
makes the provider retry forever.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from app.core.config import Settings
from app.core.plans import resolve_plan
from app.services.events import EventKind, PaymentEvent, Provider
from app.services.provider_clients import fetch_stripe_subscription_period

logger = logging.getLogger(__name__)

WHOP_EVENT_KINDS: Dict[str, EventKind] = {
    "membership.went_valid": EventKind.ACTIVATED,
    "membership_went_valid": EventKind.ACTIVATED,
    "membership_activated": EventKind.ACTIVATED,
    "membership.went_invalid": EventKind.DEACTIVATED,
    "membership_went_invalid": EventKind.DEACTIVATED,
    "membership_deactivated": EventKind.DEACTIVATED,
    "payment.succeeded": EventKind.RENEWED,
    "payment_succeeded": EventKind.RENEWED,
    "invoice_paid": EventKind.RENEWED,
    "payment.failed": EventKind.PAYMENT_FAILED,
    "payment_failed": EventKind.PAYMENT_FAILED,
    "invoice_past_due": EventKind.PAYMENT_FAILED,
}

STRIPE_EVENT_KINDS: Dict[str, EventKind] = {
    "checkout.session.completed": EventKind.ACTIVATED,
    "invoice.payment_succeeded": EventKind.RENEWED,
    "invoice.paid": EventKind.RENEWED,
    "invoice.payment_failed": EventKind.PAYMENT_FAILED,
    "customer.subscription.deleted": EventKind.DEACTIVATED,
}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Unix seconds or ISO-8601 -> naive UTC. Unparseable values are treated as absent."""
    if value in (None, ""):
        return None
    try:
        if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
            return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
        if isinstance(value, str):
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
            if parsed.tzinfo is not None:
                parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
            return parsed
    except (ValueError, OverflowError, OSError):
        logger.warning("[Normalizer] Could not parse timestamp %r", value)
    return None


def _str_or_none(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get("id")
    if isinstance(value, bool) or not isinstance(value, (str, int)) or value == "":
        return None
    return str(value)


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value in (None, ""):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        return None
    # users.id is a 32-bit integer column
    return number if 0 < number < 2 ** 31 else None


def _lower_email(value: Any) -> Optional[str]:
    if isinstance(value, str) and "@" in value:
        return value.strip().lower()
    return None


def normalize(provider: str, envelope: Dict[str, Any], settings: Optional[Settings] = None) -> Optional[PaymentEvent]:
    if not isinstance(envelope, dict):
        logger.warning("[Normalizer] %s payload is not a JSON object, ignoring", provider)
        return None
    if provider == Provider.WHOP.value:
        return normalize_whop(envelope)
    if provider == Provider.STRIPE.value:
        return normalize_stripe(envelope, settings)
    logger.warning("[Normalizer] Unknown provider %r", provider)
    return None


def normalize_whop(envelope: Dict[str, Any]) -> Optional[PaymentEvent]:
    event_type = _text(envelope.get("event")) or _text(envelope.get("action"))
    kind = WHOP_EVENT_KINDS.get(event_type) if event_type else None
    if kind is None:
        logger.info("[Whop webhook] Unhandled event type: %s", event_type)
        return None

    data = envelope.get("data")
    if not isinstance(data, dict):
        logger.warning("[Whop webhook] %s without a data object, ignoring", event_type)
        return None

    user = _dict(data.get("user"))
    product = _dict(data.get("product"))
    plan = _dict(data.get("plan"))
    email = _lower_email(user.get("email")) or _lower_email(data.get("email"))

    # Membership events carry the membership as the object itself; payments reference it
    if kind in (EventKind.ACTIVATED, EventKind.DEACTIVATED):
        membership_id = _str_or_none(data.get("id"))
    else:
        membership_id = _str_or_none(data.get("membership_id")) or _str_or_none(data.get("membership"))

    plan_hint = _text(plan.get("plan_name")) or _text(product.get("name")) or _text(data.get("plan_name"))
    metadata = _dict(data.get("metadata"))

    return PaymentEvent(
        kind=kind,
        provider=Provider.WHOP,
        event_type=event_type,
        event_id=_str_or_none(envelope.get("id")),
        email=email,
        user_id=_int_or_none(metadata.get("user_id")),
        external_user_id=_str_or_none(user.get("id")),
        subscription_id=membership_id,
        plan_hint=plan_hint,
        plan=resolve_plan(plan_hint),
        period_end=parse_timestamp(data.get("valid_until") or data.get("renewal_period_end")),
        period_start=parse_timestamp(data.get("renewal_period_start")),
        handle_hint=_text(user.get("username")) or _text(user.get("name")),
        product_id=_str_or_none(product.get("id")),
        plan_id=_str_or_none(plan.get("id")),
    )


def _stripe_invoice_subscription(obj: Dict[str, Any]) -> Optional[str]:
    sub = _str_or_none(obj.get("subscription"))
    if sub:
        return sub
    # API versions from 2025 nest it under parent.subscription_details
    details = _dict(_dict(obj.get("parent")).get("subscription_details"))
    return _str_or_none(details.get("subscription"))


def normalize_stripe(envelope: Dict[str, Any], settings: Optional[Settings] = None) -> Optional[PaymentEvent]:
    event_type = _text(envelope.get("type"))
    kind = STRIPE_EVENT_KINDS.get(event_type) if event_type else None
    if kind is None:
        logger.info("[Stripe webhook] Unhandled event type: %s", event_type)
        return None

    obj = _dict(envelope.get("data")).get("object")
    if not isinstance(obj, dict):
        logger.warning("[Stripe webhook] %s without data.object, ignoring", event_type)
        return None

    metadata = _dict(obj.get("metadata"))
    event = PaymentEvent(
        kind=kind,
        provider=Provider.STRIPE,
        event_type=event_type,
        event_id=_str_or_none(envelope.get("id")),
        customer_id=_str_or_none(obj.get("customer")),
        user_id=_int_or_none(metadata.get("userId") or metadata.get("user_id")),
    )

    if event_type == "checkout.session.completed":
        details = _dict(obj.get("customer_details"))
        event.email = _lower_email(details.get("email")) or _lower_email(obj.get("customer_email"))
        event.handle_hint = _text(details.get("name"))
        event.subscription_id = _str_or_none(obj.get("subscription"))
        event.plan_hint = _text(metadata.get("plan"))
        event.plan = resolve_plan(event.plan_hint)

    elif kind in (EventKind.RENEWED, EventKind.PAYMENT_FAILED):
        event.email = _lower_email(obj.get("customer_email"))
        event.subscription_id = _stripe_invoice_subscription(obj)
        lines = _dict(obj.get("lines")).get("data")
        line = lines[0] if isinstance(lines, list) and lines else None
        if isinstance(line, dict):
            period = _dict(line.get("period"))
            event.period_start = parse_timestamp(period.get("start"))
            event.period_end = parse_timestamp(period.get("end"))
            price = _dict(line.get("price")) or _dict(line.get("plan"))
            event.plan_hint = _text(price.get("nickname")) or _text(line.get("description"))
            event.plan = resolve_plan(event.plan_hint) if event.plan_hint else None
        if (
            kind == EventKind.RENEWED
            and event.period_end is None
            and event.subscription_id
            and settings is not None
            and settings.stripe_api_key
        ):
            event.period_start, event.period_end = fetch_stripe_subscription_period(event.subscription_id, settings)

    else:  # customer.subscription.deleted
        event.subscription_id = _str_or_none(obj.get("id"))

    return event
