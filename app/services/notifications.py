"""
Best-effort outbound notifications, sent after the entitlement transaction commits.

E-mail goes through Resend when RESEND_API_KEY is set; Telegram through the Bot
API when TELEGRAM_BOT_TOKEN is set and the recipient linked a chat. Nothing in
here raises: a lost notification must never turn a processed webhook into a
retry.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

import httpx
import resend

from app.core.config import Settings
from app.services.events import PendingNotification

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"


def send_email(settings: Settings, to_email: Optional[str], subject: str, html: str) -> bool:
    """Returns True if sent, False if skipped or failed."""
    if not settings.resend_api_key or not to_email:
        return False

    resend.api_key = settings.resend_api_key
    try:
        params = {
            "from": settings.notify_from_email,
            "to": [to_email],
            "subject": subject,
            "html": html.strip(),
        }
        resend.Emails.send(params)
        logger.info("[Notify] Email '%s' sent to %s", subject, to_email)
        return True
    except Exception as e:
        logger.error("[Notify] Failed to send email to %s: %s", to_email, e)
        return False


def send_telegram(settings: Settings, chat_id: Optional[str], text: str) -> bool:
    if not settings.telegram_bot_token or not chat_id:
        return False

    url = f"{TELEGRAM_API_BASE}/bot{settings.telegram_bot_token}/sendMessage"
    try:
        r = httpx.post(url, json={"chat_id": chat_id, "text": text, "parse_mode": "HTML"}, timeout=10.0)
    except httpx.HTTPError as e:
        logger.error("[Notify] Telegram request to chat %s failed: %s", chat_id, e)
        return False
    if r.status_code != 200:
        logger.warning("[Notify] Telegram returned %s for chat %s: %s", r.status_code, chat_id, r.text[:200])
        return False
    return True


def _money(amount) -> str:
    return f"{Decimal(amount):.2f}"


def notify_commission_earned(settings: Settings, payload: dict) -> None:
    amount = _money(payload["amount"])
    subscriber = payload.get("subscriber") or "A referred user"
    plan = payload.get("plan", "")

    if payload.get("email_enabled", True):
        html = f"""
        <p>Hi,</p>
        <p><strong>{subscriber}</strong> just subscribed to the <strong>{plan}</strong> plan
        (${_money(payload.get("plan_price", 0))}) with your referral link.</p>
        <p>You earned <strong>${amount}</strong> in commission.</p>
        <p><a href="{settings.frontend_url}/dashboard/affiliate">View your affiliate dashboard</a></p>
        """
        send_email(settings, payload.get("to_email"), f"You earned ${amount} on {settings.app_name}", html)

    send_telegram(
        settings,
        payload.get("telegram_chat_id"),
        f"💰 <b>New commission: ${amount}</b>\n{subscriber} subscribed to the {plan} plan.",
    )


def notify_subscription_activated(settings: Settings, payload: dict) -> None:
    plan = payload.get("plan", "")
    expires_at = payload.get("expires_at")
    until = expires_at.strftime("%B %d, %Y") if isinstance(expires_at, datetime) else "the end of your billing period"

    if payload.get("email_enabled", True):
        html = f"""
        <p>Hi,</p>
        <p>Your <strong>{plan}</strong> subscription to {settings.app_name} is now active until {until}.</p>
        <p><a href="{settings.frontend_url}/dashboard">Go to your dashboard</a></p>
        <p>Thank you for subscribing.</p>
        """
        send_email(settings, payload.get("to_email"), f"Your {settings.app_name} subscription is active", html)

    send_telegram(
        settings,
        payload.get("telegram_chat_id"),
        f"✅ Your <b>{plan}</b> subscription is active until {until}.",
    )


HANDLERS = {
    "commission_earned": notify_commission_earned,
    "subscription_activated": notify_subscription_activated,
}


def dispatch_notifications(items: Iterable[PendingNotification], settings: Settings) -> None:
    for item in items:
        handler = HANDLERS.get(item.kind)
        if handler is None:
            logger.warning("[Notify] No handler for notification kind %r", item.kind)
            continue
        try:
            handler(settings, item.payload)
        except Exception:
            logger.exception("[Notify] %s notification failed", item.kind)
