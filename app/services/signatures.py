"""
Webhook signature verification for Stripe and Whop.

Nothing past this module may run on an unverified body in production. The only
way to skip verification is APP_ENV=development with no secret configured.
"""
import hashlib
import hmac
import logging
from typing import Mapping, Optional

import stripe

from app.core.config import Settings

logger = logging.getLogger(__name__)

WHOP_SIGNATURE_HEADERS = ("whop-signature", "x-whop-signature")


class WebhookSignatureError(Exception):
    """Body or signature header does not match the provider's secret."""


class WebhookConfigError(Exception):
    """No signing secret configured for a provider in production."""


def _header(headers: Mapping[str, str], *names: str) -> Optional[str]:
    # Starlette headers are case-insensitive; plain dicts in tests are not
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in names:
        value = lowered.get(name.lower())
        if value:
            return value
    return None


def _normalize_whop_signature(raw: str) -> str:
    raw = raw.strip()
    for prefix in ("sha256=", "v1,", "v1="):
        if raw.startswith(prefix):
            return raw[len(prefix):].strip()
    return raw


def compute_whop_signature(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


class SignatureVerifier:
    def __init__(self, settings: Settings):
        self.settings = settings

    def verify(self, provider: str, payload: bytes, headers: Mapping[str, str]) -> None:
        """Raise WebhookSignatureError / WebhookConfigError, return None when the body may be trusted."""
        secret = self.settings.webhook_secret_for(provider)
        if not secret:
            if self.settings.is_production:
                logger.error("[Webhooks] %s webhook secret missing in production; rejecting delivery", provider)
                raise WebhookConfigError(f"{provider} webhook secret is not configured")
            logger.warning("[Webhooks] %s webhook secret not set - skipping signature verification (development)", provider)
            return

        if provider == "stripe":
            self._verify_stripe(payload, headers, secret)
        elif provider == "whop":
            self._verify_whop(payload, headers, secret)
        else:
            raise WebhookSignatureError(f"Unknown provider: {provider}")

    def _verify_stripe(self, payload: bytes, headers: Mapping[str, str], secret: str) -> None:
        sig_header = _header(headers, "stripe-signature")
        if not sig_header:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                sig_header,
                secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("[Stripe webhook] Signature verification failed: %s", e)
            raise WebhookSignatureError("Invalid Stripe signature") from e
        except UnicodeDecodeError as e:
            raise WebhookSignatureError("Stripe payload is not valid UTF-8") from e

    def _verify_whop(self, payload: bytes, headers: Mapping[str, str], secret: str) -> None:
        sig_header = _header(headers, *WHOP_SIGNATURE_HEADERS)
        if not sig_header:
            raise WebhookSignatureError("Missing Whop signature header")
        expected = compute_whop_signature(payload, secret)
        if not hmac.compare_digest(_normalize_whop_signature(sig_header), expected):
            logger.warning("[Whop webhook] Signature verification failed")
            raise WebhookSignatureError("Invalid Whop signature")
