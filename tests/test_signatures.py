import pytest

from app.core.config import Environment, Settings
from app.services.signatures import SignatureVerifier, WebhookConfigError, WebhookSignatureError
from conftest import STRIPE_SECRET, WHOP_SECRET, stripe_headers, whop_headers

BODY = b'{"event": "membership.went_valid", "data": {"id": "mem_1"}}'


def test_whop_signature_accepted_with_and_without_prefix(settings):
    verifier = SignatureVerifier(settings)
    headers = whop_headers(BODY)
    verifier.verify("whop", BODY, headers)

    bare = headers["whop-signature"].split("=", 1)[1]
    verifier.verify("whop", BODY, {"X-Whop-Signature": bare})
    verifier.verify("whop", BODY, {"whop-signature": f"v1,{bare}"})


def test_whop_signature_rejects_tampered_body(settings):
    headers = whop_headers(BODY)
    with pytest.raises(WebhookSignatureError):
        SignatureVerifier(settings).verify("whop", BODY + b" ", headers)


def test_whop_signature_rejects_wrong_secret(settings):
    with pytest.raises(WebhookSignatureError):
        SignatureVerifier(settings).verify("whop", BODY, whop_headers(BODY, secret="other"))


def test_missing_header_rejected(settings):
    with pytest.raises(WebhookSignatureError):
        SignatureVerifier(settings).verify("whop", BODY, {})
    with pytest.raises(WebhookSignatureError):
        SignatureVerifier(settings).verify("stripe", BODY, {})


def test_stripe_signature(settings):
    SignatureVerifier(settings).verify("stripe", BODY, stripe_headers(BODY))
    with pytest.raises(WebhookSignatureError):
        SignatureVerifier(settings).verify("stripe", BODY, stripe_headers(BODY, secret="whsec_other"))


def test_stripe_signature_outside_tolerance(settings):
    with pytest.raises(WebhookSignatureError):
        SignatureVerifier(settings).verify("stripe", BODY, stripe_headers(BODY, timestamp=1000))


def test_missing_secret_in_production_is_config_error():
    settings = Settings(environment=Environment.PRODUCTION, stripe_webhook_secret=STRIPE_SECRET)
    with pytest.raises(WebhookConfigError):
        SignatureVerifier(settings).verify("whop", BODY, whop_headers(BODY))


def test_missing_secret_in_development_skips_verification():
    settings = Settings(environment=Environment.DEVELOPMENT, whop_webhook_secret=WHOP_SECRET)
    SignatureVerifier(settings).verify("stripe", BODY, {})
