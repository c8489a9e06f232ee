from datetime import datetime

import pytest

from app.services.events import EventKind, Provider
from app.services.normalizer import normalize, parse_timestamp
from conftest import whop_membership_event


@pytest.mark.parametrize("name,kind", [
    ("membership.went_valid", EventKind.ACTIVATED),
    ("membership_activated", EventKind.ACTIVATED),
    ("membership.went_invalid", EventKind.DEACTIVATED),
    ("membership_deactivated", EventKind.DEACTIVATED),
])
def test_whop_membership_aliases(name, kind):
    event = normalize("whop", whop_membership_event(event=name))
    assert event.kind == kind
    assert event.provider == Provider.WHOP
    assert event.subscription_id == "mem_123"
    assert event.source_ref == "whop:mem_123"


def test_whop_activation_fields():
    envelope = whop_membership_event(email="Buyer@Example.COM", valid_until=1767225600)
    event = normalize("whop", envelope)
    assert event.email == "buyer@example.com"
    assert event.external_user_id == "user_whop_1"
    assert event.plan == "weekly"
    assert event.period_end == datetime(2026, 1, 1)
    assert event.handle_hint == "buyer"
    assert event.product_id == "prod_1"
    assert event.plan_id == "plan_1"


def test_whop_action_key_and_payment_reference():
    envelope = {"action": "payment.succeeded", "data": {"id": "pay_1", "membership_id": "mem_9"}}
    event = normalize("whop", envelope)
    assert event.kind == EventKind.RENEWED
    assert event.subscription_id == "mem_9"


def test_whop_payment_failed_alias():
    event = normalize("whop", {"event": "invoice_past_due", "data": {"membership": {"id": "mem_9"}}})
    assert event.kind == EventKind.PAYMENT_FAILED
    assert event.subscription_id == "mem_9"


def test_unknown_event_and_missing_data_are_ignored():
    assert normalize("whop", {"event": "membership.metadata_updated", "data": {}}) is None
    assert normalize("whop", {"event": "membership.went_valid"}) is None
    assert normalize("stripe", {"type": "customer.created", "data": {"object": {}}}) is None
    assert normalize("stripe", {"type": "invoice.paid"}) is None
    assert normalize("whop", ["not", "an", "object"]) is None


def test_stripe_checkout_completed():
    envelope = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {"object": {
            "customer": "cus_1",
            "subscription": "sub_1",
            "customer_details": {"email": "Payer@Example.com", "name": "Pat Payer"},
            "metadata": {"plan": "quarterly", "userId": "7"},
        }},
    }
    event = normalize("stripe", envelope)
    assert event.kind == EventKind.ACTIVATED
    assert event.email == "payer@example.com"
    assert event.customer_id == "cus_1"
    assert event.subscription_id == "sub_1"
    assert event.user_id == 7
    assert event.plan == "quarterly"
    assert event.period_end is None


def test_stripe_invoice_reads_line_period():
    envelope = {
        "type": "invoice.payment_succeeded",
        "data": {"object": {
            "customer": "cus_1",
            "subscription": "sub_1",
            "lines": {"data": [{"period": {"start": 1767225600, "end": 1769904000}}]},
        }},
    }
    event = normalize("stripe", envelope)
    assert event.kind == EventKind.RENEWED
    assert event.period_start == datetime(2026, 1, 1)
    assert event.period_end == datetime(2026, 2, 1)


def test_stripe_invoice_subscription_under_parent():
    envelope = {
        "type": "invoice.payment_failed",
        "data": {"object": {
            "customer": "cus_1",
            "parent": {"subscription_details": {"subscription": "sub_2"}},
        }},
    }
    event = normalize("stripe", envelope)
    assert event.kind == EventKind.PAYMENT_FAILED
    assert event.subscription_id == "sub_2"


def test_stripe_subscription_deleted_uses_object_id():
    envelope = {"type": "customer.subscription.deleted", "data": {"object": {"id": "sub_3", "customer": "cus_3"}}}
    event = normalize("stripe", envelope)
    assert event.kind == EventKind.DEACTIVATED
    assert event.subscription_id == "sub_3"
    assert event.customer_id == "cus_3"


def test_parse_timestamp_formats():
    assert parse_timestamp(1767225600) == datetime(2026, 1, 1)
    assert parse_timestamp("1767225600") == datetime(2026, 1, 1)
    assert parse_timestamp("2026-01-01T02:00:00+02:00") == datetime(2026, 1, 1)
    assert parse_timestamp("2026-01-01T00:00:00Z") == datetime(2026, 1, 1)
    assert parse_timestamp("not a date") is None
    assert parse_timestamp(None) is None


@pytest.mark.parametrize("envelope", [
    {"event": ["membership.went_valid"], "data": {"id": "mem_1"}},
    {"event": {"name": "membership.went_valid"}, "data": {"id": "mem_1"}},
    {"action": 7, "data": {"id": "mem_1"}},
])
def test_whop_non_string_event_type_is_ignored(envelope):
    assert normalize("whop", envelope) is None


def test_stripe_non_string_event_type_is_ignored():
    assert normalize("stripe", {"type": ["invoice.paid"], "data": {"object": {}}}) is None


def test_whop_wrongly_typed_fields_are_dropped():
    envelope = whop_membership_event()
    envelope["data"]["user"]["username"] = 123
    envelope["data"]["plan"]["plan_name"] = 5
    envelope["data"]["product"]["name"] = ["AlgoEdge Weekly"]
    envelope["data"]["metadata"] = {"user_id": 10 ** 30}
    event = normalize("whop", envelope)
    assert event.kind == EventKind.ACTIVATED
    assert event.handle_hint is None
    assert event.plan_hint is None
    assert event.plan == "monthly"
    assert event.user_id is None
    assert event.email == "buyer@example.com"


def test_stripe_checkout_with_malformed_objects():
    envelope = {
        "type": "checkout.session.completed",
        "data": {"object": {
            "customer": {"unexpected": True},
            "customer_details": "buyer@example.com",
            "customer_email": "buyer@example.com",
            "subscription": ["sub_1"],
            "metadata": {"plan": 3, "userId": True},
        }},
    }
    event = normalize("stripe", envelope)
    assert event.kind == EventKind.ACTIVATED
    assert event.email == "buyer@example.com"
    assert event.customer_id is None
    assert event.subscription_id is None
    assert event.user_id is None
    assert event.plan == "monthly"


@pytest.mark.parametrize("obj", [
    {"customer": "cus_1", "lines": "x", "parent": "x"},
    {"customer": "cus_1", "lines": {"data": "x"}, "parent": {"subscription_details": "x"}},
    {"customer": "cus_1", "lines": {"data": ["x"]}},
    {"customer": "cus_1", "lines": {"data": [{"period": "x", "price": "x", "plan": 4, "description": 9}]}},
])
def test_stripe_invoice_with_malformed_objects(obj):
    event = normalize("stripe", {"type": "invoice.payment_failed", "data": {"object": obj}})
    assert event.kind == EventKind.PAYMENT_FAILED
    assert event.customer_id == "cus_1"
    assert event.subscription_id is None
    assert event.period_end is None
    assert event.plan is None
