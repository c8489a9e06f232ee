"""
Canonical payment lifecycle events.

Both providers' webhooks are reduced to PaymentEvent before anything touches the
database, so the entitlement store never sees provider-specific shapes.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class Provider(str, Enum):
    STRIPE = "stripe"
    WHOP = "whop"
    MANUAL = "manual"  # Admin override, never arrives by webhook


class EventKind(str, Enum):
    ACTIVATED = "activated"
    RENEWED = "renewed"
    PAYMENT_FAILED = "payment_failed"
    DEACTIVATED = "deactivated"


class DeactivationPolicy(str, Enum):
    RESET_PLAN = "reset_plan"
    PRESERVE_PLAN = "preserve_plan"


@dataclass(frozen=True)
class ProviderPolicy:
    on_deactivate: DeactivationPolicy
    deactivated_status: str


# Stripe drops the user back to free on cancellation; Whop keeps the last paid plan
# and only flips the status. See DESIGN.md open questions before unifying these.
PROVIDER_POLICIES: Dict[Provider, ProviderPolicy] = {
    Provider.STRIPE: ProviderPolicy(DeactivationPolicy.RESET_PLAN, "canceled"),
    Provider.WHOP: ProviderPolicy(DeactivationPolicy.PRESERVE_PLAN, "expired"),
    Provider.MANUAL: ProviderPolicy(DeactivationPolicy.PRESERVE_PLAN, "expired"),
}


@dataclass
class PaymentEvent:
    kind: EventKind
    provider: Provider
    event_type: str
    event_id: Optional[str] = None
    email: Optional[str] = None
    user_id: Optional[int] = None  # Our own user id, when the provider echoes checkout metadata
    external_user_id: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None  # Stripe subscription id / Whop membership id
    plan_hint: Optional[str] = None
    plan: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None  # Only set when the provider states it explicitly
    handle_hint: Optional[str] = None
    product_id: Optional[str] = None
    plan_id: Optional[str] = None

    @property
    def source_ref(self) -> Optional[str]:
        if not self.subscription_id:
            return None
        return f"{self.provider.value}:{self.subscription_id}"


@dataclass
class PendingNotification:
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ApplyResult:
    user_id: int
    subscription_id: int
    kind: EventKind
    changed: bool = True
    first_activation: bool = False
    commission_id: Optional[int] = None
    notifications: List[PendingNotification] = field(default_factory=list)
