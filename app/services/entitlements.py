"""
Entitlement store: the only writer of subscriptions rows and of the users.*
subscription mirror columns.

Every apply() is one transaction: the subscriptions row is locked FOR UPDATE, the
mirror is updated and, on a first activation, the commission row is written
before a single commit. Deliveries for the same user serialize on that row lock;
different users never block each other.

Webhooks are at-least-once and unordered, so each handler is written to be a
no-op when replayed:
  - Activated for the external id already recorded as active only moves
    current_period_end forward, and never pays commission again.
  - Renewed never shrinks the period, only derives one when the current
    period has lapsed, and never revives an ended subscription without a
    strictly later period.
  - Renewed, PaymentFailed and Deactivated for a subscription the row no
    longer tracks are ignored.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.core.plans import FREE_PLAN, is_paid_plan, manual_period_end, resolve_period_end, resolve_plan
from app.models.subscription import Subscription
from app.models.user import User
from app.services.accounts import find_user_by_email, provision_account
from app.services.commissions import CommissionEngine
from app.services.events import (
    PROVIDER_POLICIES,
    ApplyResult,
    DeactivationPolicy,
    EventKind,
    PaymentEvent,
    PendingNotification,
    Provider,
)

logger = logging.getLogger(__name__)

INACTIVE_STATUSES = ("expired", "canceled")


class EntitlementStore:
    def __init__(self, db: Session, settings: Settings, commissions: Optional[CommissionEngine] = None):
        self.db = db
        self.settings = settings
        self.commissions = commissions or CommissionEngine(db, settings)

    # ------------------------------------------------------------------ public

    def apply(self, event: PaymentEvent) -> Optional[ApplyResult]:
        """Apply one canonical event atomically. Returns None when the event was a no-op."""
        handlers = {
            EventKind.ACTIVATED: self._activate,
            EventKind.RENEWED: self._renew,
            EventKind.PAYMENT_FAILED: self._payment_failed,
            EventKind.DEACTIVATED: self._deactivate,
        }
        try:
            result = handlers[event.kind](event)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return result

    def activate_manually(self, user: User, plan: str, duration_days: int) -> ApplyResult:
        """
        Admin/support override. Goes through the same activation path as a webhook,
        but never provisions and never pays commission. Extends from the current
        period end when the user is already on an active paid plan.
        """
        try:
            sub = self._lock_subscription(user)
            extending = sub.status == "active" and is_paid_plan(sub.plan)
            now = datetime.utcnow()
            event = PaymentEvent(
                kind=EventKind.ACTIVATED,
                provider=Provider.MANUAL,
                event_type="admin.activate",
                user_id=user.id,
                email=user.email,
                plan=resolve_plan(plan),
                period_start=sub.current_period_start if extending and sub.current_period_start else now,
                period_end=manual_period_end(sub.current_period_end if extending else None, duration_days, now),
            )
            result = self._activate(event)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return result

    # ------------------------------------------------------------- resolution

    def _find_by_external_ids(self, event: PaymentEvent) -> Optional[Subscription]:
        q = self.db.query(Subscription)
        if event.provider == Provider.STRIPE:
            if event.subscription_id:
                sub = q.filter(Subscription.stripe_subscription_id == event.subscription_id).first()
                if sub:
                    return sub
            if event.customer_id:
                return q.filter(Subscription.stripe_customer_id == event.customer_id).first()
        elif event.provider == Provider.WHOP:
            if event.subscription_id:
                sub = q.filter(Subscription.whop_membership_id == event.subscription_id).first()
                if sub:
                    return sub
            if event.external_user_id:
                return q.filter(Subscription.whop_user_id == event.external_user_id).first()
        return None

    def _resolve_user(self, event: PaymentEvent, provision: bool) -> Optional[User]:
        # External ids first: they are what makes redeliveries land on the same row
        sub = self._find_by_external_ids(event)
        if sub:
            return sub.user

        if event.provider == Provider.STRIPE and event.customer_id:
            user = self.db.query(User).filter(User.stripe_customer_id == event.customer_id).first()
            if user:
                return user

        if event.user_id is not None:
            user = self.db.query(User).filter(User.id == event.user_id).first()
            if user:
                return user

        if event.email:
            user = find_user_by_email(self.db, event.email)
            if user:
                return user
            if provision:
                user, _ = provision_account(
                    self.db,
                    event.email,
                    handle_hint=event.handle_hint,
                    whop_user_id=event.external_user_id if event.provider == Provider.WHOP else None,
                )
                return user
        return None

    def _lock_subscription(self, user: User) -> Subscription:
        """SELECT ... FOR UPDATE the user's row, creating the free row if registration never did."""
        query = (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user.id)
            .with_for_update()
            .populate_existing()
        )
        sub = query.first()
        if sub:
            return sub
        try:
            with self.db.begin_nested():
                sub = Subscription(user_id=user.id, plan=FREE_PLAN, status="active")
                self.db.add(sub)
                self.db.flush()
        except IntegrityError:
            logger.info("[Entitlements] Subscription row for user %s created concurrently", user.id)
            sub = query.first()
        return sub

    @staticmethod
    def _recorded_external_id(sub: Subscription, provider: Provider) -> Optional[str]:
        if provider == Provider.STRIPE:
            return sub.stripe_subscription_id
        if provider == Provider.WHOP:
            return sub.whop_membership_id
        return None

    @staticmethod
    def _activation_ref(event: PaymentEvent) -> Optional[str]:
        if event.source_ref:
            return event.source_ref
        if event.event_id:
            return f"{event.provider.value}:event:{event.event_id}"
        return None

    def _ignored_as_not_current(self, sub: Subscription, user: User, event: PaymentEvent) -> bool:
        """
        True when the event belongs to a subscription the row no longer tracks: an
        older external id, or any id while another provider owns the active plan.
        """
        recorded = self._recorded_external_id(sub, event.provider)
        if event.subscription_id and recorded and recorded != event.subscription_id:
            logger.info(
                "[Entitlements] %s %s for old subscription %s (current %s) of user %s; ignoring",
                event.provider.value, event.kind.value, event.subscription_id, recorded, user.id,
            )
            return True
        if sub.provider and sub.provider != event.provider.value and sub.status == "active":
            logger.info(
                "[Entitlements] %s %s for user %s whose active plan belongs to %s; ignoring",
                event.provider.value, event.kind.value, user.id, sub.provider,
            )
            return True
        return False

    # ---------------------------------------------------------------- writes

    @staticmethod
    def _mirror(user: User, sub: Subscription) -> None:
        user.subscription_status = sub.status
        user.subscription_plan = sub.plan
        user.subscription_expires_at = sub.current_period_end

    @staticmethod
    def _record_external_ids(sub: Subscription, user: User, event: PaymentEvent) -> None:
        if event.provider == Provider.STRIPE:
            sub.stripe_subscription_id = event.subscription_id or sub.stripe_subscription_id
            sub.stripe_customer_id = event.customer_id or sub.stripe_customer_id
            if event.customer_id and not user.stripe_customer_id:
                user.stripe_customer_id = event.customer_id
        elif event.provider == Provider.WHOP:
            sub.whop_membership_id = event.subscription_id or sub.whop_membership_id
            sub.whop_user_id = event.external_user_id or sub.whop_user_id
            sub.whop_product_id = event.product_id or sub.whop_product_id
            sub.whop_plan_id = event.plan_id or sub.whop_plan_id
            if event.external_user_id and not user.whop_user_id:
                user.whop_user_id = event.external_user_id

    def _result(self, user: User, sub: Subscription, event: PaymentEvent, changed: bool) -> ApplyResult:
        return ApplyResult(user_id=user.id, subscription_id=sub.id, kind=event.kind, changed=changed)

    def _activate(self, event: PaymentEvent) -> Optional[ApplyResult]:
        user = self._resolve_user(event, provision=event.provider != Provider.MANUAL)
        if not user:
            logger.warning(
                "[Entitlements] %s %s: no user for email=%s subscription=%s; ignoring",
                event.provider.value, event.event_type, event.email, event.subscription_id,
            )
            return None

        sub = self._lock_subscription(user)
        recorded = self._recorded_external_id(sub, event.provider)
        activation_ref = self._activation_ref(event)
        if event.subscription_id:
            same_subscription = recorded == event.subscription_id
        else:
            # One-time payments carry no subscription id; the event id is all we have
            same_subscription = activation_ref is not None and sub.activation_ref == activation_ref

        if same_subscription and sub.status == "active":
            changed = False
            if event.period_end and (sub.current_period_end is None or event.period_end > sub.current_period_end):
                sub.current_period_end = event.period_end
                self._mirror(user, sub)
                changed = True
            logger.info(
                "[Entitlements] Duplicate activation of %s %s for user %s (period moved: %s)",
                event.provider.value, event.subscription_id, user.id, changed,
            )
            return self._result(user, sub, event, changed)

        if same_subscription and sub.status in INACTIVE_STATUSES and (
            event.period_end is None
            or (sub.current_period_end is not None and event.period_end <= sub.current_period_end)
        ):
            logger.info(
                "[Entitlements] Stale activation of %s %s for user %s after deactivation; ignoring",
                event.provider.value, event.subscription_id, user.id,
            )
            return self._result(user, sub, event, False)

        now = datetime.utcnow()
        plan = event.plan or resolve_plan(event.plan_hint)
        start = event.period_start or now
        end = resolve_period_end(plan, start, event.period_end)
        if same_subscription and sub.current_period_end and end < sub.current_period_end:
            end = sub.current_period_end

        sub.plan = plan
        sub.status = "active"
        sub.provider = event.provider.value
        sub.current_period_start = start
        sub.current_period_end = end
        if activation_ref:
            sub.activation_ref = activation_ref
        self._record_external_ids(sub, user, event)
        user.is_active = True
        self._mirror(user, sub)
        self.db.flush()

        result = self._result(user, sub, event, True)
        if event.provider == Provider.MANUAL:
            logger.info("[Entitlements] Manually activated %s for user %s until %s", plan, user.id, end)
            return result

        result.first_activation = not same_subscription
        if result.first_activation:
            if activation_ref:
                commission, note = self.commissions.record_activation(user, sub, activation_ref)
                if commission:
                    result.commission_id = commission.id
                if note:
                    result.notifications.append(note)
            else:
                logger.warning(
                    "[Commission] Activation for user %s has no subscription or event id; skipping commission",
                    user.id,
                )
            user_settings = user.settings
            result.notifications.append(PendingNotification(
                kind="subscription_activated",
                payload={
                    "to_email": user.email,
                    "telegram_chat_id": user_settings.telegram_chat_id if user_settings and user_settings.telegram_notifications else None,
                    "email_enabled": user_settings.email_notifications if user_settings else True,
                    "plan": plan,
                    "expires_at": end,
                },
            ))

        logger.info(
            "[Entitlements] Activated %s for user %s via %s (%s) until %s",
            plan, user.id, event.provider.value, event.subscription_id, end,
        )
        return result

    def _renew(self, event: PaymentEvent) -> Optional[ApplyResult]:
        user = self._resolve_user(event, provision=False)
        if not user:
            logger.info("[Entitlements] Renewal for unknown %s subscription %s; ignoring", event.provider.value, event.subscription_id)
            return None

        sub = self._lock_subscription(user)
        if not is_paid_plan(sub.plan):
            # Payment arrived before the activation; the activation will set everything
            logger.info("[Entitlements] Renewal for user %s without a paid plan yet; ignoring", user.id)
            return None
        if self._ignored_as_not_current(sub, user, event):
            return None
        if sub.status in INACTIVE_STATUSES and (
            event.period_end is None
            or (sub.current_period_end is not None and event.period_end <= sub.current_period_end)
        ):
            # A late payment for a subscription that has since ended must not revive it
            logger.info(
                "[Entitlements] Stale renewal for user %s whose subscription is %s; ignoring",
                user.id, sub.status,
            )
            return None

        now = datetime.utcnow()
        current_end = sub.current_period_end
        if event.period_end is not None:
            candidate = event.period_end
        elif current_end is None or current_end <= now:
            candidate = resolve_period_end(sub.plan, now)
        else:
            candidate = current_end

        new_end = max(current_end, candidate) if current_end else candidate
        changed = new_end != current_end or sub.status != "active"
        if new_end != current_end and event.period_start:
            sub.current_period_start = event.period_start
        sub.current_period_end = new_end
        sub.status = "active"
        self._mirror(user, sub)

        logger.info("[Entitlements] Renewed %s for user %s until %s (changed: %s)", sub.plan, user.id, new_end, changed)
        return self._result(user, sub, event, changed)

    def _payment_failed(self, event: PaymentEvent) -> Optional[ApplyResult]:
        user = self._resolve_user(event, provision=False)
        if not user:
            logger.info("[Entitlements] Payment failure for unknown %s customer %s; ignoring", event.provider.value, event.customer_id)
            return None

        sub = self._lock_subscription(user)
        if not is_paid_plan(sub.plan):
            logger.info("[Entitlements] Payment failure for user %s without a paid plan; ignoring", user.id)
            return None
        if self._ignored_as_not_current(sub, user, event):
            return None
        if sub.status in INACTIVE_STATUSES:
            logger.info("[Entitlements] Payment failure for user %s whose subscription is %s; ignoring", user.id, sub.status)
            return None

        changed = sub.status != "past_due"
        sub.status = "past_due"
        self._mirror(user, sub)
        logger.info("[Entitlements] User %s is past_due after %s payment failure", user.id, event.provider.value)
        return self._result(user, sub, event, changed)

    def _deactivate(self, event: PaymentEvent) -> Optional[ApplyResult]:
        user = self._resolve_user(event, provision=False)
        if not user:
            logger.info("[Entitlements] Deactivation for unknown %s subscription %s; ignoring", event.provider.value, event.subscription_id)
            return None

        sub = self._lock_subscription(user)
        if self._ignored_as_not_current(sub, user, event):
            return None

        policy = PROVIDER_POLICIES[event.provider]
        before = (sub.status, sub.plan)
        sub.status = policy.deactivated_status
        if policy.on_deactivate == DeactivationPolicy.RESET_PLAN:
            sub.plan = FREE_PLAN
        self._mirror(user, sub)

        logger.info(
            "[Entitlements] Deactivated user %s via %s: %s/%s -> %s/%s",
            user.id, event.provider.value, before[0], before[1], sub.status, sub.plan,
        )
        return self._result(user, sub, event, before != (sub.status, sub.plan))
