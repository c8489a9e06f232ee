"""
Referral commissions.

Called by the entitlement store inside its transaction, only for a first-time
activation. The commission row is the financial fact of record; the referrer
notification is queued and sent after commit by the notifier.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.core.plans import plan_price
from app.models.affiliate_commission import AffiliateCommission
from app.models.subscription import Subscription
from app.models.user import User
from app.services.events import PendingNotification

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def compute_commission(price: Decimal, rate: Decimal) -> Decimal:
    return (Decimal(price) * Decimal(rate) / Decimal(100)).quantize(CENTS, rounding=ROUND_HALF_UP)


class CommissionEngine:
    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings

    def rate_for(self, referrer: User) -> Decimal:
        if referrer.affiliate_commission_rate is not None:
            return Decimal(referrer.affiliate_commission_rate)
        return Decimal(self.settings.default_commission_rate)

    def record_activation(
        self,
        user: User,
        subscription: Subscription,
        source_ref: str,
    ) -> Tuple[Optional[AffiliateCommission], Optional[PendingNotification]]:
        """
        Write one approved commission for the user's referrer, if any.

        source_ref is unique in the ledger, so a second call for the same external
        subscription returns (None, None) instead of paying twice.
        """
        if not user.referred_by:
            return None, None

        referrer = self.db.query(User).filter(User.id == user.referred_by).first()
        if not referrer:
            logger.warning("[Commission] User %s references missing referrer %s", user.id, user.referred_by)
            return None, None

        existing = self.db.query(AffiliateCommission).filter(AffiliateCommission.source_ref == source_ref).first()
        if existing:
            logger.info("[Commission] Commission for %s already recorded (id=%s)", source_ref, existing.id)
            return None, None

        price = plan_price(subscription.plan, self.settings.plan_prices)
        rate = self.rate_for(referrer)
        amount = compute_commission(price, rate)

        commission = AffiliateCommission(
            affiliate_user_id=referrer.id,
            referred_user_id=user.id,
            subscription_id=subscription.id,
            source_ref=source_ref,
            amount=amount,
            commission_rate=rate,
            status="approved",
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
        )
        try:
            with self.db.begin_nested():
                self.db.add(commission)
                self.db.flush()
        except IntegrityError:
            # A concurrent delivery recorded it between our check and insert
            logger.info("[Commission] Concurrent commission insert for %s, keeping the existing row", source_ref)
            return None, None

        logger.info(
            "[Commission] Awarded $%s (%s%% of %s) to affiliate %s for user %s on %s plan",
            amount, rate, price, referrer.id, user.id, subscription.plan,
        )

        referrer_settings = referrer.settings
        notification = PendingNotification(
            kind="commission_earned",
            payload={
                "to_email": referrer.email,
                "telegram_chat_id": referrer_settings.telegram_chat_id if referrer_settings and referrer_settings.telegram_notifications else None,
                "email_enabled": referrer_settings.email_notifications if referrer_settings else True,
                "subscriber": user.username or user.email.split("@")[0],
                "plan": subscription.plan,
                "plan_price": price,
                "amount": amount,
            },
        )
        return commission, notification
