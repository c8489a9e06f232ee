"""
Read path for feature gating. Never writes.

Expiry is not checked here: an entitlement only stops granting access when a
Deactivated event flips its status.
"""
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import Settings
from app.core.plans import is_paid_plan
from app.models.subscription import Subscription
from app.models.user import User

ADMIN_STATUS: Dict[str, Any] = {"status": "active", "plan": "admin", "expiresAt": None, "isActive": True}


def _is_admin(user: User, settings: Settings) -> bool:
    return user.is_admin or settings.is_admin_email(user.email)


def _live_subscription(db: Session, user: User) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.user_id == user.id).first()


def has_access(db: Session, user: User, settings: Settings) -> bool:
    if _is_admin(user, settings):
        return True
    sub = _live_subscription(db, user)
    if sub and sub.status == "active" and is_paid_plan(sub.plan):
        return True
    # Either store granting access is enough; the user mirror can diverge from the row
    return user.subscription_status == "active" and is_paid_plan(user.subscription_plan)


def subscription_status(db: Session, user: User, settings: Settings) -> Dict[str, Any]:
    if _is_admin(user, settings):
        return dict(ADMIN_STATUS)

    sub = _live_subscription(db, user)
    if sub:
        status, plan, expires_at = sub.status, sub.plan, sub.current_period_end
    else:
        status = user.subscription_status or "trial"
        plan = user.subscription_plan
        expires_at = user.subscription_expires_at

    return {
        "status": status,
        "plan": plan,
        "expiresAt": expires_at,
        "isActive": has_access(db, user, settings),
    }
