from datetime import datetime

from app.models.subscription import Subscription
from app.services.access import has_access, subscription_status
from app.services.accounts import provision_account, register_account
from conftest import ADMIN_EMAIL


def test_free_user_has_no_access(db, settings):
    user = register_account(db, "free@example.com", "x")
    db.commit()
    assert not has_access(db, user, settings)
    assert subscription_status(db, user, settings) == {
        "status": "active", "plan": "free", "expiresAt": None, "isActive": False,
    }


def test_active_paid_plan_has_access(db, settings):
    user = register_account(db, "paid@example.com", "x")
    sub = db.query(Subscription).filter(Subscription.user_id == user.id).one()
    sub.plan = "quarterly"
    sub.current_period_end = datetime(2030, 1, 1)
    db.commit()

    assert has_access(db, user, settings)
    status = subscription_status(db, user, settings)
    assert status["plan"] == "quarterly"
    assert status["expiresAt"] == datetime(2030, 1, 1)
    assert status["isActive"] is True


def test_admin_email_bypass(db, settings):
    user = register_account(db, ADMIN_EMAIL.upper(), "x")
    db.commit()
    assert has_access(db, user, settings)
    assert subscription_status(db, user, settings) == {
        "status": "active", "plan": "admin", "expiresAt": None, "isActive": True,
    }


def test_admin_role_bypass(db, settings):
    user = register_account(db, "staff@example.com", "x")
    user.role = "admin"
    db.commit()
    assert has_access(db, user, settings)


def test_mirror_fallback_without_subscription_row(db, settings):
    user, _ = provision_account(db, "legacy@example.com")
    db.commit()
    assert subscription_status(db, user, settings)["status"] == "trial"

    user.subscription_status = "active"
    user.subscription_plan = "monthly"
    db.commit()
    assert has_access(db, user, settings)


def test_admin_email_bypass_without_subscription_row(db, settings):
    user, _ = provision_account(db, ADMIN_EMAIL)
    db.commit()
    assert db.query(Subscription).count() == 0
    assert has_access(db, user, settings)
