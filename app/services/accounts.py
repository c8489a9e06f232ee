"""
Account creation: regular registration and auto-provisioning of payers who
checked out before ever signing up.

Both paths share handle generation and baseline settings. Provisioning has to
survive the same activation being delivered twice at once, so the insert runs in
a savepoint and a unique-email conflict falls back to the row the other request
created.
"""
import logging
import random
import re
import string
from typing import Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.plans import FREE_PLAN
from app.models.subscription import Subscription
from app.models.user import User
from app.models.user_settings import UserSettings

logger = logging.getLogger(__name__)

MAX_PROVISION_ATTEMPTS = 5
HANDLE_SUFFIX_LENGTH = 4
REFERRAL_CODE_LENGTH = 8


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def find_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(func.lower(User.email) == normalize_email(email)).first()


def _handle_base(hint: Optional[str], email: str) -> str:
    raw = (hint.strip() if isinstance(hint, str) else "") or email.split("@")[0]
    base = re.sub(r"[^a-z0-9_]", "", raw.lower().replace(" ", "_").replace(".", "_"))
    return base[:20] or "user"


def generate_handle(db: Session, hint: Optional[str], email: str) -> str:
    """<base>_<4 random chars>, re-rolled until no existing user holds it."""
    base = _handle_base(hint, email)
    alphabet = string.ascii_lowercase + string.digits
    suffix_length = HANDLE_SUFFIX_LENGTH
    while True:
        for _ in range(10):
            candidate = f"{base}_{''.join(random.choices(alphabet, k=suffix_length))}"
            if not db.query(User.id).filter(User.username == candidate).first():
                return candidate
        suffix_length += 2


def generate_referral_code(db: Session) -> str:
    alphabet = string.ascii_uppercase + string.digits
    while True:
        code = "".join(random.choices(alphabet, k=REFERRAL_CODE_LENGTH))
        if not db.query(User.id).filter(User.referral_code == code).first():
            return code


def find_referrer(db: Session, referral_code: Optional[str]) -> Optional[User]:
    code = (referral_code or "").strip().upper()
    if not code:
        return None
    return db.query(User).filter(User.referral_code == code).first()


def provision_account(
    db: Session,
    email: str,
    handle_hint: Optional[str] = None,
    whop_user_id: Optional[str] = None,
) -> Tuple[User, bool]:
    """
    Return (user, created) for a payer e-mail, creating the account if needed.

    Payment counts as proof of contactability, so the account is created verified
    and active. Does not commit; the caller's transaction owns the write.
    """
    email = normalize_email(email)
    existing = find_user_by_email(db, email)
    if existing:
        return existing, False

    last_error: Optional[IntegrityError] = None
    for attempt in range(MAX_PROVISION_ATTEMPTS):
        user = User(
            email=email,
            username=generate_handle(db, handle_hint, email),
            referral_code=generate_referral_code(db),
            role="user",
            is_verified=True,
            is_active=True,
            whop_user_id=whop_user_id,
        )
        try:
            with db.begin_nested():
                db.add(user)
                db.flush()
                db.add(UserSettings(user_id=user.id))
                db.flush()
        except IntegrityError as e:
            last_error = e
            # Usually a concurrent delivery of the same activation won the insert
            existing = find_user_by_email(db, email)
            if existing:
                logger.info("[Provisioner] %s was created concurrently, using existing user %s", email, existing.id)
                return existing, False
            logger.warning("[Provisioner] Handle/referral collision for %s (attempt %s), retrying", email, attempt + 1)
            continue

        logger.info("[Provisioner] Created user %s (%s) for paying customer %s", user.id, user.username, email)
        return user, True

    raise last_error


def register_account(
    db: Session,
    email: str,
    hashed_password: str,
    username: Optional[str] = None,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    referral_code: Optional[str] = None,
) -> User:
    """
    Create a self-registered user with a free entitlement. referred_by is fixed here
    and nowhere else. Does not commit.
    """
    email = normalize_email(email)
    referrer = find_referrer(db, referral_code)
    if referral_code and not referrer:
        logger.info("[Accounts] Unknown referral code %r at registration for %s", referral_code, email)

    user = User(
        email=email,
        username=username or generate_handle(db, None, email),
        hashed_password=hashed_password,
        first_name=first_name,
        last_name=last_name,
        referral_code=generate_referral_code(db),
        referred_by=referrer.id if referrer else None,
        role="user",
        is_active=True,
        is_verified=False,
        subscription_status="active",
        subscription_plan=FREE_PLAN,
    )
    db.add(user)
    db.flush()
    db.add(UserSettings(user_id=user.id))
    db.add(Subscription(user_id=user.id, plan=FREE_PLAN, status="active"))
    db.flush()
    return user
