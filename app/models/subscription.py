from sqlalchemy import Column, Integer, String, ForeignKey, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime
from app.db.base import Base


class Subscription(Base):
    """
    The entitlement record: exactly one row per user.

    Only app.services.entitlements writes to this table; request handlers read it.
    """

    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    plan = Column(String, nullable=False, default="free")  # free | weekly | monthly | quarterly
    status = Column(String, nullable=False, default="active")  # active | past_due | expired | canceled
    provider = Column(String, nullable=True)  # stripe | whop | manual (last writer)

    # Stripe identifiers
    stripe_customer_id = Column(String, unique=False, nullable=True, index=True)
    stripe_subscription_id = Column(String, unique=True, nullable=True)
    # Whop identifiers
    # Kept separate from Stripe so each provider's webhooks resolve by their own ids.
    whop_membership_id = Column(String, unique=True, nullable=True)
    whop_user_id = Column(String, unique=False, nullable=True)
    whop_product_id = Column(String, nullable=True)
    whop_plan_id = Column(String, nullable=True)

    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    # "<provider>:<external id>" or "<provider>:event:<event id>" of the last applied activation
    activation_ref = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="subscription")
