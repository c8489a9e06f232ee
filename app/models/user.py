from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Numeric
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.db.base import Base

class User(Base):
    __tablename__ = "users"
    
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)  # Always stored lower-cased
    username = Column(String, unique=True, index=True, nullable=True)
    hashed_password = Column(String, nullable=True)  # NULL for accounts provisioned from a payment
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    role = Column(String, default="user", nullable=False)  # "user" | "admin"
    is_active = Column(Boolean, default=True, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)
    is_blocked = Column(Boolean, default=False, nullable=False)

    # Payment provider identities
    whop_user_id = Column(String, index=True, nullable=True)
    stripe_customer_id = Column(String, index=True, nullable=True)

    # Affiliate program. referred_by is set once at registration and never rewritten.
    referral_code = Column(String, unique=True, index=True, nullable=True)
    referred_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    affiliate_commission_rate = Column(Numeric(5, 2), nullable=True)  # Percent; NULL = platform default

    # Mirror of the subscriptions row, kept in the same transaction as every entitlement write
    subscription_status = Column(String, nullable=True)
    subscription_plan = Column(String, nullable=True)
    subscription_expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    subscription = relationship("Subscription", back_populates="user", uselist=False)
    settings = relationship("UserSettings", back_populates="user", uselist=False)
    referrer = relationship("User", remote_side=[id])

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
