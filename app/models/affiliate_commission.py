from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Numeric
from datetime import datetime
from app.db.base import Base


class AffiliateCommission(Base):
    """
    Append-only commission ledger.

    One row per first-time activation of a referred user's subscription. Rows are
    never edited here; a separate payout process moves status approved -> paid/reversed.
    """

    __tablename__ = "affiliate_commissions"

    id = Column(Integer, primary_key=True, index=True)
    affiliate_user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    referred_user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True)

    # "<provider>:<external subscription id>"; unique so a redelivered activation can never pay twice
    source_ref = Column(String, nullable=False, unique=True)

    # Amount in USD major units (e.g. 4.90); stored as decimal for precision
    amount = Column(Numeric(12, 2), nullable=False)
    commission_rate = Column(Numeric(5, 2), nullable=False)
    status = Column(String, nullable=False, default="approved")  # approved | paid | reversed

    period_start = Column(DateTime, nullable=True)
    period_end = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
