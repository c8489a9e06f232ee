from app.models.user import User
from app.models.subscription import Subscription
from app.models.affiliate_commission import AffiliateCommission
from app.models.user_settings import UserSettings

__all__ = [
    "User",
    "Subscription",
    "AffiliateCommission",
    "UserSettings",
]
