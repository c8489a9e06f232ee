"""
Runtime configuration for the billing engine.

Everything is read from the environment (.env is loaded by app.main). Routes and
services receive a Settings instance through get_settings() so tests can inject
their own price table, secrets and environment.
"""
import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from functools import lru_cache
from typing import Dict, Optional

from app.core.plans import DEFAULT_PLAN_PRICES

logger = logging.getLogger(__name__)


class Environment(str, Enum):
    PRODUCTION = "production"
    DEVELOPMENT = "development"


def _parse_environment(raw: Optional[str]) -> Environment:
    value = (raw or "").strip().lower()
    if value in ("development", "dev", "local"):
        return Environment.DEVELOPMENT
    if value and value not in ("production", "prod"):
        logger.warning("[Config] Unknown APP_ENV=%r, treating as production", raw)
    return Environment.PRODUCTION


def parse_plan_prices(raw: Optional[str]) -> Dict[str, Decimal]:
    """
    Parse "weekly:19,monthly:49,quarterly:149" into a price table.
    Entries that fail to parse are skipped; an empty result falls back to the defaults.
    """
    prices: Dict[str, Decimal] = {}
    for token in (raw or "").split(","):
        if ":" not in token:
            continue
        plan, _, amount = token.partition(":")
        plan = plan.strip().lower()
        try:
            prices[plan] = Decimal(amount.strip())
        except InvalidOperation:
            logger.warning("[Config] Ignoring invalid PLAN_PRICES entry: %r", token)
    return prices or dict(DEFAULT_PLAN_PRICES)


@dataclass
class Settings:
    environment: Environment = Environment.PRODUCTION
    stripe_webhook_secret: str = ""
    stripe_api_key: str = ""
    whop_webhook_secret: str = ""
    whop_api_key: str = ""
    whop_api_base: str = "https://api.whop.com/api/v2"
    admin_email: str = ""
    plan_prices: Dict[str, Decimal] = field(default_factory=lambda: dict(DEFAULT_PLAN_PRICES))
    default_commission_rate: Decimal = Decimal("10")
    resend_api_key: str = ""
    notify_from_email: str = "AlgoEdge <no-reply@algoedgehub.com>"
    app_name: str = "AlgoEdge"
    telegram_bot_token: str = ""
    frontend_url: str = "http://localhost:3000"

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    def webhook_secret_for(self, provider: str) -> str:
        return {
            "stripe": self.stripe_webhook_secret,
            "whop": self.whop_webhook_secret,
        }.get(provider, "")

    def is_admin_email(self, email: Optional[str]) -> bool:
        if not self.admin_email or not email:
            return False
        return email.strip().lower() == self.admin_email.strip().lower()


def load_settings() -> Settings:
    rate_raw = os.getenv("DEFAULT_COMMISSION_RATE", "10").strip()
    try:
        default_rate = Decimal(rate_raw)
    except InvalidOperation:
        logger.warning("[Config] Invalid DEFAULT_COMMISSION_RATE=%r, using 10", rate_raw)
        default_rate = Decimal("10")

    return Settings(
        environment=_parse_environment(os.getenv("APP_ENV")),
        # Strip whitespace to avoid invisible copy/paste errors.
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", "").strip(),
        stripe_api_key=os.getenv("STRIPE_SECRET_KEY", "").strip(),
        whop_webhook_secret=os.getenv("WHOP_WEBHOOK_SECRET", "").strip(),
        whop_api_key=os.getenv("WHOP_API_KEY", "").strip(),
        whop_api_base=os.getenv("WHOP_API_BASE", "https://api.whop.com/api/v2").rstrip("/"),
        admin_email=os.getenv("ADMIN_EMAIL", "").strip().lower(),
        plan_prices=parse_plan_prices(os.getenv("PLAN_PRICES")),
        default_commission_rate=default_rate,
        resend_api_key=os.getenv("RESEND_API_KEY", "").strip(),
        notify_from_email=os.getenv("NOTIFY_FROM_EMAIL", "AlgoEdge <no-reply@algoedgehub.com>"),
        app_name=os.getenv("APP_NAME", "AlgoEdge"),
        telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN", "").strip(),
        frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
    )


@lru_cache()
def get_settings() -> Settings:
    return load_settings()


def warn_missing_webhook_secrets(settings: Settings) -> None:
    """Called once at startup so a missing secret shows up in deploy logs, not on the first payment."""
    for provider in ("stripe", "whop"):
        if settings.webhook_secret_for(provider):
            continue
        if settings.is_production:
            logger.error(
                "[Config] %s webhook secret is not set; %s webhooks will be REJECTED until it is configured",
                provider.upper(), provider,
            )
        else:
            logger.warning(
                "!!! [Config] %s webhook secret is not set; signature verification is DISABLED "
                "(APP_ENV=development). Never run this configuration in production. !!!",
                provider.upper(),
            )
