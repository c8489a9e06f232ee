import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional, Sequence, Tuple

from dateutil.relativedelta import relativedelta

logger = logging.getLogger(__name__)

FREE_PLAN = "free"
DEFAULT_PLAN = "monthly"

# Plan catalog. Prices are USD per billing period and only drive commission amounts;
# the payment providers own the actual charge.
DEFAULT_PLAN_PRICES: Dict[str, Decimal] = {
    "weekly": Decimal("19"),
    "monthly": Decimal("49"),
    "quarterly": Decimal("149"),
}

PLAN_DURATIONS: Dict[str, relativedelta] = {
    "weekly": relativedelta(days=7),
    "monthly": relativedelta(months=1),
    "quarterly": relativedelta(months=3),
}

# Evaluated top to bottom; first keyword hit wins, DEFAULT_PLAN otherwise.
PLAN_NAME_RULES: Sequence[Tuple[Tuple[str, ...], str]] = (
    (("week",), "weekly"),
    (("quarter", "90"), "quarterly"),
    (("month",), "monthly"),
)


def resolve_plan(*names: Optional[str]) -> str:
    """Map provider plan/product naming to a canonical plan. The first non-empty name is used."""
    text = next((n.strip().lower() for n in names if isinstance(n, str) and n.strip()), "")
    for keywords, plan in PLAN_NAME_RULES:
        if any(keyword in text for keyword in keywords):
            return plan
    return DEFAULT_PLAN


def resolve_period_end(plan: str, start: datetime, explicit_end: Optional[datetime] = None) -> datetime:
    """Provider supplied expiry wins; derive start + plan duration only when it is missing."""
    if explicit_end is not None:
        return explicit_end
    return start + PLAN_DURATIONS.get(plan, PLAN_DURATIONS[DEFAULT_PLAN])


def plan_price(plan: str, prices: Dict[str, Decimal]) -> Decimal:
    price = prices.get(plan)
    if price is not None:
        return Decimal(price)
    fallback = prices.get(DEFAULT_PLAN, DEFAULT_PLAN_PRICES[DEFAULT_PLAN])
    logger.warning("[Plans] No price configured for plan %r, using %s price %s", plan, DEFAULT_PLAN, fallback)
    return Decimal(fallback)


def is_paid_plan(plan: Optional[str]) -> bool:
    return bool(plan) and plan != FREE_PLAN


def manual_period_end(current_end: Optional[datetime], duration_days: int, now: Optional[datetime] = None) -> datetime:
    now = now or datetime.utcnow()
    base = current_end if current_end and current_end > now else now
    return base + timedelta(days=duration_days)
