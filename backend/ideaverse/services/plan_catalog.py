"""Plan catalog - what each purchasable plan costs and grants"""
from typing import Dict, Optional

from ideaverse.core.errors import InvalidPurchaseError

# Sentinel for unlimited generations. Kept positive so that "remaining > 0"
# holds and generations_remaining never goes negative.
UNLIMITED = 999999

ONE_SHOT = "one_shot"
SPARK = "spark"
CREATOR = "creator"
UNIVERSE = "universe"

PLANS: Dict[str, Dict] = {
    ONE_SHOT: {
        "name": "One Generation",
        "description": "Single AI-powered game idea generation",
        "price_cents": 100,
        "generations": 1,
        "interval": None,
    },
    SPARK: {
        "name": "Spark Plan",
        "description": "4 AI-powered game idea generations per month",
        "price_cents": 200,
        "generations": 4,
        "interval": "month",
    },
    CREATOR: {
        "name": "Creator Plan",
        "description": "10 AI-powered game idea generations per month",
        "price_cents": 500,
        "generations": 10,
        "interval": "month",
    },
    UNIVERSE: {
        "name": "Universe Plan",
        "description": "Unlimited AI-powered game idea generations per month",
        "price_cents": 1100,
        "generations": UNLIMITED,
        "interval": "month",
    },
}

RECURRING_PLANS = frozenset(k for k, v in PLANS.items() if v["interval"])


def normalize_plan_type(plan_type: Optional[str]) -> str:
    """Map wire spellings ('one-shot', 'Creator ') onto catalog keys.

    Raises:
        InvalidPurchaseError: plan is empty or not in the catalog
    """
    if plan_type is None:
        raise InvalidPurchaseError("Plan type is required")
    key = str(getattr(plan_type, "value", plan_type)).strip().lower().replace("-", "_")
    if key not in PLANS:
        raise InvalidPurchaseError(f"Unknown plan type: {plan_type}")
    return key


def get_plan(plan_type: str) -> Dict:
    return PLANS[normalize_plan_type(plan_type)]


def get_plan_generations(plan_type: str) -> int:
    """Credits granted per purchase (one_shot) or per month (recurring plans)"""
    return get_plan(plan_type)["generations"]


def is_recurring(plan_type: str) -> bool:
    return normalize_plan_type(plan_type) in RECURRING_PLANS


def format_price(price_cents: int) -> str:
    return f"${price_cents / 100:.2f}"


def to_wire_plan_type(plan_type: str) -> str:
    """Spelling used in checkout metadata ('one-shot')"""
    return normalize_plan_type(plan_type).replace("_", "-")
