"""Plan tiers for active-line based billing.

Prices are in cents. Yearly prices carry a 15% discount. Enterprise is
custom-priced (0) with no line cap (None).
"""
from __future__ import annotations
import math
from typing import Dict, Optional

YEARLY_DISCOUNT = 0.15

TIER_ORDER = ("starter", "growth", "scale", "enterprise")


def _yearly(monthly: int) -> int:
    return int(math.floor(monthly * 12 * (1 - YEARLY_DISCOUNT) + 0.5))


PLAN_TIERS: Dict[str, Dict] = {
    "starter": {
        "id": "starter",
        "name": "Starter",
        "description": "Perfect for small factories",
        "price_monthly": 39999,
        "price_yearly": _yearly(39999),
        "max_active_lines": 30,
        "popular": False,
        "features": [
            "Up to 30 active production lines",
            "All production modules included",
            "Real-time insights & analytics",
            "Work order management",
            "Blocker tracking & alerts",
            "Unlimited users",
            "Email support",
        ],
        "stripe_price_id_monthly": "price_1SnFcPHWgEvVObNzV8DUHzpe",
        "stripe_price_id_yearly": "price_1SnGNvHWgEvVObNzzSlIyDmj",
        "stripe_product_id": "prod_Tkl8Q1w6HfSqER",
    },
    "growth": {
        "id": "growth",
        "name": "Growth",
        "description": "For growing operations",
        "price_monthly": 54999,
        "price_yearly": _yearly(54999),
        "max_active_lines": 60,
        "popular": True,
        "features": [
            "Up to 60 active production lines",
            "All Starter features",
            "Priority email support",
            "Monthly insights reports",
        ],
        "stripe_price_id_monthly": "price_1SnFcNHWgEvVObNzag27TfQY",
        "stripe_price_id_yearly": "price_1SnGPGHWgEvVObNz1cEK82X6",
        "stripe_product_id": "prod_Tkl8hBoNi8dZZL",
    },
    "scale": {
        "id": "scale",
        "name": "Scale",
        "description": "For large factories",
        "price_monthly": 62999,
        "price_yearly": _yearly(62999),
        "max_active_lines": 100,
        "popular": False,
        "features": [
            "Up to 100 active production lines",
            "All Growth features",
            "Phone support",
            "Dedicated success manager",
        ],
        "stripe_price_id_monthly": "price_1SnFcIHWgEvVObNz2u1IfoEw",
        "stripe_price_id_yearly": "price_1SnGQQHWgEvVObNz6Gf4ff6Y",
        "stripe_product_id": "prod_Tkl8LGqEjZVnRG",
    },
    "enterprise": {
        "id": "enterprise",
        "name": "Enterprise",
        "description": "For enterprise operations",
        "price_monthly": 0,
        "price_yearly": 0,
        "max_active_lines": None,
        "popular": False,
        "features": [
            "Unlimited active production lines",
            "All Scale features",
            "Custom integrations",
            "SLA guarantee",
            "API access",
            "On-site training",
        ],
        "stripe_price_id_monthly": None,
        "stripe_price_id_yearly": None,
        "stripe_product_id": None,
    },
}

STRIPE_PRICE_TO_TIER: Dict[str, Dict[str, str]] = {}
STRIPE_PRODUCT_TO_TIER: Dict[str, str] = {}
for _tier, _plan in PLAN_TIERS.items():
    if _plan["stripe_price_id_monthly"]:
        STRIPE_PRICE_TO_TIER[_plan["stripe_price_id_monthly"]] = {"tier": _tier, "interval": "month"}
    if _plan["stripe_price_id_yearly"]:
        STRIPE_PRICE_TO_TIER[_plan["stripe_price_id_yearly"]] = {"tier": _tier, "interval": "year"}
    if _plan["stripe_product_id"]:
        STRIPE_PRODUCT_TO_TIER[_plan["stripe_product_id"]] = _tier

# Line caps enforced by check-subscription; enterprise is effectively unlimited
TIER_MAX_LINES = {
    "starter": 30,
    "growth": 60,
    "scale": 100,
    "enterprise": 999999,
}
DEFAULT_MAX_LINES = 30


def get_plan_by_price_id(price_id: str) -> Optional[Dict]:
    mapping = STRIPE_PRICE_TO_TIER.get(price_id)
    if not mapping:
        return None
    return {"plan": PLAN_TIERS[mapping["tier"]], "interval": mapping["interval"]}


def get_plan_by_product_id(product_id: str) -> Optional[Dict]:
    tier = STRIPE_PRODUCT_TO_TIER.get(product_id)
    return PLAN_TIERS[tier] if tier else None


def format_plan_price(price_in_cents: int) -> str:
    if price_in_cents == 0:
        return "Custom"
    return f"${price_in_cents / 100:,.2f}"


def get_max_lines_display(max_lines: Optional[int]) -> str:
    return "Unlimited" if max_lines is None else str(max_lines)


def map_legacy_tier(tier: Optional[str]) -> str:
    if tier in ("professional", "growth"):
        return "growth"
    if tier == "scale":
        return "scale"
    if tier in ("enterprise", "unlimited"):
        return "enterprise"
    return "starter"


def get_next_tier(current_tier: str) -> Optional[str]:
    idx = TIER_ORDER.index(current_tier)
    return TIER_ORDER[idx + 1] if idx < len(TIER_ORDER) - 1 else None


def get_price_id_for_tier(tier: str, interval: str) -> Optional[str]:
    plan = PLAN_TIERS[tier]
    return plan["stripe_price_id_yearly"] if interval == "year" else plan["stripe_price_id_monthly"]


def get_monthly_equivalent(yearly_price: int) -> int:
    return int(math.floor(yearly_price / 12 + 0.5))


def tier_from_amount(unit_amount) -> Optional[str]:
    """Tier for a price missing from the product map, by exact monthly unit amount (cents)."""
    for tier, plan in PLAN_TIERS.items():
        if plan["price_monthly"] and plan["price_monthly"] == unit_amount:
            return tier
    return None


def catalogue() -> list:
    """Plans in display order, with formatted prices."""
    out = []
    for tier in TIER_ORDER:
        plan = dict(PLAN_TIERS[tier])
        plan["price_monthly_display"] = format_plan_price(plan["price_monthly"])
        plan["price_yearly_display"] = format_plan_price(plan["price_yearly"])
        plan["max_lines_display"] = get_max_lines_display(plan["max_active_lines"])
        out.append(plan)
    return out
