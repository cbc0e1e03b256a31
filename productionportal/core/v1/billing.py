from __future__ import annotations
import math
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

import requests

from . import store
from .config import get_billing_settings, get_stripe_secret_key
from .logger import get_logger, log_step
from .plans import STRIPE_PRODUCT_TO_TIER, TIER_MAX_LINES, DEFAULT_MAX_LINES, tier_from_amount

logger = get_logger(__name__)

GRACE_PERIOD_DAYS = 7
STRIPE_API_BASE = "https://api.stripe.com/v1"
_TAG = "CHECK-SUBSCRIPTION"


class StripeGateway:
    """Minimal read-only Stripe client over the REST API."""

    def __init__(self, secret_key: str, *, base_url: str = STRIPE_API_BASE, timeout: float = 20):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _get(self, path: str, params: Optional[Dict] = None) -> Dict:
        resp = requests.get(
            f"{self.base_url}/{path.lstrip('/')}",
            params=params or {},
            auth=(self.secret_key, ""),
            timeout=self.timeout,
        )
        if resp.status_code >= 400:
            raise RuntimeError(f"Stripe API error: {resp.status_code} - {resp.text[:500]}")
        return resp.json()

    def list_customers(self, email: str, limit: int = 10) -> List[Dict]:
        return self._get("customers", {"email": email, "limit": limit}).get("data") or []

    def list_subscriptions(self, customer_id: str, limit: int = 10) -> List[Dict]:
        return self._get("subscriptions", {"customer": customer_id, "status": "all", "limit": limit}).get("data") or []

    def retrieve_subscription(self, subscription_id: str) -> Dict:
        return self._get(f"subscriptions/{subscription_id}")


def default_gateway() -> StripeGateway:
    key = get_stripe_secret_key()
    if not key:
        raise RuntimeError("PP_STRIPE_SECRET_KEY is not set")
    return StripeGateway(key)


def parse_stripe_timestamp(value) -> Optional[datetime]:
    """Stripe returns unix seconds or ISO strings depending on API version."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    return None


def _parse_db_time(value) -> Optional[datetime]:
    if not value:
        return None
    return parse_stripe_timestamp(str(value))


def _days_until(when: datetime, now: datetime) -> int:
    return math.ceil((when - now) / timedelta(days=1))


def _first_item(sub: Dict) -> Optional[Dict]:
    items = ((sub.get("items") or {}).get("data")) or []
    return items[0] if items else None


def _product_id(item: Dict) -> Optional[str]:
    product = (item.get("price") or {}).get("product")
    if isinstance(product, dict):
        return product.get("id")
    return product


def _customer_id(sub: Dict) -> Optional[str]:
    customer = sub.get("customer")
    return customer.get("id") if isinstance(customer, dict) else customer


def derive_tier(sub: Dict, *, tier: str = "starter", max_lines: int = DEFAULT_MAX_LINES) -> tuple:
    """(tier, max_lines) from a subscription's first item.

    Falls back to the given values when neither the product nor the unit
    amount is recognised.
    """
    item = _first_item(sub)
    if item:
        mapped = STRIPE_PRODUCT_TO_TIER.get(_product_id(item))
        if not mapped:
            amount = (item.get("price") or {}).get("unit_amount")
            mapped = tier_from_amount(amount) if amount else None
        if mapped:
            tier = mapped
            max_lines = TIER_MAX_LINES.get(tier) or DEFAULT_MAX_LINES
    return tier, max_lines


def _find_active(subs: List[Dict]) -> Optional[Dict]:
    for s in subs:
        if s.get("status") in ("active", "trialing"):
            return s
    return None


def _profile_factory_id(datarepo_path: Path, user: Dict) -> Optional[str]:
    if user.get("factory_id"):
        return user["factory_id"]
    profile = store.get(datarepo_path, "profiles", user.get("id"))
    return (profile or {}).get("factory_id")


def check_subscription(
    datarepo_path: Path,
    user: Dict,
    *,
    gateway: Optional[StripeGateway] = None,
    now: Optional[datetime] = None,
) -> Dict:
    """Resolve a user's access level from config, the factory row and Stripe.

    `user` needs id and email. The factory row is kept in sync with what
    Stripe reports so later checks can be answered from the datarepo.
    """
    now = now or datetime.now(timezone.utc)
    email = (user.get("email") or "").strip()
    if not email:
        raise PermissionError("Auth session missing or expired")
    log_step(logger, _TAG, "User authenticated", {"userId": user.get("id"), "email": email})

    factory_id = _profile_factory_id(datarepo_path, user)

    granted_tier = get_billing_settings(datarepo_path)["granted_free_access"].get(email.lower())
    if granted_tier:
        log_step(logger, _TAG, "Granted free access", {"email": email, "tier": granted_tier})
        max_lines = TIER_MAX_LINES.get(granted_tier) or DEFAULT_MAX_LINES
        if factory_id:
            store.update(datarepo_path, "factory_accounts", {"id": factory_id}, {
                "subscription_status": "active",
                "subscription_tier": granted_tier,
                "max_lines": max_lines,
            })
            factory = store.get(datarepo_path, "factory_accounts", factory_id) or {}
            return {
                "subscribed": True,
                "hasAccess": True,
                "isTrial": False,
                "currentTier": granted_tier,
                "maxLines": max_lines,
                "factoryName": factory.get("name"),
            }
        return {
            "subscribed": True,
            "hasAccess": True,
            "isTrial": False,
            "needsFactory": True,
            "currentTier": granted_tier,
            "maxLines": max_lines,
        }

    gateway = gateway or default_gateway()

    if not factory_id:
        log_step(logger, _TAG, "No factory assigned, checking Stripe directly")
        customers = gateway.list_customers(email, limit=1)
        if customers:
            customer_id = customers[0]["id"]
            active = _find_active(gateway.list_subscriptions(customer_id, limit=10))
            if active:
                is_trial = active.get("status") == "trialing"
                trial_end = parse_stripe_timestamp(active.get("trial_end")) if active.get("trial_end") else None
                # product map only, no amount fallback, when there is no factory yet
                item = _first_item(active)
                tier = STRIPE_PRODUCT_TO_TIER.get(_product_id(item)) if item else None
                tier = tier or "starter"
                log_step(logger, _TAG, "User has active subscription but no factory",
                         {"subscriptionId": active.get("id"), "status": active.get("status"), "tier": tier})
                return {
                    "subscribed": not is_trial,
                    "hasAccess": True,
                    "isTrial": is_trial,
                    "needsFactory": True,
                    "currentTier": tier,
                    "maxLines": TIER_MAX_LINES.get(tier) or DEFAULT_MAX_LINES,
                    "daysRemaining": _days_until(trial_end, now) if is_trial and trial_end else None,
                    "stripeCustomerId": customer_id,
                    "stripeSubscriptionId": active.get("id"),
                }
        log_step(logger, _TAG, "No factory and no active subscription")
        return {"subscribed": False, "needsFactory": True, "hasAccess": False}

    factory = store.get(datarepo_path, "factory_accounts", factory_id)
    if not factory:
        log_step(logger, _TAG, "Factory not found")
        return {"subscribed": False, "needsFactory": True, "hasAccess": False}

    log_step(logger, _TAG, "Factory found", {
        "factoryId": factory_id,
        "status": factory.get("subscription_status"),
        "tier": factory.get("subscription_tier"),
        "trialEnd": factory.get("trial_end_date"),
    })
    db_tier = factory.get("subscription_tier") or "starter"
    db_max_lines = factory.get("max_lines") or DEFAULT_MAX_LINES

    def respond_active(sub: Dict) -> Dict:
        tier, max_lines = derive_tier(sub, tier=db_tier, max_lines=db_max_lines)
        store.update(datarepo_path, "factory_accounts", {"id": factory_id}, {
            "stripe_customer_id": _customer_id(sub),
            "stripe_subscription_id": sub.get("id"),
            "subscription_tier": tier,
            "max_lines": max_lines,
            "subscription_status": sub.get("status"),
            "payment_failed_at": None,
        })
        is_trial = sub.get("status") == "trialing"
        period_end = sub.get("current_period_end")
        if period_end is None and _first_item(sub):
            period_end = _first_item(sub).get("current_period_end")
        period_end = parse_stripe_timestamp(period_end)
        trial_end = parse_stripe_timestamp(sub.get("trial_end")) if sub.get("trial_end") else None
        return {
            "subscribed": not is_trial,
            "hasAccess": True,
            "isTrial": is_trial,
            "subscriptionEnd": period_end.isoformat() if period_end else None,
            "currentTier": tier,
            "maxLines": max_lines,
            "factoryName": factory.get("name"),
            "daysRemaining": _days_until(trial_end, now) if is_trial and trial_end else None,
        }

    def respond_past_due(payment_failed_at) -> Dict:
        failed_at = _parse_db_time(payment_failed_at)
        within_grace = bool(failed_at and (now - failed_at) < timedelta(days=GRACE_PERIOD_DAYS))
        log_step(logger, _TAG, "Past due subscription", {"paymentFailedAt": payment_failed_at, "withinGrace": within_grace})
        return {
            "subscribed": False,
            "hasAccess": within_grace,
            "isPastDue": True,
            "needsPayment": not within_grace,
            "paymentFailedAt": payment_failed_at,
            "gracePeriodDays": GRACE_PERIOD_DAYS,
            "currentTier": db_tier,
            "maxLines": db_max_lines,
            "factoryName": factory.get("name"),
        }

    def mark_past_due(sub: Dict, *, sync_ids: bool) -> Dict:
        payment_failed_at = factory.get("payment_failed_at") or now.isoformat()
        changes = {"subscription_status": "past_due", "payment_failed_at": payment_failed_at}
        if sync_ids:
            changes.update({"stripe_customer_id": _customer_id(sub), "stripe_subscription_id": sub.get("id")})
        store.update(datarepo_path, "factory_accounts", {"id": factory_id}, changes)
        return respond_past_due(payment_failed_at)

    stripe_checked = False
    try:
        sub = _find_subscription_by_email(gateway, email)
        stripe_checked = True
        if sub:
            if sub.get("status") == "past_due":
                # DB "active" means a successful payment already landed; never downgrade
                if factory.get("subscription_status") == "active":
                    log_step(logger, _TAG, "Stripe says past_due but DB says active, not downgrading")
                    return respond_active(sub)
                return mark_past_due(sub, sync_ids=True)
            return respond_active(sub)
    except (requests.RequestException, RuntimeError, KeyError) as e:
        log_step(logger, _TAG, "Error checking subscription by email", {"error": str(e)})

    if factory.get("stripe_subscription_id"):
        try:
            sub = gateway.retrieve_subscription(factory["stripe_subscription_id"])
            stripe_checked = True
            log_step(logger, _TAG, "Stripe subscription retrieved by stored ID", {"id": sub.get("id"), "status": sub.get("status")})
            status = sub.get("status")
            if status in ("active", "trialing"):
                return respond_active(sub)
            if status == "past_due":
                if factory.get("subscription_status") == "active":
                    return respond_active(sub)
                return mark_past_due(sub, sync_ids=False)
            store.update(datarepo_path, "factory_accounts", {"id": factory_id}, {"subscription_status": status})
            factory["subscription_status"] = status
            log_step(logger, _TAG, "Stored subscription not active", {"status": status})
        except (requests.RequestException, RuntimeError, KeyError) as e:
            log_step(logger, _TAG, "Error checking stored Stripe subscription", {"error": str(e)})

    status = factory.get("subscription_status")
    trial_end_raw = factory.get("trial_end_date")
    trial_end = _parse_db_time(trial_end_raw)

    if status == "active":
        log_step(logger, _TAG, "Access granted from DB status", {"status": status})
        return {
            "subscribed": True,
            "hasAccess": True,
            "isTrial": False,
            "currentTier": db_tier,
            "maxLines": db_max_lines,
            "factoryName": factory.get("name"),
        }

    if status == "trialing":
        out = {
            "subscribed": True,
            "hasAccess": True,
            "isTrial": True,
            "currentTier": db_tier,
            "maxLines": db_max_lines,
            "factoryName": factory.get("name"),
        }
        if trial_end and trial_end > now:
            out["daysRemaining"] = _days_until(trial_end, now)
        if trial_end_raw:
            out["trialEndDate"] = trial_end_raw
        log_step(logger, _TAG, "Access granted from DB status", {"status": status, "daysRemaining": out.get("daysRemaining")})
        return out

    if status == "trial" and trial_end:
        if trial_end > now:
            days = _days_until(trial_end, now)
            log_step(logger, _TAG, "Active trial (from DB)", {"trialEndDate": trial_end_raw, "daysRemaining": days})
            return {
                "subscribed": False,
                "hasAccess": True,
                "isTrial": True,
                "trialEndDate": trial_end_raw,
                "daysRemaining": days,
                "currentTier": db_tier,
                "maxLines": db_max_lines,
                "factoryName": factory.get("name"),
            }
        # A transient Stripe failure must not expire a trial that may have been paid
        if stripe_checked:
            store.update(datarepo_path, "factory_accounts", {"id": factory_id}, {"subscription_status": "expired"})
            log_step(logger, _TAG, "Trial expired (confirmed via Stripe)")
        else:
            log_step(logger, _TAG, "Trial expired locally but Stripe check failed, not marking as expired")

    if status == "past_due":
        return respond_past_due(factory.get("payment_failed_at"))

    log_step(logger, _TAG, "No active subscription or trial")
    return {
        "subscribed": False,
        "hasAccess": False,
        "needsPayment": True,
        "currentTier": db_tier,
        "maxLines": db_max_lines,
    }


def _find_subscription_by_email(gateway: StripeGateway, email: str) -> Optional[Dict]:
    """Active/trialing subscription across all customers with this email, else past_due."""
    customers = gateway.list_customers(email, limit=10)
    if not customers:
        log_step(logger, _TAG, "No Stripe customers found for email")
        return None
    log_step(logger, _TAG, "Found Stripe customers by email", {"count": len(customers)})
    past_due = None
    for customer in customers:
        subs = gateway.list_subscriptions(customer["id"], limit=10)
        active = _find_active(subs)
        if active:
            log_step(logger, _TAG, "Active subscription found",
                     {"customerId": customer["id"], "subscriptionId": active.get("id"), "status": active.get("status")})
            return active
        if past_due is None:
            past_due = next((s for s in subs if s.get("status") == "past_due"), None)
    if past_due:
        log_step(logger, _TAG, "Past due subscription found (no active)", {"subscriptionId": past_due.get("id")})
    return past_due
