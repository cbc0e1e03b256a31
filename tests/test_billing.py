from __future__ import annotations

import sys
from datetime import date, datetime, timezone
from pathlib import Path

import pytest
import requests
import yaml

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from productionportal.core.v1 import store
from productionportal.core.v1.billing import check_subscription, derive_tier
from productionportal.core.v1.config import DATAREPO_CONFIG_FILENAME
from productionportal.core.v1.plans import PLAN_TIERS
from productionportal.core.v1.production import create_factory


NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeGateway:
    """In-memory stand-in for the Stripe REST client."""

    def __init__(self, customers=None, subscriptions=None, fail=False):
        self.customers = customers or []
        self.subscriptions = subscriptions or {}
        self.fail = fail

    def list_customers(self, email, limit=10):
        if self.fail:
            raise requests.ConnectionError("stripe unreachable")
        return self.customers[:limit]

    def list_subscriptions(self, customer_id, limit=10):
        return self.subscriptions.get(customer_id, [])[:limit]

    def retrieve_subscription(self, subscription_id):
        for subs in self.subscriptions.values():
            for s in subs:
                if s["id"] == subscription_id:
                    return s
        raise RuntimeError("Stripe API error: 404")


def _sub(status, product="growth", **extra):
    return {
        "id": f"sub_{status}",
        "status": status,
        "customer": "cus_1",
        "current_period_end": int(datetime(2025, 4, 10, tzinfo=timezone.utc).timestamp()),
        "items": {"data": [{"price": {"product": PLAN_TIERS[product]["stripe_product_id"], "unit_amount": 1}}]},
        **extra,
    }


@pytest.fixture()
def setup(tmp_path: Path):
    repo = tmp_path / "repo"
    fac = create_factory(repo, "Acme", today=date(2025, 3, 1))
    user = {"id": "u1", "email": "owner@acme.test", "factory_id": fac["id"]}
    return repo, fac, user


def test_derive_tier_by_product_then_amount():
    assert derive_tier(_sub("active", "scale")) == ("scale", 100)
    by_amount = {"items": {"data": [{"price": {"product": "prod_x", "unit_amount": 54999}}]}}
    assert derive_tier(by_amount) == ("growth", 60)
    assert derive_tier({"items": {"data": []}}, tier="starter", max_lines=30) == ("starter", 30)


def test_active_subscription_syncs_factory(setup):
    repo, fac, user = setup
    gw = FakeGateway(customers=[{"id": "cus_1"}], subscriptions={"cus_1": [_sub("active")]})
    res = check_subscription(repo, user, gateway=gw, now=NOW)
    assert res["subscribed"] is True
    assert res["hasAccess"] is True
    assert res["currentTier"] == "growth"
    assert res["maxLines"] == 60
    assert res["subscriptionEnd"].startswith("2025-04-10")

    row = store.get(repo, "factory_accounts", fac["id"])
    assert row["subscription_status"] == "active"
    assert row["stripe_subscription_id"] == "sub_active"


def test_trial_from_db_when_no_stripe_customer(setup):
    repo, _, user = setup
    res = check_subscription(repo, user, gateway=FakeGateway(), now=NOW)
    assert res["isTrial"] is True
    assert res["hasAccess"] is True
    assert res["daysRemaining"] == 5


def test_expired_trial_marked_only_after_stripe_answered(setup):
    repo, fac, user = setup
    later = datetime(2025, 4, 1, tzinfo=timezone.utc)

    res = check_subscription(repo, user, gateway=FakeGateway(fail=True), now=later)
    assert res["hasAccess"] is False
    assert store.get(repo, "factory_accounts", fac["id"])["subscription_status"] == "trial"

    res = check_subscription(repo, user, gateway=FakeGateway(), now=later)
    assert res == {"subscribed": False, "hasAccess": False, "needsPayment": True, "currentTier": "starter", "maxLines": 30}
    assert store.get(repo, "factory_accounts", fac["id"])["subscription_status"] == "expired"


def test_past_due_grace_period(setup):
    repo, fac, user = setup
    gw = FakeGateway(customers=[{"id": "cus_1"}], subscriptions={"cus_1": [_sub("past_due")]})
    res = check_subscription(repo, user, gateway=gw, now=NOW)
    assert res["isPastDue"] is True
    assert res["hasAccess"] is True
    assert res["gracePeriodDays"] == 7

    later = datetime(2025, 3, 20, tzinfo=timezone.utc)
    res = check_subscription(repo, user, gateway=gw, now=later)
    assert res["hasAccess"] is False
    assert res["needsPayment"] is True


def test_past_due_never_downgrades_active(setup):
    repo, fac, user = setup
    store.update(repo, "factory_accounts", {"id": fac["id"]}, {"subscription_status": "active"})
    gw = FakeGateway(customers=[{"id": "cus_1"}], subscriptions={"cus_1": [_sub("past_due")]})
    res = check_subscription(repo, user, gateway=gw, now=NOW)
    assert res["hasAccess"] is True
    assert "isPastDue" not in res


def test_granted_free_access_skips_stripe(setup):
    repo, fac, user = setup
    (repo / DATAREPO_CONFIG_FILENAME).write_text(
        yaml.safe_dump({"billing": {"granted_free_access": {"Owner@Acme.test": "scale"}}})
    )
    res = check_subscription(repo, user, gateway=FakeGateway(fail=True), now=NOW)
    assert res["currentTier"] == "scale"
    assert res["maxLines"] == 100
    assert res["factoryName"] == "Acme"


def test_missing_email_is_rejected(setup):
    repo, _, _ = setup
    with pytest.raises(PermissionError):
        check_subscription(repo, {"id": "u1"}, gateway=FakeGateway(), now=NOW)
