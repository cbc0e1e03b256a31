from __future__ import annotations

import sys
from datetime import date, datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from productionportal.core.v1.production import create_factory, create_line, create_work_order, submit
from productionportal.core.v1.buyer import (
    buyer_dashboard,
    compute_buyer_alerts,
    compute_buyer_health,
    days_left,
    grant_access,
    sort_alerts,
)


NOW = datetime(2025, 3, 10, 6, 0, tzinfo=timezone.utc)


def test_days_left_rounds_up_to_utc_midnight():
    assert days_left("2025-03-11", NOW) == 1
    assert days_left("2025-03-10", NOW) == 0
    assert days_left("2025-03-09", NOW) == -1


@pytest.mark.parametrize(
    "wo, agg, expected",
    [
        ({"order_qty": 100, "planned_ex_factory": "2025-03-12"}, {"cumulativeGood": 100}, ("completed", "Completed")),
        ({"order_qty": 100}, {"cumulativeGood": 10}, ("no_deadline", "No deadline")),
        ({"order_qty": 100, "planned_ex_factory": "2025-03-01"}, {"cumulativeGood": 10}, ("at_risk", "Deadline passed")),
        ({"order_qty": 100, "planned_ex_factory": "2025-03-15"}, {"cumulativeGood": 50}, ("at_risk", "At risk")),
        ({"order_qty": 100, "planned_ex_factory": "2025-03-22"}, {"cumulativeGood": 50}, ("watch", "Watch")),
        ({"order_qty": 100, "planned_ex_factory": "2025-04-30"}, {"cumulativeGood": 50}, ("watch", "No update today")),
        (
            {"order_qty": 100, "planned_ex_factory": "2025-04-30"},
            {"cumulativeGood": 50, "hasEodToday": True},
            ("healthy", "On track"),
        ),
    ],
)
def test_buyer_health_rules(wo, agg, expected):
    h = compute_buyer_health(wo, agg, NOW)
    assert (h["status"], h["label"]) == expected


def test_alerts_in_check_order_and_sorted():
    wo = {"id": "w1", "po_number": "PO-7", "order_qty": 1000, "planned_ex_factory": "2025-03-14", "status": "in_progress"}
    agg = {"cumulativeGood": 400, "rejectTotal": 40, "finishingCarton": 100, "hasEodToday": False}
    history = [{"production_date": f"2025-03-0{d}", "good_today": 50} for d in range(1, 9)]

    alerts = compute_buyer_alerts(wo, agg, history, now=NOW)
    assert [a["type"] for a in alerts] == ["no_update_today", "qc_reject_high", "packing_behind", "ex_factory_at_risk"]
    assert alerts[1]["message"] == "PO-7 has a 9.1% reject rate (40 rejects)."
    assert alerts[2]["message"] == "PO-7 has 300 units sewn but not yet packed."
    assert alerts[3]["message"] == "PO-7 needs ~12 days to complete but only 4 days remain."

    assert [a["severity"] for a in sort_alerts(alerts)] == ["critical", "critical", "warning", "warning"]


def test_deadline_passed_alert_and_completed_po_skips_no_update():
    wo = {"id": "w2", "po_number": "PO-8", "order_qty": 500, "planned_ex_factory": "2025-03-01", "status": "completed"}
    alerts = compute_buyer_alerts(wo, {"cumulativeGood": 100}, [], now=NOW)
    assert [a["type"] for a in alerts] == ["ex_factory_at_risk"]
    assert alerts[0]["title"] == "Deadline passed"
    assert "400 units remaining" in alerts[0]["message"]


def test_dashboard_only_shows_granted_orders(tmp_path: Path):
    repo = tmp_path / "repo"
    fac = create_factory(repo, "Acme", today=date(2025, 3, 1))
    line = create_line(repo, fac["id"], "L1")
    wo = create_work_order(repo, fac["id"], po_number="PO-1", buyer="H&M", style="Tee", order_qty=200,
                           planned_ex_factory="2025-04-30", line_id=line["id"])
    create_work_order(repo, fac["id"], po_number="PO-2", buyer="H&M", style="Tee", order_qty=200)
    submit(repo, "sewing_actuals", {
        "factory_id": fac["id"], "work_order_id": wo["id"], "line_id": line["id"],
        "production_date": "2025-03-10", "good_today": 60, "cumulative_good_total": 60,
    })
    grant_access(repo, "buyer-1", wo["id"])
    # Granting twice keeps one access row
    grant_access(repo, "buyer-1", wo["id"])

    dash = buyer_dashboard(repo, "buyer-1", "2025-03-10", now=NOW)
    assert dash["kpis"] == {"totalPOs": 1, "totalQty": 200, "totalSewed": 60, "totalPacked": 0}
    assert len(dash["orders"]) == 1
    entry = dash["orders"][0]
    assert entry["work_order"]["po_number"] == "PO-1"
    assert entry["aggregates"]["hasEodToday"] is True
    assert "sewingHistory" not in entry["aggregates"]
    assert entry["health"]["status"] == "healthy"

    assert buyer_dashboard(repo, "nobody", "2025-03-10", now=NOW)["orders"] == []


def test_grant_access_unknown_work_order(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        grant_access(tmp_path, "buyer-1", "missing")
