from __future__ import annotations

import sys
from datetime import date, datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from productionportal.core.v1 import store
from productionportal.core.v1.production import (
    assign_line,
    create_factory,
    create_line,
    create_work_order,
    factory_today,
    list_work_orders,
    parse_date,
    resolve_stage_label,
    submit,
    update_work_order,
)


# -------------------------------
# store
# -------------------------------

def test_insert_fills_id_and_created_at(tmp_path: Path):
    row = store.insert(tmp_path, "lines", {"factory_id": "f1", "line_id": "L1"})
    assert len(row["id"]) == 26
    assert row["created_at"].endswith("Z")
    assert (tmp_path / store.table_relpath("lines")).exists()
    assert store.get(tmp_path, "lines", row["id"])["line_id"] == "L1"
    assert store.get(tmp_path, "lines", "") is None


def test_select_filters_orders_and_limits(tmp_path: Path):
    for n, qty in (("PO-3", 30), ("PO-1", None), ("PO-2", 20)):
        store.insert(tmp_path, "work_orders", {"factory_id": "f1", "po_number": n, "order_qty": qty})
    store.insert(tmp_path, "work_orders", {"factory_id": "f2", "po_number": "PO-9", "order_qty": 90})

    assert [r["po_number"] for r in store.select(tmp_path, "work_orders", {"factory_id": "f1"}, order_by="po_number")] == [
        "PO-1", "PO-2", "PO-3",
    ]
    # None sorts first ascending and last descending
    desc = store.select(tmp_path, "work_orders", {"factory_id": "f1"}, order_by="order_qty", desc=True)
    assert [r["po_number"] for r in desc] == ["PO-3", "PO-2", "PO-1"]
    assert len(store.select(tmp_path, "work_orders", {"po_number": ["PO-1", "PO-9"]})) == 2
    assert len(store.select(tmp_path, "work_orders", limit=1)) == 1
    assert store.first(tmp_path, "work_orders", {"factory_id": "nope"}) is None


def test_unique_keys_on_insert_and_update(tmp_path: Path):
    key = {"work_order_id": "wo1", "line_id": "L1", "production_date": "2025-03-10"}
    store.insert(tmp_path, "sewing_actuals", {**key, "good_today": 1})
    with pytest.raises(store.DuplicateRecordError) as exc:
        store.insert(tmp_path, "sewing_actuals", {**key, "good_today": 2})
    assert exc.value.code == "23505"

    other = store.insert(tmp_path, "sewing_actuals", {**key, "production_date": "2025-03-11", "good_today": 3})
    with pytest.raises(store.DuplicateRecordError):
        store.update(tmp_path, "sewing_actuals", {"id": other["id"]}, {"production_date": "2025-03-10"})


def test_update_delete_upsert(tmp_path: Path):
    a = store.insert(tmp_path, "rate_limits", {"identifier": "ip", "action": "login", "attempts": 1})
    assert store.update(tmp_path, "rate_limits", {"id": a["id"]}, {"attempts": 2, "id": "hijack"}) == 1
    updated = store.get(tmp_path, "rate_limits", a["id"])
    assert updated["attempts"] == 2
    assert "updated_at" in updated

    row = store.upsert(tmp_path, "rate_limits", {"identifier": "ip", "action": "login", "attempts": 3}, ("identifier", "action"))
    assert row["id"] == a["id"]
    assert row["attempts"] == 3
    store.upsert(tmp_path, "rate_limits", {"identifier": "ip2", "action": "login", "attempts": 1}, ("identifier", "action"))
    assert len(store.select(tmp_path, "rate_limits")) == 2

    assert store.delete(tmp_path, "rate_limits", {"identifier": "ip"}) == 1
    with pytest.raises(ValueError):
        store.delete(tmp_path, "rate_limits", {})
    with pytest.raises(ValueError):
        store.update(tmp_path, "rate_limits", {}, {"attempts": 0})


def test_rejects_bad_table_names_and_skips_malformed_rows(tmp_path: Path):
    with pytest.raises(ValueError):
        store.insert(tmp_path, "../escape", {})
    with pytest.raises(ValueError):
        store.table_relpath("Lines")

    p = tmp_path / store.table_relpath("lines")
    p.parent.mkdir(parents=True)
    p.write_text('{"id": "a", "line_id": "L1"}\nnot json\n\n')
    assert [r["id"] for r in store.select(tmp_path, "lines")] == ["a"]


# -------------------------------
# production records
# -------------------------------

def test_create_factory_starts_trial(tmp_path: Path):
    fac = create_factory(tmp_path, " Acme ", timezone_name="Asia/Dhaka", today=date(2025, 3, 1))
    assert fac["name"] == "Acme"
    assert fac["subscription_status"] == "trial"
    assert fac["trial_end_date"] == "2025-03-15"
    with pytest.raises(ValueError):
        create_factory(tmp_path, "  ")


def test_factory_today_uses_factory_timezone(tmp_path: Path):
    late_utc = datetime(2025, 3, 10, 20, 0, tzinfo=timezone.utc)
    assert factory_today(tmp_path, {"timezone": "Asia/Dhaka"}, now=late_utc) == date(2025, 3, 11)
    assert factory_today(tmp_path, {"timezone": "America/New_York"}, now=late_utc) == date(2025, 3, 10)


def test_parse_date():
    assert parse_date("2025-03-10T12:00:00Z") == date(2025, 3, 10)
    assert parse_date(datetime(2025, 3, 10, 5)) == date(2025, 3, 10)
    assert parse_date("") is None
    with pytest.raises(ValueError):
        parse_date("10/03/2025")


def test_lines_and_work_orders(tmp_path: Path):
    fac = create_factory(tmp_path, "Acme")
    other = create_factory(tmp_path, "Other")
    line = create_line(tmp_path, fac["id"], "L1", name="Line 1")
    foreign = create_line(tmp_path, other["id"], "L1")
    with pytest.raises(ValueError):
        create_line(tmp_path, fac["id"], "L1")
    with pytest.raises(FileNotFoundError):
        create_line(tmp_path, "missing", "L2")

    wo = create_work_order(
        tmp_path, fac["id"], po_number="PO-1", buyer=" Zara ", style="Tee", order_qty="1200",
        planned_ex_factory="2025-04-01T00:00:00", line_id=line["id"],
    )
    assert wo["buyer"] == "Zara"
    assert wo["order_qty"] == 1200
    assert wo["planned_ex_factory"] == "2025-04-01"
    with pytest.raises(ValueError):
        create_work_order(tmp_path, fac["id"], po_number="PO-2", buyer="b", style="s", order_qty=-5)
    with pytest.raises(ValueError):
        create_work_order(tmp_path, fac["id"], po_number="PO-3", buyer="b", style="s", order_qty=1, status="lost")

    assign_line(tmp_path, wo["id"], line["id"])
    with pytest.raises(store.DuplicateRecordError):
        assign_line(tmp_path, wo["id"], line["id"])
    with pytest.raises(PermissionError):
        assign_line(tmp_path, wo["id"], foreign["id"])

    update_work_order(tmp_path, wo["id"], {"is_active": False})
    assert list_work_orders(tmp_path, fac["id"]) == []
    assert len(list_work_orders(tmp_path, fac["id"], active_only=False)) == 1


def test_submit_validates_and_normalises(tmp_path: Path):
    payload = {
        "factory_id": "f1", "work_order_id": "wo1", "line_id": "L1",
        "production_date": "2025-03-10", "good_today": "450", "reject_today": "2.5",
    }
    rec = submit(tmp_path, "sewing_actuals", payload, user_id="u1")
    assert rec["good_today"] == 450
    assert rec["reject_today"] == 2.5
    assert rec["submitted_by"] == "u1"
    assert rec["submitted_at"]

    with pytest.raises(store.DuplicateRecordError):
        submit(tmp_path, "sewing_actuals", payload)
    with pytest.raises(ValueError, match="Missing required field"):
        submit(tmp_path, "sewing_actuals", {"factory_id": "f1"})
    with pytest.raises(ValueError, match="must be >= 0"):
        submit(tmp_path, "sewing_actuals", {**payload, "production_date": "2025-03-11", "good_today": -1})
    with pytest.raises(ValueError, match="must be a number"):
        submit(tmp_path, "sewing_actuals", {**payload, "production_date": "2025-03-12", "good_today": "lots"})
    with pytest.raises(ValueError, match="Unknown form type"):
        submit(tmp_path, "payroll", payload)


def test_finishing_log_type_is_upper_cased(tmp_path: Path):
    base = {"factory_id": "f1", "work_order_id": "wo1", "production_date": "2025-03-10"}
    rec = submit(tmp_path, "finishing_daily_logs", {**base, "log_type": "output", "carton": 10})
    assert rec["log_type"] == "OUTPUT"
    with pytest.raises(ValueError):
        submit(tmp_path, "finishing_daily_logs", {**base, "log_type": "lunch"})


def test_resolve_stage_label():
    assert resolve_stage_label("Sewing", True, True) == "Sewing"
    assert resolve_stage_label("Sewing", True, False) == "Sewing Target"
    assert resolve_stage_label("Sewing", False, True) == "Sewing EOD"
