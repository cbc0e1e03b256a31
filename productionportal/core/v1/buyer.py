from __future__ import annotations
import math
from datetime import datetime, time, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

from . import store
from .production import parse_date
from .logger import get_logger

logger = get_logger(__name__)

# -------------------------------
# Buyer portal
# - buyers see only the POs granted to them in buyer_po_access
# - aggregates are read from sewing/finishing/cutting actuals
# -------------------------------

DEFAULT_THRESHOLDS = {
    "qc_reject_pct": 5,
    # packing is behind when carton < sewn * this
    "packing_behind_pct": 0.7,
}

SEVERITY_ORDER = {"critical": 0, "warning": 1, "info": 2}

EMPTY_AGGREGATES = {
    "sewingOutput": 0,
    "cumulativeGood": 0,
    "rejectTotal": 0,
    "reworkTotal": 0,
    "finishingCarton": 0,
    "finishingPoly": 0,
    "finishingQcPass": 0,
    "cuttingTotal": 0,
    "cuttingInput": 0,
    "hasEodToday": False,
}


def _utc_now(now: Optional[datetime]) -> datetime:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now


def days_left(deadline, now: Optional[datetime] = None) -> int:
    """Whole days from `now` until UTC midnight of `deadline`, rounded up."""
    d = datetime.combine(parse_date(deadline), time(0), tzinfo=timezone.utc)
    delta = d - _utc_now(now)
    return math.ceil(delta / timedelta(days=1))


def compute_buyer_health(wo: Dict, agg: Dict, now: Optional[datetime] = None) -> Dict:
    order_qty = wo.get("order_qty") or 0
    progress = agg.get("cumulativeGood", 0) / order_qty * 100 if order_qty > 0 else 0

    if progress >= 100:
        return {"status": "completed", "label": "Completed"}
    if not wo.get("planned_ex_factory"):
        return {"status": "no_deadline", "label": "No deadline"}

    n = days_left(wo["planned_ex_factory"], now)
    if n < 0:
        return {"status": "at_risk", "label": "Deadline passed"}
    if n <= 7 and progress < 80:
        return {"status": "at_risk", "label": "At risk"}
    if n <= 14 and progress < 60:
        return {"status": "watch", "label": "Watch"}
    if not agg.get("hasEodToday"):
        return {"status": "watch", "label": "No update today"}
    return {"status": "healthy", "label": "On track"}


def _alert(wo: Dict, kind: str, severity: str, title: str, message: str) -> Dict:
    return {
        "type": kind,
        "severity": severity,
        "title": title,
        "message": message,
        "poId": wo.get("id"),
        "poNumber": wo.get("po_number"),
    }


def compute_buyer_alerts(
    wo: Dict,
    agg: Dict,
    sewing_history: Optional[List[Dict]] = None,
    thresholds: Optional[Dict] = None,
    *,
    now: Optional[datetime] = None,
) -> List[Dict]:
    """Alerts for one PO, in check order (no update, rejects, packing, ex-factory).

    `sewing_history` is daily sewing output, oldest first, each entry with
    production_date and good_today.
    """
    t = {**DEFAULT_THRESHOLDS, **(thresholds or {})}
    po = wo.get("po_number")
    alerts: List[Dict] = []

    if not agg.get("hasEodToday") and wo.get("status") != "completed":
        alerts.append(_alert(wo, "no_update_today", "warning", "No update today",
                             f"{po} has no production submissions today."))

    good = agg.get("cumulativeGood", 0)
    rejects = agg.get("rejectTotal", 0)
    produced = good + rejects
    if produced > 0:
        reject_pct = rejects / produced * 100
        if reject_pct > t["qc_reject_pct"]:
            alerts.append(_alert(wo, "qc_reject_high", "critical", "High reject rate",
                                 f"{po} has a {reject_pct:.1f}% reject rate ({rejects:,} rejects)."))

    carton = agg.get("finishingCarton", 0)
    if good > 100 and carton < good * t["packing_behind_pct"]:
        alerts.append(_alert(wo, "packing_behind", "warning", "Packing behind sewing",
                             f"{po} has {good - carton:,} units sewn but not yet packed."))

    order_qty = wo.get("order_qty") or 0
    if wo.get("planned_ex_factory") and order_qty > 0 and good < order_qty:
        remaining_days = days_left(wo["planned_ex_factory"], now)
        history = sewing_history or []
        if remaining_days > 0 and len(history) >= 3:
            recent = history[-7:]
            avg = sum(d.get("good_today") or 0 for d in recent) / len(recent)
            if avg > 0:
                days_needed = math.ceil((order_qty - good) / avg)
                if days_needed > remaining_days:
                    alerts.append(_alert(
                        wo, "ex_factory_at_risk", "critical", "Ex-factory at risk",
                        f"{po} needs ~{days_needed} days to complete but only {remaining_days} days remain.",
                    ))
        elif remaining_days < 0:
            alerts.append(_alert(
                wo, "ex_factory_at_risk", "critical", "Deadline passed",
                f"{po} ex-factory date has passed with {order_qty - good:,} units remaining.",
            ))
    return alerts


def sort_alerts(alerts: List[Dict]) -> List[Dict]:
    return sorted(alerts, key=lambda a: SEVERITY_ORDER.get(a.get("severity"), 9))


def granted_work_orders(datarepo_path: Path, user_id: str) -> List[Dict]:
    """Work orders a buyer user has been given access to."""
    access = store.select(datarepo_path, "buyer_po_access", {"user_id": user_id})
    ids = [a["work_order_id"] for a in access if a.get("work_order_id")]
    if not ids:
        return []
    return store.select(datarepo_path, "work_orders", {"id": ids}, order_by="po_number")


def grant_access(datarepo_path: Path, user_id: str, work_order_id: str) -> Dict:
    if store.get(datarepo_path, "work_orders", work_order_id) is None:
        raise FileNotFoundError(f"Work order not found: {work_order_id}")
    return store.upsert(
        datarepo_path, "buyer_po_access",
        {"user_id": user_id, "work_order_id": work_order_id},
        ("user_id", "work_order_id"),
    )


def aggregate_work_orders(datarepo_path: Path, work_order_ids: List[str], today) -> Dict[str, Dict]:
    """Per-PO aggregates plus `sewingHistory` (daily good output, oldest first)."""
    today_iso = parse_date(today).isoformat()
    aggs = {wid: {**EMPTY_AGGREGATES} for wid in work_order_ids}
    daily: Dict[str, Dict[str, float]] = {wid: {} for wid in work_order_ids}
    where = {"work_order_id": list(work_order_ids)}

    for row in store.select(datarepo_path, "sewing_actuals", where):
        agg = aggs.get(row.get("work_order_id"))
        if agg is None:
            continue
        agg["sewingOutput"] += row.get("good_today") or 0
        agg["rejectTotal"] += row.get("reject_today") or 0
        agg["reworkTotal"] += row.get("rework_today") or 0
        agg["cumulativeGood"] = max(agg["cumulativeGood"], row.get("cumulative_good_total") or 0)
        if row.get("production_date") == today_iso:
            agg["hasEodToday"] = True
        day = row.get("production_date") or ""
        by_day = daily[row["work_order_id"]]
        by_day[day] = by_day.get(day, 0) + (row.get("good_today") or 0)

    for row in store.select(datarepo_path, "finishing_actuals", where):
        agg = aggs.get(row.get("work_order_id"))
        if agg is None:
            continue
        agg["finishingCarton"] += row.get("day_carton") or 0
        agg["finishingPoly"] += row.get("day_poly") or 0
        agg["finishingQcPass"] += row.get("day_qc_pass") or 0

    for row in store.select(datarepo_path, "cutting_actuals", where):
        agg = aggs.get(row.get("work_order_id"))
        if agg is None:
            continue
        agg["cuttingTotal"] += row.get("day_cutting") or 0
        agg["cuttingInput"] += row.get("day_input") or 0

    for wid, agg in aggs.items():
        agg["sewingHistory"] = [
            {"production_date": d, "good_today": v} for d, v in sorted(daily[wid].items())
        ]
    return aggs


def buyer_dashboard(datarepo_path: Path, user_id: str, today, *, now: Optional[datetime] = None) -> Dict:
    """KPIs and per-PO health/alerts for a buyer's granted work orders."""
    wos = granted_work_orders(datarepo_path, user_id)
    aggs = aggregate_work_orders(datarepo_path, [wo["id"] for wo in wos], today)
    orders = []
    kpis = {"totalPOs": len(wos), "totalQty": 0, "totalSewed": 0, "totalPacked": 0}
    for wo in wos:
        agg = aggs[wo["id"]]
        kpis["totalQty"] += wo.get("order_qty") or 0
        kpis["totalSewed"] += agg["cumulativeGood"]
        kpis["totalPacked"] += agg["finishingCarton"]
        history = agg.pop("sewingHistory")
        orders.append({
            "work_order": wo,
            "aggregates": agg,
            "health": compute_buyer_health(wo, agg, now),
            "alerts": sort_alerts(compute_buyer_alerts(wo, agg, history, now=now)),
        })
    return {"kpis": kpis, "orders": orders}
