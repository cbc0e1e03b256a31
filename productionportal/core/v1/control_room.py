"""PO control room: per-order aggregation, health, tabs, KPIs and drill-down.

Rows are plain dicts so they serialize straight to JSON for the web API and
the CLI. Aggregate keys keep the camelCase names the control-room UI reads
(sewingOutput, hasEodToday, workflowState, ...).
"""
from __future__ import annotations
import math
from pathlib import Path
from typing import Dict, List, Optional

from . import store
from . import po_state
from .production import factory_today, get_factory, get_work_order, list_work_orders, parse_date
from .logger import get_logger

logger = get_logger(__name__)

VIEW_TABS = ("all", "at_risk", "ex_factory_soon", "no_line", "updated_today", "on_target")

ACTIVE_STATUSES = ("in_progress", "not_started")

DETAIL_ROW_LIMIT = 30

SUBMISSION_TYPE_ORDER = {
    "sewing_target": 0,
    "sewing_actual": 1,
    "cutting_actual": 2,
    "finishing_target": 3,
    "finishing_actual": 4,
}


def _round(x: float) -> int:
    # half-up, as shown in the UI
    return int(math.floor(x + 0.5))


def _plural(n: int, word: str = "day") -> str:
    return word if n == 1 else f"{word}s"


def _days_to(ex_factory, today) -> Optional[int]:
    if not ex_factory:
        return None
    return (parse_date(ex_factory) - parse_date(today)).days


def _progress_pct(finished: float, order_qty: float) -> float:
    if not order_qty or order_qty <= 0:
        return 0
    return min(finished / order_qty * 100, 100)


def _reject_rate(po: Dict) -> float:
    sewing = po.get("sewingOutput") or 0
    return (po.get("totalRejects") or 0) / sewing * 100 if sewing > 0 else 0


def _is_active(po: Dict) -> bool:
    return po.get("status") in ACTIVE_STATUSES


def _has_line(po: Dict) -> bool:
    return bool(po.get("line_names")) or po.get("line_id") is not None


def compute_health(po: Dict, today) -> Dict:
    """Classify one PO row into a health status with human-readable reasons.

    At-risk checks run first; watch checks only apply when nothing put the
    PO at risk, so a status is never downgraded.
    """
    progress = _progress_pct(po.get("finishedOutput") or 0, po.get("order_qty") or 0)
    days = _days_to(po.get("planned_ex_factory"), today)

    if progress >= 100:
        return {"status": "completed", "reasons": ["Order fulfilled"]}

    if days is not None and days < 0:
        n = abs(days)
        return {
            "status": "deadline_passed",
            "reasons": [f"Deadline passed {n} {_plural(n)} ago, {_round(progress)}% done"],
        }

    reasons: List[str] = []
    status = "healthy"
    reject_rate = _reject_rate(po)
    active = _is_active(po)

    if days is not None and days <= 7 and progress < 80:
        reasons.append(f"Ex-factory in {days} {_plural(days)}, only {_round(progress)}% done")
        status = "at_risk"
    if active and not _has_line(po):
        reasons.append("No line assigned")
        status = "at_risk"
    if reject_rate > 5:
        reasons.append(f"Reject rate {reject_rate:.1f}%")
        status = "at_risk"

    if status != "at_risk":
        if days is not None and days <= 14 and progress < 60:
            reasons.append(f"Ex-factory in {days} days, only {_round(progress)}% done")
            status = "watch"
        if days is not None and days <= 30 and progress < 10:
            reasons.append(f"Ex-factory in {days} days, only {_round(progress)}% done")
            status = "watch"
        if reject_rate > 3:
            reasons.append(f"Reject rate {reject_rate:.1f}%")
            status = "watch"
        if active and not po.get("hasEodToday") and days is not None and progress < 80:
            reasons.append("No EOD submitted today")
            status = "watch"

    if not reasons and days is None:
        return {"status": "no_deadline", "reasons": ["No deadline set"]}
    if not reasons:
        reasons.append("On track")
    return {"status": status, "reasons": reasons}


def _group_by(rows: List[Dict], key: str = "work_order_id") -> Dict[str, List[Dict]]:
    out: Dict[str, List[Dict]] = {}
    for r in rows:
        out.setdefault(r.get(key) or "", []).append(r)
    return out


def _unique(values) -> List[str]:
    seen: List[str] = []
    for v in values:
        if v and v not in seen:
            seen.append(v)
    return seen


def _line_label(line: Optional[Dict], fallback: str = "Unknown") -> str:
    if not line:
        return fallback
    return line.get("name") or line.get("line_id") or fallback


def build_control_room(datarepo_path: Path, factory_id: str, today) -> List[Dict]:
    """One aggregated row per active work order of the factory, ordered by PO number."""
    today = parse_date(today)
    work_orders = list_work_orders(datarepo_path, factory_id, active_only=True)
    if not work_orders:
        return []
    ids = [wo["id"] for wo in work_orders]
    where = {"factory_id": factory_id, "work_order_id": ids}

    actuals_by_wo = _group_by(store.select(datarepo_path, "sewing_actuals", where))
    targets_by_wo = _group_by(store.select(datarepo_path, "sewing_targets", where))
    finishing_by_wo = _group_by(store.select(datarepo_path, "finishing_daily_logs", {**where, "log_type": "OUTPUT"}))
    ledger_by_wo = _group_by(store.select(datarepo_path, "extras_ledger", where))
    assigns_by_wo = _group_by(store.select(datarepo_path, "work_order_line_assignments", where))
    lines = {ln["id"]: ln for ln in store.select(datarepo_path, "lines", {"factory_id": factory_id})}

    today_iso = today.isoformat()
    rows = []
    for wo in work_orders:
        actuals = actuals_by_wo.get(wo["id"], [])
        good = sum(a.get("good_today") or 0 for a in actuals)
        rejects = sum(a.get("reject_today") or 0 for a in actuals)
        rework = sum(a.get("rework_today") or 0 for a in actuals)
        finished = sum((f.get("poly") or 0) + (f.get("carton") or 0) for f in finishing_by_wo.get(wo["id"], []))
        extras = sum(e.get("quantity") or 0 for e in ledger_by_wo.get(wo["id"], []))
        has_eod_today = any(a.get("production_date") == today_iso for a in actuals)

        assigned_lines = [lines.get(a.get("line_id")) for a in assigns_by_wo.get(wo["id"], [])]
        line_names = [_line_label(ln) for ln in assigned_lines]
        own_line = lines.get(wo.get("line_id"))
        if not line_names and own_line:
            line_names = [_line_label(own_line, fallback=wo.get("line_id"))]
        line_rows = [ln for ln in assigned_lines if ln] or ([own_line] if own_line else [])

        order_qty = wo.get("order_qty") or 0
        po = {
            "id": wo["id"],
            "po_number": wo.get("po_number"),
            "buyer": wo.get("buyer"),
            "style": wo.get("style"),
            "item": wo.get("item"),
            "color": wo.get("color"),
            "order_qty": order_qty,
            "status": wo.get("status"),
            "planned_ex_factory": wo.get("planned_ex_factory"),
            "line_names": line_names,
            "line_id": wo.get("line_id"),
            "unit_names": _unique(ln.get("unit_name") for ln in line_rows),
            "floor_names": _unique(ln.get("floor_name") for ln in line_rows),
            "sewingOutput": good,
            "finishedOutput": finished,
            "extrasConsumed": extras,
            "totalRejects": rejects,
            "totalRework": rework,
            "hasEodToday": has_eod_today,
            "progressPct": _progress_pct(finished, order_qty),
        }
        po["health"] = compute_health(po, today)

        remaining = max(order_qty - finished, 0)
        avg = po_state.compute_avg_per_day(actuals, today)["effective"]
        needed = po_state.compute_needed_per_day(remaining, po["planned_ex_factory"], today)
        forecast = po_state.compute_forecast_finish(remaining, avg, today)
        po.update({
            "started": bool(actuals),
            "remaining": remaining,
            "avgPerDay": avg,
            "neededPerDay": needed,
            "forecastFinishDate": forecast,
            "workflowState": po_state.compute_workflow_state(
                has_any_actual=bool(actuals),
                has_target=bool(targets_by_wo.get(wo["id"])),
                has_line=_has_line(po),
                remaining=remaining,
            ),
            "cluster": po_state.compute_cluster(
                ex_factory=po["planned_ex_factory"],
                remaining=remaining,
                needed_per_day=needed,
                avg_per_day=avg,
                forecast_finish=forecast,
                has_eod_today=has_eod_today,
                today=today,
            ),
        })
        rows.append(po)
    return rows


def tab_matches(po: Dict, tab: str, today) -> bool:
    if tab == "at_risk":
        return (po.get("health") or {}).get("status") == "at_risk"
    if tab == "ex_factory_soon":
        days = _days_to(po.get("planned_ex_factory"), today)
        return days is not None and days <= 14
    if tab == "no_line":
        return not _has_line(po)
    if tab == "updated_today":
        return bool(po.get("hasEodToday"))
    if tab == "on_target":
        return (po.get("health") or {}).get("status") == "healthy" and (po.get("progressPct") or 0) > 0
    return True


def filter_tab(orders: List[Dict], tab: str, today) -> List[Dict]:
    if tab not in VIEW_TABS:
        raise ValueError(f"Unknown tab: {tab}")
    return [po for po in orders if tab_matches(po, tab, today)]


def search(orders: List[Dict], term: Optional[str]) -> List[Dict]:
    """Case-insensitive substring match on PO number, buyer or style."""
    if not term:
        return list(orders)
    q = term.lower()
    return [
        po for po in orders
        if any(q in (po.get(k) or "").lower() for k in ("po_number", "buyer", "style"))
    ]


def tab_counts(orders: List[Dict], today) -> Dict[str, int]:
    counts = {"all": len(orders)}
    for tab in VIEW_TABS[1:]:
        counts[tab] = sum(1 for po in orders if tab_matches(po, tab, today))
    return counts


def compute_kpis(orders: List[Dict]) -> Dict:
    k = {"activeOrders": len(orders), "totalQty": 0, "sewingOutput": 0, "finishedOutput": 0, "totalExtras": 0}
    for po in orders:
        k["totalQty"] += po.get("order_qty") or 0
        k["sewingOutput"] += po.get("sewingOutput") or 0
        k["finishedOutput"] += po.get("finishedOutput") or 0
        k["totalExtras"] += max((po.get("finishedOutput") or 0) - (po.get("order_qty") or 0), 0)
    return k


def needs_action_cards(orders: List[Dict], today) -> List[Dict]:
    """Summary cards for the problems a planner should look at first."""
    no_eod = ex_factory_soon = no_line = quality = 0
    for po in orders:
        active = _is_active(po)
        if active and not po.get("hasEodToday"):
            no_eod += 1
        days = _days_to(po.get("planned_ex_factory"), today)
        if days is not None and days <= 7 and (po.get("progressPct") or 0) < 80:
            ex_factory_soon += 1
        if active and not _has_line(po):
            no_line += 1
        if _reject_rate(po) > 3:
            quality += 1

    def po_s(n: int) -> str:
        return "PO" if n <= 1 else "POs"

    cards = []
    if no_eod:
        cards.append({
            "key": "no_eod",
            "title": "No EOD Today",
            "count": no_eod,
            "description": f"{no_eod} active {po_s(no_eod)} with no submission today",
            "variant": "warning",
            "targetTab": "updated_today",
        })
    if ex_factory_soon:
        cards.append({
            "key": "ex_factory",
            "title": "Ex-Factory Soon",
            "count": ex_factory_soon,
            "description": f"{ex_factory_soon} {po_s(ex_factory_soon)} due within 7 days, behind schedule",
            "variant": "destructive",
            "targetTab": "ex_factory_soon",
        })
    if no_line:
        cards.append({
            "key": "no_line",
            "title": "No Line Assigned",
            "count": no_line,
            "description": f"{no_line} active {po_s(no_line)} without a production line",
            "variant": "warning",
            "targetTab": "no_line",
        })
    if quality:
        cards.append({
            "key": "quality",
            "title": "Quality Spike",
            "count": quality,
            "description": f"{quality} {po_s(quality)} with reject rate > 3%",
            "variant": "destructive",
            "targetTab": "at_risk",
        })
    return cards


# -------------------------------
# Drill-down for one PO
# -------------------------------

def _latest(dates) -> Optional[str]:
    ds = [d for d in dates if d]
    return max(ds) if ds else None


def _fmt_qty(n) -> str:
    if isinstance(n, float) and not n.is_integer():
        return f"{n:,.2f}".rstrip("0").rstrip(".")
    return f"{int(n):,}"


def po_detail(
    datarepo_path: Path,
    factory_id: str,
    work_order_id: str,
    *,
    today=None,
    row: Optional[Dict] = None,
) -> Dict:
    """Submissions, stage pipeline and quality summary for one work order.

    `row` is the PO's control-room row when the caller already has it; it is
    rebuilt otherwise.
    """
    wo = get_work_order(datarepo_path, work_order_id)
    if wo.get("factory_id") != factory_id:
        raise PermissionError("Work order belongs to a different factory")
    if row is None:
        today = today or factory_today(datarepo_path, get_factory(datarepo_path, factory_id))
        for r in build_control_room(datarepo_path, factory_id, today):
            if r["id"] == work_order_id:
                row = r
                break
    row = row or {}

    where = {"work_order_id": work_order_id, "factory_id": factory_id}
    lines = {ln["id"]: ln for ln in store.select(datarepo_path, "lines", {"factory_id": factory_id})}
    targets = store.select(datarepo_path, "sewing_targets", where, order_by="production_date", desc=True, limit=DETAIL_ROW_LIMIT)
    actuals = store.select(datarepo_path, "sewing_actuals", where, order_by="production_date", desc=True, limit=DETAIL_ROW_LIMIT)
    cutting = store.select(datarepo_path, "cutting_actuals", where, order_by="production_date", desc=True)
    fin_logs = store.select(datarepo_path, "finishing_daily_logs", where, order_by="production_date", desc=True)
    bin_cards = store.select(datarepo_path, "storage_bin_cards", where)
    card_ids = [c["id"] for c in bin_cards]
    txns = store.select(datarepo_path, "storage_bin_card_transactions", {"bin_card_id": card_ids}) if card_ids else []

    def line_name(r: Dict) -> str:
        return _line_label(lines.get(r.get("line_id")), fallback="-")

    def sub(r: Dict, kind: str, headline: str) -> Dict:
        return {
            "id": r.get("id"),
            "type": kind,
            "date": r.get("production_date") or "",
            "lineName": line_name(r),
            "submittedAt": r.get("submitted_at"),
            "headline": headline,
            "raw": r,
        }

    submissions = []
    for t in targets:
        target = t.get("target_total_planned")
        if target is None:
            hours = t.get("hours_planned")
            target = _round((t.get("per_hour_target") or 0) * (8 if hours is None else hours))
        submissions.append(sub(t, "sewing_target", f"Target {_fmt_qty(target)}"))
    for a in actuals:
        submissions.append(sub(a, "sewing_actual", f"Output {_fmt_qty(a.get('good_today') or 0)}"))
    for c in cutting:
        submissions.append(sub(c, "cutting_actual", f"Cut {_fmt_qty(c.get('total_cutting') or 0)}"))
    for f in fin_logs:
        if f.get("log_type") == "TARGET":
            submissions.append(sub(f, "finishing_target", f"Fin. Target {_fmt_qty(f.get('per_hour_target') or 0)}"))
        else:
            qty = (f.get("poly") or 0) + (f.get("carton") or 0)
            submissions.append(sub(f, "finishing_actual", f"Finished {_fmt_qty(qty)}"))
    # date desc, then type order asc
    submissions.sort(key=lambda s: SUBMISSION_TYPE_ORDER.get(s["type"], 9))
    submissions.sort(key=lambda s: s["date"], reverse=True)

    order_qty = wo.get("order_qty") or 1

    def pct_of(q: float) -> int:
        return min(_round(q / order_qty * 100), 100)

    storage_qty = sum(t.get("receive_qty") or 0 for t in txns)
    cutting_qty = max([c.get("total_cutting") or 0 for c in cutting] or [0])
    sewing_qty = row.get("sewingOutput") or 0
    outputs = [f for f in fin_logs if f.get("log_type") != "TARGET"]
    fin_qty = sum((f.get("poly") or 0) + (f.get("carton") or 0) for f in outputs)

    pipeline = [
        {"stage": "storage", "label": "Storage", "qty": storage_qty, "pct": pct_of(storage_qty),
         "lastDate": _latest(t.get("transaction_date") for t in txns)},
        {"stage": "cutting", "label": "Cutting", "qty": cutting_qty, "pct": pct_of(cutting_qty),
         "lastDate": _latest(c.get("production_date") for c in cutting)},
        {"stage": "sewing", "label": "Sewing", "qty": sewing_qty, "pct": pct_of(sewing_qty),
         "lastDate": actuals[0].get("production_date") if actuals else None},
        {"stage": "finishing", "label": "Finishing", "qty": fin_qty, "pct": pct_of(fin_qty),
         "lastDate": _latest(f.get("production_date") for f in outputs)},
    ]

    total_rejects = row.get("totalRejects") or 0
    total_rework = row.get("totalRework") or 0
    extras_total = max(fin_qty - order_qty, 0)
    extras_consumed = row.get("extrasConsumed") or 0
    quality = {
        "totalOutput": sewing_qty,
        "totalRejects": total_rejects,
        "totalRework": total_rework,
        "rejectRate": total_rejects / sewing_qty * 100 if sewing_qty > 0 else 0,
        "reworkRate": total_rework / sewing_qty * 100 if sewing_qty > 0 else 0,
        "extrasTotal": extras_total,
        "extrasConsumed": extras_consumed,
        "extrasAvailable": max(extras_total - extras_consumed, 0),
    }
    return {"submissions": submissions, "pipeline": pipeline, "quality": quality}
