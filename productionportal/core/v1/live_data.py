"""Live factory data for the assistant.

A chat message is classified into data categories, each category is read
from the datarepo tables for the factory's current day, and every result is
rendered as compact text the LLM can quote numbers from.
"""
from __future__ import annotations
import math
import re
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Callable, Dict, List, Optional

from . import store
from .production import factory_today, get_factory, parse_date
from .logger import get_logger

logger = get_logger(__name__)

CATEGORIES = (
    "sewing_output",
    "sewing_targets",
    "blockers",
    "work_orders",
    "cutting",
    "finishing",
    "storage",
    "lines",
    "factory_summary",
)

MAX_ROWS = 200
HOURS_PER_DAY = 8
_OPEN_BLOCKER_STATUSES = ["open", "in_progress"]
_COMPLETE_STATUS = re.compile(r"complete|completed|done|shipped|closed", re.I)


def _round(x: float) -> int:
    return int(math.floor(x + 0.5))


def _n(v) -> float:
    try:
        return float(v or 0)
    except (TypeError, ValueError):
        return 0.0


def _qty(n) -> str:
    n = _n(n)
    return f"{int(n):,}" if float(n).is_integer() else f"{n:,}"


# -------------------------------
# Message classification
# -------------------------------

@dataclass
class Classification:
    categories: List[str] = field(default_factory=list)
    po_number_hint: Optional[str] = None
    buyer_hint: Optional[str] = None
    line_name_hint: Optional[str] = None
    wants_summary: bool = False


_SUMMARY_RE = re.compile(
    r"overall|factory.*(summary|status|overview|report)|daily.*(summary|report|overview)"
    r"|how.*(factory|production).*(doing|going|perform)|total.*(output|production|today)"
    r"|all.*(department|section)|complete.*(picture|overview)|dashboard|kpi|metric"
)
_BLOCKERS_RE = re.compile(r"blocker|blocked|block|issue|problem|obstacle|stuck|delay|bottleneck|hold.?up|pending")
_SEWING_OUTPUT_RE = re.compile(
    r"sewing.?output|sewing.?actual|good.?today|reject|rework|sewing.?result|how much.*(sew|produc)"
    r"|sewing.*(pcs|pieces|quantity)|output.*(sew)"
)
_SEWING_TARGETS_RE = re.compile(
    r"sewing.?target|morning.?target|per.?hour.?target|manpower.?planned|target.?today|plan.*(sew)"
)
_CUTTING_RE = re.compile(
    r"cutting|cut.?output|cut.?today|day.?cutting|cutting.?status|cutting.?capacity|marker.?capacity"
    r"|lay.?capacity|fabric.?cut|cut.?balance|input.?today"
)
_FINISHING_RE = re.compile(
    r"finishing|poly|carton|iron|buttoning|thread.?cutting|inside.?check|top.?side|get.?up"
    r"|finishing.?output|pack|packing|shipment.?ready|export.?ready|qc.?pass"
)
_WORK_ORDERS_RE = re.compile(
    r"\bpo\b|purchase.?order|work.?order|\border\b|\bstatus\b|po-|buyer|brand|style|order.?qty|how.?far"
    r"|ex.?factory|shipment|delivery|completion|complete|progress|which.*(order|po)|list.*(order|po)"
    r"|active.*(order|po)"
)
_STORAGE_RE = re.compile(r"storage|bin.?card|\bbin\b|fabric|stock|inventory|warehouse|material|raw.?material")
_LINES_RE = re.compile(
    r"which.?line|line.?status|all.?lines|active.?lines|behind.?target|line.?performance|line.?efficiency"
    r"|line.?output|best.?line|worst.?line|top.?line|lowest.?line|line.?comparison"
)
_STATS_RE = re.compile(
    r"statistic|analytic|average|efficiency|percent|ratio|compare|comparison|trend|growth|increase"
    r"|decrease|highest|lowest|best|worst|top|bottom|rank|ranking|most|least|total|sum|count|how.?many"
)
_BROAD_RE = re.compile(
    r"how.?many.*(produc|output|made|sew)|today.?s?.*(output|production|result)"
    r"|(daily|today).*(summary|report|overview)|behind|efficiency|performance|ahead|update"
)
_PO_RE = re.compile(r"po[- ]?(\d{2,6})", re.I)
_LINE_RE = re.compile(r"line[- ]?([a-z0-9]{1,4})", re.I)
_STOPWORDS_RE = re.compile(
    r"\b(how|far|are|we|with|the|what|is|status|of|for|on|about|our|my|a|an|any|order|orders|po|purchase"
    r"|work|buyer|brand|production|update|progress|show|tell|me|get|give|can|you|please|do|does|current"
    r"|currently|today|now|much|many|complete|completed|completion|done|behind|ahead|sewing|cutting"
    r"|finishing|all|this|that|which|who|where|when|will|be|been|has|have|had|not|no|or|and|from|s"
    r"|total|quantity|pieces|pcs|number|count|output|percent|percentage|report|summary|daily|overall"
    r"|list|active|inactive|open|factory|line|lines|target|targets|each|every|per|their|them|they|it"
    r"|its|still|yet|so|but|up|at|in|to|by|i|if|go|going|look|make|should|would|could|need|want|also"
    r"|just|more|most|there|here|then|than|into|only|these|those|some|being|since|until|while|after"
    r"|before|both|between|own|such|under|over|down|out|off|was|were|did)\b",
    re.I,
)
_SINGLE_QUOTES = re.compile("[‘’′`]")
_DOUBLE_QUOTES = re.compile("[“”″]")


def classify_message(message: str) -> Classification:
    """Pick the data categories a question is about and pull out PO, buyer
    and line hints."""
    normalized = _DOUBLE_QUOTES.sub('"', _SINGLE_QUOTES.sub("'", message or ""))
    lower = normalized.lower()
    cats: List[str] = []
    wants_summary = False

    def add(*names: str) -> None:
        for name in names:
            if name not in cats:
                cats.append(name)

    if _SUMMARY_RE.search(lower):
        wants_summary = True
        add("factory_summary")
    if _BLOCKERS_RE.search(lower):
        add("blockers")
    if _SEWING_OUTPUT_RE.search(lower):
        add("sewing_output")
    if _SEWING_TARGETS_RE.search(lower):
        add("sewing_targets")
    # plain "sewing" means both sides of the day
    if "sewing" in lower and "sewing_output" not in cats and "sewing_targets" not in cats:
        add("sewing_output", "sewing_targets")
    if _CUTTING_RE.search(lower):
        add("cutting")
    if _FINISHING_RE.search(lower):
        add("finishing")
    if _WORK_ORDERS_RE.search(lower):
        add("work_orders")
    if _STORAGE_RE.search(lower):
        add("storage")
    if _LINES_RE.search(lower):
        add("lines")
    if _STATS_RE.search(lower):
        add("sewing_output", "work_orders", "lines", "factory_summary")
        wants_summary = True
    if not cats and _BROAD_RE.search(lower):
        add("sewing_output", "sewing_targets", "blockers", "factory_summary")
        wants_summary = True

    po_match = _PO_RE.search(lower)
    po_hint = f"PO-{po_match.group(1).zfill(3)}" if po_match else None
    if po_hint:
        add("work_orders")

    cleaned = _STOPWORDS_RE.sub("", normalized)
    cleaned = re.sub(r"[^a-zA-Z0-9&\s-]", "", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    buyer_hint = cleaned if (not po_hint and len(cleaned) >= 2) else None
    if buyer_hint:
        add("work_orders")

    line_match = _LINE_RE.search(lower)
    return Classification(
        categories=cats,
        po_number_hint=po_hint,
        buyer_hint=buyer_hint,
        line_name_hint=line_match.group(0) if line_match else None,
        wants_summary=wants_summary,
    )


# -------------------------------
# Table access
# -------------------------------

class _Rows:
    """Reads factory rows and attaches the referenced line and work order
    under ``lines`` / ``work_orders`` so formatters can name them."""

    def __init__(self, datarepo_path: Path, factory_id: str):
        self.repo = datarepo_path
        self.factory_id = factory_id
        self._lines: Optional[Dict[str, Dict]] = None
        self._orders: Optional[Dict[str, Dict]] = None
        self._blocker_types: Optional[Dict[str, Dict]] = None

    def _index(self, table: str, where: Optional[Dict] = None) -> Dict[str, Dict]:
        return {r["id"]: r for r in store.select(self.repo, table, where)}

    @property
    def lines(self) -> Dict[str, Dict]:
        if self._lines is None:
            self._lines = self._index("lines", {"factory_id": self.factory_id})
        return self._lines

    @property
    def orders(self) -> Dict[str, Dict]:
        if self._orders is None:
            self._orders = self._index("work_orders", {"factory_id": self.factory_id})
        return self._orders

    @property
    def blocker_types(self) -> Dict[str, Dict]:
        if self._blocker_types is None:
            self._blocker_types = self._index("blocker_types")
        return self._blocker_types

    def select(self, table: str, where: Optional[Dict] = None, *, order_by=None, desc=False, limit=MAX_ROWS) -> List[Dict]:
        filters = {"factory_id": self.factory_id, **(where or {})}
        rows = store.select(self.repo, table, filters, order_by=order_by, desc=desc, limit=limit)
        out = []
        for r in rows:
            r = dict(r)
            r["lines"] = self.lines.get(r.get("line_id"))
            r["work_orders"] = self.orders.get(r.get("work_order_id"))
            if r.get("blocker_type_id"):
                r["blocker_types"] = self.blocker_types.get(r["blocker_type_id"])
            out.append(r)
        return out


def _line_name(row: Dict) -> str:
    line = row.get("lines") or {}
    return line.get("name") or line.get("line_id") or "Unknown line"


def _po(row: Dict) -> str:
    return (row.get("work_orders") or {}).get("po_number") or row.get("po_number") or "N/A"


def _buyer(row: Dict) -> str:
    return (row.get("work_orders") or {}).get("buyer") or row.get("buyer_name") or ""


def _result(category: str, label: str, data: List[Dict], summary: str) -> Dict:
    return {"category": category, "label": label, "data": data, "summary": summary, "fetched_at": store.now_iso()}


def _error_result(category: str, label: str, err: Exception) -> Dict:
    logger.error("[LIVE-DATA] Error fetching %s: %s", category, err)
    return {
        "category": category,
        "label": label,
        "data": [],
        "summary": f"(Unable to fetch {label.lower()} data)",
        "fetched_at": store.now_iso(),
        "error": str(err),
    }


def _sum(rows: List[Dict], key: str) -> float:
    return sum(_n(r.get(key)) for r in rows)


def _avg(total: float, count: int) -> int:
    return _round(total / count) if count > 0 else 0


# -------------------------------
# Sewing
# -------------------------------

def sewing_aggregates(rows: List[Dict]) -> Dict:
    reporting = len(rows)
    total_good = _sum(rows, "good_today")
    ranked = sorted(rows, key=lambda r: _n(r.get("good_today")), reverse=True)

    def named(r: Dict) -> Dict:
        line = r.get("lines") or {}
        return {"name": line.get("name") or line.get("line_id") or "Unknown", "good": _n(r.get("good_today"))}

    return {
        "lines_reporting": reporting,
        "total_good": total_good,
        "total_reject": _sum(rows, "reject_today"),
        "total_rework": _sum(rows, "rework_today"),
        "total_manpower": _sum(rows, "manpower_actual"),
        "total_cumulative_good": _sum(rows, "cumulative_good_total"),
        "lines_with_blockers": sum(1 for r in rows if r.get("has_blocker")),
        "avg_good_per_line": _avg(total_good, reporting),
        "top_line": named(ranked[0]) if ranked else None,
        "lowest_line": named(ranked[-1]) if ranked else None,
    }


def format_sewing_output(rows: List[Dict], today: str, agg: Dict) -> str:
    if not rows:
        return f"No sewing output submitted for {today}."
    t = f"===== SEWING OUTPUT AGGREGATES ({today}) =====\n"
    t += f"Lines Reporting: {agg['lines_reporting']}\n"
    t += f"Total Good Output: {_qty(agg['total_good'])} pcs\n"
    t += f"Total Rejects: {_qty(agg['total_reject'])} pcs\n"
    t += f"Total Rework: {_qty(agg['total_rework'])} pcs\n"
    t += f"Total Manpower: {_qty(agg['total_manpower'])}\n"
    t += f"Cumulative Good (All Time): {_qty(agg['total_cumulative_good'])} pcs\n"
    t += f"Average Good Per Line: {_qty(agg['avg_good_per_line'])} pcs\n"
    if agg["top_line"]:
        t += f"Top Performing Line: {agg['top_line']['name']} ({_qty(agg['top_line']['good'])} pcs)\n"
    if agg["lowest_line"] and agg["lines_reporting"] > 1:
        t += f"Lowest Performing Line: {agg['lowest_line']['name']} ({_qty(agg['lowest_line']['good'])} pcs)\n"
    if agg["lines_with_blockers"] > 0:
        t += f"Lines with Blockers: {agg['lines_with_blockers']}\n"
    t += "================================================\n\n"
    t += "Per-line breakdown:\n"
    for r in rows:
        t += (
            f"  - {_line_name(r)} ({_po(r)}, {_buyer(r)}): Good={r.get('good_today')}, "
            f"Reject={r.get('reject_today')}, Rework={r.get('rework_today')}, "
            f"MP={r.get('manpower_actual')}, Cumulative={r.get('cumulative_good_total')}"
        )
        if r.get("has_blocker"):
            t += f" [BLOCKER: {r.get('blocker_description') or 'unspecified'}]"
        t += "\n"
    return t


def fetch_sewing_output(rows: _Rows, today: str) -> Dict:
    label = "Sewing Output (Today)"
    try:
        data = rows.select("sewing_actuals", {"production_date": today}, order_by="good_today", desc=True)
        return _result("sewing_output", label, data, format_sewing_output(data, today, sewing_aggregates(data)))
    except Exception as e:
        return _error_result("sewing_output", label, e)


def sewing_target_aggregates(rows: List[Dict]) -> Dict:
    per_hour = _sum(rows, "per_hour_target")
    return {
        "lines_with_targets": len(rows),
        "total_planned_manpower": _sum(rows, "manpower_planned"),
        "total_planned_ot": _sum(rows, "ot_hours_planned"),
        "avg_per_hour_target": _avg(per_hour, len(rows)),
        "total_daily_target": per_hour * HOURS_PER_DAY,
    }


def format_sewing_targets(rows: List[Dict], today: str, agg: Dict) -> str:
    if not rows:
        return f"No sewing targets set for {today}."
    t = f"===== SEWING TARGETS AGGREGATES ({today}) =====\n"
    t += f"Lines with Targets: {agg['lines_with_targets']}\n"
    t += f"Total Planned Manpower: {_qty(agg['total_planned_manpower'])}\n"
    t += f"Total Planned OT Hours: {_qty(agg['total_planned_ot'])}\n"
    t += f"Average Per-Hour Target: {agg['avg_per_hour_target']} pcs/hr\n"
    t += f"Total Daily Target (8hr): {_qty(agg['total_daily_target'])} pcs\n"
    t += "==============================================\n\n"
    t += "Per-line targets:\n"
    for r in rows:
        t += (
            f"  - {_line_name(r)} ({_po(r)}): {r.get('per_hour_target')}/hr target, "
            f"{r.get('manpower_planned')} planned MP, {r.get('ot_hours_planned') or 0}hr OT\n"
        )
    return t


def fetch_sewing_targets(rows: _Rows, today: str) -> Dict:
    label = "Sewing Targets (Today)"
    try:
        data = rows.select("sewing_targets", {"production_date": today}, order_by="per_hour_target", desc=True)
        return _result("sewing_targets", label, data, format_sewing_targets(data, today, sewing_target_aggregates(data)))
    except Exception as e:
        return _error_result("sewing_targets", label, e)


# -------------------------------
# Blockers
# -------------------------------

def blocker_aggregates(rows: List[Dict]) -> Dict:
    by_type: Dict[str, int] = {}
    for b in rows:
        name = (b.get("blocker_types") or {}).get("name") or "Unknown"
        by_type[name] = by_type.get(name, 0) + 1
    top_types = sorted(({"type": k, "count": v} for k, v in by_type.items()), key=lambda x: x["count"], reverse=True)

    def count(key: str, value: str) -> int:
        return sum(1 for b in rows if b.get(key) == value)

    return {
        "total_active": len(rows),
        "open": count("blocker_status", "open"),
        "in_progress": count("blocker_status", "in_progress"),
        "critical": count("blocker_impact", "critical"),
        "high": count("blocker_impact", "high"),
        "medium": count("blocker_impact", "medium"),
        "low": count("blocker_impact", "low"),
        "by_department": {"sewing": count("department", "sewing"), "finishing": count("department", "finishing")},
        "top_blocker_types": top_types[:5],
    }


def format_blockers(rows: List[Dict], agg: Dict) -> str:
    if not rows:
        return "No active blockers currently open."
    t = "===== BLOCKER AGGREGATES =====\n"
    t += f"Total Active: {agg['total_active']}\n"
    t += f"Open: {agg['open']} | In Progress: {agg['in_progress']}\n"
    t += f"By Severity: Critical={agg['critical']}, High={agg['high']}, Medium={agg['medium']}, Low={agg['low']}\n"
    t += f"By Department: Sewing={agg['by_department']['sewing']}, Finishing={agg['by_department']['finishing']}\n"
    if agg["top_blocker_types"]:
        t += "Top Blocker Types:\n"
        for bt in agg["top_blocker_types"]:
            t += f"  - {bt['type']}: {bt['count']}\n"
    t += "==============================\n\n"
    t += "Blocker Details:\n"
    for b in rows:
        impact = (b.get("blocker_impact") or "unknown").upper()
        kind = (b.get("blocker_types") or {}).get("name") or "Unknown type"
        t += f"  - [{impact}] {b['department']} / {_line_name(b)} ({_po(b)}): {b.get('blocker_description') or 'No description'}\n"
        t += (
            f"    Type: {kind} | Status: {b.get('blocker_status')} | "
            f"Owner: {b.get('blocker_owner') or 'unassigned'} | Date: {b.get('production_date')}\n"
        )
    return t


def fetch_blockers(rows: _Rows) -> Dict:
    label = "Active Blockers"
    try:
        merged: List[Dict] = []
        for table, department in (("production_updates_sewing", "sewing"), ("production_updates_finishing", "finishing")):
            found = rows.select(
                table,
                {"has_blocker": True, "blocker_status": _OPEN_BLOCKER_STATUSES},
                order_by="submitted_at",
                desc=True,
            )
            merged.extend({**b, "department": department} for b in found)
        merged = merged[:MAX_ROWS]
        return _result("blockers", label, merged, format_blockers(merged, blocker_aggregates(merged)))
    except Exception as e:
        return _error_result("blockers", label, e)


# -------------------------------
# Work orders
# -------------------------------

def _progress(finishing: float, order_qty: float) -> int:
    return min(_round(finishing / order_qty * 100), 100) if order_qty > 0 else 0


def work_order_aggregates(orders: List[Dict], sewing: Dict[str, float], finishing: Dict[str, float], today: str) -> Dict:
    active = [wo for wo in orders if wo.get("is_active") is True]
    total_progress = 0
    nearing = 0
    behind = 0
    upcoming = []
    today_d = parse_date(today)
    for wo in active:
        pct = _progress(finishing.get(wo["id"], 0), _n(wo.get("order_qty")))
        total_progress += pct
        if 80 <= pct < 100:
            nearing += 1
        ex = wo.get("planned_ex_factory")
        if ex and ex < today and pct < 100:
            behind += 1
        if ex and ex >= today and (parse_date(ex) - today_d).days <= 14:
            upcoming.append({"po": wo.get("po_number"), "buyer": wo.get("buyer"), "date": ex})

    buyers: Dict[str, Dict] = {}
    for wo in active:
        b = buyers.setdefault(wo.get("buyer") or "Unknown", {"qty": 0, "order_count": 0})
        b["qty"] += _n(wo.get("order_qty"))
        b["order_count"] += 1
    top_buyers = sorted(
        ({"buyer": k, **v} for k, v in buyers.items()), key=lambda b: b["qty"], reverse=True
    )[:5]
    upcoming.sort(key=lambda u: u["date"])

    return {
        "active_count": len(active),
        "total_qty": _sum(active, "order_qty"),
        "total_sewing_output": sum(sewing.get(wo["id"], 0) for wo in active),
        "total_finishing_output": sum(finishing.get(wo["id"], 0) for wo in active),
        "avg_progress": _avg(total_progress, len(active)),
        "top_buyers": top_buyers,
        "upcoming_ex_factory": upcoming[:5],
        "orders_nearing_completion": nearing,
        "orders_behind_schedule": behind,
    }


def format_work_orders(orders: List[Dict], sewing: Dict[str, float], finishing: Dict[str, float], agg: Dict) -> str:
    if not orders:
        return "No matching active work orders found."
    t = "===== WORK ORDER AGGREGATES =====\n"
    t += f"Active Orders: {agg['active_count']}\n"
    t += f"Total Order Quantity: {_qty(agg['total_qty'])} pcs\n"
    t += f"Total Sewing Output: {_qty(agg['total_sewing_output'])} pcs\n"
    t += f"Total Finishing Output: {_qty(agg['total_finishing_output'])} pcs\n"
    t += f"Average Progress: {agg['avg_progress']}%\n"
    t += f"Orders Nearing Completion (80%+): {agg['orders_nearing_completion']}\n"
    t += f"Orders Behind Schedule: {agg['orders_behind_schedule']}\n"
    if agg["top_buyers"]:
        t += "\nTop Buyers by Order Qty:\n"
        for b in agg["top_buyers"]:
            t += f"  - {b['buyer']}: {_qty(b['qty'])} pcs ({b['order_count']} orders)\n"
    if agg["upcoming_ex_factory"]:
        t += "\nUpcoming Ex-Factory Dates (next 14 days):\n"
        for ex in agg["upcoming_ex_factory"]:
            t += f"  - {ex['po']} ({ex['buyer']}): {ex['date']}\n"
    t += "=================================\n\n"

    t += f"Active Work Orders ({len(orders)}):\n"
    for wo in orders:
        sewn = sewing.get(wo["id"], 0)
        finished = finishing.get(wo["id"], 0)
        order_qty = _n(wo.get("order_qty"))
        status = wo.get("status") or "active"
        # finishing cartons drive progress; a closed order always reads 100%
        pct = 100 if _COMPLETE_STATUS.search(status) else _progress(finished, order_qty)
        line = wo.get("lines") or {}
        line_name = line.get("name") or line.get("line_id") or "Unassigned"
        t += f"  - {wo.get('po_number')} | {wo.get('buyer')} / {wo.get('style')}"
        if wo.get("item"):
            t += f" / {wo['item']}"
        if wo.get("color"):
            t += f" ({wo['color']})"
        t += (
            f"\n    Order: {_qty(order_qty)} pcs | Sewing Output: {_qty(sewn)} pcs | "
            f"Finishing Output: {_qty(finished)} pcs ({pct}%) | Line: {line_name}\n"
        )
        if wo.get("planned_ex_factory"):
            t += f"    Planned Ex-Factory: {wo['planned_ex_factory']}"
        if wo.get("actual_ex_factory"):
            t += f" | Actual: {wo['actual_ex_factory']}"
        if wo.get("planned_ex_factory") or wo.get("actual_ex_factory"):
            t += "\n"
        t += f"    Status: {status} | SMV: {wo.get('smv') or 'N/A'} | Target: {wo.get('target_per_hour') or 'N/A'}/hr\n"
    return t


def fetch_work_orders(rows: _Rows, today: str, po_hint: Optional[str], buyer_hint: Optional[str]) -> Dict:
    """Active orders, or every order matching a PO hint. A buyer hint reads all
    orders (active and closed) so the model can match names itself."""
    label = f"Work Order: {po_hint}" if po_hint else (f"Work Orders: {buyer_hint}" if buyer_hint else "Active Work Orders")
    try:
        orders = store.select(rows.repo, "work_orders", {"factory_id": rows.factory_id}, order_by="created_at", desc=True)
        if po_hint:
            needle = po_hint.lower()
            orders = [wo for wo in orders if needle in str(wo.get("po_number") or "").lower()]
        elif not buyer_hint:
            orders = [wo for wo in orders if wo.get("is_active") is True]
        orders = [{**wo, "lines": rows.lines.get(wo.get("line_id"))} for wo in orders[:MAX_ROWS]]

        sewing: Dict[str, float] = {}
        finishing: Dict[str, float] = {}
        ids = [wo["id"] for wo in orders]
        if ids:
            for r in store.select(rows.repo, "production_updates_sewing", {"factory_id": rows.factory_id, "work_order_id": ids}):
                sewing[r["work_order_id"]] = sewing.get(r["work_order_id"], 0) + _n(r.get("output_qty"))
            for r in store.select(
                rows.repo, "finishing_daily_logs",
                {"factory_id": rows.factory_id, "log_type": "OUTPUT", "work_order_id": ids},
            ):
                finishing[r["work_order_id"]] = finishing.get(r["work_order_id"], 0) + _n(r.get("carton"))

        agg = work_order_aggregates(orders, sewing, finishing, today)
        return _result("work_orders", label, orders, format_work_orders(orders, sewing, finishing, agg))
    except Exception as e:
        return _error_result("work_orders", "Work Orders", e)


# -------------------------------
# Cutting, finishing, storage
# -------------------------------

def cutting_aggregates(actuals: List[Dict]) -> Dict:
    day_cutting = _sum(actuals, "day_cutting")
    return {
        "lines_reporting": len(actuals),
        "total_day_cutting": day_cutting,
        "total_day_input": _sum(actuals, "day_input"),
        "total_balance": _sum(actuals, "balance"),
        "total_manpower": _sum(actuals, "man_power"),
        "avg_cutting_per_line": _avg(day_cutting, len(actuals)),
    }


def format_cutting(actuals: List[Dict], targets: List[Dict], today: str, agg: Dict) -> str:
    if not actuals and not targets:
        return f"No cutting data submitted for {today}."
    t = f"===== CUTTING AGGREGATES ({today}) =====\n"
    t += f"Lines Reporting: {agg['lines_reporting']}\n"
    t += f"Total Day Cutting: {_qty(agg['total_day_cutting'])} pcs\n"
    t += f"Total Day Input: {_qty(agg['total_day_input'])} pcs\n"
    t += f"Total Balance: {_qty(agg['total_balance'])} pcs\n"
    t += f"Total Manpower: {_qty(agg['total_manpower'])}\n"
    t += f"Average Cutting Per Line: {_qty(agg['avg_cutting_per_line'])} pcs\n"
    t += "=======================================\n\n"
    if targets:
        t += f"Targets ({len(targets)}):\n"
        for r in targets:
            t += (
                f"  - {_line_name(r)} ({_po(r)}): MP={r.get('man_power')}, Marker={r.get('marker_capacity')}, "
                f"Lay={r.get('lay_capacity')}, Cut Cap={r.get('cutting_capacity')}\n"
            )
        t += "\n"
    if actuals:
        t += f"Actuals ({len(actuals)}):\n"
        for r in actuals:
            t += (
                f"  - {_line_name(r)} ({_po(r)}): Day Cut={r.get('day_cutting')}, Day Input={r.get('day_input')}, "
                f"Total Cut={r.get('total_cutting') or 0}, Balance={r.get('balance') or 0}\n"
            )
    return t


def fetch_cutting(rows: _Rows, today: str) -> Dict:
    label = "Cutting Status (Today)"
    try:
        actuals = rows.select("cutting_actuals", {"production_date": today}, order_by="day_cutting", desc=True)
        targets = rows.select("cutting_targets", {"production_date": today})
        summary = format_cutting(actuals, targets, today, cutting_aggregates(actuals))
        return _result("cutting", label, actuals + targets, summary)
    except Exception as e:
        return _error_result("cutting", label, e)


def finishing_aggregates(logs: List[Dict]) -> Dict:
    outputs = [r for r in logs if r.get("log_type") == "OUTPUT"]
    poly = _sum(outputs, "poly")
    carton = _sum(outputs, "carton")
    return {
        "lines_reporting": len(outputs),
        "total_poly": poly,
        "total_carton": carton,
        "total_iron": _sum(outputs, "iron"),
        "total_thread_cutting": _sum(outputs, "thread_cutting"),
        "avg_poly_per_line": _avg(poly, len(outputs)),
        "avg_carton_per_line": _avg(carton, len(outputs)),
    }


def _finishing_line(r: Dict) -> str:
    return (
        f"  - {_line_name(r)}: ThreadCut={r.get('thread_cutting') or 0}, InsideCheck={r.get('inside_check') or 0}, "
        f"Iron={r.get('iron') or 0}, Poly={r.get('poly') or 0}, Carton={r.get('carton') or 0}\n"
    )


def format_finishing(logs: List[Dict], today: str, agg: Dict) -> str:
    if not logs:
        return f"No finishing data submitted for {today}."
    targets = [r for r in logs if r.get("log_type") == "TARGET"]
    outputs = [r for r in logs if r.get("log_type") == "OUTPUT"]
    t = f"===== FINISHING AGGREGATES ({today}) =====\n"
    t += f"Lines Reporting Output: {agg['lines_reporting']}\n"
    t += f"Total Poly: {_qty(agg['total_poly'])} pcs\n"
    t += f"Total Carton: {_qty(agg['total_carton'])} pcs\n"
    t += f"Total Iron: {_qty(agg['total_iron'])} pcs\n"
    t += f"Total Thread Cutting: {_qty(agg['total_thread_cutting'])} pcs\n"
    t += f"Average Poly Per Line: {_qty(agg['avg_poly_per_line'])} pcs\n"
    t += f"Average Carton Per Line: {_qty(agg['avg_carton_per_line'])} pcs\n"
    t += "========================================\n\n"
    if targets:
        t += f"Targets ({len(targets)}):\n"
        t += "".join(_finishing_line(r) for r in targets)
        t += "\n"
    if outputs:
        t += f"Outputs ({len(outputs)}):\n"
        t += "".join(_finishing_line(r) for r in outputs)
    return t


def fetch_finishing(rows: _Rows, today: str) -> Dict:
    label = "Finishing Status (Today)"
    try:
        logs = rows.select("finishing_daily_logs", {"production_date": today}, order_by="log_type")
        return _result("finishing", label, logs, format_finishing(logs, today, finishing_aggregates(logs)))
    except Exception as e:
        return _error_result("finishing", label, e)


def format_storage(cards: List[Dict]) -> str:
    if not cards:
        return "No storage bin cards found."
    t = "===== STORAGE AGGREGATES =====\n"
    t += f"Total Bin Cards: {len(cards)}\n"
    t += f"Total Package Quantity: {_qty(_sum(cards, 'package_qty'))}\n"
    t += "==============================\n\n"
    t += "Bin Card Details:\n"
    for c in cards:
        t += f"  - PO: {_po(c) if c.get('work_orders') else 'N/A'} | Buyer: {c.get('buyer') or 'N/A'} | Style: {c.get('style') or 'N/A'}"
        if c.get("color"):
            t += f" | Color: {c['color']}"
        if c.get("supplier_name"):
            t += f" | Supplier: {c['supplier_name']}"
        if c.get("package_qty"):
            t += f" | Pkg Qty: {c['package_qty']}"
        t += "\n"
    return t


def fetch_storage(rows: _Rows) -> Dict:
    label = "Storage Bin Cards"
    try:
        cards = rows.select("storage_bin_cards")
        return _result("storage", label, cards, format_storage(cards))
    except Exception as e:
        return _error_result("storage", label, e)


# -------------------------------
# Lines and factory summary
# -------------------------------

def _per_line(actuals: List[Dict], targets: List[Dict]) -> tuple:
    output: Dict[str, float] = {}
    for a in actuals:
        output[a.get("line_id")] = output.get(a.get("line_id"), 0) + _n(a.get("good_today"))
    target: Dict[str, float] = {}
    for tg in targets:
        target[tg.get("line_id")] = target.get(tg.get("line_id"), 0) + _n(tg.get("per_hour_target")) * HOURS_PER_DAY
    return output, target


def line_aggregates(lines: List[Dict], actuals: List[Dict], targets: List[Dict]) -> Dict:
    output, target = _per_line(actuals, targets)
    on_target = behind = total_eff = 0
    efficiencies = []
    for line in lines:
        t = target.get(line["id"], 0)
        eff = _round(output.get(line["id"], 0) / t * 100) if t > 0 else 0
        if t > 0:
            total_eff += eff
            if eff >= 100:
                on_target += 1
            else:
                behind += 1
        efficiencies.append({"name": line.get("name") or line.get("line_id"), "efficiency": eff})
    efficiencies.sort(key=lambda e: e["efficiency"], reverse=True)
    return {
        "total_active_lines": len(lines),
        "lines_with_output_today": len(output),
        "lines_on_target": on_target,
        "lines_behind_target": behind,
        "avg_efficiency": _avg(total_eff, len(target)),
        "top_performers": [e for e in efficiencies if e["efficiency"] > 0][:3],
        "needs_attention": list(reversed([e for e in efficiencies if 0 < e["efficiency"] < 80][-3:])),
    }


def format_lines(lines: List[Dict], actuals: List[Dict], targets: List[Dict], today: str, agg: Dict) -> str:
    if not lines:
        return "No active lines found."
    output, target = _per_line(actuals, targets)
    statuses = []
    for line in lines:
        o = output.get(line["id"], 0)
        tg = target.get(line["id"], 0)
        statuses.append({
            "name": line.get("name") or line.get("line_id"),
            "output": o,
            "target": tg,
            "pct": _round(o / tg * 100) if tg > 0 else 0,
        })
    # behind-target lines first
    statuses.sort(key=lambda s: s["pct"])

    t = f"===== LINE PERFORMANCE AGGREGATES ({today}) =====\n"
    t += f"Total Active Lines: {agg['total_active_lines']}\n"
    t += f"Lines with Output Today: {agg['lines_with_output_today']}\n"
    t += f"Lines On Target (100%+): {agg['lines_on_target']}\n"
    t += f"Lines Behind Target: {agg['lines_behind_target']}\n"
    t += f"Average Efficiency: {agg['avg_efficiency']}%\n"
    if agg["top_performers"]:
        t += "\nTop Performers:\n"
        for e in agg["top_performers"]:
            t += f"  - {e['name']}: {e['efficiency']}% efficiency\n"
    if agg["needs_attention"]:
        t += "\nNeeds Attention (below 80%):\n"
        for e in agg["needs_attention"]:
            t += f"  - {e['name']}: {e['efficiency']}% efficiency\n"
    t += "==============================================\n\n"
    t += "All Line Status:\n"
    for s in statuses:
        if s["target"] == 0:
            status = "(no target set)"
        elif s["pct"] >= 100:
            status = f"ON TARGET ({s['pct']}%)"
        else:
            status = f"BEHIND ({s['pct']}%)"
        t += f"  - {s['name']}: Output={_qty(s['output'])}, Target={_qty(s['target'])}, {status}\n"
    return t


def fetch_lines(rows: _Rows, today: str) -> Dict:
    label = "Line Status Overview"
    try:
        lines = store.select(rows.repo, "lines", {"factory_id": rows.factory_id, "is_active": True}, order_by="line_id")
        actuals = store.select(rows.repo, "sewing_actuals", {"factory_id": rows.factory_id, "production_date": today})
        targets = store.select(rows.repo, "sewing_targets", {"factory_id": rows.factory_id, "production_date": today})
        agg = line_aggregates(lines, actuals, targets)
        return _result("lines", label, lines, format_lines(lines, actuals, targets, today, agg))
    except Exception as e:
        return _error_result("lines", label, e)


def format_factory_summary(s: Dict) -> str:
    bar = "═" * 62
    rows = [
        f"FACTORY PRODUCTION SUMMARY - {s['today']}",
        None,
        "SEWING DEPARTMENT",
        f"  Lines Reporting: {s['sewing_lines']}",
        f"  Total Good Output: {_qty(s['sewing_good'])} pcs",
        f"  Total Rejects: {_qty(s['sewing_reject'])} pcs",
        f"  Daily Target: {_qty(s['sewing_daily_target'])} pcs",
        f"  Efficiency: {s['sewing_efficiency']}%",
        f"  Total Manpower: {_qty(s['sewing_manpower'])}",
        None,
        "CUTTING DEPARTMENT",
        f"  Lines Reporting: {s['cutting_lines']}",
        f"  Total Day Cutting: {_qty(s['cutting_day'])} pcs",
        f"  Total Day Input: {_qty(s['cutting_input'])} pcs",
        None,
        "FINISHING DEPARTMENT",
        f"  Lines Reporting: {s['finishing_lines']}",
        f"  Total Poly: {_qty(s['finishing_poly'])} pcs",
        f"  Total Carton: {_qty(s['finishing_carton'])} pcs",
        None,
        "BLOCKERS",
        f"  Active Blockers: {s['blockers']}",
        f"  Critical: {s['critical_blockers']}",
        None,
        "WORK ORDERS",
        f"  Active Orders: {s['active_orders']}",
        f"  Total Order Quantity: {_qty(s['order_qty'])} pcs",
        f"  Active Lines: {s['active_lines']}",
    ]
    t = f"╔{bar}╗\n"
    for r in rows:
        t += f"╠{bar}╣\n" if r is None else f"║ {r:<60} ║\n"
    t += f"╚{bar}╝\n"
    return t


def fetch_factory_summary(rows: _Rows, today: str) -> Dict:
    label = "Factory Summary (Today)"
    try:
        fid = rows.factory_id
        day = {"factory_id": fid, "production_date": today}
        sewing = store.select(rows.repo, "sewing_actuals", day)
        targets = store.select(rows.repo, "sewing_targets", day)
        cutting = store.select(rows.repo, "cutting_actuals", day)
        finishing = store.select(rows.repo, "finishing_daily_logs", {**day, "log_type": "OUTPUT"})
        blockers = store.select(
            rows.repo, "production_updates_sewing",
            {"factory_id": fid, "has_blocker": True, "blocker_status": _OPEN_BLOCKER_STATUSES},
        )
        lines = store.select(rows.repo, "lines", {"factory_id": fid, "is_active": True})
        orders = store.select(rows.repo, "work_orders", {"factory_id": fid, "is_active": True})

        good = _sum(sewing, "good_today")
        daily_target = _sum(targets, "per_hour_target") * HOURS_PER_DAY
        stats = {
            "today": today,
            "sewing_lines": len(sewing),
            "sewing_good": good,
            "sewing_reject": _sum(sewing, "reject_today"),
            "sewing_manpower": _sum(sewing, "manpower_actual"),
            "sewing_daily_target": daily_target,
            "sewing_efficiency": _round(good / daily_target * 100) if daily_target > 0 else 0,
            "cutting_lines": len(cutting),
            "cutting_day": _sum(cutting, "day_cutting"),
            "cutting_input": _sum(cutting, "day_input"),
            "finishing_lines": len(finishing),
            "finishing_poly": _sum(finishing, "poly"),
            "finishing_carton": _sum(finishing, "carton"),
            "blockers": len(blockers),
            "critical_blockers": sum(1 for b in blockers if b.get("blocker_impact") == "critical"),
            "active_lines": len(lines),
            "active_orders": len(orders),
            "order_qty": _sum(orders, "order_qty"),
        }
        data = [{
            "sewing": {"lines": stats["sewing_lines"], "good": good, "reject": stats["sewing_reject"], "efficiency": stats["sewing_efficiency"]},
            "cutting": {"lines": stats["cutting_lines"], "output": stats["cutting_day"]},
            "finishing": {"lines": stats["finishing_lines"], "poly": stats["finishing_poly"], "carton": stats["finishing_carton"]},
            "blockers": {"total": stats["blockers"], "critical": stats["critical_blockers"]},
            "work_orders": {"active": stats["active_orders"], "total_qty": stats["order_qty"]},
        }]
        return _result("factory_summary", label, data, format_factory_summary(stats))
    except Exception as e:
        return _error_result("factory_summary", "Factory Summary", e)


# -------------------------------
# Orchestration
# -------------------------------

def fetch_live_data(
    datarepo_path: Path,
    factory_id: Optional[str],
    message: str,
    *,
    today: Optional[date] = None,
) -> Optional[Dict]:
    """Classify the message and read each matching category.

    Factory summary, work orders and lines are always included. Returns
    {"results": [...], "today_date": "YYYY-MM-DD"} or None without a factory.
    """
    if not factory_id:
        return None
    c = classify_message(message)
    for always in ("factory_summary", "work_orders", "lines"):
        if always not in c.categories:
            c.categories.append(always)

    if today is None:
        today = factory_today(datarepo_path, get_factory(datarepo_path, factory_id))
    day = today.isoformat()
    logger.info(
        "[LIVE-DATA] Categories: [%s], today=%s, poHint=%s, buyerHint=%s, wantsSummary=%s",
        ", ".join(c.categories), day, c.po_number_hint, c.buyer_hint, c.wants_summary,
    )

    rows = _Rows(datarepo_path, factory_id)
    fetchers: Dict[str, Callable[[], Dict]] = {
        "sewing_output": lambda: fetch_sewing_output(rows, day),
        "sewing_targets": lambda: fetch_sewing_targets(rows, day),
        "blockers": lambda: fetch_blockers(rows),
        "work_orders": lambda: fetch_work_orders(rows, day, c.po_number_hint, c.buyer_hint),
        "cutting": lambda: fetch_cutting(rows, day),
        "finishing": lambda: fetch_finishing(rows, day),
        "storage": lambda: fetch_storage(rows),
        "lines": lambda: fetch_lines(rows, day),
        "factory_summary": lambda: fetch_factory_summary(rows, day),
    }
    return {"results": [fetchers[cat]() for cat in c.categories], "today_date": day}


def build_live_data_context(live: Optional[Dict]) -> str:
    if not live or not live.get("results"):
        return ""
    sections = []
    for r in live["results"]:
        if r.get("error"):
            sections.append(f"### {r['category']} (Error)\nCould not fetch data: {r['error']}")
        elif not r.get("data"):
            sections.append(f"### {r['category']}\nNo data submitted yet for this period.")
        else:
            sections.append(f"### {r['category']}\n{r['summary']}")
    header = (
        f"## Live Factory Data (as of {live['today_date']})\n"
        "Data queried in real-time from the production database.\n\n"
    )
    return header + "\n\n".join(sections)


def has_live_results(live: Optional[Dict]) -> bool:
    return bool(live) and any(not r.get("error") and r.get("data") for r in live.get("results", []))
