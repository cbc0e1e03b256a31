from __future__ import annotations
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, List, Dict
from zoneinfo import ZoneInfo

from . import store
from .config import get_factory_timezone
from .logger import get_logger

logger = get_logger(__name__)

# -------------------------------
# Factory-side records
# - factory_accounts, lines, work_orders, work_order_line_assignments
# - department submissions (targets/actuals/logs per production day)
# -------------------------------

TRIAL_DAYS = 14

WORK_ORDER_STATUSES = ("not_started", "in_progress", "completed", "on_hold")

# Department forms that can be queued while offline; each writes its own table.
FORM_TYPES = (
    "sewing_targets",
    "sewing_actuals",
    "finishing_targets",
    "finishing_actuals",
    "finishing_daily_sheets",
    "finishing_hourly_logs",
    "cutting_targets",
    "cutting_actuals",
    "storage_bin_cards",
    "production_updates_sewing",
    "production_updates_finishing",
)

SUBMISSION_TABLES = FORM_TYPES + (
    "finishing_daily_logs",
    "storage_bin_card_transactions",
    "extras_ledger",
)

_REQUIRED_FIELDS: Dict[str, tuple] = {
    "sewing_targets": ("factory_id", "work_order_id", "line_id", "production_date", "per_hour_target"),
    "sewing_actuals": ("factory_id", "work_order_id", "line_id", "production_date", "good_today"),
    "cutting_targets": ("factory_id", "work_order_id", "production_date"),
    "cutting_actuals": ("factory_id", "work_order_id", "production_date"),
    "finishing_daily_logs": ("factory_id", "work_order_id", "production_date", "log_type"),
    "storage_bin_cards": ("factory_id",),
    "storage_bin_card_transactions": ("factory_id", "bin_card_id", "transaction_date"),
    "extras_ledger": ("factory_id", "work_order_id", "quantity"),
}

# Columns that must never go negative, across all submission tables
QUANTITY_FIELDS = frozenset({
    "good_today", "reject_today", "rework_today", "manpower_actual", "cumulative_good_total",
    "per_hour_target", "manpower_planned", "ot_hours_planned", "hours_planned", "target_total_planned",
    "output_qty", "target_qty", "manpower", "ot_hours", "ot_manpower", "reject_qty", "rework_qty",
    "qc_pass_qty", "qc_fail_qty", "packed_qty", "shipped_qty",
    "order_qty", "man_power", "marker_capacity", "lay_capacity", "cutting_capacity",
    "day_cutting", "day_input", "total_cutting", "total_input",
    "thread_cutting", "inside_check", "top_side_check", "buttoning", "iron", "get_up", "poly", "carton",
    "receive_qty", "issue_qty", "package_qty",
})

_DATE_FIELDS = ("production_date", "transaction_date", "planned_ex_factory")


def factory_today(datarepo_path: Path, factory: Optional[Dict] = None, *, now: Optional[datetime] = None) -> date:
    """Calendar date in the factory's timezone."""
    tz = ZoneInfo(get_factory_timezone(datarepo_path, factory))
    now = now or datetime.now(timezone.utc)
    return now.astimezone(tz).date()


def parse_date(value) -> Optional[date]:
    """Accept date, datetime or ISO string (YYYY-MM-DD[...]); None/'' -> None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise ValueError(f"Invalid date: {value!r}")


def _require(payload: Dict, keys: tuple) -> None:
    missing = [k for k in keys if payload.get(k) in (None, "")]
    if missing:
        raise ValueError(f"Missing required field(s): {', '.join(missing)}")


def _normalize_quantities(payload: Dict) -> Dict:
    out = dict(payload)
    for k in QUANTITY_FIELDS:
        if k not in out or out[k] is None or out[k] == "":
            continue
        try:
            v = float(out[k])
        except (TypeError, ValueError):
            raise ValueError(f"{k} must be a number")
        if v < 0:
            raise ValueError(f"{k} must be >= 0")
        out[k] = int(v) if v.is_integer() else v
    for k in _DATE_FIELDS:
        if out.get(k):
            out[k] = parse_date(out[k]).isoformat()
    return out


# -------------------------------
# Factories, lines, work orders
# -------------------------------

def create_factory(datarepo_path: Path, name: str, *, timezone_name: Optional[str] = None, today: Optional[date] = None) -> Dict:
    name = (name or "").strip()
    if not name:
        raise ValueError("Factory name is required")
    today = today or date.today()
    return store.insert(datarepo_path, "factory_accounts", {
        "name": name,
        "timezone": timezone_name,
        "subscription_status": "trial",
        "subscription_tier": "starter",
        "max_lines": 30,
        "trial_end_date": (today + timedelta(days=TRIAL_DAYS)).isoformat(),
        "stripe_customer_id": None,
        "stripe_subscription_id": None,
        "payment_failed_at": None,
    })


def get_factory(datarepo_path: Path, factory_id: str) -> Dict:
    f = store.get(datarepo_path, "factory_accounts", factory_id)
    if f is None:
        raise FileNotFoundError(f"Factory not found: {factory_id}")
    return f


def list_factories(datarepo_path: Path) -> List[Dict]:
    return store.select(datarepo_path, "factory_accounts", order_by="name")


def create_line(
    datarepo_path: Path,
    factory_id: str,
    line_id: str,
    *,
    name: Optional[str] = None,
    unit_name: Optional[str] = None,
    floor_name: Optional[str] = None,
) -> Dict:
    """Create a production line. `line_id` is the factory's short code (e.g. L1)."""
    get_factory(datarepo_path, factory_id)
    line_id = (line_id or "").strip()
    if not line_id:
        raise ValueError("line_id is required")
    if store.first(datarepo_path, "lines", {"factory_id": factory_id, "line_id": line_id}):
        raise ValueError(f"Line '{line_id}' already exists")
    return store.insert(datarepo_path, "lines", {
        "factory_id": factory_id,
        "line_id": line_id,
        "name": name,
        "unit_name": unit_name,
        "floor_name": floor_name,
        "is_active": True,
    })


def list_lines(datarepo_path: Path, factory_id: str, *, active_only: bool = True) -> List[Dict]:
    where = {"factory_id": factory_id}
    if active_only:
        where["is_active"] = True
    return store.select(datarepo_path, "lines", where, order_by="line_id")


def create_work_order(
    datarepo_path: Path,
    factory_id: str,
    *,
    po_number: str,
    buyer: str,
    style: str,
    order_qty: int,
    planned_ex_factory=None,
    line_id: Optional[str] = None,
    item: Optional[str] = None,
    color: Optional[str] = None,
    status: str = "not_started",
) -> Dict:
    get_factory(datarepo_path, factory_id)
    po_number = (po_number or "").strip()
    if not po_number:
        raise ValueError("po_number is required")
    if status not in WORK_ORDER_STATUSES:
        raise ValueError(f"status must be one of {', '.join(WORK_ORDER_STATUSES)}")
    if line_id is not None and store.get(datarepo_path, "lines", line_id) is None:
        raise ValueError(f"Unknown line: {line_id}")
    row = _normalize_quantities({
        "factory_id": factory_id,
        "po_number": po_number,
        "buyer": (buyer or "").strip(),
        "style": (style or "").strip(),
        "item": item,
        "color": color,
        "order_qty": order_qty,
        "planned_ex_factory": planned_ex_factory,
        "line_id": line_id,
        "status": status,
        "is_active": True,
    })
    return store.insert(datarepo_path, "work_orders", row)


def get_work_order(datarepo_path: Path, work_order_id: str) -> Dict:
    wo = store.get(datarepo_path, "work_orders", work_order_id)
    if wo is None:
        raise FileNotFoundError(f"Work order not found: {work_order_id}")
    return wo


def list_work_orders(datarepo_path: Path, factory_id: str, *, active_only: bool = True) -> List[Dict]:
    where = {"factory_id": factory_id}
    if active_only:
        where["is_active"] = True
    return store.select(datarepo_path, "work_orders", where, order_by="po_number")


def update_work_order(datarepo_path: Path, work_order_id: str, changes: Dict) -> Dict:
    get_work_order(datarepo_path, work_order_id)
    if "status" in changes and changes["status"] not in WORK_ORDER_STATUSES:
        raise ValueError(f"status must be one of {', '.join(WORK_ORDER_STATUSES)}")
    store.update(datarepo_path, "work_orders", {"id": work_order_id}, _normalize_quantities(changes))
    return get_work_order(datarepo_path, work_order_id)


def assign_line(datarepo_path: Path, work_order_id: str, line_id: str) -> Dict:
    wo = get_work_order(datarepo_path, work_order_id)
    line = store.get(datarepo_path, "lines", line_id)
    if line is None:
        raise ValueError(f"Unknown line: {line_id}")
    if line.get("factory_id") != wo.get("factory_id"):
        raise PermissionError("Line belongs to a different factory")
    return store.insert(datarepo_path, "work_order_line_assignments", {
        "factory_id": wo["factory_id"],
        "work_order_id": work_order_id,
        "line_id": line_id,
    })


# -------------------------------
# Department submissions
# -------------------------------

def submit(datarepo_path: Path, form_type: str, payload: Dict, *, user_id: Optional[str] = None) -> Dict:
    """Validate and insert one department submission.

    Raises ValueError on bad input and store.DuplicateRecordError when the
    same (work order, line, day) has already been submitted.
    """
    if form_type not in SUBMISSION_TABLES:
        raise ValueError(f"Unknown form type: {form_type}")
    if not isinstance(payload, dict):
        raise ValueError("payload must be an object")
    _require(payload, _REQUIRED_FIELDS.get(form_type, ("factory_id",)))
    row = _normalize_quantities(payload)
    if form_type == "finishing_daily_logs":
        row["log_type"] = str(row["log_type"]).upper()
        if row["log_type"] not in ("TARGET", "OUTPUT"):
            raise ValueError("log_type must be TARGET or OUTPUT")
    if user_id and not row.get("submitted_by"):
        row["submitted_by"] = user_id
    row.setdefault("submitted_at", store.now_iso())
    rec = store.insert(datarepo_path, form_type, row)
    logger.info("Submission stored: %s %s", form_type, rec["id"])
    return rec


def resolve_stage_label(stage: str, has_target: bool, has_actual: bool) -> str:
    """Label for a stage card: the bare stage when both halves exist."""
    if has_target and has_actual:
        return stage
    if has_target:
        return f"{stage} Target"
    return f"{stage} EOD"
