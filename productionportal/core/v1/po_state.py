"""Derived PO lifecycle, velocity and cluster calculations.

All functions are pure. Dates may be passed as `datetime.date` or ISO
strings (YYYY-MM-DD); forecasts are returned as ISO strings.
"""
from __future__ import annotations
import math
from datetime import timedelta
from typing import Iterable, Optional

from .production import parse_date

WORKFLOW_STATES = ("not_started", "planned", "running", "completed")
CLUSTERS = ("due_soon", "behind_plan", "on_track", "missing_updates", "no_deadline")
WORKFLOW_TABS = ("running", "planned", "not_started", "at_risk", "completed")

# Clusters that put an unfinished PO on the at-risk workflow tab
AT_RISK_CLUSTERS = frozenset({"due_soon", "behind_plan"})


def _days_between(later, earlier) -> int:
    return (parse_date(later) - parse_date(earlier)).days


def compute_workflow_state(*, has_any_actual: bool, has_target: bool, has_line: bool, remaining: float) -> str:
    """Lifecycle state, highest priority first: completed, running, planned, not_started."""
    if remaining <= 0:
        return "completed"
    if has_any_actual:
        return "running"
    if has_line or has_target:
        return "planned"
    return "not_started"


def compute_avg_per_day(actuals: Iterable[dict], today) -> dict:
    """Rolling average daily sewing output.

    Sums are divided by the window length (3 or 7 days), not by the number
    of rows, so days without output pull the average down. `effective` is
    the 3-day figure when any row falls inside the last 3 days, else the
    7-day figure.
    """
    sum3 = 0.0
    count3 = 0
    sum7 = 0.0
    for a in actuals:
        days_ago = _days_between(today, a.get("production_date"))
        if 0 <= days_ago < 7:
            good = a.get("good_today") or 0
            sum7 += good
            if days_ago < 3:
                sum3 += good
                count3 += 1
    avg3d = sum3 / 3
    avg7d = sum7 / 7
    return {"avg3d": avg3d, "avg7d": avg7d, "effective": avg3d if count3 > 0 else avg7d}


def compute_needed_per_day(remaining: float, ex_factory, today) -> float:
    """Units per day required to finish by ex-factory (remaining / 7 without a date)."""
    if remaining <= 0:
        return 0
    if not ex_factory:
        return remaining / 7
    days_left = _days_between(ex_factory, today)
    return remaining / max(1, days_left)


def compute_forecast_finish(remaining: float, avg_per_day: float, today) -> Optional[str]:
    if avg_per_day <= 0 or remaining <= 0:
        return None
    days_needed = math.ceil(remaining / avg_per_day)
    return (parse_date(today) + timedelta(days=days_needed)).isoformat()


def compute_cluster(
    *,
    ex_factory,
    remaining: float,
    needed_per_day: float,
    avg_per_day: float,
    forecast_finish: Optional[str],
    has_eod_today: bool,
    today,
) -> str:
    """Display cluster for a PO.

    Priority: no_deadline, due_soon, behind_plan, missing_updates, on_track.
    """
    if not ex_factory:
        return "no_deadline"
    ex = parse_date(ex_factory)
    days_to_ex = (ex - parse_date(today)).days
    if remaining > 0 and days_to_ex <= 7:
        return "due_soon"
    forecast_behind = forecast_finish is not None and forecast_finish > ex.isoformat()
    pace_behind = avg_per_day > 0 and needed_per_day > avg_per_day
    if forecast_behind or pace_behind:
        return "behind_plan"
    if not has_eod_today:
        return "missing_updates"
    return "on_track"


def workflow_tab_matches(po: dict, tab: str) -> bool:
    """Whether a control-room row belongs on a workflow tab."""
    state = po.get("workflowState")
    if tab == "at_risk":
        return state != "completed" and po.get("cluster") in AT_RISK_CLUSTERS
    return state == tab


def workflow_tab_counts(orders: Iterable[dict]) -> dict:
    orders = list(orders)
    return {tab: sum(1 for po in orders if workflow_tab_matches(po, tab)) for tab in WORKFLOW_TABS}
