from __future__ import annotations
from dataclasses import dataclass, field, fields
from typing import Dict, List, Mapping, Optional

from .production import parse_date

# -------------------------------
# Control-room filters
# - AND across categories, OR within one
# - lines/units/floors match when any of the PO's values is selected
# -------------------------------


@dataclass
class POFilters:
    buyers: List[str] = field(default_factory=list)
    po_numbers: List[str] = field(default_factory=list)
    styles: List[str] = field(default_factory=list)
    lines: List[str] = field(default_factory=list)
    units: List[str] = field(default_factory=list)
    floors: List[str] = field(default_factory=list)
    health: List[str] = field(default_factory=list)
    ex_factory: Optional[str] = None  # overdue | next7 | next14 | this_month | no_deadline
    updated: Optional[str] = None  # today | no_today

    def to_dict(self) -> Dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


EMPTY_FILTERS = POFilters()

_LIST_FIELDS = ("buyers", "po_numbers", "styles", "lines", "units", "floors", "health")

# filter field -> query parameter
_PARAM_KEYS = {
    "buyers": "buyer",
    "po_numbers": "po",
    "styles": "style",
    "lines": "line",
    "units": "unit",
    "floors": "floor",
    "health": "health",
}

HEALTH_LABELS = {
    "healthy": "Healthy",
    "watch": "Watch",
    "at_risk": "At Risk",
    "no_deadline": "No date",
    "deadline_passed": "Overdue",
    "completed": "Complete",
}

EX_FACTORY_OPTIONS = [
    {"value": "overdue", "label": "Overdue"},
    {"value": "next7", "label": "Next 7 days"},
    {"value": "next14", "label": "Next 14 days"},
    {"value": "this_month", "label": "This month"},
    {"value": "no_deadline", "label": "No deadline"},
]

UPDATED_OPTIONS = [
    {"value": "today", "label": "Updated today"},
    {"value": "no_today", "label": "No updates today"},
]


def count_active_filters(filters: POFilters) -> int:
    n = sum(len(getattr(filters, name)) for name in _LIST_FIELDS)
    return n + (1 if filters.ex_factory else 0) + (1 if filters.updated else 0)


def derive_filter_options(orders: List[Dict]) -> Dict[str, List[str]]:
    """Sorted unique values per category, taken from the given rows."""
    opts = {name: set() for name in _LIST_FIELDS}
    for po in orders:
        if po.get("buyer"):
            opts["buyers"].add(po["buyer"])
        if po.get("po_number"):
            opts["po_numbers"].add(po["po_number"])
        if po.get("style"):
            opts["styles"].add(po["style"])
        opts["lines"].update(po.get("line_names") or [])
        opts["units"].update(po.get("unit_names") or [])
        opts["floors"].update(po.get("floor_names") or [])
        status = (po.get("health") or {}).get("status")
        if status:
            opts["health"].add(status)
    return {name: sorted(values) for name, values in opts.items()}


def match_ex_factory(ex_factory, range_value: str, today) -> bool:
    if range_value == "no_deadline":
        return not ex_factory
    if not ex_factory:
        return False
    ex = parse_date(ex_factory)
    t = parse_date(today)
    days_to_ex = (ex - t).days
    if range_value == "overdue":
        return days_to_ex < 0
    if range_value == "next7":
        return 0 <= days_to_ex <= 7
    if range_value == "next14":
        return 0 <= days_to_ex <= 14
    if range_value == "this_month":
        return (ex.year, ex.month) == (t.year, t.month)
    return True


def match_updated(has_eod_today: bool, updated: str) -> bool:
    if updated == "today":
        return bool(has_eod_today)
    if updated == "no_today":
        return not has_eod_today
    return True


def _overlaps(values, selected: List[str]) -> bool:
    return any(v in selected for v in (values or []))


def apply_filters(orders: List[Dict], filters: POFilters, today) -> List[Dict]:
    if count_active_filters(filters) == 0:
        return list(orders)

    out = []
    for po in orders:
        if filters.buyers and po.get("buyer") not in filters.buyers:
            continue
        if filters.po_numbers and po.get("po_number") not in filters.po_numbers:
            continue
        if filters.styles and (po.get("style") or "") not in filters.styles:
            continue
        if filters.lines and not _overlaps(po.get("line_names"), filters.lines):
            continue
        if filters.units and not _overlaps(po.get("unit_names"), filters.units):
            continue
        if filters.floors and not _overlaps(po.get("floor_names"), filters.floors):
            continue
        if filters.health and (po.get("health") or {}).get("status", "") not in filters.health:
            continue
        if filters.ex_factory and not match_ex_factory(po.get("planned_ex_factory"), filters.ex_factory, today):
            continue
        if filters.updated and not match_updated(po.get("hasEodToday", False), filters.updated):
            continue
        out.append(po)
    return out


def filters_to_params(filters: POFilters) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for name, key in _PARAM_KEYS.items():
        values = getattr(filters, name)
        if values:
            params[key] = ",".join(values)
    if filters.ex_factory:
        params["ex"] = filters.ex_factory
    if filters.updated:
        params["updated"] = filters.updated
    return params


def filters_from_params(params: Mapping[str, str]) -> POFilters:
    """Parse query parameters (any mapping with .get, e.g. request.args)."""

    def split(key: str) -> List[str]:
        raw = params.get(key) or ""
        return [s for s in raw.split(",") if s]

    kwargs = {name: split(key) for name, key in _PARAM_KEYS.items()}
    return POFilters(
        **kwargs,
        ex_factory=params.get("ex") or None,
        updated=params.get("updated") or None,
    )


def toggle_array_item(arr: List, item) -> List:
    return [x for x in arr if x != item] if item in arr else [*arr, item]
