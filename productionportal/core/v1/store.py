from __future__ import annotations
from pathlib import Path
import json
import os
import re
import threading
import time
from typing import Optional, List, Dict, Iterable

from .logger import get_logger

logger = get_logger(__name__)

# -------------------------------
# File-backed tables
# - tables/<name>.ndjson, one JSON object per line
# - every row carries id (ULID) and created_at (UTC ISO)
# - unique keys below are enforced on insert/update
# -------------------------------

UNIQUE_KEYS: Dict[str, List[tuple]] = {
    "sewing_actuals": [("work_order_id", "line_id", "production_date")],
    "sewing_targets": [("work_order_id", "line_id", "production_date")],
    "cutting_actuals": [("work_order_id", "production_date")],
    "cutting_targets": [("work_order_id", "production_date")],
    "finishing_daily_logs": [("work_order_id", "production_date", "log_type")],
    "storage_bin_card_transactions": [("bin_card_id", "transaction_date")],
    "work_order_line_assignments": [("work_order_id", "line_id")],
    "profiles": [("email",)],
    "user_roles": [("user_id", "factory_id", "role")],
    "chat_analytics": [("message_id",)],
    "document_ingestion_queue": [("document_id",)],
    "factory_accounts": [("name",)],
    "buyer_po_access": [("user_id", "work_order_id")],
    "auth_tokens": [("token_hash",)],
    "rate_limits": [("identifier", "action")],
}

_TABLE_NAME_RE = re.compile(r"^[a-z][a-z0-9_]{0,63}$")
_LOCK = threading.RLock()


class DuplicateRecordError(Exception):
    """Raised when a write would violate a unique key; mirrors SQLSTATE 23505."""

    code = "23505"

    def __init__(self, table: str, key: tuple, values: tuple):
        self.table = table
        self.key = key
        self.values = values
        cols = ", ".join(key)
        super().__init__(f"duplicate key value violates unique constraint on {table} ({cols})")


def table_relpath(table: str) -> str:
    _validate_table_name(table)
    return f"tables/{table}.ndjson"


def _validate_table_name(table: str) -> None:
    if not isinstance(table, str) or _TABLE_NAME_RE.fullmatch(table) is None:
        raise ValueError(f"Invalid table name: {table!r}")


def _table_file(datarepo_path: Path, table: str) -> Path:
    return Path(datarepo_path) / table_relpath(table)


def _read_lines(p: Path) -> List[str]:
    if not p.exists():
        return []
    with open(p, "r") as f:
        return [line.rstrip("\n") for line in f]


def _append_line(p: Path, line: str) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "a") as f:
        f.write(line + "\n")


_CROCKFORD32 = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def new_ulid() -> str:
    """26-char Crockford Base32 ULID: 48-bit ms timestamp + 80 random bits."""
    value = int.from_bytes(int(time.time() * 1000).to_bytes(6, "big") + os.urandom(10), "big")
    out = []
    for _ in range(26):
        out.append(_CROCKFORD32[value & 0x1F])
        value >>= 5
    return "".join(reversed(out))


def now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def _load(datarepo_path: Path, table: str) -> List[Dict]:
    rows = []
    for line in _read_lines(_table_file(datarepo_path, table)):
        if not line.strip():
            continue
        try:
            rows.append(json.loads(line))
        except json.JSONDecodeError:
            logger.warning("Skipping malformed row in %s", table)
    return rows


def _dump(datarepo_path: Path, table: str, rows: Iterable[Dict]) -> None:
    p = _table_file(datarepo_path, table)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_suffix(".ndjson.tmp")
    with open(tmp, "w") as f:
        for r in rows:
            f.write(json.dumps(r, default=str, ensure_ascii=False) + "\n")
    os.replace(tmp, p)


def _matches(row: Dict, where: Optional[Dict]) -> bool:
    if not where:
        return True
    for k, v in where.items():
        if isinstance(v, (list, tuple, set, frozenset)):
            if row.get(k) not in v:
                return False
        elif row.get(k) != v:
            return False
    return True


def _check_unique(table: str, rows: List[Dict], candidate: Dict, skip_id: Optional[str] = None) -> None:
    for key in UNIQUE_KEYS.get(table, []):
        values = tuple(candidate.get(k) for k in key)
        # NULLs never collide
        if any(v is None for v in values):
            continue
        for r in rows:
            if skip_id is not None and r.get("id") == skip_id:
                continue
            if tuple(r.get(k) for k in key) == values:
                raise DuplicateRecordError(table, key, values)


def insert(datarepo_path: Path, table: str, row: Dict) -> Dict:
    """Insert one row and return it with id/created_at filled in."""
    if not isinstance(row, dict):
        raise ValueError("row must be an object")
    rec = dict(row)
    rec.setdefault("id", new_ulid())
    rec.setdefault("created_at", now_iso())
    with _LOCK:
        rows = _load(datarepo_path, table)
        if any(r.get("id") == rec["id"] for r in rows):
            raise DuplicateRecordError(table, ("id",), (rec["id"],))
        _check_unique(table, rows, rec)
        _append_line(_table_file(datarepo_path, table), json.dumps(rec, default=str, ensure_ascii=False))
    return rec


def select(
    datarepo_path: Path,
    table: str,
    where: Optional[Dict] = None,
    *,
    order_by: Optional[str] = None,
    desc: bool = False,
    limit: Optional[int] = None,
) -> List[Dict]:
    """Return rows matching all equality filters in `where`.

    A list/tuple/set value means "column in values".
    """
    with _LOCK:
        rows = [r for r in _load(datarepo_path, table) if _matches(r, where)]
    if order_by:
        # None sorts first ascending, last descending
        rows.sort(key=lambda r: (r.get(order_by) is not None, r.get(order_by) if r.get(order_by) is not None else ""), reverse=desc)
    if limit is not None:
        rows = rows[: max(0, int(limit))]
    return rows


def get(datarepo_path: Path, table: str, row_id: str) -> Optional[Dict]:
    if not row_id:
        return None
    for r in select(datarepo_path, table, {"id": row_id}, limit=1):
        return r
    return None


def first(datarepo_path: Path, table: str, where: Optional[Dict] = None, **kwargs) -> Optional[Dict]:
    rows = select(datarepo_path, table, where, limit=1, **kwargs)
    return rows[0] if rows else None


def update(datarepo_path: Path, table: str, where: Dict, changes: Dict) -> int:
    """Apply `changes` to every matching row. Returns the number of rows updated."""
    if not where:
        raise ValueError("update requires a filter")
    changes = {k: v for k, v in changes.items() if k not in ("id", "created_at")}
    with _LOCK:
        rows = _load(datarepo_path, table)
        count = 0
        for i, r in enumerate(rows):
            if not _matches(r, where):
                continue
            merged = {**r, **changes, "updated_at": now_iso()}
            _check_unique(table, rows, merged, skip_id=r.get("id"))
            rows[i] = merged
            count += 1
        if count:
            _dump(datarepo_path, table, rows)
    return count


def delete(datarepo_path: Path, table: str, where: Dict) -> int:
    if not where:
        raise ValueError("delete requires a filter")
    with _LOCK:
        rows = _load(datarepo_path, table)
        keep = [r for r in rows if not _matches(r, where)]
        removed = len(rows) - len(keep)
        if removed:
            _dump(datarepo_path, table, keep)
    return removed


def upsert(datarepo_path: Path, table: str, row: Dict, key: tuple) -> Dict:
    """Update the row matching `key` columns, or insert it."""
    where = {k: row.get(k) for k in key}
    with _LOCK:
        existing = first(datarepo_path, table, where)
        if existing is None:
            return insert(datarepo_path, table, row)
        update(datarepo_path, table, {"id": existing["id"]}, row)
        return get(datarepo_path, table, existing["id"]) or existing
