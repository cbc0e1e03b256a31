"""Offline submission queue.

Submissions that could not reach the server are kept in a JSON file and
replayed later. A lock file with a 30 second TTL keeps two processes from
draining the same queue at once; it is advisory, and a duplicate insert
(unique violation) on replay counts as already synced.
"""
from __future__ import annotations
import json
import secrets
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config import get_state_dir
from .production import FORM_TYPES
from .logger import get_logger

logger = get_logger(__name__)

QUEUE_FILENAME = "pp_offline_submission_queue.json"
LOCK_FILENAME = "pp_offline_queue_lock.json"
LOCK_TTL_MS = 30_000
DEFAULT_MAX_RETRIES = 5


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_id() -> str:
    return f"{_now_ms()}-{secrets.token_hex(5)[:9]}"


def _is_duplicate(err: Exception) -> bool:
    return getattr(err, "code", None) == "23505"


class OfflineQueue:
    def __init__(self, state_dir: Optional[Path] = None, *, owner_id: Optional[str] = None, clock: Callable[[], int] = _now_ms):
        self.state_dir = Path(state_dir) if state_dir else get_state_dir()
        self.queue_path = self.state_dir / QUEUE_FILENAME
        self.lock_path = self.state_dir / LOCK_FILENAME
        self.owner_id = owner_id or f"{_now_ms()}-{secrets.token_hex(3)}"
        self._clock = clock

    # ---- storage ----

    def items(self) -> List[Dict]:
        if not self.queue_path.exists():
            return []
        try:
            data = json.loads(self.queue_path.read_text())
        except (OSError, json.JSONDecodeError):
            return []
        return data if isinstance(data, list) else []

    def _save(self, items: List[Dict]) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.queue_path.with_suffix(".tmp")
        tmp.write_text(json.dumps(items, indent=2, default=str))
        tmp.replace(self.queue_path)

    def _patch(self, item_id: str, **changes) -> None:
        items = self.items()
        for it in items:
            if it["id"] == item_id:
                it.update(changes)
                break
        self._save(items)

    # ---- lock ----

    def acquire_lock(self) -> bool:
        """Claim the lock unless someone holds a fresh one. Corrupt or stale
        locks are taken over."""
        if self.lock_path.exists():
            try:
                lock = json.loads(self.lock_path.read_text())
                if self._clock() - int(lock["timestamp"]) < LOCK_TTL_MS:
                    return False
            except (OSError, ValueError, KeyError, TypeError):
                pass
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_path.write_text(json.dumps({"tab_id": self.owner_id, "timestamp": self._clock()}))
        return True

    def release_lock(self) -> None:
        if not self.lock_path.exists():
            return
        try:
            lock = json.loads(self.lock_path.read_text())
            owned = lock.get("tab_id") == self.owner_id
        except (OSError, ValueError, AttributeError):
            owned = True
        if owned:
            self.lock_path.unlink(missing_ok=True)

    # ---- queue operations ----

    def add(self, form_type: str, table_name: str, payload: Dict, factory_id: str, user_id: str) -> str:
        if form_type not in FORM_TYPES:
            raise ValueError(f"Unknown form type: {form_type}")
        item = {
            "id": _new_id(),
            "form_type": form_type,
            "table_name": table_name,
            "payload": payload,
            "factory_id": factory_id,
            "user_id": user_id,
            "timestamp": self._clock(),
            "retry_count": 0,
            "max_retries": DEFAULT_MAX_RETRIES,
            "status": "pending",
            "error_message": None,
        }
        items = self.items()
        items.append(item)
        self._save(items)
        logger.info("Queued %s submission %s (%d in queue)", form_type, item["id"], len(items))
        return item["id"]

    def remove(self, item_id: str) -> None:
        self._save([it for it in self.items() if it["id"] != item_id])

    def process(
        self,
        submit: Callable[[str, Dict], object],
        *,
        is_online: Callable[[], bool] = lambda: True,
        has_session: Callable[[], bool] = lambda: True,
    ) -> Dict:
        """Replay queued submissions through ``submit(table_name, payload)``.

        Returns {"successful": [ids], "failed": [{"id", "error"}]}.
        """
        result = {"successful": [], "failed": []}
        if not is_online():
            return result
        if not self.acquire_lock():
            logger.info("[offline-queue] Another process is draining the queue, skipping")
            return result
        try:
            if not has_session():
                return result
            for item in self.items():
                self._patch(item["id"], status="syncing")
                error = None
                try:
                    submit(item["table_name"], item["payload"])
                except Exception as e:
                    if not _is_duplicate(e):
                        error = str(e) or "Unknown error"
                if error is None:
                    self.remove(item["id"])
                    result["successful"].append(item["id"])
                elif item["retry_count"] >= item["max_retries"]:
                    self._patch(item["id"], status="failed", error_message=error)
                    result["failed"].append({"id": item["id"], "error": error})
                else:
                    self._patch(item["id"], status="pending", error_message=error, retry_count=item["retry_count"] + 1)
            return result
        finally:
            self.release_lock()

    def pending_count(self) -> int:
        return sum(1 for it in self.items() if it["status"] in ("pending", "syncing"))

    def has_pending(self) -> bool:
        return self.pending_count() > 0

    def failed_count(self) -> int:
        return sum(1 for it in self.items() if it["status"] == "failed")

    def clear(self) -> None:
        self.queue_path.unlink(missing_ok=True)

    def clear_failed(self) -> None:
        self._save([it for it in self.items() if it["status"] != "failed"])

    def retry_failed(self) -> None:
        items = self.items()
        for it in items:
            if it["status"] == "failed":
                it.update(status="pending", retry_count=0, error_message=None)
        self._save(items)

    def by_type(self, form_type: str) -> List[Dict]:
        return [it for it in self.items() if it["form_type"] == form_type]
