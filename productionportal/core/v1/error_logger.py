"""Centralized error reporting to the app_error_logs table.

Every report is logged locally; at most 10 per sliding minute are also
written to the datarepo. Write failures are logged and never raised.
"""
from __future__ import annotations
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from . import store
from .config import get_datarepo_path
from .logger import get_logger

logger = get_logger(__name__)

RATE_LIMIT_WINDOW_S = 60.0
RATE_LIMIT_MAX = 10
SEVERITIES = ("error", "warning", "info")


class ErrorLogger:
    def __init__(self, datarepo_path: Optional[Path] = None, *, clock: Callable[[], float] = time.monotonic):
        self.datarepo_path = datarepo_path
        self._clock = clock
        self._timestamps: List[float] = []
        self._lock = threading.Lock()
        self.user_id: Optional[str] = None
        self.factory_id: Optional[str] = None

    def set_user_context(self, user_id: Optional[str], factory_id: Optional[str]) -> None:
        self.user_id = user_id
        self.factory_id = factory_id

    def is_rate_limited(self) -> bool:
        now = self._clock()
        with self._lock:
            self._timestamps = [t for t in self._timestamps if now - t < RATE_LIMIT_WINDOW_S]
            if len(self._timestamps) >= RATE_LIMIT_MAX:
                return True
            self._timestamps.append(now)
            return False

    def log_error(
        self,
        message: str,
        *,
        stack: Optional[str] = None,
        source: Optional[str] = None,
        severity: str = "error",
        metadata: Optional[Dict] = None,
        url: Optional[str] = None,
        user_agent: Optional[str] = None,
        datarepo_path: Optional[Path] = None,
        user_id: Optional[str] = None,
        factory_id: Optional[str] = None,
    ) -> Optional[Dict]:
        """Report one error. Returns the stored row, or None when it was
        rate-limited or could not be written.

        user_id/factory_id override the logger's own context for this report.
        """
        if severity not in SEVERITIES:
            severity = "error"
        level = {"warning": logger.warning, "info": logger.info}.get(severity, logger.error)
        level("[%s] %s: %s %s", severity.upper(), source or "unknown", message, stack or "")

        if self.is_rate_limited():
            logger.warning("[errorLogger] Rate limited, skipping insert")
            return None
        try:
            repo = datarepo_path or self.datarepo_path or get_datarepo_path()
            return store.insert(repo, "app_error_logs", {
                "message": str(message)[:2000],
                "stack": stack[:5000] if stack else None,
                "source": source,
                "severity": severity,
                "user_id": user_id or self.user_id,
                "factory_id": factory_id or self.factory_id,
                "url": url,
                "user_agent": user_agent,
                "metadata": metadata or {},
            })
        except Exception as e:
            logger.error("[errorLogger] Failed to store error log: %s", e)
            return None

    def log_warning(self, message: str, source: Optional[str] = None, metadata: Optional[Dict] = None, **kwargs):
        return self.log_error(message, source=source, severity="warning", metadata=metadata, **kwargs)

    def log_info(self, message: str, source: Optional[str] = None, metadata: Optional[Dict] = None, **kwargs):
        return self.log_error(message, source=source, severity="info", metadata=metadata, **kwargs)


_default = ErrorLogger()


def log_error(message: str, **kwargs) -> Optional[Dict]:
    return _default.log_error(message, **kwargs)
