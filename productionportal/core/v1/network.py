from __future__ import annotations
import time
from typing import Callable, Dict, Optional, TypeVar

import requests

from .store import DuplicateRecordError
from .logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_NETWORK_MARKERS = ("network", "fetch", "load failed", "timeout", "err_internet", "econnrefused")
DEFAULT_MAX_RETRIES = 2
RETRY_DELAY_S = 1.5


def is_network_error(err) -> bool:
    """Transient transport failure worth retrying."""
    if isinstance(err, (requests.ConnectionError, requests.Timeout)):
        return True
    message = str(getattr(err, "message", None) or err).lower()
    return any(m in message for m in _NETWORK_MARKERS)


def network_error_message(err) -> str:
    if is_network_error(err):
        return "Connection failed. Please check your network and try again."
    return str(err or "") or "An unexpected error occurred. Please try again."


def call_with_retry(
    fn: Callable[[], T],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    label: str = "call",
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """Run fn, retrying network errors with a linear backoff of 1.5s x attempt.

    Anything else propagates on the first failure.
    """
    for attempt in range(max_retries + 1):
        try:
            return fn()
        except Exception as e:
            if not is_network_error(e) or attempt == max_retries:
                raise
            logger.warning("[network-retry] %s attempt %d failed, retrying...", label, attempt + 1)
            (sleep or time.sleep)(RETRY_DELAY_S * (attempt + 1))
    raise RuntimeError("Max retries exceeded")


class PortalError(Exception):
    def __init__(self, status: int, message: str, code: Optional[str] = None):
        self.status = status
        self.code = code
        super().__init__(message)


class PortalClient:
    """HTTP client for a running ProductionPortal web service."""

    def __init__(self, base_url: str, token: Optional[str] = None, *, timeout: float = 30, session=None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _post(self, path: str, body: Optional[Dict]) -> Dict:
        resp = self.session.post(f"{self.base_url}{path}", json=body or {}, headers=self._headers(), timeout=self.timeout)
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 400:
            message = (data or {}).get("error") or f"HTTP {resp.status_code}"
            code = (data or {}).get("code")
            if code == DuplicateRecordError.code:
                raise DuplicateRecordError(path.rsplit("/", 1)[-1], ("unknown",), ())
            raise PortalError(resp.status_code, message, code)
        return data

    def invoke(self, fn_name: str, body: Optional[Dict] = None, *, max_retries: int = DEFAULT_MAX_RETRIES) -> Dict:
        return call_with_retry(lambda: self._post(f"/functions/{fn_name}", body), max_retries=max_retries, label=fn_name)

    def insert(self, table: str, payload: Dict, *, max_retries: int = DEFAULT_MAX_RETRIES) -> Dict:
        return call_with_retry(
            lambda: self._post(f"/api/submissions/{table}", payload),
            max_retries=max_retries,
            label=f"insert {table}",
        )
