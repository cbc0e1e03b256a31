"""Session storage for client sessions.

Tokens go to persistent storage when "remember me" is on and to
session-scoped storage otherwise. The flag itself always lives in persistent
storage so it is readable before any session exists.
"""
from __future__ import annotations
import json
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from .config import get_state_dir
from .logger import get_logger

logger = get_logger(__name__)

REMEMBER_ME_KEY = "pp-remember-me"


class MemoryStorage:
    """Key/value store that lives as long as the process."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._data[key] = str(value)

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data)


class JsonFileStorage(MemoryStorage):
    """Key/value store persisted to a JSON file after every write."""

    def __init__(self, path: Path):
        self.path = Path(path)
        data = {}
        if self.path.exists():
            try:
                data = json.loads(self.path.read_text())
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Ignoring unreadable storage file %s: %s", self.path, e)
        super().__init__(data if isinstance(data, dict) else {})

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(self._data, indent=2))
        tmp.replace(self.path)

    def set_item(self, key: str, value: str) -> None:
        super().set_item(key, value)
        self._flush()

    def remove_item(self, key: str) -> None:
        if key in self._data:
            super().remove_item(key)
            self._flush()


def sweep_auth_tokens(storage) -> int:
    """Remove every ``sb-*-auth-token`` key. Returns how many were removed."""
    stale = [k for k in storage.keys() if k.startswith("sb-") and k.endswith("-auth-token")]
    for k in stale:
        storage.remove_item(k)
    return len(stale)


class AuthStorageAdapter:
    def __init__(self, persistent, session):
        self.persistent = persistent
        self.session = session

    def get_remember_me(self) -> bool:
        return self.persistent.get_item(REMEMBER_ME_KEY) == "true"

    def set_remember_me(self, value: bool) -> None:
        self.persistent.set_item(REMEMBER_ME_KEY, "true" if value else "false")

    def _active(self):
        return self.persistent if self.get_remember_me() else self.session

    def _inactive(self):
        return self.session if self.get_remember_me() else self.persistent

    def get_item(self, key: str) -> Optional[str]:
        """Read from the active store, moving the value over from the inactive
        one if that is where it was left."""
        active = self._active()
        value = active.get_item(key)
        if value is not None:
            return value
        inactive = self._inactive()
        migrated = inactive.get_item(key)
        if migrated is not None:
            active.set_item(key, migrated)
            inactive.remove_item(key)
        return migrated

    def set_item(self, key: str, value: str) -> None:
        self._active().set_item(key, value)
        self._inactive().remove_item(key)

    def remove_item(self, key: str) -> None:
        self.persistent.remove_item(key)
        self.session.remove_item(key)


# -------------------------------
# CLI session
# - persistent: <state_dir>/auth.json
# - session: one file per parent shell in the temp dir
# -------------------------------

TOKEN_KEY = "sb-productionportal-auth-token"


def cli_session_storage(state_dir: Optional[Path] = None, session_dir: Optional[Path] = None) -> AuthStorageAdapter:
    persistent = JsonFileStorage(Path(state_dir or get_state_dir()) / "auth.json")
    session_dir = Path(session_dir or tempfile.gettempdir())
    session = JsonFileStorage(session_dir / f"pp-session-{os.getppid()}.json")
    return AuthStorageAdapter(persistent, session)
