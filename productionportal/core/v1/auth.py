from __future__ import annotations
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

from . import store
from .logger import get_logger, log_step

logger = get_logger(__name__)

# -------------------------------
# Users, roles and bearer tokens
# - profiles: email, full_name, factory_id
# - user_roles: (user_id, factory_id, role)
# - auth_tokens: SHA-256 of the bearer token, never the token itself
# -------------------------------

ROLES = ("worker", "admin", "owner", "storage", "cutting", "buyer")
ADMIN_ROLES = ("admin", "owner")


class AuthError(Exception):
    """Missing, malformed or unknown credentials (HTTP 401)."""


class RateLimitedError(Exception):
    """Too many attempts; carries the time the block lifts (HTTP 429)."""

    def __init__(self, blocked_until: Optional[str]):
        self.blocked_until = blocked_until
        super().__init__("Too many attempts. Please try again later.")


def create_user(
    datarepo_path: Path,
    email: str,
    *,
    full_name: Optional[str] = None,
    factory_id: Optional[str] = None,
    roles: Optional[List[str]] = None,
) -> Dict:
    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise ValueError("A valid email is required")
    roles = roles or ["worker"]
    for role in roles:
        if role not in ROLES:
            raise ValueError(f"role must be one of {', '.join(ROLES)}")
    profile = store.insert(datarepo_path, "profiles", {
        "email": email,
        "full_name": full_name,
        "factory_id": factory_id,
    })
    for role in roles:
        store.insert(datarepo_path, "user_roles", {"user_id": profile["id"], "factory_id": factory_id, "role": role})
    logger.info("User created: %s (%s)", email, ", ".join(roles))
    return get_user(datarepo_path, profile["id"])


def get_roles(datarepo_path: Path, user_id: str) -> List[str]:
    return [r["role"] for r in store.select(datarepo_path, "user_roles", {"user_id": user_id})]


def get_user(datarepo_path: Path, user_id: str) -> Dict:
    """Profile plus its role list. Raises LookupError for unknown ids."""
    profile = store.get(datarepo_path, "profiles", user_id)
    if profile is None:
        raise LookupError(f"User not found: {user_id}")
    return {**profile, "roles": get_roles(datarepo_path, user_id)}


def find_user_by_email(datarepo_path: Path, email: str) -> Optional[Dict]:
    profile = store.first(datarepo_path, "profiles", {"email": (email or "").strip().lower()})
    return get_user(datarepo_path, profile["id"]) if profile else None


def primary_role(roles: Optional[List[str]]) -> str:
    """owner beats admin; otherwise the first role, then worker."""
    roles = roles or ["worker"]
    if "owner" in roles:
        return "owner"
    if "admin" in roles:
        return "admin"
    return roles[0] if roles else "worker"


def is_admin(user: Dict) -> bool:
    return any(r in ADMIN_ROLES for r in user.get("roles") or [])


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def issue_token(datarepo_path: Path, user_id: str) -> str:
    """Create a bearer token for a user and return it. Only its hash is stored."""
    get_user(datarepo_path, user_id)
    token = secrets.token_urlsafe(32)
    store.insert(datarepo_path, "auth_tokens", {"user_id": user_id, "token_hash": _hash_token(token)})
    return token


def revoke_token(datarepo_path: Path, token: str) -> int:
    return store.delete(datarepo_path, "auth_tokens", {"token_hash": _hash_token(token)})


def authenticate(datarepo_path: Path, authorization: Optional[str]) -> Dict:
    """Resolve an ``Authorization: Bearer <token>`` header to a user."""
    if not authorization:
        raise AuthError("No authorization header")
    token = authorization.replace("Bearer ", "", 1).strip()
    if not token or token == "Bearer":
        raise AuthError("No authorization header")
    row = store.first(datarepo_path, "auth_tokens", {"token_hash": _hash_token(token)})
    if row is None:
        raise AuthError("Auth session missing or expired")
    try:
        return get_user(datarepo_path, row["user_id"])
    except LookupError:
        raise AuthError("Auth session missing or expired")


# -------------------------------
# Auth rate limiting
# -------------------------------

RATE_LIMIT_ACTIONS = ("login", "reset_password", "invite", "signup")
_TAG = "AUTH-RATE-LIMIT"


def rate_limit_policy(action: str) -> Dict[str, int]:
    """Attempts per window, window and block length in minutes."""
    if action == "login":
        return {"max_attempts": 10, "window_minutes": 10, "block_minutes": 5}
    return {"max_attempts": 5, "window_minutes": 30, "block_minutes": 30}


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)


def check_rate_limit(
    datarepo_path: Path,
    identifier: str,
    action: str,
    *,
    max_attempts: int,
    window_minutes: int,
    block_minutes: int,
    now: Optional[datetime] = None,
) -> Dict:
    """Count one attempt for (identifier, action).

    Returns {"allowed", "attempts", "reason", "blocked_until"}. A block starts
    once the window holds more than max_attempts and lasts block_minutes.
    """
    now = now or datetime.now(timezone.utc)
    key = {"identifier": identifier, "action": action}
    row = store.first(datarepo_path, "rate_limits", key)

    if row is not None:
        blocked_until = _parse_iso(row.get("blocked_until"))
        if blocked_until and blocked_until > now:
            return {"allowed": False, "attempts": row.get("attempts", 0), "reason": "blocked", "blocked_until": row["blocked_until"]}

    window_start = _parse_iso(row.get("window_start")) if row else None
    if window_start is None or now - window_start >= timedelta(minutes=window_minutes):
        attempts = 1
        window_start = now
    else:
        attempts = int(row.get("attempts") or 0) + 1

    blocked_until = None
    if attempts > max_attempts:
        blocked_until = _iso(now + timedelta(minutes=block_minutes))

    store.upsert(datarepo_path, "rate_limits", {
        **key,
        "attempts": attempts,
        "window_start": _iso(window_start),
        "blocked_until": blocked_until,
    }, ("identifier", "action"))

    if blocked_until:
        return {"allowed": False, "attempts": attempts, "reason": "too_many_attempts", "blocked_until": blocked_until}
    return {"allowed": True, "attempts": attempts, "reason": None, "blocked_until": None}


def log_security_event(
    datarepo_path: Path,
    event_type: str,
    *,
    user_id: Optional[str] = None,
    factory_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    details: Optional[Dict] = None,
) -> Dict:
    return store.insert(datarepo_path, "security_events", {
        "event_type": event_type,
        "user_id": user_id,
        "factory_id": factory_id,
        "ip_address": ip_address,
        "user_agent": user_agent,
        "details": details or {},
    })


def auth_rate_limit(
    datarepo_path: Path,
    *,
    action: str,
    ip: str,
    email: Optional[str] = None,
    factory_id: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict:
    """Gate an auth action by client IP and, when given, email.

    Raises RateLimitedError when either identifier is blocked. Storage
    failures fail open with a warning in the response.
    """
    policy = rate_limit_policy(action)
    identifiers = [ip] + ([email] if email else [])
    try:
        for identifier in identifiers:
            result = check_rate_limit(datarepo_path, identifier, action, now=now, **policy)
            if not result["allowed"]:
                log_security_event(
                    datarepo_path,
                    f"rate_limit_{action}",
                    factory_id=factory_id,
                    ip_address=ip,
                    user_agent=user_agent,
                    details={"email": email, "reason": result["reason"], "attempts": result["attempts"]},
                )
                log_step(logger, _TAG, "Blocked", {"action": action, "reason": result["reason"]})
                raise RateLimitedError(result["blocked_until"])
    except RateLimitedError:
        raise
    except Exception as e:
        logger.error("Rate limit check error: %s", e)
        return {"allowed": True, "warning": "Rate limit check failed"}
    return {"allowed": True}
