from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from productionportal.core.v1 import auth, store
from productionportal.core.v1.auth import (
    AuthError,
    RateLimitedError,
    auth_rate_limit,
    authenticate,
    check_rate_limit,
    create_user,
    find_user_by_email,
    issue_token,
    primary_role,
    revoke_token,
)

T0 = datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)


def test_primary_role_precedence():
    assert primary_role(["worker", "owner", "admin"]) == "owner"
    assert primary_role(["cutting", "admin"]) == "admin"
    assert primary_role(["storage", "cutting"]) == "storage"
    assert primary_role([]) == "worker"
    assert primary_role(None) == "worker"


def test_create_user_normalises_email_and_validates_roles(tmp_path: Path):
    user = create_user(tmp_path, "  Boss@Acme.CO ", full_name="Boss", factory_id="f1", roles=["admin", "owner"])
    assert user["email"] == "boss@acme.co"
    assert sorted(user["roles"]) == ["admin", "owner"]
    assert find_user_by_email(tmp_path, "BOSS@acme.co")["id"] == user["id"]
    assert find_user_by_email(tmp_path, "nobody@acme.co") is None

    with pytest.raises(ValueError):
        create_user(tmp_path, "not-an-email")
    with pytest.raises(ValueError):
        create_user(tmp_path, "x@acme.co", roles=["janitor"])
    with pytest.raises(store.DuplicateRecordError):
        create_user(tmp_path, "boss@acme.co")


def test_token_round_trip_and_revoke(tmp_path: Path):
    user = create_user(tmp_path, "worker@acme.co", factory_id="f1")
    token = issue_token(tmp_path, user["id"])

    assert authenticate(tmp_path, f"Bearer {token}")["id"] == user["id"]
    stored = store.first(tmp_path, "auth_tokens", {"user_id": user["id"]})
    assert token not in stored["token_hash"]

    assert revoke_token(tmp_path, token) == 1
    with pytest.raises(AuthError, match="Auth session missing or expired"):
        authenticate(tmp_path, f"Bearer {token}")


def test_authenticate_rejects_missing_header(tmp_path: Path):
    for header in (None, "", "Bearer", "Bearer "):
        with pytest.raises(AuthError, match="No authorization header"):
            authenticate(tmp_path, header)
    with pytest.raises(AuthError):
        authenticate(tmp_path, "Bearer bogus")


def test_issue_token_for_unknown_user(tmp_path: Path):
    with pytest.raises(LookupError):
        issue_token(tmp_path, "missing")


def test_check_rate_limit_blocks_after_max_attempts(tmp_path: Path):
    policy = {"max_attempts": 3, "window_minutes": 10, "block_minutes": 5}
    for i in range(3):
        res = check_rate_limit(tmp_path, "1.2.3.4", "login", now=T0 + timedelta(seconds=i), **policy)
        assert res["allowed"] is True
        assert res["attempts"] == i + 1

    res = check_rate_limit(tmp_path, "1.2.3.4", "login", now=T0 + timedelta(seconds=5), **policy)
    assert res["allowed"] is False
    assert res["reason"] == "too_many_attempts"
    assert res["blocked_until"] == "2025-03-10T08:05:05Z"

    res = check_rate_limit(tmp_path, "1.2.3.4", "login", now=T0 + timedelta(minutes=2), **policy)
    assert res["reason"] == "blocked"

    # a new window opens once both the block and the window have passed
    res = check_rate_limit(tmp_path, "1.2.3.4", "login", now=T0 + timedelta(minutes=11), **policy)
    assert res == {"allowed": True, "attempts": 1, "reason": None, "blocked_until": None}
    assert len(store.select(tmp_path, "rate_limits")) == 1


def test_rate_limit_policies():
    assert auth.rate_limit_policy("login") == {"max_attempts": 10, "window_minutes": 10, "block_minutes": 5}
    assert auth.rate_limit_policy("signup") == {"max_attempts": 5, "window_minutes": 30, "block_minutes": 30}


def test_auth_rate_limit_raises_and_records_event(tmp_path: Path):
    for _ in range(5):
        assert auth_rate_limit(tmp_path, action="invite", ip="9.9.9.9", email="a@b.co", now=T0) == {"allowed": True}

    with pytest.raises(RateLimitedError) as exc:
        auth_rate_limit(tmp_path, action="invite", ip="9.9.9.9", email="a@b.co", factory_id="f1", now=T0)
    assert exc.value.blocked_until == "2025-03-10T08:30:00Z"

    events = store.select(tmp_path, "security_events")
    assert len(events) == 1
    assert events[0]["event_type"] == "rate_limit_invite"
    assert events[0]["details"]["reason"] == "too_many_attempts"


def test_auth_rate_limit_tracks_email_separately(tmp_path: Path):
    for i in range(5):
        auth_rate_limit(tmp_path, action="signup", ip=f"10.0.0.{i}", email="same@b.co", now=T0)
    with pytest.raises(RateLimitedError):
        auth_rate_limit(tmp_path, action="signup", ip="10.0.0.99", email="same@b.co", now=T0)


def test_auth_rate_limit_fails_open(tmp_path: Path, monkeypatch):
    def broken(*args, **kwargs):
        raise OSError("disk gone")

    monkeypatch.setattr(auth, "check_rate_limit", broken)
    assert auth_rate_limit(tmp_path, action="login", ip="1.1.1.1") == {
        "allowed": True,
        "warning": "Rate limit check failed",
    }
