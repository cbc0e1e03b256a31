from __future__ import annotations

import sys
from pathlib import Path

import pytest
import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from productionportal.core.v1.network import (
    PortalClient,
    PortalError,
    call_with_retry,
    is_network_error,
    network_error_message,
)
from productionportal.core.v1.store import DuplicateRecordError


class FakeResponse:
    def __init__(self, status_code, data=None):
        self.status_code = status_code
        self._data = data

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers})
        r = self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r


def test_is_network_error():
    assert is_network_error(requests.ConnectionError("refused"))
    assert is_network_error(requests.Timeout())
    assert is_network_error(RuntimeError("Failed to fetch"))
    assert is_network_error(RuntimeError("connect ECONNREFUSED 127.0.0.1"))
    assert not is_network_error(ValueError("bad payload"))


def test_network_error_message():
    assert network_error_message(requests.Timeout()).startswith("Connection failed.")
    assert network_error_message(ValueError("bad payload")) == "bad payload"
    assert network_error_message(None) == "An unexpected error occurred. Please try again."


def test_call_with_retry_backs_off_on_network_errors():
    attempts = []
    sleeps = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise requests.ConnectionError("network down")
        return "ok"

    assert call_with_retry(flaky, sleep=sleeps.append) == "ok"
    assert sleeps == [1.5, 3.0]


def test_call_with_retry_gives_up_and_skips_other_errors():
    sleeps = []

    def down():
        raise requests.ConnectionError("network down")

    with pytest.raises(requests.ConnectionError):
        call_with_retry(down, max_retries=1, sleep=sleeps.append)
    assert sleeps == [1.5]

    calls = []

    def broken():
        calls.append(1)
        raise KeyError("nope")

    with pytest.raises(KeyError):
        call_with_retry(broken, sleep=sleeps.append)
    assert len(calls) == 1


def test_client_insert_posts_with_bearer_token():
    session = FakeSession([FakeResponse(201, {"success": True, "result": {"id": "r1"}})])
    client = PortalClient("http://portal.test/", "tok", session=session)

    res = client.insert("sewing_actuals", {"good_today": 10})

    assert res["result"]["id"] == "r1"
    call = session.calls[0]
    assert call["url"] == "http://portal.test/api/submissions/sewing_actuals"
    assert call["headers"]["Authorization"] == "Bearer tok"
    assert call["json"] == {"good_today": 10}


def test_client_maps_duplicate_and_other_errors():
    session = FakeSession([
        FakeResponse(409, {"success": False, "error": "duplicate", "code": "23505"}),
        FakeResponse(403, {"success": False, "error": "No factory assigned"}),
        FakeResponse(502),
    ])
    client = PortalClient("http://portal.test", "tok", session=session)

    with pytest.raises(DuplicateRecordError):
        client.insert("sewing_actuals", {}, max_retries=0)
    with pytest.raises(PortalError) as exc:
        client.invoke("chat", {"message": "hi"}, max_retries=0)
    assert exc.value.status == 403
    assert str(exc.value) == "No factory assigned"
    with pytest.raises(PortalError, match="HTTP 502"):
        client.invoke("chat", {}, max_retries=0)


def test_client_retries_connection_failures(monkeypatch):
    import productionportal.core.v1.network as network

    monkeypatch.setattr(network.time, "sleep", lambda s: None)
    session = FakeSession([requests.ConnectionError("network down"), FakeResponse(200, {"success": True})])
    client = PortalClient("http://portal.test", None, session=session)

    assert client.invoke("check-subscription") == {"success": True}
    assert len(session.calls) == 2
    assert "Authorization" not in session.calls[0]["headers"]
