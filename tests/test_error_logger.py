from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from productionportal.core.v1 import store
from productionportal.core.v1.error_logger import ErrorLogger


class Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_stores_row_with_user_context_and_truncation(tmp_path: Path):
    el = ErrorLogger(tmp_path, clock=Clock())
    el.set_user_context("u1", "f1")

    row = el.log_error("x" * 2500, stack="s" * 6000, source="submit", metadata={"form": "sewing"}, url="/api/x")

    assert row is not None
    stored = store.get(tmp_path, "app_error_logs", row["id"])
    assert len(stored["message"]) == 2000
    assert len(stored["stack"]) == 5000
    assert stored["user_id"] == "u1"
    assert stored["factory_id"] == "f1"
    assert stored["severity"] == "error"
    assert stored["metadata"] == {"form": "sewing"}


def test_warning_info_and_unknown_severity(tmp_path: Path):
    el = ErrorLogger(tmp_path, clock=Clock())
    assert el.log_warning("slow", source="net")["severity"] == "warning"
    assert el.log_info("hello")["severity"] == "info"
    assert el.log_error("odd", severity="fatal")["severity"] == "error"


def test_rate_limit_is_a_sliding_minute(tmp_path: Path):
    clock = Clock()
    el = ErrorLogger(tmp_path, clock=clock)
    for i in range(10):
        clock.now = 100.0 + i
        assert el.log_error(f"e{i}") is not None

    clock.now = 110.0
    assert el.log_error("over") is None
    assert len(store.select(tmp_path, "app_error_logs")) == 10

    # the first report (t=100) leaves the window at t=160
    clock.now = 160.0
    assert el.log_error("again") is not None


def test_write_failure_is_swallowed(tmp_path: Path):
    blocker = tmp_path / "tables"
    blocker.write_text("not a directory")
    el = ErrorLogger(tmp_path, clock=Clock())
    assert el.log_error("cannot store") is None


def test_explicit_repo_overrides_default(tmp_path: Path):
    other = tmp_path / "other"
    other.mkdir()
    el = ErrorLogger(tmp_path, clock=Clock())
    el.log_error("routed", datarepo_path=other)
    assert store.select(tmp_path, "app_error_logs") == []
    assert len(store.select(other, "app_error_logs")) == 1


def test_per_report_user_context_wins(tmp_path: Path):
    el = ErrorLogger(tmp_path, clock=Clock())
    el.set_user_context("admin", "f1")

    row = el.log_error("boom", user_id="worker", factory_id="f2")
    assert (row["user_id"], row["factory_id"]) == ("worker", "f2")

    anon = el.log_error("boom again")
    assert (anon["user_id"], anon["factory_id"]) == ("admin", "f1")
