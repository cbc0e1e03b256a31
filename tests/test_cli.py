from __future__ import annotations

import json
import sys
import tempfile
from pathlib import Path

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from productionportal.cli.pp_cli import main
from productionportal.core.v1 import providers, store


@pytest.fixture
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    repo = tmp_path / "repo"
    repo.mkdir()
    monkeypatch.setenv("PP_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("PP_CONFIG_FILE", str(tmp_path / ".productionportal.yml"))
    monkeypatch.delenv("PP_API_TOKEN", raising=False)
    monkeypatch.delenv("PP_FORMAT", raising=False)
    monkeypatch.setattr(tempfile, "tempdir", str(tmp_path / "tmp"))
    (tmp_path / "tmp").mkdir()
    return repo


def _json(capsys, argv):
    main(argv)
    return json.loads(capsys.readouterr().out)


def _setup_factory(repo: Path, capsys) -> dict:
    fac = _json(capsys, ["-R", str(repo), "-F", "json", "factory", "add", "Acme Garments", "--timezone", "Asia/Dhaka"])
    line = _json(capsys, ["-R", str(repo), "-F", "json", "line", "add", "--factory", fac["id"], "L1", "--name", "Line 1"])
    wo = _json(capsys, [
        "-R", str(repo), "-F", "json", "po", "add", "--factory", fac["id"], "PO-001",
        "--buyer", "Zara", "--style", "Tee", "--qty", "1000", "--ex-factory", "2099-01-01", "--line", line["id"],
    ])
    return {"factory": fac, "line": line, "wo": wo}


def test_version_and_help(capsys):
    with pytest.raises(SystemExit) as exc:
        main(["--version"])
    assert exc.value.code == 0
    assert "ProductionPortal" in capsys.readouterr().out

    main([])
    assert "ProductionPortal CLI" in capsys.readouterr().out


def test_unknown_option_exits_2(cli_env, capsys):
    with pytest.raises(SystemExit) as exc:
        main(["plans", "--bogus"])
    assert exc.value.code == 2


def test_init_creates_datarepo(tmp_path: Path, cli_env, monkeypatch, capsys):
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test User")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test User")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")
    target = tmp_path / "factory-data"

    out = _json(capsys, ["-F", "json", "init", str(target), "--timezone", "Asia/Dhaka"])

    assert out["role_features_seeded"] > 0
    cfg = yaml.safe_load((target / "ppdatarepo.yml").read_text())
    assert cfg["timezone"] == "Asia/Dhaka"
    assert (target / "tables").is_dir()
    assert (target / "documents").is_dir()
    saved = yaml.safe_load((tmp_path / ".productionportal.yml").read_text())
    assert Path(saved["default_datarepo"]) == target.resolve()

    with pytest.raises(SystemExit) as exc:
        main(["init", str(target)])
    assert exc.value.code == 1
    assert "already exists and is not empty" in capsys.readouterr().out


def test_factory_line_po_flow(cli_env, capsys):
    repo = cli_env
    ids = _setup_factory(repo, capsys)
    assert ids["factory"]["subscription_status"] == "trial"
    assert ids["wo"]["order_qty"] == 1000

    main(["-R", str(repo), "factory", "ls"])
    assert "Acme Garments" in capsys.readouterr().out

    wos = _json(capsys, ["-R", str(repo), "-F", "json", "po", "ls", "--factory", ids["factory"]["id"]])
    assert [w["po_number"] for w in wos] == ["PO-001"]

    main(["-R", str(repo), "po", "assign", ids["wo"]["id"], ids["line"]["id"]])
    assert "Assigned line" in capsys.readouterr().out
    assert len(store.select(repo, "work_order_line_assignments")) == 1


def test_line_ls_lists_factory_lines(cli_env, capsys):
    repo = cli_env
    ids = _setup_factory(repo, capsys)
    fid = ids["factory"]["id"]
    main(["-R", str(repo), "line", "add", "--factory", fid, "L2", "--unit", "Unit A", "--floor", "2F"])
    capsys.readouterr()

    lines = _json(capsys, ["-R", str(repo), "-F", "json", "line", "ls", "--factory", fid])
    assert [ln["line_id"] for ln in lines] == ["L1", "L2"]

    main(["-R", str(repo), "line", "list", "--factory", fid])
    out = capsys.readouterr().out
    assert "Line 1" in out
    assert "Unit A / 2F" in out

    other = _json(capsys, ["-R", str(repo), "-F", "json", "factory", "add", "Other Mills"])
    main(["-R", str(repo), "line", "ls", "--factory", other["id"]])
    assert "No lines found" in capsys.readouterr().out


def test_submit_and_control_room(cli_env, capsys):
    repo = cli_env
    ids = _setup_factory(repo, capsys)
    rec = _json(capsys, [
        "-R", str(repo), "-F", "json", "submit", "sewing_actuals",
        f"factory_id={ids['factory']['id']}", f"work_order_id={ids['wo']['id']}",
        f"line_id={ids['line']['id']}", "production_date=2025-03-10", "good_today=250",
    ])
    assert rec["good_today"] == 250

    out = _json(capsys, ["-R", str(repo), "-F", "json", "control-room", "--factory", ids["factory"]["id"]])
    assert out["kpis"]["activeOrders"] == 1
    assert out["kpis"]["sewingOutput"] == 250
    assert [po["po_number"] for po in out["orders"]] == ["PO-001"]

    main(["-R", str(repo), "control-room", "--factory", ids["factory"]["id"]])
    human = capsys.readouterr().out
    assert "Active POs: 1" in human
    assert "PO-001" in human

    with pytest.raises(SystemExit) as exc:
        main(["-R", str(repo), "submit", "sewing_actuals", "good_today"])
    assert exc.value.code == 1
    assert "invalid key=value pair" in capsys.readouterr().out


def test_po_show_unknown_fails(cli_env, capsys):
    with pytest.raises(SystemExit) as exc:
        main(["-R", str(cli_env), "po", "show", "missing"])
    assert exc.value.code == 1
    assert capsys.readouterr().out.startswith("[productionPortal] Error:")


def test_users_tokens_and_grants(cli_env, capsys):
    repo = cli_env
    ids = _setup_factory(repo, capsys)
    user = _json(capsys, [
        "-R", str(repo), "-F", "json", "user", "add", "Buyer@Zara.co", "--role", "buyer", "--name", "Zara Buyer",
    ])
    assert user["email"] == "buyer@zara.co"
    assert user["roles"] == ["buyer"]

    tok = _json(capsys, ["-R", str(repo), "-F", "json", "user", "token", "buyer@zara.co"])
    assert tok["user_id"] == user["id"]
    assert len(tok["token"]) > 20

    main(["-R", str(repo), "user", "grant", "buyer@zara.co", ids["wo"]["id"]])
    assert "Granted" in capsys.readouterr().out

    with pytest.raises(SystemExit):
        main(["-R", str(repo), "user", "token", "nobody@zara.co"])
    assert "User not found" in capsys.readouterr().out


def test_plans_human_and_yaml(capsys):
    main(["plans"])
    human = capsys.readouterr().out
    assert "Starter" in human
    assert "Enterprise" in human

    main(["-F", "yaml", "plans"])
    plans = yaml.safe_load(capsys.readouterr().out)
    assert [p["id"] for p in plans] == ["starter", "growth", "scale", "enterprise"]


def test_kb_add_and_search(cli_env, monkeypatch, capsys):
    repo = cli_env
    doc = _json(capsys, ["-R", str(repo), "-F", "json", "kb", "add", "Needle SOP", "--type", "guide", "--content", "Change needles."])
    assert doc["document_type"] == "guide"

    monkeypatch.setattr(providers, "generate_embedding", lambda text, **kw: {"embedding": [1.0, 0.0], "tokens": 1})
    store.insert(repo, "knowledge_chunks", {
        "document_id": doc["id"], "chunk_index": 0, "content": "Change needles.", "embedding": "[1.0,0.0]",
    })
    hits = _json(capsys, ["-R", str(repo), "-F", "json", "kb", "search", "needles"])
    assert [h["document_title"] for h in hits] == ["Needle SOP"]


def test_queue_add_list_clear(cli_env, capsys):
    out = _json(capsys, [
        "-F", "json", "queue", "add", "sewing_actuals", "good_today=5", "--factory", "f1", "--user", "u1",
    ])
    assert out["id"]

    items = _json(capsys, ["-F", "json", "queue", "ls"])
    assert [(it["form_type"], it["payload"]) for it in items] == [("sewing_actuals", {"good_today": "5"})]

    main(["queue", "clear"])
    assert "cleared" in capsys.readouterr().out
    assert _json(capsys, ["-F", "json", "queue", "ls"]) == []


def test_queue_sync_needs_token_and_login_supplies_it(cli_env, capsys):
    with pytest.raises(SystemExit) as exc:
        main(["queue", "sync"])
    assert exc.value.code == 1
    assert "an API token is required" in capsys.readouterr().out

    stored = _json(capsys, ["-F", "json", "login", "tok-123", "--remember-me"])
    assert stored == {"stored": "persistent"}

    # empty queue: nothing is sent, but the stored token is accepted
    res = _json(capsys, ["-F", "json", "queue", "sync", "--url", "http://portal.invalid"])
    assert res == {"successful": [], "failed": []}

    removed = _json(capsys, ["-F", "json", "logout"])
    assert removed == {"removed": 1}
    with pytest.raises(SystemExit):
        main(["queue", "sync"])
