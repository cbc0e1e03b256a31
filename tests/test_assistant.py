from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from productionportal.core.v1 import store
from productionportal.core.v1.assistant import (
    SUGGESTED_QUESTIONS_SEPARATOR,
    build_system_prompt,
    chat,
    detect_language,
    generate_embedding_for_user,
    get_accessible_features,
    parse_chat_response,
    record_feedback,
    seed_role_features,
)
from productionportal.core.v1.auth import create_user


def fake_embed(text):
    return {"embedding": [1.0, 0.0], "tokens": 3}


class FakeCompletion:
    def __init__(self, text):
        self.text = text
        self.calls = []

    def __call__(self, system, messages):
        self.calls.append({"system": system, "messages": messages})
        return {"text": self.text, "tokens_used": 42, "model": "fake-model"}


def no_live_data(datarepo_path, factory_id, message):
    return None


def _knowledge(repo: Path) -> dict:
    doc = store.insert(repo, "knowledge_documents", {
        "title": "Needle Policy", "document_type": "policy", "is_active": True, "factory_id": None, "language": "en",
    })
    store.insert(repo, "knowledge_chunks", {
        "document_id": doc["id"], "chunk_index": 0, "content": "Change needles every shift.",
        "section_heading": "Needles", "page_number": None, "embedding": "[1.0,0.0]",
    })
    return doc


def _worker(repo: Path, email="worker@acme.co"):
    return create_user(repo, email, full_name="Rina", factory_id="f1", roles=["worker"])


def test_detect_language():
    assert detect_language("How much did line 3 sew today?") == "en"
    assert detect_language("আজকের উৎপাদন কত?") == "bn"
    assert detect_language("") == "en"


def test_parse_response_splits_suggestions_and_cites_sources():
    sources = [{"chunk_id": "c1", "document_title": "Needle Policy", "content": "Change needles every shift."}]
    raw = f"Per [Source: Needle Policy] change needles.\n{SUGGESTED_QUESTIONS_SEPARATOR}\nWhat about thread?\n\nWho approves?\n"
    parsed = parse_chat_response(raw, sources)
    assert parsed["content"] == "Per [Source: Needle Policy] change needles."
    assert parsed["suggested_questions"] == ["What about thread?", "Who approves?"]
    assert parsed["no_evidence"] is False
    assert parsed["citations"][0]["chunk_id"] == "c1"
    assert parsed["citations"][0]["snippet"].endswith("...")


def test_no_evidence_phrase_unless_live_data_answered():
    raw = "I don't have specific information about that."
    assert parse_chat_response(raw, [])["no_evidence"] is True
    live = {"results": [{"category": "lines", "data": [{"id": "L1"}]}]}
    assert parse_chat_response(raw, [], live)["no_evidence"] is False


def test_system_prompt_sections():
    features = [{"feature_category": "sewing", "feature_name": "blockers", "description": "Report blockers"}]
    prompt = build_system_prompt("worker", features, "bn", has_live_data=True)
    assert "User Role: worker" in prompt
    assert "Respond in Bengali" in prompt
    assert "- sewing/blockers: Report blockers" in prompt
    assert "Live Production Data" in prompt
    assert "Live Production Data" not in build_system_prompt("admin", [], "en")


def test_role_features_seed_once_and_dedupe(tmp_path: Path):
    assert seed_role_features(tmp_path) > 0
    assert seed_role_features(tmp_path) == 0
    worker = get_accessible_features(tmp_path, ["worker"])
    assert ("sewing", "blockers") in {(f["feature_category"], f["feature_name"]) for f in worker}
    both = get_accessible_features(tmp_path, ["admin", "owner"])
    keys = [(f["feature_category"], f["feature_name"]) for f in both]
    assert len(keys) == len(set(keys))
    assert keys == sorted(keys)


def test_chat_persists_exchange_and_cites_sources(tmp_path: Path):
    _knowledge(tmp_path)
    user = _worker(tmp_path)
    complete = FakeCompletion(
        f"According to Needle Policy, change needles every shift.\n{SUGGESTED_QUESTIONS_SEPARATOR}\nHow often for knits?"
    )

    res = chat(tmp_path, user, "How often do we change needles?", embed=fake_embed, complete=complete, live_data=no_live_data)

    assert res["message"] == "According to Needle Policy, change needles every shift."
    assert res["language"] == "en"
    assert res["no_evidence"] is False
    assert res["suggested_questions"] == ["How often for knits?"]
    assert [c["document_title"] for c in res["citations"]] == ["Needle Policy"]

    conv = store.get(tmp_path, "chat_conversations", res["conversation_id"])
    assert conv["user_id"] == user["id"]
    assert conv["title"] == "How often do we change needles?"
    msgs = store.select(tmp_path, "chat_messages", {"conversation_id": res["conversation_id"]}, order_by="created_at")
    assert [m["role"] for m in msgs] == ["user", "assistant"]
    assert msgs[1]["tokens_used"] == 42

    analytics = store.first(tmp_path, "chat_analytics", {"message_id": res["message_id"]})
    assert analytics["user_role"] == "worker"
    assert analytics["citations_count"] == 1

    sent = complete.calls[0]["messages"]
    assert sent[-1]["role"] == "user"
    assert "## Retrieved Knowledge Base Sources" in sent[-1]["content"]
    assert sent[-1]["content"].endswith("## User Question\nHow often do we change needles?")


def test_chat_continues_conversation_with_history(tmp_path: Path):
    user = _worker(tmp_path)
    complete = FakeCompletion("Noted.")
    first = chat(tmp_path, user, "First question", embed=fake_embed, complete=complete, live_data=no_live_data)
    chat(
        tmp_path, user, "Second question",
        conversation_id=first["conversation_id"], embed=fake_embed, complete=complete, live_data=no_live_data,
    )

    history = complete.calls[1]["messages"]
    assert [m["role"] for m in history] == ["user", "assistant", "user"]
    assert history[0]["content"] == "First question"
    assert "Second question" in history[-1]["content"]


def test_chat_rejects_empty_and_foreign_conversation(tmp_path: Path):
    owner = _worker(tmp_path)
    other = _worker(tmp_path, "other@acme.co")
    complete = FakeCompletion("ok")
    with pytest.raises(ValueError):
        chat(tmp_path, owner, "   ", embed=fake_embed, complete=complete, live_data=no_live_data)

    res = chat(tmp_path, owner, "hello", embed=fake_embed, complete=complete, live_data=no_live_data)
    with pytest.raises(LookupError):
        chat(
            tmp_path, other, "let me in",
            conversation_id=res["conversation_id"], embed=fake_embed, complete=complete, live_data=no_live_data,
        )


def test_chat_includes_live_data_in_prompt(tmp_path: Path):
    user = _worker(tmp_path)
    complete = FakeCompletion("I don't have specific information about that, but Line 1 made 450 pcs.")

    def live(datarepo_path, factory_id, message):
        assert factory_id == "f1"
        return {"today_date": "2025-03-10", "results": [{"category": "sewing_output", "data": [{"id": 1}], "summary": "450 pcs"}]}

    res = chat(tmp_path, user, "sewing output today", embed=fake_embed, complete=complete, live_data=live)

    assert res["no_evidence"] is False
    assert "Live Production Data" in complete.calls[0]["system"]
    assert complete.calls[0]["messages"][-1]["content"].startswith("## Live Factory Data (as of 2025-03-10)")


def test_record_feedback(tmp_path: Path):
    user = _worker(tmp_path)
    res = chat(tmp_path, user, "hello", embed=fake_embed, complete=FakeCompletion("hi"), live_data=no_live_data)

    with pytest.raises(ValueError):
        record_feedback(tmp_path, user, res["message_id"], "meh")
    with pytest.raises(ValueError):
        record_feedback(tmp_path, user, None, "thumbs_up")
    stranger = _worker(tmp_path, "stranger@acme.co")
    with pytest.raises(PermissionError):
        record_feedback(tmp_path, stranger, res["message_id"], "thumbs_up")

    assert record_feedback(tmp_path, user, res["message_id"], "thumbs_down", "wrong line") == {"success": True}
    rows = store.select(tmp_path, "chat_analytics", {"message_id": res["message_id"]})
    assert len(rows) == 1
    assert rows[0]["feedback"] == "thumbs_down"
    assert rows[0]["feedback_comment"] == "wrong line"


def test_generate_embedding_admin_only():
    with pytest.raises(PermissionError):
        generate_embedding_for_user({"roles": ["worker"]}, "text", embed=fake_embed)
    with pytest.raises(ValueError):
        generate_embedding_for_user({"roles": ["admin"]}, "", embed=fake_embed)
    assert generate_embedding_for_user({"roles": ["owner"]}, "text", embed=fake_embed) == {"embedding": [1.0, 0.0], "tokens": 3}
