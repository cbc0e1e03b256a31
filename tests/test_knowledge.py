from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from productionportal.core.v1 import store
from productionportal.core.v1.knowledge import (
    add_document,
    cosine_similarity,
    ingest_document,
    list_documents,
    search_knowledge,
)


def keyword_embed(text: str):
    """Two-dimensional toy embedding: (mentions needle, mentions fire)."""
    t = text.lower()
    return {"embedding": [1.0 if "needle" in t else 0.0, 1.0 if "fire" in t else 0.0], "tokens": len(t.split())}


def test_add_document_validates_input(tmp_path: Path):
    with pytest.raises(ValueError):
        add_document(tmp_path, title="  ")
    with pytest.raises(ValueError):
        add_document(tmp_path, title="Doc", document_type="novel")
    doc = add_document(tmp_path, title="Needle policy", document_type="policy", content="Change needles daily.")
    assert doc["is_active"] is True
    assert doc["factory_id"] is None


def test_list_documents_scopes_to_global_and_own_factory(tmp_path: Path):
    add_document(tmp_path, title="Global", content="x")
    add_document(tmp_path, title="Mine", content="x", factory_id="f1")
    add_document(tmp_path, title="Theirs", content="x", factory_id="f2")
    titles = [d["title"] for d in list_documents(tmp_path, "f1")]
    assert titles == ["Global", "Mine"]


def test_ingest_requires_admin(tmp_path: Path):
    doc = add_document(tmp_path, title="Doc", content="Needle care.")
    with pytest.raises(PermissionError):
        ingest_document(tmp_path, doc["id"], user_roles=["worker"], embed=keyword_embed)


def test_ingest_unknown_document(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        ingest_document(tmp_path, "missing", user_roles=["admin"], embed=keyword_embed)


def test_ingest_chunks_and_tracks_progress(tmp_path: Path):
    text = ("Needle handling. " * 80) + "\n\n" + ("Fire drill steps. " * 80)
    doc = add_document(tmp_path, title="Floor manual", content=text)

    res = ingest_document(tmp_path, doc["id"], user_roles=["owner"], embed=keyword_embed)

    assert res["success"] is True
    chunks = store.select(tmp_path, "knowledge_chunks", {"document_id": doc["id"]}, order_by="chunk_index")
    assert res["chunks_created"] == len(chunks) > 1
    assert chunks[0]["embedding"].startswith("[")
    queue = store.first(tmp_path, "document_ingestion_queue", {"document_id": doc["id"]})
    assert queue["status"] == "completed"
    assert queue["total_chunks"] == queue["chunks_processed"] == len(chunks)

    # re-ingest replaces chunks instead of duplicating them
    ingest_document(tmp_path, doc["id"], user_roles=["admin"], embed=keyword_embed)
    assert len(store.select(tmp_path, "knowledge_chunks", {"document_id": doc["id"]})) == len(chunks)
    assert len(store.select(tmp_path, "document_ingestion_queue", {"document_id": doc["id"]})) == 1


def test_ingest_failure_marks_queue_failed(tmp_path: Path):
    doc = add_document(tmp_path, title="Empty")

    with pytest.raises(ValueError, match="No content available"):
        ingest_document(tmp_path, doc["id"], user_roles=["admin"], embed=keyword_embed)

    queue = store.first(tmp_path, "document_ingestion_queue", {"document_id": doc["id"]})
    assert queue["status"] == "failed"
    assert "No content available" in queue["error_message"]


def test_ingest_reads_file_under_documents_dir(tmp_path: Path):
    (tmp_path / "documents").mkdir()
    (tmp_path / "documents" / "fire.txt").write_text("Fire exits must stay clear.", encoding="utf-8")
    doc = add_document(tmp_path, title="Fire", file_path="fire.txt")

    res = ingest_document(tmp_path, doc["id"], user_roles=["admin"], embed=keyword_embed)
    assert res["chunks_created"] == 1

    escape = add_document(tmp_path, title="Escape", file_path="../secrets.txt")
    with pytest.raises(PermissionError):
        ingest_document(tmp_path, escape["id"], user_roles=["admin"], embed=keyword_embed)


def test_cosine_similarity_edges():
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == 0.0
    assert cosine_similarity([0, 0], [1, 0]) == 0.0
    assert cosine_similarity([1], [1, 0]) == 0.0


def test_search_ranks_by_similarity_and_respects_threshold(tmp_path: Path):
    needle = add_document(tmp_path, title="Needles", content="Needle guide.")
    fire = add_document(tmp_path, title="Fire", content="Fire guide.")
    other = add_document(tmp_path, title="Other factory", content="Needle notes.", factory_id="f2")
    for d in (needle, fire, other):
        ingest_document(tmp_path, d["id"], user_roles=["admin"], embed=keyword_embed)

    hits = search_knowledge(tmp_path, [1.0, 0.0], threshold=0.5, factory_id="f1")
    assert [h["document_title"] for h in hits] == ["Needles"]
    assert hits[0]["similarity"] == pytest.approx(1.0)

    assert search_knowledge(tmp_path, [1.0, 0.0], factory_id="f1", language="bn") == []
    assert len(search_knowledge(tmp_path, [1.0, 1.0], threshold=0.1, count=1, factory_id="f1")) == 1
