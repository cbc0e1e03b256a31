from __future__ import annotations
import math
from pathlib import Path
from typing import Callable, Dict, List, Optional

from . import store
from .chunking import chunk_text, extract_section_heading
from .providers import format_embedding_for_pgvector, generate_embedding, parse_pgvector
from .auth import ADMIN_ROLES
from .repo import DOCUMENTS_DIRNAME
from .logger import get_logger, log_step

logger = get_logger(__name__)

# -------------------------------
# Knowledge base
# - knowledge_documents: uploaded docs, global when factory_id is null
# - knowledge_chunks: chunk text + embedding (pgvector text form)
# - document_ingestion_queue: one progress row per document
# -------------------------------

DOCUMENT_TYPES = ("manual", "policy", "certification", "faq", "guide", "other")

_TAG = "INGEST"


def add_document(
    datarepo_path: Path,
    *,
    title: str,
    document_type: str = "manual",
    content: Optional[str] = None,
    file_path: Optional[str] = None,
    factory_id: Optional[str] = None,
    language: str = "en",
    source_url: Optional[str] = None,
    created_by: Optional[str] = None,
) -> Dict:
    title = (title or "").strip()
    if not title:
        raise ValueError("title is required")
    if document_type not in DOCUMENT_TYPES:
        raise ValueError(f"document_type must be one of {', '.join(DOCUMENT_TYPES)}")
    return store.insert(datarepo_path, "knowledge_documents", {
        "title": title,
        "document_type": document_type,
        "content": content,
        "file_path": file_path,
        "factory_id": factory_id,
        "language": language,
        "source_url": source_url,
        "is_active": True,
        "created_by": created_by,
    })


def get_document(datarepo_path: Path, document_id: str) -> Dict:
    doc = store.get(datarepo_path, "knowledge_documents", document_id)
    if doc is None:
        raise FileNotFoundError(f"Document not found: {document_id}")
    return doc


def list_documents(datarepo_path: Path, factory_id: Optional[str] = None) -> List[Dict]:
    docs = store.select(datarepo_path, "knowledge_documents", {"is_active": True}, order_by="title")
    return [d for d in docs if d.get("factory_id") in (None, factory_id)]


def _load_file_content(datarepo_path: Path, file_path: str) -> str:
    p = (Path(datarepo_path) / DOCUMENTS_DIRNAME / file_path).resolve()
    root = (Path(datarepo_path) / DOCUMENTS_DIRNAME).resolve()
    if root not in p.parents:
        raise PermissionError("Document path escapes the documents directory")
    if not p.exists():
        raise FileNotFoundError(f"Failed to download file: {file_path}")
    if p.suffix.lower() == ".pdf":
        raise ValueError("PDF parsing not yet implemented. Please provide text content directly.")
    return p.read_text(encoding="utf-8", errors="replace")


def _set_progress(datarepo_path: Path, document_id: str, changes: Dict) -> None:
    store.update(datarepo_path, "document_ingestion_queue", {"document_id": document_id}, changes)


def ingest_document(
    datarepo_path: Path,
    document_id: str,
    *,
    user_roles: List[str],
    content: Optional[str] = None,
    embed: Callable[[str], Dict] = generate_embedding,
) -> Dict:
    """Chunk, embed and store a document, tracking progress in the queue row.

    Any failure after the document is found marks the queue row failed with
    the error message and re-raises.
    """
    log_step(logger, _TAG, "Ingest request received")
    if not any(r in ADMIN_ROLES for r in user_roles or []):
        raise PermissionError("Admin access required")
    if not document_id:
        raise ValueError("document_id is required")

    doc = get_document(datarepo_path, document_id)
    log_step(logger, _TAG, "Document found", {"title": doc.get("title"), "type": doc.get("document_type")})

    store.delete(datarepo_path, "document_ingestion_queue", {"document_id": document_id})
    store.insert(datarepo_path, "document_ingestion_queue", {
        "document_id": document_id,
        "status": "processing",
        "started_at": store.now_iso(),
        "total_chunks": None,
        "chunks_processed": 0,
        "error_message": None,
    })

    try:
        text = content or doc.get("content")
        if not text and doc.get("file_path"):
            text = _load_file_content(datarepo_path, doc["file_path"])
        if not text:
            raise ValueError("No content available for ingestion. Please provide content when adding the document.")
        log_step(logger, _TAG, "Content loaded", {"length": len(text)})

        store.delete(datarepo_path, "knowledge_chunks", {"document_id": document_id})
        chunks = chunk_text(text)
        log_step(logger, _TAG, "Content chunked", {"chunkCount": len(chunks)})
        _set_progress(datarepo_path, document_id, {"total_chunks": len(chunks)})

        # One chunk at a time: embed, insert, record progress
        for i, chunk in enumerate(chunks):
            log_step(logger, _TAG, "Embedding chunk", {"index": i + 1, "total": len(chunks)})
            result = embed(chunk["content"])
            store.insert(datarepo_path, "knowledge_chunks", {
                "document_id": document_id,
                "chunk_index": chunk["index"],
                "content": chunk["content"],
                "content_tokens": result.get("tokens"),
                "section_heading": extract_section_heading(chunk["content"]),
                "page_number": None,
                "embedding": format_embedding_for_pgvector(result["embedding"]),
            })
            _set_progress(datarepo_path, document_id, {"chunks_processed": i + 1})

        _set_progress(datarepo_path, document_id, {
            "status": "completed",
            "completed_at": store.now_iso(),
            "chunks_processed": len(chunks),
        })
        log_step(logger, _TAG, "Ingestion completed", {"chunksInserted": len(chunks)})
        return {"success": True, "document_id": document_id, "chunks_created": len(chunks)}
    except Exception as e:
        log_step(logger, _TAG, "ERROR", {"message": str(e)})
        _set_progress(datarepo_path, document_id, {"status": "failed", "error_message": str(e)})
        raise


def cosine_similarity(a: List[float], b: List[float]) -> float:
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


def search_knowledge(
    datarepo_path: Path,
    embedding: List[float],
    *,
    threshold: float = 0.3,
    count: int = 10,
    factory_id: Optional[str] = None,
    language: Optional[str] = None,
) -> List[Dict]:
    """Most similar chunks from active global and factory documents, best first."""
    docs = {d["id"]: d for d in list_documents(datarepo_path, factory_id)}
    if language:
        docs = {k: d for k, d in docs.items() if d.get("language") == language}
    if not docs:
        return []
    out = []
    for c in store.select(datarepo_path, "knowledge_chunks", {"document_id": list(docs)}):
        sim = cosine_similarity(embedding, parse_pgvector(c.get("embedding")))
        if sim < threshold:
            continue
        doc = docs[c["document_id"]]
        out.append({
            "chunk_id": c["id"],
            "document_id": c["document_id"],
            "document_title": doc.get("title"),
            "document_type": doc.get("document_type"),
            "content": c.get("content") or "",
            "section_heading": c.get("section_heading"),
            "page_number": c.get("page_number"),
            "similarity": sim,
            "source_url": doc.get("source_url"),
        })
    out.sort(key=lambda r: r["similarity"], reverse=True)
    return out[: max(0, int(count))]
