from __future__ import annotations
from typing import Dict, List, Optional

import requests

from .config import (
    get_anthropic_api_key,
    get_assistant_settings,
    get_ollama_base_url,
    get_ollama_chat_model,
    get_ollama_embedding_model,
    get_openai_api_key,
)

# -------------------------------
# LLM providers
# - embeddings: OpenAI text-embedding-3-small (default) or Ollama
# - chat: Anthropic Messages API (default) or Ollama
# -------------------------------

OPENAI_EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"
EMBEDDING_MODEL = "text-embedding-3-small"
EMBEDDING_DIMENSIONS = 1536

ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
CHAT_MODEL = "claude-sonnet-4-20250514"
MAX_TOKENS = 2048

_TIMEOUT = 60


def _ollama_client(base_url: Optional[str] = None):
    try:
        from ollama import Client
    except Exception as e:
        raise RuntimeError("Ollama client is not installed. Install with: pip install ollama") from e
    return Client(host=base_url or get_ollama_base_url())


def _openai_embed(text: str, api_key: str) -> Dict:
    resp = requests.post(
        OPENAI_EMBEDDINGS_URL,
        headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        json={"input": text, "model": EMBEDDING_MODEL, "dimensions": EMBEDDING_DIMENSIONS},
        timeout=_TIMEOUT,
    )
    if resp.status_code >= 400:
        raise RuntimeError(f"OpenAI API error: {resp.status_code} - {resp.text}")
    return resp.json()


def _require_openai_key() -> str:
    key = get_openai_api_key()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is not configured")
    return key


def generate_embedding(text: str, *, provider: Optional[str] = None) -> Dict:
    """Embed one text. Returns {"embedding": [float], "tokens": int}."""
    provider = provider or get_assistant_settings().get("embedding_provider", "openai")
    if provider == "ollama":
        client = _ollama_client()
        resp = client.embed(model=get_ollama_embedding_model(), input=text)
        vectors = (resp or {}).get("embeddings") or []
        if not vectors:
            raise RuntimeError("Ollama returned no embedding")
        return {"embedding": list(vectors[0]), "tokens": int((resp or {}).get("prompt_eval_count") or 0)}

    data = _openai_embed(text, _require_openai_key())
    return {"embedding": data["data"][0]["embedding"], "tokens": data["usage"]["total_tokens"]}


def format_embedding_for_pgvector(embedding: List[float]) -> str:
    return "[" + ",".join(str(x) for x in embedding) + "]"


def parse_pgvector(value) -> List[float]:
    """Inverse of format_embedding_for_pgvector; lists pass through."""
    if isinstance(value, list):
        return [float(x) for x in value]
    s = str(value or "").strip().lstrip("[").rstrip("]")
    return [float(x) for x in s.split(",") if x.strip()]


def complete_chat(system: str, messages: List[Dict], *, provider: Optional[str] = None) -> Dict:
    """Run one chat completion.

    Returns {"text": str, "tokens_used": int, "model": str}.
    """
    provider = provider or get_assistant_settings().get("chat_provider", "anthropic")
    if provider == "ollama":
        model = get_ollama_chat_model()
        client = _ollama_client()
        resp = client.chat(
            model=model,
            messages=[{"role": "system", "content": system}, *messages],
            options={"temperature": 0.2},
        )
        resp = resp or {}
        text = (resp.get("message") or {}).get("content", "").strip()
        tokens = int(resp.get("prompt_eval_count") or 0) + int(resp.get("eval_count") or 0)
        return {"text": text, "tokens_used": tokens, "model": model}

    api_key = get_anthropic_api_key()
    if not api_key:
        raise RuntimeError("ANTHROPIC_API_KEY is not configured")
    resp = requests.post(
        ANTHROPIC_API_URL,
        headers={
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        },
        json={"model": CHAT_MODEL, "max_tokens": MAX_TOKENS, "system": system, "messages": messages},
        timeout=_TIMEOUT,
    )
    if resp.status_code >= 400:
        raise RuntimeError(f"Anthropic API error: {resp.status_code} - {resp.text}")
    data = resp.json()
    usage = data.get("usage") or {}
    return {
        "text": data["content"][0]["text"],
        "tokens_used": int(usage.get("input_tokens") or 0) + int(usage.get("output_tokens") or 0),
        "model": CHAT_MODEL,
    }
