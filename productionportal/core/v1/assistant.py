"""Retrieval-augmented chat assistant.

Answers combine knowledge-base chunks found by embedding similarity with live
production data for the user's factory. Every exchange is stored in
chat_conversations / chat_messages and summarised in chat_analytics.
"""
from __future__ import annotations
import re
from pathlib import Path
from typing import Callable, Dict, List, Optional

from . import store
from .auth import ADMIN_ROLES, primary_role
from .knowledge import search_knowledge
from .live_data import build_live_data_context, fetch_live_data, has_live_results
from .providers import complete_chat, generate_embedding
from .logger import get_logger, log_step

logger = get_logger(__name__)

SUGGESTED_QUESTIONS_SEPARATOR = "---SUGGESTED_QUESTIONS---"
HISTORY_LIMIT = 10
SEARCH_THRESHOLD = 0.3
SEARCH_COUNT = 10
FEEDBACK_VALUES = ("thumbs_up", "thumbs_down")

NO_EVIDENCE_PHRASES = (
    "i don't have information about",
    "i don't have specific information",
    "i don't have documentation",
    "i don't have specific documentation",
    "not in my knowledge base",
    "no information available in the sources",
    "not available in the sources",
    "i cannot find any information",
    "i couldn't find any information",
    "no relevant sources",
    "i don't have enough information to answer",
)

# (role, category, name, description)
DEFAULT_ROLE_FEATURES = (
    ("worker", "sewing", "morning_targets", "Set morning production targets for sewing lines"),
    ("worker", "sewing", "end_of_day", "Submit end of day actual output for sewing"),
    ("worker", "sewing", "blockers", "Report and manage production blockers"),
    ("worker", "sewing", "submissions", "View submission history"),
    ("worker", "general", "preferences", "Manage personal preferences and notifications"),
    ("admin", "dashboard", "overview", "View factory-wide production dashboard"),
    ("admin", "dashboard", "analytics", "View efficiency metrics and charts"),
    ("admin", "sewing", "all_submissions", "View all sewing submissions"),
    ("admin", "sewing", "edit_submissions", "Edit sewing submissions within cutoff"),
    ("admin", "finishing", "all_submissions", "View all finishing submissions"),
    ("admin", "work_orders", "manage", "Create and manage work orders"),
    ("admin", "setup", "factory", "Configure factory settings"),
    ("admin", "setup", "lines", "Manage production lines"),
    ("admin", "setup", "users", "Manage factory users"),
    ("admin", "insights", "reports", "View and schedule insight reports"),
    ("admin", "billing", "manage", "Manage subscription and billing"),
    ("owner", "billing", "full_access", "Full billing and subscription control"),
    ("owner", "setup", "factory_delete", "Delete or terminate factory account"),
    ("storage", "storage", "bin_cards", "Manage storage bin cards"),
    ("storage", "storage", "transactions", "Record storage transactions"),
    ("storage", "storage", "dashboard", "View storage dashboard"),
    ("storage", "storage", "history", "View transaction history"),
    ("cutting", "cutting", "morning_targets", "Set cutting targets"),
    ("cutting", "cutting", "end_of_day", "Submit cutting actuals"),
    ("cutting", "cutting", "submissions", "View cutting submissions"),
    ("cutting", "cutting", "leftover", "Track leftover fabric"),
)

_BENGALI = re.compile("[ঀ-৿]")
_TAG = "CHAT"


def detect_language(text: str) -> str:
    """'bn' when more than 10% of the characters are Bengali script."""
    text = text or ""
    return "bn" if len(_BENGALI.findall(text)) > len(text) * 0.1 else "en"


# -------------------------------
# Role features
# -------------------------------

def seed_role_features(datarepo_path: Path) -> int:
    """Fill role_feature_access with the default catalogue if it is empty."""
    if store.first(datarepo_path, "role_feature_access"):
        return 0
    for role, category, name, description in DEFAULT_ROLE_FEATURES:
        store.insert(datarepo_path, "role_feature_access", {
            "role": role,
            "feature_category": category,
            "feature_name": name,
            "description": description,
            "help_text": None,
        })
    return len(DEFAULT_ROLE_FEATURES)


def get_accessible_features(datarepo_path: Path, roles: List[str]) -> List[Dict]:
    rows = store.select(datarepo_path, "role_feature_access", {"role": list(roles or [])})
    seen = {}
    for r in rows:
        key = (r.get("feature_category"), r.get("feature_name"))
        seen.setdefault(key, {
            "feature_category": r.get("feature_category"),
            "feature_name": r.get("feature_name"),
            "description": r.get("description"),
            "help_text": r.get("help_text"),
        })
    return [seen[k] for k in sorted(seen, key=lambda k: (k[0] or "", k[1] or ""))]


# -------------------------------
# Prompt building
# -------------------------------

_LIVE_DATA_RULES = """
### 7. Live Production Data
- You have been provided with LIVE FACTORY DATA from the production database
- This data is real-time and accurate as of the timestamp shown
- Prioritize live data over knowledge base sources for factual production questions
- Present numbers with context (e.g. "Line A produced 450 pcs against a target of 500 = 90% efficiency")
- Proactively highlight concerning trends (lines behind target, many open blockers, approaching deadlines)
- Do NOT cite live data as [Source:...] and attribute it naturally ("According to today's production data...")
- If a data section is empty or shows no records, mention that nothing has been submitted yet for that period
- Combine live data with knowledge base info when possible for comprehensive answers
"""


def _feature_line(f: Dict) -> str:
    if f.get("feature"):
        return f"- {f['feature']}"
    return f"- {f.get('feature_category')}/{f.get('feature_name')}: {f.get('description')}"


def build_system_prompt(user_role: str, features: List[Dict], language: str, has_live_data: bool = False) -> str:
    feature_list = "\n".join(_feature_line(f) for f in features or [])
    if language == "bn":
        language_instruction = "The user prefers Bengali (Bangla). Respond in Bengali using proper Bengali script."
    else:
        language_instruction = "Respond in English."

    return f"""You are a helpful assistant for ProductionPortal, a garment factory production management system.

## Your Role
You help users understand how to use ProductionPortal features, answer questions about factory compliance and certifications, and provide accurate information based on the knowledge base.

## User Context
- User Role: {user_role}
- {language_instruction}

## Features This User Can Access
{feature_list or "No specific features listed - answer general questions only."}

## Critical Rules

### 1. Using the Knowledge Base
- You may synthesize, summarize, and reason about information from the provided sources
- You do NOT need an exact quote; if the answer can be logically inferred or deduced from the sources, provide it
- Cite sources using [Source: document_title] format when making specific factual claims
- If the sources contain relevant information but don't answer the exact question, use what's available and explain what you found
- Only say you don't have information if the sources contain NOTHING relevant to the topic
- NEVER invent facts that aren't supported by or inferable from the sources

### 2. Role-Based Access Control
- Only explain features the user has access to based on their role
- If asked about features they don't have access to, politely explain: "This feature requires [role] access. Please contact your administrator if you need access."
- Do not reveal details about admin-only features to non-admin users

### 3. Compliance & Certifications
- For certification validity, expiry dates, or audit results, ONLY answer if explicitly stated in the sources
- For legal or compliance commitments, be conservative and suggest contacting the compliance team
- Never claim a certification is valid without source evidence

### 4. Troubleshooting
- For operational issues, provide step-by-step guidance based on documentation
- Ask for relevant details (screenshots, error messages, steps taken) if needed
- Suggest escalation to support for complex issues

### 5. Language
- Detect the language of the user's message
- Respond in the same language as the user's message
- For technical terms, you may keep them in English with local language explanation

### 6. Safety
- Never expose internal API keys, tokens, or secrets
- Never provide information that could compromise system security
- Never execute or suggest harmful actions
{_LIVE_DATA_RULES if has_live_data else ""}
## Response Format
- Be concise but thorough
- Use bullet points for lists
- Include citations inline: [Source: Document Title, Page X] or [Source: Document Title, Section: Y]

## Suggested Questions
At the END of every response, include a block of 2-4 suggested follow-up questions that the user might want to ask next. Use this exact format:

{SUGGESTED_QUESTIONS_SEPARATOR}
First suggested question here?
Second suggested question here?
Third suggested question here?

Rules for suggested questions:
- When the user's query is AMBIGUOUS or UNCLEAR, provide clarifying questions that help narrow down what they meant
- When you answered successfully, provide natural follow-up questions that go deeper or explore related topics
- When you have no evidence, suggest rephrased or related questions that might find results
- Keep each question short (under 80 characters), natural, and directly useful
- Never repeat the user's exact question
- Tailor questions to the user's role and the factory context
- ALWAYS include this block, it is mandatory for every response"""


def build_context_from_sources(sources: List[Dict]) -> str:
    if not sources:
        return "No relevant sources found in the knowledge base."
    blocks = []
    for i, s in enumerate(sources, start=1):
        if s.get("page_number"):
            location = f"Page {s['page_number']}"
        else:
            location = s.get("section_heading") or "General"
        blocks.append(
            f"[Source {i}]\n"
            f"Document: {s.get('document_title')}\n"
            f"Type: {s.get('document_type')}\n"
            f"Location: {location}\n"
            f"Relevance: {float(s.get('similarity') or 0) * 100:.1f}%\n"
            f"Content:\n{s.get('content')}\n"
            "---"
        )
    return "\n\n".join(blocks)


def augment_messages(history: List[Dict], sources: List[Dict], live: Optional[Dict]) -> List[Dict]:
    """Replace the last (user) message with live data, sources and the question."""
    if not history:
        raise ValueError("Message is required")
    live_section = build_live_data_context(live) if live else ""
    parts = [live_section] if live_section else []
    parts.append(f"## Retrieved Knowledge Base Sources\n{build_context_from_sources(sources)}")
    parts.append(f"## User Question\n{history[-1]['content']}")
    return history[:-1] + [{"role": "user", "content": "\n\n".join(parts)}]


# -------------------------------
# Response parsing
# -------------------------------

def parse_chat_response(raw: str, sources: List[Dict], live: Optional[Dict] = None) -> Dict:
    """Split the model output into answer, citations, no-evidence flag and
    suggested follow-up questions."""
    content = raw or ""
    suggested: List[str] = []
    idx = content.find(SUGGESTED_QUESTIONS_SEPARATOR)
    if idx != -1:
        block = content[idx + len(SUGGESTED_QUESTIONS_SEPARATOR):].strip()
        content = content[:idx].rstrip()
        suggested = [q.strip() for q in block.split("\n") if 0 < len(q.strip()) < 120]

    if has_live_results(live):
        no_evidence = False
    else:
        lower = content.lower()
        no_evidence = any(p in lower for p in NO_EVIDENCE_PHRASES)

    citations = []
    for i, s in enumerate(sources, start=1):
        title = s.get("document_title") or ""
        if (title and title in content) or f"Source {i}" in content:
            citations.append({
                "chunk_id": s.get("chunk_id"),
                "document_title": s.get("document_title"),
                "document_type": s.get("document_type"),
                "section_heading": s.get("section_heading"),
                "page_number": s.get("page_number"),
                "source_url": s.get("source_url"),
                "snippet": (s.get("content") or "")[:200] + "...",
            })

    return {"content": content, "citations": citations, "no_evidence": no_evidence, "suggested_questions": suggested}


# -------------------------------
# Chat flow
# -------------------------------

def _conversation_history(datarepo_path: Path, conversation_id: str) -> List[Dict]:
    rows = store.select(datarepo_path, "chat_messages", {"conversation_id": conversation_id}, order_by="created_at")
    return [{"role": m["role"], "content": m["content"]} for m in rows[-HISTORY_LIMIT:]]


def chat(
    datarepo_path: Path,
    user: Dict,
    message: Optional[str],
    *,
    conversation_id: Optional[str] = None,
    language: Optional[str] = None,
    embed: Callable[[str], Dict] = generate_embedding,
    complete: Callable[..., Dict] = complete_chat,
    live_data: Callable[..., Optional[Dict]] = fetch_live_data,
) -> Dict:
    """Answer one user message and persist the exchange."""
    log_step(logger, _TAG, "Chat request received")
    roles = user.get("roles") or ["worker"]
    role = primary_role(roles)
    factory_id = user.get("factory_id")
    log_step(logger, _TAG, "User context", {"roles": roles, "primaryRole": role, "factoryId": factory_id})

    if not message or not message.strip():
        raise ValueError("Message is required")

    detected = detect_language(message)
    language = language or detected
    log_step(logger, _TAG, "Language", {"detected": detected, "using": language})

    if conversation_id:
        conv = store.get(datarepo_path, "chat_conversations", conversation_id)
        if conv is None or conv.get("user_id") != user.get("id"):
            raise LookupError("Conversation not found")
    else:
        conv = store.insert(datarepo_path, "chat_conversations", {
            "user_id": user.get("id"),
            "factory_id": factory_id,
            "language": language,
            "title": message[:100],
        })
        conversation_id = conv["id"]
        log_step(logger, _TAG, "Created conversation", {"conversationId": conversation_id})

    store.insert(datarepo_path, "chat_messages", {
        "conversation_id": conversation_id,
        "role": "user",
        "content": message,
    })
    history = _conversation_history(datarepo_path, conversation_id)

    log_step(logger, _TAG, "Generating query embedding")
    embedding = embed(message)["embedding"]
    log_step(logger, _TAG, "Searching knowledge base")
    sources = search_knowledge(
        datarepo_path, embedding, threshold=SEARCH_THRESHOLD, count=SEARCH_COUNT, factory_id=factory_id
    )
    log_step(logger, _TAG, "Found sources", {"count": len(sources)})

    live = live_data(datarepo_path, factory_id, message) if factory_id else None
    features = get_accessible_features(datarepo_path, roles)
    system = build_system_prompt(role, features, language, has_live_data=bool(live))

    log_step(logger, _TAG, "Generating response")
    completion = complete(system, augment_messages(history, sources, live))
    parsed = parse_chat_response(completion["text"], sources, live)

    assistant_msg = store.insert(datarepo_path, "chat_messages", {
        "conversation_id": conversation_id,
        "role": "assistant",
        "content": parsed["content"],
        "citations": parsed["citations"],
        "tokens_used": completion.get("tokens_used"),
        "model": completion.get("model"),
        "no_evidence": parsed["no_evidence"],
    })
    store.insert(datarepo_path, "chat_analytics", {
        "message_id": assistant_msg["id"],
        "conversation_id": conversation_id,
        "factory_id": factory_id,
        "user_role": role,
        "question_text": message,
        "answer_length": len(parsed["content"]),
        "citations_count": len(parsed["citations"]),
        "no_evidence": parsed["no_evidence"],
        "language": language,
    })
    log_step(logger, _TAG, "Response generated", {
        "tokensUsed": completion.get("tokens_used"),
        "citationsCount": len(parsed["citations"]),
        "noEvidence": parsed["no_evidence"],
    })

    return {
        "message": parsed["content"],
        "citations": parsed["citations"],
        "conversation_id": conversation_id,
        "message_id": assistant_msg["id"],
        "no_evidence": parsed["no_evidence"],
        "language": language,
        "suggested_questions": parsed["suggested_questions"],
    }


def record_feedback(
    datarepo_path: Path,
    user: Dict,
    message_id: Optional[str],
    feedback: Optional[str],
    comment: Optional[str] = None,
) -> Dict:
    if not message_id or not feedback:
        raise ValueError("message_id and feedback are required")
    if feedback not in FEEDBACK_VALUES:
        raise ValueError("feedback must be 'thumbs_up' or 'thumbs_down'")

    msg = store.get(datarepo_path, "chat_messages", message_id)
    conv = store.get(datarepo_path, "chat_conversations", msg["conversation_id"]) if msg else None
    if conv is None or conv.get("user_id") != user.get("id"):
        raise PermissionError("Message not found or access denied")

    changes = {"feedback": feedback, "feedback_comment": comment or None}
    if not store.update(datarepo_path, "chat_analytics", {"message_id": message_id}, changes):
        store.insert(datarepo_path, "chat_analytics", {"message_id": message_id, **changes})
    return {"success": True}


def generate_embedding_for_user(user: Dict, text: Optional[str], *, embed: Callable[[str], Dict] = generate_embedding) -> Dict:
    """Embedding endpoint body; admins and owners only."""
    if not any(r in ADMIN_ROLES for r in user.get("roles") or []):
        raise PermissionError("Admin access required")
    if not text:
        raise ValueError("text is required")
    result = embed(text)
    return {"embedding": result["embedding"], "tokens": result.get("tokens")}
