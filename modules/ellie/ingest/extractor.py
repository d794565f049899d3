"""
Ellie LLM extraction: prompt format, reply parsing and candidate scoring.

The extractor prompt is deterministic for a given window so the prompt
budget splitter (ingest/windows.py) can measure it.  Candidates returned by
the model go through a stage-2 acceptance pass before they are stored:

    score = 50 + evidence + durability + atomicity - sensitivity penalties
    >= 65 accept, >= 45 review (kept), else reject (dropped)

Candidates carrying a metadata ``type`` (project/issue context rows) are
accepted outright.
"""

import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from core.contracts.records import (
    ChatMessage,
    ExtractedCandidate,
    ExtractionResult,
    NewMemory,
    RoomIngestionCandidate,
)
from lib.errors import MalformedOutputError
from lib.normalize import clamp_unit, format_rfc3339, is_finite_number, truncate

EXTRACTED_KINDS = (
    "technical_decision",
    "process_decision",
    "preference",
    "fact",
    "lesson",
    "pattern",
    "anti_pattern",
    "correction",
    "process_outcome",
    "context",
)

MAX_CANDIDATE_CHARS = 800
MAX_MEMORY_CONTENT_CHARS = 400
DEFAULT_MAX_MESSAGE_CHARS = 2000

ACCEPT_THRESHOLD = 65
REVIEW_THRESHOLD = 45

_SENSITIVE_TOKENS = ("ghp_", "sk-", "xoxb-", "xoxp-", "api key", "password", "pairing code", "token:")
_ARTIFACT_ORIGINS = {"queued_task", "system_artifact", "log_output"}

_DURABLE_PATTERNS = (
    re.compile(r"\b(prefers?|doesn'?t like|always|never|from now on)\b"),
    re.compile(r"\b(migrat|architect|infrastructure|deploy|configur|set up|install|uses? .+ for)\b"),
    re.compile(r"\b(family|wife|husband|partner|son|daughter|lives? in|based in|works? at|role is)\b"),
)
_EPHEMERAL_TIME = re.compile(r"\b(today|right now|this week|this morning|this afternoon)\b")
_RULE_WORDS = re.compile(r"\b(always|never|rule|from now on|every)\b")
_STATUS_CHATTER = re.compile(r"\b(done and documented|waiting on|in progress|currently running|status:|working on it)\b")
_LOG_OUTPUT = re.compile(r"\b(exec failed|stack trace|error:|exception:|enoent|econnrefused|timeout)\b")
_DRAFT_IDEAS = re.compile(r"\b(topic idea|blog post idea|draft|outline|brainstorm|could write about|potential topic)\b")
_SENTENCE_SPLIT = re.compile(r"[.!?]")
_PROPER_WORD = re.compile(r"[A-Z][a-z]+")
_VAGUE_TITLE = re.compile(r"^(Work style|Communication style|General|Preferences|Notes|Misc)")


# =============================================================================
# Prompt
# =============================================================================

def prompt_messages(messages: Iterable[ChatMessage], max_message_chars: int) -> List[ChatMessage]:
    """Messages as they appear in the prompt: non-empty, body-truncated."""
    limit = max_message_chars if max_message_chars > 0 else DEFAULT_MAX_MESSAGE_CHARS
    out = []
    for msg in messages or []:
        body = str(msg.body or "").strip()
        if not body:
            continue
        out.append(ChatMessage(
            id=msg.id,
            org_id=msg.org_id,
            room_id=msg.room_id,
            body=truncate(body, limit),
            created_at=msg.created_at,
            sender_type=msg.sender_type,
            sender_id=msg.sender_id,
            message_type=msg.message_type,
            conversation_id=msg.conversation_id,
            token_count=msg.token_count,
        ))
    return out


def build_extraction_prompt(
    org_id: str,
    room_id: str,
    messages: Sequence[ChatMessage],
    max_message_chars: int = DEFAULT_MAX_MESSAGE_CHARS,
) -> str:
    parts = [
        "You extract durable engineering memories from chat messages.\n",
        "Return strict JSON only. Do not include markdown or commentary.\n",
        'Output schema: {"candidates":[{"kind":"...","title":"...","content":"...",'
        '"importance":1-5,"confidence":0-1,"source_conversation_id":"uuid|null","metadata":{}}]}\n',
        "Allowed kinds: " + ", ".join(EXTRACTED_KINDS) + ".\n",
        "Only include concrete, durable facts/decisions/preferences. Skip low-signal chatter.\n",
        'If nothing is durable, return {"candidates":[]}.\n\n',
        "Context:\n",
        f"- org_id: {str(org_id or '').strip()}\n",
        f"- room_id: {str(room_id or '').strip()}\n\n",
        "Messages:\n",
    ]
    for msg in prompt_messages(messages, max_message_chars):
        line = f"- id={msg.id.strip()} created_at={format_rfc3339(msg.created_at)}"
        conversation_id = str(msg.conversation_id or "").strip()
        if conversation_id:
            line += f" conversation_id={conversation_id}"
        parts.append(line + "\n  " + msg.body + "\n")
    return "".join(parts)


# =============================================================================
# Reply parsing
# =============================================================================

def parse_extraction_candidates(payload: Any, max_candidate_chars: int = MAX_CANDIDATE_CHARS) -> List[ExtractedCandidate]:
    """Turn the decoded JSON reply into raw candidates (before scoring)."""
    if payload is None:
        return []
    if isinstance(payload, list):
        rows = payload
    elif isinstance(payload, dict):
        rows = payload.get("candidates") or payload.get("memories") or []
    else:
        raise MalformedOutputError("extraction output must be a JSON object or array")
    if not isinstance(rows, list):
        raise MalformedOutputError("extraction candidates must be an array")

    limit = max_candidate_chars if max_candidate_chars > 0 else MAX_CANDIDATE_CHARS
    out: List[ExtractedCandidate] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        content = str(row.get("content") or "").strip()
        if not content:
            continue
        importance = 3
        raw_importance = row.get("importance")
        if is_finite_number(raw_importance) and int(float(raw_importance)) > 0:
            importance = int(float(raw_importance))
        confidence = 0.7
        if is_finite_number(row.get("confidence")):
            confidence = float(row["confidence"])
        conversation_id = row.get("source_conversation_id")
        if conversation_id is None:
            conversation_id = row.get("sourceConversationId")
        metadata = row.get("metadata")
        out.append(ExtractedCandidate(
            kind=str(row.get("kind") or "").strip(),
            title=str(row.get("title") or "").strip(),
            content=truncate(content, limit),
            importance=importance,
            confidence=confidence,
            source_conversation_id=str(conversation_id).strip() if conversation_id else None,
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
        ))
    return out


# =============================================================================
# Stage-2 scoring
# =============================================================================

def has_sensitive_leak(text: str) -> bool:
    lower = str(text or "").lower()
    return any(token in lower for token in _SENSITIVE_TOKENS)


def is_artifact_message(msg: ChatMessage) -> bool:
    body = str(msg.body or "").strip()
    lower = body.lower()
    sender_type = str(msg.sender_type or "").strip().lower()
    if body.startswith("[Queued") or "Queued #" in body:
        return True
    if sender_type == "system":
        return True
    return "heartbeat" in lower or "no_reply" in lower


def _source_ids(metadata: Dict[str, Any]) -> Set[str]:
    raw = metadata.get("source_message_ids")
    if not isinstance(raw, (list, tuple)):
        return set()
    return {str(x).strip() for x in raw if str(x).strip()}


def has_user_evidence(metadata: Dict[str, Any], window: Sequence[ChatMessage]) -> bool:
    ids = _source_ids(metadata)
    if not ids:
        return False
    return any(
        str(msg.sender_type or "").strip().lower() == "user" and msg.id.strip() in ids
        for msg in window
    )


def evidence_score(metadata: Dict[str, Any], window: Sequence[ChatMessage]) -> int:
    ids = _source_ids(metadata)
    if not ids:
        return 0
    cited = [msg for msg in window if msg.id.strip() in ids]
    if not cited:
        return 0
    total = len(cited)
    user = sum(1 for msg in cited if str(msg.sender_type or "").strip().lower() == "user")
    artifact = sum(1 for msg in cited if is_artifact_message(msg))

    score = 0
    ratio = user / total
    if ratio >= 0.5:
        score += 15
    elif ratio >= 0.2:
        score += 8
    elif ratio == 0:
        score -= 10

    artifact_ratio = artifact / total
    if artifact_ratio > 0.5:
        score -= 25
    elif artifact_ratio > 0.2:
        score -= 10
    return score


def durability_score(title: str, content: str) -> int:
    text = f"{title} {content}".strip().lower()
    score = 0
    if any(pattern.search(text) for pattern in _DURABLE_PATTERNS):
        score += 15
    if _EPHEMERAL_TIME.search(text) and not _RULE_WORDS.search(text):
        score -= 15
    if _STATUS_CHATTER.search(text):
        score -= 15
    if _LOG_OUTPUT.search(text):
        score -= 15
    if _DRAFT_IDEAS.search(text):
        score -= 25
    return max(-25, min(25, score))


def atomicity_score(title: str, content: str) -> int:
    text = f"{title} {content}".strip()
    meaningful = sum(1 for sentence in _SENTENCE_SPLIT.split(text) if len(sentence.strip()) > 5)
    score = 0
    if meaningful <= 2:
        score += 10
    elif meaningful > 5:
        score -= 15
    if _PROPER_WORD.search(title):
        score += 5
    if _VAGUE_TITLE.search(title):
        score -= 5
    return max(-20, min(15, score))


def _has_medical_flag(metadata: Dict[str, Any]) -> bool:
    flags = metadata.get("pii_flags")
    if not isinstance(flags, (list, tuple)):
        return False
    return any(str(flag).strip().lower() == "medical" for flag in flags)


def stage2_decision(
    title: str, content: str, metadata: Dict[str, Any], window: Sequence[ChatMessage]
) -> Tuple[int, str]:
    if str(metadata.get("type") or "").strip():
        return 80, "accept"
    score = 50
    score += evidence_score(metadata, window)
    score += durability_score(title, content)
    score += atomicity_score(title, content)
    if str(metadata.get("sensitivity") or "").strip().lower() == "high":
        score -= 20
    if _has_medical_flag(metadata):
        score -= 20
    if score >= ACCEPT_THRESHOLD:
        return score, "accept"
    if score >= REVIEW_THRESHOLD:
        return score, "review"
    return score, "reject"


def _first_conversation_id(messages: Sequence[ChatMessage]) -> Optional[str]:
    for msg in messages:
        value = str(msg.conversation_id or "").strip()
        if value:
            return value
    return None


def window_message_ids(messages: Sequence[ChatMessage]) -> List[str]:
    return [msg.id.strip() for msg in messages if str(msg.id or "").strip()]


def normalize_llm_candidate(
    room: RoomIngestionCandidate,
    window: Sequence[ChatMessage],
    result: ExtractionResult,
    candidate: ExtractedCandidate,
) -> Optional[NewMemory]:
    """Clamp, annotate and score one model candidate; None drops it."""
    if not window:
        return None
    scoring_window = [msg for msg in window if str(msg.body or "").strip()] or list(window)

    kind = str(candidate.kind or "").strip().lower()
    if kind not in EXTRACTED_KINDS:
        kind = "context"
    title = str(candidate.title or "").strip() or "LLM extracted memory"
    content = str(candidate.content or "").strip()
    if not content:
        return None
    if has_sensitive_leak(title) or has_sensitive_leak(content):
        return None
    content = truncate(content, MAX_MEMORY_CONTENT_CHARS)

    importance = int(candidate.importance or 0)
    if importance <= 0:
        importance = 3
    importance = min(importance, 5)
    confidence = clamp_unit(candidate.confidence)

    metadata: Dict[str, Any] = {
        "source_table": "chat_messages",
        "source_message_ids": window_message_ids(scoring_window),
        "source_room_id": room.room_id,
        "extraction_method": "llm_windowed",
    }
    if str(result.model or "").strip():
        metadata["extraction_model"] = result.model.strip()
    if str(result.trace_id or "").strip():
        metadata["extraction_trace_id"] = result.trace_id.strip()
    for key, value in (candidate.metadata or {}).items():
        if not str(key).strip() or value is None:
            continue
        metadata[key] = value

    conversation_id = str(candidate.source_conversation_id or "").strip() or _first_conversation_id(window)

    score, decision = stage2_decision(title, content, metadata, scoring_window)
    metadata["accept_score"] = score
    metadata["accept_decision"] = decision
    if decision == "reject":
        return None

    if not str(metadata.get("type") or "").strip():
        origin = str(metadata.get("origin_hint") or "").strip().lower()
        if origin in _ARTIFACT_ORIGINS and not has_user_evidence(metadata, scoring_window):
            return None

    sensitivity = "normal"
    if str(metadata.get("sensitivity") or "").strip().lower() in ("high", "medium", "sensitive"):
        sensitivity = "sensitive"
    if _has_medical_flag(metadata):
        sensitivity = "sensitive"

    return NewMemory(
        org_id=room.org_id,
        kind=kind,
        title=title,
        content=content,
        metadata=metadata,
        importance=importance,
        confidence=confidence,
        occurred_at=window[-1].created_at,
        source_conversation_id=conversation_id,
        sensitivity=sensitivity,
    )
