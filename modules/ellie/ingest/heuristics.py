"""Keyword heuristics for ingestion when no LLM extractor is configured."""

import re
from typing import Optional, Sequence

from core.contracts.records import ChatMessage, NewMemory
from ingest.extractor import MAX_MEMORY_CONTENT_CHARS, window_message_ids
from lib.normalize import truncate

_OPERATIONAL_CONTEXT = re.compile(
    r"\b(api|build|code|config|database|deploy|feature|migration|pipeline|release|schema|test)\b"
)
_LOW_SIGNAL = {"thanks", "thank you", "ok", "okay", "sounds good", "great", "cool"}
MIN_SIGNAL_CHARS = 16


def has_operational_context(body: str) -> bool:
    return bool(_OPERATIONAL_CONTEXT.search(body))


def is_low_signal(body: str) -> bool:
    text = str(body or "").strip().lower()
    if not text or len(text) < MIN_SIGNAL_CHARS:
        return True
    return text in _LOW_SIGNAL


def join_window_bodies(messages: Sequence[ChatMessage]) -> str:
    return "\n".join(b for b in (str(m.body or "").strip() for m in messages) if b)


def _classify(lower: str):
    # (kind, title, importance, confidence); first matching rule wins
    if (
        "we decided" in lower
        or ("decided to" in lower and has_operational_context(lower))
        or "decision:" in lower
        or "we will use" in lower
        or "let's go with" in lower
    ):
        return "technical_decision", "Technical decision captured", 4, 0.9
    if "we prefer" in lower or "prefer to use" in lower or "preference:" in lower:
        return "preference", "Preference captured", 4, 0.9
    if ("avoid" in lower or "do not" in lower or "don't" in lower) and has_operational_context(lower):
        return "anti_pattern", "Anti-pattern captured", 4, 0.85
    if "lesson learned" in lower or "we learned" in lower:
        return "lesson", "Lesson captured", 4, 0.85
    if "fact:" in lower or "confirmed that" in lower:
        return "fact", "Fact captured", 3, 0.75
    return "context", "Context observed in room", 3, 0.7


def derive_candidate_from_window(messages: Sequence[ChatMessage]) -> Optional[NewMemory]:
    """Derive at most one memory from a window, or None for low-signal chatter."""
    if not messages:
        return None
    body = join_window_bodies(messages).strip()
    if is_low_signal(body):
        return None
    kind, title, importance, confidence = _classify(body.lower())
    conversation_id = next(
        (str(m.conversation_id).strip() for m in messages if str(m.conversation_id or "").strip()),
        None,
    )
    return NewMemory(
        org_id=messages[0].org_id,
        kind=kind,
        title=title,
        content=truncate(body, MAX_MEMORY_CONTENT_CHARS),
        metadata={
            "source_table": "chat_messages",
            "source_message_ids": window_message_ids(messages),
            "source_room_id": messages[0].room_id,
            "extraction_method": "heuristic_windowed",
        },
        importance=importance,
        confidence=confidence,
        occurred_at=messages[-1].created_at,
        source_conversation_id=conversation_id,
    )
