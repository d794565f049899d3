"""Chat window grouping and prompt-budget splitting for ingestion."""

from datetime import timedelta
from typing import List, Sequence

from core.contracts.records import ChatMessage
from ingest.extractor import DEFAULT_MAX_MESSAGE_CHARS, build_extraction_prompt

DEFAULT_WINDOW_GAP = timedelta(minutes=15)


def group_by_gap(messages: Sequence[ChatMessage], gap: timedelta = DEFAULT_WINDOW_GAP) -> List[List[ChatMessage]]:
    """Start a new window whenever consecutive messages are more than ``gap`` apart."""
    if not messages:
        return []
    if gap is None or gap <= timedelta(0):
        gap = DEFAULT_WINDOW_GAP
    windows: List[List[ChatMessage]] = []
    current: List[ChatMessage] = []
    for msg in messages:
        if current and msg.created_at - current[-1].created_at > gap:
            windows.append(current)
            current = []
        current.append(msg)
    if current:
        windows.append(current)
    return windows


def group_by_count(messages: Sequence[ChatMessage], window_size: int, stride: int = 0) -> List[List[ChatMessage]]:
    """Fixed-size windows advancing by ``stride`` (capped at the size)."""
    if not messages:
        return []
    if window_size <= 0:
        return [list(messages)]
    if stride <= 0 or stride > window_size:
        stride = window_size
    windows: List[List[ChatMessage]] = []
    start = 0
    while start < len(messages):
        end = min(start + window_size, len(messages))
        windows.append(list(messages[start:end]))
        if end >= len(messages):
            break
        start += stride
    return windows


def split_window_by_prompt_budget(
    org_id: str,
    room_id: str,
    window: Sequence[ChatMessage],
    max_prompt_chars: int,
    max_message_chars: int = DEFAULT_MAX_MESSAGE_CHARS,
) -> List[List[ChatMessage]]:
    """Partition ``window`` into ordered sub-windows whose prompt fits the budget.

    Messages are never split and every sub-window holds at least one
    message, so a single oversized message still makes progress.
    """
    if not window:
        return []
    if max_prompt_chars <= 0:
        return [list(window)]
    if max_message_chars <= 0:
        max_message_chars = DEFAULT_MAX_MESSAGE_CHARS

    base_len = len(build_extraction_prompt(org_id, room_id, [], max_message_chars))
    if base_len >= max_prompt_chars:
        return group_by_count(window, 1, 1)

    chunks: List[List[ChatMessage]] = []
    i = 0
    while i < len(window):
        j = i
        while j < len(window):
            prompt = build_extraction_prompt(org_id, room_id, window[i:j + 1], max_message_chars)
            if len(prompt) > max_prompt_chars:
                break
            j += 1
        if j == i:
            j = i + 1
        chunks.append(list(window[i:j]))
        i = j
    return chunks
