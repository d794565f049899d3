"""
Proactive injection scoring.

Each candidate memory gets one score in [0, 1]:

    0.45 * effective_similarity    (0.8 * similarity + 0.2 * confidence)
  + 0.20 * recency                 1 / (1 + age_days / 30)
  + 0.15 * importance / 5
  + 0.12 * novelty                 1 / (1 + prior_injections)
  + 0.08 * conversation stage      1.0, 0.7 past 20 messages, 0.45 past 60

Candidates under the threshold are dropped and the rest are ranked and
capped.  Every component is clamped to [0, 1] with NaN/Inf read as 0.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from lib.normalize import clamp_unit, parse_timestamp

DEFAULT_THRESHOLD = 0.62
DEFAULT_MAX_ITEMS = 3
MAX_ITEMS_CAP = 10

WEIGHT_SIMILARITY = 0.45
WEIGHT_RECENCY = 0.20
WEIGHT_IMPORTANCE = 0.15
WEIGHT_NOVELTY = 0.12
WEIGHT_STAGE = 0.08

BUNDLE_HEADER = "Relevant context from memory:"


@dataclass
class InjectionCandidate:
    memory_id: str
    title: str
    content: str
    similarity: float
    importance: int = 3
    confidence: float = 0.7
    occurred_at: Optional[datetime] = None
    supersedes_memory_id: Optional[str] = None


@dataclass
class ScoredCandidate:
    memory_id: str
    title: str
    content: str
    score: float
    similarity: float
    recency: float
    supersedes_memory_id: Optional[str] = None


@dataclass
class InjectionBundle:
    items: List[ScoredCandidate] = field(default_factory=list)
    body: str = ""


def recency_score(now: datetime, occurred_at: Optional[datetime]) -> float:
    now = parse_timestamp(now)
    occurred_at = parse_timestamp(occurred_at)
    if now is None or occurred_at is None:
        return 0.0
    age_days = max(0.0, (now - occurred_at).total_seconds() / 86400.0)
    return clamp_unit(1.0 / (1.0 + age_days / 30.0))


def novelty_score(prior_injections: int) -> float:
    return clamp_unit(1.0 / (1.0 + max(0, int(prior_injections or 0))))


def stage_score(room_message_count: int) -> float:
    if room_message_count > 60:
        return 0.45
    if room_message_count > 20:
        return 0.7
    return 1.0


def score_candidate(
    candidate: InjectionCandidate, now: datetime, room_message_count: int, prior_injections: int
) -> ScoredCandidate:
    similarity = clamp_unit(candidate.similarity)
    effective = clamp_unit(0.8 * similarity + 0.2 * clamp_unit(candidate.confidence))
    recency = recency_score(now, candidate.occurred_at)
    importance = clamp_unit((candidate.importance or 0) / 5.0)
    score = (
        WEIGHT_SIMILARITY * effective
        + WEIGHT_RECENCY * recency
        + WEIGHT_IMPORTANCE * importance
        + WEIGHT_NOVELTY * novelty_score(prior_injections)
        + WEIGHT_STAGE * clamp_unit(stage_score(room_message_count))
    )
    return ScoredCandidate(
        memory_id=str(candidate.memory_id or "").strip(),
        title=str(candidate.title or "").strip(),
        content=str(candidate.content or "").strip(),
        score=clamp_unit(score),
        similarity=similarity,
        recency=recency,
        supersedes_memory_id=str(candidate.supersedes_memory_id or "").strip() or None,
    )


def render_bundle(items: Sequence[ScoredCandidate]) -> str:
    if not items:
        return ""
    lines = [BUNDLE_HEADER]
    for item in items:
        title = item.title or item.memory_id
        lines.append(f"- {title}: {item.content}" if item.content else f"- {title}")
        if item.supersedes_memory_id:
            lines.append(
                f"  Updated context: previous decision {item.supersedes_memory_id} has been superseded"
            )
    return "\n".join(lines)


class ProactiveInjectionService:
    def __init__(self, threshold: float = DEFAULT_THRESHOLD, max_items: int = DEFAULT_MAX_ITEMS):
        self.threshold = threshold if 0 < threshold <= 1 else DEFAULT_THRESHOLD
        if max_items <= 0:
            max_items = DEFAULT_MAX_ITEMS
        self.max_items = min(max_items, MAX_ITEMS_CAP)

    @classmethod
    def from_config(cls) -> "ProactiveInjectionService":
        from config import get_config

        cfg = get_config().injection
        return cls(threshold=cfg.threshold, max_items=cfg.max_items)

    def build_bundle(
        self,
        now: datetime,
        room_message_count: int,
        prior_injection_count: int,
        candidates: Sequence[InjectionCandidate],
    ) -> InjectionBundle:
        scored = []
        for candidate in candidates or []:
            if not str(candidate.memory_id or "").strip():
                continue
            item = score_candidate(candidate, now, room_message_count, prior_injection_count)
            if item.score < self.threshold:
                continue
            scored.append(item)
        scored.sort(key=lambda s: (-s.score, -s.similarity, -s.recency, s.memory_id))
        items = scored[: self.max_items]
        return InjectionBundle(items=items, body=render_bundle(items))
