"""LLM-mediated capability contracts.

Every LLM use case is a thin strategy over one GatewayCaller; workers only
see these shapes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Protocol, Sequence, Tuple, runtime_checkable

from core.contracts.records import (
    ChatMessage,
    DedupCluster,
    DedupDecision,
    DedupReviewMemory,
    ExtractionResult,
    SynthesisSourceMemory,
)


class Embedder(Protocol):
    def embed(self, texts: Sequence[str]) -> List[List[float]]: ...


@dataclass
class DedupReviewInput:
    org_id: str
    cluster: DedupCluster
    memories: List[DedupReviewMemory]
    prompt: str


class DedupReviewer(Protocol):
    def review(self, review: DedupReviewInput) -> DedupDecision: ...


@dataclass
class TaxonomyClassificationInput:
    org_id: str
    memory_id: str
    memory_title: str
    memory_content: str
    taxonomy_paths: List[str]
    max_assignments: int
    prompt: str


@dataclass
class TaxonomyClassificationOutput:
    model: str
    trace_id: str
    raw_json: str


class TaxonomyLLMClassifier(Protocol):
    def classify_memory(self, request: TaxonomyClassificationInput) -> TaxonomyClassificationOutput: ...


@dataclass
class EntitySynthesisInput:
    org_id: str
    entity_key: str
    entity_name: str
    prompt: str
    source_memories: List[SynthesisSourceMemory] = field(default_factory=list)


@dataclass
class EntitySynthesisOutput:
    title: str
    content: str
    model: str = ""
    trace_id: str = ""


class EntitySynthesizer(Protocol):
    def synthesize(self, request: EntitySynthesisInput) -> EntitySynthesisOutput: ...


class IngestionExtractor(Protocol):
    def extract(self, org_id: str, room_id: str, messages: Sequence[ChatMessage]) -> ExtractionResult: ...


@runtime_checkable
class PromptBudgeter(Protocol):
    def prompt_budget(self) -> Tuple[int, int]:
        """Return (max_prompt_chars, max_message_chars)."""
        ...
