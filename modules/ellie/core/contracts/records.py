"""Plain data rows exchanged between Ellie workers and their stores."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


MEMORY_KINDS = (
    "preference",
    "technical_decision",
    "process_decision",
    "fact",
    "lesson",
    "anti_pattern",
    "pattern",
    "context",
)


@dataclass
class Memory:
    id: str
    org_id: str
    kind: str = "context"
    title: str = ""
    content: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    importance: int = 3
    confidence: float = 0.7
    status: str = "active"
    superseded_by: Optional[str] = None
    occurred_at: Optional[datetime] = None
    source_project_id: Optional[str] = None
    source_conversation_id: Optional[str] = None
    embedding: List[float] = field(default_factory=list)


@dataclass
class NewMemory:
    """Insert payload for extracted, merged and synthesized memories."""
    org_id: str
    kind: str
    title: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    importance: int = 3
    confidence: float = 0.7
    status: str = "active"
    occurred_at: Optional[datetime] = None
    source_project_id: Optional[str] = None
    source_conversation_id: Optional[str] = None
    sensitivity: str = "normal"


# ── Dedup ──────────────────────────────────────────────────────────────

@dataclass
class DedupMemory:
    memory_id: str
    status: str
    embedding: List[float] = field(default_factory=list)


@dataclass(frozen=True)
class DedupPair:
    memory_id_1: str
    memory_id_2: str
    similarity: float = 0.0


@dataclass
class DedupCluster:
    memory_ids: List[str]


@dataclass
class DedupReviewMemory:
    memory_id: str
    title: str
    content: str


@dataclass
class DedupMerge:
    title: str
    content: str


@dataclass
class DedupDecision:
    keep: str = ""
    deprecate: List[str] = field(default_factory=list)
    merge: Optional[DedupMerge] = None


@dataclass
class DedupRunResult:
    pairs_discovered: int = 0
    clusters_reviewed: int = 0
    memories_deprecated: int = 0
    merges_created: int = 0
    invalid_decisions: int = 0


# ── Taxonomy ───────────────────────────────────────────────────────────

@dataclass
class TaxonomyNode:
    id: str
    org_id: str
    slug: str
    parent_id: Optional[str] = None
    depth: int = 0


@dataclass
class PendingClassification:
    memory_id: str
    title: str
    content: str


@dataclass
class TaxonomyAssignment:
    path: str
    confidence: float


@dataclass
class MemoryClassification:
    org_id: str
    memory_id: str
    node_id: str
    confidence: float
    classified_at: Optional[datetime] = None


@dataclass
class TaxonomyRunResult:
    pending_memories: int = 0
    classified_memories: int = 0
    invalid_outputs: int = 0


# ── Entity synthesis ───────────────────────────────────────────────────

@dataclass
class EntityCandidate:
    entity_key: str
    entity_name: str
    mention_count: int
    existing_synthesis_memory_id: Optional[str] = None
    existing_source_count: int = 0
    needs_resynthesis: bool = False


@dataclass
class SynthesisSourceMemory:
    memory_id: str
    kind: str
    title: str
    content: str
    source_project_id: Optional[str] = None
    occurred_at: Optional[datetime] = None


@dataclass
class SynthesisUpdate:
    org_id: str
    memory_id: str
    title: str
    content: str
    metadata: Dict[str, Any]
    importance: int
    confidence: float
    occurred_at: datetime
    source_project_id: Optional[str] = None


@dataclass
class SynthesisRunResult:
    candidates_considered: int = 0
    created_count: int = 0
    updated_count: int = 0
    skipped_existing_count: int = 0


# ── Ingestion ──────────────────────────────────────────────────────────

@dataclass
class ChatMessage:
    id: str
    org_id: str
    room_id: str
    body: str
    created_at: datetime
    sender_type: str = "user"
    sender_id: str = ""
    message_type: str = "message"
    conversation_id: Optional[str] = None
    token_count: int = 0


@dataclass
class RoomIngestionCandidate:
    org_id: str
    room_id: str


@dataclass
class RoomCursor:
    org_id: str
    room_id: str
    last_message_id: str
    last_message_created_at: datetime


@dataclass
class WindowRun:
    org_id: str
    room_id: str
    window_start_at: datetime
    window_end_at: datetime
    first_message_id: str
    last_message_id: str
    message_count: int
    token_count: int = 0
    llm_used: bool = False
    llm_model: str = ""
    llm_trace_id: str = ""
    llm_attempts: int = 0
    ok: bool = True
    error: str = ""
    duration_ms: int = 0
    inserted_total: int = 0
    inserted_memories: int = 0
    inserted_projects: int = 0
    inserted_issues: int = 0


@dataclass
class ExtractedCandidate:
    kind: str
    title: str
    content: str
    importance: int = 3
    confidence: float = 0.7
    source_conversation_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExtractionResult:
    model: str = ""
    trace_id: str = ""
    candidates: List[ExtractedCandidate] = field(default_factory=list)


@dataclass
class IngestionRunResult:
    processed_messages: int = 0
    windows_processed: int = 0
    rooms_processed: int = 0
    inserted_memories: int = 0
    inserted_llm_memories: int = 0
    inserted_heuristic_memories: int = 0


# ── Retrieval ──────────────────────────────────────────────────────────

@dataclass
class RoomContextRow:
    message_id: str
    room_id: str
    body: str
    conversation_id: Optional[str] = None


@dataclass
class MemorySearchRow:
    memory_id: str
    title: str
    content: str
    source_project_id: Optional[str] = None
    source_conversation_id: Optional[str] = None
    similarity: float = 0.0


@dataclass
class ChatHistoryRow:
    message_id: str
    room_id: str
    body: str
    conversation_id: Optional[str] = None


@dataclass
class ProjectDocRow:
    doc_id: str
    project_id: str
    title: str = ""
    summary: str = ""
    file_path: str = ""
    local_repo_path: str = ""


@dataclass
class RetrievedItem:
    tier: int
    source: str
    id: str
    snippet: str
    room_id: str = ""
    memory_id: str = ""
    conversation_id: str = ""
    project_id: str = ""


@dataclass
class RetrievalResponse:
    items: List[RetrievedItem] = field(default_factory=list)
    tier_used: int = 5
    no_information: bool = True


@dataclass
class QualitySignal:
    org_id: str
    project_id: str
    room_id: str
    query: str
    tier_used: int
    injected_count: int
    referenced_count: int
    missed_count: int
    no_information: bool
    injected_item_ids: List[str] = field(default_factory=list)
    referenced_item_ids: List[str] = field(default_factory=list)
    missed_item_ids: List[str] = field(default_factory=list)


@dataclass
class RetrievalStrategy:
    org_id: str
    version: int
    scopes: List[str]
    topic_expansions: Dict[str, List[Dict[str, str]]] = field(default_factory=dict)
    active: bool = True


# ── Context injection ──────────────────────────────────────────────────

@dataclass
class PendingInjectionMessage:
    message_id: str
    org_id: str
    room_id: str
    body: str
    created_at: datetime
    sender_id: str = ""
    sender_type: str = "user"
    message_type: str = "message"
    conversation_id: Optional[str] = None
    has_embedding: bool = False


@dataclass
class InjectionMemoryCandidate:
    memory_id: str
    title: str
    content: str
    similarity: float
    importance: int
    confidence: float
    occurred_at: Optional[datetime] = None
    superseded_by: Optional[str] = None


@dataclass
class InjectionMessage:
    org_id: str
    room_id: str
    sender_id: str
    body: str
    message_type: str
    created_at: datetime
    conversation_id: Optional[str] = None
