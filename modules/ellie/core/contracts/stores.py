"""Per-component store contracts.

Each worker depends on the narrow capability it needs, never on one shared
repository.  The SQLite implementations live in datastore/memorydb.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Protocol, Sequence, runtime_checkable

from core.contracts.records import (
    ChatHistoryRow,
    ChatMessage,
    DedupMemory,
    DedupReviewMemory,
    EntityCandidate,
    InjectionMemoryCandidate,
    InjectionMessage,
    MemoryClassification,
    MemorySearchRow,
    NewMemory,
    PendingClassification,
    PendingInjectionMessage,
    ProjectDocRow,
    QualitySignal,
    RetrievalStrategy,
    RetrievedItem,
    RoomContextRow,
    RoomCursor,
    RoomIngestionCandidate,
    SynthesisSourceMemory,
    SynthesisUpdate,
    TaxonomyNode,
    WindowRun,
)


# ── Retrieval ──────────────────────────────────────────────────────────

class RetrievalStore(Protocol):
    def search_room_context(self, org_id: str, room_id: str, query: str, limit: int) -> List[RoomContextRow]: ...

    def search_memories_by_project(
        self, org_id: str, project_id: str, query: str, limit: int
    ) -> List[MemorySearchRow]: ...

    def search_memories_org_wide(self, org_id: str, query: str, limit: int) -> List[MemorySearchRow]: ...

    def search_chat_history(self, org_id: str, query: str, limit: int) -> List[ChatHistoryRow]: ...


@runtime_checkable
class SemanticRetrievalStore(Protocol):
    def search_memories_by_project_with_embedding(
        self, org_id: str, project_id: str, query: str, embedding: Sequence[float], limit: int
    ) -> List[MemorySearchRow]: ...

    def search_memories_org_wide_with_embedding(
        self, org_id: str, query: str, embedding: Sequence[float], limit: int
    ) -> List[MemorySearchRow]: ...

    def search_chat_history_with_embedding(
        self, org_id: str, query: str, embedding: Sequence[float], limit: int
    ) -> List[ChatHistoryRow]: ...


@runtime_checkable
class ProjectDocRetrievalStore(Protocol):
    def search_project_docs_by_embedding(
        self, org_id: str, project_id: str, query: str, embedding: Sequence[float], limit: int
    ) -> List[ProjectDocRow]: ...


class JSONLScanner(Protocol):
    def scan(self, org_id: str, query: str, limit: int) -> List[RetrievedItem]: ...


class QualitySink(Protocol):
    def record(self, signal: QualitySignal) -> None: ...


class StrategyStore(Protocol):
    def get_active_strategy(self, org_id: str) -> Optional[RetrievalStrategy]: ...


# ── Dedup ──────────────────────────────────────────────────────────────

class DedupStore(Protocol):
    def list_candidate_memories(self, org_id: str, limit: int) -> List[DedupMemory]: ...

    def list_memories_by_ids(self, org_id: str, memory_ids: Sequence[str]) -> List[DedupReviewMemory]: ...

    def is_pair_reviewed(self, org_id: str, memory_id_1: str, memory_id_2: str) -> bool: ...

    def record_reviewed_pair(self, org_id: str, memory_id_1: str, memory_id_2: str, decision: str) -> None: ...

    def deprecate_memories(
        self, org_id: str, memory_ids: Sequence[str], superseded_by: Optional[str]
    ) -> None: ...

    def create_merged_memory(
        self, org_id: str, title: str, content: str, source_memory_ids: Sequence[str]
    ) -> str: ...


# ── Taxonomy ───────────────────────────────────────────────────────────

class TaxonomyStore(Protocol):
    def list_all_nodes(self, org_id: str) -> List[TaxonomyNode]: ...

    def list_pending_memories_for_classification(
        self, org_id: str, limit: int
    ) -> List[PendingClassification]: ...

    def upsert_memory_classification(self, classification: MemoryClassification) -> None: ...

    def mark_memory_taxonomy_classified(
        self,
        org_id: str,
        memory_id: str,
        classified_at: datetime,
        classifier_model: str,
        classifier_trace_id: str,
    ) -> None: ...


# ── Entity synthesis ───────────────────────────────────────────────────

class SynthesisStore(Protocol):
    def list_candidates(self, org_id: str, min_mentions: int, limit: int) -> List[EntityCandidate]: ...

    def list_source_memories(self, org_id: str, entity_key: str, limit: int) -> List[SynthesisSourceMemory]: ...

    def create_memory(self, memory: NewMemory) -> str: ...

    def update_synthesis_memory(self, update: SynthesisUpdate) -> None: ...


class EmbeddingStore(Protocol):
    def update_memory_embedding(self, memory_id: str, embedding: Sequence[float]) -> None: ...


# ── Ingestion ──────────────────────────────────────────────────────────

class IngestionStore(Protocol):
    def list_rooms_for_ingestion(self, limit: int, org_id: Optional[str] = None) -> List[RoomIngestionCandidate]: ...

    def get_room_cursor(self, org_id: str, room_id: str) -> Optional[RoomCursor]: ...

    def list_room_messages_since(
        self,
        org_id: str,
        room_id: str,
        after_created_at: Optional[datetime],
        after_message_id: Optional[str],
        limit: int,
    ) -> List[ChatMessage]: ...

    def insert_extracted_memory(self, memory: NewMemory) -> bool: ...

    def create_window_run(self, run: WindowRun) -> None: ...

    def upsert_room_cursor(self, cursor: RoomCursor) -> None: ...


class PauseChecker(Protocol):
    def should_pause(self, org_id: str) -> bool: ...


# ── Context injection ──────────────────────────────────────────────────

class InjectionQueue(Protocol):
    def list_pending_messages_since(
        self,
        after_created_at: Optional[datetime],
        after_message_id: Optional[str],
        limit: int,
    ) -> List[PendingInjectionMessage]: ...

    def update_message_embedding(self, message_id: str, embedding: Sequence[float]) -> None: ...

    def search_memory_candidates_by_embedding(
        self, org_id: str, embedding: Sequence[float], limit: int
    ) -> List[InjectionMemoryCandidate]: ...

    def was_injected_since_compaction(self, org_id: str, room_id: str, memory_id: str) -> bool: ...

    def record_injection(self, org_id: str, room_id: str, memory_id: str, injected_at: datetime) -> None: ...

    def create_injection_message(self, message: InjectionMessage) -> str: ...

    def count_messages_since_last_context_injection(self, org_id: str, room_id: str) -> int: ...


# ── Tuning ─────────────────────────────────────────────────────────────

class TuningAuditSink(Protocol):
    def record(self, attempt: Any) -> None: ...
