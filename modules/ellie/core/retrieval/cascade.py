"""
Tiered retrieval cascade.

    tier 1  project docs (semantic, when available) then room context
    tier 2  project memories + org-wide memories, deduplicated
    tier 3  org-wide chat history
    tier 4  raw JSONL session logs
    tier 5  nothing found (no_information)

The first tier that yields anything answers the request.  Every response,
including tier 5, is reported to the optional quality sink.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from core.contracts.llm import Embedder
from core.contracts.records import (
    ChatHistoryRow,
    MemorySearchRow,
    ProjectDocRow,
    QualitySignal,
    RetrievalResponse,
    RetrievedItem,
    RoomContextRow,
)
from core.contracts.stores import (
    JSONLScanner,
    ProjectDocRetrievalStore,
    QualitySink,
    RetrievalStore,
    SemanticRetrievalStore,
)
from lib.errors import ConfigurationError, RetrievalError
from lib.normalize import dedupe_trimmed

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 5


@dataclass
class RetrievalRequest:
    org_id: str
    query: str
    room_id: str = ""
    project_id: str = ""
    limit: int = DEFAULT_LIMIT
    referenced_item_ids: List[str] = field(default_factory=list)
    missed_item_ids: List[str] = field(default_factory=list)


def load_project_doc_content(repo_root: str, relative_path: str) -> str:
    """Read a project doc, refusing paths that escape ``repo_root``."""
    root = str(repo_root or "").strip()
    rel = str(relative_path or "").strip()
    if not root or not rel:
        return ""
    abs_root = Path(os.path.abspath(root))
    candidate = Path(os.path.normpath(abs_root / rel))
    try:
        candidate.relative_to(abs_root)
    except ValueError:
        return ""
    try:
        return candidate.read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return ""


def _room_items(rows: Sequence[RoomContextRow]) -> List[RetrievedItem]:
    return [
        RetrievedItem(
            tier=1,
            source="room",
            id=row.message_id,
            snippet=row.body,
            room_id=row.room_id,
            conversation_id=str(row.conversation_id or "").strip(),
        )
        for row in rows
    ]


def _project_doc_items(rows: Sequence[ProjectDocRow], limit: int) -> List[RetrievedItem]:
    items = []
    for row in rows:
        snippet = load_project_doc_content(row.local_repo_path, row.file_path)
        if not snippet:
            snippet = str(row.summary or "").strip()
        if not snippet:
            snippet = str(row.title or "").strip()
        items.append(RetrievedItem(
            tier=1,
            source="project_doc",
            id=row.doc_id,
            snippet=snippet,
            project_id=row.project_id,
        ))
        if limit > 0 and len(items) >= limit:
            break
    return items


def _memory_items(rows: Sequence[MemorySearchRow], limit: int) -> List[RetrievedItem]:
    items = []
    for row in rows:
        items.append(RetrievedItem(
            tier=2,
            source="memory",
            id=row.memory_id,
            memory_id=row.memory_id,
            snippet=f"{row.title}: {row.content}".strip(),
            conversation_id=str(row.source_conversation_id or "").strip(),
            project_id=str(row.source_project_id or "").strip(),
        ))
        if limit > 0 and len(items) >= limit:
            break
    return items


def _chat_items(rows: Sequence[ChatHistoryRow]) -> List[RetrievedItem]:
    return [
        RetrievedItem(
            tier=3,
            source="chat_history",
            id=row.message_id,
            snippet=row.body,
            room_id=row.room_id,
            conversation_id=str(row.conversation_id or "").strip(),
        )
        for row in rows
    ]


def _dedupe_memories(rows: Sequence[MemorySearchRow]) -> List[MemorySearchRow]:
    seen = set()
    out = []
    for row in rows:
        memory_id = str(row.memory_id or "").strip()
        if not memory_id or memory_id in seen:
            continue
        seen.add(memory_id)
        out.append(row)
    return out


class RetrievalCascadeService:
    def __init__(
        self,
        store: RetrievalStore,
        *,
        jsonl_scanner: Optional[JSONLScanner] = None,
        quality_sink: Optional[QualitySink] = None,
        query_embedder: Optional[Embedder] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.jsonl_scanner = jsonl_scanner
        self.quality_sink = quality_sink
        self.query_embedder = query_embedder
        self.logger = logger or logging.getLogger(__name__)

    def retrieve(self, request: RetrievalRequest) -> RetrievalResponse:
        if self.store is None:
            raise ConfigurationError("retrieval store is required")
        org_id = str(request.org_id or "").strip()
        room_id = str(request.room_id or "").strip()
        project_id = str(request.project_id or "").strip()
        query = str(request.query or "").strip()
        if not org_id:
            raise ConfigurationError("org_id is required")
        if not query:
            return self._respond(request, RetrievalResponse())
        limit = request.limit if request.limit and request.limit > 0 else DEFAULT_LIMIT

        embedding = self._query_embedding(query)
        semantic = embedding is not None and isinstance(self.store, SemanticRetrievalStore)

        if project_id and embedding is not None and isinstance(self.store, ProjectDocRetrievalStore):
            try:
                docs = self.store.search_project_docs_by_embedding(org_id, project_id, query, embedding, limit)
            except Exception as e:
                raise RetrievalError(f"project docs lookup failed: {e}") from e
            if docs:
                return self._respond(request, RetrievalResponse(
                    items=_project_doc_items(docs, limit), tier_used=1, no_information=False
                ))

        if room_id:
            try:
                rows = self.store.search_room_context(org_id, room_id, query, limit)
            except Exception as e:
                raise RetrievalError(f"tier 1 room context lookup failed: {e}") from e
            if rows:
                return self._respond(request, RetrievalResponse(
                    items=_room_items(rows), tier_used=1, no_information=False
                ))

        memories: List[MemorySearchRow] = []
        if project_id:
            try:
                if semantic:
                    memories.extend(self.store.search_memories_by_project_with_embedding(
                        org_id, project_id, query, embedding, limit
                    ))
                else:
                    memories.extend(self.store.search_memories_by_project(org_id, project_id, query, limit))
            except Exception as e:
                raise RetrievalError(f"tier 2 project memory lookup failed: {e}") from e
        try:
            if semantic:
                memories.extend(self.store.search_memories_org_wide_with_embedding(org_id, query, embedding, limit))
            else:
                memories.extend(self.store.search_memories_org_wide(org_id, query, limit))
        except Exception as e:
            raise RetrievalError(f"tier 2 org memory lookup failed: {e}") from e
        memories = _dedupe_memories(memories)[:limit]
        if memories:
            return self._respond(request, RetrievalResponse(
                items=_memory_items(memories, limit), tier_used=2, no_information=False
            ))

        try:
            if semantic:
                chats = self.store.search_chat_history_with_embedding(org_id, query, embedding, limit)
            else:
                chats = self.store.search_chat_history(org_id, query, limit)
        except Exception as e:
            raise RetrievalError(f"tier 3 chat history lookup failed: {e}") from e
        if chats:
            return self._respond(request, RetrievalResponse(
                items=_chat_items(chats), tier_used=3, no_information=False
            ))

        if self.jsonl_scanner is not None:
            try:
                found = self.jsonl_scanner.scan(org_id, query, limit)
            except Exception as e:
                raise RetrievalError(f"tier 4 jsonl lookup failed: {e}") from e
            if found:
                for item in found:
                    item.tier = 4
                    if not str(item.source or "").strip():
                        item.source = "jsonl"
                return self._respond(request, RetrievalResponse(
                    items=list(found), tier_used=4, no_information=False
                ))

        return self._respond(request, RetrievalResponse())

    def _query_embedding(self, query: str) -> Optional[List[float]]:
        if self.query_embedder is None:
            return None
        try:
            vectors = self.query_embedder.embed([query])
        except Exception as e:
            self.logger.info("[retrieval] query embedding unavailable, using lexical search: %s", e)
            return None
        if len(vectors) != 1 or not vectors[0]:
            return None
        return list(vectors[0])

    def _respond(self, request: RetrievalRequest, response: RetrievalResponse) -> RetrievalResponse:
        self._emit_quality_signal(request, response)
        return response

    def _emit_quality_signal(self, request: RetrievalRequest, response: RetrievalResponse) -> None:
        if self.quality_sink is None:
            return
        injected = dedupe_trimmed(item.id for item in response.items)
        injected_set = set(injected)
        referenced = dedupe_trimmed(request.referenced_item_ids)
        missed = dedupe_trimmed(request.missed_item_ids)
        signal = QualitySignal(
            org_id=str(request.org_id or "").strip(),
            project_id=str(request.project_id or "").strip(),
            room_id=str(request.room_id or "").strip(),
            query=str(request.query or "").strip(),
            tier_used=response.tier_used,
            injected_count=len(injected),
            referenced_count=sum(1 for item_id in referenced if item_id in injected_set),
            missed_count=len(missed),
            no_information=response.no_information,
            injected_item_ids=injected,
            referenced_item_ids=referenced,
            missed_item_ids=missed,
        )
        try:
            self.quality_sink.record(signal)
        except Exception as e:
            self.logger.warning("[retrieval] quality sink record failed: %s", e)
