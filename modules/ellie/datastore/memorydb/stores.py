"""
SQLite implementations of the per-component Ellie store contracts.

Every class opens short-lived connections through lib.database and
implements exactly the Protocol its worker depends on:

    RetrievalSQLiteStore        RetrievalStore, SemanticRetrievalStore,
                                ProjectDocRetrievalStore
    RetrievalQualityStore       QualitySink
    RetrievalStrategyStore      StrategyStore
    DedupSQLiteStore            DedupStore
    TaxonomySQLiteStore         TaxonomyStore
    SynthesisSQLiteStore        SynthesisStore, EmbeddingStore
    IngestionSQLiteStore        IngestionStore
    ContextInjectionSQLiteStore InjectionQueue
    RoomStore                   rooms and chat messages (fixtures, bridges)
"""

import hashlib
import json
import re
import uuid
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

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
    RoomContextRow,
    RoomCursor,
    RoomIngestionCandidate,
    SynthesisSourceMemory,
    SynthesisUpdate,
    TaxonomyNode,
    WindowRun,
)
from core.dedup.engine import canonical_pair
from lib.database import get_connection, has_vec
from lib.embeddings import cosine_similarity, pack_embedding, unpack_embedding
from lib.normalize import clamp_unit, format_timestamp, parse_timestamp, utc_now

MAX_QUERY_LIMIT = 2000
MAX_INJECTION_CANDIDATES = 50
NO_PRIOR_INJECTION_COUNT = 2147483647
SYNTHESIS_GROWTH_THRESHOLD = 0.20
LEXICAL_SCAN_FACTOR = 20

_ENTITY_PATTERN = re.compile(r"([A-Z][A-Za-z0-9][A-Za-z0-9_-]{2,})")
_TOKEN_PATTERN = re.compile(r"[a-z0-9_]{3,}")
_STOPWORDS = frozenset((
    "the", "and", "for", "are", "was", "were", "what", "when", "where", "which",
    "who", "why", "how", "did", "does", "our", "you", "your", "with", "this",
    "that", "from", "have", "has", "about", "into", "can", "should", "would",
))


# ── helpers ────────────────────────────────────────────────────────────

def new_id() -> str:
    return str(uuid.uuid4())


def content_hash(title: str, content: str) -> str:
    normalized = " ".join(f"{title}\n{content}".lower().split())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def _clamp_limit(limit: int, default: int, maximum: int = MAX_QUERY_LIMIT) -> int:
    if limit is None or limit <= 0:
        return default
    return min(limit, maximum)


def _clamp_importance(value: int) -> int:
    value = int(value or 0)
    if value <= 0:
        return 3
    return min(value, 5)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def query_tokens(query: str) -> List[str]:
    """Distinct lowercase search terms; the whole query when nothing survives."""
    tokens = []
    for token in _TOKEN_PATTERN.findall(str(query or "").lower()):
        if token in _STOPWORDS or token in tokens:
            continue
        tokens.append(token)
    if not tokens:
        whole = str(query or "").strip().lower()
        return [whole] if whole else []
    return tokens[:8]


def _lexical_clause(expr: str, tokens: Sequence[str]) -> Tuple[str, List[str]]:
    clause = " OR ".join(f"LOWER({expr}) LIKE ? ESCAPE '\\'" for _ in tokens)
    return f"({clause})", [f"%{_escape_like(t)}%" for t in tokens]


def _rank_lexical(rows: Iterable[Any], text_of, tokens: Sequence[str], limit: int) -> List[Any]:
    """Order rows by matched-token count; ties keep the query's recency order."""
    scored = []
    for position, row in enumerate(rows):
        text = text_of(row).lower()
        hits = sum(1 for t in tokens if t in text)
        if hits:
            scored.append((-hits, position, row))
    scored.sort(key=lambda item: (item[0], item[1]))
    return [row for _, _, row in scored[:limit]]


def _nearest(conn, inner_sql: str, params: Sequence[Any], embedding: Sequence[float], limit: int):
    """(similarity, row) pairs for rows of ``inner_sql`` closest to ``embedding``.

    ``inner_sql`` must select an ``embedding`` column.  With sqlite-vec
    loaded the ranking runs in SQL, otherwise in Python.
    """
    probe = pack_embedding(embedding)
    if has_vec():
        rows = conn.execute(
            f"""SELECT *, 1 - vec_distance_cosine(embedding, ?) AS similarity
                FROM ({inner_sql})
                WHERE embedding IS NOT NULL AND LENGTH(embedding) = ?
                ORDER BY similarity DESC
                LIMIT ?""",
            (probe, *params, len(probe), limit),
        ).fetchall()
        return [(float(row["similarity"]), row) for row in rows]

    scored = []
    for position, row in enumerate(conn.execute(inner_sql, tuple(params)).fetchall()):
        similarity = cosine_similarity(unpack_embedding(row["embedding"]), embedding)
        if similarity is None:
            continue
        scored.append((-similarity, position, row))
    scored.sort(key=lambda item: (item[0], item[1]))
    return [(-neg, row) for neg, _, row in scored[:limit]]


def _json_dict(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


def _opt(value: Optional[str]) -> Optional[str]:
    value = str(value or "").strip()
    return value or None


class _SQLiteStore:
    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path

    def _conn(self):
        return get_connection(self.db_path)


# ── memories ───────────────────────────────────────────────────────────

class MemoryStore(_SQLiteStore):
    """Memory rows shared by ingestion, synthesis and dedup."""

    def _insert_memory(self, conn, memory: NewMemory) -> Tuple[str, bool]:
        org_id = str(memory.org_id or "").strip()
        kind = str(memory.kind or "").strip()
        title = str(memory.title or "").strip()
        content = str(memory.content or "").strip()
        if not org_id:
            raise ValueError("org_id is required")
        if not kind or not title or not content:
            raise ValueError("kind, title, and content are required")
        now = utc_now()
        memory_id = new_id()
        digest = content_hash(title, content)
        cur = conn.execute(
            """INSERT INTO memories (
                   id, org_id, kind, title, content, metadata, importance, confidence,
                   status, sensitivity, source_project_id, source_conversation_id,
                   content_hash, occurred_at, created_at, updated_at
               ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (org_id, content_hash) WHERE status = 'active' DO NOTHING""",
            (
                memory_id, org_id, kind, title, content,
                json.dumps(memory.metadata or {}, sort_keys=True),
                _clamp_importance(memory.importance),
                clamp_unit(memory.confidence),
                str(memory.sensitivity or "normal"),
                _opt(memory.source_project_id),
                _opt(memory.source_conversation_id),
                digest,
                format_timestamp(memory.occurred_at or now),
                format_timestamp(now),
                format_timestamp(now),
            ),
        )
        if cur.rowcount > 0:
            return memory_id, True
        row = conn.execute(
            "SELECT id FROM memories WHERE org_id = ? AND content_hash = ? AND status = 'active'",
            (org_id, digest),
        ).fetchone()
        return row["id"], False

    def create_memory(self, memory: NewMemory) -> str:
        """Insert a memory and return its id (the existing id on duplicate content)."""
        with self._conn() as conn:
            memory_id, _ = self._insert_memory(conn, memory)
        return memory_id

    def insert_extracted_memory(self, memory: NewMemory) -> bool:
        with self._conn() as conn:
            _, inserted = self._insert_memory(conn, memory)
        return inserted

    def update_memory_embedding(self, memory_id: str, embedding: Sequence[float]) -> None:
        with self._conn() as conn:
            conn.execute(
                "UPDATE memories SET embedding = ?, updated_at = ? WHERE id = ?",
                (pack_embedding(embedding), format_timestamp(utc_now()), memory_id),
            )

    def get_memory(self, memory_id: str) -> Optional[Dict[str, Any]]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["metadata"] = _json_dict(data.get("metadata"))
        data["embedding"] = unpack_embedding(data.get("embedding"))
        return data

    def list_memories(self, org_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = "SELECT id, kind, title, content, status, superseded_by FROM memories WHERE org_id = ?"
        params: List[Any] = [org_id]
        if status:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY created_at ASC, id ASC"
        with self._conn() as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]


# ── rooms / chat ───────────────────────────────────────────────────────

def _chat_message(row) -> ChatMessage:
    return ChatMessage(
        id=row["id"],
        org_id=row["org_id"],
        room_id=row["room_id"],
        body=row["body"],
        created_at=parse_timestamp(row["created_at"]),
        sender_type=row["sender_type"],
        sender_id=row["sender_id"],
        message_type=row["type"],
        conversation_id=_opt(row["conversation_id"]),
    )


class RoomStore(_SQLiteStore):
    def upsert_room(self, org_id: str, room_id: str, name: str = "", project_id: Optional[str] = None) -> None:
        with self._conn() as conn:
            conn.execute(
                """INSERT INTO rooms (id, org_id, name, project_id, created_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT (id) DO UPDATE SET name = excluded.name, project_id = excluded.project_id""",
                (room_id, org_id, name, _opt(project_id), format_timestamp(utc_now())),
            )

    def mark_room_compacted(self, org_id: str, room_id: str, compacted_at: Optional[datetime] = None) -> None:
        with self._conn() as conn:
            conn.execute(
                "UPDATE rooms SET last_compacted_at = ? WHERE org_id = ? AND id = ?",
                (format_timestamp(compacted_at or utc_now()), org_id, room_id),
            )

    def add_message(self, message: ChatMessage, embedding: Optional[Sequence[float]] = None) -> str:
        message_id = str(message.id or "").strip() or new_id()
        with self._conn() as conn:
            conn.execute(
                """INSERT INTO chat_messages (
                       id, org_id, room_id, sender_id, sender_type, type, body,
                       conversation_id, embedding, created_at
                   ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    message_id, message.org_id, message.room_id, message.sender_id,
                    message.sender_type, message.message_type, message.body,
                    _opt(message.conversation_id),
                    pack_embedding(embedding) if embedding else None,
                    format_timestamp(message.created_at or utc_now()),
                ),
            )
        return message_id

    def list_messages(self, org_id: str, room_id: str) -> List[ChatMessage]:
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT * FROM chat_messages WHERE org_id = ? AND room_id = ?
                   ORDER BY created_at ASC, id ASC""",
                (org_id, room_id),
            ).fetchall()
        return [_chat_message(r) for r in rows]


# ── retrieval ──────────────────────────────────────────────────────────

def _memory_row(row, similarity: float = 0.0) -> MemorySearchRow:
    return MemorySearchRow(
        memory_id=row["id"],
        title=row["title"],
        content=row["content"],
        source_project_id=_opt(row["source_project_id"]),
        source_conversation_id=_opt(row["source_conversation_id"]),
        similarity=similarity,
    )


_MEMORY_COLUMNS = "id, title, content, source_project_id, source_conversation_id, embedding, occurred_at"


class RetrievalSQLiteStore(_SQLiteStore):
    def _search_memories(self, org_id: str, project_id: Optional[str], query: str, limit: int) -> List[MemorySearchRow]:
        tokens = query_tokens(query)
        if not tokens:
            return []
        limit = _clamp_limit(limit, 5)
        clause, params = _lexical_clause("title || ' ' || content", tokens)
        sql = f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE org_id = ? AND status = 'active'"
        args: List[Any] = [org_id]
        if project_id:
            sql += " AND source_project_id = ?"
            args.append(project_id)
        sql += f" AND {clause} ORDER BY occurred_at DESC, id DESC LIMIT ?"
        with self._conn() as conn:
            rows = conn.execute(sql, (*args, *params, limit * LEXICAL_SCAN_FACTOR)).fetchall()
        ranked = _rank_lexical(rows, lambda r: f"{r['title']} {r['content']}", tokens, limit)
        return [_memory_row(r) for r in ranked]

    def _search_memories_semantic(
        self, org_id: str, project_id: Optional[str], embedding: Sequence[float], limit: int
    ) -> List[MemorySearchRow]:
        sql = (
            f"SELECT {_MEMORY_COLUMNS} FROM memories "
            "WHERE org_id = ? AND status = 'active' AND embedding IS NOT NULL"
        )
        args: List[Any] = [org_id]
        if project_id:
            sql += " AND source_project_id = ?"
            args.append(project_id)
        sql += " ORDER BY occurred_at DESC, id DESC"
        with self._conn() as conn:
            nearest = _nearest(conn, sql, args, embedding, _clamp_limit(limit, 5))
        return [_memory_row(row, sim) for sim, row in nearest]

    def search_room_context(self, org_id: str, room_id: str, query: str, limit: int) -> List[RoomContextRow]:
        tokens = query_tokens(query)
        if not tokens:
            return []
        limit = _clamp_limit(limit, 5)
        clause, params = _lexical_clause("body", tokens)
        with self._conn() as conn:
            rows = conn.execute(
                f"""SELECT id, room_id, body, conversation_id FROM chat_messages
                    WHERE org_id = ? AND room_id = ? AND type <> 'context_injection' AND {clause}
                    ORDER BY created_at DESC, id DESC LIMIT ?""",
                (org_id, room_id, *params, limit * LEXICAL_SCAN_FACTOR),
            ).fetchall()
        ranked = _rank_lexical(rows, lambda r: r["body"], tokens, limit)
        return [RoomContextRow(r["id"], r["room_id"], r["body"], _opt(r["conversation_id"])) for r in ranked]

    def search_memories_by_project(self, org_id: str, project_id: str, query: str, limit: int) -> List[MemorySearchRow]:
        return self._search_memories(org_id, project_id, query, limit)

    def search_memories_org_wide(self, org_id: str, query: str, limit: int) -> List[MemorySearchRow]:
        return self._search_memories(org_id, None, query, limit)

    def search_chat_history(self, org_id: str, query: str, limit: int) -> List[ChatHistoryRow]:
        tokens = query_tokens(query)
        if not tokens:
            return []
        limit = _clamp_limit(limit, 5)
        clause, params = _lexical_clause("body", tokens)
        with self._conn() as conn:
            rows = conn.execute(
                f"""SELECT id, room_id, body, conversation_id FROM chat_messages
                    WHERE org_id = ? AND type <> 'context_injection' AND {clause}
                    ORDER BY created_at DESC, id DESC LIMIT ?""",
                (org_id, *params, limit * LEXICAL_SCAN_FACTOR),
            ).fetchall()
        ranked = _rank_lexical(rows, lambda r: r["body"], tokens, limit)
        return [ChatHistoryRow(r["id"], r["room_id"], r["body"], _opt(r["conversation_id"])) for r in ranked]

    def search_memories_by_project_with_embedding(
        self, org_id: str, project_id: str, query: str, embedding: Sequence[float], limit: int
    ) -> List[MemorySearchRow]:
        return self._search_memories_semantic(org_id, project_id, embedding, limit)

    def search_memories_org_wide_with_embedding(
        self, org_id: str, query: str, embedding: Sequence[float], limit: int
    ) -> List[MemorySearchRow]:
        return self._search_memories_semantic(org_id, None, embedding, limit)

    def search_chat_history_with_embedding(
        self, org_id: str, query: str, embedding: Sequence[float], limit: int
    ) -> List[ChatHistoryRow]:
        sql = (
            "SELECT id, room_id, body, conversation_id, embedding FROM chat_messages "
            "WHERE org_id = ? AND type <> 'context_injection' AND embedding IS NOT NULL "
            "ORDER BY created_at DESC, id DESC"
        )
        with self._conn() as conn:
            nearest = _nearest(conn, sql, [org_id], embedding, _clamp_limit(limit, 5))
        if not nearest:
            return self.search_chat_history(org_id, query, limit)
        return [ChatHistoryRow(r["id"], r["room_id"], r["body"], _opt(r["conversation_id"])) for _, r in nearest]

    def search_project_docs_by_embedding(
        self, org_id: str, project_id: str, query: str, embedding: Sequence[float], limit: int
    ) -> List[ProjectDocRow]:
        sql = (
            "SELECT id, project_id, title, summary, file_path, local_repo_path, embedding "
            "FROM project_docs WHERE org_id = ? AND project_id = ? AND embedding IS NOT NULL "
            "ORDER BY updated_at DESC, id DESC"
        )
        with self._conn() as conn:
            nearest = _nearest(conn, sql, [org_id, project_id], embedding, _clamp_limit(limit, 5))
        return [
            ProjectDocRow(
                doc_id=r["id"], project_id=r["project_id"], title=r["title"], summary=r["summary"],
                file_path=r["file_path"], local_repo_path=r["local_repo_path"],
            )
            for _, r in nearest
        ]

    def upsert_project_doc(
        self,
        org_id: str,
        project_id: str,
        doc: ProjectDocRow,
        embedding: Optional[Sequence[float]] = None,
    ) -> str:
        doc_id = str(doc.doc_id or "").strip() or new_id()
        with self._conn() as conn:
            conn.execute(
                """INSERT INTO project_docs (
                       id, org_id, project_id, title, summary, file_path, local_repo_path, embedding, updated_at
                   ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (id) DO UPDATE SET
                       title = excluded.title,
                       summary = excluded.summary,
                       file_path = excluded.file_path,
                       local_repo_path = excluded.local_repo_path,
                       embedding = excluded.embedding,
                       updated_at = excluded.updated_at""",
                (
                    doc_id, org_id, project_id, doc.title, doc.summary, doc.file_path,
                    doc.local_repo_path, pack_embedding(embedding) if embedding else None,
                    format_timestamp(utc_now()),
                ),
            )
        return doc_id


class RetrievalQualityStore(_SQLiteStore):
    def record(self, signal: QualitySignal) -> None:
        metadata = {
            "injected_item_ids": signal.injected_item_ids,
            "referenced_item_ids": signal.referenced_item_ids,
            "missed_item_ids": signal.missed_item_ids,
        }
        with self._conn() as conn:
            conn.execute(
                """INSERT INTO retrieval_quality_events (
                       org_id, project_id, room_id, query, tier_used, injected_count,
                       referenced_count, missed_count, no_information, metadata, created_at
                   ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    signal.org_id, _opt(signal.project_id), _opt(signal.room_id), signal.query,
                    signal.tier_used, signal.injected_count, signal.referenced_count,
                    signal.missed_count, 1 if signal.no_information else 0,
                    json.dumps(metadata, sort_keys=True), format_timestamp(utc_now()),
                ),
            )

    def list_events(self, org_id: str) -> List[Dict[str, Any]]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM retrieval_quality_events WHERE org_id = ? ORDER BY id ASC", (org_id,)
            ).fetchall()
        return [dict(r) for r in rows]


class RetrievalStrategyStore(_SQLiteStore):
    def get_active_strategy(self, org_id: str) -> Optional[RetrievalStrategy]:
        with self._conn() as conn:
            row = conn.execute(
                """SELECT * FROM retrieval_strategies WHERE org_id = ? AND active = 1
                   ORDER BY version DESC LIMIT 1""",
                (org_id,),
            ).fetchone()
        if row is None:
            return None
        scopes = json.loads(row["scopes"] or "[]")
        return RetrievalStrategy(
            org_id=row["org_id"],
            version=row["version"],
            scopes=[str(s) for s in scopes] if isinstance(scopes, list) else [],
            topic_expansions=_json_dict(row["topic_expansions"]),
            active=bool(row["active"]),
        )

    def save_strategy(self, strategy: RetrievalStrategy) -> None:
        """Store a strategy version; an active one deactivates the others."""
        with self._conn() as conn:
            if strategy.active:
                conn.execute("UPDATE retrieval_strategies SET active = 0 WHERE org_id = ?", (strategy.org_id,))
            conn.execute(
                """INSERT INTO retrieval_strategies (org_id, version, scopes, topic_expansions, active, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT (org_id, version) DO UPDATE SET
                       scopes = excluded.scopes,
                       topic_expansions = excluded.topic_expansions,
                       active = excluded.active""",
                (
                    strategy.org_id, strategy.version, json.dumps(list(strategy.scopes)),
                    json.dumps(strategy.topic_expansions, sort_keys=True),
                    1 if strategy.active else 0, format_timestamp(utc_now()),
                ),
            )


# ── dedup ──────────────────────────────────────────────────────────────

class DedupSQLiteStore(MemoryStore):
    def list_candidate_memories(self, org_id: str, limit: int) -> List[DedupMemory]:
        """Newest active memories that carry an embedding."""
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT id, status, embedding FROM memories
                   WHERE org_id = ? AND status = 'active' AND embedding IS NOT NULL
                   ORDER BY occurred_at DESC, id DESC LIMIT ?""",
                (org_id, _clamp_limit(limit, MAX_QUERY_LIMIT, maximum=100000)),
            ).fetchall()
        return [DedupMemory(r["id"], r["status"], unpack_embedding(r["embedding"])) for r in rows]

    def list_memories_by_ids(self, org_id: str, memory_ids: Sequence[str]) -> List[DedupReviewMemory]:
        ids = list(memory_ids)
        if not ids:
            return []
        marks = ",".join("?" for _ in ids)
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT id, title, content FROM memories WHERE org_id = ? AND id IN ({marks}) ORDER BY id ASC",
                (org_id, *ids),
            ).fetchall()
        return [DedupReviewMemory(r["id"], r["title"], r["content"]) for r in rows]

    def is_pair_reviewed(self, org_id: str, memory_id_1: str, memory_id_2: str) -> bool:
        a, b = canonical_pair(memory_id_1, memory_id_2)
        with self._conn() as conn:
            row = conn.execute(
                "SELECT 1 FROM dedup_reviewed_pairs WHERE org_id = ? AND memory_id_1 = ? AND memory_id_2 = ?",
                (org_id, a, b),
            ).fetchone()
        return row is not None

    def record_reviewed_pair(self, org_id: str, memory_id_1: str, memory_id_2: str, decision: str) -> None:
        a, b = canonical_pair(memory_id_1, memory_id_2)
        with self._conn() as conn:
            conn.execute(
                """INSERT INTO dedup_reviewed_pairs (org_id, memory_id_1, memory_id_2, decision, reviewed_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT (org_id, memory_id_1, memory_id_2) DO UPDATE SET
                       decision = excluded.decision,
                       reviewed_at = excluded.reviewed_at""",
                (org_id, a, b, decision, format_timestamp(utc_now())),
            )

    def deprecate_memories(self, org_id: str, memory_ids: Sequence[str], superseded_by: Optional[str]) -> None:
        ids = [i for i in memory_ids if str(i or "").strip()]
        if not ids:
            return
        marks = ",".join("?" for _ in ids)
        with self._conn() as conn:
            conn.execute(
                f"""UPDATE memories SET status = 'deprecated', superseded_by = ?, updated_at = ?
                    WHERE org_id = ? AND id IN ({marks}) AND status = 'active'""",
                (_opt(superseded_by), format_timestamp(utc_now()), org_id, *ids),
            )

    def create_merged_memory(self, org_id: str, title: str, content: str, source_memory_ids: Sequence[str]) -> str:
        ids = list(source_memory_ids)
        marks = ",".join("?" for _ in ids) or "NULL"
        with self._conn() as conn:
            sources = conn.execute(
                f"""SELECT id, kind, importance, confidence, source_project_id, occurred_at
                    FROM memories WHERE org_id = ? AND id IN ({marks})
                    ORDER BY occurred_at DESC, id ASC""",
                (org_id, *ids),
            ).fetchall()
            # A source with identical content would collide with the merged row.
            digest = content_hash(title.strip(), content.strip())
            conn.execute(
                f"""UPDATE memories SET status = 'deprecated', updated_at = ?
                    WHERE org_id = ? AND content_hash = ? AND status = 'active' AND id IN ({marks})""",
                (format_timestamp(utc_now()), org_id, digest, *ids),
            )
            kinds = Counter(r["kind"] for r in sources)
            memory_id, _ = self._insert_memory(conn, NewMemory(
                org_id=org_id,
                kind=kinds.most_common(1)[0][0] if kinds else "fact",
                title=title,
                content=content,
                metadata={"source_type": "dedup_merge", "merged_from": ids},
                importance=max((r["importance"] for r in sources), default=3),
                confidence=max((r["confidence"] for r in sources), default=0.7),
                occurred_at=parse_timestamp(sources[0]["occurred_at"]) if sources else None,
                source_project_id=next((r["source_project_id"] for r in sources if r["source_project_id"]), None),
            ))
            conn.execute(
                f"""UPDATE memories SET superseded_by = ?
                    WHERE org_id = ? AND content_hash = ? AND status = 'deprecated'
                      AND superseded_by IS NULL AND id IN ({marks})""",
                (memory_id, org_id, digest, *ids),
            )
        return memory_id


# ── taxonomy ───────────────────────────────────────────────────────────

class TaxonomySQLiteStore(_SQLiteStore):
    def upsert_node(self, org_id: str, slug: str, parent_id: Optional[str] = None, display_name: str = "") -> str:
        """Create (or find) a node under ``parent_id`` and return its id."""
        slug = slug.strip().lower()
        with self._conn() as conn:
            row = conn.execute(
                "SELECT id FROM taxonomy_nodes WHERE org_id = ? AND slug = ? AND parent_id IS ?",
                (org_id, slug, parent_id),
            ).fetchone()
            if row is not None:
                return row["id"]
            depth = 0
            if parent_id:
                parent = conn.execute(
                    "SELECT depth FROM taxonomy_nodes WHERE org_id = ? AND id = ?", (org_id, parent_id)
                ).fetchone()
                if parent is None:
                    raise ValueError(f"parent taxonomy node not found: {parent_id}")
                depth = parent["depth"] + 1
            node_id = new_id()
            conn.execute(
                """INSERT INTO taxonomy_nodes (id, org_id, parent_id, slug, display_name, depth, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (node_id, org_id, parent_id, slug, display_name or slug, depth, format_timestamp(utc_now())),
            )
        return node_id

    def list_all_nodes(self, org_id: str) -> List[TaxonomyNode]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT id, org_id, slug, parent_id, depth FROM taxonomy_nodes WHERE org_id = ? ORDER BY depth, slug",
                (org_id,),
            ).fetchall()
        return [TaxonomyNode(r["id"], r["org_id"], r["slug"], r["parent_id"], r["depth"]) for r in rows]

    def list_pending_memories_for_classification(self, org_id: str, limit: int) -> List[PendingClassification]:
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT id, title, content FROM memories
                   WHERE org_id = ? AND status = 'active' AND taxonomy_classified_at IS NULL
                   ORDER BY created_at ASC, id ASC LIMIT ?""",
                (org_id, _clamp_limit(limit, 100)),
            ).fetchall()
        return [PendingClassification(r["id"], r["title"], r["content"]) for r in rows]

    def upsert_memory_classification(self, classification: MemoryClassification) -> None:
        with self._conn() as conn:
            conn.execute(
                """INSERT INTO memory_taxonomy (org_id, memory_id, node_id, confidence, classified_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT (memory_id, node_id) DO UPDATE SET
                       confidence = excluded.confidence,
                       classified_at = excluded.classified_at""",
                (
                    classification.org_id, classification.memory_id, classification.node_id,
                    clamp_unit(classification.confidence),
                    format_timestamp(classification.classified_at or utc_now()),
                ),
            )

    def mark_memory_taxonomy_classified(
        self, org_id: str, memory_id: str, classified_at: datetime, classifier_model: str, classifier_trace_id: str
    ) -> None:
        with self._conn() as conn:
            conn.execute(
                """UPDATE memories SET taxonomy_classified_at = ?, taxonomy_classifier_model = ?,
                       taxonomy_classifier_trace_id = ?, updated_at = ?
                   WHERE org_id = ? AND id = ?""",
                (
                    format_timestamp(classified_at), classifier_model, classifier_trace_id,
                    format_timestamp(utc_now()), org_id, memory_id,
                ),
            )

    def list_memory_classifications(self, org_id: str, memory_id: str) -> List[MemoryClassification]:
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT org_id, memory_id, node_id, confidence, classified_at FROM memory_taxonomy
                   WHERE org_id = ? AND memory_id = ? ORDER BY confidence DESC, node_id ASC""",
                (org_id, memory_id),
            ).fetchall()
        return [
            MemoryClassification(r["org_id"], r["memory_id"], r["node_id"], r["confidence"],
                                 parse_timestamp(r["classified_at"]))
            for r in rows
        ]


# ── entity synthesis ───────────────────────────────────────────────────

class SynthesisSQLiteStore(MemoryStore):
    def list_candidates(self, org_id: str, min_mentions: int, limit: int) -> List[EntityCandidate]:
        """Capitalized entities mentioned by at least ``min_mentions`` memories.

        An entity with a synthesis memory is listed again once its mention
        count has grown 20% past the synthesized source count.
        """
        min_mentions = min_mentions if min_mentions > 0 else 5
        limit = _clamp_limit(limit, 100)
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT id, title, content, metadata, occurred_at FROM memories
                   WHERE org_id = ? AND status = 'active'""",
                (org_id,),
            ).fetchall()

        mentions: Dict[str, set] = {}
        names: Dict[str, str] = {}
        latest: Dict[str, Tuple[str, str, int]] = {}
        for row in rows:
            metadata = _json_dict(row["metadata"])
            if metadata.get("source_type") == "synthesis":
                key = str(metadata.get("entity_key") or "").strip().lower()
                if not key:
                    continue
                try:
                    count = int(metadata.get("source_memory_count") or 0)
                except (TypeError, ValueError):
                    count = 0
                marker = (row["occurred_at"] or "", row["id"])
                if key not in latest or marker > latest[key][:2]:
                    latest[key] = (marker[0], marker[1], count)
                continue
            for name in _ENTITY_PATTERN.findall(f"{row['title']}\n{row['content']}"):
                key = name.lower()
                mentions.setdefault(key, set()).add(row["id"])
                if key not in names or name < names[key]:
                    names[key] = name

        candidates = []
        for key, memory_ids in mentions.items():
            count = len(memory_ids)
            if count < min_mentions:
                continue
            existing = latest.get(key)
            if existing is None:
                candidates.append(EntityCandidate(key, names[key], count))
                continue
            source_count = existing[2]
            needs = source_count <= 0 or (count - source_count) / source_count >= SYNTHESIS_GROWTH_THRESHOLD
            if not needs:
                continue
            candidates.append(EntityCandidate(
                entity_key=key,
                entity_name=names[key],
                mention_count=count,
                existing_synthesis_memory_id=existing[1],
                existing_source_count=source_count,
                needs_resynthesis=True,
            ))
        candidates.sort(key=lambda c: (-c.mention_count, c.entity_key))
        return candidates[:limit]

    def list_source_memories(self, org_id: str, entity_key: str, limit: int) -> List[SynthesisSourceMemory]:
        entity_key = str(entity_key or "").strip()
        if not entity_key:
            return []
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT id, kind, title, content, source_project_id, occurred_at FROM memories
                   WHERE org_id = ? AND status = 'active'
                     AND COALESCE(json_extract(metadata, '$.source_type'), '') <> 'synthesis'
                     AND LOWER(title || ' ' || content) LIKE ? ESCAPE '\\'
                   ORDER BY occurred_at ASC, id ASC LIMIT ?""",
                (org_id, f"%{_escape_like(entity_key.lower())}%", _clamp_limit(limit, 500)),
            ).fetchall()
        return [
            SynthesisSourceMemory(
                memory_id=r["id"], kind=r["kind"], title=r["title"], content=r["content"],
                source_project_id=_opt(r["source_project_id"]), occurred_at=parse_timestamp(r["occurred_at"]),
            )
            for r in rows
        ]

    def update_synthesis_memory(self, update: SynthesisUpdate) -> None:
        title = str(update.title or "").strip()
        content = str(update.content or "").strip()
        if not title or not content:
            raise ValueError("title and content are required")
        with self._conn() as conn:
            cur = conn.execute(
                """UPDATE memories SET title = ?, content = ?, metadata = ?, importance = ?, confidence = ?,
                       occurred_at = ?, source_project_id = ?, content_hash = ?, embedding = NULL,
                       taxonomy_classified_at = NULL, updated_at = ?
                   WHERE org_id = ? AND id = ?""",
                (
                    title, content, json.dumps(update.metadata or {}, sort_keys=True),
                    _clamp_importance(update.importance), clamp_unit(update.confidence),
                    format_timestamp(update.occurred_at or utc_now()), _opt(update.source_project_id),
                    content_hash(title, content), format_timestamp(utc_now()), update.org_id, update.memory_id,
                ),
            )
            if cur.rowcount == 0:
                raise LookupError(f"synthesis memory not found: {update.memory_id}")
            self._upsert_entity(conn, update.org_id, update.metadata or {}, update.memory_id)

    def create_memory(self, memory: NewMemory) -> str:
        memory_id = super().create_memory(memory)
        if (memory.metadata or {}).get("source_type") == "synthesis":
            with self._conn() as conn:
                self._upsert_entity(conn, memory.org_id, memory.metadata, memory_id)
        return memory_id

    def _upsert_entity(self, conn, org_id: str, metadata: Dict[str, Any], memory_id: str) -> None:
        key = str(metadata.get("entity_key") or "").strip().lower()
        if not key:
            return
        conn.execute(
            """INSERT INTO entities (org_id, entity_key, entity_name, synthesis_memory_id, source_memory_count, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT (org_id, entity_key) DO UPDATE SET
                   entity_name = excluded.entity_name,
                   synthesis_memory_id = excluded.synthesis_memory_id,
                   source_memory_count = excluded.source_memory_count,
                   updated_at = excluded.updated_at""",
            (
                org_id, key, str(metadata.get("entity_name") or key), memory_id,
                int(metadata.get("source_memory_count") or 0), format_timestamp(utc_now()),
            ),
        )


# ── ingestion ──────────────────────────────────────────────────────────

class IngestionSQLiteStore(MemoryStore):
    def list_rooms_for_ingestion(self, limit: int, org_id: Optional[str] = None) -> List[RoomIngestionCandidate]:
        sql = "SELECT org_id, room_id FROM chat_messages"
        params: List[Any] = []
        if org_id:
            sql += " WHERE org_id = ?"
            params.append(org_id)
        sql += " GROUP BY org_id, room_id ORDER BY MAX(created_at) ASC, room_id ASC LIMIT ?"
        params.append(_clamp_limit(limit, 200))
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [RoomIngestionCandidate(r["org_id"], r["room_id"]) for r in rows]

    def get_room_cursor(self, org_id: str, room_id: str) -> Optional[RoomCursor]:
        with self._conn() as conn:
            row = conn.execute(
                """SELECT org_id, source_id, last_message_id, last_message_created_at
                   FROM ingestion_cursors WHERE org_id = ? AND source_type = 'room' AND source_id = ?""",
                (org_id, room_id),
            ).fetchone()
        if row is None:
            return None
        return RoomCursor(
            org_id=row["org_id"],
            room_id=row["source_id"],
            last_message_id=row["last_message_id"] or "",
            last_message_created_at=parse_timestamp(row["last_message_created_at"]),
        )

    def list_room_messages_since(
        self,
        org_id: str,
        room_id: str,
        after_created_at: Optional[datetime],
        after_message_id: Optional[str],
        limit: int,
    ) -> List[ChatMessage]:
        sql = "SELECT * FROM chat_messages WHERE org_id = ? AND room_id = ? AND type <> 'context_injection'"
        params: List[Any] = [org_id, room_id]
        after_id = str(after_message_id or "").strip()
        if after_created_at is not None and after_id:
            sql += " AND (created_at, id) > (?, ?)"
            params.extend([format_timestamp(after_created_at), after_id])
        elif after_created_at is not None:
            sql += " AND created_at > ?"
            params.append(format_timestamp(after_created_at))
        sql += " ORDER BY created_at ASC, id ASC LIMIT ?"
        params.append(_clamp_limit(limit, 200))
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_chat_message(r) for r in rows]

    def create_window_run(self, run: WindowRun) -> None:
        with self._conn() as conn:
            conn.execute(
                """INSERT INTO ingestion_window_runs (
                       org_id, room_id, window_start_at, window_end_at, first_message_id, last_message_id,
                       message_count, token_count, llm_used, llm_model, llm_trace_id, llm_attempts, ok, error,
                       duration_ms, inserted_total, inserted_memories, inserted_projects, inserted_issues,
                       created_at
                   ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    run.org_id, run.room_id, format_timestamp(run.window_start_at),
                    format_timestamp(run.window_end_at), run.first_message_id, run.last_message_id,
                    run.message_count, run.token_count, 1 if run.llm_used else 0, run.llm_model,
                    run.llm_trace_id, run.llm_attempts, 1 if run.ok else 0, run.error, run.duration_ms,
                    run.inserted_total, run.inserted_memories, run.inserted_projects, run.inserted_issues,
                    format_timestamp(utc_now()),
                ),
            )

    def list_window_runs(self, org_id: str, room_id: str) -> List[Dict[str, Any]]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM ingestion_window_runs WHERE org_id = ? AND room_id = ? ORDER BY id ASC",
                (org_id, room_id),
            ).fetchall()
        return [dict(r) for r in rows]

    def upsert_room_cursor(self, cursor: RoomCursor) -> None:
        if cursor.last_message_created_at is None:
            raise ValueError("last_message_created_at is required")
        with self._conn() as conn:
            conn.execute(
                """INSERT INTO ingestion_cursors (
                       org_id, source_type, source_id, last_message_id, last_message_created_at, updated_at
                   ) VALUES (?, 'room', ?, ?, ?, ?)
                   ON CONFLICT (org_id, source_type, source_id) DO UPDATE SET
                       last_message_id = excluded.last_message_id,
                       last_message_created_at = excluded.last_message_created_at,
                       updated_at = excluded.updated_at""",
                (
                    cursor.org_id, cursor.room_id, _opt(cursor.last_message_id),
                    format_timestamp(cursor.last_message_created_at), format_timestamp(utc_now()),
                ),
            )


# ── context injection ──────────────────────────────────────────────────

class ContextInjectionSQLiteStore(_SQLiteStore):
    def list_pending_messages_since(
        self,
        after_created_at: Optional[datetime],
        after_message_id: Optional[str],
        limit: int,
    ) -> List[PendingInjectionMessage]:
        sql = (
            "SELECT id, org_id, room_id, sender_id, sender_type, body, type, conversation_id, created_at, "
            "embedding IS NOT NULL AS has_embedding FROM chat_messages "
            "WHERE type NOT IN ('system', 'context_injection')"
        )
        params: List[Any] = []
        after_id = str(after_message_id or "").strip()
        if after_created_at is not None and after_id:
            sql += " AND (created_at, id) > (?, ?)"
            params.extend([format_timestamp(after_created_at), after_id])
        sql += " ORDER BY created_at ASC, id ASC LIMIT ?"
        params.append(_clamp_limit(limit, 50, maximum=1000))
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            PendingInjectionMessage(
                message_id=r["id"], org_id=r["org_id"], room_id=r["room_id"], body=r["body"],
                created_at=parse_timestamp(r["created_at"]), sender_id=r["sender_id"],
                sender_type=r["sender_type"], message_type=r["type"],
                conversation_id=_opt(r["conversation_id"]), has_embedding=bool(r["has_embedding"]),
            )
            for r in rows
        ]

    def update_message_embedding(self, message_id: str, embedding: Sequence[float]) -> None:
        with self._conn() as conn:
            conn.execute(
                "UPDATE chat_messages SET embedding = ? WHERE id = ?", (pack_embedding(embedding), message_id)
            )

    def search_memory_candidates_by_embedding(
        self, org_id: str, embedding: Sequence[float], limit: int
    ) -> List[InjectionMemoryCandidate]:
        sql = (
            "SELECT id, title, content, importance, confidence, occurred_at, superseded_by, embedding "
            "FROM memories WHERE org_id = ? AND status = 'active' AND embedding IS NOT NULL "
            "ORDER BY occurred_at DESC, id DESC"
        )
        with self._conn() as conn:
            nearest = _nearest(conn, sql, [org_id], embedding, _clamp_limit(limit, 5, MAX_INJECTION_CANDIDATES))
        return [
            InjectionMemoryCandidate(
                memory_id=r["id"], title=r["title"], content=r["content"], similarity=sim,
                importance=r["importance"], confidence=r["confidence"],
                occurred_at=parse_timestamp(r["occurred_at"]), superseded_by=_opt(r["superseded_by"]),
            )
            for sim, r in nearest
        ]

    def was_injected_since_compaction(self, org_id: str, room_id: str, memory_id: str) -> bool:
        with self._conn() as conn:
            row = conn.execute(
                """SELECT 1 FROM context_injections ci
                   LEFT JOIN rooms r ON r.id = ci.room_id AND r.org_id = ci.org_id
                   WHERE ci.org_id = ? AND ci.room_id = ? AND ci.memory_id = ?
                     AND ci.injected_at > COALESCE(r.last_compacted_at, '')
                   LIMIT 1""",
                (org_id, room_id, memory_id),
            ).fetchone()
        return row is not None

    def record_injection(self, org_id: str, room_id: str, memory_id: str, injected_at: datetime) -> None:
        with self._conn() as conn:
            conn.execute(
                "INSERT INTO context_injections (org_id, room_id, memory_id, injected_at) VALUES (?, ?, ?, ?)",
                (org_id, room_id, memory_id, format_timestamp(injected_at)),
            )

    def create_injection_message(self, message: InjectionMessage) -> str:
        message_id = new_id()
        with self._conn() as conn:
            conn.execute(
                """INSERT INTO chat_messages (id, org_id, room_id, sender_id, sender_type, type, body,
                                              conversation_id, created_at)
                   VALUES (?, ?, ?, ?, 'agent', ?, ?, ?, ?)""",
                (
                    message_id, message.org_id, message.room_id, message.sender_id, message.message_type,
                    message.body, _opt(message.conversation_id),
                    format_timestamp(message.created_at or utc_now()),
                ),
            )
        return message_id

    def count_messages_since_last_context_injection(self, org_id: str, room_id: str) -> int:
        """Messages after the room's last injection; a very large count when none exists."""
        with self._conn() as conn:
            last = conn.execute(
                """SELECT created_at, id FROM chat_messages
                   WHERE org_id = ? AND room_id = ? AND type = 'context_injection'
                   ORDER BY created_at DESC, id DESC LIMIT 1""",
                (org_id, room_id),
            ).fetchone()
            if last is None:
                return NO_PRIOR_INJECTION_COUNT
            row = conn.execute(
                """SELECT COUNT(*) AS n FROM chat_messages
                   WHERE org_id = ? AND room_id = ? AND (created_at, id) > (?, ?)""",
                (org_id, room_id, last["created_at"], last["id"]),
            ).fetchone()
        return int(row["n"])
