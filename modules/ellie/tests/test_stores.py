"""Tests for datastore/memorydb: schema bootstrap and SQLite store behavior."""

import os
import sys
from datetime import datetime, timezone

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from core.contracts.records import ChatMessage, NewMemory, RoomCursor
from datastore.memorydb.schema import init_schema
from datastore.memorydb.stores import (
    NO_PRIOR_INJECTION_COUNT,
    ContextInjectionSQLiteStore,
    DedupSQLiteStore,
    IngestionSQLiteStore,
    MemoryStore,
    RoomStore,
    TaxonomySQLiteStore,
    content_hash,
    query_tokens,
)
from lib.database import get_connection

ORG = "org-1"
T0 = datetime(2026, 4, 1, 8, 0, tzinfo=timezone.utc)


class TestSchema:
    def test_init_is_idempotent(self, ellie_home):
        path = ellie_home / "data" / "ellie.db"
        assert init_schema(path) == path
        init_schema(path)
        with get_connection(path) as conn:
            tables = {r["name"] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
        for table in (
            "memories", "chat_messages", "rooms", "ingestion_cursors", "ingestion_window_runs",
            "dedup_reviewed_pairs", "taxonomy_nodes", "memory_taxonomy", "context_injections",
            "retrieval_quality_events", "retrieval_strategies", "project_docs",
        ):
            assert table in tables

    def test_default_path_comes_from_environment(self, ellie_home):
        assert init_schema() == ellie_home / "data" / "ellie.db"


class TestHelpers:
    def test_content_hash_ignores_case_and_spacing(self):
        assert content_hash("Title", "Some   body") == content_hash("title", "some body")
        assert content_hash("Title", "a") != content_hash("Title", "b")

    def test_query_tokens(self):
        assert query_tokens("What did we decide about the Postgres migration?") == [
            "decide", "postgres", "migration",
        ]
        assert query_tokens("ok go") == ["ok go"]
        assert query_tokens("  ") == []
        assert len(query_tokens(" ".join(f"word{i}" for i in range(20)))) == 8


class TestMemoryStore:
    def test_duplicate_active_content_returns_existing(self, db_path):
        store = MemoryStore(db_path)
        first = store.create_memory(NewMemory(ORG, "fact", "Title", "Body"))
        again = store.create_memory(NewMemory(ORG, "fact", "title", "  body "))
        assert first == again
        assert not store.insert_extracted_memory(NewMemory(ORG, "fact", "Title", "Body"))

    def test_deprecated_content_can_be_recreated(self, db_path):
        store = DedupSQLiteStore(db_path)
        first = store.create_memory(NewMemory(ORG, "fact", "Title", "Body"))
        store.deprecate_memories(ORG, [first], None)
        second = store.create_memory(NewMemory(ORG, "fact", "Title", "Body"))
        assert second != first

    def test_same_content_in_other_org(self, db_path):
        store = MemoryStore(db_path)
        a = store.create_memory(NewMemory(ORG, "fact", "Title", "Body"))
        b = store.create_memory(NewMemory("org-2", "fact", "Title", "Body"))
        assert a != b

    def test_importance_and_confidence_clamped(self, db_path):
        store = MemoryStore(db_path)
        memory_id = store.create_memory(NewMemory(ORG, "fact", "T", "C", importance=9, confidence=4.0))
        row = store.get_memory(memory_id)
        assert row["importance"] == 5
        assert row["confidence"] == 1.0

    def test_required_fields(self, db_path):
        with pytest.raises(ValueError):
            MemoryStore(db_path).create_memory(NewMemory(ORG, "fact", "", "Body"))
        with pytest.raises(ValueError):
            MemoryStore(db_path).create_memory(NewMemory("", "fact", "T", "Body"))

    def test_embedding_roundtrip(self, db_path):
        store = MemoryStore(db_path)
        memory_id = store.create_memory(NewMemory(ORG, "fact", "T", "C"))
        assert store.get_memory(memory_id)["embedding"] == []
        store.update_memory_embedding(memory_id, [0.5, -0.25, 1.0])
        assert store.get_memory(memory_id)["embedding"] == pytest.approx([0.5, -0.25, 1.0])

    def test_reviewed_pairs_are_unordered(self, db_path):
        store = DedupSQLiteStore(db_path)
        store.record_reviewed_pair(ORG, "b", "a", "keep_both")
        assert store.is_pair_reviewed(ORG, "a", "b")
        assert not store.is_pair_reviewed("org-2", "a", "b")


class TestIngestionStore:
    def _add(self, db_path, message_id, created_at, message_type="message"):
        RoomStore(db_path).add_message(ChatMessage(
            id=message_id, org_id=ORG, room_id="r", body=message_id, created_at=created_at,
            message_type=message_type,
        ))

    def test_cursor_breaks_timestamp_ties_by_id(self, db_path):
        for message_id in ("b", "a", "c"):
            self._add(db_path, message_id, T0)
        store = IngestionSQLiteStore(db_path)
        assert [m.id for m in store.list_room_messages_since(ORG, "r", None, None, 10)] == ["a", "b", "c"]
        assert [m.id for m in store.list_room_messages_since(ORG, "r", T0, "a", 10)] == ["b", "c"]

    def test_cursor_upsert(self, db_path):
        store = IngestionSQLiteStore(db_path)
        assert store.get_room_cursor(ORG, "r") is None
        store.upsert_room_cursor(RoomCursor(ORG, "r", "a", T0))
        store.upsert_room_cursor(RoomCursor(ORG, "r", "b", T0))
        cursor = store.get_room_cursor(ORG, "r")
        assert cursor.last_message_id == "b"
        assert cursor.last_message_created_at == T0

    def test_rooms_filtered_by_org(self, db_path):
        self._add(db_path, "a", T0)
        store = IngestionSQLiteStore(db_path)
        assert [r.room_id for r in store.list_rooms_for_ingestion(10)] == ["r"]
        assert store.list_rooms_for_ingestion(10, org_id="org-2") == []


class TestInjectionStore:
    def test_no_prior_injection_count(self, db_path):
        queue = ContextInjectionSQLiteStore(db_path)
        assert queue.count_messages_since_last_context_injection(ORG, "r") == NO_PRIOR_INJECTION_COUNT

    def test_system_messages_not_pending(self, db_path):
        rooms = RoomStore(db_path)
        rooms.add_message(ChatMessage("s1", ORG, "r", "boot", T0, message_type="system"))
        rooms.add_message(ChatMessage("u1", ORG, "r", "hello", T0))
        pending = ContextInjectionSQLiteStore(db_path).list_pending_messages_since(None, None, 10)
        assert [m.message_id for m in pending] == ["u1"]


class TestTaxonomyStore:
    def test_upsert_node_is_idempotent_and_tracks_depth(self, db_path):
        store = TaxonomySQLiteStore(db_path)
        root = store.upsert_node(ORG, "Engineering")
        assert store.upsert_node(ORG, "engineering") == root
        child = store.upsert_node(ORG, "backend", parent_id=root)
        depths = {n.id: n.depth for n in store.list_all_nodes(ORG)}
        assert depths == {root: 0, child: 1}

    def test_missing_parent(self, db_path):
        with pytest.raises(ValueError, match="parent taxonomy node not found"):
            TaxonomySQLiteStore(db_path).upsert_node(ORG, "x", parent_id="ghost")
