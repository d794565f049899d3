"""Tests for core/retrieval: cascade tiers, quality signals, plans, JSONL scan."""

import json
import os
import sys
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from core.contracts.records import ChatMessage, NewMemory, ProjectDocRow, RetrievalStrategy
from core.retrieval.cascade import (
    RetrievalCascadeService,
    RetrievalRequest,
    load_project_doc_content,
)
from core.retrieval.jsonl_scanner import FileJSONLScanner
from core.retrieval.planner import RetrievalPlanner, RetrievalPlanStep, build_retrieval_plan
from datastore.memorydb.stores import (
    MemoryStore,
    RetrievalQualityStore,
    RetrievalSQLiteStore,
    RetrievalStrategyStore,
    RoomStore,
)
from lib.errors import ConfigurationError, RetrievalError
from lib.providers import MockEmbeddingsProvider

ORG = "org-1"
T0 = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)


def _message(db_path, message_id, room_id, body, minutes=0, embedding=None, message_type="message"):
    RoomStore(db_path).add_message(ChatMessage(
        id=message_id, org_id=ORG, room_id=room_id, body=body,
        created_at=T0 + timedelta(minutes=minutes), message_type=message_type,
    ), embedding)


def _memory(db_path, title, content, project_id=None, embedding=None):
    store = MemoryStore(db_path)
    memory_id = store.create_memory(NewMemory(
        org_id=ORG, kind="fact", title=title, content=content, source_project_id=project_id,
    ))
    if embedding is not None:
        store.update_memory_embedding(memory_id, embedding)
    return memory_id


class _FailingEmbedder:
    def embed(self, texts):
        raise RuntimeError("embedding service down")


@pytest.fixture
def store(db_path):
    return RetrievalSQLiteStore(db_path)


# ---------------------------------------------------------------------------
# Cascade
# ---------------------------------------------------------------------------

class TestCascadeTiers:
    def test_room_context_is_tier_one(self, store, db_path):
        _message(db_path, "msg-1", "room-a", "The Postgres migration runs Friday")
        _memory(db_path, "Postgres", "We run Postgres 16")
        response = RetrievalCascadeService(store).retrieve(
            RetrievalRequest(org_id=ORG, query="postgres migration", room_id="room-a")
        )
        assert response.tier_used == 1
        assert not response.no_information
        assert [(i.source, i.id, i.room_id) for i in response.items] == [("room", "msg-1", "room-a")]

    def test_memories_are_tier_two_and_deduplicated(self, store, db_path):
        memory_id = _memory(db_path, "Postgres", "We run Postgres 16", project_id="proj-1")
        response = RetrievalCascadeService(store).retrieve(
            RetrievalRequest(org_id=ORG, query="postgres", room_id="room-empty", project_id="proj-1")
        )
        assert response.tier_used == 2
        assert [i.memory_id for i in response.items] == [memory_id]
        assert response.items[0].snippet == "Postgres: We run Postgres 16"
        assert response.items[0].project_id == "proj-1"

    def test_lexical_ranking_prefers_more_hits(self, store, db_path):
        one = _memory(db_path, "Cache", "Redis is the cache")
        both = _memory(db_path, "Cache eviction", "Redis eviction uses LRU")
        response = RetrievalCascadeService(store).retrieve(RetrievalRequest(org_id=ORG, query="redis eviction"))
        assert [i.memory_id for i in response.items] == [both, one]

    def test_chat_history_is_tier_three(self, store, db_path):
        _message(db_path, "msg-9", "room-b", "Grafana dashboards live in the ops folder")
        _message(db_path, "ctx-1", "room-b", "Grafana injected context", message_type="context_injection")
        response = RetrievalCascadeService(store).retrieve(RetrievalRequest(org_id=ORG, query="grafana"))
        assert response.tier_used == 3
        assert [i.id for i in response.items] == ["msg-9"]

    def test_jsonl_is_tier_four(self, store, tmp_path):
        logs = tmp_path / "logs"
        (logs / ORG).mkdir(parents=True)
        (logs / ORG / "session.jsonl").write_text(
            json.dumps({"content": "Kafka topics are per tenant"}) + "\n", encoding="utf-8"
        )
        service = RetrievalCascadeService(store, jsonl_scanner=FileJSONLScanner(logs))
        response = service.retrieve(RetrievalRequest(org_id=ORG, query="kafka"))
        assert response.tier_used == 4
        assert response.items[0].source == "jsonl"
        assert response.items[0].snippet == "Kafka topics are per tenant"

    def test_nothing_found_is_tier_five(self, store):
        response = RetrievalCascadeService(store).retrieve(RetrievalRequest(org_id=ORG, query="nonexistent"))
        assert response.tier_used == 5
        assert response.no_information
        assert response.items == []

    def test_empty_query_answers_no_information(self, store):
        response = RetrievalCascadeService(store).retrieve(RetrievalRequest(org_id=ORG, query="  "))
        assert response.no_information

    def test_org_required(self, store):
        with pytest.raises(ConfigurationError):
            RetrievalCascadeService(store).retrieve(RetrievalRequest(org_id="", query="x"))

    def test_store_error_is_retrieval_error(self):
        class Broken:
            def search_memories_org_wide(self, *args):
                raise OSError("disk")

        with pytest.raises(RetrievalError, match="tier 2 org memory lookup failed"):
            RetrievalCascadeService(Broken()).retrieve(RetrievalRequest(org_id=ORG, query="x"))


class TestSemanticRetrieval:
    def test_embedding_search_finds_memory(self, store, db_path):
        embedder = MockEmbeddingsProvider()
        memory_id = _memory(
            db_path, "Release train", "Ships every second Tuesday",
            embedding=embedder.embed(["when does the release train ship"])[0],
        )
        _memory(db_path, "Unembedded", "when does the release train ship")
        service = RetrievalCascadeService(store, query_embedder=embedder)
        response = service.retrieve(RetrievalRequest(org_id=ORG, query="when does the release train ship"))
        assert response.tier_used == 2
        assert [i.memory_id for i in response.items] == [memory_id]

    def test_embedder_failure_falls_back_to_lexical(self, store, db_path):
        memory_id = _memory(db_path, "Release train", "Ships every second Tuesday")
        service = RetrievalCascadeService(store, query_embedder=_FailingEmbedder())
        response = service.retrieve(RetrievalRequest(org_id=ORG, query="release train"))
        assert [i.memory_id for i in response.items] == [memory_id]

    def test_project_docs_lead_tier_one(self, store, db_path, tmp_path):
        repo = tmp_path / "repo"
        (repo / "docs").mkdir(parents=True)
        (repo / "docs" / "deploy.md").write_text("Deploy with make release\n", encoding="utf-8")
        embedder = MockEmbeddingsProvider()
        store.upsert_project_doc(
            ORG, "proj-1",
            ProjectDocRow("doc-1", "proj-1", title="Deploy", file_path="docs/deploy.md", local_repo_path=str(repo)),
            embedding=embedder.embed(["deploy"])[0],
        )
        service = RetrievalCascadeService(store, query_embedder=embedder)
        response = service.retrieve(RetrievalRequest(org_id=ORG, query="deploy", project_id="proj-1"))
        assert response.tier_used == 1
        assert response.items[0].source == "project_doc"
        assert response.items[0].snippet == "Deploy with make release"


class TestProjectDocContent:
    def test_reads_inside_repo(self, tmp_path):
        (tmp_path / "a.md").write_text(" hello \n", encoding="utf-8")
        assert load_project_doc_content(str(tmp_path), "a.md") == "hello"

    def test_refuses_escape(self, tmp_path):
        (tmp_path / "secret.txt").write_text("nope", encoding="utf-8")
        repo = tmp_path / "repo"
        repo.mkdir()
        assert load_project_doc_content(str(repo), "../secret.txt") == ""

    def test_missing_file(self, tmp_path):
        assert load_project_doc_content(str(tmp_path), "missing.md") == ""
        assert load_project_doc_content("", "a.md") == ""


class TestQualitySignals:
    def test_signal_recorded_with_counts(self, store, db_path):
        memory_id = _memory(db_path, "Postgres", "We run Postgres 16")
        sink = RetrievalQualityStore(db_path)
        RetrievalCascadeService(store, quality_sink=sink).retrieve(RetrievalRequest(
            org_id=ORG, query="postgres",
            referenced_item_ids=[memory_id, "not-injected", memory_id],
            missed_item_ids=["gap-1"],
        ))
        events = sink.list_events(ORG)
        assert len(events) == 1
        event = events[0]
        assert event["tier_used"] == 2
        assert event["injected_count"] == 1
        assert event["referenced_count"] == 1
        assert event["missed_count"] == 1
        assert event["no_information"] == 0
        metadata = json.loads(event["metadata"])
        assert metadata["referenced_item_ids"] == [memory_id, "not-injected"]

    def test_no_information_also_recorded(self, store, db_path):
        sink = RetrievalQualityStore(db_path)
        RetrievalCascadeService(store, quality_sink=sink).retrieve(RetrievalRequest(org_id=ORG, query="zzz"))
        assert sink.list_events(ORG)[0]["no_information"] == 1

    def test_sink_failure_does_not_fail_retrieval(self, store):
        class BrokenSink:
            def record(self, signal):
                raise OSError("full")

        response = RetrievalCascadeService(store, quality_sink=BrokenSink()).retrieve(
            RetrievalRequest(org_id=ORG, query="zzz")
        )
        assert response.no_information


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------

class TestRetrievalPlan:
    def test_default_scopes_without_room_or_project(self):
        plan = build_retrieval_plan(None, "what is our cache")
        assert [s.scope for s in plan] == ["org", "chat_history", "jsonl"]
        assert plan[0].reason == "strategy v0 scope org"

    def test_full_scopes_and_expansion(self):
        plan = build_retrieval_plan(None, "how do deploys work", room_id="r", project_id="p")
        assert [s.scope for s in plan][:5] == ["room", "project", "org", "chat_history", "jsonl"]
        assert plan[-1] == RetrievalPlanStep("project", "deployment process", "topic expansion 'deploy'")

    def test_expansions_deduplicated(self):
        plan = build_retrieval_plan(None, "deploy the release", project_id="p")
        assert sum(1 for s in plan if s.query == "deployment process") == 1

    def test_expansion_needs_its_scope(self):
        plan = build_retrieval_plan(None, "deploy today")
        assert all(s.scope != "project" for s in plan)

    def test_unknown_scope_ignored(self):
        strategy = RetrievalStrategy(ORG, 3, ["org", "bogus"], {})
        assert build_retrieval_plan(strategy, "x") == [RetrievalPlanStep("org", "x", "strategy v3 scope org")]

    def test_empty_query(self):
        assert build_retrieval_plan(None, " ") == []

    def test_planner_uses_active_stored_strategy(self, db_path):
        strategies = RetrievalStrategyStore(db_path)
        strategies.save_strategy(RetrievalStrategy(ORG, 1, ["chat_history"], {"billing": [{"scope": "org", "query": "invoices"}]}))
        plan = RetrievalPlanner(strategies).plan(ORG, "billing question")
        assert [(s.scope, s.query) for s in plan] == [("chat_history", "billing question"), ("org", "invoices")]

    def test_new_active_strategy_replaces_old(self, db_path):
        strategies = RetrievalStrategyStore(db_path)
        strategies.save_strategy(RetrievalStrategy(ORG, 1, ["org"]))
        strategies.save_strategy(RetrievalStrategy(ORG, 2, ["jsonl"]))
        assert strategies.get_active_strategy(ORG).version == 2
        assert [s.scope for s in RetrievalPlanner(strategies).plan(ORG, "x")] == ["jsonl"]

    def test_planner_without_store_uses_default(self):
        assert RetrievalPlanner().active_strategy(ORG).version == 0


# ---------------------------------------------------------------------------
# JSONL scanner
# ---------------------------------------------------------------------------

class TestFileJSONLScanner:
    def test_matches_and_snippets(self, tmp_path):
        org_dir = tmp_path / ORG
        org_dir.mkdir()
        (org_dir / "a.jsonl").write_text(
            "\n".join([
                json.dumps({"content": "we moved to Postgres"}),
                "plain Postgres line",
                json.dumps({"content": "unrelated"}),
            ]) + "\n",
            encoding="utf-8",
        )
        items = FileJSONLScanner(tmp_path).scan(ORG, "postgres", 10)
        assert [(i.id, i.snippet) for i in items] == [
            ("a.jsonl:1", "we moved to Postgres"),
            ("a.jsonl:2", "plain Postgres line"),
        ]

    def test_limit(self, tmp_path):
        (tmp_path / ORG).mkdir()
        (tmp_path / ORG / "b.jsonl").write_text("x match\ny match\n", encoding="utf-8")
        assert len(FileJSONLScanner(tmp_path).scan(ORG, "match", 1)) == 1

    def test_other_orgs_and_root_files_not_served(self, tmp_path):
        (tmp_path / "root.jsonl").write_text("shared match\n", encoding="utf-8")
        (tmp_path / "org-2").mkdir()
        (tmp_path / "org-2" / "c.jsonl").write_text("org-2 match\n", encoding="utf-8")
        scanner = FileJSONLScanner(tmp_path)
        assert scanner.scan(ORG, "match", 10) == []
        assert [i.snippet for i in scanner.scan("org-2", "match", 10)] == ["org-2 match"]
        assert scanner.scan("", "match", 10) == []
        assert scanner.scan("..", "match", 10) == []

    def test_missing_root(self, tmp_path):
        assert FileJSONLScanner(tmp_path / "none").scan(ORG, "x", 5) == []
