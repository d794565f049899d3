"""Tests for core/interface: the public API functions and MCP tool wrappers."""

import json
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from core.contracts.records import NewMemory, RetrievalStrategy
from core.interface import api
from datastore.memorydb.stores import MemoryStore, RetrievalQualityStore, RetrievalStrategyStore
from lib.embeddings import get_embeddings_provider
from lib.errors import ConfigurationError

ORG = "org-1"
QUERY = "who owns the billing service"


@pytest.fixture(scope="module")
def server():
    """Import the MCP server module, restoring stdout it redirects at import."""
    saved = sys.stdout
    try:
        import core.interface.mcp_server as module
    finally:
        sys.stdout = saved
    return module


def _embedded_memory(db_path):
    store = MemoryStore(db_path)
    memory_id = store.create_memory(NewMemory(
        org_id=ORG, kind="fact", title="Billing owner", content="The payments team owns billing",
    ))
    store.update_memory_embedding(memory_id, get_embeddings_provider().embed([QUERY])[0])
    return memory_id


def _fixture(ellie_home, rows, name="eval.jsonl"):
    path = ellie_home / name
    path.write_text("\n".join(json.dumps(r) for r in rows) + "\n", encoding="utf-8")
    return path


PASSING_CASES = [
    {"id": "c1", "should_inject": True, "injected": True, "retrieved_ids": ["a"], "relevant_ids": ["a"],
     "recovery_expected": True, "recovery_succeeded": True, "latency_ms": 20},
    {"id": "c2", "should_inject": False, "injected": False, "latency_ms": 30},
]


class TestResolveOrg:
    def test_explicit_wins(self, monkeypatch):
        monkeypatch.setenv("ELLIE_ORG_ID", "env-org")
        assert api.resolve_org_id(" given ") == "given"

    def test_environment_fallback(self, monkeypatch):
        monkeypatch.setenv("ELLIE_ORG_ID", "env-org")
        assert api.resolve_org_id("") == "env-org"

    def test_missing(self):
        with pytest.raises(ConfigurationError, match="ELLIE_ORG_ID"):
            api.resolve_org_id(None)


class TestRetrieve:
    def test_semantic_memory_answer(self, db_path):
        memory_id = _embedded_memory(db_path)
        result = api.retrieve(QUERY, org_id=ORG)
        assert result["tier_used"] == 2
        assert result["items"][0]["memory_id"] == memory_id
        assert RetrievalQualityStore(db_path).list_events(ORG)[0]["tier_used"] == 2

    def test_nothing_found(self, db_path):
        result = api.retrieve("anything at all", org_id=ORG)
        assert result == {"tier_used": 5, "no_information": True, "items": []}

    def test_configured_jsonl_root(self, db_path, ellie_home, write_config):
        write_config({"retrieval": {"jsonlRoot": "sessions"}})
        (ellie_home / "sessions" / ORG).mkdir(parents=True)
        (ellie_home / "sessions" / ORG / "s1.jsonl").write_text(
            json.dumps({"text": "Kubernetes upgrade planned"}) + "\n", encoding="utf-8"
        )
        result = api.retrieve("kubernetes", org_id=ORG)
        assert result["tier_used"] == 4
        assert result["items"][0]["snippet"] == "Kubernetes upgrade planned"

    def test_plan_uses_stored_strategy(self, db_path):
        RetrievalStrategyStore(db_path).save_strategy(RetrievalStrategy(ORG, 4, ["org", "jsonl"]))
        steps = api.retrieval_plan("pricing", org_id=ORG)
        assert steps == [
            {"scope": "org", "query": "pricing", "reason": "strategy v4 scope org"},
            {"scope": "jsonl", "query": "pricing", "reason": "strategy v4 scope jsonl"},
        ]


class TestEvaluateAndTune:
    def test_evaluate_relative_fixture(self, ellie_home):
        _fixture(ellie_home, PASSING_CASES)
        result = api.evaluate("eval.jsonl")
        assert result["passed"]
        assert result["metrics"]["case_count"] == 2

    def test_evaluate_fixture_from_config(self, ellie_home, write_config):
        _fixture(ellie_home, PASSING_CASES, name="configured.jsonl")
        write_config({"evaluator": {"fixturePath": "configured.jsonl"}})
        assert api.evaluate()["metrics"]["case_count"] == 2

    def test_evaluate_requires_fixture(self):
        with pytest.raises(ConfigurationError, match="fixture path is required"):
            api.evaluate()

    def test_tune_returns_decision(self, ellie_home):
        _fixture(ellie_home, PASSING_CASES)
        decision = api.tune("eval.jsonl", seed=3)
        assert decision["status"] in ("applied", "skipped")
        assert decision["attempt_id"].startswith("attempt-")
        assert set(decision["candidate_config"]) == {
            "recall_min_relevance", "recall_max_results", "recall_max_chars", "sensitivity", "scope",
        }
        assert (ellie_home / "logs" / "tuning-audit.jsonl").exists()


class TestMCPTools:
    def test_retrieve_tool(self, server, db_path, monkeypatch):
        monkeypatch.setenv("ELLIE_ORG_ID", ORG)
        memory_id = _embedded_memory(db_path)
        result = server.ellie_retrieve(QUERY, referenced_item_ids=[memory_id])
        assert result["tier_used"] == 2
        event = RetrievalQualityStore(db_path).list_events(ORG)[0]
        assert event["referenced_count"] == 1

    def test_plan_tool(self, server, db_path):
        result = server.ellie_retrieval_plan("deploy steps", org_id=ORG, project_id="p1")
        assert {"scope": "project", "query": "deployment process", "reason": "topic expansion 'deploy'"} in result["steps"]

    def test_evaluate_tool(self, server, ellie_home):
        path = _fixture(ellie_home, PASSING_CASES)
        assert server.ellie_evaluate(str(path))["passed"]
