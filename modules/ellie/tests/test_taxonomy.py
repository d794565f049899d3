"""Tests for core/taxonomy/classifier.py."""

import json
import os
import sys
import threading

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from core.contracts.llm import TaxonomyClassificationOutput
from core.contracts.records import NewMemory, TaxonomyNode
from core.llm.adapters import LLMTaxonomyClassifier
from core.taxonomy.classifier import (
    TaxonomyClassifierWorker,
    build_classification_prompt,
    build_taxonomy_path_index,
    normalize_taxonomy_path,
    parse_classifications,
)
from datastore.memorydb.stores import MemoryStore, TaxonomySQLiteStore
from lib.errors import ConfigurationError, MalformedOutputError
from lib.llm_clients import GatewayCaller
from lib.providers import TestLLMProvider

ORG = "org-1"


class TestPaths:
    def test_normalize(self):
        assert normalize_taxonomy_path(" Engineering\\Backend// DB ") == "engineering/backend/db"
        assert normalize_taxonomy_path(None) == ""

    def test_index(self):
        nodes = [
            TaxonomyNode("n1", ORG, "engineering"),
            TaxonomyNode("n2", ORG, "backend", "n1", 1),
            TaxonomyNode("n3", ORG, "database", "n2", 2),
        ]
        assert build_taxonomy_path_index(nodes) == {
            "engineering": "n1",
            "engineering/backend": "n2",
            "engineering/backend/database": "n3",
        }

    def test_cycle_is_configuration_error(self):
        nodes = [TaxonomyNode("a", ORG, "a", "b"), TaxonomyNode("b", ORG, "b", "a")]
        with pytest.raises(ConfigurationError, match="cycle"):
            build_taxonomy_path_index(nodes)

    def test_dangling_parent(self):
        with pytest.raises(ConfigurationError, match="not found"):
            build_taxonomy_path_index([TaxonomyNode("a", ORG, "a", "ghost")])

    def test_prompt_lists_paths(self):
        prompt = build_classification_prompt("Title", "Body", ["a", "a/b"], 2)
        assert "Return 1-2 classifications." in prompt
        assert "- a/b" in prompt
        assert prompt.endswith("Memory content:\nBody")


class TestParseClassifications:
    def test_object_shape(self):
        raw = json.dumps({"classifications": [{"path": "A/B", "confidence": 0.9}, {"path": "c"}]})
        out = parse_classifications(raw, 3)
        assert [(a.path, a.confidence) for a in out] == [("a/b", 0.9), ("c", 0.5)]

    def test_list_shape_and_alias(self):
        out = parse_classifications('[{"node_path": "x", "confidence": 2}]', 3)
        assert out[0].path == "x"
        assert out[0].confidence == 1.0

    def test_caps_and_dedupes(self):
        raw = json.dumps({"nodes": [{"path": p} for p in ["a", "a", "b", "c", "d"]]})
        assert [a.path for a in parse_classifications(raw, 5)] == ["a", "b", "c"]
        assert [a.path for a in parse_classifications(raw, 1)] == ["a"]

    @pytest.mark.parametrize("raw", [
        "",
        "not json",
        '{"other": []}',
        '{"classifications": []}',
        '{"classifications": [{"path": "a", "confidence": "high"}]}',
    ])
    def test_malformed(self, raw):
        with pytest.raises(MalformedOutputError):
            parse_classifications(raw, 3)


class _Classifier:
    def __init__(self, replies):
        self.replies = list(replies)
        self.requests = []

    def classify_memory(self, request):
        self.requests.append(request)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return TaxonomyClassificationOutput(model="m", trace_id="t", raw_json=reply)


@pytest.fixture
def store(db_path):
    tax = TaxonomySQLiteStore(db_path)
    eng = tax.upsert_node(ORG, "engineering")
    tax.upsert_node(ORG, "backend", parent_id=eng)
    tax.upsert_node(ORG, "product")
    return tax


@pytest.fixture
def memory_id(db_path):
    return MemoryStore(db_path).create_memory(
        NewMemory(org_id=ORG, kind="technical_decision", title="Use Postgres", content="Backend DB is Postgres")
    )


class TestTaxonomyClassifierWorker:
    def test_classifies_and_marks(self, store, memory_id):
        classifier = _Classifier(['{"classifications":[{"path":"engineering/backend","confidence":0.8}]}'])
        result = TaxonomyClassifierWorker(store, classifier, ORG).run_once(ORG)

        assert result.pending_memories == 1
        assert result.classified_memories == 1
        assert classifier.requests[0].taxonomy_paths == ["engineering", "engineering/backend", "product"]
        rows = store.list_memory_classifications(ORG, memory_id)
        assert len(rows) == 1
        assert rows[0].confidence == pytest.approx(0.8)
        assert store.list_pending_memories_for_classification(ORG, 10) == []

    def test_unknown_path_leaves_memory_pending(self, store, memory_id):
        classifier = _Classifier(['{"classifications":[{"path":"sales"}]}'])
        result = TaxonomyClassifierWorker(store, classifier, ORG).run_once(ORG)
        assert result.invalid_outputs == 1
        assert len(store.list_pending_memories_for_classification(ORG, 10)) == 1

    def test_malformed_then_valid_retry(self, store, memory_id):
        classifier = _Classifier(["oops", '{"classifications":[{"path":"product"}]}'])
        result = TaxonomyClassifierWorker(store, classifier, ORG, max_retries=1).run_once(ORG)
        assert result.classified_memories == 1
        assert len(classifier.requests) == 2

    def test_malformed_exhausts_retries(self, store, memory_id):
        classifier = _Classifier(["oops"])
        result = TaxonomyClassifierWorker(store, classifier, ORG, max_retries=1).run_once(ORG)
        assert result.invalid_outputs == 1
        assert len(classifier.requests) == 2

    def test_parse_error_wins_over_later_gateway_error(self, store, memory_id):
        classifier = _Classifier(["not json", RuntimeError("gateway down")])
        result = TaxonomyClassifierWorker(store, classifier, ORG, max_retries=1).run_once(ORG)
        assert result.invalid_outputs == 1
        assert len(classifier.requests) == 2
        assert len(store.list_pending_memories_for_classification(ORG, 10)) == 1

    def test_gateway_failure_raises(self, store, memory_id):
        classifier = _Classifier([TimeoutError("slow")])
        with pytest.raises(RuntimeError, match="llm taxonomy classification failed"):
            TaxonomyClassifierWorker(store, classifier, ORG, max_retries=0).run_once(ORG)

    def test_no_nodes_is_noop(self, db_path, memory_id):
        classifier = _Classifier(["{}"])
        result = TaxonomyClassifierWorker(TaxonomySQLiteStore(db_path), classifier, ORG).run_once(ORG)
        assert result.pending_memories == 0
        assert classifier.requests == []

    def test_max_assignments_capped_at_three(self, store):
        assert TaxonomyClassifierWorker(store, _Classifier(["{}"]), ORG, max_assignments=9).max_assignments == 3

    def test_llm_adapter(self, store, memory_id):
        provider = TestLLMProvider(responses=['{"classifications":[{"path":"engineering","confidence":0.7}]}'])
        worker = TaxonomyClassifierWorker(store, LLMTaxonomyClassifier(GatewayCaller(provider)), ORG)
        assert worker.run_once(ORG).classified_memories == 1
        assert "- engineering/backend" in provider.calls[0]["messages"][1]["content"]


class _CyclicStore:
    def __init__(self):
        self.list_calls = 0

    def list_all_nodes(self, org_id):
        self.list_calls += 1
        return [
            TaxonomyNode(id="a", org_id=org_id, slug="a", parent_id="b"),
            TaxonomyNode(id="b", org_id=org_id, slug="b", parent_id="a"),
        ]


def test_cycle_stops_polling_loop():
    store = _CyclicStore()
    worker = TaxonomyClassifierWorker(store, _Classifier(["{}"]), ORG)
    worker.poll_interval = 0.01
    worker.error_interval = 0.01
    with pytest.raises(ConfigurationError, match="taxonomy cycle"):
        worker.start(threading.Event())
    assert store.list_calls == 1
