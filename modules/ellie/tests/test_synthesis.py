"""Tests for core/synthesis/worker.py and the synthesis SQLite store."""

import os
import sys
from datetime import datetime, timezone

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from core.contracts.llm import EntitySynthesisOutput
from core.contracts.records import NewMemory, SynthesisSourceMemory
from core.llm.adapters import LLMEntitySynthesizer
from core.synthesis.worker import (
    SYNTHESIS_CONFIDENCE,
    SYNTHESIS_IMPORTANCE,
    EntitySynthesisWorker,
    build_synthesis_prompt,
)
from datastore.memorydb.stores import SynthesisSQLiteStore
from lib.errors import MalformedOutputError
from lib.llm_clients import GatewayCaller
from lib.providers import MockEmbeddingsProvider, TestLLMProvider

ORG = "org-1"


class _Synthesizer:
    def __init__(self, title="Atlas definition", content="Atlas is the billing service."):
        self.title = title
        self.content = content
        self.requests = []

    def synthesize(self, request):
        self.requests.append(request)
        return EntitySynthesisOutput(title=self.title, content=self.content, model="m", trace_id="t")


@pytest.fixture
def store(db_path):
    return SynthesisSQLiteStore(db_path)


def _mentions(store, count, start=0):
    for i in range(start, start + count):
        store.create_memory(NewMemory(
            org_id=ORG,
            kind="fact",
            title=f"Atlas note {i}",
            content=f"Atlas handles invoices, detail {i}",
            occurred_at=datetime(2026, 1, 1 + i, tzinfo=timezone.utc),
            source_project_id="proj-1" if i == 2 else None,
        ))


class TestPrompt:
    def test_sections_and_sources(self):
        prompt = build_synthesis_prompt("Atlas", [
            SynthesisSourceMemory("m1", "fact", "Atlas", "It bills", occurred_at=datetime(2026, 1, 1, tzinfo=timezone.utc)),
        ])
        assert 'canonical definition memory for the entity "Atlas"' in prompt
        assert "1. What it is" in prompt
        assert "4. Key technical details" in prompt
        assert "flag the conflict explicitly" in prompt
        assert "- [fact] Atlas (2026-01-01T00:00:00.000000Z)" in prompt


class TestCandidates:
    def test_min_mentions(self, store):
        _mentions(store, 4)
        assert store.list_candidates(ORG, 5, 10) == []
        _mentions(store, 1, start=4)
        candidates = store.list_candidates(ORG, 5, 10)
        assert [(c.entity_key, c.entity_name, c.mention_count) for c in candidates] == [("atlas", "Atlas", 5)]

    def test_growth_threshold_triggers_resynthesis(self, store):
        _mentions(store, 5)
        EntitySynthesisWorker(store, _Synthesizer(), ORG).run_once(ORG)
        assert store.list_candidates(ORG, 5, 10) == []

        # 6 mentions over 5 synthesized sources is exactly 20% growth.
        _mentions(store, 1, start=5)
        candidates = store.list_candidates(ORG, 5, 10)
        assert len(candidates) == 1
        assert candidates[0].needs_resynthesis
        assert candidates[0].existing_source_count == 5
        assert candidates[0].mention_count == 6

    def test_growth_below_threshold_is_skipped(self, store):
        _mentions(store, 10)
        EntitySynthesisWorker(store, _Synthesizer(), ORG).run_once(ORG)
        _mentions(store, 1, start=10)
        assert store.list_candidates(ORG, 5, 10) == []


class TestEntitySynthesisWorker:
    def test_creates_synthesis_memory(self, store):
        _mentions(store, 5)
        synthesizer = _Synthesizer()
        worker = EntitySynthesisWorker(
            store, synthesizer, ORG, embedder=MockEmbeddingsProvider(), embedding_store=store,
        )
        result = worker.run_once(ORG)

        assert result.created_count == 1
        assert len(synthesizer.requests[0].source_memories) == 5
        created = [m for m in store.list_memories(ORG) if m["title"] == "Atlas definition"]
        memory = store.get_memory(created[0]["id"])
        assert memory["importance"] == SYNTHESIS_IMPORTANCE
        assert memory["confidence"] == pytest.approx(SYNTHESIS_CONFIDENCE)
        assert memory["metadata"]["source_type"] == "synthesis"
        assert memory["metadata"]["entity_key"] == "atlas"
        assert memory["metadata"]["source_memory_count"] == 5
        assert memory["metadata"]["synthesis_model"] == "m"
        assert memory["occurred_at"].startswith("2026-01-05")
        assert memory["source_project_id"] == "proj-1"
        assert len(memory["embedding"]) == MockEmbeddingsProvider().dimension()

    def test_source_memories_untouched(self, store):
        _mentions(store, 5)
        before = {m["id"]: (m["title"], m["content"], m["status"]) for m in store.list_memories(ORG)}
        EntitySynthesisWorker(store, _Synthesizer(), ORG).run_once(ORG)
        after = {m["id"]: (m["title"], m["content"], m["status"]) for m in store.list_memories(ORG)}
        for memory_id, row in before.items():
            assert after[memory_id] == row

    def test_updates_in_place_on_resynthesis(self, store):
        _mentions(store, 5)
        EntitySynthesisWorker(store, _Synthesizer(), ORG).run_once(ORG)
        synthesis_id = [m["id"] for m in store.list_memories(ORG) if m["title"] == "Atlas definition"][0]

        _mentions(store, 2, start=5)
        result = EntitySynthesisWorker(
            store, _Synthesizer(content="Atlas is the billing and invoicing service."), ORG
        ).run_once(ORG)

        assert result.updated_count == 1
        assert result.created_count == 0
        memory = store.get_memory(synthesis_id)
        assert memory["content"] == "Atlas is the billing and invoicing service."
        assert memory["metadata"]["source_memory_count"] == 7
        assert memory["taxonomy_classified_at"] is None

    def test_empty_title_gets_default(self, store):
        _mentions(store, 5)
        EntitySynthesisWorker(store, _Synthesizer(title=" "), ORG).run_once(ORG)
        assert any(m["title"] == "Atlas definition" for m in store.list_memories(ORG))

    def test_empty_content_is_error(self, store):
        _mentions(store, 5)
        with pytest.raises(RuntimeError, match="empty synthesis content"):
            EntitySynthesisWorker(store, _Synthesizer(content=""), ORG).run_once(ORG)

    def test_llm_adapter_requires_object(self):
        synthesizer = LLMEntitySynthesizer(GatewayCaller(TestLLMProvider(responses=['["not", "object"]'])))
        from core.contracts.llm import EntitySynthesisInput

        with pytest.raises(MalformedOutputError):
            synthesizer.synthesize(EntitySynthesisInput(ORG, "atlas", "Atlas", "prompt"))

    def test_llm_adapter_end_to_end(self, store):
        _mentions(store, 5)
        provider = TestLLMProvider(responses=['{"title": "Atlas", "content": "Billing service."}'])
        result = EntitySynthesisWorker(store, LLMEntitySynthesizer(GatewayCaller(provider)), ORG).run_once(ORG)
        assert result.created_count == 1
        assert "Atlas handles invoices, detail 0" in provider.calls[0]["messages"][1]["content"]
