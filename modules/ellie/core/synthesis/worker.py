"""
Entity synthesis: collapse many scattered mentions of one entity into a
single canonical definition memory.

Source memories are read-only here; the synthesis memory is created once
and afterwards updated in place when the store flags it for resynthesis.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from core.contracts.llm import EntitySynthesisInput, EntitySynthesizer
from core.contracts.records import (
    NewMemory,
    SynthesisRunResult,
    SynthesisSourceMemory,
    SynthesisUpdate,
)
from core.contracts.stores import EmbeddingStore, SynthesisStore
from lib.embeddings import embed_texts
from lib.errors import ConfigurationError
from lib.normalize import format_timestamp, utc_now
from lib.polling import PollingWorker
from lib.providers import EmbeddingsProvider

logger = logging.getLogger(__name__)

SYNTHESIS_KIND = "fact"
SYNTHESIS_IMPORTANCE = 5
SYNTHESIS_CONFIDENCE = 0.95


def build_synthesis_prompt(entity_name: str, sources: Sequence[SynthesisSourceMemory]) -> str:
    lines = [
        f"Write one canonical definition memory for the entity \"{entity_name}\".",
        "Use only the source memories below. Return strict JSON only.",
        'Output schema: {"title":"...","content":"..."}',
        "Structure the content in this order:",
        "1. What it is",
        "2. What it does",
        "3. Current status",
        "4. Key technical details",
        "Preserve concrete details (names, versions, numbers, paths).",
        "If sources conflict, keep both statements and flag the conflict explicitly.",
        "",
        "Source memories:",
    ]
    for src in sources:
        header = f"- [{src.kind}] {src.title.strip()}"
        if src.occurred_at is not None:
            header += f" ({format_timestamp(src.occurred_at)})"
        lines.append(header)
        lines.append(f"  {src.content.strip()}")
    return "\n".join(lines) + "\n"


class EntitySynthesisWorker(PollingWorker):
    name = "synthesis"

    def __init__(
        self,
        store: SynthesisStore,
        synthesizer: EntitySynthesizer,
        org_id: str,
        *,
        embedder: Optional[EmbeddingsProvider] = None,
        embedding_store: Optional[EmbeddingStore] = None,
        min_mentions: int = 5,
        candidate_batch: int = 50,
        source_limit: int = 250,
        poll_interval: float = 600.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.synthesizer = synthesizer
        self.org_id = str(org_id or "").strip()
        self.embedder = embedder
        self.embedding_store = embedding_store
        self.min_mentions = min_mentions if min_mentions > 0 else 5
        self.candidate_batch = candidate_batch if candidate_batch > 0 else 50
        self.source_limit = source_limit if source_limit > 0 else 250
        self.poll_interval = poll_interval
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, store, synthesizer, org_id, **kwargs) -> "EntitySynthesisWorker":
        from config import get_config

        cfg = get_config().synthesis
        return cls(
            store,
            synthesizer,
            org_id,
            min_mentions=cfg.min_mentions,
            candidate_batch=cfg.candidate_batch,
            source_limit=cfg.source_limit,
            poll_interval=cfg.poll_interval_seconds,
            **kwargs,
        )

    def _run_batch(self) -> int:
        result = self.run_once(self.org_id)
        return result.created_count + result.updated_count

    def run_once(self, org_id: str) -> SynthesisRunResult:
        if self.store is None:
            raise ConfigurationError("synthesis store is required")
        if self.synthesizer is None:
            raise ConfigurationError("entity synthesizer is required")
        org_id = str(org_id or "").strip()
        if not org_id:
            raise ConfigurationError("org_id is required")

        result = SynthesisRunResult()
        try:
            candidates = self.store.list_candidates(org_id, self.min_mentions, self.candidate_batch)
        except Exception as e:
            raise RuntimeError(f"list synthesis candidates: {e}") from e

        for candidate in candidates:
            result.candidates_considered += 1
            existing_id = str(candidate.existing_synthesis_memory_id or "").strip()
            if existing_id and not candidate.needs_resynthesis:
                result.skipped_existing_count += 1
                continue
            entity_key = str(candidate.entity_key or "").strip()
            if not entity_key:
                continue
            entity_name = str(candidate.entity_name or "").strip() or entity_key

            try:
                sources = self.store.list_source_memories(org_id, entity_key, self.source_limit)
            except Exception as e:
                raise RuntimeError(f"list synthesis source memories: {e}") from e
            if not sources:
                continue

            prompt = build_synthesis_prompt(entity_name, sources)
            try:
                output = self.synthesizer.synthesize(EntitySynthesisInput(
                    org_id=org_id,
                    entity_key=entity_key,
                    entity_name=entity_name,
                    prompt=prompt,
                    source_memories=list(sources),
                ))
            except Exception as e:
                raise RuntimeError(f"synthesize entity {entity_key}: {e}") from e

            title = str(output.title or "").strip() or f"{entity_name} definition"
            content = str(output.content or "").strip()
            if not content:
                raise RuntimeError(f"synthesize entity {entity_key}: empty synthesis content")

            now = utc_now()
            metadata: Dict[str, Any] = {
                "source_type": "synthesis",
                "entity_key": entity_key,
                "entity_name": entity_name,
                "source_memory_ids": [s.memory_id for s in sources],
                "source_memory_count": len(sources),
                "synthesized_at": format_timestamp(now),
            }
            if str(output.model or "").strip():
                metadata["synthesis_model"] = output.model.strip()
            if str(output.trace_id or "").strip():
                metadata["synthesis_trace_id"] = output.trace_id.strip()

            occurred = [s.occurred_at for s in sources if s.occurred_at is not None]
            occurred_at = max(occurred) if occurred else now
            project_id = next(
                (s.source_project_id.strip() for s in sources if str(s.source_project_id or "").strip()),
                None,
            )

            if existing_id:
                try:
                    self.store.update_synthesis_memory(SynthesisUpdate(
                        org_id=org_id,
                        memory_id=existing_id,
                        title=title,
                        content=content,
                        metadata=metadata,
                        importance=SYNTHESIS_IMPORTANCE,
                        confidence=SYNTHESIS_CONFIDENCE,
                        occurred_at=occurred_at,
                        source_project_id=project_id,
                    ))
                except Exception as e:
                    raise RuntimeError(f"update synthesis memory: {e}") from e
                memory_id = existing_id
                result.updated_count += 1
            else:
                try:
                    memory_id = self.store.create_memory(NewMemory(
                        org_id=org_id,
                        kind=SYNTHESIS_KIND,
                        title=title,
                        content=content,
                        metadata=metadata,
                        importance=SYNTHESIS_IMPORTANCE,
                        confidence=SYNTHESIS_CONFIDENCE,
                        status="active",
                        occurred_at=occurred_at,
                        source_project_id=project_id,
                    ))
                except Exception as e:
                    raise RuntimeError(f"create synthesis memory: {e}") from e
                result.created_count += 1

            self._embed(memory_id, title, content)

        self.logger.info(
            "[synthesis] org=%s considered=%d created=%d updated=%d skipped=%d",
            org_id,
            result.candidates_considered,
            result.created_count,
            result.updated_count,
            result.skipped_existing_count,
        )
        return result

    def _embed(self, memory_id: str, title: str, content: str) -> None:
        if self.embedder is None or self.embedding_store is None:
            return
        vectors: List[List[float]] = embed_texts([f"{title}\n\n{content}"], self.embedder)
        try:
            self.embedding_store.update_memory_embedding(memory_id, vectors[0])
        except Exception as e:
            raise RuntimeError(f"update synthesis memory embedding: {e}") from e
