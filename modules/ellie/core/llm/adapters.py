"""Per-use-case LLM adapters over one GatewayCaller.

Each adapter builds nothing itself (workers own the prompts) except the
ingestion extractor, which owns its prompt format so the window splitter
can measure it.
"""

import logging
from typing import Any, Optional, Sequence, Tuple

from core.contracts.llm import (
    DedupReviewInput,
    EntitySynthesisInput,
    EntitySynthesisOutput,
    TaxonomyClassificationInput,
    TaxonomyClassificationOutput,
)
from core.contracts.records import ChatMessage, DedupDecision, ExtractionResult
from core.dedup.engine import parse_dedup_decision
from ingest.extractor import build_extraction_prompt, parse_extraction_candidates
from lib.errors import ConfigurationError, MalformedOutputError
from lib.llm_clients import GatewayCaller, extract_json_payload

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGE_CHARS = 2000


class _GatewayAdapter:
    def __init__(self, caller: Optional[GatewayCaller]):
        if caller is None:
            raise ConfigurationError("gateway caller is required")
        self.caller = caller


class LLMDedupReviewer(_GatewayAdapter):
    def review(self, review: DedupReviewInput) -> DedupDecision:
        reply = self.caller.call(review.org_id, review.prompt)
        return parse_dedup_decision(extract_json_payload(reply.text))


class LLMTaxonomyClassifier(_GatewayAdapter):
    def classify_memory(self, request: TaxonomyClassificationInput) -> TaxonomyClassificationOutput:
        reply = self.caller.call(request.org_id, request.prompt)
        return TaxonomyClassificationOutput(model=reply.model, trace_id=reply.trace_id, raw_json=reply.text)


class LLMEntitySynthesizer(_GatewayAdapter):
    def synthesize(self, request: EntitySynthesisInput) -> EntitySynthesisOutput:
        reply = self.caller.call(request.org_id, request.prompt)
        payload: Any = extract_json_payload(reply.text)
        if not isinstance(payload, dict):
            raise MalformedOutputError("entity synthesis output must be a JSON object")
        return EntitySynthesisOutput(
            title=str(payload.get("title") or "").strip(),
            content=str(payload.get("content") or "").strip(),
            model=reply.model,
            trace_id=reply.trace_id,
        )


class LLMIngestionExtractor(_GatewayAdapter):
    """Extracts memory candidates from one chat window."""

    def __init__(
        self,
        caller: Optional[GatewayCaller],
        *,
        max_prompt_chars: int = 0,
        max_message_chars: int = DEFAULT_MAX_MESSAGE_CHARS,
    ):
        super().__init__(caller)
        self.max_prompt_chars = max(0, int(max_prompt_chars or 0))
        self.max_message_chars = int(max_message_chars or 0) or DEFAULT_MAX_MESSAGE_CHARS

    def prompt_budget(self) -> Tuple[int, int]:
        return self.max_prompt_chars, self.max_message_chars

    def extract(self, org_id: str, room_id: str, messages: Sequence[ChatMessage]) -> ExtractionResult:
        prompt = build_extraction_prompt(org_id, room_id, messages, self.max_message_chars)
        reply = self.caller.call(org_id, prompt)
        candidates = parse_extraction_candidates(extract_json_payload(reply.text))
        logger.debug(
            "[ingest] extractor org=%s room=%s messages=%d candidates=%d model=%s",
            org_id, room_id, len(messages), len(candidates), reply.model,
        )
        return ExtractionResult(model=reply.model, trace_id=reply.trace_id, candidates=candidates)
