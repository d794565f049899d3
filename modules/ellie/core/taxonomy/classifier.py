"""
Taxonomy classifier: assigns unclassified memories to fixed taxonomy paths.

The taxonomy is a per-org tree of slugs; a path is the slash-joined slugs
from the root ("engineering/backend/database").  The LLM only ever sees
the sorted list of valid paths and may return at most ``max_assignments``
of them.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Set

from core.contracts.llm import TaxonomyClassificationInput, TaxonomyLLMClassifier
from core.contracts.records import (
    MemoryClassification,
    PendingClassification,
    TaxonomyAssignment,
    TaxonomyNode,
    TaxonomyRunResult,
)
from core.contracts.stores import TaxonomyStore
from lib.errors import ConfigurationError, MalformedOutputError
from lib.llm_clients import extract_json_payload
from lib.normalize import clamp_unit, is_finite_number, utc_now
from lib.polling import PollingWorker

logger = logging.getLogger(__name__)

MAX_TAXONOMY_ASSIGNMENTS = 3
DEFAULT_CONFIDENCE = 0.5


def normalize_taxonomy_path(path: Any) -> str:
    text = str(path or "").strip().lower().replace("\\", "/")
    return "/".join(part.strip() for part in text.split("/") if part.strip())


def build_taxonomy_path_index(nodes: Sequence[TaxonomyNode]) -> Dict[str, str]:
    """Map normalized path -> node id for every node in the tree.

    A parent cycle or a dangling parent reference is a configuration error.
    """
    by_id: Dict[str, TaxonomyNode] = {}
    for node in nodes or []:
        node_id = str(node.id or "").strip()
        if node_id:
            by_id[node_id] = node

    paths: Dict[str, str] = {}

    def resolve(node_id: str, in_progress: Set[str]) -> str:
        if node_id in paths:
            return paths[node_id]
        if node_id in in_progress:
            raise ConfigurationError(f"taxonomy cycle detected at node {node_id}")
        node = by_id.get(node_id)
        if node is None:
            raise ConfigurationError(f"taxonomy parent {node_id} not found")
        slug = normalize_taxonomy_path(node.slug)
        if not slug:
            raise ConfigurationError(f"taxonomy node {node_id} has an empty slug")
        parent_id = str(node.parent_id or "").strip()
        if not parent_id:
            path = slug
        else:
            in_progress.add(node_id)
            path = resolve(parent_id, in_progress) + "/" + slug
            in_progress.discard(node_id)
        paths[node_id] = path
        return path

    index: Dict[str, str] = {}
    for node_id in sorted(by_id):
        index[resolve(node_id, set())] = node_id
    return index


def build_classification_prompt(
    title: str, content: str, taxonomy_paths: Sequence[str], max_assignments: int
) -> str:
    lines = [
        "You classify a memory into a fixed taxonomy. Return strict JSON only.",
        'Output schema: {"classifications":[{"path":"a/b","confidence":0.0}]}',
        f"Return 1-{max_assignments} classifications.",
        "Allowed taxonomy paths:",
    ]
    lines.extend(f"- {path}" for path in taxonomy_paths)
    lines.append(f"Memory title:\n{str(title or '').strip()}")
    lines.append(f"Memory content:\n{str(content or '').strip()}")
    return "\n".join(lines)


def parse_classifications(raw: str, max_assignments: int) -> List[TaxonomyAssignment]:
    """Parse the classifier reply; raises MalformedOutputError on bad shape."""
    if not str(raw or "").strip():
        raise MalformedOutputError("empty taxonomy classification output")
    payload = extract_json_payload(raw)
    if isinstance(payload, list):
        entries = payload
    elif isinstance(payload, dict):
        entries = payload.get("classifications")
        if entries is None:
            entries = payload.get("nodes")
    else:
        entries = None
    if not isinstance(entries, list):
        raise MalformedOutputError("taxonomy classification output missing classifications")

    limit = max(1, min(int(max_assignments or MAX_TAXONOMY_ASSIGNMENTS), MAX_TAXONOMY_ASSIGNMENTS))
    out: List[TaxonomyAssignment] = []
    seen: Set[str] = set()
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        path = normalize_taxonomy_path(entry.get("path") or entry.get("node_path"))
        if not path or path in seen:
            continue
        confidence = entry.get("confidence")
        if confidence is None:
            confidence = DEFAULT_CONFIDENCE
        elif not is_finite_number(confidence):
            raise MalformedOutputError(f"non-numeric confidence for path {path}")
        seen.add(path)
        out.append(TaxonomyAssignment(path=path, confidence=clamp_unit(confidence)))
        if len(out) >= limit:
            break
    if not out:
        raise MalformedOutputError("no valid node paths in taxonomy classification output")
    return out


class TaxonomyClassifierWorker(PollingWorker):
    name = "taxonomy"

    def __init__(
        self,
        store: TaxonomyStore,
        classifier: TaxonomyLLMClassifier,
        org_id: str,
        *,
        batch_size: int = 100,
        max_assignments: int = MAX_TAXONOMY_ASSIGNMENTS,
        max_retries: int = 1,
        poll_interval: float = 300.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.classifier = classifier
        self.org_id = str(org_id or "").strip()
        self.batch_size = batch_size if batch_size > 0 else 100
        self.max_assignments = max(1, min(int(max_assignments or 0) or MAX_TAXONOMY_ASSIGNMENTS,
                                          MAX_TAXONOMY_ASSIGNMENTS))
        self.max_retries = max(0, int(max_retries))
        self.poll_interval = poll_interval
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, store, classifier, org_id, **kwargs) -> "TaxonomyClassifierWorker":
        from config import get_config

        cfg = get_config().taxonomy
        return cls(
            store,
            classifier,
            org_id,
            batch_size=cfg.batch_size,
            max_assignments=cfg.max_assignments,
            max_retries=cfg.max_retries,
            poll_interval=cfg.poll_interval_seconds,
            **kwargs,
        )

    def _run_batch(self) -> int:
        return self.run_once(self.org_id).classified_memories

    def run_once(self, org_id: str) -> TaxonomyRunResult:
        if self.store is None:
            raise ConfigurationError("taxonomy store is required")
        if self.classifier is None:
            raise ConfigurationError("taxonomy classifier is required")
        org_id = str(org_id or "").strip()
        if not org_id:
            raise ConfigurationError("org_id is required")

        result = TaxonomyRunResult()
        try:
            nodes = self.store.list_all_nodes(org_id)
        except Exception as e:
            raise RuntimeError(f"list taxonomy nodes: {e}") from e
        if not nodes:
            return result
        index = build_taxonomy_path_index(nodes)
        if not index:
            return result
        paths = sorted(index)

        try:
            pending = self.store.list_pending_memories_for_classification(org_id, self.batch_size)
        except Exception as e:
            raise RuntimeError(f"list pending taxonomy memories: {e}") from e
        result.pending_memories = len(pending)

        for memory in pending:
            outcome = self._classify_one(org_id, memory, paths, index)
            if outcome:
                result.classified_memories += 1
            else:
                result.invalid_outputs += 1

        self.logger.info(
            "[taxonomy] org=%s pending=%d classified=%d invalid=%d",
            org_id,
            result.pending_memories,
            result.classified_memories,
            result.invalid_outputs,
        )
        return result

    def _classify_one(
        self,
        org_id: str,
        memory: PendingClassification,
        paths: List[str],
        index: Dict[str, str],
    ) -> bool:
        prompt = build_classification_prompt(memory.title, memory.content, paths, self.max_assignments)
        request = TaxonomyClassificationInput(
            org_id=org_id,
            memory_id=memory.memory_id,
            memory_title=memory.title,
            memory_content=memory.content,
            taxonomy_paths=paths,
            max_assignments=self.max_assignments,
            prompt=prompt,
        )

        assignments: List[TaxonomyAssignment] = []
        output = None
        last_error: Optional[Exception] = None
        saw_parse_error = False
        for attempt in range(self.max_retries + 1):
            try:
                output = self.classifier.classify_memory(request)
            except Exception as e:
                last_error = e
                self.logger.warning(
                    "[taxonomy] classification attempt %d failed memory=%s: %s",
                    attempt + 1, memory.memory_id, e,
                )
                continue
            try:
                assignments = parse_classifications(output.raw_json, self.max_assignments)
            except MalformedOutputError as e:
                last_error = e
                saw_parse_error = True
                self.logger.warning(
                    "[taxonomy] malformed classification attempt %d memory=%s: %s",
                    attempt + 1, memory.memory_id, e,
                )
                continue
            last_error = None
            break

        if last_error is not None:
            if saw_parse_error:
                return False
            raise RuntimeError(f"llm taxonomy classification failed: {last_error}") from last_error

        node_ids: List[str] = []
        confidences: Dict[str, float] = {}
        for assignment in assignments:
            node_id = index.get(assignment.path)
            if node_id is None:
                self.logger.warning(
                    "[taxonomy] unknown path %r for memory=%s", assignment.path, memory.memory_id
                )
                return False
            if node_id in confidences:
                continue
            node_ids.append(node_id)
            confidences[node_id] = assignment.confidence
            if len(node_ids) >= self.max_assignments:
                break
        if not node_ids:
            return False

        classified_at = utc_now()
        for node_id in node_ids:
            try:
                self.store.upsert_memory_classification(MemoryClassification(
                    org_id=org_id,
                    memory_id=memory.memory_id,
                    node_id=node_id,
                    confidence=clamp_unit(confidences[node_id]),
                    classified_at=classified_at,
                ))
            except Exception as e:
                raise RuntimeError(f"upsert memory taxonomy classification: {e}") from e
        try:
            self.store.mark_memory_taxonomy_classified(
                org_id,
                memory.memory_id,
                classified_at,
                output.model if output else "",
                output.trace_id if output else "",
            )
        except Exception as e:
            raise RuntimeError(f"mark memory taxonomy classified: {e}") from e
        return True
