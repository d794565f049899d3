"""Dedup worker: one bounded review pass over an org's active memories."""

import logging
from typing import Optional

from core.contracts.llm import DedupReviewer, DedupReviewInput
from core.contracts.records import DedupRunResult
from core.contracts.stores import DedupStore
from core.dedup.engine import (
    all_pair_combinations,
    build_review_prompt,
    cluster_pairs,
    detect_candidate_pairs,
    validate_dedup_decision,
)
from lib.errors import ConfigurationError, DecisionValidationError, MalformedOutputError
from lib.polling import PollingWorker

logger = logging.getLogger(__name__)


class DedupWorker(PollingWorker):
    name = "dedup"

    def __init__(
        self,
        store: DedupStore,
        reviewer: DedupReviewer,
        org_id: str,
        *,
        similarity_threshold: float = 0.88,
        max_candidate_memories: int = 2000,
        poll_interval: float = 300.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.reviewer = reviewer
        self.org_id = str(org_id or "").strip()
        self.similarity_threshold = similarity_threshold
        self.max_candidate_memories = max_candidate_memories if max_candidate_memories > 0 else 2000
        self.poll_interval = poll_interval
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, store, reviewer, org_id, **kwargs) -> "DedupWorker":
        from config import get_config

        cfg = get_config().dedup
        return cls(
            store,
            reviewer,
            org_id,
            similarity_threshold=cfg.similarity_threshold,
            max_candidate_memories=cfg.max_candidate_memories,
            poll_interval=cfg.poll_interval_seconds,
            **kwargs,
        )

    def _run_batch(self) -> int:
        result = self.run_once(self.org_id)
        return result.clusters_reviewed

    def run_once(self, org_id: str) -> DedupRunResult:
        if self.store is None:
            raise ConfigurationError("dedup store is required")
        if self.reviewer is None:
            raise ConfigurationError("dedup reviewer is required")
        org_id = str(org_id or "").strip()
        if not org_id:
            raise ConfigurationError("org_id is required")

        result = DedupRunResult()
        try:
            memories = self.store.list_candidate_memories(org_id, self.max_candidate_memories)
        except Exception as e:
            raise RuntimeError(f"list dedup candidate pairs: {e}") from e

        pairs = []
        for pair in detect_candidate_pairs(memories, self.similarity_threshold):
            try:
                reviewed = self.store.is_pair_reviewed(org_id, pair.memory_id_1, pair.memory_id_2)
            except Exception as e:
                raise RuntimeError(f"check dedup reviewed pair: {e}") from e
            if not reviewed:
                pairs.append(pair)
        result.pairs_discovered = len(pairs)

        for cluster in cluster_pairs(pairs):
            if len(cluster.memory_ids) < 2:
                continue
            try:
                cluster_memories = self.store.list_memories_by_ids(org_id, cluster.memory_ids)
            except Exception as e:
                raise RuntimeError(f"load dedup cluster memories: {e}") from e

            prompt = build_review_prompt(cluster, cluster_memories)
            try:
                decision = self.reviewer.review(DedupReviewInput(
                    org_id=org_id,
                    cluster=cluster,
                    memories=cluster_memories,
                    prompt=prompt,
                ))
                validate_dedup_decision(cluster, decision)
            except (MalformedOutputError, DecisionValidationError) as e:
                result.invalid_decisions += 1
                self.logger.warning(
                    "[dedup] skipping cluster %s: %s", ",".join(cluster.memory_ids), e
                )
                continue
            except Exception as e:
                raise RuntimeError(f"review dedup cluster: {e}") from e

            if decision.merge is not None:
                try:
                    merged_id = self.store.create_merged_memory(
                        org_id, decision.merge.title, decision.merge.content, cluster.memory_ids
                    )
                except Exception as e:
                    raise RuntimeError(f"create merged dedup memory: {e}") from e
                try:
                    self.store.deprecate_memories(org_id, cluster.memory_ids, merged_id)
                except Exception as e:
                    raise RuntimeError(f"deprecate merged dedup cluster: {e}") from e
                result.merges_created += 1
                result.memories_deprecated += len(cluster.memory_ids)
                label = "merged"
            elif decision.deprecate:
                try:
                    self.store.deprecate_memories(org_id, decision.deprecate, decision.keep or None)
                except Exception as e:
                    raise RuntimeError(f"deprecate dedup memories: {e}") from e
                result.memories_deprecated += len(decision.deprecate)
                label = "deprecated"
            else:
                label = "keep_both"

            for a, b in all_pair_combinations(cluster.memory_ids):
                try:
                    self.store.record_reviewed_pair(org_id, a, b, label)
                except Exception as e:
                    raise RuntimeError(f"record dedup reviewed pair: {e}") from e
            result.clusters_reviewed += 1

        self.logger.info(
            "[dedup] org=%s pairs=%d clusters=%d deprecated=%d merges=%d invalid=%d",
            org_id,
            result.pairs_discovered,
            result.clusters_reviewed,
            result.memories_deprecated,
            result.merges_created,
            result.invalid_decisions,
        )
        return result
