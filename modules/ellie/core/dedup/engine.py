"""
Dedup engine: candidate pair detection, clustering and decision checks.

Pure functions only; the worker in core/dedup/worker.py wires them to a
store and an LLM reviewer.
"""

from itertools import combinations
from typing import Any, Dict, Iterable, List, Sequence, Set, Tuple

from core.contracts.records import (
    DedupCluster,
    DedupDecision,
    DedupMemory,
    DedupMerge,
    DedupPair,
    DedupReviewMemory,
)
from lib.embeddings import cosine_similarity
from lib.errors import DecisionValidationError, MalformedOutputError
from lib.normalize import dedupe_trimmed

DEFAULT_SIMILARITY_THRESHOLD = 0.88


def normalize_threshold(threshold: float) -> float:
    if threshold is None or threshold <= 0:
        return DEFAULT_SIMILARITY_THRESHOLD
    if threshold > 1:
        return 1.0
    return float(threshold)


def canonical_pair(a: str, b: str) -> Tuple[str, str]:
    return (a, b) if a <= b else (b, a)


def detect_candidate_pairs(memories: Iterable[DedupMemory], threshold: float) -> List[DedupPair]:
    """Return canonical pairs of active, embedded memories at or above threshold."""
    threshold = normalize_threshold(threshold)
    eligible: List[DedupMemory] = []
    for mem in memories or []:
        if str(mem.status or "").strip().lower() != "active":
            continue
        if not str(mem.memory_id or "").strip() or not mem.embedding:
            continue
        eligible.append(mem)
    eligible.sort(key=lambda m: m.memory_id.strip())

    pairs: List[DedupPair] = []
    for i in range(len(eligible)):
        left = eligible[i]
        for j in range(i + 1, len(eligible)):
            right = eligible[j]
            similarity = cosine_similarity(left.embedding, right.embedding)
            if similarity is None or similarity < threshold:
                continue
            a, b = canonical_pair(left.memory_id.strip(), right.memory_id.strip())
            if a == b:
                continue
            pairs.append(DedupPair(memory_id_1=a, memory_id_2=b, similarity=similarity))
    pairs.sort(key=lambda p: (p.memory_id_1, p.memory_id_2))
    return pairs


def cluster_pairs(pairs: Iterable[DedupPair]) -> List[DedupCluster]:
    """Group pairs into connected components, deterministically ordered."""
    adjacency: Dict[str, Set[str]] = {}
    for pair in pairs or []:
        a = str(pair.memory_id_1 or "").strip()
        b = str(pair.memory_id_2 or "").strip()
        if not a or not b or a == b:
            continue
        a, b = canonical_pair(a, b)
        adjacency.setdefault(a, set()).add(b)
        adjacency.setdefault(b, set()).add(a)

    visited: Set[str] = set()
    clusters: List[DedupCluster] = []
    for start in sorted(adjacency):
        if start in visited:
            continue
        component: List[str] = []
        stack = [start]
        while stack:
            node = stack.pop()
            if node in visited:
                continue
            visited.add(node)
            component.append(node)
            for neighbor in sorted(adjacency[node], reverse=True):
                if neighbor not in visited:
                    stack.append(neighbor)
        component.sort()
        clusters.append(DedupCluster(memory_ids=component))
    clusters.sort(key=lambda c: c.memory_ids[0] if c.memory_ids else "")
    return clusters


def all_pair_combinations(memory_ids: Sequence[str]) -> List[Tuple[str, str]]:
    """Every canonical pair inside a cluster, sorted."""
    ids = sorted(dedupe_trimmed(memory_ids))
    return [canonical_pair(a, b) for a, b in combinations(ids, 2)]


def validate_dedup_decision(cluster: DedupCluster, decision: DedupDecision) -> None:
    """Raise DecisionValidationError when ``decision`` is unsafe to apply."""
    members = set(dedupe_trimmed(cluster.memory_ids))
    if len(members) < 2:
        raise DecisionValidationError("dedup cluster must contain at least two memories")

    keep = str(decision.keep or "").strip()
    deprecate = dedupe_trimmed(decision.deprecate)
    merge = decision.merge

    if keep and keep not in members:
        raise DecisionValidationError(f"keep id {keep} is not in the cluster")
    for memory_id in deprecate:
        if memory_id not in members:
            raise DecisionValidationError(f"deprecate id {memory_id} is not in the cluster")
    if keep and keep in deprecate:
        raise DecisionValidationError(f"keep id {keep} is also marked deprecated")

    if merge is not None:
        if not str(merge.title or "").strip() or not str(merge.content or "").strip():
            raise DecisionValidationError("merge requires a non-empty title and content")
        return

    if not keep:
        raise DecisionValidationError("decision without merge must name a memory to keep")
    if set(deprecate) == members:
        raise DecisionValidationError("deprecating the whole cluster requires a merge")


def parse_dedup_decision(payload: Any) -> DedupDecision:
    """Turn the reviewer's JSON object into a DedupDecision.

    Expected shape::

        {"keep": "<id>", "deprecate": ["<id>", ...],
         "merge": {"title": "...", "content": "..."} | null}
    """
    if not isinstance(payload, dict):
        raise MalformedOutputError("dedup decision must be a JSON object")
    keep = payload.get("keep") or payload.get("keep_id") or ""
    if not isinstance(keep, str):
        raise MalformedOutputError("dedup decision keep must be a string")
    deprecate = payload.get("deprecate")
    if deprecate is None:
        deprecate = payload.get("deprecate_ids") or []
    if not isinstance(deprecate, list) or not all(isinstance(x, str) for x in deprecate):
        raise MalformedOutputError("dedup decision deprecate must be a list of ids")

    merge = None
    raw_merge = payload.get("merge")
    if raw_merge is not None:
        if not isinstance(raw_merge, dict):
            raise MalformedOutputError("dedup decision merge must be an object or null")
        merge = DedupMerge(
            title=str(raw_merge.get("title") or "").strip(),
            content=str(raw_merge.get("content") or "").strip(),
        )
    return DedupDecision(keep=keep.strip(), deprecate=dedupe_trimmed(deprecate), merge=merge)


def build_review_prompt(cluster: DedupCluster, memories: Sequence[DedupReviewMemory]) -> str:
    lines = [
        "You review a cluster of near-duplicate memories. Return strict JSON only.",
        'Output schema: {"keep":"<memory_id>","deprecate":["<memory_id>"],'
        '"merge":{"title":"...","content":"..."}|null}',
        "Rules:",
        "- Every id must come from the cluster below.",
        "- Keep the most complete and current memory; deprecate the redundant ones.",
        "- If none of them is complete alone, set merge to a combined memory; the whole cluster is replaced.",
        "- If the memories are distinct, keep one and deprecate nothing.",
        "",
        "Cluster memory ids: " + ", ".join(cluster.memory_ids),
        "",
        "Memories:",
    ]
    for mem in memories:
        lines.append(f"- id={mem.memory_id}")
        lines.append(f"  title: {mem.title.strip()}")
        lines.append(f"  content: {mem.content.strip()}")
    return "\n".join(lines) + "\n"
