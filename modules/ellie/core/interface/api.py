"""Ellie public API: the operations the MCP server and CLI route to.

Each function wires the SQLite stores and configured providers, runs one
operation and returns plain JSON-ready data.
"""

import logging
import os
import random
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from config import get_config
from core.evaluation.evaluator import Evaluator, EvaluatorSettings, load_evaluator_cases_jsonl
from core.evaluation.tuner import tuner_from_config
from core.retrieval.cascade import RetrievalCascadeService, RetrievalRequest
from core.retrieval.jsonl_scanner import FileJSONLScanner
from core.retrieval.planner import RetrievalPlanner
from datastore.memorydb.stores import (
    RetrievalQualityStore,
    RetrievalSQLiteStore,
    RetrievalStrategyStore,
)
from lib.config import get_ellie_home
from lib.embeddings import get_embeddings_provider
from lib.errors import ConfigurationError

logger = logging.getLogger(__name__)


def resolve_org_id(org_id: Optional[str] = None) -> str:
    """Explicit org id, else ``ELLIE_ORG_ID``."""
    value = str(org_id or "").strip() or os.environ.get("ELLIE_ORG_ID", "").strip()
    if not value:
        raise ConfigurationError("org_id is required (pass it or set ELLIE_ORG_ID)")
    return value


def _resolve_path(value: str) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else get_ellie_home() / path


def build_retrieval_service(db_path: Optional[Path] = None) -> RetrievalCascadeService:
    cfg = get_config().retrieval
    scanner = None
    if str(cfg.jsonl_root or "").strip():
        scanner = FileJSONLScanner(_resolve_path(cfg.jsonl_root), max_files=cfg.jsonl_max_files)
    return RetrievalCascadeService(
        RetrievalSQLiteStore(db_path),
        jsonl_scanner=scanner,
        quality_sink=RetrievalQualityStore(db_path),
        query_embedder=get_embeddings_provider(),
    )


def retrieve(
    query: str,
    org_id: Optional[str] = None,
    room_id: str = "",
    project_id: str = "",
    limit: int = 0,
    referenced_item_ids: Sequence[str] = (),
    missed_item_ids: Sequence[str] = (),
    db_path: Optional[Path] = None,
) -> Dict[str, Any]:
    """Run the retrieval cascade and return the answering tier and items."""
    request = RetrievalRequest(
        org_id=resolve_org_id(org_id),
        query=query,
        room_id=room_id,
        project_id=project_id,
        limit=limit if limit > 0 else get_config().retrieval.default_limit,
        referenced_item_ids=list(referenced_item_ids or []),
        missed_item_ids=list(missed_item_ids or []),
    )
    response = build_retrieval_service(db_path).retrieve(request)
    return {
        "tier_used": response.tier_used,
        "no_information": response.no_information,
        "items": [asdict(item) for item in response.items],
    }


def retrieval_plan(
    query: str,
    org_id: Optional[str] = None,
    room_id: str = "",
    project_id: str = "",
    db_path: Optional[Path] = None,
) -> List[Dict[str, str]]:
    planner = RetrievalPlanner(RetrievalStrategyStore(db_path))
    steps = planner.plan(resolve_org_id(org_id), query, room_id, project_id)
    return [asdict(step) for step in steps]


def _fixture_path(fixture_path: Optional[str]) -> Path:
    value = str(fixture_path or "").strip() or str(get_config().evaluator.fixture_path or "").strip()
    if not value:
        raise ConfigurationError("evaluator fixture path is required")
    return _resolve_path(value)


def evaluate(fixture_path: Optional[str] = None) -> Dict[str, Any]:
    """Evaluate a JSONL fixture against the configured gates."""
    evaluator = Evaluator(EvaluatorSettings.from_config())
    return evaluator.run_from_jsonl(_fixture_path(fixture_path)).to_dict()


def tune(fixture_path: Optional[str] = None, seed: Optional[int] = None) -> Dict[str, Any]:
    """Run one tuning attempt over a fixture and return the decision."""
    cases = load_evaluator_cases_jsonl(_fixture_path(fixture_path))
    evaluator = Evaluator(EvaluatorSettings.from_config())
    rng = random.Random(seed) if seed is not None else None
    tuner, current = tuner_from_config(evaluator.run, cases, rng=rng)
    decision = tuner.run_once(current)
    logger.info("[tuner] %s via api: %s %s", decision.attempt_id, decision.status, decision.reason or "")
    return {
        "attempt_id": decision.attempt_id,
        "status": decision.status,
        "reason": decision.reason,
        "applied": decision.applied,
        "rolled_back": decision.rolled_back,
        "baseline_config": asdict(decision.baseline_config),
        "candidate_config": asdict(decision.candidate_config),
        "baseline_result": decision.baseline_result.to_dict(),
        "candidate_result": decision.candidate_result.to_dict(),
    }
