"""Retrieval plan: the ordered (scope, query, reason) steps for one request."""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from core.contracts.records import RetrievalStrategy
from core.contracts.stores import StrategyStore

logger = logging.getLogger(__name__)

SCOPES = ("room", "project", "org", "chat_history", "jsonl")

DEFAULT_TOPIC_EXPANSIONS: Dict[str, List[Dict[str, str]]] = {
    "deploy": [{"scope": "project", "query": "deployment process"}],
    "release": [{"scope": "project", "query": "deployment process"}],
    "migration": [{"scope": "project", "query": "database migration"}],
    "schema": [{"scope": "project", "query": "database migration"}],
    "incident": [{"scope": "org", "query": "incident postmortem"}],
    "outage": [{"scope": "org", "query": "incident postmortem"}],
    "prefer": [{"scope": "org", "query": "preferences"}],
    "convention": [{"scope": "org", "query": "coding conventions"}],
}

DEFAULT_STRATEGY = RetrievalStrategy(
    org_id="",
    version=0,
    scopes=list(SCOPES),
    topic_expansions=DEFAULT_TOPIC_EXPANSIONS,
)

_WORD = re.compile(r"[a-z0-9_]+")


@dataclass(frozen=True)
class RetrievalPlanStep:
    scope: str
    query: str
    reason: str


def _query_tokens(query: str) -> List[str]:
    return _WORD.findall(query.lower())


def _matches_keyword(tokens: Sequence[str], keyword: str) -> bool:
    # "deploy" matches "deploys", "deployment" and "deploying"
    return any(token.startswith(keyword) for token in tokens)


def build_retrieval_plan(
    strategy: Optional[RetrievalStrategy],
    query: str,
    room_id: str = "",
    project_id: str = "",
) -> List[RetrievalPlanStep]:
    strategy = strategy or DEFAULT_STRATEGY
    query = str(query or "").strip()
    if not query:
        return []
    room_id = str(room_id or "").strip()
    project_id = str(project_id or "").strip()
    version = strategy.version

    candidates: List[RetrievalPlanStep] = []
    for raw_scope in strategy.scopes or SCOPES:
        scope = str(raw_scope or "").strip().lower()
        if scope not in SCOPES:
            logger.warning("[retrieval] ignoring unknown strategy scope %r (version %s)", raw_scope, version)
            continue
        if scope == "room" and not room_id:
            continue
        if scope == "project" and not project_id:
            continue
        candidates.append(RetrievalPlanStep(scope, query, f"strategy v{version} scope {scope}"))

    tokens = _query_tokens(query)
    for keyword in sorted(strategy.topic_expansions or {}):
        if not _matches_keyword(tokens, keyword.lower()):
            continue
        for expansion in strategy.topic_expansions[keyword]:
            scope = str(expansion.get("scope") or "").strip().lower()
            expansion_query = str(expansion.get("query") or "").strip()
            if scope not in SCOPES or not expansion_query:
                continue
            if scope == "project" and not project_id:
                continue
            if scope == "room" and not room_id:
                continue
            candidates.append(RetrievalPlanStep(scope, expansion_query, f"topic expansion {keyword!r}"))

    seen = set()
    plan: List[RetrievalPlanStep] = []
    for step in candidates:
        key: Tuple[str, str] = (step.scope, step.query.lower())
        if key in seen:
            continue
        seen.add(key)
        plan.append(step)
    return plan


class RetrievalPlanner:
    """Resolves the org's active strategy and builds plans from it."""

    def __init__(self, strategy_store: Optional[StrategyStore] = None):
        self.strategy_store = strategy_store

    def active_strategy(self, org_id: str) -> RetrievalStrategy:
        if self.strategy_store is None:
            return DEFAULT_STRATEGY
        strategy = self.strategy_store.get_active_strategy(str(org_id or "").strip())
        return strategy if strategy is not None and strategy.active else DEFAULT_STRATEGY

    def plan(self, org_id: str, query: str, room_id: str = "", project_id: str = "") -> List[RetrievalPlanStep]:
        return build_retrieval_plan(self.active_strategy(org_id), query, room_id, project_id)
