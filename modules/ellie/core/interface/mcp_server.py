"""Ellie MCP Server: retrieval and evaluation tools via Model Context Protocol.

Usage:
    python3 mcp_server.py                          # stdio transport
    ELLIE_ORG_ID=<org> python3 mcp_server.py       # default org for every tool

Environment variables:
    ELLIE_ORG_ID     Default org id when a tool call omits one
    ELLIE_DB_PATH    Override database path
    ELLIE_HOME       Override Ellie home directory (default: ~/.ellie)
    OLLAMA_URL       Override Ollama endpoint
"""

import os
import sys
import logging
from typing import List, Optional

# MCP uses stdout for JSON-RPC; redirect stray prints to stderr before imports.
_real_stdout = sys.stdout
sys.stdout = sys.stderr

os.environ["ELLIE_QUIET"] = "1"

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from mcp.server.fastmcp import FastMCP

from core.interface.api import evaluate, retrieval_plan, retrieve

logger = logging.getLogger(__name__)

mcp = FastMCP("ellie", instructions=(
    "Ellie is an org-wide long-term memory. Use ellie_retrieve to answer a question "
    "from room context, project and org memories, chat history and raw session logs "
    "(the response says which tier answered, or that nothing was found), "
    "ellie_retrieval_plan to see which scopes a query would search, and "
    "ellie_evaluate to check retrieval quality gates against a labeled fixture."
))


@mcp.tool()
def ellie_retrieve(
    query: str,
    org_id: str = "",
    room_id: str = "",
    project_id: str = "",
    limit: int = 0,
    referenced_item_ids: Optional[List[str]] = None,
    missed_item_ids: Optional[List[str]] = None,
) -> dict:
    """Retrieve memory for a query through the tiered cascade.

    Args:
        query: Natural-language question or topic.
        org_id: Organization id (defaults to ELLIE_ORG_ID).
        room_id: Current room, enables room-context lookup.
        project_id: Current project, enables project docs and project memories.
        limit: Maximum items (0 uses retrieval.default_limit).
        referenced_item_ids: Item ids from an earlier answer that were used.
        missed_item_ids: Item ids the caller needed but did not get.

    Returns:
        Dict with tier_used (1-5), no_information, and items.
    """
    return retrieve(
        query,
        org_id=org_id,
        room_id=room_id,
        project_id=project_id,
        limit=limit,
        referenced_item_ids=referenced_item_ids or [],
        missed_item_ids=missed_item_ids or [],
    )


@mcp.tool()
def ellie_retrieval_plan(query: str, org_id: str = "", room_id: str = "", project_id: str = "") -> dict:
    """Show the ordered (scope, query, reason) steps the active strategy would run."""
    return {"steps": retrieval_plan(query, org_id=org_id, room_id=room_id, project_id=project_id)}


@mcp.tool()
def ellie_evaluate(fixture_path: str = "") -> dict:
    """Evaluate a JSONL fixture of labeled retrieval cases against the quality gates.

    Args:
        fixture_path: Fixture file (defaults to evaluator.fixture_path).

    Returns:
        Dict with metrics, per-gate results, passed, and failed_gates.
    """
    return evaluate(fixture_path or None)


if __name__ == "__main__":
    sys.stdout = _real_stdout  # Restore for MCP JSON-RPC protocol
    logger.info("[mcp] serving ellie tools on stdio")
    mcp.run(transport="stdio")
