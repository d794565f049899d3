"""Fail-hard policy helpers.

Centralizes how Ellie resolves fallback policy from config.
"""

from __future__ import annotations


def is_fail_hard_enabled() -> bool:
    """Return True when fallback behavior must be disabled.

    Source of truth: ellie.json retrieval.fail_hard (or failHard alias).
    Defaults to True if config is unavailable.
    """
    try:
        from config import get_config

        retrieval = getattr(get_config(), "retrieval", None)
        if retrieval is None:
            return True
        return bool(getattr(retrieval, "fail_hard", True))
    except Exception:
        return True
