"""Shared path and provider settings.

Consumers import from lib.config instead of reaching into the config tree.

Environment variable overrides (for testing):
  ELLIE_HOME       overrides the Ellie home directory (default ~/.ellie)
  ELLIE_DB_PATH    overrides config database.path
  OLLAMA_URL       overrides config embeddings.url
"""

import os
from pathlib import Path


def _get_cfg():
    """Lazy import to avoid circular dependency with config.py."""
    from config import get_config
    return get_config()


def get_ellie_home() -> Path:
    """Get the Ellie home directory (config, data and logs live below it)."""
    env_home = os.environ.get("ELLIE_HOME")
    if env_home:
        return Path(env_home)
    return Path.home() / ".ellie"


def _resolve(p: str) -> Path:
    return Path(p) if p.startswith('/') else get_ellie_home() / p


def get_db_path() -> Path:
    """Get the main Ellie database path.

    Respects ELLIE_DB_PATH env var for testing, then falls back to config.
    """
    env_path = os.environ.get("ELLIE_DB_PATH")
    if env_path:
        return Path(env_path)
    return _resolve(_get_cfg().database.path)


def get_tuning_audit_path() -> Path:
    """Get the JSONL tuning audit log path."""
    return _resolve(_get_cfg().tuner.audit_path)


def get_ollama_url() -> str:
    """Get the Ollama API URL.

    Respects OLLAMA_URL env var, then falls back to config.
    """
    env_url = os.environ.get("OLLAMA_URL")
    if env_url:
        return env_url
    return _get_cfg().embeddings.url


def get_embedding_model() -> str:
    return _get_cfg().embeddings.model


def get_embedding_dim() -> int:
    return _get_cfg().embeddings.dim
