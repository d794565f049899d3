"""Shared fixtures for all test modules."""
import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

# Keep import-time config loading quiet and off the developer's real home.
os.environ.setdefault("ELLIE_QUIET", "1")
os.environ.setdefault("MOCK_EMBEDDINGS", "1")
if not os.environ.get("ELLIE_HOME"):
    os.environ["ELLIE_HOME"] = str(Path(__file__).resolve().parents[3] / ".pytest-home")

import config
from lib.embeddings import reset_embeddings_provider
from lib.llm_clients import set_llm_provider


@pytest.fixture(autouse=True)
def ellie_home(tmp_path, monkeypatch):
    """Per-test Ellie home with a fresh database and reset singletons."""
    home = tmp_path / "ellie-home"
    home.mkdir()
    monkeypatch.setenv("ELLIE_HOME", str(home))
    monkeypatch.setenv("ELLIE_DB_PATH", str(home / "data" / "ellie.db"))
    monkeypatch.setenv("ELLIE_QUIET", "1")
    monkeypatch.setenv("MOCK_EMBEDDINGS", "1")
    monkeypatch.delenv("ELLIE_ORG_ID", raising=False)
    config._config = None
    reset_embeddings_provider()
    set_llm_provider(None)
    yield home
    config._config = None
    reset_embeddings_provider()
    set_llm_provider(None)


@pytest.fixture
def write_config(ellie_home):
    """Write ``<home>/config/ellie.json`` and reload config."""
    import json

    def _write(data):
        path = ellie_home / "config" / "ellie.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data), encoding="utf-8")
        return config.reload_config()

    return _write


@pytest.fixture
def db_path(ellie_home):
    """Initialized SQLite database path."""
    from datastore.memorydb.schema import init_schema

    path = ellie_home / "data" / "ellie.db"
    init_schema(path)
    return path
