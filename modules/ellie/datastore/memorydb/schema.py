"""Schema bootstrap for the Ellie SQLite store."""

import logging
from pathlib import Path
from typing import Optional

from lib.database import get_connection

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"


def init_schema(db_path: Optional[Path] = None) -> Path:
    """Create every Ellie table and index; safe to run repeatedly."""
    with open(SCHEMA_PATH) as f:
        schema = f.read()
    with get_connection(db_path) as conn:
        conn.executescript(schema)
        path = conn.execute("PRAGMA database_list").fetchone()["file"]
    logger.info("[schema] initialized %s", path)
    return Path(path)
