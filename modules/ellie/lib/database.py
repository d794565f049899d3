"""Shared database connection factory.

Provides a configured SQLite connection with Row factory and FK enforcement.
Every Ellie store opens connections through this helper.

Usage:
    with get_connection() as conn:
        conn.execute("SELECT ...")
    # Connection is automatically committed and closed.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from .config import get_db_path

# sqlite-vec: optional vector search extension
_has_sqlite_vec = False
try:
    import sqlite_vec
    _has_sqlite_vec = True
except ImportError:
    pass


def has_vec() -> bool:
    """Return True if sqlite-vec is available."""
    return _has_sqlite_vec


@contextmanager
def get_connection(db_path: Optional[Path] = None):
    """Get a configured SQLite connection as a context manager.

    Args:
        db_path: Override DB path. Defaults to config-derived main DB path.

    Yields:
        sqlite3.Connection with row_factory=sqlite3.Row and FK enforcement.
        If sqlite-vec is installed, the extension is loaded automatically.
        Commits on clean exit, rolls back on exception, always closes.
    """
    path = Path(db_path) if db_path else get_db_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 30000")  # workers share one file
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute("PRAGMA temp_store = MEMORY")
    if _has_sqlite_vec:
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
