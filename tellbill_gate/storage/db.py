"""
Database connection management.

Provides the SQLite connection backing the offline subscription cache.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "tellbill_gate.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open the cache database, creating its directory on first use.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite3.connect(str(path), timeout=5.0)
