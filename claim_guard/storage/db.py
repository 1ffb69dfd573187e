"""
Database connection management.

Each call opens its own short-lived SQLite connection, so ledger sinks may
write from any thread.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "claim_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open a connection to the claim guard database.

    Missing parent directories are created, except for ``:memory:``.

    Args:
        db_path: Path to SQLite database file
    """
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    return sqlite3.connect(db_path, timeout=10)
