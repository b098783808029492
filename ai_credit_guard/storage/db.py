"""
Database connection management.

Provides SQLite connections for the credit ledger and billing tables.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = ".ai-credit-guard.db"

# Seconds a writer waits for the reserved lock held by a concurrent ledger update
BUSY_TIMEOUT_SECONDS = 10.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled and rows
        accessible by column name
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
