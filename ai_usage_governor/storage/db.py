"""
Database connection management.

Provides SQLite connection and schema for data persistence.
"""

import sqlite3
from pathlib import Path


DEFAULT_DB_PATH = ".ai-usage-governor.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the credential and usage_record tables if they don't exist.

    ``usage_record`` is an append-only ledger: rows are inserted and, past
    the retention cap, deleted, but never updated.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS credential (
                id TEXT PRIMARY KEY,
                provider TEXT NOT NULL,
                name TEXT NOT NULL,
                encoded_secret TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                last_used_at TEXT,
                monthly_budget REAL NOT NULL,
                current_month_spend REAL NOT NULL DEFAULT 0,
                spend_month TEXT
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_record (
                id TEXT PRIMARY KEY,
                timestamp TEXT NOT NULL,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                feature TEXT NOT NULL,
                tokens_used INTEGER NOT NULL,
                estimated_cost REAL NOT NULL,
                success INTEGER NOT NULL,
                error_message TEXT
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_usage_provider_ts
            ON usage_record (provider, timestamp)
        """)
        conn.commit()
    finally:
        conn.close()
