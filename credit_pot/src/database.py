"""DuckDB persistence for encrypted credentials and automation rules.

Credential rows hold only SecretBox ciphertext. A row is never hard-deleted
by normal flow; disconnecting sets ``deleted`` and stamps ``deleted_at``.
At most one row per (user_id, provider) has ``deleted = FALSE``.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

import duckdb
from rich.table import Table

from credit_pot.src.config import DB_FILE
from credit_pot.src.utils import console

logger = logging.getLogger(__name__)

TABLES = ["credentials", "automation_rules"]

SCHEMA = """
-- ============================================
-- CREDIT POT DATABASE SCHEMA
-- ============================================

-- OAuth grants (ciphertext only)
CREATE TABLE IF NOT EXISTS credentials (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    access_token TEXT NOT NULL,
    refresh_token TEXT,
    expires_at BIGINT NOT NULL,      -- epoch ms
    scope TEXT DEFAULT '',
    created_at BIGINT NOT NULL,
    updated_at BIGINT NOT NULL,
    deleted BOOLEAN DEFAULT FALSE,
    deleted_at BIGINT
);

-- Automation rules (JSON documents)
CREATE TABLE IF NOT EXISTS automation_rules (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    is_active BOOLEAN DEFAULT TRUE,
    rule TEXT NOT NULL,
    created_at BIGINT NOT NULL,
    updated_at BIGINT NOT NULL
);

-- ============================================
-- INDEXES
-- ============================================

CREATE INDEX IF NOT EXISTS idx_credentials_user ON credentials(user_id);
CREATE INDEX IF NOT EXISTS idx_credentials_user_provider ON credentials(user_id, provider);
CREATE INDEX IF NOT EXISTS idx_rules_user ON automation_rules(user_id);
"""


class CredentialDatabase:
    """Interface for the credentials DuckDB database."""

    def __init__(self, db_path: str | Path = DB_FILE) -> None:
        """Initialize database with given path."""
        self.db_path = Path(db_path)

    @contextmanager
    def connect(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        """Open a connection for the duration of one operation."""
        conn = duckdb.connect(str(self.db_path))
        try:
            yield conn
        finally:
            conn.close()

    def setup(self) -> None:
        """Create all tables and indexes."""
        with self.connect() as conn:
            conn.execute(SCHEMA)
        logger.debug(f"Database setup complete: {self.db_path}")

    def reset(self) -> None:
        """Drop all tables and recreate."""
        with self.connect() as conn:
            conn.execute("DROP TABLE IF EXISTS automation_rules")
            conn.execute("DROP TABLE IF EXISTS credentials")
            conn.execute(SCHEMA)
        logger.info(f"Database reset complete: {self.db_path}")

    def stats(self) -> dict[str, int]:
        """Get row counts per table, plus live credentials."""
        with self.connect() as conn:
            result = {}
            for table in TABLES:
                row = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()  # noqa: S608
                result[table] = row[0] if row else 0
            row = conn.execute("SELECT COUNT(*) FROM credentials WHERE NOT deleted").fetchone()
            result["live_credentials"] = row[0] if row else 0
            return result

    def print_stats(self) -> None:
        """Print database statistics."""
        table = Table(title="Database Statistics", show_header=True, header_style="bold")
        table.add_column("Table")
        table.add_column("Rows", justify="right")
        for tbl, count in self.stats().items():
            table.add_row(tbl, f"{count:,}")
        console.print()
        console.print(table)
