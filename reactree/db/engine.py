"""PostgreSQL database engine for ReAcTree.

Manages the connection via psycopg3 and creates the two append-only memory
logs. PostgresLogBackend builds on top and replays each log ``ORDER BY seq``:
the BIGSERIAL column is the only append order the Memory Store trusts, so
"latest record wins" holds across connections and processes.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional, Sequence

import psycopg
from psycopg.rows import dict_row

from reactree.core.config import DatabaseConfig
from reactree.core.exceptions import ConnectionError, DatabaseError, SchemaInitError

logger = logging.getLogger("reactree.db")

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

# Created by schema.sql; rows are inserted, never updated or deleted.
MEMORY_LOG_TABLES = ("working_memory_log", "episodic_memory_log")


class DatabaseEngine:
    """PostgreSQL engine wrapping psycopg3.

    Usage:
        engine = DatabaseEngine(config)
        rows = engine.fetch_all("SELECT * FROM working_memory_log WHERE run_id = %s", [run_id])
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._conn: Optional[psycopg.Connection] = None

    @property
    def conn(self) -> psycopg.Connection:
        if self._conn is None or self._conn.closed:
            self._connect()
        assert self._conn is not None
        return self._conn

    def _connect(self) -> None:
        try:
            self._conn = psycopg.connect(
                self.config.connection_string,
                row_factory=dict_row,
                autocommit=True,
                connect_timeout=self.config.connect_timeout,
            )
            logger.info("Connected to PostgreSQL at %s:%s/%s",
                        self.config.host, self.config.port, self.config.dbname)
        except psycopg.OperationalError as e:
            raise ConnectionError(f"Failed to connect to database: {e}") from e

    def initialize_schema(self) -> None:
        """Run schema.sql, then confirm both memory logs exist.

        Idempotent: every statement in schema.sql is IF NOT EXISTS.
        """
        if not SCHEMA_PATH.exists():
            raise SchemaInitError(f"Schema file not found: {SCHEMA_PATH}")

        sql = SCHEMA_PATH.read_text()
        try:
            self.conn.execute(sql)
        except psycopg.Error as e:
            raise SchemaInitError(f"Failed to initialize schema: {e}") from e

        missing = self.missing_tables()
        if missing:
            raise SchemaInitError(f"Memory log table(s) missing after schema init: {', '.join(missing)}")
        logger.info("Memory log schema ready (%s)", ", ".join(MEMORY_LOG_TABLES))

    def missing_tables(self) -> list[str]:
        """Memory log tables absent from the connected database's current schema."""
        rows = self.fetch_all(
            """SELECT table_name::text AS table_name FROM information_schema.tables
               WHERE table_schema = current_schema() AND table_name::text = ANY(%s)""",
            [list(MEMORY_LOG_TABLES)],
        )
        present = {row["table_name"] for row in rows}
        return [table for table in MEMORY_LOG_TABLES if table not in present]

    def execute(self, query: str, params: Optional[Sequence[Any]] = None) -> None:
        """Execute a query without returning results."""
        try:
            self.conn.execute(query, params)
        except psycopg.Error as e:
            raise DatabaseError(f"Query failed: {e}") from e

    def fetch_all(self, query: str, params: Optional[Sequence[Any]] = None) -> list[dict[str, Any]]:
        """Execute a query and return all rows as dicts."""
        try:
            cur = self.conn.execute(query, params)
            return cur.fetchall()
        except psycopg.Error as e:
            raise DatabaseError(f"Query failed: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        if self._conn and not self._conn.closed:
            self._conn.close()
            logger.info("Database connection closed")

    def __del__(self):
        self.close()
