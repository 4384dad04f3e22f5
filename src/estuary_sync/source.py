# src/estuary_sync/source.py
"""
Access to the relational source of truth.

The source is only ever asked two things: a page of not-yet-synced rows
after a given identifier, and to flip the synced flag for a set of
identifiers. Both are expressed as single statements over an asyncpg
connection.
"""

import logging
from typing import Any, List, Optional, Sequence

import asyncpg

from estuary_sync.config import SourceConfig
from estuary_sync.exceptions import SourceError
from estuary_sync.models import RECORD_FIELDS, Record

logger: logging.Logger = logging.getLogger(__name__)


def _quote_ident(name: str) -> str:
    """Quotes a SQL identifier, doubling any embedded quotes."""
    return '"' + name.replace('"', '""') + '"'


def _affected_rows(status: str) -> int:
    """
    Extracts the row count from an asyncpg command status string.

    Args:
        status (str): A status such as "UPDATE 42".

    Returns:
        int: The affected row count, or 0 if the status carries none.
    """
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


class PostgresSource:
    """
    Paginated reads and batched synced-flag updates against PostgreSQL.

    Usage:
        async with PostgresSource(config.source) as source:
            records = await source.fetch_unsynced(after_id=0, limit=100)
    """

    def __init__(self, config: SourceConfig) -> None:
        """
        Initializes the source adapter without connecting.

        Args:
            config (SourceConfig): Connection and naming details.
        """
        self._config: SourceConfig = config
        self._conn: Optional[asyncpg.Connection] = None
        table: str = f"{_quote_ident(config.schema)}.{_quote_ident(config.table)}"
        flag: str = _quote_ident(config.sync_column)
        columns: str = ", ".join(_quote_ident(name) for name in RECORD_FIELDS)
        self._select_sql: str = (
            f"SELECT {columns} FROM {table} "
            f"WHERE {flag} = false AND id > $1 "
            f"ORDER BY id ASC LIMIT $2"
        )
        self._update_sql: str = (
            f"UPDATE {table} SET {flag} = true "
            f"WHERE id = ANY($1::bigint[]) AND {flag} = false"
        )

    async def __aenter__(self) -> "PostgresSource":
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        """Opens the database connection."""
        logger.info("Connecting to PostgreSQL database...")
        try:
            self._conn = await asyncpg.connect(
                dsn=self._config.dsn,
                command_timeout=self._config.command_timeout_s,
            )
        except (OSError, asyncpg.PostgresError) as e:
            raise SourceError(f"Could not connect to the source database: {e}") from e
        logger.info("Database connection successful.")

    async def close(self) -> None:
        """Closes the database connection if it is open."""
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("Database connection closed.")

    def _connection(self) -> asyncpg.Connection:
        if self._conn is None:
            raise SourceError("Source database connection is not open.")
        return self._conn

    async def fetch_unsynced(self, after_id: int, limit: int) -> List[Record]:
        """
        Fetches the next page of rows whose synced flag is still false.

        Args:
            after_id (int): Exclusive lower bound on the identifier.
            limit (int): Maximum number of rows to return.

        Returns:
            List[Record]: Records ordered by ascending identifier.
        """
        rows: List[asyncpg.Record] = await self._connection().fetch(
            self._select_sql, after_id, limit
        )
        return [Record.from_mapping(dict(row)) for row in rows]

    async def mark_synced(self, ids: Sequence[int]) -> int:
        """
        Sets the synced flag for the given identifiers.

        Rows that are already flagged are left untouched, so repeating the
        call for the same identifiers changes nothing.

        Args:
            ids (Sequence[int]): Identifiers to flag.

        Returns:
            int: Number of rows whose flag was flipped by this call.
        """
        if not ids:
            return 0
        status: str = await self._connection().execute(self._update_sql, list(ids))
        return _affected_rows(status)

    async def count_unsynced(self) -> int:
        """Counts rows that still wait to be synced."""
        sql: str = (
            f"SELECT COUNT(*) FROM {_quote_ident(self._config.schema)}."
            f"{_quote_ident(self._config.table)} "
            f"WHERE {_quote_ident(self._config.sync_column)} = false"
        )
        count: Optional[int] = await self._connection().fetchval(sql)
        return count or 0

