"""SQL client port used by execute_sql, and its SQLite adapter."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import aiosqlite

from aiq.db.connection import open_connection

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class QueryResult:
    columns: list[str] = field(default_factory=list)
    rows: list[list[str]] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)


class SqlClient(Protocol):
    engine: str

    async def query(self, sql: str) -> QueryResult: ...

    async def describe_schema(self) -> str: ...

    async def close(self) -> None: ...


def _cell(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class SqliteClient:
    engine = "sqlite"

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            self._conn = await open_connection(self.db_path)
        return self._conn

    async def query(self, sql: str) -> QueryResult:
        conn = await self._connection()
        cursor = await conn.execute(sql)
        try:
            columns = [col[0] for col in cursor.description or []]
            rows = [[_cell(value) for value in row] for row in await cursor.fetchall()] if columns else []
        finally:
            await cursor.close()
        if not columns:
            await conn.commit()
            logger.debug("statement affected %s row(s)", cursor.rowcount)
        return QueryResult(columns=columns, rows=rows)

    async def describe_schema(self) -> str:
        conn = await self._connection()
        async with conn.execute(
            "SELECT name, sql FROM sqlite_master WHERE type IN ('table', 'view') "
            "AND name NOT LIKE 'sqlite_%' ORDER BY name"
        ) as cursor:
            entries = await cursor.fetchall()
        return "\n\n".join(f"{row['sql']};" for row in entries if row["sql"])

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
