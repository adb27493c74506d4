"""
Clinic Back Office - Legacy Data Sources

This module defines the abstraction for the legacy MSSQL source and provides
concrete implementations for production and for tests/offline dry runs.

The migration engine reads through two calls:

    total = await executor.count(query)
    rows = await executor.fetch(query, query.page_sql(offset, limit))

which fall back to `execute_query(sql)` for a real database. SourceQuery
builds the small SQL dialect the engine uses (COUNT, TOP n and
OFFSET/FETCH pagination), so every migration describes its source table the
same way and the in-memory executor can answer the same statements.
"""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceQuery:
    """
    A SELECT over one legacy table.

    `predicate` is the row-level equivalent of `where`, used by executors
    that hold rows in memory instead of running SQL.
    """
    table: str
    columns: Tuple[str, ...] = ()
    where: Optional[str] = None
    order_by: Optional[str] = None
    predicate: Optional[Callable[[Dict[str, Any]], bool]] = field(default=None, compare=False)

    def matches(self, row: Dict[str, Any]) -> bool:
        return self.predicate is None or bool(self.predicate(row))

    def _select_list(self) -> str:
        return ",\n    ".join(self.columns) if self.columns else "*"

    def _where_clause(self) -> str:
        return f"\nWHERE {self.where}" if self.where else ""

    def count_sql(self) -> str:
        return f"SELECT COUNT(*) AS total FROM {self.table}{self._where_clause()}"

    def all_sql(self) -> str:
        sql = f"SELECT\n    {self._select_list()}\nFROM {self.table}{self._where_clause()}"
        if self.order_by:
            sql += f"\nORDER BY {self.order_by}"
        return sql

    def page_sql(self, offset: int, limit: int) -> str:
        # OFFSET/FETCH requires an ORDER BY in T-SQL
        order_by = self.order_by or "(SELECT NULL)"
        return (
            f"SELECT\n    {self._select_list()}\nFROM {self.table}{self._where_clause()}"
            f"\nORDER BY {order_by}"
            f"\nOFFSET {int(offset)} ROWS FETCH NEXT {int(limit)} ROWS ONLY"
        )

    def sample_sql(self, limit: int) -> str:
        sql = f"SELECT TOP {int(limit)}\n    {self._select_list()}\nFROM {self.table}{self._where_clause()}"
        if self.order_by:
            sql += f"\nORDER BY {self.order_by}"
        return sql


class LegacyQueryExecutor(ABC):
    """
    Abstract base class for legacy query executors.

    Implementations return each row as a dict keyed by column name.
    """

    async def connect(self) -> None:
        """Open the underlying connection, if any."""

    async def close(self) -> None:
        """Release the underlying connection, if any."""

    @abstractmethod
    async def execute_query(self, sql: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def get_source_name(self) -> str:
        """Return a descriptive name for this source."""
        pass

    async def fetch(self, query: SourceQuery, sql: str) -> List[Dict[str, Any]]:
        """Run `sql`, one of the statements built from `query`."""
        return await self.execute_query(sql)

    async def count(self, query: SourceQuery) -> int:
        rows = await self.execute_query(query.count_sql())
        if not rows:
            return 0
        return int(next(iter(rows[0].values())) or 0)


class MSSQLQueryExecutor(LegacyQueryExecutor):
    """
    pyodbc-backed executor for the legacy SQL Server database.

    pyodbc is blocking, so every call runs in a worker thread; queries are
    still issued one at a time over a single connection.
    """

    def __init__(self, connection_string: str, timeout: int = 0):
        if not connection_string:
            raise ValueError("MSSQL connection string is required")
        self._connection_string = connection_string
        self._timeout = timeout
        self._connection = None
        self._pyodbc = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        if self._connection is not None:
            return
        # pyodbc loads the system ODBC driver manager on import
        import pyodbc
        self._pyodbc = pyodbc
        self._connection = await asyncio.to_thread(
            pyodbc.connect, self._connection_string, timeout=self._timeout
        )
        logger.info("Connected to legacy MSSQL database")

    async def close(self) -> None:
        if self._connection is None:
            return
        connection, self._connection = self._connection, None
        await asyncio.to_thread(connection.close)
        logger.info("Closed legacy MSSQL connection")

    def _run(self, sql: str) -> List[Dict[str, Any]]:
        cursor = self._connection.cursor()
        try:
            cursor.execute(sql)
            columns = [column[0] for column in cursor.description]
            return [dict(zip(columns, row)) for row in cursor.fetchall()]
        finally:
            cursor.close()

    async def execute_query(self, sql: str) -> List[Dict[str, Any]]:
        if self._connection is None:
            await self.connect()
        async with self._lock:
            try:
                return await asyncio.to_thread(self._run, sql)
            except self._pyodbc.Error as e:
                logger.error(f"Legacy query failed: {e}")
                raise

    def get_source_name(self) -> str:
        return "mssql"


_FROM_RE = re.compile(r"\bFROM\s+\[?(\w+)\]?", re.IGNORECASE)
_COUNT_RE = re.compile(r"^\s*SELECT\s+COUNT\(\*\)", re.IGNORECASE)
_TOP_RE = re.compile(r"^\s*SELECT\s+TOP\s+(\d+)", re.IGNORECASE)
_PAGE_RE = re.compile(r"OFFSET\s+(\d+)\s+ROWS\s+FETCH\s+NEXT\s+(\d+)\s+ROWS\s+ONLY", re.IGNORECASE)


class InMemoryQueryExecutor(LegacyQueryExecutor):
    """
    In-memory executor for testing and offline dry runs.

    Understands the statements SourceQuery produces: the table name, COUNT(*),
    TOP n and OFFSET/FETCH. The SQL WHERE text is not parsed; `count()` and
    `fetch()` apply the query's `predicate` instead, so rows the legacy
    WHERE clause excludes are excluded here too. Every statement is kept in
    `queries` for assertions.
    """

    def __init__(self, tables: Optional[Dict[str, Sequence[Dict[str, Any]]]] = None, name: str = "in_memory"):
        self._name = name
        self._tables: Dict[str, List[Dict[str, Any]]] = {
            table: list(rows) for table, rows in (tables or {}).items()
        }
        self.queries: List[str] = []

    def add_rows(self, table: str, rows: Sequence[Dict[str, Any]]) -> None:
        self._tables.setdefault(table, []).extend(rows)

    def _rows(self, table: str) -> List[Dict[str, Any]]:
        return self._tables.get(table, [])

    def _answer(self, sql: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if _COUNT_RE.match(sql):
            return [{"total": len(rows)}]

        top = _TOP_RE.match(sql)
        if top:
            return [dict(r) for r in rows[:int(top.group(1))]]

        page = _PAGE_RE.search(sql)
        if page:
            offset, limit = int(page.group(1)), int(page.group(2))
            return [dict(r) for r in rows[offset:offset + limit]]

        return [dict(r) for r in rows]

    async def execute_query(self, sql: str) -> List[Dict[str, Any]]:
        self.queries.append(sql)

        match = _FROM_RE.search(sql)
        if not match:
            raise ValueError(f"Unsupported query: {sql}")
        return self._answer(sql, self._rows(match.group(1)))

    async def fetch(self, query: SourceQuery, sql: str) -> List[Dict[str, Any]]:
        self.queries.append(sql)
        rows = [r for r in self._rows(query.table) if query.matches(r)]
        return self._answer(sql, rows)

    async def count(self, query: SourceQuery) -> int:
        rows = await self.fetch(query, query.count_sql())
        return rows[0]["total"]

    def get_source_name(self) -> str:
        return self._name


class JsonFileQueryExecutor(InMemoryQueryExecutor):
    """
    Legacy table export read from a JSON file:
    {
        "source_name": "Clinic export 2024-01",
        "tables": {
            "sb_clients": [{"sb_clients_id": 1, ...}, ...],
            "Appointments": [...]
        }
    }
    """

    def __init__(self, file_path: str):
        super().__init__()
        self._file_path = Path(file_path)
        self._loaded = False

    async def connect(self) -> None:
        self._load()

    def _load(self) -> None:
        if self._loaded:
            return

        if not self._file_path.exists():
            raise FileNotFoundError(f"Migration source file not found: {self._file_path}")

        with open(self._file_path, "r", encoding="utf-8") as f:
            data = json.load(f)

        self._name = data.get("source_name", self._file_path.name)
        for table, rows in data.get("tables", {}).items():
            self.add_rows(table, rows)
        self._loaded = True
        logger.info(f"Loaded {len(self._tables)} legacy tables from {self._file_path}")

    def _rows(self, table: str) -> List[Dict[str, Any]]:
        self._load()
        return super()._rows(table)


def not_null(*columns: str) -> Callable[[Dict[str, Any]], bool]:
    """Row predicate for `col IS NOT NULL AND ...`."""
    def predicate(row: Dict[str, Any]) -> bool:
        return all(row.get(column) is not None for column in columns)
    return predicate
