import asyncio
import functools
from typing import Any, AsyncIterator, Optional, Sequence

from ..core.enums import ConnectionKind
from ..core.exceptions import TransientIOError
from ..core.models import DatasetDescriptor
from .base_source import Batch
from .sql_source import SqlSourceAdapter

DEFAULT_DRIVER = "ODBC Driver 18 for SQL Server"


class MSSQLSource(SqlSourceAdapter):
    """
    SQL Server source via pyodbc.

    pyodbc is blocking, so every call runs in the loop's default executor. It
    is imported on first use since it needs the unixODBC driver manager. The
    one connection is never used by two reads at once: a strategy drives a
    single read at a time.
    """

    kind = ConnectionKind.MSSQL

    def __init__(self, connection, decryptor=None):
        super().__init__(connection, decryptor)
        self._conn = None

    def connection_string(self, password: Optional[str]) -> str:
        options = self.connection.api_config or {}
        server = self.connection.host or "localhost"
        if self.connection.port:
            server = f"{server},{self.connection.port}"
        parts = [
            f"DRIVER={{{options.get('driver', DEFAULT_DRIVER)}}}",
            f"SERVER={server}",
            f"DATABASE={self.connection.database}",
            f"UID={self.connection.username}",
            f"PWD={password or ''}",
        ]
        if options.get("trust_server_certificate", True):
            parts.append("TrustServerCertificate=yes")
        return ";".join(parts) + ";"

    async def _run(self, func, *args):
        import pyodbc

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(func, *args))
        except pyodbc.OperationalError as e:
            raise TransientIOError(f"SQL Server call failed: {e}") from e

    async def connect(self):
        if self._conn is not None:
            return
        import pyodbc

        conn_str = self.connection_string(self._password())
        self._conn = await self._run(pyodbc.connect, conn_str)
        self._conn.autocommit = True

    async def disconnect(self):
        if self._conn is not None:
            await self._run(self._conn.close)
            self._conn = None

    def placeholder(self, index: int) -> str:
        return "?"

    def quote_identifier(self, name: str) -> str:
        return "[" + name.replace("]", "]]") + "]"

    def recent_days_filter(self, column_sql: str, days: int) -> str:
        if days == 0:
            return f"CAST({column_sql} AS DATE) = CAST(GETDATE() AS DATE)"
        return f"{column_sql} >= DATEADD(day, -{days}, CAST(GETDATE() AS DATE))"

    def apply_limit(self, select_list: str, rest: str, limit: Optional[int]) -> str:
        if limit is None:
            return f"SELECT {select_list} {rest}"
        return f"SELECT TOP ({int(limit)}) {select_list} {rest}"

    def table_hint(self, dataset: DatasetDescriptor) -> str:
        # Table reads run at READ UNCOMMITTED
        return " WITH (NOLOCK)"

    @staticmethod
    def _rows(cursor, rows) -> Batch:
        columns = [column[0] for column in cursor.description]
        return [dict(zip(columns, row)) for row in rows]

    async def _stream(self, sql: str, params: Sequence[Any], batch_size: int) -> AsyncIterator[Batch]:
        self.logger.debug(f"Streaming: {sql}")
        cursor = await self._run(self._conn.cursor)
        try:
            await self._run(cursor.execute, sql, *params)
            while True:
                rows = await self._run(cursor.fetchmany, batch_size)
                if not rows:
                    break
                yield self._rows(cursor, rows)
        finally:
            await self._run(cursor.close)

    async def _fetch(self, sql: str, params: Sequence[Any]) -> Batch:
        self.logger.debug(f"Fetching: {sql}")
        cursor = await self._run(self._conn.cursor)
        try:
            await self._run(cursor.execute, sql, *params)
            rows = await self._run(cursor.fetchall)
            return self._rows(cursor, rows)
        finally:
            await self._run(cursor.close)
