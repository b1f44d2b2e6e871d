import asyncio
from typing import Any, AsyncIterator, Optional, Sequence

import aiomysql
import pymysql

from ..core.enums import ConnectionKind
from ..core.exceptions import TransientIOError
from .base_source import Batch
from .sql_source import SqlSourceAdapter

TRANSIENT_ERRORS = (OSError, asyncio.TimeoutError, pymysql.err.OperationalError, pymysql.err.InterfaceError)


class MySQLSource(SqlSourceAdapter):
    """MySQL source over an aiomysql pool; streams through unbuffered cursors"""

    kind = ConnectionKind.MYSQL

    def __init__(self, connection, decryptor=None):
        super().__init__(connection, decryptor)
        self._pool: Optional[aiomysql.Pool] = None

    async def connect(self):
        if self._pool is not None:
            return
        try:
            self._pool = await aiomysql.create_pool(
                host=self.connection.host,
                port=self.connection.port or 3306,
                user=self.connection.username,
                password=self._password() or "",
                db=self.connection.database,
                autocommit=True,
                minsize=1,
                maxsize=2,
            )
        except TRANSIENT_ERRORS as e:
            raise TransientIOError(f"Cannot connect to MySQL {self.connection.host}: {e}") from e

    async def disconnect(self):
        if self._pool:
            self._pool.close()
            await self._pool.wait_closed()
            self._pool = None

    def placeholder(self, index: int) -> str:
        return "%s"

    def quote_identifier(self, name: str) -> str:
        return "`" + name.replace("`", "``") + "`"

    def date_expr(self, column_sql: str) -> str:
        return f"DATE({column_sql})"

    def recent_days_filter(self, column_sql: str, days: int) -> str:
        if days == 0:
            return f"DATE({column_sql}) = CURDATE()"
        return f"{column_sql} >= DATE_SUB(CURDATE(), INTERVAL {days} DAY)"

    async def _stream(self, sql: str, params: Sequence[Any], batch_size: int) -> AsyncIterator[Batch]:
        self.logger.debug(f"Streaming: {sql}")
        try:
            async with self._pool.acquire() as conn:
                async with conn.cursor(aiomysql.SSDictCursor) as cur:
                    await cur.execute(sql, list(params) or None)
                    while True:
                        rows = await cur.fetchmany(batch_size)
                        if not rows:
                            break
                        yield list(rows)
        except TRANSIENT_ERRORS as e:
            raise TransientIOError(f"MySQL read failed: {e}") from e

    async def _fetch(self, sql: str, params: Sequence[Any]) -> Batch:
        self.logger.debug(f"Fetching: {sql}")
        try:
            async with self._pool.acquire() as conn:
                async with conn.cursor(aiomysql.DictCursor) as cur:
                    await cur.execute(sql, list(params) or None)
                    return list(await cur.fetchall())
        except TRANSIENT_ERRORS as e:
            raise TransientIOError(f"MySQL read failed: {e}") from e
