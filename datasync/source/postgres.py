import asyncio
from typing import Any, AsyncIterator, Optional, Sequence

import asyncpg

from ..core.enums import ConnectionKind
from ..core.exceptions import TransientIOError
from .base_source import Batch
from .sql_source import SqlSourceAdapter

TRANSIENT_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.InterfaceError,
    asyncpg.PostgresConnectionError,
    asyncpg.CannotConnectNowError,
)


class PostgresSource(SqlSourceAdapter):
    """PostgreSQL source over an asyncpg pool; streams through server-side cursors"""

    kind = ConnectionKind.POSTGRESQL

    def __init__(self, connection, decryptor=None):
        super().__init__(connection, decryptor)
        self._pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Connect to PostgreSQL database"""
        if self._pool is not None:
            return
        try:
            self._pool = await asyncpg.create_pool(
                host=self.connection.host,
                port=self.connection.port or 5432,
                user=self.connection.username,
                password=self._password(),
                database=self.connection.database,
                min_size=1,
                max_size=2,
            )
        except TRANSIENT_ERRORS as e:
            raise TransientIOError(f"Cannot connect to PostgreSQL {self.connection.host}: {e}") from e

    async def disconnect(self):
        """Disconnect from PostgreSQL database"""
        if self._pool:
            await self._pool.close()
            self._pool = None

    def placeholder(self, index: int) -> str:
        return f"${index}"

    def quote_identifier(self, name: str) -> str:
        return '"' + name.replace('"', '""') + '"'

    def date_expr(self, column_sql: str) -> str:
        return f"{column_sql}::date"

    def recent_days_filter(self, column_sql: str, days: int) -> str:
        if days == 0:
            return f"{column_sql}::date = CURRENT_DATE"
        return f"{column_sql} >= CURRENT_DATE - INTERVAL '{days} days'"

    async def _stream(self, sql: str, params: Sequence[Any], batch_size: int) -> AsyncIterator[Batch]:
        self.logger.debug(f"Streaming: {sql}")
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    cursor = await conn.cursor(sql, *params)
                    while True:
                        rows = await cursor.fetch(batch_size)
                        if not rows:
                            break
                        yield [dict(row) for row in rows]
        except TRANSIENT_ERRORS as e:
            raise TransientIOError(f"PostgreSQL read failed: {e}") from e

    async def _fetch(self, sql: str, params: Sequence[Any]) -> Batch:
        self.logger.debug(f"Fetching: {sql}")
        try:
            rows = await self._pool.fetch(sql, *params)
        except TRANSIENT_ERRORS as e:
            raise TransientIOError(f"PostgreSQL read failed: {e}") from e
        return [dict(row) for row in rows]
