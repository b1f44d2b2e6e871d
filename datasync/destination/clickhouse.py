import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from ..core.decorators import async_retry
from ..core.exceptions import DestinationError, SyncError, TransientIOError
from ..core.models import DatasetDescriptor
from ..utils.sql_utils import quote_literal, validate_identifier
from .type_mapping import build_create_table_sql

TRANSIENT_STATUSES = {502, 503, 504}


class ClickHouseWriter:
    """
    Async ClickHouse writer over the HTTP interface.

    Appends rows as JSONEachRow, runs deletes as synchronous mutations so a
    following insert never races its own delete, and exposes the reads the
    strategies and the validator need (max, count, partition key).
    """

    def __init__(self, host: str = "http://localhost:8123", database: str = "analytics",
                 user: Optional[str] = None, password: Optional[str] = None,
                 insert_batch_size: int = 10_000, request_timeout: float = 600.0,
                 session_kwargs: Optional[dict] = None):
        self.host = host.rstrip("/")
        self.database = database
        self.user = user
        self.password = password
        self.insert_batch_size = insert_batch_size
        self.request_timeout = request_timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._session_kwargs = session_kwargs or {}
        self.logger = logging.getLogger(__name__)

    async def connect(self):
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout), **self._session_kwargs
            )

    async def disconnect(self):
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()

    def full_table(self, table: str) -> str:
        validate_identifier(table)
        return f"`{self.database}`.`{table}`"

    def _headers(self) -> Dict[str, str]:
        headers = {}
        if self.user:
            headers["X-ClickHouse-User"] = self.user
        if self.password:
            headers["X-ClickHouse-Key"] = self.password
        return headers

    async def _execute(self, sql: str, data: Optional[str] = None,
                       settings: Optional[Dict[str, Any]] = None) -> str:
        """Send one statement; the body carries insert payloads"""
        if not self._session:
            raise RuntimeError("Not connected. Call connect() first.")
        params = {"database": self.database}
        if data is None:
            data = sql
        else:
            params["query"] = sql
        for key, value in (settings or {}).items():
            params[key] = str(value)
        try:
            async with self._session.post(self.host + "/", params=params, data=data.encode("utf-8"),
                                          headers=self._headers()) as resp:
                text = await resp.text()
                if resp.status in TRANSIENT_STATUSES:
                    raise TransientIOError(f"ClickHouse unavailable ({resp.status}): {text[:500]}")
                if resp.status != 200:
                    raise DestinationError(f"ClickHouse error {resp.status}: {text[:1000]}",
                                           status=resp.status, sql=sql)
                return text
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientIOError(f"ClickHouse request failed: {e}") from e

    async def query(self, sql: str) -> List[Dict[str, Any]]:
        """Run a SELECT and return its rows"""
        text = await self._execute(f"{sql} FORMAT JSONEachRow")
        rows = []
        for line in text.splitlines():
            if line.strip():
                rows.append(json.loads(line))
        return rows

    async def command(self, sql: str, settings: Optional[Dict[str, Any]] = None) -> None:
        await self._execute(sql, settings=settings)

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    async def insert_rows(self, table: str, rows: List[Dict[str, Any]]) -> int:
        """Append rows in chunks of insert_batch_size; returns rows written"""
        if not rows:
            return 0
        columns = list(rows[0].keys())
        written = 0
        for start in range(0, len(rows), self.insert_batch_size):
            chunk = rows[start:start + self.insert_batch_size]
            await self._insert_chunk(table, columns, chunk)
            written += len(chunk)
        return written

    @async_retry(max_retries=3, delay=1.0)
    async def _insert_chunk(self, table: str, columns: List[str], rows: List[Dict[str, Any]]) -> None:
        column_sql = ", ".join(f"`{c}`" for c in columns)
        sql = f"INSERT INTO {self.full_table(table)} ({column_sql}) FORMAT JSONEachRow"
        payload = "\n".join(json.dumps(row, default=str) for row in rows)
        await self._execute(sql, data=payload)

    async def delete_where(self, table: str, predicate: str) -> None:
        self.logger.info(f"Deleting from {table} WHERE {predicate}")
        await self.command(
            f"ALTER TABLE {self.full_table(table)} DELETE WHERE {predicate}",
            settings={"mutations_sync": 2},
        )

    async def delete_dates_from(self, table: str, column: str, start_date: str) -> None:
        await self.delete_where(table, f"toDate(`{column}`) >= {quote_literal(start_date)}")

    async def delete_date(self, table: str, column: str, day: str) -> None:
        await self.delete_where(table, f"toDate(`{column}`) = {quote_literal(day)}")

    async def truncate(self, table: str) -> None:
        try:
            await self.command(f"TRUNCATE TABLE IF EXISTS {self.full_table(table)}")
        except DestinationError as e:
            self.logger.warning(f"TRUNCATE failed for {table} ({e}); deleting all rows instead")
            await self.delete_where(table, "1 = 1")

    async def optimize(self, table: str) -> bool:
        """OPTIMIZE ... FINAL; never fatal"""
        try:
            await self.command(f"OPTIMIZE TABLE {self.full_table(table)} FINAL")
            self.logger.info(f"Optimized {table}")
            return True
        except SyncError as e:
            self.logger.warning(f"OPTIMIZE failed for {table} (non-fatal): {e}")
            return False

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    async def count(self, table: str) -> int:
        rows = await self.query(f"SELECT count() AS cnt FROM {self.full_table(table)}")
        return int(rows[0]["cnt"]) if rows else 0

    async def max_value(self, table: str, column: str) -> Optional[Any]:
        """max(column), or None for an empty table"""
        rows = await self.query(
            f"SELECT max(`{column}`) AS max_value, count() AS cnt FROM {self.full_table(table)}"
        )
        if not rows or int(rows[0]["cnt"]) == 0:
            return None
        return rows[0]["max_value"]

    async def max_int_value(self, table: str, column: str) -> int:
        """Integer maximum; non-numeric values count as 0"""
        rows = await self.query(
            f"SELECT max(toInt64OrZero(toString(`{column}`))) AS max_id FROM {self.full_table(table)}"
        )
        if not rows or rows[0]["max_id"] is None:
            return 0
        return int(rows[0]["max_id"])

    async def partition_key(self, table: str) -> Optional[str]:
        rows = await self.query(
            "SELECT partition_key FROM system.tables "
            f"WHERE database = {quote_literal(self.database)} AND name = {quote_literal(table)}"
        )
        return rows[0]["partition_key"] if rows else None

    async def describe_table(self, table: str) -> Dict[str, str]:
        """Column name to ClickHouse type, in table order"""
        rows = await self.query(f"DESCRIBE TABLE {self.full_table(table)}")
        return {row["name"]: row["type"] for row in rows}

    async def table_exists(self, table: str) -> bool:
        rows = await self.query(
            "SELECT count() AS cnt FROM system.tables "
            f"WHERE database = {quote_literal(self.database)} AND name = {quote_literal(table)}"
        )
        return bool(rows) and int(rows[0]["cnt"]) > 0

    async def ensure_table(self, dataset: DatasetDescriptor) -> bool:
        """Create a ReplacingMergeTree from the column mapping when the table is missing"""
        if await self.table_exists(dataset.destination_table):
            return False
        if not dataset.column_mapping:
            raise DestinationError(
                f"Table {dataset.destination_table} does not exist and dataset {dataset.id} has no column mapping"
            )
        self.logger.info(f"Creating ClickHouse table {dataset.destination_table} for dataset {dataset.id}")
        await self.command(build_create_table_sql(self.database, dataset))
        return True
