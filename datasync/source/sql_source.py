from abc import abstractmethod
from datetime import date, datetime
from typing import Any, AsyncIterator, List, Optional, Sequence, Tuple

from ..core.enums import Capability
from ..core.exceptions import ConfigurationError
from ..core.models import DatasetDescriptor
from ..utils.sql_utils import remove_query_limits, validate_identifier
from .base_source import Batch, SourceAdapter


class SqlSourceAdapter(SourceAdapter):
    """
    Relational source. Builds every read from a small set of dialect hooks
    (identifier quoting, placeholders, row limiting, date casts) so the
    concrete adapters only provide a driver and their dialect.
    """

    # ------------------------------------------------------------------
    # dialect hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def placeholder(self, index: int) -> str:
        """Bind parameter marker for the 1-based parameter index"""

    @abstractmethod
    def quote_identifier(self, name: str) -> str:
        pass

    def date_expr(self, column_sql: str) -> str:
        return f"CAST({column_sql} AS DATE)"

    @abstractmethod
    def recent_days_filter(self, column_sql: str, days: int) -> str:
        """Predicate selecting today (days == 0) or the trailing `days` days"""

    def apply_limit(self, select_list: str, rest: str, limit: Optional[int]) -> str:
        sql = f"SELECT {select_list} {rest}"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        return sql

    def table_hint(self, dataset: DatasetDescriptor) -> str:
        return ""

    # ------------------------------------------------------------------
    # driver hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _stream(self, sql: str, params: Sequence[Any], batch_size: int) -> AsyncIterator[Batch]:
        pass

    @abstractmethod
    async def _fetch(self, sql: str, params: Sequence[Any]) -> Batch:
        pass

    # ------------------------------------------------------------------
    # query building
    # ------------------------------------------------------------------

    def quote_qualified(self, name: str) -> str:
        validate_identifier(name)
        return ".".join(self.quote_identifier(part) for part in name.split("."))

    def source_from(self, dataset: DatasetDescriptor) -> str:
        if dataset.source_table:
            return self.quote_qualified(dataset.source_table) + self.table_hint(dataset)
        if dataset.source_query:
            return f"({remove_query_limits(dataset.source_query)}) src"
        raise ConfigurationError(f"Dataset {dataset.id} has neither source_table nor source_query")

    def select_list(self, dataset: DatasetDescriptor, *required: str) -> str:
        columns = list(dataset.source_columns)
        if not columns:
            return "*"
        for column in required:
            if column and column not in columns:
                columns.append(column)
        return ", ".join(self.quote_identifier(c) for c in columns)

    def build_select(self, dataset: DatasetDescriptor, conditions: Optional[List[str]] = None,
                     order_by: Optional[str] = None, limit: Optional[int] = None,
                     required: Sequence[str] = ()) -> str:
        where = [c for c in (conditions or []) if c]
        if dataset.custom_where:
            where.append(f"({dataset.custom_where})")
        rest = f"FROM {self.source_from(dataset)}"
        if where:
            rest += " WHERE " + " AND ".join(where)
        if order_by:
            rest += f" ORDER BY {self.quote_identifier(order_by)} ASC"
        return self.apply_limit(self.select_list(dataset, *required), rest, limit)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def full_read_query(self, dataset: DatasetDescriptor, row_limit: Optional[int]) -> Tuple[str, list]:
        return self.build_select(dataset, limit=row_limit), []

    def after_query(self, dataset: DatasetDescriptor, column: str, low_water_mark: Any,
                    row_limit: Optional[int]) -> Tuple[str, list]:
        conditions, params = [], []
        if low_water_mark is not None:
            conditions.append(f"{self.quote_identifier(column)} > {self.placeholder(1)}")
            params.append(low_water_mark)
        sql = self.build_select(dataset, conditions, order_by=column, limit=row_limit, required=[column])
        return sql, params

    def after_key_query(self, dataset: DatasetDescriptor, key_column: str, after: int,
                        limit: int) -> Tuple[str, list]:
        condition = f"{self.quote_identifier(key_column)} > {self.placeholder(1)}"
        sql = self.build_select(dataset, [condition], order_by=key_column, limit=limit, required=[key_column])
        return sql, [after]

    def max_key_query(self, dataset: DatasetDescriptor, key_column: str) -> str:
        column = self.quote_identifier(key_column)
        return f"SELECT MAX({column}) AS max_key FROM {self.source_from(dataset)}"

    def recent_days_query(self, dataset: DatasetDescriptor, column: str, days: int,
                          row_limit: Optional[int]) -> Tuple[str, list]:
        condition = self.recent_days_filter(self.quote_identifier(column), int(days))
        return self.build_select(dataset, [condition], limit=row_limit), []

    def modified_dates_query(self, dataset: DatasetDescriptor, partition_column: str,
                             modified_column: str) -> str:
        part = self.date_expr(self.quote_identifier(partition_column))
        modified = self.quote_identifier(modified_column)
        return (
            f"SELECT DISTINCT {part} AS partition_date FROM {self.source_from(dataset)} "
            f"WHERE {modified} >= {self.placeholder(1)} ORDER BY partition_date"
        )

    def date_query(self, dataset: DatasetDescriptor, partition_column: str) -> str:
        condition = f"{self.date_expr(self.quote_identifier(partition_column))} = {self.placeholder(1)}"
        return self.build_select(dataset, [condition])

    def key_range_query(self, dataset: DatasetDescriptor, key_column: str) -> str:
        column = self.quote_identifier(key_column)
        conditions = [f"{column} >= {self.placeholder(1)}", f"{column} <= {self.placeholder(2)}"]
        return self.build_select(dataset, conditions, required=[key_column])

    def stream_rows(self, dataset: DatasetDescriptor, batch_size: int,
                    row_limit: Optional[int] = None) -> AsyncIterator[Batch]:
        sql, params = self.full_read_query(dataset, row_limit)
        return self._stream(sql, params, batch_size)

    def stream_rows_after(self, dataset: DatasetDescriptor, column: str, low_water_mark: Any,
                          batch_size: int, row_limit: Optional[int] = None) -> AsyncIterator[Batch]:
        sql, params = self.after_query(dataset, column, low_water_mark, row_limit)
        return self._stream(sql, params, batch_size)

    async def fetch_after_key(self, dataset: DatasetDescriptor, key_column: str,
                              after: int, limit: int) -> Batch:
        sql, params = self.after_key_query(dataset, key_column, after, limit)
        return await self._fetch(sql, params)

    async def fetch_max_key(self, dataset: DatasetDescriptor, key_column: str) -> Optional[int]:
        rows = await self._fetch(self.max_key_query(dataset, key_column), [])
        if not rows:
            return None
        value = next(iter(rows[0].values()))
        return int(value) if value is not None else None

    async def fetch_sample(self, dataset: DatasetDescriptor, limit: int) -> Batch:
        # A source query runs as written, keeping its own LIMIT
        if dataset.source_query:
            return await self._fetch(dataset.source_query, [])
        return await self._fetch(self.build_select(dataset, limit=limit), [])

    def stream_recent_days(self, dataset: DatasetDescriptor, column: str, days: int,
                           batch_size: int, row_limit: Optional[int] = None) -> AsyncIterator[Batch]:
        sql, params = self.recent_days_query(dataset, column, days, row_limit)
        return self._stream(sql, params, batch_size)

    async def fetch_modified_dates(self, dataset: DatasetDescriptor, partition_column: str,
                                   modified_column: str, since: datetime) -> List[date]:
        self.require(Capability.DATE_PARTITION_SYNC, "modified-date detection")
        sql = self.modified_dates_query(dataset, partition_column, modified_column)
        rows = await self._fetch(sql, [since])
        dates = []
        for row in rows:
            value = row.get("partition_date")
            if isinstance(value, datetime):
                value = value.date()
            if value is not None:
                dates.append(value)
        return dates

    def stream_date(self, dataset: DatasetDescriptor, partition_column: str, day: date,
                    batch_size: int) -> AsyncIterator[Batch]:
        self.require(Capability.DATE_PARTITION_SYNC, "per-date reads")
        return self._stream(self.date_query(dataset, partition_column), [day], batch_size)

    async def fetch_key_range(self, dataset: DatasetDescriptor, key_column: str,
                              start: int, end: int) -> Batch:
        self.require(Capability.KEY_RANGE_REPAIR, "key range reads")
        return await self._fetch(self.key_range_query(dataset, key_column), [start, end])
