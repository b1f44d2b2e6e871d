from dataclasses import dataclass
from typing import Optional

from ...core.enums import Capability, SyncStrategyType
from .base import BaseStrategy, RunContext, parse_int_cursor

DEFAULT_PK_COLUMN = "id"


@dataclass
class NewRecordsResult:
    rows_inserted: int
    cursor: int
    batches: int


class NewRecordsStrategy(BaseStrategy):
    """
    Append source rows whose primary key is above a given id.

    Used to catch up a table after a bulk load: pages strictly by key and
    reports progress against the source MAX(pk). Compaction is skipped for
    large catch-ups.
    """

    name = SyncStrategyType.NEW_RECORDS

    def check_preconditions(self, dataset, source):
        source.require(Capability.KEYSET_PAGINATION, "new record sync")

    def pk_column(self, dataset, pk_column: Optional[str] = None) -> str:
        return pk_column or dataset.reference_column or DEFAULT_PK_COLUMN

    async def execute(self, dataset, connection, job_id=None, cancel_token=None, **options) -> int:
        result = await self.sync_new_records(dataset, connection, job_id, cancel_token, **options)
        return result.rows_inserted

    async def sync_new_records(self, dataset, connection, job_id=None, cancel_token=None,
                               after_id: Optional[int] = None, limit: Optional[int] = None,
                               pk_column: Optional[str] = None, **options) -> NewRecordsResult:
        return await self._run(dataset, connection, job_id, cancel_token,
                               after_id=after_id, limit=limit, pk_column=pk_column)

    async def _starting_id(self, ctx: RunContext, pk_column: str, after_id: Optional[int]) -> int:
        if after_id is not None:
            return int(after_id)
        target_column = ctx.dataset.destination_column(pk_column)
        start = await self.writer.max_int_value(ctx.dataset.destination_table, target_column)
        self.logger.info(f"Dataset {ctx.dataset.id}: no after_id given, starting after destination max {start}")
        return start

    async def sync(self, ctx: RunContext, after_id: Optional[int] = None, limit: Optional[int] = None,
                   pk_column: Optional[str] = None, **options) -> NewRecordsResult:
        dataset = ctx.dataset
        pk = self.pk_column(dataset, pk_column)
        key_column = dataset.source_column(pk)

        await self._ensure_table(ctx)
        current = await self._starting_id(ctx, pk, after_id)
        source_max = await ctx.source.fetch_max_key(dataset, key_column)
        batch_size = self.batch_size()
        self.logger.info(
            f"Dataset {dataset.id}: fetching {key_column} > {current} "
            f"(source max {source_max}, limit {limit or 'none'})"
        )

        while limit is None or ctx.rows_written < limit:
            if await self._should_stop(ctx):
                break
            page_size = batch_size if limit is None else min(batch_size, limit - ctx.rows_written)
            rows = await self._write_page(
                ctx, lambda: ctx.source.fetch_after_key(dataset, key_column, current, page_size)
            )
            if not rows:
                break

            current = parse_int_cursor(self.last_key(rows, key_column))
            await self._report(ctx, self._progress_message(ctx, current, source_max, after_id))

            if len(rows) < page_size:
                break

        threshold = self.settings.compaction_skip_threshold
        if 0 < ctx.rows_written <= threshold and not ctx.cancelled:
            await self.writer.optimize(dataset.destination_table)
        elif ctx.rows_written > threshold:
            self.logger.info(
                f"Dataset {dataset.id}: skipping compaction after {ctx.rows_written} rows (threshold {threshold})"
            )

        return NewRecordsResult(rows_inserted=ctx.rows_written, cursor=current, batches=ctx.batches)

    @staticmethod
    def _progress_message(ctx: RunContext, current: int, source_max: Optional[int],
                          after_id: Optional[int]) -> str:
        percent = 100
        start = after_id or 0
        if source_max is not None and source_max > start:
            percent = min(100, int((current - start) * 100 / (source_max - start)))
        return f"Batch {ctx.batches}: {ctx.rows_written} rows ({percent}%)"
