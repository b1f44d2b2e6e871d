from ...core.enums import Capability, SyncStrategyType
from ...utils.date_utils import parse_datetime, to_clickhouse_datetime
from .base import BaseStrategy, RunContext, require_column


class TimestampStrategy(BaseStrategy):
    """
    Append rows whose reference column is newer than the last synced value.

    The low-water mark is the persisted cursor, or max(reference column) in
    ClickHouse when nothing was persisted. The cursor only advances when every
    batch of the run was written.
    """

    name = SyncStrategyType.TIMESTAMP

    def check_preconditions(self, dataset, source):
        require_column(dataset.reference_column, "a reference_column", self.name.value)
        source.require(Capability.INCREMENTAL_READ, "timestamp-incremental reads")

    async def sync(self, ctx: RunContext, **options) -> int:
        dataset = ctx.dataset
        table = dataset.destination_table
        source_column = dataset.source_column(dataset.reference_column)
        target_column = dataset.destination_column(dataset.reference_column)

        await self._ensure_table(ctx)

        low_water_mark = parse_datetime(dataset.last_sync_cursor) if dataset.last_sync_cursor else None
        if low_water_mark is None:
            low_water_mark = parse_datetime(await self._destination_max(ctx, target_column))
        self.logger.info(f"Dataset {dataset.id}: syncing {source_column} > {low_water_mark}")

        row_limit = dataset.row_limit or self.settings.default_row_limit
        stream = ctx.source.stream_rows_after(dataset, source_column, low_water_mark,
                                              self.batch_size(), row_limit)
        await self._consume(ctx, stream)

        if ctx.rows_written > 0:
            if ctx.failed_batches:
                self.logger.warning(
                    f"Dataset {dataset.id}: {ctx.failed_batches} batches failed; cursor not advanced"
                )
            else:
                cursor = to_clickhouse_datetime(await self._destination_max(ctx, target_column))
                if cursor:
                    await self._persist_cursor(ctx, cursor)
                    self.logger.info(f"Dataset {dataset.id}: cursor advanced to {cursor}")

        if not ctx.cancelled:
            await self.writer.optimize(table)
        return ctx.rows_written
