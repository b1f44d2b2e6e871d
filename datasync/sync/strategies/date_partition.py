from datetime import date, datetime, timedelta
from typing import List

from ...core.enums import Capability, SyncStrategyType
from ...core.exceptions import ConfigurationError, SyncError
from ...destination.type_mapping import PARTITION_FUNCTIONS
from .base import BaseStrategy, RunContext, require_column

NEVER_SYNCED = datetime(1970, 1, 1)


class DatePartitionStrategy(BaseStrategy):
    """
    Sliding-window resync of whole dates.

    Every affected date is deleted in ClickHouse and reloaded from the source,
    oldest first. Affected dates are the trailing refresh window plus, when
    detect_modified is on, the dates of rows modified since the last sync.
    """

    name = SyncStrategyType.DATE_PARTITION

    def check_preconditions(self, dataset, source):
        require_column(dataset.partition_column, "a partition_column", self.name.value)
        source.require(Capability.DATE_PARTITION_SYNC, "date partition sync")
        if not dataset.column_mapping:
            raise ConfigurationError(f"{self.name.value} sync requires a column mapping")

    async def check_partition_layout(self, ctx: RunContext) -> bool:
        """Compare the configured granularity with the table's partition key; warn only"""
        dataset = ctx.dataset
        expected = PARTITION_FUNCTIONS[dataset.partition_granularity]
        try:
            partition_key = await self.writer.partition_key(dataset.destination_table)
        except SyncError as e:
            self.logger.warning(f"Could not read partition key of {dataset.destination_table}: {e}")
            return False
        if not partition_key or f"{expected}(" not in partition_key:
            self.logger.warning(
                f"Dataset {dataset.id} is configured for {dataset.partition_granularity.value} partitions "
                f"but {dataset.destination_table} is partitioned by '{partition_key}'"
            )
            return False
        return True

    def window_dates(self, days: int) -> List[date]:
        today = self.clock()
        return [today - timedelta(days=offset) for offset in range(days)]

    async def affected_dates(self, ctx: RunContext) -> List[date]:
        dataset = ctx.dataset
        dates = set(self.window_dates(dataset.refresh_window_days))
        if dataset.detect_modified and dataset.modified_column:
            since = dataset.last_sync_at or NEVER_SYNCED
            modified = await ctx.source.fetch_modified_dates(
                dataset,
                dataset.source_column(dataset.partition_column),
                dataset.source_column(dataset.modified_column),
                since,
            )
            self.logger.info(f"Dataset {dataset.id}: {len(modified)} dates modified since {since}")
            dates.update(modified)
        return sorted(dates)

    async def sync(self, ctx: RunContext, **options) -> int:
        dataset = ctx.dataset
        table = dataset.destination_table
        source_column = dataset.source_column(dataset.partition_column)
        target_column = dataset.destination_column(dataset.partition_column)

        await self._ensure_table(ctx)
        await self.check_partition_layout(ctx)

        dates = await self.affected_dates(ctx)
        if not dates:
            self.logger.info(f"Dataset {dataset.id}: no dates to resync")
            return 0
        self.logger.info(f"Dataset {dataset.id}: resyncing {len(dates)} dates ({dates[0]} .. {dates[-1]})")

        for index, day in enumerate(dates, start=1):
            if await self._should_stop(ctx):
                break
            await self.writer.delete_date(table, target_column, day.isoformat())
            stream = ctx.source.stream_date(dataset, source_column, day, self.batch_size())
            await self._consume(ctx, stream, report_progress=False)
            await self._report(ctx, f"Partition {day.isoformat()} ({index}/{len(dates)})")
            if ctx.cancelled:
                break

        if not ctx.cancelled:
            await self.writer.optimize(table)
        return ctx.rows_written
