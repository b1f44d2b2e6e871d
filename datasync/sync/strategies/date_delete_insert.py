from datetime import timedelta

from ...core.enums import Capability, SyncStrategyType
from .base import BaseStrategy, RunContext, require_column


class DateDeleteInsertStrategy(BaseStrategy):
    """Delete the trailing delete_days window in ClickHouse and re-pull it from the source"""

    name = SyncStrategyType.DATE_DELETE_INSERT

    def check_preconditions(self, dataset, source):
        require_column(dataset.reference_column, "a reference_column", self.name.value)
        source.require(Capability.DATE_WINDOW_FILTER, "date window reads")

    async def sync(self, ctx: RunContext, **options) -> int:
        dataset = ctx.dataset
        table = dataset.destination_table
        days = max(int(dataset.delete_days), 0)
        source_column = dataset.source_column(dataset.reference_column)
        target_column = dataset.destination_column(dataset.reference_column)

        await self._ensure_table(ctx)

        today = self.clock()
        if days == 0:
            await self.writer.delete_date(table, target_column, today.isoformat())
        else:
            await self.writer.delete_dates_from(table, target_column, (today - timedelta(days=days)).isoformat())
        self.logger.info(f"Dataset {dataset.id}: cleared the last {days} day(s) of {table}; reloading")

        stream = ctx.source.stream_recent_days(dataset, source_column, days, self.batch_size(),
                                                dataset.row_limit or None)
        await self._consume(ctx, stream)

        if not ctx.cancelled:
            await self.writer.optimize(table)
        return ctx.rows_written
