from ...core.enums import Capability, SyncStrategyType
from ...core.exceptions import SyncError
from .base import BaseStrategy, RunContext, parse_int_cursor, require_column


class IdStrategy(BaseStrategy):
    """
    Keyset pagination over a monotonically increasing integer column.

    The cursor starts at the larger of the ClickHouse maximum and the persisted
    cursor, and is persisted after every page, so an interrupted run resumes
    without re-reading written rows.
    """

    name = SyncStrategyType.ID

    def check_preconditions(self, dataset, source):
        require_column(dataset.reference_column, "a reference_column", self.name.value)
        source.require(Capability.KEYSET_PAGINATION, "id-incremental reads")

    async def _starting_cursor(self, ctx: RunContext, target_column: str) -> int:
        try:
            destination_max = await self.writer.max_int_value(ctx.dataset.destination_table, target_column)
        except SyncError as e:
            self.logger.warning(f"Could not read max id of {ctx.dataset.destination_table}, using 0: {e}")
            destination_max = 0
        return max(destination_max, parse_int_cursor(ctx.dataset.last_sync_cursor))

    async def sync(self, ctx: RunContext, **options) -> int:
        dataset = ctx.dataset
        source_column = dataset.source_column(dataset.reference_column)
        target_column = dataset.destination_column(dataset.reference_column)

        await self._ensure_table(ctx)
        cursor = await self._starting_cursor(ctx, target_column)
        row_limit = dataset.row_limit or self.settings.default_row_limit
        batch_size = self.batch_size()
        self.logger.info(f"Dataset {dataset.id}: syncing {source_column} > {cursor} (limit {row_limit})")

        while ctx.rows_written < row_limit:
            if await self._should_stop(ctx):
                break
            page_size = min(batch_size, row_limit - ctx.rows_written)
            rows = await self._write_page(
                ctx, lambda: ctx.source.fetch_after_key(dataset, source_column, cursor, page_size)
            )
            if not rows:
                break

            cursor = parse_int_cursor(self.last_key(rows, source_column))
            await self._persist_cursor(ctx, str(cursor))
            await self._report(ctx)

            if len(rows) < page_size:
                break

        return ctx.rows_written
