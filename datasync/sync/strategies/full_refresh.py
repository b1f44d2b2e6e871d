from ...core.enums import Capability, SyncStrategyType
from .base import BaseStrategy, RunContext


class FullRefreshStrategy(BaseStrategy):
    """Truncate the destination and reload the whole source; the universal fallback"""

    name = SyncStrategyType.FULL_REFRESH

    def check_preconditions(self, dataset, source):
        source.require(Capability.FULL_READ, "full reads")

    async def sync(self, ctx: RunContext, **options) -> int:
        dataset = ctx.dataset
        table = dataset.destination_table

        await self._ensure_table(ctx)
        await self.writer.truncate(table)
        self.logger.info(f"Truncated {table}; reloading dataset {dataset.id}")

        stream = ctx.source.stream_rows(dataset, self.batch_size(), dataset.row_limit or None)
        await self._consume(ctx, stream)

        if ctx.cancelled:
            return ctx.rows_written
        if ctx.rows_written == 0:
            self.logger.warning(f"No rows fetched from source for dataset {dataset.id}")
        if ctx.failed_batches:
            self.logger.warning(f"{ctx.failed_batches} batches failed during full refresh of {dataset.id}")

        # The validator compacts the table before counting
        validation = await self.services.validator.validate(dataset, ctx.rows_written)
        await self._report(ctx, validation.message)
        if ctx.rows_written > 0 or validation.error:
            return ctx.rows_written
        return validation.target_count
