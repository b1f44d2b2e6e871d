from ...core.enums import Capability, SyncStrategyType
from .base import BaseStrategy, RunContext

SAMPLE_ROWS = 10


class InitialSampleStrategy(BaseStrategy):
    """
    First load of a freshly configured dataset: create the table and copy a
    small sample so the destination can be inspected before a real sync.
    Nothing is truncated and a source query runs with its own LIMIT intact.
    """

    name = SyncStrategyType.INITIAL_SAMPLE

    def check_preconditions(self, dataset, source):
        source.require(Capability.FULL_READ, "sample reads")

    async def sync(self, ctx: RunContext, limit: int = SAMPLE_ROWS, **options) -> int:
        dataset = ctx.dataset
        await self._ensure_table(ctx)

        rows = await ctx.source.fetch_sample(dataset, limit)
        self.logger.info(f"Fetched {len(rows)} sample rows for dataset {dataset.id}")
        if not rows:
            self.logger.warning(f"No sample rows for dataset {dataset.id}; {dataset.destination_table} stays empty")
            return 0

        await self._write_batch(ctx, rows, skip_failed=False)
        await self._report(ctx, f"Initial sample: {ctx.rows_written} rows")
        return ctx.rows_written
