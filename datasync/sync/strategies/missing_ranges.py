from typing import List, Optional

from ...core.enums import Capability, SyncStrategyType
from ...core.models import MissingRange
from .base import BaseStrategy, RunContext

DEFAULT_PK_COLUMN = "id"


class MissingRangesStrategy(BaseStrategy):
    """Gap-fill: insert every source row whose key falls in one of the given ranges"""

    name = SyncStrategyType.MISSING_RANGES

    def check_preconditions(self, dataset, source):
        source.require(Capability.KEY_RANGE_REPAIR, "missing range repair")

    async def execute(self, dataset, connection, job_id=None, cancel_token=None,
                      ranges: Optional[List[MissingRange]] = None, pk_column: Optional[str] = None,
                      **options) -> int:
        if not ranges:
            self.logger.info(f"No missing ranges given for dataset {dataset.id}")
            return 0
        return await self._run(dataset, connection, job_id, cancel_token,
                               ranges=ranges, pk_column=pk_column or DEFAULT_PK_COLUMN)

    async def sync(self, ctx: RunContext, ranges: List[MissingRange] = (),
                   pk_column: str = DEFAULT_PK_COLUMN, **options) -> int:
        dataset = ctx.dataset
        key_column = dataset.source_column(pk_column)
        total = len(ranges)

        await self._ensure_table(ctx)
        for index, key_range in enumerate(ranges, start=1):
            if await self._should_stop(ctx):
                break
            rows = await ctx.source.fetch_key_range(dataset, key_column, key_range.start, key_range.end)
            written = await self._write_batch(ctx, rows)
            self.logger.info(
                f"Dataset {dataset.id}: range {key_range.start}-{key_range.end} "
                f"({index}/{total}) inserted {written} rows"
            )
            await self._report(ctx, f"Range {index}/{total} - {index * 100 // total}%")

        if ctx.rows_written > 0:
            await self.writer.optimize(dataset.destination_table)
        return ctx.rows_written
