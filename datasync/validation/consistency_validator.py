import logging
import math

from ..core.exceptions import SyncError
from ..core.models import DatasetDescriptor, ValidationResult

DEFAULT_TOLERANCE = 0.01


class ConsistencyValidator:
    """
    Post-run row count check against the ClickHouse destination.

    The destination is a ReplacingMergeTree, so the count is taken before and
    after OPTIMIZE FINAL; the difference is the number of duplicates the merge
    removed. The result is advisory: mismatches are logged and reported but
    never fail, retry or roll back a run.
    """

    def __init__(self, writer, tolerance: float = DEFAULT_TOLERANCE):
        self.writer = writer
        self.tolerance = tolerance
        self.logger = logging.getLogger(__name__)

    async def validate(self, dataset: DatasetDescriptor, expected_rows: int) -> ValidationResult:
        table = dataset.destination_table
        try:
            before = await self.writer.count(table)
            await self.writer.optimize(table)
            after = await self.writer.count(table)
        except SyncError as e:
            self.logger.error(f"Consistency check failed for dataset {dataset.id}: {e}")
            return ValidationResult(
                expected_count=expected_rows,
                target_count=0,
                duplicate_count=0,
                is_consistent=False,
                message=f"Validation error: {e}",
                error=str(e),
            )

        duplicates = max(before - after, 0)
        allowed = math.ceil(expected_rows * self.tolerance)
        consistent = abs(after - expected_rows) <= allowed
        if consistent:
            message = f"OK: {after} rows in {table} (expected {expected_rows}, {duplicates} duplicates removed)"
            self.logger.info(f"Dataset {dataset.id} consistent: {message}")
        else:
            message = (
                f"Row count mismatch in {table}: expected {expected_rows}, found {after} "
                f"(tolerance {allowed}, {duplicates} duplicates removed)"
            )
            self.logger.warning(f"Dataset {dataset.id} inconsistent: {message}")
        return ValidationResult(
            expected_count=expected_rows,
            target_count=after,
            duplicate_count=duplicates,
            is_consistent=consistent,
            message=message,
        )

