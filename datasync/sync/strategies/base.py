import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from ...core.enums import SyncStrategyType
from ...core.exceptions import ConfigurationError, SyncError, TransientIOError, UnsupportedSourceError
from ...core.models import ConnectionDescriptor, DatasetDescriptor
from ...destination.type_mapping import infer_column_mapping
from ...source.base_source import Batch, SourceAdapter
from ...utils.row_transformer import RowTransformer, lookup_column
from ..cancellation import CancellationToken
from ..services import SyncServices


@dataclass
class RunContext:
    """State of one strategy run"""
    dataset: DatasetDescriptor
    source: SourceAdapter
    job_id: Optional[str]
    token: CancellationToken
    transformer: Optional[RowTransformer] = None
    rows_written: int = 0
    batches: int = 0
    failed_batches: int = 0
    cancelled: bool = False


class BaseStrategy(ABC):
    """
    One way of bringing a ClickHouse table up to date with its source.

    Collaborators come in through SyncServices; an optional fallback strategy
    is used when check_preconditions() rejects a dataset. Subclasses implement
    sync(), which runs with the source adapter already connected.
    """

    name: SyncStrategyType = None
    retry_delay: float = 1.0

    def __init__(self, services: SyncServices, fallback: Optional['BaseStrategy'] = None,
                 clock: Callable[[], date] = date.today):
        self.services = services
        self.fallback = fallback
        self.clock = clock
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    def writer(self):
        return self.services.writer

    @property
    def settings(self):
        return self.services.settings

    def check_preconditions(self, dataset: DatasetDescriptor, source: SourceAdapter) -> None:
        """Raise ConfigurationError or UnsupportedSourceError when this strategy cannot run"""

    @abstractmethod
    async def sync(self, ctx: RunContext, **options) -> Any:
        pass

    async def execute(self, dataset: DatasetDescriptor, connection: ConnectionDescriptor,
                      job_id: Optional[str] = None, cancel_token: Optional[CancellationToken] = None,
                      **options) -> int:
        """Synchronize the dataset and return the number of rows affected"""
        return await self._run(dataset, connection, job_id, cancel_token, **options)

    async def _run(self, dataset: DatasetDescriptor, connection: ConnectionDescriptor,
                   job_id: Optional[str], cancel_token: Optional[CancellationToken], **options) -> Any:
        token = cancel_token or CancellationToken.never()
        source = self.services.sources.create(connection)
        try:
            self.check_preconditions(dataset, source)
        except (ConfigurationError, UnsupportedSourceError) as e:
            if self.fallback is None:
                raise
            self.logger.warning(
                f"{self.name.value} sync not possible for dataset {dataset.id}: {e}; "
                f"falling back to {self.fallback.name.value}"
            )
            return await self.fallback.execute(dataset, connection, job_id, token)

        ctx = RunContext(dataset=dataset, source=source, job_id=job_id, token=token)
        self.logger.info(
            f"Starting {self.name.value} sync for dataset {dataset.id} "
            f"({connection.kind.value} -> {dataset.destination_table}, job {job_id})"
        )
        started = time.monotonic()
        async with source:
            result = await self.sync(ctx, **options)
        state = "cancelled" if ctx.cancelled else "finished"
        self.logger.info(
            f"{self.name.value} sync {state} for dataset {dataset.id}: {ctx.rows_written} rows "
            f"in {ctx.batches} batches, {time.monotonic() - started:.1f}s"
        )
        return result

    # ------------------------------------------------------------------
    # helpers shared by the batch loops
    # ------------------------------------------------------------------

    def batch_size(self) -> int:
        return self.services.governor.cap_batch_size(self.settings.batch_size)

    async def _ensure_table(self, ctx: RunContext) -> None:
        if ctx.dataset.column_mapping:
            await self.writer.ensure_table(ctx.dataset)

    async def _should_stop(self, ctx: RunContext) -> bool:
        """Batch boundary: honour cancellation, then let the governor throttle"""
        if await ctx.token.is_cancelled():
            ctx.cancelled = True
            self.logger.info(
                f"Job {ctx.job_id} cancelled after {ctx.rows_written} rows of dataset {ctx.dataset.id}"
            )
            return True
        await self.services.governor.throttle()
        return False

    async def _transformer(self, ctx: RunContext, rows: Batch) -> RowTransformer:
        if ctx.transformer is None:
            if not ctx.dataset.column_mapping:
                ctx.dataset.column_mapping = infer_column_mapping(rows[0])
                self.logger.info(
                    f"Inferred column mapping for dataset {ctx.dataset.id}: "
                    f"{[m.target for m in ctx.dataset.column_mapping]}"
                )
                await self.writer.ensure_table(ctx.dataset)
            ctx.transformer = RowTransformer(ctx.dataset.column_mapping)
        return ctx.transformer

    async def _write_batch(self, ctx: RunContext, rows: Batch, skip_failed: bool = True) -> int:
        """
        Transform and append one batch. With skip_failed, a TransientIOError
        (already retried by the writer) is logged and the batch dropped.
        """
        if not rows:
            return 0
        transformer = await self._transformer(ctx, rows)
        records = transformer.transform_batch(rows)
        try:
            written = await self.writer.insert_rows(ctx.dataset.destination_table, records)
        except TransientIOError as e:
            if not skip_failed:
                raise
            ctx.failed_batches += 1
            self.logger.error(
                f"Insert of batch {ctx.batches + 1} ({len(rows)} rows) failed for dataset "
                f"{ctx.dataset.id}, skipping: {e}"
            )
            return 0
        ctx.rows_written += written
        ctx.batches += 1
        self.services.governor.track(written)
        return written

    async def _consume(self, ctx: RunContext, stream: AsyncIterator[Batch],
                       report_progress: bool = True) -> None:
        """
        Drain a source stream into the destination, stopping at cancellation.
        Only insert failures are skipped; a failed source read propagates.
        """
        try:
            async for rows in stream:
                if await self._should_stop(ctx):
                    break
                await self._write_batch(ctx, rows)
                if report_progress:
                    await self._report(ctx)
        finally:
            await stream.aclose()

    async def _write_page(self, ctx: RunContext, fetch_page: Callable[[], Awaitable[Batch]]) -> Batch:
        """
        Fetch and insert one keyset page, retrying the whole page on a transient
        failure up to max_batch_retries times before raising
        """
        attempt = 0
        while True:
            try:
                rows = await fetch_page()
                await self._write_batch(ctx, rows, skip_failed=False)
                return rows
            except TransientIOError as e:
                attempt += 1
                if attempt >= self.settings.max_batch_retries:
                    self.logger.error(
                        f"Page {ctx.batches + 1} of dataset {ctx.dataset.id} failed after {attempt} attempts: {e}"
                    )
                    raise
                self.logger.warning(
                    f"Page {ctx.batches + 1} of dataset {ctx.dataset.id} failed (attempt {attempt}), retrying: {e}"
                )
                await asyncio.sleep(self.retry_delay * 2 ** (attempt - 1))

    async def _report(self, ctx: RunContext, message: Optional[str] = None) -> None:
        await self.services.store.update_job_progress(ctx.job_id, ctx.rows_written, message)

    async def _persist_cursor(self, ctx: RunContext, cursor: str) -> None:
        await self.services.store.update_dataset_cursor(ctx.dataset.id, cursor)
        ctx.dataset.last_sync_cursor = cursor

    async def _destination_max(self, ctx: RunContext, column: str) -> Optional[Any]:
        try:
            return await self.writer.max_value(ctx.dataset.destination_table, column)
        except SyncError as e:
            self.logger.warning(f"Could not read max({column}) of {ctx.dataset.destination_table}: {e}")
            return None

    @staticmethod
    def last_key(rows: Batch, column: str) -> Any:
        return lookup_column(rows[-1], column)


def parse_int_cursor(value: Any) -> int:
    """Integer cursor from a stored value; garbage becomes 0"""
    if value is None:
        return 0
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        try:
            return int(float(str(value).strip()))
        except (ValueError, OverflowError):
            return 0


def require_column(value: Optional[str], what: str, strategy: str) -> str:
    if not value:
        raise ConfigurationError(f"{strategy} sync requires {what}")
    return value
