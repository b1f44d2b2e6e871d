import asyncio
import gc
import logging
from typing import Optional

import psutil


class MemoryGovernor:
    """
    Keeps a sync worker under its memory ceiling.

    Batches are capped at max_batch_size. Before each batch, throttle() samples the
    process RSS; above the ceiling it forces a collection and pauses briefly so the
    allocator can return memory. track() forces a collection every
    gc_interval_rows processed rows regardless of measured pressure.
    """

    def __init__(self, max_memory_mb: int = 2048, gc_interval_rows: int = 10_000,
                 max_batch_size: int = 20_000, pressure_pause: float = 0.1,
                 process: Optional[psutil.Process] = None):
        self.max_memory_mb = max_memory_mb
        self.gc_interval_rows = gc_interval_rows
        self.max_batch_size = max_batch_size
        self.pressure_pause = pressure_pause
        self._process = process or psutil.Process()
        self._rows_since_gc = 0
        self.forced_collections = 0
        self.logger = logging.getLogger(__name__)

    def usage_mb(self) -> float:
        return self._process.memory_info().rss / (1024 * 1024)

    def is_under_pressure(self) -> bool:
        used = self.usage_mb()
        if used >= self.max_memory_mb:
            self.logger.warning(f"Memory usage {used:.0f}MB reached limit {self.max_memory_mb}MB")
            return True
        return False

    def cap_batch_size(self, requested: int) -> int:
        return max(1, min(requested, self.max_batch_size))

    def collect(self) -> None:
        gc.collect()
        self.forced_collections += 1
        self._rows_since_gc = 0

    async def throttle(self) -> None:
        """Collect and pause when the process is above its memory ceiling"""
        if self.is_under_pressure():
            self.collect()
            await asyncio.sleep(self.pressure_pause)

    def track(self, rows: int) -> None:
        """Account for processed rows, collecting every gc_interval_rows"""
        self._rows_since_gc += rows
        if self.gc_interval_rows and self._rows_since_gc >= self.gc_interval_rows:
            self.logger.debug(f"Forcing GC after {self._rows_since_gc} rows")
            self.collect()
