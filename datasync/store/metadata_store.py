import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg

from ..core.enums import JobAction, JobStatus
from ..core.models import ConnectionDescriptor, DatasetDescriptor, Schedule


class MetadataStore:
    """
    Access to the metadata tables owned by the platform: datasets,
    data_connections, etl_jobs and etl_schedules.

    Progress writes are best-effort; everything else propagates errors.
    """

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 5,
                 pool: Optional[asyncpg.Pool] = None):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool = pool
        self.logger = logging.getLogger(__name__)

    async def connect(self):
        if self._pool is None:
            self._pool = await asyncpg.create_pool(self.dsn, min_size=self.min_size, max_size=self.max_size)

    async def disconnect(self):
        if self._pool:
            await self._pool.close()
            self._pool = None

    async def _fetchrow(self, query: str, *args) -> Optional[Dict[str, Any]]:
        row = await self._pool.fetchrow(query, *args)
        return dict(row) if row else None

    async def _fetch(self, query: str, *args) -> List[Dict[str, Any]]:
        return [dict(r) for r in await self._pool.fetch(query, *args)]

    # ------------------------------------------------------------------
    # datasets and connections
    # ------------------------------------------------------------------

    async def get_dataset(self, dataset_id: str) -> Optional[DatasetDescriptor]:
        row = await self._fetchrow("SELECT * FROM datasets WHERE id = $1", dataset_id)
        return DatasetDescriptor.from_dict(row) if row else None

    async def get_connection(self, connection_id: str) -> Optional[ConnectionDescriptor]:
        row = await self._fetchrow("SELECT * FROM data_connections WHERE id = $1", connection_id)
        return ConnectionDescriptor.from_dict(row) if row else None

    async def update_dataset_cursor(self, dataset_id: str, cursor: str) -> None:
        await self._pool.execute(
            "UPDATE datasets SET last_sync_value = $1, last_sync_at = NOW() WHERE id = $2",
            cursor, dataset_id,
        )

    async def update_dataset_after_sync(self, dataset_id: str, rows: int, total_rows: Optional[int]) -> None:
        await self._pool.execute(
            "UPDATE datasets SET last_sync_at = NOW(), last_sync_rows = $1, "
            "total_rows = COALESCE($2, total_rows), status = 'active' WHERE id = $3",
            rows, total_rows, dataset_id,
        )

    # ------------------------------------------------------------------
    # jobs
    # ------------------------------------------------------------------

    async def find_active_job(self, dataset_id: str) -> Optional[str]:
        row = await self._fetchrow(
            "SELECT id FROM etl_jobs WHERE dataset_id = $1 AND status IN ('pending', 'running') LIMIT 1",
            dataset_id,
        )
        return str(row["id"]) if row else None

    async def create_job(self, dataset_id: str, action: JobAction) -> str:
        row = await self._fetchrow(
            "INSERT INTO etl_jobs (tenant_id, dataset_id, action, status, started_at) "
            "SELECT tenant_id, id, $2, 'running', NOW() FROM datasets WHERE id = $1 RETURNING id",
            dataset_id, action.value,
        )
        return str(row["id"])

    async def list_pending_jobs(self, limit: int = 10) -> List[Dict[str, Any]]:
        return await self._fetch(
            "SELECT id AS job_id, dataset_id, action FROM etl_jobs "
            "WHERE status = 'pending' ORDER BY started_at ASC LIMIT $1",
            limit,
        )

    async def claim_job(self, job_id: str) -> bool:
        """Move a pending job to running; False when it was already taken or finished"""
        row = await self._fetchrow(
            "UPDATE etl_jobs SET status = $1, started_at = NOW() "
            "WHERE id = $2 AND status = 'pending' RETURNING id",
            JobStatus.RUNNING.value, job_id,
        )
        return row is not None

    async def complete_job(self, job_id: str, rows_processed: int, message: Optional[str] = None) -> None:
        await self._pool.execute(
            "UPDATE etl_jobs SET status = $1, completed_at = NOW(), rows_processed = $2, "
            "error_message = COALESCE($3, error_message) WHERE id = $4",
            JobStatus.COMPLETED.value, rows_processed, message, job_id,
        )

    async def cancel_job(self, job_id: str, rows_processed: int) -> None:
        await self._pool.execute(
            "UPDATE etl_jobs SET status = $1, completed_at = NOW(), rows_processed = $2 WHERE id = $3",
            JobStatus.CANCELLED.value, rows_processed, job_id,
        )

    async def fail_job(self, job_id: str, error_message: str) -> None:
        await self._pool.execute(
            "UPDATE etl_jobs SET status = $1, completed_at = NOW(), error_message = $2 WHERE id = $3",
            JobStatus.FAILED.value, error_message[:4000], job_id,
        )

    async def skip_job(self, job_id: str, reason: str) -> None:
        await self._pool.execute(
            "UPDATE etl_jobs SET status = $1, completed_at = NOW(), error_message = $2 "
            "WHERE id = $3 AND status = 'pending'",
            JobStatus.SKIPPED.value, reason, job_id,
        )

    async def update_job_progress(self, job_id: Optional[str], rows_processed: int,
                                  message: Optional[str] = None) -> None:
        """Best-effort progress write; failures are only logged"""
        if not job_id:
            return
        try:
            if message is None:
                await self._pool.execute(
                    "UPDATE etl_jobs SET rows_processed = $1 WHERE id = $2", rows_processed, job_id
                )
            else:
                await self._pool.execute(
                    "UPDATE etl_jobs SET rows_processed = $1, error_message = $2 WHERE id = $3",
                    rows_processed, message, job_id,
                )
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.warning(f"Could not update progress for job {job_id}: {e}")

    # ------------------------------------------------------------------
    # schedules
    # ------------------------------------------------------------------

    async def list_due_schedules(self) -> List[Schedule]:
        rows = await self._fetch(
            "SELECT s.*, d.name AS dataset_name FROM etl_schedules s "
            "JOIN datasets d ON s.dataset_id = d.id "
            "WHERE s.is_active = true AND d.status = 'active' "
            "AND (s.next_run_at IS NULL OR s.next_run_at <= NOW())"
        )
        return [Schedule.from_dict(r) for r in rows]

    async def update_schedule_run(self, schedule_id: str, next_run_at: datetime) -> None:
        await self._pool.execute(
            "UPDATE etl_schedules SET next_run_at = $1, last_run_at = NOW() WHERE id = $2",
            next_run_at, schedule_id,
        )
