import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from ..core.enums import JobAction, JobStatus
from ..core.exceptions import ConfigurationError, SyncError
from ..core.models import JobRequest
from ..validation.type_validator import TypeCompatibilityValidator
from .cancellation import CancellationToken


class SyncJobManager:
    """
    Runs sync jobs end to end: dataset lock, job row bookkeeping, strategy
    dispatch, completion event, and cleanup. active_jobs holds the
    cancellation token of every job running in this process.
    """

    def __init__(self, store, lock_manager, dispatcher, writer, publisher=None,
                 max_concurrent_jobs: int = 4, type_checker=None):
        self.store = store
        self.lock_manager = lock_manager
        self.dispatcher = dispatcher
        self.writer = writer
        self.publisher = publisher
        self.type_checker = type_checker or TypeCompatibilityValidator(writer)
        self.max_concurrent_jobs = max_concurrent_jobs
        self.active_jobs: Dict[str, CancellationToken] = {}
        self.job_semaphore = asyncio.Semaphore(max_concurrent_jobs)
        self.logger = logging.getLogger(f"{__name__}.SyncJobManager")

    async def run_sync_job(self, request: JobRequest) -> Dict[str, Any]:
        async with self.job_semaphore:
            return await self._run_locked(request)

    async def _run_locked(self, request: JobRequest) -> Dict[str, Any]:
        dataset_id = request.dataset_id
        if not await self.lock_manager.acquire(dataset_id):
            reason = "Dataset is locked by another sync"
            if request.job_id:
                await self.store.skip_job(request.job_id, reason)
            self.logger.warning(f"Skipping job {request.job_id} for dataset {dataset_id}: {reason}")
            return self._result(JobStatus.SKIPPED, request, request.job_id, reason=reason)

        job_id = request.job_id
        try:
            dataset, connection = await self._load(request)
            if not job_id:
                existing = await self.store.find_active_job(dataset.id)
                if existing:
                    reason = f"Job {existing} is already pending or running"
                    self.logger.warning(f"Not starting a new job for dataset {dataset.id}: {reason}")
                    return self._result(JobStatus.SKIPPED, request, existing, reason=reason)
                job_id = await self.store.create_job(dataset.id, request.action)
            elif not await self.store.claim_job(job_id):
                reason = f"Job {job_id} is no longer pending"
                self.logger.warning(f"Not running job {job_id} for dataset {dataset.id}: {reason}")
                return self._result(JobStatus.SKIPPED, request, job_id, reason=reason)
            await self._check_types(dataset)
            return await self._execute_job(request, dataset, connection, job_id)
        except asyncio.CancelledError:
            self.logger.warning(f"Sync job {job_id} for dataset {dataset_id} interrupted")
            if job_id:
                await self._mark_failed(job_id, "Job interrupted by worker shutdown or timeout")
            raise
        except Exception as e:
            self.logger.error(f"Sync job {job_id} for dataset {dataset_id} failed: {e}", exc_info=True)
            if job_id:
                await self._mark_failed(job_id, str(e) or e.__class__.__name__)
            raise
        finally:
            if job_id:
                self.active_jobs.pop(job_id, None)
            await self.lock_manager.release(dataset_id)

    async def _check_types(self, dataset) -> None:
        result = await self.type_checker.check(dataset)
        if not result.valid:
            raise ConfigurationError(
                f"{result.warning}. Drop and recreate {dataset.destination_table} to apply the new mapping"
            )

    async def _load(self, request: JobRequest):
        dataset = await self.store.get_dataset(request.dataset_id)
        if dataset is None:
            raise ConfigurationError(f"Dataset {request.dataset_id} not found")
        connection = await self.store.get_connection(dataset.connection_id)
        if connection is None:
            raise ConfigurationError(f"Connection {dataset.connection_id} of dataset {dataset.id} not found")
        return dataset, connection

    async def _execute_job(self, request: JobRequest, dataset, connection, job_id: str) -> Dict[str, Any]:
        started = time.monotonic()
        token = CancellationToken(self.lock_manager, job_id)
        self.active_jobs[job_id] = token
        await self.lock_manager.mark_active(job_id, dataset.id)
        self.logger.info(f"Starting job {job_id} ({request.action.value}) for dataset {dataset.id}")

        try:
            rows = await self.dispatcher.dispatch(request, dataset, connection, job_id, token)
        finally:
            await self.lock_manager.clear_active(job_id)

        duration = time.monotonic() - started
        if token.cancelled:
            await self.store.cancel_job(job_id, rows)
            self.logger.info(f"Job {job_id} cancelled after {rows} rows")
            return self._result(JobStatus.CANCELLED, request, job_id, rows=rows, duration=duration)

        await self.store.complete_job(job_id, rows)
        total_rows = await self._destination_count(dataset)
        await self.store.update_dataset_after_sync(dataset.id, rows, total_rows)
        if self.publisher is not None:
            await self.publisher.publish(dataset.id, job_id, rows, duration)
        self.logger.info(f"Job {job_id} completed: {rows} rows in {duration:.1f}s")
        return self._result(JobStatus.COMPLETED, request, job_id, rows=rows, duration=duration)

    async def _destination_count(self, dataset) -> Optional[int]:
        try:
            return await self.writer.count(dataset.destination_table)
        except SyncError as e:
            self.logger.warning(f"Could not count {dataset.destination_table}: {e}")
            return None

    async def _mark_failed(self, job_id: str, message: str) -> None:
        try:
            await self.store.fail_job(job_id, message)
        except Exception as e:
            self.logger.error(f"Could not mark job {job_id} failed: {e}")

    @staticmethod
    def _result(status: JobStatus, request: JobRequest, job_id: Optional[str], rows: int = 0,
                duration: float = 0.0, reason: Optional[str] = None) -> Dict[str, Any]:
        result = {
            "status": status.value,
            "dataset_id": request.dataset_id,
            "job_id": job_id,
            "rows_processed": rows,
            "duration": round(duration, 3),
        }
        if reason:
            result["reason"] = reason
        return result

    async def cancel_job(self, job_id: str) -> bool:
        """Raise the job's cancellation flag; a job running here also stops at once"""
        sent = await self.lock_manager.send_cancel(job_id)
        token = self.active_jobs.get(job_id)
        if token is not None:
            token.cancel()
            self.logger.info(f"Cancelled local job {job_id}")
            return True
        return sent

    async def process_pending_jobs(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Run pending job rows oldest first; one failure does not stop the rest"""
        pending = await self.store.list_pending_jobs(limit)
        results = []
        for row in pending:
            request = JobRequest(
                dataset_id=str(row["dataset_id"]),
                action=JobAction.parse(row.get("action")),
                job_id=str(row["job_id"]),
                triggered_by="pending",
            )
            try:
                results.append(await self.run_sync_job(request))
            except Exception as e:
                self.logger.error(f"Pending job {request.job_id} failed: {e}")
                results.append(self._result(JobStatus.FAILED, request, request.job_id, reason=str(e)))
        return results

    async def run_multiple_jobs(self, requests: List[JobRequest]) -> Dict[str, Dict[str, Any]]:
        """Run several jobs concurrently, bounded by max_concurrent_jobs"""
        completed = await asyncio.gather(*[self.run_sync_job(r) for r in requests], return_exceptions=True)
        results = {}
        for request, result in zip(requests, completed):
            if isinstance(result, Exception):
                results[request.dataset_id] = {"status": JobStatus.FAILED.value, "error": str(result)}
            else:
                results[request.dataset_id] = result
        return results

    def get_active_jobs(self) -> List[str]:
        return list(self.active_jobs.keys())
