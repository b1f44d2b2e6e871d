import json
import logging
import os
import socket
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from redis.exceptions import RedisError

WORKER_ID = f"{socket.gethostname()}-{os.getpid()}"


class DatasetLockManager:
    """
    Per-dataset mutual exclusion and job cancellation flags in Redis.

    Keys:
      {prefix}:lock:{dataset_id}    JSON holder info, expires after lock_ttl
      {prefix}:cancel:{job_id}      "true", expires after cancel_ttl
      {prefix}:active:{job_id}      JSON job info while the job runs

    Redis failures never block a sync: acquire() proceeds, is_cancelled()
    reports not cancelled, and release() only logs.
    """

    def __init__(self, redis_client, key_prefix: str = "etl", lock_ttl: int = 7200,
                 cancel_ttl: int = 3600, holder_id: Optional[str] = None):
        self.redis = redis_client
        self.key_prefix = key_prefix
        self.lock_ttl = lock_ttl
        self.cancel_ttl = cancel_ttl
        self.holder_id = holder_id or WORKER_ID
        self.logger = logging.getLogger(__name__)

    def _lock_key(self, dataset_id: str) -> str:
        return f"{self.key_prefix}:lock:{dataset_id}"

    def _cancel_key(self, job_id: str) -> str:
        return f"{self.key_prefix}:cancel:{job_id}"

    def _active_key(self, job_id: str) -> str:
        return f"{self.key_prefix}:active:{job_id}"

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    async def acquire(self, dataset_id: str) -> bool:
        """Try once to take the dataset lock"""
        key = self._lock_key(dataset_id)
        value = json.dumps({"holder": self.holder_id, "pid": os.getpid(), "started_at": self._now()})
        try:
            if await self.redis.set(key, value, nx=True, ex=self.lock_ttl):
                self.logger.info(f"Acquired lock for dataset {dataset_id}")
                return True
            existing = await self.get_lock_holder(dataset_id)
            self.logger.warning(
                f"Could not acquire lock for dataset {dataset_id} - sync may already be running (holder: {existing})"
            )
            return False
        except RedisError as e:
            self.logger.error(f"Error acquiring lock for dataset {dataset_id}, proceeding without it: {e}")
            return True

    async def release(self, dataset_id: str) -> None:
        try:
            await self.redis.delete(self._lock_key(dataset_id))
            self.logger.info(f"Released lock for dataset {dataset_id}")
        except RedisError as e:
            self.logger.error(f"Error releasing lock for dataset {dataset_id}: {e}")

    async def get_lock_holder(self, dataset_id: str) -> Optional[Dict[str, Any]]:
        raw = await self.redis.get(self._lock_key(dataset_id))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        try:
            return json.loads(raw)
        except ValueError:
            return {"raw": raw}

    async def is_locked(self, dataset_id: str) -> bool:
        try:
            return await self.redis.exists(self._lock_key(dataset_id)) > 0
        except RedisError as e:
            self.logger.error(f"Error checking lock status for dataset {dataset_id}: {e}")
            return False

    async def send_cancel(self, job_id: str) -> bool:
        try:
            await self.redis.set(self._cancel_key(job_id), "true", ex=self.cancel_ttl)
            self.logger.info(f"Cancellation requested for job {job_id}")
            return True
        except RedisError as e:
            self.logger.error(f"Error setting cancel flag for job {job_id}: {e}")
            return False

    async def is_cancelled(self, job_id: Optional[str]) -> bool:
        if not job_id:
            return False
        try:
            value = await self.redis.get(self._cancel_key(job_id))
        except RedisError as e:
            self.logger.warning(f"Cancel check failed for job {job_id}, continuing: {e}")
            return False
        if isinstance(value, bytes):
            value = value.decode()
        return value == "true"

    async def mark_active(self, job_id: str, dataset_id: str) -> None:
        value = json.dumps({"dataset_id": dataset_id, "holder": self.holder_id, "started_at": self._now()})
        try:
            await self.redis.set(self._active_key(job_id), value, ex=self.lock_ttl)
        except RedisError as e:
            self.logger.warning(f"Could not mark job {job_id} active: {e}")

    async def clear_active(self, job_id: str) -> None:
        try:
            await self.redis.delete(self._active_key(job_id))
        except RedisError as e:
            self.logger.warning(f"Could not clear active marker for job {job_id}: {e}")
