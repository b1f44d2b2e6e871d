import logging
from typing import Optional


class CancellationToken:
    """
    Cooperative cancellation for one job.

    Checked by strategies at batch boundaries. Set locally through cancel() or
    remotely through the job's cancellation flag; once observed it stays set.
    """

    def __init__(self, lock_manager=None, job_id: Optional[str] = None):
        self.lock_manager = lock_manager
        self.job_id = job_id
        self._cancelled = False
        self.logger = logging.getLogger(__name__)

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        """Whether cancellation has been observed, without asking Redis again"""
        return self._cancelled

    async def is_cancelled(self) -> bool:
        if self._cancelled:
            return True
        if self.lock_manager is not None and self.job_id:
            if await self.lock_manager.is_cancelled(self.job_id):
                self.logger.info(f"Job {self.job_id} was cancelled")
                self._cancelled = True
        return self._cancelled

    @classmethod
    def never(cls) -> "CancellationToken":
        return cls()
