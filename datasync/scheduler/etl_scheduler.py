import asyncio
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..core.enums import JobAction
from ..core.models import JobRequest

logger = logging.getLogger(__name__)

FALLBACK_INTERVAL = timedelta(hours=24)

_STEP = re.compile(r"^\*/(\d+)$")


def compute_next_run(cron_expression: str, now: Optional[datetime] = None) -> datetime:
    """
    Next run time for the supported cron shapes:

      * * * * *       every minute
      */N * * * *     every N minutes
      0 * * * *       top of the next hour
      0 */N * * *     N hours later, on the hour
      0 H * * *       next H:00

    Anything else runs again in 24 hours.
    """
    now = now or datetime.now()
    parts = (cron_expression or "").split()
    if len(parts) == 5 and parts[2:] == ["*", "*", "*"]:
        minute, hour = parts[0], parts[1]
        on_the_minute = now.replace(second=0, microsecond=0)
        on_the_hour = on_the_minute.replace(minute=0)

        if minute == "*" and hour == "*":
            return on_the_minute + timedelta(minutes=1)

        step = _STEP.match(minute)
        if step and hour == "*" and int(step.group(1)) > 0:
            return on_the_minute + timedelta(minutes=int(step.group(1)))

        if minute == "0":
            if hour == "*":
                return on_the_hour + timedelta(hours=1)
            step = _STEP.match(hour)
            if step and int(step.group(1)) > 0:
                return on_the_hour + timedelta(hours=int(step.group(1)))
            if hour.isdigit() and int(hour) < 24:
                candidate = on_the_hour.replace(hour=int(hour))
                if candidate <= now:
                    candidate += timedelta(days=1)
                return candidate

    logger.warning(f"Unsupported cron expression '{cron_expression}', next run in 24 hours")
    return now + FALLBACK_INTERVAL


class EtlScheduler:
    """Polls etl_schedules and runs an incremental sync for every due dataset"""

    def __init__(self, store, job_manager, interval: int = 60):
        self.store = store
        self.job_manager = job_manager
        self.interval = interval
        self.running = False
        self.logger = logging.getLogger(__name__)

    async def check_scheduled_jobs(self) -> List[Dict[str, Any]]:
        schedules = await self.store.list_due_schedules()
        self.logger.info(f"Checking scheduled jobs: {len(schedules)} due")

        results = []
        for schedule in schedules:
            name = schedule.dataset_name or schedule.dataset_id
            self.logger.info(f"Running scheduled sync for {name} ({schedule.cron_expression})")
            request = JobRequest(
                dataset_id=schedule.dataset_id,
                action=JobAction.INCREMENTAL_SYNC,
                triggered_by="scheduler",
            )
            try:
                result = await self.job_manager.run_sync_job(request)
            except Exception as e:
                # next_run_at stays put, so the schedule is retried on the next tick
                self.logger.error(f"Scheduled sync for {name} failed: {e}")
                results.append({"dataset_id": schedule.dataset_id, "status": "failed", "error": str(e)})
                continue

            await self.store.update_schedule_run(schedule.id, compute_next_run(schedule.cron_expression))
            results.append(result)
        return results

    async def start(self):
        self.running = True
        self.logger.info(f"Scheduler started, checking every {self.interval}s")
        while self.running:
            try:
                await self.check_scheduled_jobs()
            except Exception as e:
                self.logger.error(f"Scheduler error: {e}")
            await asyncio.sleep(self.interval)

    async def stop(self):
        self.running = False
        self.logger.info("Scheduler stopped")
