import logging
from typing import Any, Dict, List

from arq import cron
from arq.connections import RedisSettings

from ..config.global_config_loader import SchedulerConfig, get_global_config
from ..core.models import JobRequest
from .runtime import WorkerRuntime

logger = logging.getLogger(__name__)


async def startup(ctx: dict):
    runtime = WorkerRuntime(get_global_config())
    await runtime.start()
    ctx["runtime"] = runtime


async def shutdown(ctx: dict):
    runtime = ctx.get("runtime")
    if runtime:
        await runtime.stop()


async def run_etl_job(ctx: dict, request: Dict[str, Any]) -> Dict[str, Any]:
    """ARQ function: run one sync job described by a JobRequest dict"""
    job_request = JobRequest.from_dict(request)
    logger.info(f"Received {job_request.action.value} for dataset {job_request.dataset_id}")
    try:
        return await ctx["runtime"].job_manager.run_sync_job(job_request)
    except Exception as e:
        logger.error(f"ETL job for dataset {job_request.dataset_id} failed: {e}", exc_info=True)
        return {"status": "failed", "dataset_id": job_request.dataset_id, "error": str(e)}


async def cancel_etl_job(ctx: dict, job_id: str) -> Dict[str, Any]:
    cancelled = await ctx["runtime"].job_manager.cancel_job(job_id)
    return {"job_id": job_id, "cancelled": cancelled}


async def check_scheduled_jobs(ctx: dict) -> List[Dict[str, Any]]:
    return await ctx["runtime"].scheduler.check_scheduled_jobs()


async def process_pending_jobs(ctx: dict) -> List[Dict[str, Any]]:
    runtime = ctx["runtime"]
    return await runtime.job_manager.process_pending_jobs(runtime.config.sync.pending_jobs_limit)


def _every(seconds: int) -> Dict[str, Any]:
    """arq cron arguments firing every `seconds` seconds (minute resolution above 60)"""
    seconds = max(int(seconds), 1)
    if seconds < 60:
        return {"second": set(range(0, 60, seconds))}
    return {"minute": set(range(0, 60, max(seconds // 60, 1))), "second": 0}


def build_cron_jobs(scheduler_config) -> list:
    return [
        cron(check_scheduled_jobs, unique=True, **_every(scheduler_config.schedule_interval)),
        cron(process_pending_jobs, unique=True, **_every(scheduler_config.pending_poll_interval)),
    ]


# ARQ Worker class configuration
class WorkerSettings:
    """ARQ worker settings"""
    functions = [run_etl_job, cancel_etl_job]
    cron_jobs = build_cron_jobs(SchedulerConfig())
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings()
    max_jobs = 4
    job_timeout = 7200
    keep_result = 3600
