import asyncio
import logging
import sys
from urllib.parse import urlparse

import click
from arq import Worker, create_pool
from arq.connections import RedisSettings

from ..config.global_config_loader import load_global_config
from ..core.enums import JobAction
from ..core.models import JobRequest, MissingRange


def _setup_logging(log_level: str):
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def _load_config(global_config):
    logger = logging.getLogger(__name__)
    if global_config:
        cfg = load_global_config(global_config)
        logger.info(f"Loaded global config from: {global_config}")
    else:
        cfg = load_global_config()
        logger.info("Using default global config")
    return cfg


def redis_settings_from_config(cfg) -> RedisSettings:
    parsed = urlparse(cfg.redis.url)
    return RedisSettings(
        host=parsed.hostname or 'localhost',
        port=parsed.port or 6379,
        database=cfg.redis.database,
        password=parsed.password
    )


@click.group()
def worker_cli():
    """Data sync worker CLI"""
    pass


@worker_cli.command()
@click.option('--global-config', default=None, help='Path to global config YAML')
@click.option('--log-level', default='INFO', help='Log level')
def start(global_config: str, log_level: str):
    """Start an ARQ worker that runs sync jobs, schedules and pending jobs"""
    _setup_logging(log_level)
    logger = logging.getLogger(__name__)
    cfg = _load_config(global_config)

    logger.info(f"Starting ARQ worker with max_jobs={cfg.worker.max_jobs}")
    logger.info(f"Redis: {cfg.redis.url}")

    redis_settings = redis_settings_from_config(cfg)

    from ..worker.tasks import WorkerSettings, build_cron_jobs

    WorkerSettings.redis_settings = redis_settings
    WorkerSettings.max_jobs = cfg.worker.max_jobs
    WorkerSettings.job_timeout = cfg.worker.job_timeout
    WorkerSettings.cron_jobs = build_cron_jobs(cfg.scheduler)

    async def run_worker():
        worker = Worker(
            WorkerSettings.functions,
            cron_jobs=WorkerSettings.cron_jobs,
            on_startup=WorkerSettings.on_startup,
            on_shutdown=WorkerSettings.on_shutdown,
            redis_settings=redis_settings,
            max_jobs=cfg.worker.max_jobs,
            job_timeout=cfg.worker.job_timeout,
            keep_result=WorkerSettings.keep_result
        )
        logger.info("Worker started, listening for jobs...")
        await worker.main()

    asyncio.run(run_worker())


@worker_cli.command()
@click.argument('dataset_id')
@click.option('--action', default=JobAction.INCREMENTAL_SYNC.value,
              type=click.Choice([a.value for a in JobAction]), help='Sync action')
@click.option('--job-id', default=None, help='Existing etl_jobs id to run')
@click.option('--range', 'ranges', multiple=True, help='Missing key range START-END (missing_sync)')
@click.option('--pk-column', default=None, help='Primary key column (missing_sync, new_records_sync)')
@click.option('--after-id', default=None, type=int, help='Start after this id (new_records_sync)')
@click.option('--limit', default=None, type=int, help='Maximum rows (new_records_sync)')
@click.option('--global-config', default=None, help='Path to global config YAML')
@click.option('--log-level', default='INFO', help='Log level')
def trigger(dataset_id, action, job_id, ranges, pk_column, after_id, limit, global_config, log_level):
    """Enqueue a sync job for a dataset"""
    _setup_logging(log_level)
    cfg = _load_config(global_config)

    missing = []
    for value in ranges:
        start_id, _, end_id = value.partition('-')
        if not start_id.isdigit() or not end_id.isdigit():
            raise click.BadParameter(f"Expected START-END, got '{value}'", param_hint='--range')
        missing.append(MissingRange(start=int(start_id), end=int(end_id)))

    request = JobRequest(
        dataset_id=dataset_id,
        action=JobAction(action),
        job_id=job_id,
        triggered_by='cli',
        ranges=missing,
        pk_column=pk_column,
        after_id=after_id,
        limit=limit,
    )

    async def enqueue():
        pool = await create_pool(redis_settings_from_config(cfg))
        try:
            job = await pool.enqueue_job('run_etl_job', request.to_dict())
        finally:
            await pool.aclose()
        return job

    job = asyncio.run(enqueue())
    click.echo(f"Enqueued {action} for dataset {dataset_id} (arq job {job.job_id if job else 'duplicate'})")


@worker_cli.command()
@click.argument('job_id')
@click.option('--global-config', default=None, help='Path to global config YAML')
@click.option('--log-level', default='INFO', help='Log level')
def cancel(job_id, global_config, log_level):
    """Request cancellation of a running sync job"""
    _setup_logging(log_level)
    cfg = _load_config(global_config)

    async def enqueue():
        pool = await create_pool(redis_settings_from_config(cfg))
        try:
            await pool.enqueue_job('cancel_etl_job', job_id)
        finally:
            await pool.aclose()

    asyncio.run(enqueue())
    click.echo(f"Cancellation requested for job {job_id}")


@worker_cli.command()
@click.option('--global-config', default=None, help='Path to global config YAML')
@click.option('--log-level', default='INFO', help='Log level')
def scheduler(global_config, log_level):
    """Run the schedule loop in the foreground, without an ARQ worker"""
    _setup_logging(log_level)
    cfg = _load_config(global_config)

    from ..worker.runtime import WorkerRuntime

    async def run_scheduler():
        runtime = WorkerRuntime(cfg)
        await runtime.start()
        try:
            await runtime.scheduler.start()
        finally:
            await runtime.stop()

    asyncio.run(run_scheduler())


if __name__ == '__main__':
    worker_cli()
