import asyncio
import logging
import time
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..config.global_config_loader import GlobalConfig
from ..destination.clickhouse import ClickHouseWriter
from ..scheduler.dataset_lock_manager import DatasetLockManager
from ..scheduler.etl_scheduler import EtlScheduler
from ..source.registry import SourceRegistry
from ..store.metadata_store import MetadataStore
from ..sync.dispatcher import StrategyDispatcher, build_strategies
from ..sync.notifications import CompletionPublisher
from ..sync.services import SyncServices
from ..sync.sync_job_manager import SyncJobManager
from ..utils.credentials import CredentialDecryptor
from ..utils.memory_governor import MemoryGovernor
from ..validation.consistency_validator import ConsistencyValidator
from ..validation.type_validator import TypeCompatibilityValidator


class WorkerRuntime:
    """
    Owns every long-lived resource of a worker process: the Redis client,
    the metadata pool, the ClickHouse session and the job manager built on
    them. start() and stop() bracket the process lifetime.
    """

    def __init__(self, config: GlobalConfig, redis_client=None):
        self.config = config
        self.redis = redis_client
        self.store: Optional[MetadataStore] = None
        self.writer: Optional[ClickHouseWriter] = None
        self.lock_manager: Optional[DatasetLockManager] = None
        self.job_manager: Optional[SyncJobManager] = None
        self.scheduler: Optional[EtlScheduler] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self.logger = logging.getLogger(__name__)

    @property
    def heartbeat_key(self) -> str:
        return f"{self.config.redis.key_prefix}:worker:heartbeat"

    async def start(self):
        cfg = self.config
        if self.redis is None:
            self.redis = aioredis.from_url(cfg.redis.url, db=cfg.redis.database)

        self.store = MetadataStore(cfg.metadata_db.dsn, cfg.metadata_db.min_size, cfg.metadata_db.max_size)
        await self.store.connect()
        self.logger.info("Metadata database connected")

        self.writer = ClickHouseWriter(
            host=cfg.clickhouse.url,
            database=cfg.clickhouse.database,
            user=cfg.clickhouse.user,
            password=cfg.clickhouse.password,
            insert_batch_size=cfg.clickhouse.insert_batch_size,
            request_timeout=cfg.clickhouse.request_timeout,
        )
        await self.writer.connect()
        self.logger.info(f"ClickHouse writer ready ({cfg.clickhouse.url}/{cfg.clickhouse.database})")

        self.lock_manager = DatasetLockManager(
            self.redis,
            key_prefix=cfg.redis.key_prefix,
            lock_ttl=cfg.redis.lock_ttl,
            cancel_ttl=cfg.redis.cancel_ttl,
        )
        services = SyncServices(
            writer=self.writer,
            store=self.store,
            governor=MemoryGovernor(
                max_memory_mb=cfg.memory.max_memory_mb,
                gc_interval_rows=cfg.memory.gc_interval_rows,
                max_batch_size=cfg.memory.max_batch_size,
                pressure_pause=cfg.memory.pressure_pause,
            ),
            validator=ConsistencyValidator(self.writer),
            sources=SourceRegistry(decryptor=CredentialDecryptor(cfg.security.encryption_key)),
            settings=cfg.sync,
        )
        self.job_manager = SyncJobManager(
            store=self.store,
            lock_manager=self.lock_manager,
            dispatcher=StrategyDispatcher(build_strategies(services)),
            writer=self.writer,
            publisher=CompletionPublisher(self.redis, cfg.redis.completion_channel),
            type_checker=TypeCompatibilityValidator(self.writer),
            max_concurrent_jobs=cfg.worker.max_concurrent_jobs,
        )
        self.scheduler = EtlScheduler(self.store, self.job_manager, cfg.scheduler.schedule_interval)

        await self.heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        self.logger.info("Worker runtime started")

    async def heartbeat(self) -> None:
        try:
            await self.redis.set(self.heartbeat_key, str(int(time.time() * 1000)),
                                 ex=self.config.worker.heartbeat_ttl)
        except RedisError as e:
            self.logger.warning(f"Heartbeat failed: {e}")

    async def _heartbeat_loop(self):
        while True:
            await asyncio.sleep(self.config.worker.heartbeat_interval)
            await self.heartbeat()

    async def stop(self):
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        if self.scheduler:
            await self.scheduler.stop()
        if self.job_manager:
            for job_id in self.job_manager.get_active_jobs():
                self.logger.warning(f"Worker stopping with job {job_id} still running")
        if self.writer:
            await self.writer.disconnect()
        if self.store:
            await self.store.disconnect()
        if self.redis is not None:
            await self.redis.aclose()
        self.logger.info("Worker runtime stopped")
