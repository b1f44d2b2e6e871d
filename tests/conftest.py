"""Pytest configuration and in-memory fakes for datasync tests."""

import logging
import sys
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import Mock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from datasync.config.global_config_loader import SyncConfig
from datasync.core.capabilities import get_source_capabilities
from datasync.core.enums import ConnectionKind, SyncStrategyType
from datasync.core.exceptions import TransientIOError
from datasync.core.models import ColumnMapping, ConnectionDescriptor, DatasetDescriptor
from datasync.source.base_source import SourceAdapter
from datasync.sync.services import SyncServices
from datasync.utils.memory_governor import MemoryGovernor
from datasync.utils.row_transformer import lookup_column
from datasync.validation.consistency_validator import ConsistencyValidator

logging.basicConfig(level=logging.INFO)

TODAY = date(2024, 1, 15)


def _chunks(rows: List[Dict[str, Any]], size: int):
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


def _day(value) -> date:
    return value.date() if isinstance(value, datetime) else value


class FakeRedis:
    """Just enough of redis.asyncio.Redis for locks, flags and pub/sub"""

    def __init__(self):
        self.data: Dict[str, Any] = {}
        self.expiry: Dict[str, float] = {}
        self.published: List[tuple] = []
        self.now = 0.0
        self.fail = False

    def advance(self, seconds: float):
        self.now += seconds

    def _check(self):
        if self.fail:
            raise RedisConnectionError("redis unavailable")

    def _expire(self, key: str):
        if key in self.expiry and self.expiry[key] <= self.now:
            self.data.pop(key, None)
            self.expiry.pop(key, None)

    async def set(self, key, value, nx=False, ex=None):
        self._check()
        self._expire(key)
        if nx and key in self.data:
            return None
        self.data[key] = value.encode() if isinstance(value, str) else value
        if ex is not None:
            self.expiry[key] = self.now + ex
        else:
            self.expiry.pop(key, None)
        return True

    async def get(self, key):
        self._check()
        self._expire(key)
        return self.data.get(key)

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.expiry.pop(key, None)
        return removed

    async def exists(self, key):
        self._check()
        self._expire(key)
        return 1 if key in self.data else 0

    async def ttl(self, key):
        if key not in self.expiry:
            return -1
        return int(self.expiry[key] - self.now)

    async def publish(self, channel, message):
        self._check()
        self.published.append((channel, message))
        return 1


class FakeClickHouseWriter:
    """In-memory stand-in for ClickHouseWriter keyed by table name"""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.created: List[str] = []
        self.truncated: List[str] = []
        self.deletes: List[tuple] = []
        self.optimized: List[str] = []
        self.inserts: List[int] = []
        self.fail_insert_calls: set = set()
        self.partition_keys: Dict[str, Optional[str]] = {}
        self.columns: Dict[str, Dict[str, str]] = {}
        self.insert_calls = 0

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(table, [])

    async def ensure_table(self, dataset) -> bool:
        if dataset.destination_table in self.tables:
            return False
        self.tables[dataset.destination_table] = []
        self.created.append(dataset.destination_table)
        return True

    async def truncate(self, table: str):
        self.truncated.append(table)
        self.tables[table] = []

    async def insert_rows(self, table: str, rows: List[Dict[str, Any]]) -> int:
        self.insert_calls += 1
        if self.insert_calls in self.fail_insert_calls:
            raise TransientIOError(f"insert {self.insert_calls} failed")
        self.rows(table).extend(rows)
        self.inserts.append(len(rows))
        return len(rows)

    async def delete_date(self, table: str, column: str, day: str):
        self.deletes.append(("=", table, column, day))
        self.tables[table] = [r for r in self.rows(table) if str(r[column])[:10] != day]

    async def delete_dates_from(self, table: str, column: str, start_date: str):
        self.deletes.append((">=", table, column, start_date))
        self.tables[table] = [r for r in self.rows(table) if str(r[column])[:10] < start_date]

    async def optimize(self, table: str) -> bool:
        self.optimized.append(table)
        return True

    async def count(self, table: str) -> int:
        return len(self.rows(table))

    async def max_value(self, table: str, column: str):
        values = [r[column] for r in self.rows(table)]
        return max(values) if values else None

    async def max_int_value(self, table: str, column: str) -> int:
        values = []
        for row in self.rows(table):
            try:
                values.append(int(row[column]))
            except (TypeError, ValueError):
                values.append(0)
        return max(values) if values else 0

    async def partition_key(self, table: str):
        return self.partition_keys.get(table)

    async def describe_table(self, table: str) -> Dict[str, str]:
        return dict(self.columns.get(table, {}))


class FakeMetadataStore:
    """In-memory stand-in for MetadataStore"""

    def __init__(self):
        self.datasets: Dict[str, DatasetDescriptor] = {}
        self.connections: Dict[str, ConnectionDescriptor] = {}
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.cursors: List[tuple] = []
        self.progress: List[tuple] = []
        self.after_sync: List[tuple] = []
        self.pending: List[Dict[str, Any]] = []
        self.schedules: list = []
        self.schedule_runs: List[tuple] = []
        self._next_job = 0

    def _job(self, job_id: str) -> Dict[str, Any]:
        return self.jobs.setdefault(job_id, {"status": "pending", "rows": 0, "message": None})

    async def get_dataset(self, dataset_id):
        return self.datasets.get(dataset_id)

    async def get_connection(self, connection_id):
        return self.connections.get(connection_id)

    async def update_dataset_cursor(self, dataset_id, cursor):
        self.cursors.append((dataset_id, cursor))

    async def update_dataset_after_sync(self, dataset_id, rows, total_rows):
        self.after_sync.append((dataset_id, rows, total_rows))

    async def find_active_job(self, dataset_id):
        for job_id, job in self.jobs.items():
            if job.get("dataset_id") == dataset_id and job["status"] in ("pending", "running"):
                return job_id
        return None

    async def create_job(self, dataset_id, action):
        self._next_job += 1
        job_id = f"job-{self._next_job}"
        self.jobs[job_id] = {"status": "running", "rows": 0, "message": None,
                             "dataset_id": dataset_id, "action": action}
        return job_id

    async def list_pending_jobs(self, limit=10):
        return self.pending[:limit]

    async def claim_job(self, job_id):
        job = self._job(job_id)
        if job["status"] != "pending":
            return False
        job["status"] = "running"
        return True

    async def complete_job(self, job_id, rows, message=None):
        self._job(job_id).update(status="completed", rows=rows)

    async def cancel_job(self, job_id, rows):
        self._job(job_id).update(status="cancelled", rows=rows)

    async def fail_job(self, job_id, error_message):
        self._job(job_id).update(status="failed", message=error_message)

    async def skip_job(self, job_id, reason):
        job = self._job(job_id)
        if job["status"] == "pending":
            job.update(status="skipped", message=reason)

    async def update_job_progress(self, job_id, rows, message=None):
        if job_id:
            self.progress.append((job_id, rows, message))

    async def list_due_schedules(self):
        return list(self.schedules)

    async def update_schedule_run(self, schedule_id, next_run_at):
        self.schedule_runs.append((schedule_id, next_run_at))


class FakeSource(SourceAdapter):
    """Source adapter over a list of dicts, with the capabilities of any kind"""

    def __init__(self, connection: ConnectionDescriptor, rows: Optional[List[Dict[str, Any]]] = None,
                 today: date = TODAY):
        super().__init__(connection)
        self.kind = connection.kind
        self.rows = rows or []
        self.today = today
        self.modified_dates: List[date] = []
        self.calls: List[tuple] = []
        self.connected = False
        self.fetch_failures = 0
        self.stream_failure_after: Optional[int] = None
        self.capabilities: Optional[set] = None

    def get_capabilities(self):
        if self.capabilities is not None:
            return set(self.capabilities)
        return get_source_capabilities(self.kind)

    async def connect(self):
        self.connected = True

    async def disconnect(self):
        self.connected = False

    def _limited(self, rows, row_limit):
        return rows[:row_limit] if row_limit is not None else rows

    async def stream_rows(self, dataset, batch_size, row_limit=None):
        self.calls.append(("stream_rows", row_limit))
        chunks = _chunks(self._limited(list(self.rows), row_limit), batch_size)
        for index, chunk in enumerate(chunks):
            if index == self.stream_failure_after:
                raise TransientIOError("source connection lost")
            yield chunk

    async def fetch_sample(self, dataset, limit):
        self.calls.append(("fetch_sample", limit))
        return list(self.rows[:limit])

    async def stream_rows_after(self, dataset, column, low_water_mark, batch_size, row_limit=None):
        self.calls.append(("stream_rows_after", column, low_water_mark))
        rows = [r for r in self.rows if low_water_mark is None or lookup_column(r, column) > low_water_mark]
        rows.sort(key=lambda r: lookup_column(r, column))
        for chunk in _chunks(self._limited(rows, row_limit), batch_size):
            yield chunk

    async def fetch_after_key(self, dataset, key_column, after, limit):
        self.calls.append(("fetch_after_key", after, limit))
        if self.fetch_failures:
            self.fetch_failures -= 1
            raise TransientIOError("connection reset")
        rows = sorted((r for r in self.rows if lookup_column(r, key_column) > after),
                      key=lambda r: lookup_column(r, key_column))
        return rows[:limit]

    async def fetch_max_key(self, dataset, key_column):
        keys = [lookup_column(r, key_column) for r in self.rows]
        return max(keys) if keys else None

    async def stream_recent_days(self, dataset, column, days, batch_size, row_limit=None):
        self.calls.append(("stream_recent_days", column, days))
        if days == 0:
            rows = [r for r in self.rows if _day(r[column]) == self.today]
        else:
            start = self.today - timedelta(days=days)
            rows = [r for r in self.rows if _day(r[column]) >= start]
        for chunk in _chunks(self._limited(rows, row_limit), batch_size):
            yield chunk

    async def fetch_modified_dates(self, dataset, partition_column, modified_column, since):
        self.calls.append(("fetch_modified_dates", since))
        return list(self.modified_dates)

    async def stream_date(self, dataset, partition_column, day, batch_size):
        self.calls.append(("stream_date", day))
        rows = [r for r in self.rows if _day(r[partition_column]) == day]
        for chunk in _chunks(rows, batch_size):
            yield chunk

    async def fetch_key_range(self, dataset, key_column, start, end):
        self.calls.append(("fetch_key_range", start, end))
        return [r for r in self.rows if start <= lookup_column(r, key_column) <= end]


class FakeSourceRegistry:
    """Hands out one prepared FakeSource regardless of the connection"""

    def __init__(self, source: FakeSource):
        self.source = source
        self.created: List[ConnectionDescriptor] = []

    def create(self, connection):
        self.created.append(connection)
        self.source.kind = connection.kind
        return self.source


def make_connection(kind: ConnectionKind = ConnectionKind.POSTGRESQL) -> ConnectionDescriptor:
    return ConnectionDescriptor(id="conn-1", kind=kind, host="db", port=5432, database="shop",
                                username="etl", password_encrypted="secret")


def make_dataset(**overrides) -> DatasetDescriptor:
    values = dict(
        id="ds-1",
        connection_id="conn-1",
        destination_table="orders",
        source_table="orders",
        sync_strategy=SyncStrategyType.FULL_REFRESH,
        column_mapping=[
            ColumnMapping("id", "id", "Int64"),
            ColumnMapping("updated_at", "updated_at", "DateTime"),
            ColumnMapping("amount", "amount", "Float64"),
        ],
    )
    values.update(overrides)
    return DatasetDescriptor(**values)


def make_rows(count: int, start_id: int = 1, start: datetime = datetime(2024, 1, 10, 8, 0, 0),
              step: timedelta = timedelta(hours=1)) -> List[Dict[str, Any]]:
    return [
        {"id": start_id + i, "updated_at": start + step * i, "amount": float(i)}
        for i in range(count)
    ]


@pytest.fixture
def connection():
    return make_connection()


@pytest.fixture
def source(connection):
    return FakeSource(connection)


@pytest.fixture
def writer():
    return FakeClickHouseWriter()


@pytest.fixture
def store():
    return FakeMetadataStore()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def governor():
    process = Mock()
    process.memory_info.return_value = Mock(rss=100 * 1024 * 1024)
    return MemoryGovernor(max_memory_mb=2048, gc_interval_rows=10_000, max_batch_size=20_000,
                          pressure_pause=0, process=process)


@pytest.fixture
def sync_settings():
    return SyncConfig(batch_size=2, default_row_limit=10_000_000, max_batch_retries=3,
                      compaction_skip_threshold=1_000_000)


@pytest.fixture
def services(writer, store, governor, source, sync_settings):
    return SyncServices(
        writer=writer,
        store=store,
        governor=governor,
        validator=ConsistencyValidator(writer),
        sources=FakeSourceRegistry(source),
        settings=sync_settings,
    )
