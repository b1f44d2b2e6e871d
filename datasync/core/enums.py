from enum import Enum


class SyncStrategyType(str, Enum):
    FULL_REFRESH = "full_refresh"
    TIMESTAMP = "timestamp"
    ID = "id"
    DATE_PARTITION = "date_partition"
    DATE_DELETE_INSERT = "date_delete_insert"
    MISSING_RANGES = "missing_ranges"
    NEW_RECORDS = "new_records"
    INITIAL_SAMPLE = "initial_sample"

    @classmethod
    def parse(cls, value) -> "SyncStrategyType":
        """Resolve a stored strategy name, defaulting to full refresh"""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.FULL_REFRESH


class ConnectionKind(str, Enum):
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MSSQL = "mssql"
    API = "api"

    @classmethod
    def parse(cls, value) -> "ConnectionKind":
        if isinstance(value, cls):
            return value
        aliases = {"postgres": cls.POSTGRESQL, "pg": cls.POSTGRESQL, "sqlserver": cls.MSSQL}
        normalized = str(value).strip().lower()
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class JobAction(str, Enum):
    INCREMENTAL_SYNC = "incremental_sync"
    FULL_REFRESH = "full_refresh"
    MANUAL_SYNC = "manual_sync"
    PARTIAL_REFRESH = "partial_refresh"
    MISSING_SYNC = "missing_sync"
    NEW_RECORDS_SYNC = "new_records_sync"
    INITIAL_SYNC = "initial_sync"

    @classmethod
    def parse(cls, value) -> "JobAction":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.INCREMENTAL_SYNC


class PartitionGranularity(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"


class Capability(str, Enum):
    """Source adapter capabilities that strategies check before reading"""

    # Plain streaming of the whole source
    FULL_READ = "full_read"

    # Ordered reads past a low-water mark on an arbitrary column
    INCREMENTAL_READ = "incremental_read"

    # Ordered pages by integer key (id > cursor LIMIT n)
    KEYSET_PAGINATION = "keyset_pagination"

    # Dialect specific "last N days" filter
    DATE_WINDOW_FILTER = "date_window_filter"

    # Per-date reads and modified-date detection
    DATE_PARTITION_SYNC = "date_partition_sync"

    # Inclusive primary key range reads
    KEY_RANGE_REPAIR = "key_range_repair"
