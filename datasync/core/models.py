import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .enums import ConnectionKind, JobAction, PartitionGranularity, SyncStrategyType


NUMERIC_TYPE_PREFIXES = ("Int", "UInt", "Float", "Decimal")


def _load_json(value: Any, default: Any) -> Any:
    """Decode a JSON column that may already be decoded by the driver"""
    if value is None or value == "":
        return default
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _positive_int(value: Any) -> Optional[int]:
    """0 and negative limits mean no limit"""
    number = _optional_int(value)
    return number if number and number > 0 else None


@dataclass
class ColumnMapping:
    """One source column copied into one ClickHouse column"""
    source: str
    target: str
    clickhouse_type: str = "String"

    @property
    def base_type(self) -> str:
        """Type name without Nullable()/LowCardinality() wrappers"""
        inner = self.clickhouse_type
        for wrapper in ("Nullable(", "LowCardinality("):
            if inner.startswith(wrapper) and inner.endswith(")"):
                inner = inner[len(wrapper):-1]
        return inner

    @property
    def is_numeric(self) -> bool:
        return self.base_type.startswith(NUMERIC_TYPE_PREFIXES)

    @property
    def is_integer(self) -> bool:
        return self.base_type.startswith(("Int", "UInt"))

    @property
    def is_datetime(self) -> bool:
        return self.base_type.startswith("DateTime")

    @property
    def is_date(self) -> bool:
        return self.base_type in ("Date", "Date32")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ColumnMapping':
        source = data.get("source") or data.get("sourceColumn") or data.get("source_column")
        target = data.get("target") or data.get("targetName") or data.get("target_column") or source
        ch_type = data.get("clickhouse_type") or data.get("clickhouseType")
        if not ch_type:
            from ..destination.type_mapping import map_source_type
            ch_type = map_source_type(data.get("source_type") or data.get("sourceType") or data.get("type") or "")
        return cls(source=source, target=target, clickhouse_type=ch_type)


@dataclass
class MissingRange:
    """Inclusive primary key range to gap-fill"""
    start: int
    end: int
    missing_count: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MissingRange':
        return cls(
            start=int(data["start"]),
            end=int(data["end"]),
            missing_count=_optional_int(data.get("missing_count")),
        )


@dataclass
class ConnectionDescriptor:
    """A data connection row; the password stays encrypted until the adapter connects"""
    id: str
    kind: ConnectionKind
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    username: Optional[str] = None
    password_encrypted: Optional[str] = None
    api_config: Dict[str, Any] = field(default_factory=dict)
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConnectionDescriptor':
        return cls(
            id=str(data["id"]),
            kind=ConnectionKind.parse(data.get("kind") or data.get("type")),
            host=data.get("host"),
            port=_optional_int(data.get("port")),
            database=data.get("database") or data.get("database_name"),
            username=data.get("username"),
            password_encrypted=data.get("password_encrypted"),
            api_config=_load_json(data.get("api_config"), {}),
            name=data.get("name"),
        )


@dataclass
class DatasetDescriptor:
    """Configuration of one dataset replicated into ClickHouse"""
    id: str
    connection_id: str
    destination_table: str
    name: Optional[str] = None
    source_table: Optional[str] = None
    source_query: Optional[str] = None
    sync_strategy: SyncStrategyType = SyncStrategyType.FULL_REFRESH
    reference_column: Optional[str] = None
    row_limit: Optional[int] = None
    delete_days: int = 1
    partition_column: Optional[str] = None
    partition_granularity: PartitionGranularity = PartitionGranularity.MONTHLY
    refresh_window_days: int = 7
    detect_modified: bool = False
    modified_column: Optional[str] = None
    column_mapping: List[ColumnMapping] = field(default_factory=list)
    custom_where: Optional[str] = None
    last_sync_cursor: Optional[str] = None
    last_sync_at: Optional[datetime] = None

    def mapping_for(self, column: str) -> Optional[ColumnMapping]:
        """Find the mapping entry whose source or target name equals column"""
        for mapping in self.column_mapping:
            if mapping.source == column:
                return mapping
        for mapping in self.column_mapping:
            if mapping.target == column:
                return mapping
        return None

    def destination_column(self, column: str) -> str:
        """ClickHouse column name for a source column"""
        mapping = self.mapping_for(column)
        return mapping.target if mapping else column

    def source_column(self, column: str) -> str:
        mapping = self.mapping_for(column)
        return mapping.source if mapping else column

    @property
    def source_columns(self) -> List[str]:
        return [m.source for m in self.column_mapping]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DatasetDescriptor':
        settings = _load_json(data.get("settings"), {}) or {}

        def pick(key: str, default: Any = None) -> Any:
            value = data.get(key)
            if value is None:
                value = settings.get(key, default)
            return default if value is None else value

        mapping_data = _load_json(data.get("column_mapping"), []) or []
        return cls(
            id=str(data["id"]),
            name=data.get("name"),
            connection_id=str(data.get("connection_id")),
            destination_table=data.get("destination_table") or data.get("clickhouse_table"),
            source_table=data.get("source_table"),
            source_query=data.get("source_query"),
            sync_strategy=SyncStrategyType.parse(pick("sync_strategy", SyncStrategyType.FULL_REFRESH)),
            reference_column=pick("reference_column"),
            row_limit=_positive_int(pick("row_limit")),
            delete_days=int(pick("delete_days", 1)),
            partition_column=pick("partition_column"),
            partition_granularity=PartitionGranularity(pick("partition_type", pick("partition_granularity", "monthly"))),
            refresh_window_days=int(pick("refresh_window_days", 7)),
            detect_modified=bool(pick("detect_modified", False)),
            modified_column=pick("modified_column"),
            column_mapping=[ColumnMapping.from_dict(m) for m in mapping_data],
            custom_where=pick("custom_where"),
            last_sync_cursor=_cursor_text(data.get("last_sync_cursor", data.get("last_sync_value"))),
            last_sync_at=data.get("last_sync_at"),
        )


def _cursor_text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    return str(value)


@dataclass
class JobRequest:
    """A request to synchronize one dataset"""
    dataset_id: str
    action: JobAction = JobAction.INCREMENTAL_SYNC
    job_id: Optional[str] = None
    triggered_by: Optional[str] = None
    ranges: List[MissingRange] = field(default_factory=list)
    pk_column: Optional[str] = None
    after_id: Optional[int] = None
    limit: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dataset_id": self.dataset_id,
            "action": self.action.value,
            "job_id": self.job_id,
            "triggered_by": self.triggered_by,
            "ranges": [
                {"start": r.start, "end": r.end, "missing_count": r.missing_count}
                for r in self.ranges
            ],
            "pk_column": self.pk_column,
            "after_id": self.after_id,
            "limit": self.limit,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JobRequest':
        return cls(
            dataset_id=str(data.get("dataset_id") or data.get("datasetId")),
            action=JobAction.parse(data.get("action") or JobAction.INCREMENTAL_SYNC),
            job_id=data.get("job_id") or data.get("jobId"),
            triggered_by=data.get("triggered_by") or data.get("triggeredBy"),
            ranges=[MissingRange.from_dict(r) for r in data.get("ranges") or []],
            pk_column=data.get("pk_column") or data.get("pkColumn"),
            after_id=_optional_int(data.get("after_id", data.get("afterId"))),
            limit=_optional_int(data.get("limit")),
        )


@dataclass
class ValidationResult:
    """Outcome of a post-run consistency check"""
    expected_count: int
    target_count: int
    duplicate_count: int
    is_consistent: bool
    message: str
    error: Optional[str] = None


@dataclass
class Schedule:
    """A due entry of etl_schedules"""
    id: str
    dataset_id: str
    cron_expression: str
    dataset_name: Optional[str] = None
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Schedule':
        return cls(
            id=str(data["id"]),
            dataset_id=str(data["dataset_id"]),
            cron_expression=data.get("cron_expression") or "0 0 * * *",
            dataset_name=data.get("dataset_name"),
            next_run_at=data.get("next_run_at"),
            last_run_at=data.get("last_run_at"),
        )


