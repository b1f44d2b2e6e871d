import logging
import re
from typing import Any, Dict, List

from ..core.enums import PartitionGranularity
from ..core.models import ColumnMapping, DatasetDescriptor

logger = logging.getLogger(__name__)


SQL_TO_CLICKHOUSE_TYPE: Dict[str, str] = {
    # integers
    "int": "Int32", "int4": "Int32", "integer": "Int32",
    "int2": "Int16", "smallint": "Int16",
    "int8": "Int64", "bigint": "Int64",
    "serial": "Int32", "bigserial": "Int64", "smallserial": "Int16",
    "oid": "UInt32", "tinyint": "Int8", "mediumint": "Int32", "year": "Int16",
    # floats
    "float": "Float64", "float4": "Float32", "float8": "Float64",
    "real": "Float32", "double": "Float64", "double precision": "Float64",
    "decimal": "Float64", "numeric": "Float64", "money": "Float64", "smallmoney": "Float64",
    # strings
    "text": "String", "varchar": "String", "char": "String",
    "character varying": "String", "character": "String", "bpchar": "String",
    "uuid": "String", "json": "String", "jsonb": "String", "xml": "String",
    "nvarchar": "String", "nchar": "String", "ntext": "String",
    "uniqueidentifier": "String", "enum": "String",
    # dates
    "date": "Date", "time": "String", "interval": "String",
    "timestamp": "DateTime", "timestamptz": "DateTime",
    "timestamp without time zone": "DateTime", "timestamp with time zone": "DateTime",
    "datetime": "DateTime", "datetime2": "DateTime", "smalldatetime": "DateTime",
    "datetimeoffset": "DateTime",
    # booleans
    "boolean": "UInt8", "bool": "UInt8", "bit": "UInt8",
    # binary
    "bytea": "String", "blob": "String", "binary": "String", "varbinary": "String",
}

UNIQUE_KEY_CANDIDATES = ("id", "code", "uuid", "pk", "primary_key", "_id")

SYNCED_AT_COLUMN = "_synced_at"

PARTITION_FUNCTIONS = {
    PartitionGranularity.DAILY: "toYYYYMMDD",
    PartitionGranularity.MONTHLY: "toYYYYMM",
}


def map_source_type(source_type: str) -> str:
    """Map a relational column type such as 'varchar(255)' to a ClickHouse type"""
    if not source_type:
        return "String"
    normalized = re.sub(r"\s+", " ", source_type.lower()).strip()
    base = normalized.split("(")[0].strip()
    return SQL_TO_CLICKHOUSE_TYPE.get(base) or SQL_TO_CLICKHOUSE_TYPE.get(normalized) or "String"


def infer_clickhouse_type(value: Any) -> str:
    """Type for an auto-mapped column, guessed from a sample value"""
    if isinstance(value, bool):
        return "UInt8"
    if isinstance(value, int):
        return "Int64"
    if isinstance(value, float):
        return "Float64"
    return "String"


def infer_column_mapping(sample_row: Dict[str, Any]) -> List[ColumnMapping]:
    """Identity mapping built from the first row a source returned"""
    return [
        ColumnMapping(source=name, target=name, clickhouse_type=infer_clickhouse_type(value))
        for name, value in sample_row.items()
    ]


def choose_order_by(dataset: DatasetDescriptor) -> List[str]:
    """
    ORDER BY key for an auto-created ReplacingMergeTree.

    Prefers a unique-looking key. Without one, the date column leads so rows of
    different dates are never merged together.
    """
    targets = [m.target for m in dataset.column_mapping]
    for mapping in dataset.column_mapping:
        if mapping.target.lower() in UNIQUE_KEY_CANDIDATES:
            return [mapping.target]

    date_column = None
    for candidate in (dataset.partition_column, dataset.reference_column):
        if candidate and dataset.mapping_for(candidate):
            date_column = dataset.destination_column(candidate)
            break
    if date_column is None:
        for mapping in dataset.column_mapping:
            if mapping.is_date or mapping.is_datetime:
                date_column = mapping.target
                break

    if date_column:
        others = [t for t in targets if t != date_column][:4]
        logger.warning(
            f"No unique column in {dataset.destination_table}; ordering by {date_column} plus {others}"
        )
        return [date_column] + others

    logger.warning(f"No unique or date column in {dataset.destination_table}; ordering by first columns")
    return targets[:5] or [SYNCED_AT_COLUMN]


def build_create_table_sql(database: str, dataset: DatasetDescriptor) -> str:
    columns = []
    for mapping in dataset.column_mapping:
        ch_type = mapping.clickhouse_type
        if ch_type.startswith("Decimal"):
            ch_type = "Float64"
        columns.append(f"`{mapping.target}` {ch_type}")
    columns.append(f"`{SYNCED_AT_COLUMN}` DateTime DEFAULT now()")

    order_by = ", ".join(f"`{c}`" for c in choose_order_by(dataset))
    column_sql = ",\n    ".join(columns)
    sql = (
        f"CREATE TABLE IF NOT EXISTS `{database}`.`{dataset.destination_table}` (\n"
        f"    {column_sql}\n"
        f")\nENGINE = ReplacingMergeTree({SYNCED_AT_COLUMN})\n"
    )
    if dataset.partition_column and dataset.mapping_for(dataset.partition_column):
        function = PARTITION_FUNCTIONS[dataset.partition_granularity]
        sql += f"PARTITION BY {function}(`{dataset.destination_column(dataset.partition_column)}`)\n"
    return sql + f"ORDER BY ({order_by})"
