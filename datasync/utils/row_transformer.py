import logging
import math
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from ..core.models import ColumnMapping
from .date_utils import EPOCH_DATE, EPOCH_DATETIME, to_clickhouse_date, to_clickhouse_datetime

logger = logging.getLogger(__name__)


def coerce_numeric(value: Any) -> Any:
    """Null, empty and unparsable values become 0"""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)):
        number = float(value)
        return 0 if math.isnan(number) or math.isinf(number) else number
    try:
        number = float(str(value).strip().replace(",", "."))
    except ValueError:
        return 0
    if math.isnan(number) or math.isinf(number):
        return 0
    return number


def coerce_plain(value: Any) -> Any:
    """Values headed for String-like columns; null becomes ''"""
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return to_clickhouse_datetime(value)
    if isinstance(value, time):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return value


def coerce_value(value: Any, mapping: ColumnMapping) -> Any:
    if mapping.is_numeric:
        number = coerce_numeric(value)
        return int(number) if mapping.is_integer else number
    if mapping.is_datetime:
        return to_clickhouse_datetime(value) or EPOCH_DATETIME
    if mapping.is_date:
        return to_clickhouse_date(value) or EPOCH_DATE
    if mapping.base_type == "Bool":
        return bool(value) if value is not None else False
    return coerce_plain(value)


class RowTransformer:
    """Applies a dataset's column mapping and ClickHouse type coercion to source rows"""

    def __init__(self, column_mapping: List[ColumnMapping]):
        self.column_mapping = list(column_mapping)

    @property
    def target_columns(self) -> List[str]:
        return [m.target for m in self.column_mapping]

    def transform(self, row: Dict[str, Any]) -> Dict[str, Any]:
        out = {}
        for mapping in self.column_mapping:
            out[mapping.target] = coerce_value(lookup_column(row, mapping.source), mapping)
        return out

    def transform_batch(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [self.transform(row) for row in rows]


def lookup_column(row: Dict[str, Any], column: str) -> Optional[Any]:
    if column in row:
        return row[column]
    # Drivers disagree on identifier case
    lowered = column.lower()
    for key, value in row.items():
        if key.lower() == lowered:
            return value
    return None
