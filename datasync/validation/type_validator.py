import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..core.exceptions import SyncError
from ..core.models import DatasetDescriptor

TYPE_FAMILIES = (
    ("DateTime",),
    ("Date",),
    ("Int", "UInt"),
    ("Float", "Decimal"),
)


def strip_wrappers(ch_type: str) -> str:
    """Drop Nullable() and LowCardinality() around a ClickHouse type"""
    inner = ch_type.strip()
    changed = True
    while changed:
        changed = False
        for wrapper in ("Nullable(", "LowCardinality("):
            if inner.startswith(wrapper) and inner.endswith(")"):
                inner = inner[len(wrapper):-1].strip()
                changed = True
    return inner


def type_family(ch_type: str) -> Optional[str]:
    # DateTime is listed before Date so DateTime64 is not taken for a Date
    for prefixes in TYPE_FAMILIES:
        if ch_type.startswith(prefixes):
            return prefixes[0]
    return None


def are_types_compatible(expected: str, actual: str) -> bool:
    """
    Whether rows coerced to `expected` can be inserted into a column of type
    `actual`. Widening inside a numeric or temporal family is allowed and a
    String column accepts anything.
    """
    expected, actual = strip_wrappers(expected), strip_wrappers(actual)
    if expected == actual or actual == "String":
        return True
    family = type_family(expected)
    return family is not None and family == type_family(actual)


@dataclass
class TypeMismatch:
    column: str
    expected_type: str
    actual_type: str

    def __str__(self):
        return f"{self.column}({self.expected_type}→{self.actual_type})"


@dataclass
class TypeCheckResult:
    valid: bool
    mismatches: List[TypeMismatch] = field(default_factory=list)
    warning: Optional[str] = None


class TypeCompatibilityValidator:
    """
    Pre-sync comparison of a dataset's column mapping with the live ClickHouse
    table. A table created under an older mapping keeps its old column types
    and inserts into it fail; a mismatch fails the job before any row is read.
    """

    def __init__(self, writer):
        self.writer = writer
        self.logger = logging.getLogger(__name__)

    async def check(self, dataset: DatasetDescriptor) -> TypeCheckResult:
        if not dataset.column_mapping:
            self.logger.debug(f"Dataset {dataset.id} has no column mapping; skipping type check")
            return TypeCheckResult(valid=True)

        try:
            columns = await self.writer.describe_table(dataset.destination_table)
        except SyncError as e:
            self.logger.warning(f"Type check of {dataset.destination_table} failed, continuing: {e}")
            return TypeCheckResult(valid=True, warning=f"Type check failed: {e}")
        if not columns:
            return TypeCheckResult(valid=True)

        by_name = {name.lower(): ch_type for name, ch_type in columns.items()}
        mismatches = []
        for mapping in dataset.column_mapping:
            actual = columns.get(mapping.target) or by_name.get(mapping.target.lower())
            if actual and not are_types_compatible(mapping.clickhouse_type, actual):
                mismatches.append(TypeMismatch(mapping.target, mapping.clickhouse_type, actual))

        if not mismatches:
            return TypeCheckResult(valid=True)
        warning = "Type mismatch: " + ", ".join(str(m) for m in mismatches)
        self.logger.error(f"Dataset {dataset.id} ({dataset.destination_table}): {warning}")
        return TypeCheckResult(valid=False, mismatches=mismatches, warning=warning)
