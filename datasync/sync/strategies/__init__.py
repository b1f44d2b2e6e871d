from .base import BaseStrategy, RunContext
from .date_delete_insert import DateDeleteInsertStrategy
from .date_partition import DatePartitionStrategy
from .full_refresh import FullRefreshStrategy
from .id_incremental import IdStrategy
from .initial_sample import InitialSampleStrategy
from .missing_ranges import MissingRangesStrategy
from .new_records import NewRecordsResult, NewRecordsStrategy
from .timestamp import TimestampStrategy

__all__ = [
    "BaseStrategy",
    "RunContext",
    "DateDeleteInsertStrategy",
    "DatePartitionStrategy",
    "FullRefreshStrategy",
    "IdStrategy",
    "InitialSampleStrategy",
    "MissingRangesStrategy",
    "NewRecordsResult",
    "NewRecordsStrategy",
    "TimestampStrategy",
]
