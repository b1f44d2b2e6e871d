import logging
from typing import Dict, Optional

from ..core.enums import JobAction, SyncStrategyType
from ..core.models import ConnectionDescriptor, DatasetDescriptor, JobRequest
from .cancellation import CancellationToken
from .services import SyncServices
from .strategies import (
    BaseStrategy,
    DateDeleteInsertStrategy,
    DatePartitionStrategy,
    FullRefreshStrategy,
    IdStrategy,
    InitialSampleStrategy,
    MissingRangesStrategy,
    NewRecordsStrategy,
    TimestampStrategy,
)

ACTION_STRATEGIES = {
    JobAction.MISSING_SYNC: SyncStrategyType.MISSING_RANGES,
    JobAction.NEW_RECORDS_SYNC: SyncStrategyType.NEW_RECORDS,
    JobAction.PARTIAL_REFRESH: SyncStrategyType.DATE_PARTITION,
    JobAction.FULL_REFRESH: SyncStrategyType.FULL_REFRESH,
    JobAction.INITIAL_SYNC: SyncStrategyType.INITIAL_SAMPLE,
}


def build_strategies(services: SyncServices, clock=None) -> Dict[SyncStrategyType, BaseStrategy]:
    """Build every strategy once, with full refresh injected as the fallback"""
    extra = {"clock": clock} if clock else {}
    full_refresh = FullRefreshStrategy(services, **extra)
    return {
        SyncStrategyType.FULL_REFRESH: full_refresh,
        SyncStrategyType.TIMESTAMP: TimestampStrategy(services, fallback=full_refresh, **extra),
        SyncStrategyType.ID: IdStrategy(services, fallback=full_refresh, **extra),
        SyncStrategyType.DATE_DELETE_INSERT: DateDeleteInsertStrategy(services, fallback=full_refresh, **extra),
        SyncStrategyType.DATE_PARTITION: DatePartitionStrategy(services, fallback=full_refresh, **extra),
        SyncStrategyType.MISSING_RANGES: MissingRangesStrategy(services, **extra),
        SyncStrategyType.NEW_RECORDS: NewRecordsStrategy(services, **extra),
        SyncStrategyType.INITIAL_SAMPLE: InitialSampleStrategy(services, **extra),
    }


class StrategyDispatcher:
    """Maps a job request onto the strategy that serves it"""

    def __init__(self, strategies: Dict[SyncStrategyType, BaseStrategy]):
        self.strategies = strategies
        self.logger = logging.getLogger(__name__)

    def select(self, request: JobRequest, dataset: DatasetDescriptor) -> BaseStrategy:
        strategy_type = ACTION_STRATEGIES.get(request.action, dataset.sync_strategy)
        strategy = self.strategies.get(strategy_type)
        if strategy is None:
            self.logger.warning(f"No strategy registered for {strategy_type}; using full refresh")
            strategy = self.strategies[SyncStrategyType.FULL_REFRESH]
        return strategy

    async def dispatch(self, request: JobRequest, dataset: DatasetDescriptor,
                       connection: ConnectionDescriptor, job_id: Optional[str],
                       cancel_token: Optional[CancellationToken] = None) -> int:
        strategy = self.select(request, dataset)
        self.logger.info(
            f"Dataset {dataset.id}: action {request.action.value} -> {strategy.name.value} (job {job_id})"
        )
        options = {}
        if strategy.name == SyncStrategyType.MISSING_RANGES:
            options = {"ranges": request.ranges, "pk_column": request.pk_column}
        elif strategy.name == SyncStrategyType.NEW_RECORDS:
            options = {"after_id": request.after_id, "limit": request.limit, "pk_column": request.pk_column}
        return await strategy.execute(dataset, connection, job_id, cancel_token, **options)
