from dataclasses import dataclass

from ..config.global_config_loader import SyncConfig
from ..destination.clickhouse import ClickHouseWriter
from ..source.registry import SourceRegistry
from ..store.metadata_store import MetadataStore
from ..utils.memory_governor import MemoryGovernor
from ..validation.consistency_validator import ConsistencyValidator


@dataclass
class SyncServices:
    """Collaborators shared by every strategy, built once per worker"""
    writer: ClickHouseWriter
    store: MetadataStore
    governor: MemoryGovernor
    validator: ConsistencyValidator
    sources: SourceRegistry
    settings: SyncConfig
