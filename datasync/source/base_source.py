import logging
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from ..core.capabilities import get_source_capabilities
from ..core.enums import Capability, ConnectionKind
from ..core.exceptions import UnsupportedSourceError
from ..core.models import ConnectionDescriptor, DatasetDescriptor
from ..utils.credentials import CredentialDecryptor


Batch = List[Dict[str, Any]]


class SourceAdapter(ABC):
    """
    Uniform read interface over one source connection.

    Every read is either a bounded fetch returning one list of rows or a stream
    yielding lists of at most batch_size rows. Reads the adapter does not support
    raise UnsupportedSourceError when called; strategies check has_capability()
    first and fall back or fail explicitly.
    """

    kind: ConnectionKind = None
    # Class-level capabilities added on top of the defaults for the kind
    _capabilities: Optional[Set[Capability]] = None

    def __init__(self, connection: ConnectionDescriptor,
                 decryptor: Optional[CredentialDecryptor] = None):
        self.connection = connection
        self.decryptor = decryptor or CredentialDecryptor()
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()

    def _password(self) -> Optional[str]:
        """Decrypted only at connect time and never stored"""
        return self.decryptor.decrypt(self.connection.password_encrypted)

    # ------------------------------------------------------------------
    # capabilities
    # ------------------------------------------------------------------

    def get_capabilities(self) -> Set[Capability]:
        capabilities = get_source_capabilities(self.kind)
        if self._capabilities:
            capabilities |= set(self._capabilities)
        return capabilities

    def has_capability(self, capability: Capability) -> bool:
        return capability in self.get_capabilities()

    def require(self, capability: Capability, operation: str = "") -> None:
        if not self.has_capability(capability):
            raise self._unsupported(capability, operation)

    def _unsupported(self, capability: Capability, operation: str = "") -> UnsupportedSourceError:
        what = operation or capability.value
        return UnsupportedSourceError(
            f"{self.kind.value} source does not support {what}", capability=capability
        )

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    @abstractmethod
    def stream_rows(self, dataset: DatasetDescriptor, batch_size: int,
                    row_limit: Optional[int] = None) -> AsyncIterator[Batch]:
        """Whole source, in source order"""

    def stream_rows_after(self, dataset: DatasetDescriptor, column: str, low_water_mark: Any,
                          batch_size: int, row_limit: Optional[int] = None) -> AsyncIterator[Batch]:
        """Rows with column > low_water_mark ascending (all rows when the mark is None)"""
        raise self._unsupported(Capability.INCREMENTAL_READ)

    async def fetch_after_key(self, dataset: DatasetDescriptor, key_column: str,
                              after: int, limit: int) -> Batch:
        """One keyset page: key_column > after ORDER BY key_column LIMIT limit"""
        raise self._unsupported(Capability.KEYSET_PAGINATION)

    async def fetch_max_key(self, dataset: DatasetDescriptor, key_column: str) -> Optional[int]:
        raise self._unsupported(Capability.KEYSET_PAGINATION)

    def stream_recent_days(self, dataset: DatasetDescriptor, column: str, days: int,
                           batch_size: int, row_limit: Optional[int] = None) -> AsyncIterator[Batch]:
        """Rows of today (days == 0) or of the last `days` days"""
        raise self._unsupported(Capability.DATE_WINDOW_FILTER)

    async def fetch_modified_dates(self, dataset: DatasetDescriptor, partition_column: str,
                                   modified_column: str, since: datetime) -> List[date]:
        raise self._unsupported(Capability.DATE_PARTITION_SYNC)

    def stream_date(self, dataset: DatasetDescriptor, partition_column: str, day: date,
                    batch_size: int) -> AsyncIterator[Batch]:
        raise self._unsupported(Capability.DATE_PARTITION_SYNC)

    async def fetch_key_range(self, dataset: DatasetDescriptor, key_column: str,
                              start: int, end: int) -> Batch:
        """Inclusive key range"""
        raise self._unsupported(Capability.KEY_RANGE_REPAIR)

    async def fetch_sample(self, dataset: DatasetDescriptor, limit: int) -> Batch:
        """A small first slice of the source, used to seed a new destination table"""
        stream = self.stream_rows(dataset, limit, limit)
        try:
            async for batch in stream:
                return batch[:limit]
            return []
        finally:
            await stream.aclose()
