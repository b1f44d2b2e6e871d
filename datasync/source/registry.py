from typing import Dict, Optional, Type

from ..core.enums import ConnectionKind
from ..core.exceptions import UnsupportedSourceError
from ..core.models import ConnectionDescriptor
from ..utils.credentials import CredentialDecryptor
from .base_source import SourceAdapter
from .api import ApiSource
from .mssql import MSSQLSource
from .mysql import MySQLSource
from .postgres import PostgresSource


DEFAULT_ADAPTERS: Dict[ConnectionKind, Type[SourceAdapter]] = {
    ConnectionKind.POSTGRESQL: PostgresSource,
    ConnectionKind.MYSQL: MySQLSource,
    ConnectionKind.MSSQL: MSSQLSource,
    ConnectionKind.API: ApiSource,
}


class SourceRegistry:
    """Maps a connection kind to the adapter class that reads it"""

    def __init__(self, adapters: Optional[Dict[ConnectionKind, Type[SourceAdapter]]] = None,
                 decryptor: Optional[CredentialDecryptor] = None):
        self._adapters = dict(adapters or DEFAULT_ADAPTERS)
        self.decryptor = decryptor or CredentialDecryptor()

    def register(self, kind: ConnectionKind, adapter_cls: Type[SourceAdapter]) -> None:
        self._adapters[kind] = adapter_cls

    def create(self, connection: ConnectionDescriptor) -> SourceAdapter:
        adapter_cls = self._adapters.get(connection.kind)
        if adapter_cls is None:
            raise UnsupportedSourceError(f"No source adapter registered for {connection.kind}")
        return adapter_cls(connection, self.decryptor)
