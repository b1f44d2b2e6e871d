"""
Default capability sets per source kind.

Strategies never branch on the connection kind; they ask the adapter whether a
capability is present and fall back (or refuse) when it is not.
"""
from typing import Dict, Set

from .enums import Capability, ConnectionKind


_RELATIONAL_BASE = {
    Capability.FULL_READ,
    Capability.INCREMENTAL_READ,
    Capability.KEYSET_PAGINATION,
    Capability.DATE_WINDOW_FILTER,
}


SOURCE_CAPABILITIES: Dict[ConnectionKind, Set[Capability]] = {
    ConnectionKind.POSTGRESQL: _RELATIONAL_BASE | {Capability.DATE_PARTITION_SYNC},
    ConnectionKind.MYSQL: set(_RELATIONAL_BASE),
    ConnectionKind.MSSQL: _RELATIONAL_BASE | {Capability.KEY_RANGE_REPAIR},
    ConnectionKind.API: {Capability.FULL_READ},
}


def get_source_capabilities(kind: ConnectionKind) -> Set[Capability]:
    """Return a copy of the default capabilities for a source kind"""
    return set(SOURCE_CAPABILITIES.get(kind, set()))
