class SyncError(Exception):
    """Base class for all synchronization errors"""


class ConfigurationError(SyncError):
    """A dataset lacks something a strategy requires (column, mapping, source)"""


class UnsupportedSourceError(SyncError):
    """The source adapter cannot serve the reads a strategy needs"""

    def __init__(self, message: str, capability=None):
        super().__init__(message)
        self.capability = capability


class TransientIOError(SyncError):
    """Network or driver failure that may succeed on a later attempt"""


class DestinationError(SyncError):
    """ClickHouse rejected a statement"""

    def __init__(self, message: str, status: int = None, sql: str = None):
        super().__init__(message)
        self.status = status
        self.sql = sql
