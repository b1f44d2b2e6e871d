"""datasync - incremental replication of relational and API sources into ClickHouse."""

__version__ = "0.1.0"
