"""
Tests for value coercion, date normalization, SQL helpers, the memory governor
and credential decryption.
"""

import math
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import Mock
from uuid import UUID

import pytest
from cryptography.fernet import Fernet

from datasync.core.exceptions import ConfigurationError
from datasync.core.models import ColumnMapping
from datasync.utils.credentials import CredentialDecryptor
from datasync.utils.date_utils import parse_datetime, to_clickhouse_date, to_clickhouse_datetime
from datasync.utils.memory_governor import MemoryGovernor
from datasync.utils.row_transformer import RowTransformer, coerce_value, lookup_column
from datasync.utils.sql_utils import quote_literal, remove_query_limits, validate_identifier


class TestDateUtils:

    @pytest.mark.parametrize("value,expected", [
        (datetime(2024, 1, 15, 10, 30), "2024-01-15 10:30:00"),
        (datetime(2024, 1, 15, 12, 0, tzinfo=timezone(timedelta(hours=2))), "2024-01-15 10:00:00"),
        (date(2024, 1, 15), "2024-01-15 00:00:00"),
        ("2024-01-15T10:30:00.123Z", "2024-01-15 10:30:00"),
        ("2024-01-15T10:30:00+02:00", "2024-01-15 08:30:00"),
        ("2024-01-15", "2024-01-15 00:00:00"),
        ("15/01/2024", "2024-01-15 00:00:00"),
        ("01/15/2024", "2024-01-15 00:00:00"),
        ("15.01.2024 10:00:00", "2024-01-15 10:00:00"),
        (1705276800, "2024-01-15 00:00:00"),
        (1705276800000, "2024-01-15 00:00:00"),
    ])
    def test_to_clickhouse_datetime(self, value, expected):
        assert to_clickhouse_datetime(value) == expected

    @pytest.mark.parametrize("value", [None, "", True, "garbage"])
    def test_unusable_values_become_none(self, value):
        assert to_clickhouse_datetime(value) is None

    def test_date_and_parse(self):
        assert to_clickhouse_date("2024-01-15T10:30:00") == "2024-01-15"
        assert parse_datetime("2024-01-15 10:30:00") == datetime(2024, 1, 15, 10, 30)
        assert parse_datetime(None) is None


class TestRowTransformer:

    @pytest.mark.parametrize("value,ch_type,expected", [
        ("42", "Int64", 42),
        (None, "Int64", 0),
        ("abc", "Int32", 0),
        ("1,5", "Float64", 1.5),
        (Decimal("2.50"), "Nullable(Float64)", 2.5),
        (math.nan, "Float64", 0),
        (None, "DateTime", "1970-01-01 00:00:00"),
        ("2024-01-15T10:00:00", "Date", "2024-01-15"),
        (None, "String", ""),
        (UUID("12345678-1234-5678-1234-567812345678"), "String", "12345678-1234-5678-1234-567812345678"),
        (b"\x01\xff", "String", "01ff"),
        (None, "Bool", False),
    ])
    def test_coerce_value(self, value, ch_type, expected):
        assert coerce_value(value, ColumnMapping("c", "c", ch_type)) == expected

    def test_integer_columns_get_ints(self):
        assert isinstance(coerce_value(7.0, ColumnMapping("c", "c", "UInt32")), int)

    def test_transform_renames_and_matches_case_insensitively(self):
        transformer = RowTransformer([
            ColumnMapping("OrderId", "order_id", "Int64"),
            ColumnMapping("note", "note", "String"),
        ])
        assert transformer.transform({"orderid": "12", "NOTE": None}) == {"order_id": 12, "note": ""}
        assert transformer.target_columns == ["order_id", "note"]

    def test_lookup_missing_column(self):
        assert lookup_column({"a": 1}, "b") is None


class TestSqlUtils:

    @pytest.mark.parametrize("query,expected", [
        ("SELECT * FROM t LIMIT 10", "SELECT * FROM t"),
        ("SELECT * FROM t LIMIT 10 OFFSET 5;", "SELECT * FROM t"),
        ("SELECT TOP (100) a FROM t", "SELECT a FROM t"),
        ("SELECT a FROM t", "SELECT a FROM t"),
    ])
    def test_remove_query_limits(self, query, expected):
        assert remove_query_limits(query) == expected

    def test_validate_identifier(self):
        assert validate_identifier("public.orders") == "public.orders"
        with pytest.raises(ConfigurationError):
            validate_identifier("orders`; DROP")

    def test_quote_literal(self):
        assert quote_literal("O'Brien") == "'O\\'Brien'"
        assert quote_literal(5) == "5"
        assert quote_literal(None) == "NULL"


class TestMemoryGovernor:

    @staticmethod
    def governor(rss_mb: int, **kwargs) -> MemoryGovernor:
        process = Mock()
        process.memory_info.return_value = Mock(rss=rss_mb * 1024 * 1024)
        return MemoryGovernor(max_memory_mb=2048, pressure_pause=0, process=process, **kwargs)

    @pytest.mark.asyncio
    async def test_throttle_collects_under_pressure(self):
        governor = self.governor(3000)
        await governor.throttle()
        assert governor.forced_collections == 1

    @pytest.mark.asyncio
    async def test_throttle_idle_below_ceiling(self):
        governor = self.governor(100)
        await governor.throttle()
        assert governor.forced_collections == 0

    def test_track_collects_every_interval(self):
        governor = self.governor(100, gc_interval_rows=10)
        governor.track(6)
        assert governor.forced_collections == 0
        governor.track(5)
        assert governor.forced_collections == 1
        governor.track(6)
        assert governor.forced_collections == 1

    def test_cap_batch_size(self):
        governor = self.governor(100, max_batch_size=20_000)
        assert governor.cap_batch_size(50_000) == 20_000
        assert governor.cap_batch_size(0) == 1


class TestCredentialDecryptor:

    def test_round_trip(self):
        decryptor = CredentialDecryptor(Fernet.generate_key().decode())
        token = decryptor.encrypt("s3cret")
        assert token != "s3cret"
        assert decryptor.decrypt(token) == "s3cret"

    def test_plaintext_passes_through(self):
        assert CredentialDecryptor(Fernet.generate_key().decode()).decrypt("plain") == "plain"
        assert CredentialDecryptor().decrypt("plain") == "plain"
        assert CredentialDecryptor().decrypt(None) is None

    def test_encrypt_needs_key(self):
        with pytest.raises(ValueError):
            CredentialDecryptor().encrypt("x")
