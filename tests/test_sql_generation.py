"""
SQL generation for each relational dialect, without a database.
"""

from datetime import datetime

import pytest

from datasync.core.enums import ConnectionKind
from datasync.core.exceptions import ConfigurationError
from datasync.core.models import ColumnMapping
from datasync.source.mssql import MSSQLSource
from datasync.source.mysql import MySQLSource
from datasync.source.postgres import PostgresSource
from tests.conftest import make_connection, make_dataset


@pytest.fixture
def postgres():
    return PostgresSource(make_connection(ConnectionKind.POSTGRESQL))


@pytest.fixture
def mysql():
    return MySQLSource(make_connection(ConnectionKind.MYSQL))


@pytest.fixture
def mssql():
    return MSSQLSource(make_connection(ConnectionKind.MSSQL))


class TestPostgresQueries:

    def test_full_read(self, postgres):
        sql, params = postgres.full_read_query(make_dataset(source_table="public.orders"), None)
        assert sql == 'SELECT "id", "updated_at", "amount" FROM "public"."orders"'
        assert params == []

    def test_after_mark_is_ordered_and_limited(self, postgres):
        mark = datetime(2024, 1, 11, 8, 0)
        sql, params = postgres.after_query(make_dataset(), "updated_at", mark, 100)
        assert sql == ('SELECT "id", "updated_at", "amount" FROM "orders" '
                       'WHERE "updated_at" > $1 ORDER BY "updated_at" ASC LIMIT 100')
        assert params == [mark]

    def test_after_without_mark_reads_everything(self, postgres):
        sql, params = postgres.after_query(make_dataset(), "updated_at", None, None)
        assert "WHERE" not in sql
        assert params == []

    def test_recent_days(self, postgres):
        sql, _ = postgres.recent_days_query(make_dataset(), "updated_at", 3, None)
        assert sql.endswith("""WHERE "updated_at" >= CURRENT_DATE - INTERVAL '3 days'""")
        sql, _ = postgres.recent_days_query(make_dataset(), "updated_at", 0, None)
        assert sql.endswith('WHERE "updated_at"::date = CURRENT_DATE')

    def test_modified_dates(self, postgres):
        sql = postgres.modified_dates_query(make_dataset(), "updated_at", "modified_at")
        assert sql == ('SELECT DISTINCT "updated_at"::date AS partition_date FROM "orders" '
                       'WHERE "modified_at" >= $1 ORDER BY partition_date')

    def test_single_date(self, postgres):
        sql = postgres.date_query(make_dataset(), "updated_at")
        assert sql.endswith('WHERE "updated_at"::date = $1')

    def test_custom_where_is_anded(self, postgres):
        sql, _ = postgres.after_key_query(make_dataset(custom_where="status = 'paid'"), "id", 10, 50)
        assert "WHERE \"id\" > $1 AND (status = 'paid') ORDER BY" in sql


class TestMySQLQueries:

    def test_keyset_page(self, mysql):
        sql, params = mysql.after_key_query(make_dataset(source_table="shop.orders"), "id", 10, 500)
        assert sql == ("SELECT `id`, `updated_at`, `amount` FROM `shop`.`orders` "
                       "WHERE `id` > %s ORDER BY `id` ASC LIMIT 500")
        assert params == [10]

    def test_recent_days(self, mysql):
        sql, _ = mysql.recent_days_query(make_dataset(), "updated_at", 2, None)
        assert sql.endswith("WHERE `updated_at` >= DATE_SUB(CURDATE(), INTERVAL 2 DAY)")

    def test_max_key(self, mysql):
        assert mysql.max_key_query(make_dataset(), "id") == "SELECT MAX(`id`) AS max_key FROM `orders`"


class TestMSSQLQueries:

    def test_top_and_nolock(self, mssql):
        sql, _ = mssql.full_read_query(make_dataset(source_table="dbo.orders"), 10)
        assert sql == "SELECT TOP (10) [id], [updated_at], [amount] FROM [dbo].[orders] WITH (NOLOCK)"

    def test_key_range(self, mssql):
        sql = mssql.key_range_query(make_dataset(source_table="dbo.orders"), "id")
        assert sql == ("SELECT [id], [updated_at], [amount] FROM [dbo].[orders] WITH (NOLOCK) "
                       "WHERE [id] >= ? AND [id] <= ?")

    def test_recent_days(self, mssql):
        sql, _ = mssql.recent_days_query(make_dataset(), "updated_at", 7, None)
        assert sql.endswith("WHERE [updated_at] >= DATEADD(day, -7, CAST(GETDATE() AS DATE))")

    def test_connection_string(self, mssql):
        conn_str = mssql.connection_string("pw")
        assert conn_str == ("DRIVER={ODBC Driver 18 for SQL Server};SERVER=db,5432;DATABASE=shop;"
                            "UID=etl;PWD=pw;TrustServerCertificate=yes;")


class TestQueryBuilding:

    def test_source_query_is_wrapped_without_limit(self, postgres):
        dataset = make_dataset(source_table=None, source_query="SELECT * FROM orders LIMIT 100;")
        sql, _ = postgres.full_read_query(dataset, None)
        assert sql == 'SELECT "id", "updated_at", "amount" FROM (SELECT * FROM orders) src'

    def test_top_is_stripped_from_source_query(self, mssql):
        dataset = make_dataset(source_table=None, source_query="SELECT TOP 50 * FROM orders")
        sql, _ = mssql.full_read_query(dataset, None)
        assert sql.endswith("FROM (SELECT * FROM orders) src")

    def test_no_source_is_a_configuration_error(self, postgres):
        with pytest.raises(ConfigurationError):
            postgres.full_read_query(make_dataset(source_table=None), None)

    def test_unsafe_table_name_rejected(self, postgres):
        with pytest.raises(ConfigurationError):
            postgres.full_read_query(make_dataset(source_table="orders; DROP TABLE x"), None)

    def test_unmapped_dataset_selects_star(self, postgres):
        sql, _ = postgres.full_read_query(make_dataset(column_mapping=[]), None)
        assert sql == 'SELECT * FROM "orders"'

    def test_key_column_added_when_unmapped(self, postgres):
        dataset = make_dataset(column_mapping=[ColumnMapping("name", "name")])
        sql, _ = postgres.after_key_query(dataset, "id", 0, 10)
        assert sql.startswith('SELECT "name", "id" FROM')

    def test_identifier_quotes_are_escaped(self, postgres, mysql, mssql):
        assert postgres.quote_identifier('a"b') == '"a""b"'
        assert mysql.quote_identifier("a`b") == "`a``b`"
        assert mssql.quote_identifier("a]b") == "[a]]b]"


class TestCapabilities:

    def test_partition_sync_only_on_postgres(self, postgres, mysql, mssql):
        from datasync.core.enums import Capability

        assert postgres.has_capability(Capability.DATE_PARTITION_SYNC)
        assert not mysql.has_capability(Capability.DATE_PARTITION_SYNC)
        assert mssql.has_capability(Capability.KEY_RANGE_REPAIR)
        assert not postgres.has_capability(Capability.KEY_RANGE_REPAIR)

    def test_unsupported_read_raises(self, mysql):
        from datasync.core.exceptions import UnsupportedSourceError

        with pytest.raises(UnsupportedSourceError):
            mysql.stream_date(make_dataset(), "updated_at", datetime(2024, 1, 1).date(), 10)


class RecordingCursor:

    def __init__(self, rows):
        self.rows = list(rows)
        self.executed = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, sql, args=None):
        self.executed.append((sql, args))

    async def fetchall(self):
        rows, self.rows = self.rows, []
        return rows

    async def fetchmany(self, size):
        rows, self.rows = self.rows[:size], self.rows[size:]
        return rows


class RecordingConnection:

    def __init__(self, cursor):
        self._cursor = cursor

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def cursor(self, cursor_class=None):
        return self._cursor


class RecordingPool:

    def __init__(self, rows=()):
        self.cursor = RecordingCursor(rows)

    def acquire(self):
        return RecordingConnection(self.cursor)


class TestMySQLDriverArguments:
    """PyMySQL only %-formats the statement when arguments are passed"""

    @pytest.mark.asyncio
    async def test_parameterless_read_passes_no_arguments(self, mysql):
        mysql._pool = RecordingPool([{"max_key": 42}])

        assert await mysql.fetch_max_key(make_dataset(), "id") == 42
        assert mysql._pool.cursor.executed[0][1] is None

    @pytest.mark.asyncio
    async def test_literal_percent_in_custom_where_survives(self, mysql):
        mysql._pool = RecordingPool([{"id": 1}])
        dataset = make_dataset(custom_where="`amount` LIKE '10%'")

        batches = [b async for b in mysql.stream_rows(dataset, 10)]

        sql, args = mysql._pool.cursor.executed[0]
        assert "LIKE '10%'" in sql
        assert args is None
        assert batches == [[{"id": 1}]]

    @pytest.mark.asyncio
    async def test_bound_values_are_still_passed(self, mysql):
        mysql._pool = RecordingPool([])

        await mysql.fetch_after_key(make_dataset(), "id", 7, 100)

        assert mysql._pool.cursor.executed[0][1] == [7]


class TestSampleReads:

    @pytest.mark.asyncio
    async def test_table_sample_is_limited(self, mysql):
        mysql._pool = RecordingPool([{"id": 1}])

        rows = await mysql.fetch_sample(make_dataset(), 10)

        assert mysql._pool.cursor.executed[0] == (
            "SELECT `id`, `updated_at`, `amount` FROM `orders` LIMIT 10", None)
        assert rows == [{"id": 1}]

    @pytest.mark.asyncio
    async def test_source_query_keeps_its_own_limit(self, mysql):
        mysql._pool = RecordingPool([])
        query = "SELECT id, amount FROM orders ORDER BY id DESC LIMIT 50"

        await mysql.fetch_sample(make_dataset(source_table=None, source_query=query), 10)

        assert mysql._pool.cursor.executed[0] == (query, None)
