# ==============================================
# Tests for MySQLClient and ConnectionPool
# ==============================================
#
# pymysql.connect is replaced by a MagicMock factory, so every test
# checks the SQL the adapter would send and how the pool treats the
# connection afterwards.
# ==============================================

import json
import threading
from unittest.mock import MagicMock

import pymysql
import pytest

from loyalty_store.config import MySQLConfig
from loyalty_store.errors import InvalidQueryError, PoolExhaustedError, StorageError
from loyalty_store.storage.mysql_client import ConnectionPool, MySQLClient
from loyalty_store.storage.schema import TABLES, get_table


def _fake_connection():
    conn = MagicMock(name="connection")
    cursor = MagicMock(name="cursor")
    conn.cursor.return_value.__enter__.return_value = cursor
    return conn, cursor


@pytest.fixture
def fake_db():
    """(client, connection, cursor, connect mock) with a single reusable connection."""
    conn, cursor = _fake_connection()
    connect = MagicMock(return_value=conn)
    client = MySQLClient(database="loyalty_test", pool_size=2, pool_timeout=0.1, connect=connect)
    yield client, conn, cursor, connect
    client.close()


class TestConnectionPool:
    def test_connections_are_reused(self):
        factory = MagicMock(side_effect=lambda: MagicMock())
        pool = ConnectionPool(factory, size=2, timeout=0.1)
        with pool.connection() as first:
            pass
        with pool.connection() as second:
            assert pool.in_use == 1
        assert first is second
        assert pool.created == 1
        assert pool.in_use == 0

    def test_exhausted_pool_raises(self):
        pool = ConnectionPool(lambda: MagicMock(), size=1, timeout=0.05)
        with pool.connection():
            with pytest.raises(PoolExhaustedError):
                with pool.connection():
                    pass
        with pool.connection():
            assert pool.in_use == 1

    def test_release_on_error_rolls_back(self):
        pool = ConnectionPool(lambda: MagicMock(), size=1, timeout=0.05)
        with pytest.raises(ValueError):
            with pool.connection() as conn:
                raise ValueError("bad input")
        conn.rollback.assert_called_once()
        assert pool.in_use == 0
        with pool.connection() as again:
            assert again is conn

    def test_broken_connection_is_discarded(self):
        pool = ConnectionPool(lambda: MagicMock(), size=1, timeout=0.05)
        with pytest.raises(pymysql.err.OperationalError):
            with pool.connection() as conn:
                raise pymysql.err.OperationalError(2006, "MySQL server has gone away")
        conn.close.assert_called_once()
        with pool.connection() as fresh:
            assert fresh is not conn
        assert pool.created == 2

    def test_concurrent_callers_never_exceed_size(self):
        pool = ConnectionPool(lambda: MagicMock(), size=3, timeout=5)
        peak = []
        lock = threading.Lock()

        def work():
            with pool.connection():
                with lock:
                    peak.append(pool.in_use)

        threads = [threading.Thread(target=work) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert max(peak) <= 3
        assert pool.created <= 3
        assert pool.in_use == 0

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            ConnectionPool(lambda: None, size=0)


class TestConnectionParams:
    def test_open_connection_uses_dict_cursor_and_database(self, fake_db):
        client, _, cursor, connect = fake_db
        cursor.fetchone.return_value = None
        client.get("offers", "o1")
        kwargs = connect.call_args.kwargs
        assert kwargs["database"] == "loyalty_test"
        assert kwargs["charset"] == "utf8mb4"
        assert kwargs["cursorclass"] is pymysql.cursors.DictCursor
        assert kwargs["autocommit"] is False

    def test_from_config(self):
        connect = MagicMock()
        client = MySQLClient.from_config(
            MySQLConfig(host="db", port=3307, pool_size=7, database="x"), connect=connect
        )
        assert client.host == "db" and client.port == 3307
        assert client.pool.size == 7


class TestCrud:
    def test_insert_sql(self, fake_db):
        client, conn, cursor, _ = fake_db
        stored = client.insert("offers", {"title": "X", "tiers": [1]}, row_id="o1")
        assert stored == {"id": "o1", "title": "X", "tiers": [1]}
        sql, params = cursor.execute.call_args.args
        assert sql == (
            "INSERT INTO `offers` (`id`, `title`, `description`, `status`, `expiry_date`, "
            "`created_at`, `updated_at`, `metadata`) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)"
        )
        assert params == ("o1", "X", None, None, None, None, None, json.dumps({"tiers": [1]}))
        conn.commit.assert_called_once()

    def test_insert_generates_id(self, fake_db):
        client, _, cursor, _ = fake_db
        stored = client.insert("offers", {"title": "X"})
        assert len(stored["id"]) == 36
        assert cursor.execute.call_args.args[1][0] == stored["id"]

    def test_upsert_quotes_reserved_column(self, fake_db):
        client, _, cursor, _ = fake_db
        client.upsert("products", "p1", {"name": "Latte", "order": 3})
        sql, params = cursor.execute.call_args.args
        assert "`vendorId`, `order`, `createdAt`" in sql
        assert "`order` = VALUES(`order`)" in sql
        columns = get_table("products").column_names
        assert params == ("p1", *[{"name": "Latte", "order": 3}.get(c) for c in columns], None)

    def test_upsert_replaces_every_column(self, fake_db):
        client, _, cursor, _ = fake_db
        client.upsert("offers", "o1", {"title": "Y"})
        sql, params = cursor.execute.call_args.args
        assert sql.endswith(
            "ON DUPLICATE KEY UPDATE `title` = VALUES(`title`), "
            "`description` = VALUES(`description`), `status` = VALUES(`status`), "
            "`expiry_date` = VALUES(`expiry_date`), `created_at` = VALUES(`created_at`), "
            "`updated_at` = VALUES(`updated_at`), `metadata` = VALUES(`metadata`)"
        )
        assert params == ("o1", "Y", None, None, None, None, None, None)

    def test_get_rebuilds_record(self, fake_db):
        client, _, cursor, _ = fake_db
        cursor.fetchone.return_value = {"id": "o1", "title": "X", "status": None, "metadata": '{"a": 1}'}
        assert client.get("offers", "o1") == {"id": "o1", "title": "X", "a": 1}
        assert cursor.execute.call_args.args == (
            "SELECT * FROM `offers` WHERE `id` = %s LIMIT 1", ("o1",)
        )

    def test_get_missing_row(self, fake_db):
        client, _, cursor, _ = fake_db
        cursor.fetchone.return_value = None
        assert client.get("offers", "missing") is None

    def test_get_all_passes_limit(self, fake_db):
        client, _, cursor, _ = fake_db
        cursor.fetchall.return_value = [{"id": "o1", "metadata": None}]
        assert client.get_all("offers", limit=5) == [{"id": "o1"}]
        assert cursor.execute.call_args.args == ("SELECT * FROM `offers` LIMIT %s", (5,))

    def test_query_typed_column(self, fake_db):
        client, _, cursor, _ = fake_db
        cursor.fetchall.return_value = []
        client.query("offers", "status", "!=", "draft")
        assert cursor.execute.call_args.args == (
            "SELECT * FROM `offers` WHERE `status` <> %s", ("draft",)
        )

    def test_query_extra_field_reads_metadata_json(self, fake_db):
        client, _, cursor, _ = fake_db
        cursor.fetchall.return_value = []
        client.query("offers", "tier_name", "==", "gold")
        sql, params = cursor.execute.call_args.args
        assert sql == (
            "SELECT * FROM `offers` WHERE JSON_UNQUOTE(JSON_EXTRACT(`metadata`, %s)) = %s"
        )
        assert params == ('$."tier_name"', "gold")

    def test_query_extra_numeric_field(self, fake_db):
        client, _, cursor, _ = fake_db
        cursor.fetchall.return_value = []
        client.query("offers", "visits", ">=", 3)
        sql, params = cursor.execute.call_args.args
        assert "WHERE JSON_EXTRACT(`metadata`, %s) >= %s" in sql
        assert params == ('$."visits"', 3)

    def test_query_rejects_unsafe_field_before_connecting(self, fake_db):
        client, _, _, connect = fake_db
        with pytest.raises(InvalidQueryError):
            client.query("offers", "status; DROP TABLE offers", "==", "x")
        connect.assert_not_called()

    def test_update_sets_extras_by_top_level_key(self, fake_db):
        client, _, cursor, _ = fake_db
        cursor.execute.return_value = 1
        assert client.update("offers", "o1", {"status": "expired", "note": "late"}) == 1
        sql, params = cursor.execute.call_args.args
        assert sql == (
            "UPDATE `offers` SET `status` = %s, "
            "`metadata` = JSON_SET(COALESCE(`metadata`, JSON_OBJECT()), %s, CAST(%s AS JSON)) "
            "WHERE `id` = %s"
        )
        assert params == ("expired", '$."note"', '"late"', "o1")

    def test_update_replaces_nested_and_null_extras(self, fake_db):
        client, _, cursor, _ = fake_db
        cursor.execute.return_value = 1
        client.update("offers", "o1", {"prefs": {"a": 1}, "note": None, 'say "hi"': 1})
        sql, params = cursor.execute.call_args.args
        assert "JSON_MERGE_PATCH" not in sql
        assert sql.count("CAST(%s AS JSON)") == 3
        assert params == (
            '$."prefs"', '{"a": 1}',
            '$."note"', "null",
            '$."say \\"hi\\""', "1",
            "o1",
        )

    def test_update_missing_row_affects_nothing(self, fake_db):
        client, _, cursor, _ = fake_db
        cursor.execute.return_value = 0
        assert client.update("offers", "ghost", {"status": "x"}) == 0

    def test_delete(self, fake_db):
        client, conn, cursor, _ = fake_db
        cursor.execute.return_value = 1
        assert client.delete("offers", "o1") == 1
        assert cursor.execute.call_args.args == ("DELETE FROM `offers` WHERE `id` = %s", ("o1",))
        conn.commit.assert_called_once()


class TestErrors:
    def test_driver_error_becomes_storage_error(self, fake_db):
        client, conn, cursor, _ = fake_db
        cursor.execute.side_effect = pymysql.err.IntegrityError(1062, "Duplicate entry 'o1'")
        with pytest.raises(StorageError) as excinfo:
            client.insert("offers", {"title": "X"}, row_id="o1")
        err = excinfo.value
        assert (err.store, err.operation, err.collection, err.identifier) == (
            "relational", "insert", "offers", "o1"
        )
        assert isinstance(err.__cause__, pymysql.err.IntegrityError)
        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()
        assert client.pool.in_use == 0

    def test_lost_connection_is_replaced(self, fake_db):
        client, conn, cursor, connect = fake_db
        cursor.execute.side_effect = [pymysql.err.OperationalError(2013, "Lost connection"), None]
        with pytest.raises(StorageError):
            client.delete("offers", "o1")
        client.delete("offers", "o1")
        conn.close.assert_called_once()
        assert connect.call_count == 2

    def test_connect_failure_becomes_storage_error(self):
        connect = MagicMock(side_effect=pymysql.err.OperationalError(2003, "Can't connect"))
        client = MySQLClient(connect=connect, pool_size=1, pool_timeout=0.05)
        with pytest.raises(StorageError):
            client.get("offers", "o1")
        assert client.pool.in_use == 0


class TestSchemaManagement:
    def test_initialize_tables_creates_every_table(self, fake_db):
        client, conn, cursor, _ = fake_db
        assert client.initialize_tables() == list(TABLES)
        statements = [c.args[0] for c in cursor.execute.call_args_list]
        assert len(statements) == len(TABLES)
        assert all(s.startswith("CREATE TABLE IF NOT EXISTS") for s in statements)
        conn.commit.assert_called_once()

    def test_drop_tables_toggles_foreign_key_checks(self, fake_db):
        client, _, cursor, _ = fake_db
        client.drop_tables()
        statements = [c.args[0] for c in cursor.execute.call_args_list]
        assert statements[0] == "SET FOREIGN_KEY_CHECKS = 0"
        assert statements[-1] == "SET FOREIGN_KEY_CHECKS = 1"
        assert "DROP TABLE IF EXISTS `broadcast_queue`" in statements

    def test_create_database_uses_connection_without_schema(self, fake_db):
        client, conn, cursor, connect = fake_db
        client.create_database()
        assert "database" not in connect.call_args.kwargs
        assert cursor.execute.call_args.args[0].startswith(
            "CREATE DATABASE IF NOT EXISTS `loyalty_test`"
        )
        conn.close.assert_called_once()

    def test_list_tables(self, fake_db):
        client, _, cursor, _ = fake_db
        cursor.fetchall.return_value = [{"Tables_in_loyalty_test": "offers"}, {"Tables_in_loyalty_test": "vendors"}]
        assert client.list_tables() == ["offers", "vendors"]

    def test_table_counts_reports_zero_on_failure(self, fake_db):
        client, _, cursor, _ = fake_db
        cursor.execute.side_effect = [None, pymysql.err.ProgrammingError(1146, "Table doesn't exist")]
        cursor.fetchone.return_value = {"count": 4}
        assert client.table_counts(["offers", "vendors"]) == {"offers": 4, "vendors": 0}
