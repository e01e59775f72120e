# ==============================================
# MySQLClient
# ==============================================
#
# PURPOSE:
#   Relational Store Adapter. Keyed CRUD and single-field
#   comparison queries against MySQL, one table per collection,
#   on top of a bounded connection pool.
#
# WHY THIS CLASS EXISTS:
#   MySQL is the fast read path and the analytics target. It never
#   decides anything on its own: the HybridStorage mediator tells it
#   what to write and when to read. Every table follows the layout
#   declared in storage/schema.py (typed hot columns + JSON metadata).
#
# CLASS: ConnectionPool
# ---------------------
#   Fixed-size pool of pymysql connections, created lazily.
#   - connection() context manager: acquire, yield, release.
#     Releases on EVERY exit path. A connection that raised
#     OperationalError / InterfaceError is closed instead of being
#     returned; any other error rolls the connection back first.
#   - Waits at most `timeout` seconds for a free slot, then raises
#     PoolExhaustedError.
#
# CLASS: MySQLClient
# ------------------
#   Constructor:
#   ------------
#   - __init__(host, port, user, password, database,
#              pool_size=5, pool_timeout=30.0, connect_timeout=10,
#              connect=None)
#       Store connection params. Don't connect yet.
#       `connect` replaces pymysql.connect (tests).
#
#   Methods:
#   --------
#   - insert(table, data, row_id=None) -> dict
#   - upsert(table, row_id, data) -> dict
#   - get(table, row_id) -> dict | None
#   - get_all(table, limit=100) -> list[dict]
#   - query(table, field, operator, value) -> list[dict]
#   - update(table, row_id, data) -> int
#   - delete(table, row_id) -> int
#
#   Schema management:
#   - create_database() / initialize_tables() / drop_tables()
#   - list_tables() -> list[str]
#   - table_counts(tables=None) -> dict[str, int]
#
#   Context Manager:
#   ----------------
#   - __enter__ / __exit__ for `with MySQLClient(...) as db:` usage.
#
# WRITE SEMANTICS:
#   upsert() writes every column (NULL for absent fields), so the row
#   is replaced whole. update() replaces top-level metadata keys with
#   JSON_SET and never merges nested objects.
#
# ERRORS:
#   Every pymysql error is re-raised as StorageError(store="relational").
#
# ==============================================

import json
import queue
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, Union

import pymysql
import pymysql.cursors

from loyalty_store.config import MySQLConfig
from loyalty_store.errors import InvalidQueryError, PoolExhaustedError, StorageError
from loyalty_store.log import get_logger
from loyalty_store.records.query import QueryOperator
from loyalty_store.storage.schema import (
    DROP_ORDER,
    EXTRAS_COLUMN,
    FIELD_NAME_PATTERN,
    PRIMARY_KEY,
    TABLES,
    get_table,
    quote_identifier,
)

logger = get_logger(__name__)

STORE = "relational"


class ConnectionPool:
    """Bounded pool of DB-API connections."""

    # Errors after which a connection can't be trusted any more.
    BROKEN_CONNECTION_ERRORS = (pymysql.err.OperationalError, pymysql.err.InterfaceError)

    def __init__(self, factory: Callable[[], Any], size: int = 5, timeout: float = 30.0):
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self._factory = factory
        self._size = size
        self._timeout = timeout
        self._idle: queue.LifoQueue = queue.LifoQueue(maxsize=size)
        self._slots = threading.BoundedSemaphore(size)
        self._lock = threading.Lock()
        self._in_use = 0
        self._created = 0
        self._closed = False

    @property
    def size(self) -> int:
        return self._size

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def created(self) -> int:
        return self._created

    @contextmanager
    def connection(self) -> Iterator[Any]:
        if self._closed:
            raise StorageError("connection pool is closed", store=STORE)
        if not self._slots.acquire(timeout=self._timeout):
            raise PoolExhaustedError(
                f"no MySQL connection free after {self._timeout}s (pool size {self._size})",
                store=STORE,
            )
        with self._lock:
            self._in_use += 1

        conn = None
        discard = False
        try:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                conn = self._factory()
                with self._lock:
                    self._created += 1
            yield conn
        except self.BROKEN_CONNECTION_ERRORS:
            discard = True
            raise
        except Exception:
            if conn is not None:
                discard = not self._rollback(conn)
            raise
        finally:
            if conn is not None:
                if discard or self._closed:
                    self._close_quietly(conn)
                else:
                    self._idle.put_nowait(conn)
            with self._lock:
                self._in_use -= 1
            self._slots.release()

    def close(self) -> None:
        self._closed = True
        while True:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                break
            self._close_quietly(conn)

    @staticmethod
    def _rollback(conn) -> bool:
        try:
            conn.rollback()
            return True
        except pymysql.err.Error as exc:
            logger.debug("mysql_rollback_failed", error=str(exc))
            return False

    @staticmethod
    def _close_quietly(conn) -> None:
        try:
            conn.close()
        except pymysql.err.Error as exc:
            logger.debug("mysql_close_failed", error=str(exc))


class MySQLClient:
    def __init__(
        self,
        host: str = "localhost",
        port: int = 3306,
        user: str = "root",
        password: str = "root",
        database: str = "loyalty_store",
        pool_size: int = 5,
        pool_timeout: float = 30.0,
        connect_timeout: int = 10,
        connect: Optional[Callable[..., Any]] = None,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.database = database
        self.connect_timeout = connect_timeout
        self._connect = connect or pymysql.connect
        self._pool = ConnectionPool(self._open_connection, size=pool_size, timeout=pool_timeout)

    @classmethod
    def from_config(cls, config: MySQLConfig, **kwargs) -> "MySQLClient":
        return cls(
            host=config.host,
            port=config.port,
            user=config.user,
            password=config.password,
            database=config.database,
            pool_size=config.pool_size,
            pool_timeout=config.pool_timeout_seconds,
            connect_timeout=config.connect_timeout,
            **kwargs,
        )

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    def _open_connection(self, with_database: bool = True):
        params = dict(
            host=self.host,
            port=self.port,
            user=self.user,
            password=self.password,
            charset="utf8mb4",
            cursorclass=pymysql.cursors.DictCursor,
            connect_timeout=self.connect_timeout,
            autocommit=False,
        )
        if with_database:
            params["database"] = self.database
        return self._connect(**params)

    @contextmanager
    def _cursor(
        self,
        operation: str,
        table: Optional[str] = None,
        row_id: Optional[str] = None,
        commit: bool = False,
    ) -> Iterator[Any]:
        # Acquire → cursor → (commit) → release; pymysql errors become StorageError.
        try:
            with self._pool.connection() as conn:
                with conn.cursor(pymysql.cursors.DictCursor) as cursor:
                    yield cursor
                if commit:
                    conn.commit()
        except pymysql.err.Error as exc:
            raise StorageError(
                f"MySQL {operation} on {table or self.database} failed: {exc}",
                store=STORE,
                operation=operation,
                collection=table,
                identifier=row_id,
            ) from exc

    # ------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------

    def insert(self, table: str, data: dict, row_id: Optional[str] = None) -> dict:
        """
        Insert a new row. Fails (StorageError) if the id already exists.

        Args:
            table: Collection / table name
            data: Record fields
            row_id: Primary key; falls back to data["id"], then a new UUID4

        Returns:
            The stored record including its id
        """
        schema = get_table(table)
        row_id = str(row_id or data.get(PRIMARY_KEY) or uuid.uuid4())
        row = schema.to_row(data)
        columns = [PRIMARY_KEY, *row]
        query = (
            f"INSERT INTO {quote_identifier(table)} ({_column_list(columns)}) "
            f"VALUES ({_placeholders(columns)})"
        )
        with self._cursor("insert", table, row_id, commit=True) as cursor:
            cursor.execute(query, (row_id, *row.values()))
        return _with_id(row_id, data)

    def upsert(self, table: str, row_id: str, data: dict) -> dict:
        """Insert row `row_id`, or replace every column of it (absent fields become NULL)."""
        schema = get_table(table)
        row = schema.to_row(data)
        columns = [PRIMARY_KEY, *row]
        update_clause = ", ".join(
            f"{quote_identifier(col)} = VALUES({quote_identifier(col)})" for col in row
        )
        query = (
            f"INSERT INTO {quote_identifier(table)} ({_column_list(columns)}) "
            f"VALUES ({_placeholders(columns)}) "
            f"ON DUPLICATE KEY UPDATE {update_clause}"
        )
        with self._cursor("upsert", table, row_id, commit=True) as cursor:
            cursor.execute(query, (row_id, *row.values()))
        return _with_id(row_id, data)

    def get(self, table: str, row_id: str) -> Optional[dict]:
        schema = get_table(table)
        query = f"SELECT * FROM {quote_identifier(table)} WHERE {quote_identifier(PRIMARY_KEY)} = %s LIMIT 1"
        with self._cursor("get", table, row_id) as cursor:
            cursor.execute(query, (row_id,))
            row = cursor.fetchone()
        return schema.from_row(row) if row else None

    def get_all(self, table: str, limit: int = 100) -> list[dict]:
        schema = get_table(table)
        query = f"SELECT * FROM {quote_identifier(table)} LIMIT %s"
        with self._cursor("get_all", table) as cursor:
            cursor.execute(query, (int(limit),))
            rows = cursor.fetchall()
        return [schema.from_row(row) for row in rows]

    def query(
        self,
        table: str,
        field: str,
        operator: Union[QueryOperator, str],
        value: Any,
    ) -> list[dict]:
        """
        Rows where `field <operator> value`.

        Typed columns are compared directly. Any other field is looked up
        inside the JSON metadata column.
        """
        schema = get_table(table)
        op = QueryOperator.parse(operator)
        if not isinstance(field, str) or not FIELD_NAME_PATTERN.match(field):
            raise InvalidQueryError(f"Unsafe field name: {field!r}")

        params: list[Any] = []
        if field == PRIMARY_KEY or schema.has_column(field):
            target = quote_identifier(field)
        else:
            extract = f"JSON_EXTRACT({quote_identifier(EXTRAS_COLUMN)}, %s)"
            target = f"JSON_UNQUOTE({extract})" if isinstance(value, str) else extract
            params.append(_json_path(field))
        params.append(value)

        query = f"SELECT * FROM {quote_identifier(table)} WHERE {target} {op.sql} %s"
        with self._cursor("query", table) as cursor:
            cursor.execute(query, tuple(params))
            rows = cursor.fetchall()
        return [schema.from_row(row) for row in rows]

    def update(self, table: str, row_id: str, data: dict) -> int:
        """
        Partial update of row `row_id`.

        Typed fields are SET directly. Every other field replaces its
        top-level key inside the metadata JSON (JSON_SET), nested objects
        included, the way MongoDB $set does. Returns affected row count
        (0 when the row does not exist).
        """
        schema = get_table(table)
        columns, extras = schema.split_partial(data)
        assignments = [f"{quote_identifier(col)} = %s" for col in columns]
        values: list[Any] = list(columns.values())
        if extras:
            meta = quote_identifier(EXTRAS_COLUMN)
            paths = ", ".join(["%s, CAST(%s AS JSON)"] * len(extras))
            assignments.append(f"{meta} = JSON_SET(COALESCE({meta}, JSON_OBJECT()), {paths})")
            for key, value in extras.items():
                values.extend((_json_path(key), json.dumps(value, default=str)))
        if not assignments:
            return 0

        query = (
            f"UPDATE {quote_identifier(table)} SET {', '.join(assignments)} "
            f"WHERE {quote_identifier(PRIMARY_KEY)} = %s"
        )
        with self._cursor("update", table, row_id, commit=True) as cursor:
            affected = cursor.execute(query, (*values, row_id))
        return affected or 0

    def delete(self, table: str, row_id: str) -> int:
        get_table(table)
        query = f"DELETE FROM {quote_identifier(table)} WHERE {quote_identifier(PRIMARY_KEY)} = %s"
        with self._cursor("delete", table, row_id, commit=True) as cursor:
            affected = cursor.execute(query, (row_id,))
        return affected or 0

    # ------------------------------------------------------------
    # Schema management
    # ------------------------------------------------------------

    def create_database(self) -> None:
        """CREATE DATABASE IF NOT EXISTS, on a throwaway connection without a default schema."""
        try:
            connection = self._open_connection(with_database=False)
        except pymysql.err.Error as exc:
            raise StorageError(f"MySQL connect failed: {exc}", store=STORE, operation="create_database") from exc
        try:
            with connection.cursor() as cursor:
                cursor.execute(
                    f"CREATE DATABASE IF NOT EXISTS {quote_identifier(self.database)} "
                    "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
                )
            connection.commit()
        except pymysql.err.Error as exc:
            raise StorageError(f"MySQL create_database failed: {exc}", store=STORE, operation="create_database") from exc
        finally:
            connection.close()
        logger.info("mysql_database_ready", database=self.database)

    def initialize_tables(self) -> list[str]:
        """Create every registered table that does not exist yet."""
        with self._cursor("initialize_tables", commit=True) as cursor:
            for schema in TABLES.values():
                cursor.execute(schema.create_statement())
        logger.info("mysql_tables_initialized", tables=len(TABLES))
        return list(TABLES)

    def drop_tables(self) -> list[str]:
        with self._cursor("drop_tables", commit=True) as cursor:
            cursor.execute("SET FOREIGN_KEY_CHECKS = 0")
            for table in DROP_ORDER:
                cursor.execute(f"DROP TABLE IF EXISTS {quote_identifier(table)}")
                logger.info("mysql_table_dropped", table=table)
            cursor.execute("SET FOREIGN_KEY_CHECKS = 1")
        return list(DROP_ORDER)

    def list_tables(self) -> list[str]:
        with self._cursor("list_tables") as cursor:
            cursor.execute("SHOW TABLES")
            rows = cursor.fetchall()
        return [str(next(iter(row.values()))) for row in rows]

    def table_counts(self, tables: Optional[list[str]] = None) -> dict[str, int]:
        """Row count per table; a table that can't be counted reports 0."""
        counts: dict[str, int] = {}
        for table in tables or list(TABLES):
            try:
                with self._cursor("count", table) as cursor:
                    cursor.execute(f"SELECT COUNT(*) AS count FROM {quote_identifier(table)}")
                    row = cursor.fetchone()
                counts[table] = int(row["count"]) if row else 0
            except StorageError as exc:
                logger.warning("mysql_count_failed", table=table, error=str(exc))
                counts[table] = 0
        return counts

    def close(self) -> None:
        self._pool.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _column_list(columns: list[str]) -> str:
    return ", ".join(quote_identifier(col) for col in columns)


def _placeholders(columns: list[str]) -> str:
    return ", ".join(["%s"] * len(columns))


def _json_path(key: str) -> str:
    escaped = key.replace("\\", "\\\\").replace('"', '\\"')
    return f'$."{escaped}"'


def _with_id(row_id: str, data: dict) -> dict:
    return {PRIMARY_KEY: row_id, **{k: v for k, v in data.items() if k != PRIMARY_KEY}}
