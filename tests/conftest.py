# ==============================================
# Pytest Configuration and Fixtures
# ==============================================
#
# No live MySQL / MongoDB is needed:
#
# - document_store  → a real MongoClient with no URI, i.e. running in
#                     degraded (in-memory) mode
# - relational_store → InMemoryRelationalStore, a dict-backed stand-in
#                     for MySQLClient that keeps rows the way MySQLClient
#                     writes them (full-row upsert, top-level metadata
#                     updates) and can be told to fail
# - storage          → HybridStorage wired to both
#
# ==============================================

import json
import threading

import pytest

from loyalty_store.errors import StorageError
from loyalty_store.records.query import QueryOperator
from loyalty_store.storage.hybrid_storage import HybridStorage
from loyalty_store.storage.mongo_client import MongoClient
from loyalty_store.storage.schema import DROP_ORDER, EXTRAS_COLUMN, TABLES, get_table


class InMemoryRelationalStore:
    """Dict-backed relational store with failure injection."""

    def __init__(self):
        self.tables: dict[str, dict[str, dict]] = {}
        self.fail_on: set[str] = set()
        self.calls: list[tuple] = []
        self.closed = False
        self._lock = threading.Lock()

    def _maybe_fail(self, operation, table, row_id=None):
        self.calls.append((operation, table, row_id))
        if operation in self.fail_on or "*" in self.fail_on:
            raise StorageError(
                f"injected {operation} failure",
                store="relational",
                operation=operation,
                collection=table,
                identifier=row_id,
            )

    def _rows(self, table):
        return self.tables.setdefault(table, {})

    def insert(self, table, data, row_id=None):
        row_id = row_id or data.get("id")
        self._maybe_fail("insert", table, row_id)
        with self._lock:
            rows = self._rows(table)
            if row_id in rows:
                raise StorageError(f"Duplicate entry '{row_id}'", store="relational")
            rows[row_id] = {"id": row_id, **get_table(table).to_row(data)}
        return {"id": row_id, **{k: v for k, v in data.items() if k != "id"}}

    def upsert(self, table, row_id, data):
        self._maybe_fail("upsert", table, row_id)
        with self._lock:
            self._rows(table)[row_id] = {"id": row_id, **get_table(table).to_row(data)}
        return {"id": row_id, **{k: v for k, v in data.items() if k != "id"}}

    def get(self, table, row_id):
        self._maybe_fail("get", table, row_id)
        row = self._rows(table).get(row_id)
        return get_table(table).from_row(row) if row else None

    def get_all(self, table, limit=100):
        self._maybe_fail("get_all", table)
        schema = get_table(table)
        return [schema.from_row(row) for row in list(self._rows(table).values())[:limit]]

    def query(self, table, field, operator, value):
        self._maybe_fail("query", table)
        op = QueryOperator.parse(operator)
        schema = get_table(table)
        records = [schema.from_row(row) for row in self._rows(table).values()]
        return [r for r in records if field in r and op.matches(r[field], value)]

    def update(self, table, row_id, data):
        self._maybe_fail("update", table, row_id)
        with self._lock:
            row = self._rows(table).get(row_id)
            if row is None:
                return 0
            columns, extras = get_table(table).split_partial(data)
            row.update(columns)
            if extras:
                # Top-level key replacement inside metadata, like JSON_SET.
                metadata = json.loads(row.get(EXTRAS_COLUMN) or "{}")
                metadata.update(json.loads(json.dumps(extras, default=str)))
                row[EXTRAS_COLUMN] = json.dumps(metadata)
        return 1

    def delete(self, table, row_id):
        self._maybe_fail("delete", table, row_id)
        with self._lock:
            return 1 if self._rows(table).pop(row_id, None) is not None else 0

    def create_database(self):
        self.calls.append(("create_database", None, None))

    def initialize_tables(self):
        self._maybe_fail("initialize_tables", None)
        for table in TABLES:
            self._rows(table)
        return list(TABLES)

    def drop_tables(self):
        self.tables.clear()
        return list(DROP_ORDER)

    def list_tables(self):
        self._maybe_fail("list_tables", None)
        return sorted(self.tables)

    def table_counts(self, tables=None):
        return {table: self.row_count(table) for table in tables or list(TABLES)}

    def row_count(self, table=None):
        if table is not None:
            return len(self._rows(table))
        return sum(len(rows) for rows in self.tables.values())

    def close(self):
        self.closed = True


@pytest.fixture
def document_store():
    """MongoClient without credentials: degraded, in-memory."""
    return MongoClient(uri=None)


@pytest.fixture
def relational_store():
    return InMemoryRelationalStore()


@pytest.fixture
def storage(document_store, relational_store):
    hybrid = HybridStorage(document_store, relational_store, max_workers=4)
    yield hybrid
    hybrid.close()


@pytest.fixture
def sample_offer():
    return {
        "title": "X",
        "description": "Y",
        "expiry_date": "2026-12-31T23:59:59Z",
        "status": "active",
        "discount_tiers": [{"visits": 3, "percent": 10}],
    }


@pytest.fixture
def sample_customer():
    return {
        "id": "cust-1",
        "email": "alice@example.com",
        "phone_number": "+15550001",
        "name": "Alice",
        "vendorId": "vendor-9",
        "status": "active",
    }
