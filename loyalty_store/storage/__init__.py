# ==============================================
# STORAGE (MySQL + MongoDB)
# ==============================================
#
# This package handles all database operations and the rules that
# keep the two stores consistent.
#
# Modules:
# --------
# - schema.py          → Relational table registry + record/row projection
# - mysql_client.py    → Relational Store Adapter (bounded connection pool)
# - mongo_client.py    → Document Store Adapter (durable / degraded mode)
# - hybrid_storage.py  → Mediator: dual write, read-through, backfill
# - migrator.py        → Bulk replay MongoDB → MySQL
#
# ==============================================

from .mysql_client import MySQLClient, ConnectionPool
from .mongo_client import MongoClient, StoreMode
from .hybrid_storage import HybridStorage, SyncStats
from .migrator import Migrator, MigrationResult

__all__ = [
    "MySQLClient",
    "ConnectionPool",
    "MongoClient",
    "StoreMode",
    "HybridStorage",
    "SyncStats",
    "Migrator",
    "MigrationResult",
]
