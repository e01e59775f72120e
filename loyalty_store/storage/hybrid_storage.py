# ==============================================
# HybridStorage
# ==============================================
#
# PURPOSE:
#   The Hybrid Storage Mediator. Every entity service talks to this
#   class with (collection, identifier, record) and never to a store
#   directly. It keeps MongoDB (primary, source of truth) and MySQL
#   (secondary, fast read path) consistent.
#
# WHY THIS CLASS EXISTS:
#   There is no transaction spanning both stores. This class owns the
#   rules that make that tolerable:
#
#   WRITES (add / set / update / delete) → dual write
#     ┌────────────┐   submit both legs   ┌──────────────┐
#     │  caller    │ ───────────────────▶ │ MongoClient  │ document leg
#     │            │                      ├──────────────┤
#     │            │ ◀── join both ────── │ MySQLClient  │ relational leg
#     └────────────┘                      └──────────────┘
#     - both legs run concurrently on the mediator's thread pool
#     - any failed leg → DualWriteError; the other leg is NOT undone
#     - deadline hit → DeadlineExceededError; legs that have not
#       started are cancelled, a running leg can't be interrupted
#
#   READS (get / get_collection / query_collection) → read-through
#     1. MySQL first; a hit returns immediately
#        (a MySQL error is logged and treated as a miss)
#     2. MongoDB on miss; errors propagate
#     3. every record found in MongoDB is backfilled into MySQL,
#        fire-and-forget: failures are logged + counted in SyncStats,
#        never raised
#
# CONSISTENCY:
#   Eventual, per record. Two writers racing on the same key may leave
#   MySQL with one value and MongoDB with the other (last writer wins
#   per store, independently). MongoDB wins at the next sync
#   (migrate_all or a backfill after a relational miss).
#
# CLASS: HybridStorage
# --------------------
#   - add(collection, record, timeout=None) -> dict
#   - set(collection, identifier, record, timeout=None) -> dict
#   - get(collection, identifier) -> dict | None
#   - get_collection(collection, limit=100) -> list[dict]
#   - query_collection(collection, field, operator, value) -> list[dict]
#   - update(collection, identifier, partial, timeout=None) -> dict
#   - delete(collection, identifier, timeout=None) -> None
#   - migrate_all(cancel_event=None) -> MigrationResult
#   - migrate_collection(collection, cancel_event=None) -> MigrationResult
#   - wait_for_backfills(timeout=None) -> bool
#   - status() -> dict
#   - close() / context manager
#
# ==============================================

import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from loyalty_store.config import AppConfig, get_config
from loyalty_store.errors import (
    DeadlineExceededError,
    DualWriteError,
    InvalidQueryError,
    StorageError,
)
from loyalty_store.log import get_logger
from loyalty_store.records.collections import validate_collection
from loyalty_store.records.identity import derive_id
from loyalty_store.records.query import QueryOperator
from loyalty_store.storage.migrator import DEFAULT_BATCH_LIMIT, MigrationResult, Migrator
from loyalty_store.storage.mongo_client import MongoClient
from loyalty_store.storage.mysql_client import MySQLClient
from loyalty_store.storage.schema import FIELD_NAME_PATTERN

logger = get_logger(__name__)

DOCUMENT = "document"
RELATIONAL = "relational"


@dataclass
class SyncStats:
    """Counters for the paths that never raise (backfill, relational read fallback)."""
    backfills_scheduled: int = 0
    backfills_succeeded: int = 0
    backfills_failed: int = 0
    relational_read_failures: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    def as_dict(self) -> dict[str, int]:
        with self._lock:
            return {
                "backfills_scheduled": self.backfills_scheduled,
                "backfills_succeeded": self.backfills_succeeded,
                "backfills_failed": self.backfills_failed,
                "relational_read_failures": self.relational_read_failures,
            }


class HybridStorage:
    def __init__(
        self,
        document_store,
        relational_store,
        max_workers: int = 8,
        default_timeout: Optional[float] = None,
        migration_batch_limit: int = DEFAULT_BATCH_LIMIT,
    ):
        """
        Args:
            document_store: MongoClient (or anything with the same methods)
            relational_store: MySQLClient (or anything with the same methods)
            max_workers: Threads shared by dual-write legs and backfills
            default_timeout: Deadline in seconds for writes without an
                explicit timeout; None waits for both legs indefinitely
            migration_batch_limit: Documents read per collection by migrate_all
        """
        self.document_store = document_store
        self.relational_store = relational_store
        self.default_timeout = default_timeout
        self.stats = SyncStats()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="hybrid-storage")
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()
        self._migrator = Migrator(document_store, relational_store, batch_limit=migration_batch_limit)

    @classmethod
    def from_config(cls, config: Optional[AppConfig] = None) -> "HybridStorage":
        config = config or get_config()
        document_store = MongoClient.from_config(config.mongo)
        document_store.connect()
        relational_store = MySQLClient.from_config(config.mysql)
        return cls(
            document_store,
            relational_store,
            max_workers=config.hybrid.max_workers,
            default_timeout=config.hybrid.default_timeout_seconds,
            migration_batch_limit=config.hybrid.migration_batch_limit,
        )

    # ------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------

    def add(self, collection: str, record: dict, timeout: Optional[float] = None) -> dict:
        """
        Create a record in both stores.

        The identifier is derive_id(record), or a new UUID4 when the
        record has none. Both legs are strict inserts.

        Returns:
            The stored record, with "id" set

        Raises:
            DualWriteError: either leg failed (the other is not rolled back)
            DeadlineExceededError: legs did not finish within the deadline
        """
        validate_collection(collection)
        identifier = derive_id(record) or str(uuid.uuid4())
        stored = _with_id(identifier, record)
        self._dual_write(
            "add",
            collection,
            identifier,
            lambda: self.document_store.create(collection, stored, doc_id=identifier),
            lambda: self.relational_store.insert(collection, stored, row_id=identifier),
            timeout,
        )
        return stored

    def set(self, collection: str, identifier: str, record: dict, timeout: Optional[float] = None) -> dict:
        """Idempotent upsert of `identifier` on both stores, in parallel."""
        validate_collection(collection)
        identifier = _check_identifier(identifier)
        stored = _with_id(identifier, record)
        self._dual_write(
            "set",
            collection,
            identifier,
            lambda: self.document_store.set(collection, identifier, stored),
            lambda: self.relational_store.upsert(collection, identifier, stored),
            timeout,
        )
        return stored

    def update(self, collection: str, identifier: str, partial_record: dict, timeout: Optional[float] = None) -> dict:
        """Write a partial field set to both stores. A missing record is left absent."""
        validate_collection(collection)
        identifier = _check_identifier(identifier)
        fields = {k: v for k, v in partial_record.items() if k != "id"}
        self._dual_write(
            "update",
            collection,
            identifier,
            lambda: self.document_store.update(collection, identifier, fields),
            lambda: self.relational_store.update(collection, identifier, fields),
            timeout,
        )
        return _with_id(identifier, fields)

    def delete(self, collection: str, identifier: str, timeout: Optional[float] = None) -> None:
        validate_collection(collection)
        identifier = _check_identifier(identifier)
        self._dual_write(
            "delete",
            collection,
            identifier,
            lambda: self.document_store.delete(collection, identifier),
            lambda: self.relational_store.delete(collection, identifier),
            timeout,
        )

    def _dual_write(
        self,
        operation: str,
        collection: str,
        identifier: Optional[str],
        document_call: Callable[[], Any],
        relational_call: Callable[[], Any],
        timeout: Optional[float],
    ) -> dict[str, Any]:
        timeout = self.default_timeout if timeout is None else timeout
        if timeout is not None and timeout <= 0:
            raise DeadlineExceededError(
                f"{operation} {collection}/{identifier}: deadline already expired",
                operation=operation, collection=collection, identifier=identifier,
            )

        legs = {
            DOCUMENT: self._executor.submit(document_call),
            RELATIONAL: self._executor.submit(relational_call),
        }
        _, not_done = wait(legs.values(), timeout=timeout)
        if not_done:
            unfinished = [leg for leg, future in legs.items() if future in not_done]
            for future in not_done:
                future.cancel()
            logger.warning(
                "dual_write_deadline_exceeded",
                operation=operation,
                collection=collection,
                identifier=identifier,
                timeout=timeout,
                unfinished=unfinished,
            )
            raise DeadlineExceededError(
                f"{operation} {collection}/{identifier}: {', '.join(unfinished)} leg(s) "
                f"not finished after {timeout}s",
                operation=operation, collection=collection, identifier=identifier,
            )

        errors = {leg: future.exception() for leg, future in legs.items() if future.exception() is not None}
        if errors:
            logger.error(
                "dual_write_failed",
                operation=operation,
                collection=collection,
                identifier=identifier,
                failed=sorted(errors),
                errors={leg: str(exc) for leg, exc in errors.items()},
            )
            raise DualWriteError(operation, collection, identifier, errors)

        logger.debug("dual_write_ok", operation=operation, collection=collection, identifier=identifier)
        return {leg: future.result() for leg, future in legs.items()}

    # ------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------

    def get(self, collection: str, identifier: str) -> Optional[dict]:
        """
        Read-through get.

        Returns:
            The record, or None when neither store has it
        """
        validate_collection(collection)
        identifier = _check_identifier(identifier)

        row = self._relational_read(
            "get", collection, lambda: self.relational_store.get(collection, identifier), identifier
        )
        if row is not None:
            return row

        document = self.document_store.get(collection, identifier)
        if document is None:
            return None
        self._schedule_backfill(collection, identifier, document)
        return document

    def get_collection(self, collection: str, limit: int = 100) -> list[dict]:
        validate_collection(collection)
        if limit < 1:
            # pymongo treats limit 0 as "no limit", MySQL as "no rows".
            raise ValueError(f"limit must be at least 1, got {limit}")
        rows = self._relational_read(
            "get_collection", collection, lambda: self.relational_store.get_all(collection, limit)
        )
        if rows:
            return rows

        documents = self.document_store.get_all(collection, limit)
        self._backfill_all(collection, documents)
        return documents

    def query_collection(
        self,
        collection: str,
        field: str,
        operator: Union[QueryOperator, str],
        value: Any,
    ) -> list[dict]:
        """
        Single-field comparison, relational first.

        The document-store fallback in degraded (in-memory) mode only
        answers "=="; other operators come back empty there.
        """
        validate_collection(collection)
        op = QueryOperator.parse(operator)
        if not isinstance(field, str) or not FIELD_NAME_PATTERN.match(field):
            raise InvalidQueryError(f"Unsafe field name: {field!r}")

        rows = self._relational_read(
            "query_collection", collection, lambda: self.relational_store.query(collection, field, op, value)
        )
        if rows:
            return rows

        documents = self.document_store.query(collection, field, op, value)
        self._backfill_all(collection, documents)
        return documents

    def _relational_read(
        self,
        operation: str,
        collection: str,
        call: Callable[[], Any],
        identifier: Optional[str] = None,
    ) -> Any:
        # Relational errors on the read path fall through to the document store.
        try:
            return call()
        except StorageError as exc:
            self.stats.incr("relational_read_failures")
            logger.warning(
                "relational_read_failed",
                operation=operation,
                collection=collection,
                identifier=identifier,
                error=str(exc),
            )
            return None

    # ------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------

    def _backfill_all(self, collection: str, documents: list[dict]) -> None:
        for document in documents:
            identifier = derive_id(document)
            if identifier is None:
                logger.warning("backfill_skipped", collection=collection, reason="no identifier")
                continue
            self._schedule_backfill(collection, identifier, document)

    def _schedule_backfill(self, collection: str, identifier: str, record: dict) -> None:
        self.stats.incr("backfills_scheduled")
        future = self._executor.submit(self._backfill, collection, identifier, record)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget_backfill)

    def _backfill(self, collection: str, identifier: str, record: dict) -> bool:
        # Runs on the pool. Counters are settled before the future completes.
        try:
            self.relational_store.upsert(collection, identifier, record)
        except Exception as exc:
            self.stats.incr("backfills_failed")
            logger.warning("backfill_failed", collection=collection, identifier=identifier, error=str(exc))
            return False
        self.stats.incr("backfills_succeeded")
        logger.debug("backfill_ok", collection=collection, identifier=identifier)
        return True

    def _forget_backfill(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def wait_for_backfills(self, timeout: Optional[float] = None) -> bool:
        """Block until outstanding backfills finish. Returns False on timeout."""
        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    @property
    def pending_backfills(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    # ------------------------------------------------------------
    # Migration / lifecycle
    # ------------------------------------------------------------

    def migrate_all(self, cancel_event: Optional[threading.Event] = None) -> MigrationResult:
        return self._migrator.migrate_all(cancel_event)

    def migrate_collection(
        self, collection: str, cancel_event: Optional[threading.Event] = None
    ) -> MigrationResult:
        return self._migrator.migrate_collection(collection, cancel_event)

    def status(self) -> dict[str, Any]:
        mode = getattr(self.document_store, "mode", None)
        return {
            "document_store_mode": getattr(mode, "value", mode),
            "pending_backfills": self.pending_backfills,
            "stats": self.stats.as_dict(),
        }

    def close(self) -> None:
        self.wait_for_backfills()
        self._executor.shutdown(wait=True)
        self.relational_store.close()
        self.document_store.disconnect()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def _with_id(identifier: str, record: dict) -> dict:
    return {"id": identifier, **{k: v for k, v in record.items() if k != "id"}}


def _check_identifier(identifier: Any) -> str:
    if identifier is None or str(identifier).strip() == "":
        raise ValueError("identifier must be a non-empty string")
    return str(identifier)
