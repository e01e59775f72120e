# ==============================================
# MongoClient
# ==============================================
#
# PURPOSE:
#   Document Store Adapter. The document store is the PRIMARY store
#   and the source of truth: every record lives here as a document
#   keyed by its natural identifier (`_id`).
#
# WHY THIS CLASS EXISTS:
#   The platform must keep answering when MongoDB is unavailable.
#   The adapter therefore has two modes, held on the instance:
#
#     StoreMode.DURABLE   → talk to MongoDB through pymongo
#     StoreMode.DEGRADED  → answer from an in-memory map owned by
#                           this instance
#
#   DURABLE → DEGRADED happens once and is never undone for the life
#   of the instance:
#     - no URI/host configured, or the first ping fails
#     - a bulk scan (get_all) or query() fails
#   The switch is logged once (event: document_store_degraded).
#
#   Single-document calls (create/set/get/update/delete) that fail in
#   DURABLE mode raise StorageError and leave the mode alone: they are
#   the caller's primary path.
#
# DEGRADED QUERY LIMITATION:
#   In DEGRADED mode query() only evaluates "==". Every other
#   operator returns [] without raising.
#
# CLASS: MongoClient
# ------------------
#   Constructor:
#   ------------
#   - __init__(uri=None, database="loyalty_store",
#              server_selection_timeout_ms=5000, client_factory=None)
#       Store connection params. Don't connect yet.
#
#   Methods:
#   --------
#   - connect() / disconnect()
#   - create(collection, data, doc_id=None) -> str
#   - set(collection, doc_id, data) -> None
#   - get(collection, doc_id) -> dict | None
#   - get_all(collection, limit=100) -> list[dict]
#   - query(collection, field, operator, value) -> list[dict]
#   - update(collection, doc_id, data) -> bool
#   - delete(collection, doc_id) -> None
#   - clear_collection(collection) / clear_all()
#   - count(collection) -> int
#   - get_data_stats() -> dict[str, int]
#
#   Context Manager:
#   ----------------
#   - __enter__ / __exit__ for `with MongoClient(...) as db:` usage.
#
# ==============================================

import copy
import threading
import uuid
from enum import Enum
from typing import Any, Callable, Optional, Union

from pymongo import MongoClient as PyMongoClient
from pymongo.errors import PyMongoError

from loyalty_store.config import MongoConfig
from loyalty_store.errors import StorageError
from loyalty_store.log import get_logger
from loyalty_store.records.collections import COLLECTIONS, validate_collection
from loyalty_store.records.query import QueryOperator

logger = get_logger(__name__)

STORE = "document"


class StoreMode(Enum):
    DURABLE = "durable"
    DEGRADED = "degraded"


class MongoClient:
    def __init__(
        self,
        uri: Optional[str] = None,
        database: str = "loyalty_store",
        server_selection_timeout_ms: int = 5000,
        client_factory: Optional[Callable[..., Any]] = None,
    ):
        self.uri = uri
        self.database = database
        self.server_selection_timeout_ms = server_selection_timeout_ms
        self.client = None
        self._client_factory = client_factory or PyMongoClient
        self._lock = threading.RLock()
        self._memory: dict[str, dict[str, dict]] = {}
        self._mode = StoreMode.DURABLE if uri else StoreMode.DEGRADED
        self._degraded_reason: Optional[str] = None if uri else "no document store credentials"
        if not uri:
            logger.warning("document_store_degraded", reason=self._degraded_reason)

    @classmethod
    def from_config(cls, config: MongoConfig, **kwargs) -> "MongoClient":
        return cls(
            uri=config.connection_uri(),
            database=config.database,
            server_selection_timeout_ms=config.server_selection_timeout_ms,
            **kwargs,
        )

    @property
    def mode(self) -> StoreMode:
        return self._mode

    @property
    def is_degraded(self) -> bool:
        return self._mode is StoreMode.DEGRADED

    @property
    def degraded_reason(self) -> Optional[str]:
        return self._degraded_reason

    # ------------------------------------------------------------
    # Connection / mode
    # ------------------------------------------------------------

    def connect(self) -> None:
        """Open the pymongo client and ping it; on failure switch to DEGRADED."""
        with self._lock:
            if self.is_degraded or self.client is not None:
                return
            client = None
            try:
                client = self._client_factory(
                    self.uri, serverSelectionTimeoutMS=self.server_selection_timeout_ms
                )
                client.admin.command("ping")
            except PyMongoError as exc:
                if client is not None:
                    _close_quietly(client)
                self._degrade(f"connect failed: {exc}")
                return
            self.client = client
        logger.info("document_store_connected", database=self.database)

    def disconnect(self) -> None:
        with self._lock:
            client, self.client = self.client, None
        if client is not None:
            client.close()
            logger.info("document_store_disconnected", database=self.database)

    def _degrade(self, reason: str) -> None:
        with self._lock:
            if self._mode is StoreMode.DEGRADED:
                return
            self._mode = StoreMode.DEGRADED
            self._degraded_reason = reason
            client, self.client = self.client, None
        logger.warning("document_store_degraded", reason=reason, database=self.database)
        if client is not None:
            _close_quietly(client)

    def _collection(self, collection: str):
        # None means "serve from memory".
        validate_collection(collection)
        self.connect()
        with self._lock:
            client = self.client
            if self.is_degraded:
                return None
        if client is None:
            raise StorageError(
                "document store is disconnected",
                store="document",
                collection=collection,
            )
        return client[self.database][collection]

    def _error(self, operation: str, collection: str, doc_id: Optional[str], exc: Exception) -> StorageError:
        logger.error(
            "document_store_operation_failed",
            operation=operation,
            collection=collection,
            identifier=doc_id,
            error=str(exc),
        )
        return StorageError(
            f"MongoDB {operation} on {collection}/{doc_id} failed: {exc}",
            store=STORE,
            operation=operation,
            collection=collection,
            identifier=doc_id,
        )

    # ------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------

    def create(self, collection: str, data: dict, doc_id: Optional[str] = None) -> str:
        """
        Insert a new document and return its id.

        Args:
            collection: Collection name
            data: Document fields ("id" is ignored, the key is doc_id)
            doc_id: Caller-supplied id; a UUID4 string is generated if None

        Raises:
            StorageError: the id already exists or MongoDB rejected the write
        """
        doc_id = str(doc_id) if doc_id else str(uuid.uuid4())
        target = self._collection(collection)
        if target is None:
            with self._lock:
                docs = self._memory.setdefault(collection, {})
                if doc_id in docs:
                    raise StorageError(
                        f"document {collection}/{doc_id} already exists",
                        store=STORE, operation="create", collection=collection, identifier=doc_id,
                    )
                docs[doc_id] = _memory_document(doc_id, data)
            return doc_id
        try:
            target.insert_one(_to_document(doc_id, data))
        except PyMongoError as exc:
            raise self._error("create", collection, doc_id, exc) from exc
        return doc_id

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        """Create or fully replace the document `doc_id`."""
        target = self._collection(collection)
        if target is None:
            with self._lock:
                self._memory.setdefault(collection, {})[doc_id] = _memory_document(doc_id, data)
            return
        try:
            target.replace_one({"_id": doc_id}, _to_document(doc_id, data), upsert=True)
        except PyMongoError as exc:
            raise self._error("set", collection, doc_id, exc) from exc

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        target = self._collection(collection)
        if target is None:
            with self._lock:
                doc = self._memory.get(collection, {}).get(doc_id)
                return copy.deepcopy(doc) if doc is not None else None
        try:
            doc = target.find_one({"_id": doc_id})
        except PyMongoError as exc:
            raise self._error("get", collection, doc_id, exc) from exc
        return _from_document(doc) if doc is not None else None

    def get_all(self, collection: str, limit: int = 100) -> list[dict]:
        target = self._collection(collection)
        if target is not None:
            try:
                docs = [_from_document(doc) for doc in target.find().limit(int(limit))]
                logger.debug("document_store_scan", collection=collection, count=len(docs))
                return docs
            except PyMongoError as exc:
                self._degrade(f"get_all({collection}) failed: {exc}")
        with self._lock:
            docs = list(self._memory.get(collection, {}).values())[: int(limit)]
            return copy.deepcopy(docs)

    def query(
        self,
        collection: str,
        field: str,
        operator: Union[QueryOperator, str],
        value: Any,
    ) -> list[dict]:
        """
        Documents where `field <operator> value`.

        DURABLE mode supports all six operators. DEGRADED mode supports
        only "=="; any other operator returns [].
        """
        op = QueryOperator.parse(operator)
        target = self._collection(collection)
        if target is not None:
            key = "_id" if field == "id" else field
            try:
                return [_from_document(doc) for doc in target.find({key: {op.mongo: value}})]
            except PyMongoError as exc:
                self._degrade(f"query({collection}.{field}) failed: {exc}")
        if op is not QueryOperator.EQ:
            logger.debug(
                "document_store_query_unsupported",
                collection=collection,
                field=field,
                operator=op.value,
            )
            return []
        with self._lock:
            docs = [
                doc for doc in self._memory.get(collection, {}).values()
                if field in doc and op.matches(doc[field], value)
            ]
            return copy.deepcopy(docs)

    def update(self, collection: str, doc_id: str, data: dict) -> bool:
        """
        Merge `data` into an existing document.

        Returns:
            True if the document existed, False if there was nothing to update
        """
        fields = {k: v for k, v in data.items() if k != "id"}
        target = self._collection(collection)
        if target is None:
            with self._lock:
                existing = self._memory.get(collection, {}).get(doc_id)
                if existing is None:
                    return False
                existing.update(copy.deepcopy(fields))
                return True
        if not fields:
            return self.get(collection, doc_id) is not None
        try:
            result = target.update_one({"_id": doc_id}, {"$set": fields})
        except PyMongoError as exc:
            raise self._error("update", collection, doc_id, exc) from exc
        return result.matched_count > 0

    def delete(self, collection: str, doc_id: str) -> None:
        target = self._collection(collection)
        if target is None:
            with self._lock:
                self._memory.get(collection, {}).pop(doc_id, None)
            return
        try:
            target.delete_one({"_id": doc_id})
        except PyMongoError as exc:
            raise self._error("delete", collection, doc_id, exc) from exc

    def clear_collection(self, collection: str) -> None:
        target = self._collection(collection)
        if target is None:
            with self._lock:
                self._memory[collection] = {}
        else:
            try:
                target.delete_many({})
            except PyMongoError as exc:
                raise self._error("clear_collection", collection, None, exc) from exc
        logger.info("document_collection_cleared", collection=collection, mode=self._mode.value)

    def clear_all(self) -> None:
        for collection in COLLECTIONS:
            self.clear_collection(collection)
        logger.info("document_store_cleared", mode=self._mode.value)

    def count(self, collection: str) -> int:
        target = self._collection(collection)
        if target is None:
            with self._lock:
                return len(self._memory.get(collection, {}))
        try:
            return target.count_documents({})
        except PyMongoError as exc:
            raise self._error("count", collection, None, exc) from exc

    def get_data_stats(self) -> dict[str, int]:
        """Document count for every known collection."""
        return {collection: self.count(collection) for collection in COLLECTIONS}

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()


def _to_document(doc_id: str, data: dict) -> dict:
    return {"_id": doc_id, **{k: v for k, v in data.items() if k != "id"}}


def _from_document(doc: dict) -> dict:
    doc = dict(doc)
    doc_id = doc.pop("_id")
    return {"id": str(doc_id), **doc}


def _memory_document(doc_id: str, data: dict) -> dict:
    return {"id": doc_id, **copy.deepcopy({k: v for k, v in data.items() if k != "id"})}


def _close_quietly(client) -> None:
    try:
        client.close()
    except PyMongoError as exc:
        logger.debug("document_store_close_failed", error=str(exc))
