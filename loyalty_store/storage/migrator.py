# ==============================================
# Migrator
# ==============================================
#
# PURPOSE:
#   Replays the document store into the relational store, collection
#   by collection. Run on demand by an operator (CLI `migrate`), never
#   as part of request traffic.
#
# WHY THIS CLASS EXISTS:
#   MySQL can have gaps: a fresh deployment, a dual write whose
#   relational leg failed, a backfill that was dropped. MongoDB is the
#   source of truth, so the fix is always "copy MongoDB over MySQL".
#
# SEMANTICS:
#   - Walks the fixed collection list in order.
#   - Reads up to `batch_limit` (10,000) documents per collection.
#   - Upserts each one into MySQL under derive_id(document).
#   - Documents with no derivable id are skipped and counted.
#   - A record that fails becomes a MigrationRecordError on the
#     result; it is logged with its id and the batch carries on.
#   - Re-running is safe: upsert is idempotent.
#   - cancel_event (threading.Event) is checked before every record;
#     one upsert is the unit of interruption.
#
# CLASS: Migrator
# ---------------
#   - migrate_all(cancel_event=None) -> MigrationResult
#   - migrate_collection(collection, cancel_event=None) -> MigrationResult
#
# DATA CLASS: MigrationResult
# ---------------------------
#   - migrated: int                      (successful upserts, all collections)
#   - skipped: int                       (documents without an id)
#   - per_collection: dict[str, int]
#   - failures: list[MigrationRecordError]
#   - cancelled: bool
#
# ==============================================

import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from loyalty_store.errors import MigrationRecordError, StorageError
from loyalty_store.log import get_logger
from loyalty_store.records.collections import COLLECTIONS, validate_collection
from loyalty_store.records.identity import derive_id

logger = get_logger(__name__)

DEFAULT_BATCH_LIMIT = 10000


@dataclass
class MigrationResult:
    migrated: int = 0
    skipped: int = 0
    per_collection: dict[str, int] = field(default_factory=dict)
    failures: list[MigrationRecordError] = field(default_factory=list)
    cancelled: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "migrated": self.migrated,
            "skipped": self.skipped,
            "per_collection": dict(self.per_collection),
            "failures": [
                {"collection": f.collection, "id": f.identifier, "error": str(f)}
                for f in self.failures
            ],
            "cancelled": self.cancelled,
        }


class Migrator:
    """Document store → relational store replay."""

    def __init__(
        self,
        document_store,
        relational_store,
        collections: tuple[str, ...] = COLLECTIONS,
        batch_limit: int = DEFAULT_BATCH_LIMIT,
    ):
        self.document_store = document_store
        self.relational_store = relational_store
        self.collections = tuple(validate_collection(c) for c in collections)
        self.batch_limit = batch_limit

    def migrate_all(self, cancel_event: Optional[threading.Event] = None) -> MigrationResult:
        """
        Migrate every known collection.

        Args:
            cancel_event: Optional token; once set, the run stops before
                the next record and the result is marked cancelled.

        Returns:
            MigrationResult; `migrated` is the total of successful upserts
        """
        result = MigrationResult()
        logger.info("migration_started", collections=len(self.collections))
        for collection in self.collections:
            self._migrate_into(collection, result, cancel_event)
            if result.cancelled:
                break
        logger.info(
            "migration_finished",
            migrated=result.migrated,
            skipped=result.skipped,
            failed=len(result.failures),
            cancelled=result.cancelled,
        )
        return result

    def migrate_collection(
        self, collection: str, cancel_event: Optional[threading.Event] = None
    ) -> MigrationResult:
        validate_collection(collection)
        result = MigrationResult()
        self._migrate_into(collection, result, cancel_event)
        return result

    def _migrate_into(
        self,
        collection: str,
        result: MigrationResult,
        cancel_event: Optional[threading.Event],
    ) -> None:
        if _is_cancelled(cancel_event):
            result.cancelled = True
            return

        documents = self.document_store.get_all(collection, self.batch_limit)
        migrated = 0
        for document in documents:
            if _is_cancelled(cancel_event):
                result.cancelled = True
                logger.warning("migration_cancelled", collection=collection, migrated=migrated)
                break

            identifier = derive_id(document)
            if identifier is None:
                result.skipped += 1
                logger.warning("migration_record_skipped", collection=collection, reason="no identifier")
                continue

            try:
                self.relational_store.upsert(collection, identifier, document)
            except StorageError as exc:
                failure = MigrationRecordError(
                    f"Failed to migrate {collection}/{identifier}: {exc}",
                    store="relational",
                    operation="migrate",
                    collection=collection,
                    identifier=identifier,
                )
                failure.__cause__ = exc
                result.failures.append(failure)
                logger.warning(
                    "migration_record_failed",
                    collection=collection,
                    identifier=identifier,
                    error=str(exc),
                )
                continue
            migrated += 1

        result.per_collection[collection] = result.per_collection.get(collection, 0) + migrated
        result.migrated += migrated
        logger.info(
            "migration_collection_done",
            collection=collection,
            read=len(documents),
            migrated=migrated,
        )


def _is_cancelled(cancel_event: Optional[threading.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()
