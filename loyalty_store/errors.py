# ==============================================
# Error Taxonomy
# ==============================================
#
# LoyaltyStoreError
# ├── StorageError              → a store operation failed
# │   ├── DualWriteError        → one or both legs of a dual write failed
# │   ├── DeadlineExceededError → caller deadline hit before both legs joined
# │   ├── PoolExhaustedError    → no pooled MySQL connection within timeout
# │   └── MigrationRecordError  → one record failed to replay during migration
# ├── UnknownCollectionError    → collection outside the fixed vocabulary
# └── InvalidQueryError         → unknown operator or unsafe field name
#
# "Not found" is not an exception: get() returns None.
#
# The switch of the document adapter to in-memory mode is a log
# event (document_store_degraded), not an exception.
#
# ==============================================

from typing import Optional


class LoyaltyStoreError(Exception):
    """Base class for every error raised by loyalty_store."""


class StorageError(LoyaltyStoreError):
    """An underlying store operation failed (connectivity, constraint, ...)."""

    def __init__(
        self,
        message: str,
        *,
        store: Optional[str] = None,
        operation: Optional[str] = None,
        collection: Optional[str] = None,
        identifier: Optional[str] = None,
    ):
        super().__init__(message)
        self.store = store
        self.operation = operation
        self.collection = collection
        self.identifier = identifier


class DualWriteError(StorageError):
    """
    One or both legs of a dual write failed.

    The leg that succeeded is NOT rolled back; ``errors`` maps the
    failed leg name ("document" / "relational") to its exception.
    """

    def __init__(self, operation: str, collection: str, identifier: Optional[str], errors: dict):
        legs = ", ".join(f"{leg}: {exc}" for leg, exc in errors.items())
        super().__init__(
            f"{operation} {collection}/{identifier} failed on {legs}",
            operation=operation,
            collection=collection,
            identifier=identifier,
        )
        self.errors = errors

    @property
    def failed_legs(self) -> list[str]:
        return sorted(self.errors)


class DeadlineExceededError(StorageError):
    """The caller-supplied deadline expired before both legs finished."""


class PoolExhaustedError(StorageError):
    """No MySQL connection became free within the pool timeout."""


class MigrationRecordError(StorageError):
    """A single record could not be replayed into the relational store."""


class UnknownCollectionError(LoyaltyStoreError, ValueError):
    """The collection name is not part of the registered vocabulary."""


class InvalidQueryError(LoyaltyStoreError, ValueError):
    """Unsupported comparison operator or unsafe field name."""
