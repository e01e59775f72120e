# ==============================================
# RECORDS: identity, collections, query operators
# ==============================================
#
# This package holds the pure, store-independent rules every
# write and read path shares.
#
# Modules:
# --------
# - identity.py    → Natural identifier precedence (derive_id)
# - collections.py → Fixed collection vocabulary
# - query.py       → Closed comparison-operator enum + in-memory predicate
#
# ==============================================

from .identity import derive_id, require_id, ID_PRECEDENCE
from .collections import COLLECTIONS, validate_collection
from .query import QueryOperator

__all__ = [
    "derive_id",
    "require_id",
    "ID_PRECEDENCE",
    "COLLECTIONS",
    "validate_collection",
    "QueryOperator",
]
