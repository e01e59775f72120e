# ==============================================
# Identity
# ==============================================
#
# PURPOSE:
#   Resolve the natural identifier of a record. Both stores key the
#   same logical record under this value, so it is the only join key
#   between the document store and the relational store.
#
# PRECEDENCE:
#   id → token → vendor_id → email → phone_number
#
#   None and blank strings are skipped. Non-string values (e.g. an
#   integer id) are converted with str().
#
# ==============================================

from typing import Any, Mapping, Optional

ID_PRECEDENCE = ("id", "token", "vendor_id", "email", "phone_number")


def derive_id(record: Mapping[str, Any]) -> Optional[str]:
    """
    Return the natural identifier of ``record`` or None if it has none.

    >>> derive_id({"id": "a1", "email": "x@y.z"})
    'a1'
    >>> derive_id({"email": "x@y.z", "phone_number": "+4412"})
    'x@y.z'
    """
    for key in ID_PRECEDENCE:
        value = record.get(key)
        if value is None:
            continue
        value = str(value).strip()
        if value:
            return value
    return None


def require_id(record: Mapping[str, Any]) -> str:
    """Like derive_id, but raises ValueError when no identifier can be derived."""
    identifier = derive_id(record)
    if identifier is None:
        raise ValueError(
            f"record has none of the identifier fields {', '.join(ID_PRECEDENCE)}"
        )
    return identifier
