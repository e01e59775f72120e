# ==============================================
# QueryOperator
# ==============================================
#
# PURPOSE:
#   Single-field comparisons accepted by query_collection().
#   A closed enum: callers may pass the enum or its symbol, and an
#   unknown symbol is rejected up front (InvalidQueryError) instead
#   of reaching a store.
#
#   EQ "=="   LT "<"   GT ">"   LTE "<="   GTE ">="   NEQ "!="
#
# USED BY:
#   - MySQLClient.query()   → .sql  (native predicate, all six)
#   - MongoClient.query()   → .mongo (native predicate, all six)
#                             .matches() for the in-memory map, which
#                             only evaluates EQ in degraded mode
#
# ==============================================

import operator as _op
from enum import Enum
from typing import Any, Union

from loyalty_store.errors import InvalidQueryError


class QueryOperator(Enum):
    EQ = "=="
    LT = "<"
    GT = ">"
    LTE = "<="
    GTE = ">="
    NEQ = "!="

    @classmethod
    def parse(cls, value: Union["QueryOperator", str]) -> "QueryOperator":
        """Accept an operator or its symbol; raise InvalidQueryError otherwise."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip())
        except ValueError:
            raise InvalidQueryError(f"Unsupported query operator: {value!r}") from None

    @property
    def sql(self) -> str:
        return _SQL[self]

    @property
    def mongo(self) -> str:
        return _MONGO[self]

    def matches(self, field_value: Any, value: Any) -> bool:
        """
        Evaluate ``field_value <op> value`` in memory.

        Missing fields (None) never satisfy an ordering comparison, and
        values of incomparable types simply don't match.
        """
        if self in (QueryOperator.EQ, QueryOperator.NEQ):
            return _PY[self](field_value, value)
        if field_value is None:
            return False
        try:
            return _PY[self](field_value, value)
        except TypeError:
            return False


_SQL = {
    QueryOperator.EQ: "=",
    QueryOperator.LT: "<",
    QueryOperator.GT: ">",
    QueryOperator.LTE: "<=",
    QueryOperator.GTE: ">=",
    QueryOperator.NEQ: "<>",
}

_MONGO = {
    QueryOperator.EQ: "$eq",
    QueryOperator.LT: "$lt",
    QueryOperator.GT: "$gt",
    QueryOperator.LTE: "$lte",
    QueryOperator.GTE: "$gte",
    QueryOperator.NEQ: "$ne",
}

_PY = {
    QueryOperator.EQ: _op.eq,
    QueryOperator.LT: _op.lt,
    QueryOperator.GT: _op.gt,
    QueryOperator.LTE: _op.le,
    QueryOperator.GTE: _op.ge,
    QueryOperator.NEQ: _op.ne,
}
