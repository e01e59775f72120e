# ==============================================
# Tests for the records package
# ==============================================
#
# derive_id precedence, collection vocabulary and QueryOperator.
# ==============================================

import pytest

from loyalty_store.errors import InvalidQueryError, UnknownCollectionError
from loyalty_store.records.collections import COLLECTIONS, validate_collection
from loyalty_store.records.identity import ID_PRECEDENCE, derive_id, require_id
from loyalty_store.records.query import QueryOperator


class TestDeriveId:
    def test_id_beats_email(self):
        assert derive_id({"id": "abc", "email": "a@b.c"}) == "abc"

    @pytest.mark.parametrize(
        "record, expected",
        [
            ({"token": "t1", "vendor_id": "v1", "email": "e", "phone_number": "p"}, "t1"),
            ({"vendor_id": "v1", "email": "e", "phone_number": "p"}, "v1"),
            ({"email": "e", "phone_number": "p"}, "e"),
            ({"phone_number": "p"}, "p"),
        ],
    )
    def test_precedence_chain(self, record, expected):
        assert derive_id(record) == expected

    def test_blank_and_none_are_skipped(self):
        assert derive_id({"id": "", "token": None, "email": "  ", "phone_number": "+1"}) == "+1"

    def test_non_string_id_is_stringified(self):
        assert derive_id({"id": 42}) == "42"

    def test_no_identifier(self):
        assert derive_id({"title": "nothing to key on"}) is None

    def test_require_id_raises(self):
        with pytest.raises(ValueError):
            require_id({"title": "x"})

    def test_precedence_order_is_fixed(self):
        assert ID_PRECEDENCE == ("id", "token", "vendor_id", "email", "phone_number")


class TestCollections:
    def test_vocabulary(self):
        assert set(COLLECTIONS) == {
            "vendors", "customers", "qr_tokens", "products", "offers", "redemptions",
            "broadcasts", "broadcast_queue", "webhook_events", "customer_optins",
            "vendor_offer_actions", "vendor_images",
        }

    def test_unknown_collection_rejected(self):
        with pytest.raises(UnknownCollectionError):
            validate_collection("users; DROP TABLE vendors")


class TestQueryOperator:
    @pytest.mark.parametrize("symbol", ["==", "<", ">", "<=", ">=", "!="])
    def test_parse_symbols(self, symbol):
        assert QueryOperator.parse(symbol).value == symbol

    def test_parse_passes_enum_through(self):
        assert QueryOperator.parse(QueryOperator.GTE) is QueryOperator.GTE

    @pytest.mark.parametrize("bad", ["=", "LIKE", "in", "", None])
    def test_invalid_operator(self, bad):
        with pytest.raises(InvalidQueryError):
            QueryOperator.parse(bad)

    def test_sql_and_mongo_mappings(self):
        assert QueryOperator.NEQ.sql == "<>"
        assert QueryOperator.EQ.sql == "="
        assert QueryOperator.LTE.mongo == "$lte"
        assert QueryOperator.NEQ.mongo == "$ne"

    def test_matches(self):
        assert QueryOperator.GT.matches(5, 3)
        assert not QueryOperator.LT.matches(5, 3)
        assert QueryOperator.NEQ.matches("a", "b")
        assert QueryOperator.EQ.matches("a", "a")

    def test_ordering_against_missing_or_incomparable_values(self):
        assert not QueryOperator.GT.matches(None, 3)
        assert not QueryOperator.LT.matches("abc", 3)
