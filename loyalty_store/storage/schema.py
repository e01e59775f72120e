# ==============================================
# Relational Schema Registry
# ==============================================
#
# PURPOSE:
#   Declares the MySQL table for every collection and converts
#   records to rows and back.
#
# WHY THIS FILE EXISTS:
#   The document store is schema-less but the relational store is
#   not. Each table keeps a handful of "hot" typed columns (with
#   INDEX / UNIQUE declarations) plus one JSON column, `metadata`,
#   that carries every other field of the record. That way any
#   record can be written to MySQL without an ALTER TABLE, and
#   reading it back gives the same mapping the document store holds.
#
# PROJECTION RULES:
#   record → row  (TableSchema.to_row)
#     - "id" is the primary key and is passed separately
#     - EVERY typed column is emitted; one the record lacks is NULL,
#       so writing a row replaces all of it
#     - field with a typed column     → that column
#         dict / list values          → JSON-encoded string
#     - any other field               → metadata JSON object
#         (a record field literally named "metadata" lands inside
#          the JSON object under the key "metadata")
#
#   row → record  (TableSchema.from_row)
#     - NULL columns are dropped
#     - BOOLEAN → bool, DECIMAL → float, JSON columns → decoded
#     - metadata object is merged back in
#
# IDENTIFIERS:
#   Every table and column name is back-quoted (`order` collides
#   with SQL syntax) and must match FIELD_NAME_PATTERN.
#
# ==============================================

import json
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping, Optional

from loyalty_store.errors import InvalidQueryError, UnknownCollectionError

FIELD_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

PRIMARY_KEY = "id"
EXTRAS_COLUMN = "metadata"


def quote_identifier(name: str) -> str:
    """Back-quote a table/column name after checking it is a plain identifier."""
    if not isinstance(name, str) or not FIELD_NAME_PATTERN.match(name):
        raise InvalidQueryError(f"Unsafe SQL identifier: {name!r}")
    return f"`{name}`"


@dataclass(frozen=True)
class Column:
    name: str
    sql_type: str
    default: Optional[str] = None

    def ddl(self) -> str:
        parts = [quote_identifier(self.name), self.sql_type]
        if self.default is not None:
            parts.append(f"DEFAULT {self.default}")
        return " ".join(parts)

    @property
    def is_bool(self) -> bool:
        return self.sql_type.upper().startswith("BOOL")

    @property
    def is_json(self) -> bool:
        return self.sql_type.upper() == "JSON"


@dataclass(frozen=True)
class TableSchema:
    """
    One relational table.

    Attributes:
        name: Table name (same as the collection name)
        columns: Typed columns, excluding `id` and `metadata`
        indexes: (index_name, column) pairs → INDEX declarations
        unique: (key_name, (columns...)) pairs → UNIQUE KEY declarations
    """
    name: str
    columns: tuple[Column, ...]
    indexes: tuple[tuple[str, str], ...] = ()
    unique: tuple[tuple[str, tuple[str, ...]], ...] = ()
    _by_name: dict = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_by_name", {c.name: c for c in self.columns})

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def has_column(self, name: str) -> bool:
        return name in self._by_name

    def create_statement(self) -> str:
        lines = [f"{quote_identifier(PRIMARY_KEY)} VARCHAR(255) PRIMARY KEY"]
        lines.extend(c.ddl() for c in self.columns)
        lines.append(f"{quote_identifier(EXTRAS_COLUMN)} JSON")
        for index_name, column in self.indexes:
            lines.append(f"INDEX {quote_identifier(index_name)} ({quote_identifier(column)})")
        for key_name, columns in self.unique:
            cols = ", ".join(quote_identifier(c) for c in columns)
            lines.append(f"UNIQUE KEY {quote_identifier(key_name)} ({cols})")
        body = ",\n  ".join(lines)
        return f"CREATE TABLE IF NOT EXISTS {quote_identifier(self.name)} (\n  {body}\n)"

    def to_row(self, record: Mapping[str, Any]) -> dict[str, Any]:
        """
        Project a record onto this table's columns (without the primary key).

        Every typed column is present, None where the record has no value,
        and so is `metadata` (None when every field fit a typed column).
        """
        row: dict[str, Any] = {name: None for name in self._by_name}
        extras: dict[str, Any] = {}
        for key, value in record.items():
            if key == PRIMARY_KEY:
                continue
            if key in self._by_name:
                row[key] = _encode_column_value(self._by_name[key], value)
            else:
                extras[key] = value
        row[EXTRAS_COLUMN] = json.dumps(extras, default=str) if extras else None
        return row

    def split_partial(self, data: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
        """Split a partial update into (typed column values, extra fields)."""
        columns: dict[str, Any] = {}
        extras: dict[str, Any] = {}
        for key, value in data.items():
            if key == PRIMARY_KEY:
                continue
            if key in self._by_name:
                columns[key] = _encode_column_value(self._by_name[key], value)
            else:
                extras[key] = value
        return columns, extras

    def from_row(self, row: Mapping[str, Any]) -> dict[str, Any]:
        """Rebuild the record a row was projected from."""
        record: dict[str, Any] = {}
        if row.get(PRIMARY_KEY) is not None:
            record[PRIMARY_KEY] = row[PRIMARY_KEY]
        for key, value in row.items():
            if key in (PRIMARY_KEY, EXTRAS_COLUMN) or value is None:
                continue
            column = self._by_name.get(key)
            record[key] = _decode_column_value(column, value) if column else value
        extras = _load_json(row.get(EXTRAS_COLUMN))
        if isinstance(extras, dict):
            for key, value in extras.items():
                record.setdefault(key, value)
        return record


def _encode_column_value(column: Column, value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return value


def _decode_column_value(column: Column, value: Any) -> Any:
    if column.is_bool:
        return bool(value)
    if column.is_json:
        return _load_json(value)
    if isinstance(value, Decimal):
        return float(value)
    return value


def _load_json(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def _text(name: str, length: int = 255, default: Optional[str] = None) -> Column:
    return Column(name, f"VARCHAR({length})", default)


# ==============================================
# Table declarations
# ==============================================

TABLES: dict[str, TableSchema] = {
    "qr_tokens": TableSchema(
        name="qr_tokens",
        columns=(
            _text("token"),
            _text("layout"),
            _text("created_at"),
            _text("claimed_at"),
            _text("vendor_id"),
            _text("vendor_slug"),
            _text("status", default="'unclaimed'"),
            _text("registration_url", 500),
            _text("updated_at"),
            Column("qr_image", "LONGTEXT"),
            Column("admin_verified", "BOOLEAN", "FALSE"),
            _text("verified_at"),
        ),
        indexes=(("idx_status", "status"), ("idx_vendor_id", "vendor_id")),
        unique=(("unique_token", ("token",)),),
    ),
    "vendors": TableSchema(
        name="vendors",
        columns=(
            _text("created_at"),
            _text("name"),
            _text("address", 500),
            _text("email"),
            _text("phone", 50),
            Column("qr_code_url", "LONGTEXT"),
            _text("password"),
            _text("slug"),
            Column("verified", "BOOLEAN", "FALSE"),
            _text("status", 50, "'active'"),
            _text("city"),
            _text("qr_token"),
            _text("qr_layout"),
            _text("profile_image", 500),
        ),
        indexes=(("idx_email", "email"), ("idx_slug", "slug")),
    ),
    "customers": TableSchema(
        name="customers",
        columns=(
            _text("created_at"),
            _text("vendorId"),
            _text("updated_at"),
            _text("name"),
            _text("phone_number", 50),
            _text("status", 50, "'active'"),
        ),
        indexes=(("idx_vendorId", "vendorId"), ("idx_phone", "phone_number")),
        unique=(("unique_vendor_phone", ("vendorId", "phone_number")),),
    ),
    "redemptions": TableSchema(
        name="redemptions",
        columns=(
            _text("otpGeneratedAt"),
            _text("offerTitle"),
            _text("offerId"),
            _text("status", 50, "'pending'"),
            _text("offerExpiresAt"),
            _text("updatedAt"),
            _text("otpExpiresAt"),
            _text("createdAt"),
            _text("sessionId"),
            _text("customerName"),
            Column("discountPercent", "INT"),
            _text("otp", 20),
            _text("phoneNumber", 50),
            _text("vendorId"),
            _text("offerDescription", 500),
        ),
        indexes=(
            ("idx_phoneNumber", "phoneNumber"),
            ("idx_vendorId", "vendorId"),
            ("idx_sessionId", "sessionId"),
            ("idx_otp", "otp"),
        ),
    ),
    "products": TableSchema(
        name="products",
        columns=(
            _text("updatedAt"),
            _text("name"),
            Column("price", "DECIMAL(10,2)"),
            _text("vendorId"),
            Column("order", "BIGINT"),
            _text("createdAt"),
            Column("isActive", "BOOLEAN"),
            _text("icon", 500),
            _text("description", 500),
            _text("category"),
            Column("image_url", "TEXT"),
            _text("status", 50, "'active'"),
        ),
        indexes=(("idx_vendorId", "vendorId"),),
    ),
    "offers": TableSchema(
        name="offers",
        columns=(
            _text("title"),
            Column("description", "LONGTEXT"),
            _text("status", 50, "'draft'"),
            _text("expiry_date"),
            _text("created_at"),
            _text("updated_at"),
        ),
        indexes=(("idx_status", "status"),),
    ),
    "vendor_offer_actions": TableSchema(
        name="vendor_offer_actions",
        columns=(
            _text("vendor_id"),
            _text("offer_id"),
            _text("action_type", 50),
            _text("status", 50, "'pending'"),
            _text("created_at"),
            _text("updated_at"),
        ),
        indexes=(("idx_vendor_id", "vendor_id"), ("idx_offer_id", "offer_id")),
    ),
    "broadcasts": TableSchema(
        name="broadcasts",
        columns=(
            _text("title"),
            Column("message", "LONGTEXT"),
            _text("status", 50, "'draft'"),
            _text("created_at"),
            _text("updated_at"),
        ),
        indexes=(("idx_status", "status"),),
    ),
    "broadcast_queue": TableSchema(
        name="broadcast_queue",
        columns=(
            _text("broadcast_id"),
            _text("vendor_id"),
            _text("status", 50, "'pending'"),
            _text("created_at"),
            _text("updated_at"),
        ),
        indexes=(("idx_status", "status"), ("idx_broadcast_id", "broadcast_id")),
    ),
    "webhook_events": TableSchema(
        name="webhook_events",
        columns=(
            _text("event_type", 100),
            Column("payload", "JSON"),
            _text("status", 50, "'pending'"),
            _text("created_at"),
        ),
        indexes=(("idx_event_type", "event_type"),),
    ),
    "customer_optins": TableSchema(
        name="customer_optins",
        columns=(
            _text("phone_number", 50),
            _text("vendor_id"),
            _text("status", 50, "'active'"),
            _text("created_at"),
            _text("updated_at"),
        ),
        indexes=(("idx_phone", "phone_number"), ("idx_vendor_id", "vendor_id")),
    ),
    "vendor_images": TableSchema(
        name="vendor_images",
        columns=(
            _text("fileName"),
            Column("imageData", "LONGTEXT"),
            _text("uploadedAt"),
            _text("folder"),
            Column("size", "BIGINT"),
            _text("vendor_id"),
            _text("status", 50, "'active'"),
            _text("created_at"),
        ),
        indexes=(("idx_vendor_id", "vendor_id"),),
    ),
}

# Child tables first so DROP never trips over references.
DROP_ORDER = (
    "broadcast_queue",
    "vendor_offer_actions",
    "customer_optins",
    "products",
    "redemptions",
    "customers",
    "offers",
    "broadcasts",
    "webhook_events",
    "vendor_images",
    "vendors",
    "qr_tokens",
)


def get_table(name: str) -> TableSchema:
    try:
        return TABLES[name]
    except KeyError:
        raise UnknownCollectionError(f"No relational table registered for '{name}'") from None
