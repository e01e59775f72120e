# ==============================================
# Collections
# ==============================================
#
# The fixed vocabulary shared by the document adapter, the relational
# adapter and the migration driver. Adding a collection means adding a
# name here AND a TableSchema in storage/schema.py; the document side
# needs nothing (schema-less).
#
# ==============================================

from loyalty_store.errors import UnknownCollectionError

COLLECTIONS = (
    "qr_tokens",
    "vendors",
    "offers",
    "vendor_offer_actions",
    "customers",
    "redemptions",
    "broadcasts",
    "broadcast_queue",
    "webhook_events",
    "customer_optins",
    "products",
    "vendor_images",
)


def validate_collection(collection: str) -> str:
    if collection not in COLLECTIONS:
        raise UnknownCollectionError(f"Unknown collection '{collection}'")
    return collection
