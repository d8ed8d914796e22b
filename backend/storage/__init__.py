# storage/__init__.py
# ============================================================================
# DUCK STOREFRONT v1.0 — STORAGE MODULE
# ============================================================================
# Keyed JSON tables and the order store built on them
# ============================================================================

from storage.json_store import (
    JsonTable,
    TableName,
)

from storage.order_store import (
    IOrderStore,
    JsonOrderStore,
    InMemoryOrderStore,
    create_order_store,
)

__all__ = [
    "JsonTable",
    "TableName",
    "IOrderStore",
    "JsonOrderStore",
    "InMemoryOrderStore",
    "create_order_store",
]
