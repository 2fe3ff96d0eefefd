# storage/__init__.py
# ============================================================================
# STOREFRONT CHECKOUT CORE v1.0 — STORAGE MODULE
# ============================================================================
# Persistence interfaces and in-memory implementations
# ============================================================================

from storage.checkout_store import (
    ICheckoutStore,
    ICheckoutTransaction,
    IAuditLog,
    InMemoryCheckoutStore,
    InMemoryAuditLog,
    StockChange,
)

__all__ = [
    "ICheckoutStore",
    "ICheckoutTransaction",
    "IAuditLog",
    "InMemoryCheckoutStore",
    "InMemoryAuditLog",
    "StockChange",
]
