# services/__init__.py
# ============================================================================
# STOREFRONT CHECKOUT CORE v1.0 — SERVICES MODULE
# ============================================================================
# Cart reading, order ledger, stock adjustment, collaborators and errors
# ============================================================================

from services.errors import (
    CheckoutError,
    CheckoutValidationError,
    InsufficientStockError,
    AddressNotFoundError,
    InvalidSignatureError,
    OrderNotFoundError,
    StockShortfallError,
    GatewayError,
    UnauthorizedError,
)

from services.stock_adjuster import StockAdjuster
from services.cart_reader import CartSnapshotReader
from services.order_ledger import OrderLedger
from services.notifications import NotificationDispatcher

__all__ = [
    # Errors
    "CheckoutError",
    "CheckoutValidationError",
    "InsufficientStockError",
    "AddressNotFoundError",
    "InvalidSignatureError",
    "OrderNotFoundError",
    "StockShortfallError",
    "GatewayError",
    "UnauthorizedError",
    # Components
    "StockAdjuster",
    "CartSnapshotReader",
    "OrderLedger",
    "NotificationDispatcher",
]
