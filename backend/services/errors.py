# services/errors.py
# ============================================================================
# STOREFRONT CHECKOUT CORE v1.0 — ERROR TAXONOMY
# ============================================================================

from typing import Any, Dict, Optional


class CheckoutError(Exception):
    """Base class for every error the checkout core surfaces to callers."""
    code = "CHECKOUT_ERROR"
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class CheckoutValidationError(CheckoutError):
    """Rejected request; nothing was mutated."""
    code = "VALIDATION"
    http_status = 400


class InsufficientStockError(CheckoutValidationError):

    def __init__(self, product_name: str, available: int, requested: int):
        super().__init__(
            f"Insufficient stock for '{product_name}'. Available: {available}",
            {"product": product_name, "available": available, "requested": requested},
        )


class AddressNotFoundError(CheckoutValidationError):

    def __init__(self, address_id: int):
        super().__init__("Address not found", {"address_id": address_id})


class InvalidSignatureError(CheckoutError):
    code = "SIGNATURE_INVALID"
    http_status = 400


class OrderNotFoundError(CheckoutError):
    code = "NOT_FOUND"
    http_status = 404


class StockShortfallError(CheckoutError):
    """Stock ran out between order creation and payment; order left PENDING."""
    code = "STOCK_SHORTFALL"
    http_status = 409


class GatewayError(CheckoutError):
    code = "GATEWAY_ERROR"
    http_status = 502


class UnauthorizedError(CheckoutError):
    code = "UNAUTHORIZED"
    http_status = 401
