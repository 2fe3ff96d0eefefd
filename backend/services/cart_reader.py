# services/cart_reader.py
# ============================================================================
# STOREFRONT CHECKOUT CORE v1.0 — CART SNAPSHOT READER
# ============================================================================

from collections import defaultdict
from typing import Dict

import structlog

from schemas.checkout_models import Cart, User
from services.collaborators import ICartProvider
from services.errors import CheckoutValidationError
from services.stock_adjuster import StockAdjuster


class CartSnapshotReader:
    """Loads a user's cart and validates it is checkout-able right now."""

    def __init__(self, carts: ICartProvider, stock: StockAdjuster):
        self.carts = carts
        self.stock = stock
        self._logger = structlog.get_logger().bind(component="cart_reader")

    async def load_snapshot(self, user: User) -> Cart:
        cart = await self.carts.load_cart_with_items(user)
        if cart is None or not cart.items:
            raise CheckoutValidationError("Cart is empty")

        currencies = set()
        requested: Dict[int, int] = defaultdict(int)
        for item in cart.items:
            product = item.product
            if not product.active:
                raise CheckoutValidationError(
                    f"Product '{product.name}' is no longer available",
                    {"product_id": product.id},
                )
            # repeated lines for one product draw on the same stock
            requested[product.id] += item.quantity
            self.stock.ensure_available(product, requested[product.id])
            currencies.add(product.currency)

        if len(currencies) > 1:
            raise CheckoutValidationError(
                "Cart contains items in more than one currency",
                {"currencies": sorted(currencies)},
            )

        self._logger.debug("cart_snapshot_loaded", user_id=user.id, items=len(cart.items))
        return cart
