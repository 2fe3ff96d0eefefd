# services/stock_adjuster.py
# ============================================================================
# STOREFRONT CHECKOUT CORE v1.0 — STOCK ADJUSTER
# ============================================================================
# The only code path that mutates product stock counters.
#
# Stock is checked twice with different purposes:
# - at order creation (ensure_available) to reject impossible orders early
# - at payment time (decrement) inside the payment transaction, where the
#   shortfall policy decides what happens if stock ran out in between:
#     clamp -> decrement to zero, record the oversell
#     hold  -> abort the transaction, order stays PENDING
# ============================================================================

from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from schemas.checkout_models import OrderItem, Product
from services.errors import InsufficientStockError, StockShortfallError
from storage.checkout_store import ICheckoutTransaction, StockChange


class StockAdjuster:

    def __init__(self, shortfall_policy: str = "clamp"):
        if shortfall_policy not in ("clamp", "hold"):
            raise ValueError(f"Unknown shortfall policy: {shortfall_policy}")
        self.shortfall_policy = shortfall_policy
        self._logger = structlog.get_logger().bind(component="stock_adjuster")

    def ensure_available(self, product: Product, quantity: int) -> None:
        """Pre-flight check; raises InsufficientStockError."""
        if quantity > product.stock_qty:
            raise InsufficientStockError(product.name, product.stock_qty, quantity)

    async def decrement(
        self,
        tx: ICheckoutTransaction,
        product_id: int,
        quantity: int,
        correlation_id: Optional[str] = None,
    ) -> StockChange:
        log = self._logger.bind(product_id=product_id, correlation_id=correlation_id)
        allow_shortfall = self.shortfall_policy == "clamp"

        change = await tx.decrement_stock(product_id, quantity, allow_shortfall=allow_shortfall)

        if not change.found:
            log.warning("stock_product_missing", quantity=quantity)
            return change

        if not change.applied:
            log.error("stock_shortfall",
                      requested=quantity,
                      available=change.previous)
            raise StockShortfallError(
                f"Insufficient stock for product {product_id} at payment time",
                {"product_id": product_id, "requested": quantity, "available": change.previous},
            )

        if change.shortfall:
            log.warning("stock_oversold",
                        requested=quantity,
                        available=change.previous,
                        shortfall=change.shortfall)
        else:
            log.info("stock_decremented", quantity=quantity, remaining=change.remaining)
        return change

    async def decrement_items(
        self,
        tx: ICheckoutTransaction,
        items: Iterable[OrderItem],
        correlation_id: Optional[str] = None,
    ) -> List[StockChange]:
        """
        Decrement every product of an order once.

        Rows are locked in ascending product id so two orders paying at the
        same time with overlapping products cannot deadlock each other.
        """
        return [
            await self.decrement(tx, product_id, quantity, correlation_id)
            for product_id, quantity in merge_quantities(items)
        ]


def merge_quantities(items: Iterable[OrderItem]) -> List[Tuple[int, int]]:
    """(product_id, total quantity) pairs sorted by product id."""
    totals: Dict[int, int] = defaultdict(int)
    for item in items:
        totals[item.product_id] += item.quantity
    return sorted(totals.items())
