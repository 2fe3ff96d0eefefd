# services/order_ledger.py
# ============================================================================
# STOREFRONT CHECKOUT CORE v1.0 — ORDER LEDGER
# ============================================================================
# Owns the Order/OrderItem lifecycle up to the point where payment state is
# reconciled. Status changes after creation belong to the reconciliation
# engine; the ledger only creates PENDING orders and attaches gateway ids.
# ============================================================================

from typing import List, Optional

import structlog

from schemas.checkout_models import (
    Address,
    AuditEventType,
    AuditLogEntry,
    Cart,
    Order,
    OrderItem,
    OrderStatus,
    User,
)
from services.errors import CheckoutValidationError, OrderNotFoundError
from storage.checkout_store import IAuditLog, ICheckoutStore


class OrderLedger:

    def __init__(self, store: ICheckoutStore, audit_log: Optional[IAuditLog] = None):
        self.store = store
        self.audit = audit_log
        self._logger = structlog.get_logger().bind(component="order_ledger")

    async def create_pending_order(
        self,
        user: User,
        cart: Cart,
        shipping_address: Optional[Address] = None,
    ) -> Order:
        """
        Build and persist one PENDING order from a validated cart snapshot.

        Item name/price/image are copied, not referenced, so later catalog
        edits never change a placed order. The cart is left untouched.
        """
        if not cart.items:
            raise CheckoutValidationError("Cart is empty")

        currency = cart.items[0].product.currency
        items = [OrderItem.snapshot(item, currency) for item in cart.items]
        total_minor = sum(item.subtotal_minor for item in items)

        order = Order(
            user_id=user.id,
            items=items,
            total_minor=total_minor,
            currency=currency,
            status=OrderStatus.PENDING,
            shipping_address=shipping_address.format() if shipping_address else None,
            address_id=shipping_address.id if shipping_address else None,
            customer_email=user.email,
            customer_phone=user.mobile_number,
        )
        order = await self.store.insert_order(order)

        self._logger.info("order_created",
                          order_id=order.id,
                          user_id=user.id,
                          total_minor=order.total_minor,
                          currency=order.currency,
                          correlation_id=order.correlation_id)

        if self.audit:
            await self.audit.append(AuditLogEntry(
                correlation_id=order.correlation_id,
                event_type=AuditEventType.ORDER_CREATED,
                entity_type="order",
                entity_id=str(order.id),
                new_state={"status": order.status.value, "total_minor": order.total_minor},
                actor="client",
            ))
        return order

    async def attach_gateway_order(self, order: Order, gateway_order_id: str) -> Order:
        updated = await self.store.set_gateway_order_id(order.id, gateway_order_id)
        if updated is None:
            raise OrderNotFoundError(f"Pending order {order.id} not found")

        if self.audit:
            await self.audit.append(AuditLogEntry(
                correlation_id=order.correlation_id,
                event_type=AuditEventType.GATEWAY_ORDER_CREATED,
                entity_type="order",
                entity_id=str(order.id),
                new_state={"gateway_order_id": gateway_order_id},
            ))
        return updated

    async def find_by_gateway_order_id(self, gateway_order_id: str) -> Order:
        order = await self.store.get_order_by_gateway_id(gateway_order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", {"gateway_order_id": gateway_order_id})
        return order

    async def get_order(self, order_id: int) -> Order:
        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", {"order_id": order_id})
        return order

    async def list_orders(self, user: User) -> List[Order]:
        return await self.store.list_orders_for_user(user.id)
