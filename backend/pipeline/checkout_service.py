"""
Checkout Service
================
Outward-facing checkout operations composed from the core components:

    Cart Snapshot Reader -> Order Ledger -> Payment Gateway Adapter
        -> (customer pays) -> Reconciliation Engine -> Stock Adjuster
                                                   -> confirmation email

pip install pydantic structlog httpx
"""

from typing import List, Optional

import structlog

from config import CheckoutSettings
from pipeline.payment_gateway import PaymentGatewayAdapter
from pipeline.reconciliation import ReconciliationEngine
from schemas.checkout_models import (
    CreateOrderResult,
    Order,
    PaymentPrefill,
    User,
    VerifyPaymentResult,
    WebhookAck,
)
from services.cart_reader import CartSnapshotReader
from services.collaborators import (
    IAddressProvider,
    ICartProvider,
    INotificationSender,
    IUserDirectory,
)
from services.errors import AddressNotFoundError, GatewayError, OrderNotFoundError, UnauthorizedError
from services.notifications import NotificationDispatcher
from services.order_ledger import OrderLedger
from services.stock_adjuster import StockAdjuster
from storage.checkout_store import IAuditLog, ICheckoutStore, InMemoryAuditLog

MESSAGE_PAID = "Payment successful"
MESSAGE_ALREADY_PROCESSED = "Order already processed"


class CheckoutService:
    """
    Example:
        service = CheckoutService(settings, store, carts, addresses, users, sender)
        created = await service.create_order(user)
        # client pays at the gateway, then:
        await service.verify_payment(created.gateway_order_id, payment_id, signature)
        # and/or the gateway calls:
        await service.handle_webhook(raw_body, signature_header)
    """

    def __init__(
        self,
        settings: CheckoutSettings,
        store: ICheckoutStore,
        carts: ICartProvider,
        addresses: IAddressProvider,
        users: IUserDirectory,
        notification_sender: INotificationSender,
        gateway: Optional[PaymentGatewayAdapter] = None,
        audit_log: Optional[IAuditLog] = None,
    ):
        self.settings = settings
        self.store = store
        self.carts = carts
        self.addresses = addresses
        self.users = users
        self.audit = audit_log or InMemoryAuditLog()
        self.gateway = gateway or PaymentGatewayAdapter(settings)

        self.stock = StockAdjuster(settings.stock_shortfall_policy)
        self.cart_reader = CartSnapshotReader(carts, self.stock)
        self.ledger = OrderLedger(store, self.audit)
        self.notifications = NotificationDispatcher(notification_sender)
        self.engine = ReconciliationEngine(
            ledger=self.ledger,
            gateway=self.gateway,
            stock=self.stock,
            carts=carts,
            notifications=self.notifications,
            audit_log=self.audit,
        )

        self._logger = structlog.get_logger().bind(component="checkout_service")

    async def startup(self) -> None:
        await self.gateway.initialize()

    async def shutdown(self) -> None:
        await self.notifications.drain()
        await self.gateway.close()

    async def resolve_user(self, user_id: Optional[int]) -> User:
        if user_id is None:
            raise UnauthorizedError("Authentication required")
        user = await self.users.get(user_id)
        if user is None:
            raise UnauthorizedError("Unknown user")
        return user

    # =========================================================================
    # CREATE ORDER
    # =========================================================================

    async def create_order(self, user: User, address_id: Optional[int] = None) -> CreateOrderResult:
        cart = await self.cart_reader.load_snapshot(user)

        if address_id is not None:
            shipping = await self.addresses.find_by_id(user, address_id)
            if shipping is None:
                raise AddressNotFoundError(address_id)
        else:
            shipping = await self.addresses.find_default(user)

        order = await self.ledger.create_pending_order(user, cart, shipping)
        log = self._logger.bind(order_id=order.id, correlation_id=order.correlation_id)

        try:
            gateway_order_id = await self.gateway.create_remote_order(
                amount_minor=order.total_minor,
                currency=order.currency,
                receipt=f"order_{order.id}",
                notes={"order_id": order.id, "user_id": user.id},
            )
        except GatewayError as e:
            log.error("checkout_gateway_failed", error=e.message)
            raise

        order = await self.ledger.attach_gateway_order(order, gateway_order_id)
        log.info("checkout_created",
                 gateway_order_id=gateway_order_id,
                 amount_minor=order.total_minor,
                 test_mode=self.gateway.test_mode)

        return CreateOrderResult(
            gateway_order_id=gateway_order_id,
            amount_minor=order.total_minor,
            currency=order.currency,
            key_id=self.gateway.key_id,
            internal_order_id=order.id,
            test_mode=self.gateway.test_mode,
            prefill=PaymentPrefill(
                name=user.name or "",
                email=user.email or "",
                contact=user.mobile_number or "",
            ),
        )

    # =========================================================================
    # CONFIRMATION CHANNELS
    # =========================================================================

    async def verify_payment(
        self,
        gateway_order_id: str,
        payment_id: str,
        signature: str,
    ) -> VerifyPaymentResult:
        result = await self.engine.confirm_direct(gateway_order_id, payment_id, signature)
        message = MESSAGE_ALREADY_PROCESSED if result.already_processed else MESSAGE_PAID
        return VerifyPaymentResult(success=True, order_id=result.order.id, message=message)

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> WebhookAck:
        result = await self.engine.handle_webhook(raw_body, signature)
        return WebhookAck(status="ok", outcome=result.outcome)

    # =========================================================================
    # READS
    # =========================================================================

    async def get_order_for_user(self, user: User, order_id: int) -> Order:
        order = await self.ledger.get_order(order_id)
        if order.user_id != user.id:
            raise OrderNotFoundError("Order not found", {"order_id": order_id})
        return order

    async def list_orders(self, user: User) -> List[Order]:
        return await self.ledger.list_orders(user)
