"""
Reconciliation Engine
=====================
Moves an order from PENDING to PAID or CANCELLED exactly once.

Two independent, racing entry points drive the same transition:
- confirm_direct: the paying client's callback (order id, payment id, signature)
- handle_webhook: the gateway's server-to-server push, possibly delayed,
  reordered or repeated

Both funnel into one conditional update ("SET status=PAID WHERE
status=PENDING") inside a transaction scoped to the order. Whoever matches
zero rows observes the committed state and takes the no-op branch, so stock
is decremented and the customer notified once per order.

pip install pydantic structlog
"""

import uuid
from typing import Any, Callable, Dict, List, Optional

import structlog
from pydantic import BaseModel, ValidationError

from pipeline.payment_gateway import PaymentGatewayAdapter
from schemas.checkout_models import (
    AuditEventType,
    AuditLogEntry,
    Order,
    OrderStatus,
    ReconciliationOutcome,
    WebhookEnvelope,
    utcnow,
)
from services.collaborators import ICartProvider
from services.errors import InvalidSignatureError, StockShortfallError
from services.notifications import NotificationDispatcher
from services.order_ledger import OrderLedger
from services.stock_adjuster import StockAdjuster
from storage.checkout_store import IAuditLog, StockChange


class ReconciliationResult(BaseModel):
    outcome: ReconciliationOutcome
    order: Optional[Order] = None

    @property
    def already_processed(self) -> bool:
        return self.outcome == ReconciliationOutcome.ALREADY_PROCESSED


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

WebhookHandler = Callable[[WebhookEnvelope, str], Any]


class WebhookRouter:
    """Maps gateway event names to handlers."""

    def __init__(self):
        self._handlers: Dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    async def route(self, envelope: WebhookEnvelope, correlation_id: str) -> Optional[ReconciliationResult]:
        handler = self._handlers.get(envelope.event)
        if not handler:
            self._logger.info("webhook_event_ignored", event_type=envelope.event)
            return None
        return await handler(envelope, correlation_id)

    @property
    def supported_events(self) -> List[str]:
        return list(self._handlers.keys())


# =============================================================================
# ENGINE
# =============================================================================

class ReconciliationEngine:

    def __init__(
        self,
        ledger: OrderLedger,
        gateway: PaymentGatewayAdapter,
        stock: StockAdjuster,
        carts: ICartProvider,
        notifications: NotificationDispatcher,
        audit_log: Optional[IAuditLog] = None,
    ):
        self.ledger = ledger
        self.store = ledger.store
        self.gateway = gateway
        self.stock = stock
        self.carts = carts
        self.notifications = notifications
        self.audit = audit_log

        self.router = WebhookRouter()
        self._register_handlers()

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str = None):
        """Get logger bound with correlation context"""
        return self._base_logger.bind(
            component="reconciliation_engine",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def _emit_audit(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        correlation_id: str,
        previous_state: dict = None,
        new_state: dict = None,
        metadata: dict = None,
        actor: str = "system",
    ):
        if not self.audit:
            return
        await self.audit.append(AuditLogEntry(
            correlation_id=correlation_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            previous_state=previous_state,
            new_state=new_state,
            metadata=metadata or {},
            actor=actor,
        ))

    # =========================================================================
    # DIRECT VERIFICATION PATH
    # =========================================================================

    async def confirm_direct(
        self,
        gateway_order_id: str,
        payment_id: str,
        signature: str,
    ) -> ReconciliationResult:
        order = await self.ledger.find_by_gateway_order_id(gateway_order_id)
        log = self._get_logger(order.correlation_id).bind(order_id=order.id, channel="direct")

        if not self.gateway.verify_direct_signature(gateway_order_id, payment_id, signature):
            log.warning("payment_signature_invalid",
                        gateway_order_id=gateway_order_id,
                        payment_id=payment_id,
                        security_event=True)
            await self._emit_audit(
                event_type=AuditEventType.SIGNATURE_INVALID,
                entity_type="payment",
                entity_id=payment_id,
                correlation_id=order.correlation_id,
                metadata={"channel": "direct", "gateway_order_id": gateway_order_id},
                actor="client",
            )
            raise InvalidSignatureError("Payment verification failed")

        if order.is_terminal:
            return await self._already_processed(order, payment_id, "direct")

        return await self._capture(order, payment_id, actor="client")

    # =========================================================================
    # WEBHOOK PATH
    # =========================================================================

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> ReconciliationResult:
        """
        Verify, parse and route one gateway webhook.

        Raises InvalidSignatureError only. Every business outcome after a
        valid signature, including unknown orders and malformed bodies, is
        returned so the HTTP layer can acknowledge it.
        """
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id).bind(channel="webhook")

        if not self.gateway.verify_webhook_signature(raw_body, signature):
            log.warning("webhook_signature_invalid", security_event=True, body_bytes=len(raw_body))
            await self._emit_audit(
                event_type=AuditEventType.SIGNATURE_INVALID,
                entity_type="webhook",
                entity_id="unknown",
                correlation_id=correlation_id,
                metadata={"channel": "webhook"},
                actor="webhook",
            )
            raise InvalidSignatureError("Invalid signature")

        try:
            envelope = WebhookEnvelope.model_validate_json(raw_body)
        except ValidationError as e:
            log.error("webhook_malformed", error_count=e.error_count())
            return ReconciliationResult(outcome=ReconciliationOutcome.IGNORED)

        log.info("webhook_received", event_type=envelope.event)
        result = await self.router.route(envelope, correlation_id)
        return result or ReconciliationResult(outcome=ReconciliationOutcome.IGNORED)

    def _register_handlers(self):
        """Register all webhook handlers"""

        @self.router.register("payment.captured")
        async def handle_payment_captured(envelope: WebhookEnvelope, correlation_id: str):
            return await self._on_payment_captured(envelope, correlation_id)

        @self.router.register("payment.failed")
        async def handle_payment_failed(envelope: WebhookEnvelope, correlation_id: str):
            return await self._on_payment_failed(envelope, correlation_id)

    async def _on_payment_captured(self, envelope: WebhookEnvelope, correlation_id: str) -> ReconciliationResult:
        log = self._get_logger(correlation_id)
        entity = envelope.payment_entity
        if entity is None:
            log.error("webhook_payment_entity_missing", event_type=envelope.event)
            return ReconciliationResult(outcome=ReconciliationOutcome.IGNORED)

        order = await self.store.get_order_by_gateway_id(entity.order_id)
        if order is None:
            # the gateway owns retries; nothing to do locally
            log.error("webhook_order_not_found", gateway_order_id=entity.order_id, payment_id=entity.id)
            return ReconciliationResult(outcome=ReconciliationOutcome.ORDER_NOT_FOUND)

        if order.is_terminal:
            return await self._already_processed(order, entity.id, "webhook")

        try:
            return await self._capture(order, entity.id, actor="webhook")
        except StockShortfallError:
            return ReconciliationResult(outcome=ReconciliationOutcome.HELD_FOR_REVIEW, order=order)

    async def _on_payment_failed(self, envelope: WebhookEnvelope, correlation_id: str) -> ReconciliationResult:
        log = self._get_logger(correlation_id)
        entity = envelope.payment_entity
        if entity is None:
            log.error("webhook_payment_entity_missing", event_type=envelope.event)
            return ReconciliationResult(outcome=ReconciliationOutcome.IGNORED)

        reason = entity.failure_description
        log.warning("payment_failed", gateway_order_id=entity.order_id, reason=reason)

        order = await self.store.get_order_by_gateway_id(entity.order_id)
        if order is None:
            log.warning("webhook_order_not_found", gateway_order_id=entity.order_id)
            return ReconciliationResult(outcome=ReconciliationOutcome.ORDER_NOT_FOUND)

        if order.is_terminal:
            log.info("payment_failed_ignored", order_id=order.id, status=order.status.value)
            return ReconciliationResult(outcome=ReconciliationOutcome.ALREADY_PROCESSED, order=order)

        target = order.mark_cancelled(reason)
        async with self.store.transaction(order.id) as tx:
            cancelled = await tx.conditional_update(OrderStatus.PENDING, target.transition_fields())
            current = cancelled or await tx.get_order()

        if cancelled is None:
            log.info("payment_failed_ignored", order_id=order.id, status=current.status.value)
            return ReconciliationResult(outcome=ReconciliationOutcome.ALREADY_PROCESSED, order=current)

        await self._emit_audit(
            event_type=AuditEventType.PAYMENT_FAILED,
            entity_type="order",
            entity_id=str(order.id),
            correlation_id=order.correlation_id,
            previous_state={"status": OrderStatus.PENDING.value},
            new_state={"status": OrderStatus.CANCELLED.value},
            metadata={"payment_id": entity.id, "reason": reason},
            actor="webhook",
        )
        log.info("order_cancelled", order_id=order.id)
        return ReconciliationResult(outcome=ReconciliationOutcome.CANCELLED, order=cancelled)

    # =========================================================================
    # THE TRANSITION
    # =========================================================================

    async def _capture(self, order: Order, payment_id: str, actor: str) -> ReconciliationResult:
        """
        PENDING -> PAID plus stock decrement, as one unit.

        Cart clearing and the confirmation email run only after commit.
        """
        log = self._get_logger(order.correlation_id).bind(order_id=order.id, payment_id=payment_id)
        oversold: List[StockChange] = []
        target = order.mark_paid(payment_id, utcnow())

        try:
            async with self.store.transaction(order.id) as tx:
                paid = await tx.conditional_update(OrderStatus.PENDING, target.transition_fields())
                if paid is None:
                    current = await tx.get_order()
                else:
                    changes = await self.stock.decrement_items(tx, paid.items, order.correlation_id)
                    oversold = [change for change in changes if change.shortfall]
        except StockShortfallError as e:
            log.error("payment_held_for_review", reason=e.message, **e.details)
            await self._emit_audit(
                event_type=AuditEventType.STOCK_SHORTFALL,
                entity_type="order",
                entity_id=str(order.id),
                correlation_id=order.correlation_id,
                metadata={"payment_id": payment_id, **e.details},
                actor=actor,
            )
            raise

        if paid is None:
            # lost the race; the other channel already committed
            return await self._already_processed(current, payment_id, actor)

        await self._emit_audit(
            event_type=AuditEventType.PAYMENT_CONFIRMED,
            entity_type="order",
            entity_id=str(paid.id),
            correlation_id=paid.correlation_id,
            previous_state={"status": OrderStatus.PENDING.value},
            new_state={"status": OrderStatus.PAID.value, "payment_id": payment_id},
            metadata={"total_minor": paid.total_minor, "currency": paid.currency},
            actor=actor,
        )
        for change in oversold:
            await self._emit_audit(
                event_type=AuditEventType.STOCK_OVERSOLD,
                entity_type="product",
                entity_id=str(change.product_id),
                correlation_id=paid.correlation_id,
                metadata={
                    "requested": change.requested,
                    "available": change.previous,
                    "shortfall": change.shortfall,
                },
                actor=actor,
            )

        await self._after_payment_committed(paid, log)
        log.info("order_paid", channel=actor, items=len(paid.items))
        return ReconciliationResult(outcome=ReconciliationOutcome.PAID, order=paid)

    async def _after_payment_committed(self, order: Order, log) -> None:
        try:
            await self.carts.clear_cart(order.user_id)
        except Exception as e:
            log.error("cart_clear_failed", user_id=order.user_id, error=str(e))

        self.notifications.dispatch_order_confirmation(order)

    async def _already_processed(self, order: Order, payment_id: str, channel: str) -> ReconciliationResult:
        log = self._get_logger(order.correlation_id)
        if order.status == OrderStatus.CANCELLED:
            log.warning("payment_for_cancelled_order",
                        order_id=order.id, payment_id=payment_id, channel=channel)
        else:
            log.info("order_already_processed", order_id=order.id, channel=channel)
        await self._emit_audit(
            event_type=AuditEventType.PAYMENT_ALREADY_PROCESSED,
            entity_type="order",
            entity_id=str(order.id),
            correlation_id=order.correlation_id,
            metadata={"payment_id": payment_id, "status": order.status.value, "channel": channel},
            actor=channel,
        )
        return ReconciliationResult(outcome=ReconciliationOutcome.ALREADY_PROCESSED, order=order)
