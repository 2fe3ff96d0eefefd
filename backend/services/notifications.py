# services/notifications.py
# ============================================================================
# STOREFRONT CHECKOUT CORE v1.0 — CONFIRMATION DISPATCH
# ============================================================================
# Fire-and-forget delivery of order confirmations. Dispatch happens only
# after the payment transaction has committed; failures are logged and
# never reach the caller.
# ============================================================================

import asyncio
from typing import Set

import structlog

from schemas.checkout_models import Order
from services.collaborators import INotificationSender


class NotificationDispatcher:
    """Schedules confirmation sends as background tasks."""

    def __init__(self, sender: INotificationSender):
        self.sender = sender
        self._tasks: Set[asyncio.Task] = set()
        self._logger = structlog.get_logger().bind(component="notification_dispatcher")

    def dispatch_order_confirmation(self, order: Order) -> asyncio.Task:
        task = asyncio.create_task(self._send(order))
        # keep a strong reference until the task finishes
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _send(self, order: Order) -> None:
        log = self._logger.bind(order_id=order.id, correlation_id=order.correlation_id)
        try:
            await self.sender.send_order_confirmation(order)
            log.info("order_confirmation_sent")
        except Exception as e:
            log.error("order_confirmation_failed", error=str(e), error_type=type(e).__name__)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for in-flight sends; used at shutdown and in tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
