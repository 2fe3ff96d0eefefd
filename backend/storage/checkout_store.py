# storage/checkout_store.py
# ============================================================================
# STOREFRONT CHECKOUT CORE v1.0 — PERSISTENCE INTERFACES
# ============================================================================
# Abstract order/stock store with a transactional unit scoped to one order,
# plus the in-memory implementations used for development and tests.
# The asyncpg-backed implementations live in database.py.
# ============================================================================

import asyncio
import itertools
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

import structlog
from pydantic import BaseModel

from schemas.checkout_models import (
    AuditLogEntry,
    Order,
    OrderStatus,
    Product,
    utcnow,
)


class StockChange(BaseModel):
    """Result of one stock decrement attempt."""
    product_id: int
    requested: int
    previous: Optional[int] = None
    remaining: Optional[int] = None
    applied: bool = False

    @property
    def found(self) -> bool:
        return self.previous is not None

    @property
    def shortfall(self) -> int:
        if self.previous is None:
            return 0
        return max(0, self.requested - self.previous)


# =============================================================================
# INTERFACES
# =============================================================================

class ICheckoutTransaction(ABC):
    """
    One atomic unit of work against a single order.

    Everything done through the transaction becomes visible together when the
    enclosing context exits cleanly, and is discarded if it raises.
    """

    @abstractmethod
    async def get_order(self) -> Optional[Order]:
        pass

    @abstractmethod
    async def conditional_update(
        self,
        expected_status: OrderStatus,
        changes: dict,
    ) -> Optional[Order]:
        """
        SET changes WHERE status = expected_status.

        Returns the updated order, or None when zero rows matched.
        """
        pass

    @abstractmethod
    async def decrement_stock(
        self,
        product_id: int,
        quantity: int,
        allow_shortfall: bool,
    ) -> StockChange:
        """
        Reduce stock, never below zero.

        With allow_shortfall=False an insufficient row is left untouched and
        the change comes back with applied=False.
        """
        pass


class ICheckoutStore(ABC):
    """Order ledger and product stock persistence."""

    @abstractmethod
    async def insert_order(self, order: Order) -> Order:
        """Persist an order and its items in one transaction; assigns ids."""
        pass

    @abstractmethod
    async def set_gateway_order_id(self, order_id: int, gateway_order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_order(self, order_id: int) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_order_by_gateway_id(self, gateway_order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_orders_for_user(self, user_id: int) -> List[Order]:
        pass

    @abstractmethod
    async def get_product(self, product_id: int) -> Optional[Product]:
        pass

    @abstractmethod
    def transaction(self, order_id: int):
        """Async context manager yielding an ICheckoutTransaction."""
        pass


class IAuditLog(ABC):
    """Audit log interface"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> List[AuditLogEntry]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class _InMemoryTransaction(ICheckoutTransaction):

    def __init__(self, store: "InMemoryCheckoutStore", order_id: int):
        self._store = store
        self._order_id = order_id
        self._staged: Optional[Order] = None
        self._undo: List[tuple] = []

    async def get_order(self) -> Optional[Order]:
        if self._staged is not None:
            return self._staged
        return self._store._orders.get(self._order_id)

    async def conditional_update(self, expected_status: OrderStatus, changes: dict) -> Optional[Order]:
        current = await self.get_order()
        if current is None or current.status != expected_status:
            return None
        self._staged = current.model_copy(update={**changes, "updated_at": utcnow()})
        return self._staged

    async def decrement_stock(self, product_id: int, quantity: int, allow_shortfall: bool) -> StockChange:
        async with self._store._stock_lock:
            product = self._store._products.get(product_id)
            if product is None:
                return StockChange(product_id=product_id, requested=quantity)

            previous = product.stock_qty
            if previous < quantity and not allow_shortfall:
                return StockChange(
                    product_id=product_id,
                    requested=quantity,
                    previous=previous,
                    remaining=previous,
                )

            remaining = max(0, previous - quantity)
            self._store._products[product_id] = product.model_copy(update={"stock_qty": remaining})
            self._undo.append((product_id, previous - remaining))
            return StockChange(
                product_id=product_id,
                requested=quantity,
                previous=previous,
                remaining=remaining,
                applied=True,
            )

    async def _commit(self) -> None:
        if self._staged is not None:
            self._store._orders[self._order_id] = self._staged

    async def _rollback(self) -> None:
        async with self._store._stock_lock:
            for product_id, taken in reversed(self._undo):
                product = self._store._products.get(product_id)
                if product is not None:
                    # add back; other orders may have moved stock since
                    self._store._products[product_id] = product.model_copy(
                        update={"stock_qty": product.stock_qty + taken}
                    )
        self._staged = None
        self._undo.clear()


class InMemoryCheckoutStore(ICheckoutStore):
    """
    Process-local store.

    Uses one asyncio.Lock per order to make read-check-write sequences atomic,
    the same way a row-level conditional UPDATE does in PostgreSQL.
    """

    def __init__(self):
        self._orders: Dict[int, Order] = {}
        self._products: Dict[int, Product] = {}
        self._ids = itertools.count(1)
        self._item_ids = itertools.count(1)
        self._order_locks: Dict[int, asyncio.Lock] = {}
        self._order_locks_mutex = asyncio.Lock()
        self._stock_lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="checkout_store", backend="memory")

    # Seed helpers
    def add_product(self, product: Product) -> Product:
        self._products[product.id] = product
        return product

    async def _get_order_lock(self, order_id: int) -> asyncio.Lock:
        """Get or create lock for an order row"""
        async with self._order_locks_mutex:
            if order_id not in self._order_locks:
                self._order_locks[order_id] = asyncio.Lock()
            return self._order_locks[order_id]

    async def insert_order(self, order: Order) -> Order:
        order_id = next(self._ids)
        items = [item.model_copy(update={"id": next(self._item_ids)}) for item in order.items]
        stored = order.model_copy(update={"id": order_id, "items": items})
        self._orders[order_id] = stored
        self._logger.debug("order_inserted", order_id=order_id, items=len(items))
        return stored

    async def set_gateway_order_id(self, order_id: int, gateway_order_id: str) -> Optional[Order]:
        async with self.transaction(order_id) as tx:
            return await tx.conditional_update(
                OrderStatus.PENDING, {"gateway_order_id": gateway_order_id}
            )

    async def get_order(self, order_id: int) -> Optional[Order]:
        return self._orders.get(order_id)

    async def get_order_by_gateway_id(self, gateway_order_id: str) -> Optional[Order]:
        for order in self._orders.values():
            if order.gateway_order_id == gateway_order_id:
                return order
        return None

    async def list_orders_for_user(self, user_id: int) -> List[Order]:
        orders = [o for o in self._orders.values() if o.user_id == user_id]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    async def get_product(self, product_id: int) -> Optional[Product]:
        return self._products.get(product_id)

    @asynccontextmanager
    async def transaction(self, order_id: int) -> AsyncIterator[ICheckoutTransaction]:
        lock = await self._get_order_lock(order_id)
        async with lock:
            tx = _InMemoryTransaction(self, order_id)
            try:
                yield tx
            except BaseException:
                await tx._rollback()
                raise
            await tx._commit()
            order = self._orders.get(order_id)

        if order is not None and order.is_terminal:
            await self._release_order_lock(order_id, lock)

    async def _release_order_lock(self, order_id: int, lock: asyncio.Lock) -> None:
        """Forget the lock of a settled order; its status can no longer change."""
        async with self._order_locks_mutex:
            if self._order_locks.get(order_id) is lock and not lock.locked():
                del self._order_locks[order_id]


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: List[AuditLogEntry] = []
        self._by_correlation: Dict[str, List[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            self._by_correlation[entry.correlation_id].append(entry)

    async def get_by_correlation_id(self, correlation_id: str) -> List[AuditLogEntry]:
        async with self._lock:
            return list(self._by_correlation.get(correlation_id, []))

    @property
    def entries(self) -> List[AuditLogEntry]:
        return list(self._logs)
