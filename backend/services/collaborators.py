# services/collaborators.py
# ============================================================================
# STOREFRONT CHECKOUT CORE v1.0 — COLLABORATOR CONTRACTS
# ============================================================================
# Narrow interfaces onto the services the checkout core consumes but does
# not own (carts, addresses, user accounts, outbound notifications), with
# in-memory implementations for development and tests.
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import structlog

from schemas.checkout_models import Address, Cart, CartItem, Order, Product, User
from services.errors import CheckoutValidationError


# =============================================================================
# INTERFACES
# =============================================================================

class ICartProvider(ABC):

    @abstractmethod
    async def load_cart_with_items(self, user: User) -> Optional[Cart]:
        pass

    @abstractmethod
    async def clear_cart(self, user_id: int) -> None:
        pass


class IAddressProvider(ABC):

    @abstractmethod
    async def find_by_id(self, user: User, address_id: int) -> Optional[Address]:
        """Only returns addresses owned by the user."""
        pass

    @abstractmethod
    async def find_default(self, user: User) -> Optional[Address]:
        pass


class IUserDirectory(ABC):
    """Resolves authenticated principals issued by the auth service."""

    @abstractmethod
    async def get(self, user_id: int) -> Optional[User]:
        pass


class INotificationSender(ABC):

    @abstractmethod
    async def send_order_confirmation(self, order: Order) -> None:
        pass


class IProductCatalog(ABC):

    @abstractmethod
    async def get_product(self, product_id: int) -> Optional[Product]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryCartProvider(ICartProvider):
    """Carts keyed by user; products resolved live so stock is current."""

    def __init__(self, catalog: IProductCatalog):
        self._catalog = catalog
        self._lines: Dict[int, List[Tuple[int, int, Optional[Decimal]]]] = {}
        self._lock = asyncio.Lock()

    def add_item(
        self,
        user_id: int,
        product_id: int,
        quantity: int,
        unit_price_snapshot: Optional[Decimal] = None,
    ) -> None:
        self._lines.setdefault(user_id, []).append((product_id, quantity, unit_price_snapshot))

    async def load_cart_with_items(self, user: User) -> Optional[Cart]:
        async with self._lock:
            if user.id not in self._lines:
                return None
            lines = list(self._lines[user.id])

        items = []
        for product_id, quantity, snapshot in lines:
            product = await self._catalog.get_product(product_id)
            if product is None:
                raise CheckoutValidationError(
                    f"Product {product_id} is no longer available",
                    {"product_id": product_id},
                )
            items.append(CartItem(product=product, quantity=quantity, unit_price_snapshot=snapshot))
        return Cart(user_id=user.id, items=items)

    async def clear_cart(self, user_id: int) -> None:
        async with self._lock:
            if user_id in self._lines:
                self._lines[user_id] = []

    def item_count(self, user_id: int) -> int:
        return len(self._lines.get(user_id, []))


class InMemoryAddressProvider(IAddressProvider):

    def __init__(self):
        self._addresses: Dict[int, Address] = {}

    def add(self, address: Address) -> Address:
        self._addresses[address.id] = address
        return address

    async def find_by_id(self, user: User, address_id: int) -> Optional[Address]:
        address = self._addresses.get(address_id)
        if address is None or address.user_id != user.id:
            return None
        return address

    async def find_default(self, user: User) -> Optional[Address]:
        for address in self._addresses.values():
            if address.user_id == user.id and address.is_default:
                return address
        return None


class InMemoryUserDirectory(IUserDirectory):

    def __init__(self):
        self._users: Dict[int, User] = {}

    def add(self, user: User) -> User:
        self._users[user.id] = user
        return user

    async def get(self, user_id: int) -> Optional[User]:
        return self._users.get(user_id)


class RecordingNotificationSender(INotificationSender):
    """Keeps every confirmation it was asked to send."""

    def __init__(self):
        self.sent: List[Order] = []

    async def send_order_confirmation(self, order: Order) -> None:
        self.sent.append(order)


class LoggingNotificationSender(INotificationSender):
    """Stand-in used when no mail service is wired up."""

    def __init__(self):
        self._logger = structlog.get_logger().bind(component="notification_sender")

    async def send_order_confirmation(self, order: Order) -> None:
        if not order.customer_email:
            self._logger.info("confirmation_skipped_no_email", order_id=order.id)
            return
        self._logger.info(
            "order_confirmation_would_send",
            order_id=order.id,
            to=order.customer_email,
            total=str(order.total_amount),
            currency=order.currency,
        )
