"""Pytest fixtures for the checkout core (in-memory stack, simulated gateway)."""

import json
import os
from decimal import Decimal
from typing import Optional

import pytest

from config import CheckoutSettings, configure_logging
from pipeline.checkout_service import CheckoutService
from schemas.checkout_models import Address, Product, User
from services.collaborators import (
    InMemoryAddressProvider,
    InMemoryCartProvider,
    InMemoryUserDirectory,
    RecordingNotificationSender,
)
from storage.checkout_store import InMemoryAuditLog, InMemoryCheckoutStore

configure_logging(json_output=False)

PRODUCT_A = 1
PRODUCT_B = 2
PRODUCT_RETIRED = 3
PRODUCT_USD = 4

CUSTOMER_ID = 1
OTHER_CUSTOMER_ID = 2


class CheckoutHarness:
    """Everything a test needs to drive and inspect one checkout core."""

    def __init__(self, settings: CheckoutSettings):
        self.settings = settings
        self.store = InMemoryCheckoutStore()
        self.carts = InMemoryCartProvider(self.store)
        self.addresses = InMemoryAddressProvider()
        self.users = InMemoryUserDirectory()
        self.sender = RecordingNotificationSender()
        self.audit = InMemoryAuditLog()
        self.service = CheckoutService(
            settings=settings,
            store=self.store,
            carts=self.carts,
            addresses=self.addresses,
            users=self.users,
            notification_sender=self.sender,
            audit_log=self.audit,
        )
        self._seed()

    def _seed(self) -> None:
        self.store.add_product(Product(
            id=PRODUCT_A, name="Linen Kurta", price=Decimal("500"), currency="INR",
            stock_qty=5, images=["https://cdn.example.com/kurta.jpg"],
        ))
        self.store.add_product(Product(
            id=PRODUCT_B, name="Silk Dupatta", price=Decimal("1200"), currency="INR", stock_qty=1,
        ))
        self.store.add_product(Product(
            id=PRODUCT_RETIRED, name="Old Stole", price=Decimal("300"), currency="INR",
            stock_qty=10, active=False,
        ))
        self.store.add_product(Product(
            id=PRODUCT_USD, name="Import Scarf", price=Decimal("25.50"), currency="USD", stock_qty=10,
        ))

        self.users.add(User(id=CUSTOMER_ID, name="Asha Rao", email="asha@example.com",
                            mobile_number="9876543210"))
        self.users.add(User(id=OTHER_CUSTOMER_ID, name="Vik", email=None))

        self.addresses.add(Address(
            id=10, user_id=CUSTOMER_ID, line1="12 MG Road", line2="Flat 4B",
            city="Bengaluru", state="Karnataka", zip="560001", country="India",
            phone="9876543210", is_default=True,
        ))
        self.addresses.add(Address(
            id=11, user_id=CUSTOMER_ID, line1="7 Park Street", city="Kolkata", country="India",
        ))
        self.addresses.add(Address(
            id=20, user_id=OTHER_CUSTOMER_ID, line1="1 Elsewhere", city="Pune", country="India",
        ))

    @property
    def gateway(self):
        return self.service.gateway

    async def user(self, user_id: int = CUSTOMER_ID) -> User:
        return await self.users.get(user_id)

    def fill_standard_cart(self, user_id: int = CUSTOMER_ID) -> None:
        """2 x A (price 500) + 1 x B (price 1200)."""
        self.carts.add_item(user_id, PRODUCT_A, 2)
        self.carts.add_item(user_id, PRODUCT_B, 1)

    async def stock(self, product_id: int) -> int:
        return (await self.store.get_product(product_id)).stock_qty

    def webhook_body(
        self,
        event: str,
        gateway_order_id: str,
        payment_id: str = "pay_webhook_001",
        error_description: Optional[str] = None,
        error: Optional[dict] = None,
    ) -> bytes:
        entity = {"id": payment_id, "order_id": gateway_order_id, "status": "captured"}
        if error_description:
            entity["status"] = "failed"
            entity["error_description"] = error_description
        if error:
            entity["status"] = "failed"
            entity["error"] = error
        return json.dumps({
            "entity": "event",
            "event": event,
            "payload": {"payment": {"entity": entity}},
        }).encode()

    def signed_webhook(self, event: str, gateway_order_id: str, **kwargs):
        body = self.webhook_body(event, gateway_order_id, **kwargs)
        return body, self.gateway.sign_webhook(body)


def simulation_settings(**overrides) -> CheckoutSettings:
    values = dict(app_env="test", gateway_mode="simulation")
    values.update(overrides)
    settings = CheckoutSettings(**values)
    settings.validate()
    return settings


@pytest.fixture
def harness() -> CheckoutHarness:
    return CheckoutHarness(simulation_settings())


@pytest.fixture
def hold_harness() -> CheckoutHarness:
    return CheckoutHarness(simulation_settings(stock_shortfall_policy="hold"))


@pytest.fixture
def make_harness():
    def factory(**overrides) -> CheckoutHarness:
        return CheckoutHarness(simulation_settings(**overrides))
    return factory


# --- PostgreSQL integration: opt-in via environment ---
POSTGRESQL_URL = os.environ.get("CHECKOUT_TEST_DATABASE_URL", "")


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    """Skip PostgreSQL-marked tests unless a database URL is provided."""
    for item in items:
        if "postgresql" in item.keywords and not POSTGRESQL_URL:
            item.add_marker(pytest.mark.skip(reason="CHECKOUT_TEST_DATABASE_URL not set"))
