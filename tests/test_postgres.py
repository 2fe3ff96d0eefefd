"""
PostgreSQL-backed checkout, run only when CHECKOUT_TEST_DATABASE_URL points at
a disposable database. Tables are truncated before every test.
"""

import asyncio
import json

import pytest

from config import CheckoutSettings
from database import (
    Database,
    PostgresAddressProvider,
    PostgresAuditLog,
    PostgresCartProvider,
    PostgresCheckoutStore,
    PostgresUserDirectory,
    close_database,
    init_database,
)
from pipeline.checkout_service import CheckoutService, MESSAGE_ALREADY_PROCESSED, MESSAGE_PAID
from schemas.checkout_models import AuditEventType, OrderStatus
from services.collaborators import RecordingNotificationSender

from conftest import POSTGRESQL_URL

pytestmark = pytest.mark.postgresql


@pytest.fixture
async def pg_service():
    settings = CheckoutSettings(
        app_env="test",
        gateway_mode="simulation",
        store_backend="postgres",
        database_url=POSTGRESQL_URL,
        db_min_pool_size=1,
        db_max_pool_size=5,
    )
    await init_database(settings)
    await Database.execute(
        "TRUNCATE system_events, order_items, orders, cart_items, carts, addresses, "
        "products, users RESTART IDENTITY CASCADE"
    )

    sender = RecordingNotificationSender()
    service = CheckoutService(
        settings=settings,
        store=PostgresCheckoutStore(),
        carts=PostgresCartProvider(),
        addresses=PostgresAddressProvider(),
        users=PostgresUserDirectory(),
        notification_sender=sender,
        audit_log=PostgresAuditLog(),
    )
    await service.startup()
    yield service
    await service.shutdown()
    await close_database()


async def seed_standard_cart() -> tuple:
    user_id = await Database.fetch_one(
        "INSERT INTO users (name, email) VALUES ('Asha Rao', 'asha@example.com') RETURNING id"
    )
    user_id = user_id["id"]
    a = (await Database.fetch_one(
        "INSERT INTO products (name, price, stock_qty) VALUES ('Linen Kurta', 500, 5) RETURNING id"
    ))["id"]
    b = (await Database.fetch_one(
        "INSERT INTO products (name, price, stock_qty) VALUES ('Silk Dupatta', 1200, 1) RETURNING id"
    ))["id"]
    await Database.execute(
        "INSERT INTO addresses (user_id, line1, city, country, is_default) "
        "VALUES ($1, '12 MG Road', 'Bengaluru', 'India', TRUE)",
        user_id
    )
    cart_id = (await Database.fetch_one(
        "INSERT INTO carts (user_id) VALUES ($1) RETURNING id", user_id
    ))["id"]
    await Database.execute(
        "INSERT INTO cart_items (cart_id, product_id, qty) VALUES ($1, $2, 2), ($1, $3, 1)",
        cart_id, a, b
    )
    return user_id, a, b


async def stock_of(product_id: int) -> int:
    row = await Database.fetch_one("SELECT stock_qty FROM products WHERE id = $1", product_id)
    return row["stock_qty"]


async def test_checkout_and_verify(pg_service):
    user_id, a, b = await seed_standard_cart()
    user = await pg_service.resolve_user(user_id)

    created = await pg_service.create_order(user)
    assert created.amount_minor == 220000

    payment = pg_service.gateway.simulate_payment(created.gateway_order_id)
    args = (payment["gateway_order_id"], payment["payment_id"], payment["signature"])
    first = await pg_service.verify_payment(*args)
    second = await pg_service.verify_payment(*args)
    await pg_service.notifications.drain()

    assert first.message == MESSAGE_PAID
    assert second.message == MESSAGE_ALREADY_PROCESSED
    assert await stock_of(a) == 3
    assert await stock_of(b) == 0
    assert len(pg_service.notifications.sender.sent) == 1

    order = await pg_service.get_order_for_user(user, created.internal_order_id)
    assert order.status == OrderStatus.PAID
    assert order.shipping_address == "12 MG Road\nBengaluru\nIndia"

    cart = await pg_service.carts.load_cart_with_items(user)
    assert cart.items == []

    trail = await pg_service.audit.get_by_correlation_id(order.correlation_id)
    assert [e.event_type for e in trail].count(AuditEventType.PAYMENT_CONFIRMED) == 1


async def test_concurrent_channels_apply_once(pg_service):
    user_id, a, b = await seed_standard_cart()
    user = await pg_service.resolve_user(user_id)
    created = await pg_service.create_order(user)

    payment = pg_service.gateway.simulate_payment(created.gateway_order_id)
    body = json.dumps({
        "event": "payment.captured",
        "payload": {"payment": {"entity": {
            "id": payment["payment_id"], "order_id": created.gateway_order_id,
        }}},
    }).encode()

    await asyncio.gather(
        pg_service.verify_payment(
            payment["gateway_order_id"], payment["payment_id"], payment["signature"]
        ),
        pg_service.handle_webhook(body, pg_service.gateway.sign_webhook(body)),
    )
    await pg_service.notifications.drain()

    assert await stock_of(a) == 3
    assert await stock_of(b) == 0
    assert len(pg_service.notifications.sender.sent) == 1
