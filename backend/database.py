"""
Database Module - The Black Box
================================
PostgreSQL persistence for the checkout core.

This module provides:
- AsyncPG connection pool with idempotent migrations
- The Black Box (system_events) for the audit trail
- PostgresCheckoutStore: orders, order items and product stock, with the
  payment transition expressed as a conditional UPDATE
- PostgreSQL-backed cart, address and user collaborators

pip install asyncpg
"""

import json
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional
from uuid import uuid4

import asyncpg
import structlog

from config import CheckoutSettings
from schemas.checkout_models import (
    Address,
    AuditEventType,
    AuditLogEntry,
    Cart,
    CartItem,
    Order,
    OrderItem,
    OrderStatus,
    Product,
    User,
    utcnow,
)
from services.collaborators import IAddressProvider, ICartProvider, IUserDirectory
from storage.checkout_store import IAuditLog, ICheckoutStore, ICheckoutTransaction, StockChange

# Configure logger
logger = structlog.get_logger().bind(component="database")


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    _pool: Optional[asyncpg.Pool] = None
    _initialized: bool = False
    _settings: Optional[CheckoutSettings] = None

    @classmethod
    async def initialize(cls, settings: Optional[CheckoutSettings] = None):
        """Initialize the connection pool"""
        if cls._initialized:
            return

        cls._settings = settings or cls._settings or CheckoutSettings.from_env()
        try:
            cls._pool = await asyncpg.create_pool(
                cls._settings.database_url,
                min_size=cls._settings.db_min_pool_size,
                max_size=cls._settings.db_max_pool_size,
            )
            cls._initialized = True
            logger.info("database_pool_initialized")

            await cls._run_migrations()

        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise

    @classmethod
    async def close(cls):
        """Close the connection pool"""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            cls._initialized = False
            logger.info("database_pool_closed")

    @classmethod
    @asynccontextmanager
    async def acquire(cls):
        """Acquire a connection from the pool"""
        if not cls._pool:
            await cls.initialize()

        async with cls._pool.acquire() as conn:
            yield conn

    @classmethod
    async def execute(cls, query: str, *args) -> str:
        async with cls.acquire() as conn:
            return await conn.execute(query, *args)

    @classmethod
    async def fetch_one(cls, query: str, *args) -> Optional[asyncpg.Record]:
        async with cls.acquire() as conn:
            return await conn.fetchrow(query, *args)

    @classmethod
    async def fetch_all(cls, query: str, *args) -> List[asyncpg.Record]:
        async with cls.acquire() as conn:
            return await conn.fetch(query, *args)

    @classmethod
    async def _run_migrations(cls):
        """Run database migrations"""
        migrations = [
            """
            CREATE TABLE IF NOT EXISTS users (
                id BIGSERIAL PRIMARY KEY,
                name VARCHAR(255),
                email VARCHAR(255),
                mobile_number VARCHAR(32),
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS products (
                id BIGSERIAL PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                price NUMERIC(12, 2) NOT NULL,
                currency VARCHAR(3) NOT NULL DEFAULT 'INR',
                stock_qty INTEGER NOT NULL DEFAULT 0 CHECK (stock_qty >= 0),
                active BOOLEAN NOT NULL DEFAULT TRUE,
                images TEXT[] DEFAULT '{}',
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS addresses (
                id BIGSERIAL PRIMARY KEY,
                user_id BIGINT NOT NULL REFERENCES users(id),
                line1 TEXT NOT NULL,
                line2 TEXT,
                city VARCHAR(120) NOT NULL,
                state VARCHAR(120),
                zip VARCHAR(20),
                country VARCHAR(120) NOT NULL,
                phone VARCHAR(32),
                is_default BOOLEAN NOT NULL DEFAULT FALSE
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS carts (
                id BIGSERIAL PRIMARY KEY,
                user_id BIGINT NOT NULL UNIQUE REFERENCES users(id)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS cart_items (
                id BIGSERIAL PRIMARY KEY,
                cart_id BIGINT NOT NULL REFERENCES carts(id) ON DELETE CASCADE,
                product_id BIGINT NOT NULL REFERENCES products(id),
                qty INTEGER NOT NULL CHECK (qty > 0),
                unit_price_snapshot NUMERIC(12, 2)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS orders (
                id BIGSERIAL PRIMARY KEY,
                user_id BIGINT NOT NULL,
                correlation_id UUID NOT NULL,
                total_minor BIGINT NOT NULL,
                currency VARCHAR(3) NOT NULL,
                status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
                gateway_order_id VARCHAR(255) UNIQUE,
                payment_id VARCHAR(255),
                paid_at TIMESTAMPTZ,
                failure_reason TEXT,
                shipping_address TEXT,
                address_id BIGINT,
                customer_email VARCHAR(255),
                customer_phone VARCHAR(32),
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS order_items (
                id BIGSERIAL PRIMARY KEY,
                order_id BIGINT NOT NULL REFERENCES orders(id),
                position INTEGER NOT NULL,
                product_id BIGINT NOT NULL,
                name_snapshot VARCHAR(255) NOT NULL,
                price_snapshot NUMERIC(12, 2) NOT NULL,
                price_minor BIGINT NOT NULL,
                qty INTEGER NOT NULL,
                image_url TEXT
            )
            """,

            # THE BLACK BOX: Unified event log
            """
            CREATE TABLE IF NOT EXISTS system_events (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                correlation_id UUID,
                timestamp TIMESTAMPTZ DEFAULT NOW(),
                event_type VARCHAR(50) NOT NULL,
                actor VARCHAR(50),
                payload JSONB NOT NULL DEFAULT '{}',
                severity VARCHAR(10) DEFAULT 'INFO'
            )
            """,

            "CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id)",
            "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)",
            "CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items(order_id)",
            "CREATE INDEX IF NOT EXISTS idx_events_correlation ON system_events(correlation_id)",
            "CREATE INDEX IF NOT EXISTS idx_events_type ON system_events(event_type)",
        ]

        async with cls.acquire() as conn:
            for migration in migrations:
                try:
                    await conn.execute(migration)
                except asyncpg.PostgresError as e:
                    if "already exists" not in str(e):
                        logger.warning("migration_warning", error=str(e))

        logger.info("database_migrations_complete")


# =============================================================================
# THE BLACK BOX: Event Logging
# =============================================================================

async def log_event(
    correlation_id: Optional[str],
    event_type: str,
    payload: Dict[str, Any],
    actor: Optional[str] = None,
    severity: str = "INFO"
) -> str:
    """
    Unified event logging for the checkout core.

    Every payment-relevant state change and every rejected signature flows
    through here, creating a complete audit trail.

    Args:
        correlation_id: Correlation id of the order the event belongs to
        event_type: One of the AuditEventType values
        payload: Event-specific data
        actor: client, webhook or system
        severity: DEBUG, INFO, WARN, ERROR, CRITICAL

    Returns:
        Event ID
    """
    event_id = str(uuid4())

    level = "warning" if severity.upper() == "WARN" else severity.lower()
    log_method = getattr(logger, level, logger.info)
    log_method(
        "audit_event",
        event_id=event_id[:8],
        event_type=event_type,
        correlation_id=correlation_id,
        actor=actor,
    )

    try:
        await Database.execute(
            """
            INSERT INTO system_events
            (id, correlation_id, timestamp, event_type, actor, payload, severity)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            event_id,
            correlation_id,
            utcnow(),
            event_type,
            actor,
            json.dumps(payload),
            severity
        )
    except Exception as e:
        logger.error("audit_event_persist_failed", error=str(e), event_type=event_type)

    return event_id


_SEVERITY = {
    AuditEventType.SIGNATURE_INVALID: "WARN",
    AuditEventType.STOCK_OVERSOLD: "WARN",
    AuditEventType.STOCK_SHORTFALL: "ERROR",
}


class PostgresAuditLog(IAuditLog):
    """Audit log persisted to the Black Box."""

    async def append(self, entry: AuditLogEntry) -> None:
        await log_event(
            correlation_id=entry.correlation_id,
            event_type=entry.event_type.value,
            payload=entry.model_dump(mode="json"),
            actor=entry.actor,
            severity=_SEVERITY.get(entry.event_type, "INFO"),
        )

    async def get_by_correlation_id(self, correlation_id: str) -> List[AuditLogEntry]:
        rows = await Database.fetch_all(
            """
            SELECT payload FROM system_events
            WHERE correlation_id = $1
            ORDER BY timestamp ASC
            """,
            correlation_id
        )
        entries = []
        for row in rows:
            payload = row["payload"]
            if isinstance(payload, str):
                payload = json.loads(payload)
            entries.append(AuditLogEntry.model_validate(payload))
        return entries


# =============================================================================
# ROW MAPPING
# =============================================================================

_ORDER_COLUMNS = """
    id, user_id, correlation_id::text AS correlation_id, total_minor, currency,
    status, gateway_order_id, payment_id, paid_at, failure_reason,
    shipping_address, address_id, customer_email, customer_phone,
    created_at, updated_at
"""

# Columns a status transition is allowed to touch
_MUTABLE_COLUMNS = ("status", "gateway_order_id", "payment_id", "paid_at", "failure_reason")


def _row_to_product(row: asyncpg.Record) -> Product:
    return Product(
        id=row["id"],
        name=row["name"],
        price=Decimal(row["price"]),
        currency=row["currency"],
        stock_qty=row["stock_qty"],
        active=row["active"],
        images=list(row["images"] or []),
    )


async def _load_order(conn: asyncpg.Connection, row: Optional[asyncpg.Record]) -> Optional[Order]:
    if row is None:
        return None
    item_rows = await conn.fetch(
        """
        SELECT id, product_id, name_snapshot, price_snapshot, price_minor, qty, image_url
        FROM order_items WHERE order_id = $1 ORDER BY position
        """,
        row["id"]
    )
    data = dict(row)
    data["status"] = OrderStatus(data["status"])
    data["items"] = [
        OrderItem(
            id=r["id"],
            product_id=r["product_id"],
            name=r["name_snapshot"],
            unit_price=Decimal(r["price_snapshot"]),
            unit_price_minor=r["price_minor"],
            quantity=r["qty"],
            image_url=r["image_url"],
        )
        for r in item_rows
    ]
    return Order(**data)


# =============================================================================
# CHECKOUT STORE
# =============================================================================

class _PostgresTransaction(ICheckoutTransaction):

    def __init__(self, conn: asyncpg.Connection, order_id: int):
        self._conn = conn
        self._order_id = order_id

    async def get_order(self) -> Optional[Order]:
        row = await self._conn.fetchrow(
            f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = $1", self._order_id
        )
        return await _load_order(self._conn, row)

    async def conditional_update(self, expected_status: OrderStatus, changes: dict) -> Optional[Order]:
        set_clauses = ["updated_at = NOW()"]
        params: List[Any] = []
        param_num = 1

        for key, value in changes.items():
            if key not in _MUTABLE_COLUMNS:
                raise ValueError(f"Column {key} cannot be changed by a transition")
            set_clauses.append(f"{key} = ${param_num}")
            params.append(value.value if isinstance(value, OrderStatus) else value)
            param_num += 1

        params.extend([self._order_id, expected_status.value])
        row = await self._conn.fetchrow(
            f"""
            UPDATE orders
            SET {', '.join(set_clauses)}
            WHERE id = ${param_num} AND status = ${param_num + 1}
            RETURNING {_ORDER_COLUMNS}
            """,
            *params
        )
        return await _load_order(self._conn, row)

    async def decrement_stock(self, product_id: int, quantity: int, allow_shortfall: bool) -> StockChange:
        row = await self._conn.fetchrow(
            "SELECT stock_qty FROM products WHERE id = $1 FOR UPDATE", product_id
        )
        if row is None:
            return StockChange(product_id=product_id, requested=quantity)

        previous = row["stock_qty"]
        if previous < quantity and not allow_shortfall:
            return StockChange(
                product_id=product_id, requested=quantity, previous=previous, remaining=previous
            )

        remaining = await self._conn.fetchval(
            """
            UPDATE products
            SET stock_qty = GREATEST(stock_qty - $2, 0), updated_at = NOW()
            WHERE id = $1
            RETURNING stock_qty
            """,
            product_id,
            quantity
        )
        return StockChange(
            product_id=product_id,
            requested=quantity,
            previous=previous,
            remaining=remaining,
            applied=True,
        )


class PostgresCheckoutStore(ICheckoutStore):

    async def insert_order(self, order: Order) -> Order:
        async with Database.acquire() as conn:
            async with conn.transaction():
                order_id = await conn.fetchval(
                    """
                    INSERT INTO orders
                    (user_id, correlation_id, total_minor, currency, status,
                     shipping_address, address_id, customer_email, customer_phone,
                     created_at, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $10)
                    RETURNING id
                    """,
                    order.user_id,
                    order.correlation_id,
                    order.total_minor,
                    order.currency,
                    order.status.value,
                    order.shipping_address,
                    order.address_id,
                    order.customer_email,
                    order.customer_phone,
                    order.created_at,
                )
                for position, item in enumerate(order.items):
                    await conn.execute(
                        """
                        INSERT INTO order_items
                        (order_id, position, product_id, name_snapshot, price_snapshot,
                         price_minor, qty, image_url)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                        """,
                        order_id,
                        position,
                        item.product_id,
                        item.name,
                        item.unit_price,
                        item.unit_price_minor,
                        item.quantity,
                        item.image_url,
                    )
                row = await conn.fetchrow(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = $1", order_id)
                return await _load_order(conn, row)

    async def set_gateway_order_id(self, order_id: int, gateway_order_id: str) -> Optional[Order]:
        async with self.transaction(order_id) as tx:
            return await tx.conditional_update(
                OrderStatus.PENDING, {"gateway_order_id": gateway_order_id}
            )

    async def get_order(self, order_id: int) -> Optional[Order]:
        async with Database.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = $1", order_id)
            return await _load_order(conn, row)

    async def get_order_by_gateway_id(self, gateway_order_id: str) -> Optional[Order]:
        async with Database.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_ORDER_COLUMNS} FROM orders WHERE gateway_order_id = $1",
                gateway_order_id
            )
            return await _load_order(conn, row)

    async def list_orders_for_user(self, user_id: int) -> List[Order]:
        async with Database.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_ORDER_COLUMNS} FROM orders WHERE user_id = $1 ORDER BY created_at DESC",
                user_id
            )
            return [await _load_order(conn, row) for row in rows]

    async def get_product(self, product_id: int) -> Optional[Product]:
        row = await Database.fetch_one("SELECT * FROM products WHERE id = $1", product_id)
        return _row_to_product(row) if row else None

    @asynccontextmanager
    async def transaction(self, order_id: int) -> AsyncIterator[ICheckoutTransaction]:
        async with Database.acquire() as conn:
            async with conn.transaction():
                yield _PostgresTransaction(conn, order_id)


# =============================================================================
# COLLABORATORS
# =============================================================================

class PostgresCartProvider(ICartProvider):

    async def load_cart_with_items(self, user: User) -> Optional[Cart]:
        async with Database.acquire() as conn:
            cart_id = await conn.fetchval("SELECT id FROM carts WHERE user_id = $1", user.id)
            if cart_id is None:
                return None
            rows = await conn.fetch(
                """
                SELECT ci.qty, ci.unit_price_snapshot, p.*
                FROM cart_items ci JOIN products p ON p.id = ci.product_id
                WHERE ci.cart_id = $1
                ORDER BY ci.id
                """,
                cart_id
            )
        items = [
            CartItem(
                product=_row_to_product(row),
                quantity=row["qty"],
                unit_price_snapshot=row["unit_price_snapshot"],
            )
            for row in rows
        ]
        return Cart(id=cart_id, user_id=user.id, items=items)

    async def clear_cart(self, user_id: int) -> None:
        await Database.execute(
            """
            DELETE FROM cart_items
            WHERE cart_id IN (SELECT id FROM carts WHERE user_id = $1)
            """,
            user_id
        )


class PostgresAddressProvider(IAddressProvider):

    async def find_by_id(self, user: User, address_id: int) -> Optional[Address]:
        row = await Database.fetch_one(
            "SELECT * FROM addresses WHERE id = $1 AND user_id = $2", address_id, user.id
        )
        return Address(**dict(row)) if row else None

    async def find_default(self, user: User) -> Optional[Address]:
        row = await Database.fetch_one(
            "SELECT * FROM addresses WHERE user_id = $1 AND is_default LIMIT 1", user.id
        )
        return Address(**dict(row)) if row else None


class PostgresUserDirectory(IUserDirectory):

    async def get(self, user_id: int) -> Optional[User]:
        row = await Database.fetch_one(
            "SELECT id, name, email, mobile_number FROM users WHERE id = $1", user_id
        )
        return User(**dict(row)) if row else None


# =============================================================================
# INITIALIZATION
# =============================================================================

async def init_database(settings: Optional[CheckoutSettings] = None):
    """Initialize database on app startup"""
    await Database.initialize(settings)


async def close_database():
    """Close database on app shutdown"""
    await Database.close()
