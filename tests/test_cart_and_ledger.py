from decimal import Decimal

import pytest

from schemas.checkout_models import (
    Address,
    AuditEventType,
    Order,
    OrderStatus,
    Product,
    IllegalTransitionError,
    to_minor_units,
    from_minor_units,
)
from services.errors import CheckoutValidationError, InsufficientStockError, OrderNotFoundError

from conftest import PRODUCT_A, PRODUCT_B, PRODUCT_RETIRED, PRODUCT_USD, OTHER_CUSTOMER_ID


# =============================================================================
# MONEY
# =============================================================================

@pytest.mark.parametrize("amount,currency,minor", [
    (Decimal("2200"), "INR", 220000),
    (Decimal("25.505"), "USD", 2551),
    (Decimal("1500"), "JPY", 1500),
    (Decimal("1.2345"), "KWD", 1235),
])
def test_to_minor_units_uses_currency_exponent(amount, currency, minor):
    assert to_minor_units(amount, currency) == minor


def test_from_minor_units_keeps_scale():
    assert from_minor_units(220000, "INR") == Decimal("2200.00")
    assert str(from_minor_units(1500, "JPY")) == "1500"


def test_address_format_skips_blank_parts():
    address = Address(
        id=1, user_id=1, line1="12 MG Road", line2="  ", city="Bengaluru",
        state="Karnataka", zip="560001", country="India", phone=None,
    )
    assert address.format() == "12 MG Road\nBengaluru, Karnataka - 560001\nIndia"


def test_terminal_orders_refuse_further_transitions():
    order = Order(user_id=1, total_minor=100, currency="INR")
    paid = order.mark_paid("pay_1", order.created_at)

    assert paid.is_terminal
    with pytest.raises(IllegalTransitionError):
        paid.mark_cancelled("late failure")
    with pytest.raises(IllegalTransitionError):
        order.mark_cancelled().mark_paid("pay_2", order.created_at)


def test_transition_fields_carry_only_the_settled_columns():
    order = Order(user_id=1, total_minor=100, currency="INR")

    paid = order.mark_paid("pay_1", order.created_at)
    assert paid.transition_fields() == {
        "status": OrderStatus.PAID,
        "payment_id": "pay_1",
        "paid_at": order.created_at,
        "failure_reason": None,
    }
    assert order.mark_cancelled("Card declined").transition_fields()["failure_reason"] == "Card declined"


# =============================================================================
# CART SNAPSHOT READER
# =============================================================================

async def test_empty_cart_rejected(harness):
    user = await harness.user()
    with pytest.raises(CheckoutValidationError, match="Cart is empty"):
        await harness.service.cart_reader.load_snapshot(user)


async def test_inactive_product_rejected(harness):
    user = await harness.user()
    harness.carts.add_item(user.id, PRODUCT_RETIRED, 1)
    with pytest.raises(CheckoutValidationError, match="'Old Stole' is no longer available"):
        await harness.service.cart_reader.load_snapshot(user)


async def test_insufficient_stock_names_product_and_available(harness):
    user = await harness.user()
    harness.carts.add_item(user.id, PRODUCT_B, 2)
    with pytest.raises(InsufficientStockError) as exc:
        await harness.service.cart_reader.load_snapshot(user)
    assert exc.value.message == "Insufficient stock for 'Silk Dupatta'. Available: 1"
    assert exc.value.code == "VALIDATION"
    assert exc.value.details["requested"] == 2


async def test_mixed_currency_cart_rejected(harness):
    user = await harness.user()
    harness.carts.add_item(user.id, PRODUCT_A, 1)
    harness.carts.add_item(user.id, PRODUCT_USD, 1)
    with pytest.raises(CheckoutValidationError) as exc:
        await harness.service.cart_reader.load_snapshot(user)
    assert exc.value.details == {"currencies": ["INR", "USD"]}


async def test_repeated_lines_for_one_product_share_its_stock(harness):
    user = await harness.user()
    harness.carts.add_item(user.id, PRODUCT_B, 1)
    harness.carts.add_item(user.id, PRODUCT_B, 1)
    with pytest.raises(InsufficientStockError) as exc:
        await harness.service.cart_reader.load_snapshot(user)
    assert exc.value.details["requested"] == 2


async def test_cart_line_for_deleted_product_rejected(harness):
    user = await harness.user()
    harness.carts.add_item(user.id, PRODUCT_A, 1)
    harness.carts.add_item(user.id, 99, 1)
    with pytest.raises(CheckoutValidationError) as exc:
        await harness.service.cart_reader.load_snapshot(user)
    assert exc.value.details == {"product_id": 99}


async def test_snapshot_reflects_current_stock(harness):
    user = await harness.user()
    harness.fill_standard_cart()
    cart = await harness.service.cart_reader.load_snapshot(user)
    assert [(i.product.id, i.quantity, i.product.stock_qty) for i in cart.items] == [
        (PRODUCT_A, 2, 5),
        (PRODUCT_B, 1, 1),
    ]


# =============================================================================
# ORDER LEDGER
# =============================================================================

async def test_pending_order_totals_and_snapshots(harness):
    user = await harness.user()
    harness.fill_standard_cart()
    cart = await harness.service.cart_reader.load_snapshot(user)
    address = await harness.addresses.find_default(user)

    order = await harness.service.ledger.create_pending_order(user, cart, address)

    assert order.id is not None
    assert order.status == OrderStatus.PENDING
    assert order.total_minor == 220000
    assert order.total_amount == Decimal("2200.00")
    assert order.currency == "INR"
    assert [(i.name, i.unit_price_minor, i.quantity, i.subtotal_minor) for i in order.items] == [
        ("Linen Kurta", 50000, 2, 100000),
        ("Silk Dupatta", 120000, 1, 120000),
    ]
    assert order.items[0].image_url == "https://cdn.example.com/kurta.jpg"
    assert order.shipping_address == (
        "12 MG Road, Flat 4B\nBengaluru, Karnataka - 560001\nIndia\nPhone: 9876543210"
    )
    assert order.customer_email == "asha@example.com"
    # the cart belongs to the customer until payment succeeds
    assert harness.carts.item_count(user.id) == 2

    created = [e for e in harness.audit.entries if e.event_type == AuditEventType.ORDER_CREATED]
    assert len(created) == 1 and created[0].correlation_id == order.correlation_id


async def test_cart_price_snapshot_wins_over_catalog_price(harness):
    user = await harness.user()
    harness.carts.add_item(user.id, PRODUCT_A, 1, unit_price_snapshot=Decimal("450"))
    cart = await harness.service.cart_reader.load_snapshot(user)

    order = await harness.service.ledger.create_pending_order(user, cart)

    assert order.total_minor == 45000
    assert order.shipping_address is None


async def test_catalog_edits_do_not_change_placed_orders(harness):
    user = await harness.user()
    harness.fill_standard_cart()
    cart = await harness.service.cart_reader.load_snapshot(user)
    order = await harness.service.ledger.create_pending_order(user, cart)

    harness.store.add_product(Product(
        id=PRODUCT_A, name="Linen Kurta v2", price=Decimal("999"), currency="INR", stock_qty=5,
    ))

    stored = await harness.service.ledger.get_order(order.id)
    assert stored.items[0].name == "Linen Kurta"
    assert stored.total_minor == 220000


async def test_lookup_by_unknown_gateway_id_is_not_found(harness):
    with pytest.raises(OrderNotFoundError):
        await harness.service.ledger.find_by_gateway_order_id("order_missing")


async def test_list_orders_scoped_to_user(harness):
    user = await harness.user()
    other = await harness.user(OTHER_CUSTOMER_ID)
    harness.carts.add_item(user.id, PRODUCT_A, 1)
    harness.carts.add_item(other.id, PRODUCT_A, 1)

    await harness.service.create_order(user)
    await harness.service.create_order(other)

    mine = await harness.service.list_orders(user)
    assert [o.user_id for o in mine] == [user.id]
