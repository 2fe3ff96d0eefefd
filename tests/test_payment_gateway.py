import hashlib
import hmac
import json

import httpx
import pytest

from config import CheckoutSettings
from pipeline.payment_gateway import SIMULATION_KEY_ID, PaymentGatewayAdapter
from services.errors import GatewayError


def live_settings() -> CheckoutSettings:
    return CheckoutSettings(
        app_env="production",
        gateway_mode="live",
        gateway_key_id="rzp_live_abc",
        gateway_key_secret="key-secret",
        gateway_webhook_secret="hook-secret",
    )


def live_gateway(handler) -> PaymentGatewayAdapter:
    settings = live_settings()
    client = httpx.AsyncClient(
        base_url=settings.gateway_api_url,
        transport=httpx.MockTransport(handler),
    )
    return PaymentGatewayAdapter(settings, client=client)


# =============================================================================
# SIGNATURES
# =============================================================================

def test_direct_signature_is_hmac_of_order_and_payment_id():
    gateway = PaymentGatewayAdapter(live_settings())
    expected = hmac.new(b"key-secret", b"order_X|pay_Y", hashlib.sha256).hexdigest()

    assert gateway.sign_payment("order_X", "pay_Y") == expected
    assert gateway.verify_direct_signature("order_X", "pay_Y", expected)


def test_direct_signature_rejects_tampering():
    gateway = PaymentGatewayAdapter(live_settings())
    good = gateway.sign_payment("order_X", "pay_Y")

    assert not gateway.verify_direct_signature("order_X", "pay_Z", good)
    assert not gateway.verify_direct_signature("order_W", "pay_Y", good)
    assert not gateway.verify_direct_signature("order_X", "pay_Y", good[:-1] + "0")
    assert not gateway.verify_direct_signature("order_X", "pay_Y", good.upper())


@pytest.mark.parametrize("signature", ["", None])
def test_direct_signature_fails_closed_on_missing_input(signature):
    gateway = PaymentGatewayAdapter(live_settings())
    assert not gateway.verify_direct_signature("order_X", "pay_Y", signature)


def test_direct_signature_fails_closed_without_secret():
    settings = live_settings()
    settings.gateway_key_secret = ""
    gateway = PaymentGatewayAdapter(settings)
    assert not gateway.verify_direct_signature("order_X", "pay_Y", "anything")


def test_webhook_signature_covers_exact_body():
    gateway = PaymentGatewayAdapter(live_settings())
    body = b'{"event":"payment.captured"}'
    signature = hmac.new(b"hook-secret", body, hashlib.sha256).hexdigest()

    assert gateway.verify_webhook_signature(body, signature)
    assert not gateway.verify_webhook_signature(body + b" ", signature)
    assert not gateway.verify_webhook_signature(body, None)


def test_webhook_and_payment_secrets_are_distinct():
    gateway = PaymentGatewayAdapter(live_settings())
    body = b"order_X|pay_Y"
    assert not gateway.verify_webhook_signature(body, gateway.sign_payment("order_X", "pay_Y"))


# =============================================================================
# SIMULATION MODE
# =============================================================================

async def test_simulated_order_id_embeds_receipt():
    gateway = PaymentGatewayAdapter(CheckoutSettings(gateway_mode="simulation"))
    await gateway.initialize()

    gateway_order_id = await gateway.create_remote_order(220000, "INR", "order_7")

    assert gateway.test_mode
    assert gateway.key_id == SIMULATION_KEY_ID
    assert gateway_order_id.startswith("test_order_7_")


def test_simulated_payment_verifies():
    gateway = PaymentGatewayAdapter(CheckoutSettings(gateway_mode="simulation"))
    payment = gateway.simulate_payment("test_order_7_1")

    assert payment["payment_id"].startswith("pay_test_")
    assert gateway.verify_direct_signature(
        payment["gateway_order_id"], payment["payment_id"], payment["signature"]
    )


def test_simulate_payment_refused_in_live_mode():
    gateway = PaymentGatewayAdapter(live_settings())
    with pytest.raises(GatewayError):
        gateway.simulate_payment("order_X")


# =============================================================================
# LIVE ORDER CREATION
# =============================================================================

async def test_live_create_order_posts_minor_units():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "order_Live123", "status": "created"})

    gateway = live_gateway(handler)
    gateway_order_id = await gateway.create_remote_order(
        220000, "INR", "order_1", {"order_id": 1, "user_id": 9}
    )

    assert gateway_order_id == "order_Live123"
    assert seen["path"] == "/v1/orders"
    assert seen["body"] == {
        "amount": 220000,
        "currency": "INR",
        "receipt": "order_1",
        "notes": {"order_id": "1", "user_id": "9"},
    }


async def test_live_create_order_maps_rejection_to_gateway_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"description": "bad amount"}})

    gateway = live_gateway(handler)
    with pytest.raises(GatewayError) as exc:
        await gateway.create_remote_order(0, "INR", "order_1")
    assert exc.value.details == {"status_code": 400}


async def test_live_create_order_maps_timeout_to_gateway_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("gateway slow", request=request)

    gateway = live_gateway(handler)
    with pytest.raises(GatewayError, match="timed out"):
        await gateway.create_remote_order(100, "INR", "order_1")


async def test_live_create_order_requires_id_in_response():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "created"})

    gateway = live_gateway(handler)
    with pytest.raises(GatewayError, match="no order id"):
        await gateway.create_remote_order(100, "INR", "order_1")
