"""
Payment Gateway Adapter
=======================
Thin adapter over the Razorpay Orders API and its HMAC signature schemes.

- create_remote_order: mints a gateway order before the customer pays
- verify_direct_signature: HMAC-SHA256("{order_id}|{payment_id}", key secret)
- verify_webhook_signature: HMAC-SHA256(raw body, webhook secret)
- Simulation mode: explicit, never in production; ids are minted locally and
  payments are signed with the same scheme so verification is always real

pip install httpx structlog
"""

import hashlib
import hmac
import secrets
import time
from typing import Any, Dict, Optional

import httpx
import structlog

from config import CheckoutSettings
from services.errors import GatewayError

SIMULATION_KEY_ID = "test_key"
SIMULATION_KEY_SECRET = "simulation_key_secret"
SIMULATION_WEBHOOK_SECRET = "simulation_webhook_secret"


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class PaymentGatewayAdapter:
    """
    Razorpay-compatible gateway client.

    Example:
        gateway = PaymentGatewayAdapter(settings)
        await gateway.initialize()
        gateway_order_id = await gateway.create_remote_order(220000, "INR", "order_42", {})
        # customer pays, client calls back with payment id + signature
        gateway.verify_direct_signature(gateway_order_id, payment_id, signature)
    """

    def __init__(self, settings: CheckoutSettings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = client
        self._owns_client = client is None
        self._logger = structlog.get_logger().bind(
            component="payment_gateway",
            mode=settings.gateway_mode,
        )

        if settings.simulation_mode:
            self._key_id = settings.gateway_key_id or SIMULATION_KEY_ID
            self._key_secret = settings.gateway_key_secret or SIMULATION_KEY_SECRET
            self._webhook_secret = settings.gateway_webhook_secret or SIMULATION_WEBHOOK_SECRET
        else:
            self._key_id = settings.gateway_key_id
            self._key_secret = settings.gateway_key_secret
            self._webhook_secret = settings.gateway_webhook_secret

    @property
    def test_mode(self) -> bool:
        return self.settings.simulation_mode

    @property
    def key_id(self) -> str:
        """Public key id handed to the checkout widget."""
        return self._key_id

    async def initialize(self) -> None:
        if self.test_mode:
            self._logger.warning("gateway_simulation_mode_enabled")
            return
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.gateway_api_url,
                timeout=self.settings.gateway_timeout_seconds,
                auth=(self._key_id, self._key_secret),
            )
        self._logger.info("gateway_client_initialized", api_url=self.settings.gateway_api_url)

    async def close(self) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # REMOTE ORDER CREATION
    # =========================================================================

    async def create_remote_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Create the gateway-side order and return its id.

        Runs before any local status mutation, so a timeout or error here
        leaves the local order PENDING.
        """
        log = self._logger.bind(receipt=receipt, amount_minor=amount_minor, currency=currency)

        if self.test_mode:
            gateway_order_id = f"test_{receipt}_{int(time.time() * 1000)}"
            log.info("gateway_order_simulated", gateway_order_id=gateway_order_id)
            return gateway_order_id

        if self._client is None:
            await self.initialize()

        try:
            response = await self._client.post(
                "/v1/orders",
                json={
                    "amount": amount_minor,
                    "currency": currency,
                    "receipt": receipt,
                    "notes": {k: str(v) for k, v in (notes or {}).items()},
                },
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            log.error("gateway_order_timeout", error=str(e))
            raise GatewayError("Payment gateway timed out") from e
        except httpx.HTTPStatusError as e:
            log.error("gateway_order_rejected",
                      status_code=e.response.status_code,
                      body=e.response.text[:500])
            raise GatewayError(
                "Payment gateway rejected the order",
                {"status_code": e.response.status_code},
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            log.error("gateway_order_failed", error=str(e), error_type=type(e).__name__)
            raise GatewayError("Payment gateway unavailable") from e

        gateway_order_id = data.get("id") if isinstance(data, dict) else None
        if not gateway_order_id:
            log.error("gateway_order_missing_id", response=data)
            raise GatewayError("Payment gateway returned no order id")

        log.info("gateway_order_created", gateway_order_id=gateway_order_id)
        return gateway_order_id

    # =========================================================================
    # SIGNATURES
    # =========================================================================

    def sign_payment(self, gateway_order_id: str, payment_id: str) -> str:
        return _hmac_hex(self._key_secret, f"{gateway_order_id}|{payment_id}".encode())

    def sign_webhook(self, raw_payload: bytes) -> str:
        return _hmac_hex(self._webhook_secret, raw_payload)

    def verify_direct_signature(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        """Constant-time check of the client callback signature; fails closed."""
        try:
            if not (self._key_secret and gateway_order_id and payment_id and signature):
                return False
            expected = self.sign_payment(gateway_order_id, payment_id)
            return hmac.compare_digest(expected.encode(), signature.encode())
        except Exception as e:
            self._logger.error("direct_signature_check_error", error=str(e))
            return False

    def verify_webhook_signature(self, raw_payload: bytes, signature: Optional[str]) -> bool:
        """Constant-time check of the webhook body signature; fails closed."""
        try:
            if not (self._webhook_secret and signature):
                return False
            expected = self.sign_webhook(raw_payload)
            return hmac.compare_digest(expected.encode(), signature.encode())
        except Exception as e:
            self._logger.error("webhook_signature_check_error", error=str(e))
            return False

    def simulate_payment(self, gateway_order_id: str) -> Dict[str, str]:
        """Stand in for the hosted checkout: mint a payment id and its signature."""
        if not self.test_mode:
            raise GatewayError("Payments can only be simulated in simulation mode")
        payment_id = f"pay_test_{secrets.token_hex(7)}"
        return {
            "gateway_order_id": gateway_order_id,
            "payment_id": payment_id,
            "signature": self.sign_payment(gateway_order_id, payment_id),
        }
