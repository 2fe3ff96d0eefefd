# api/server.py
# ============================================================================
# STOREFRONT CHECKOUT CORE v1.0 — FASTAPI SERVER
# ============================================================================
# Checkout, payment verification and gateway webhook endpoints
# ============================================================================

import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import uvicorn

from config import CheckoutSettings, configure_logging
from pipeline.checkout_service import CheckoutService
from schemas.checkout_models import (
    CreateOrderRequest,
    CreateOrderResult,
    ErrorResponse,
    OrderView,
    User,
    VerifyPaymentRequest,
    VerifyPaymentResult,
    WebhookAck,
)
from services.collaborators import (
    InMemoryAddressProvider,
    InMemoryCartProvider,
    InMemoryUserDirectory,
    LoggingNotificationSender,
)
from services.errors import CheckoutError, CheckoutValidationError, GatewayError
from storage.checkout_store import InMemoryAuditLog, InMemoryCheckoutStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)
logger = logging.getLogger("Storefront.Server")

SIGNATURE_HEADER = "X-Razorpay-Signature"
VERSION = "1.0.0"


# ============================================================================
# SERVICE WIRING
# ============================================================================

def build_checkout_service(settings: CheckoutSettings) -> CheckoutService:
    """Assemble the checkout core for the configured persistence backend."""
    if settings.store_backend == "postgres":
        from database import (
            PostgresAddressProvider,
            PostgresAuditLog,
            PostgresCartProvider,
            PostgresCheckoutStore,
            PostgresUserDirectory,
        )
        return CheckoutService(
            settings=settings,
            store=PostgresCheckoutStore(),
            carts=PostgresCartProvider(),
            addresses=PostgresAddressProvider(),
            users=PostgresUserDirectory(),
            notification_sender=LoggingNotificationSender(),
            audit_log=PostgresAuditLog(),
        )

    store = InMemoryCheckoutStore()
    return CheckoutService(
        settings=settings,
        store=store,
        carts=InMemoryCartProvider(store),
        addresses=InMemoryAddressProvider(),
        users=InMemoryUserDirectory(),
        notification_sender=LoggingNotificationSender(),
        audit_log=InMemoryAuditLog(),
    )


# ============================================================================
# APP FACTORY
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime_seconds: float
    gateway_mode: str
    store_backend: str
    pending_notifications: int


class SimulatedPayment(BaseModel):
    gateway_order_id: str
    payment_id: str
    signature: str


def create_app(service: Optional[CheckoutService] = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        configure_logging()
        checkout = service
        if checkout is None:
            settings = CheckoutSettings.from_env()
            if settings.store_backend == "postgres":
                from database import init_database
                await init_database(settings)
            checkout = build_checkout_service(settings)

        await checkout.startup()
        app.state.checkout = checkout
        app.state.started_at = datetime.now(timezone.utc)
        logger.info(
            f"Checkout core started | gateway={checkout.settings.gateway_mode} | "
            f"store={checkout.settings.store_backend}"
        )

        yield

        logger.info("Shutting down checkout core...")
        await checkout.shutdown()
        if checkout.settings.store_backend == "postgres":
            from database import close_database
            await close_database()

    app = FastAPI(
        title="Storefront Checkout Core",
        description="Order creation, payment verification and gateway webhooks",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:5173").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing header."""
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        if isinstance(exc, GatewayError):
            logger.error(f"Gateway failure on {request.url.path}: {exc.message}")
        body = ErrorResponse(code=exc.code, message=exc.message, details=exc.details)
        return JSONResponse(status_code=exc.http_status, content=body.model_dump(mode="json"))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        body = ErrorResponse(
            code=CheckoutValidationError.code,
            message="Invalid request",
            details={"errors": [
                {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
                for err in exc.errors()
            ]},
        )
        return JSONResponse(status_code=CheckoutValidationError.http_status,
                            content=body.model_dump(mode="json"))

    register_routes(app)
    return app


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_checkout(request: Request) -> CheckoutService:
    return request.app.state.checkout


async def get_current_user(
    x_user_id: Optional[int] = Header(default=None),
    checkout: CheckoutService = Depends(get_checkout),
) -> User:
    """Principal resolved from the auth gateway's X-User-Id header."""
    return await checkout.resolve_user(x_user_id)


# ============================================================================
# ENDPOINTS
# ============================================================================

def register_routes(app: FastAPI) -> None:

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request, checkout: CheckoutService = Depends(get_checkout)):
        """Health check endpoint."""
        uptime = (datetime.now(timezone.utc) - request.app.state.started_at).total_seconds()
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=uptime,
            gateway_mode=checkout.settings.gateway_mode,
            store_backend=checkout.settings.store_backend,
            pending_notifications=checkout.notifications.pending,
        )

    @app.post("/checkout/create-order", response_model=CreateOrderResult)
    async def create_order(
        body: Optional[CreateOrderRequest] = None,
        user: User = Depends(get_current_user),
        checkout: CheckoutService = Depends(get_checkout),
    ):
        """Create a PENDING order from the cart and its gateway order."""
        address_id = body.address_id if body else None
        return await checkout.create_order(user, address_id)

    @app.post("/checkout/verify-payment", response_model=VerifyPaymentResult)
    async def verify_payment(
        request: VerifyPaymentRequest,
        user: User = Depends(get_current_user),
        checkout: CheckoutService = Depends(get_checkout),
    ):
        """Client callback after the customer completes payment at the gateway."""
        return await checkout.verify_payment(
            request.gateway_order_id,
            request.payment_id,
            request.signature,
        )

    @app.post("/checkout/webhook", response_model=WebhookAck)
    async def gateway_webhook(request: Request, checkout: CheckoutService = Depends(get_checkout)):
        """
        Gateway server-to-server push.

        Answers 2xx for every business outcome once the signature checks out;
        only a bad signature is rejected.
        """
        raw_body = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER)
        return await checkout.handle_webhook(raw_body, signature)

    @app.post("/checkout/simulate-payment/{gateway_order_id}", response_model=SimulatedPayment)
    async def simulate_payment(
        gateway_order_id: str,
        user: User = Depends(get_current_user),
        checkout: CheckoutService = Depends(get_checkout),
    ):
        """Simulation mode only: stands in for the hosted payment page."""
        if not checkout.gateway.test_mode:
            raise HTTPException(status_code=404, detail="Not found")
        order = await checkout.ledger.find_by_gateway_order_id(gateway_order_id)
        if order.user_id != user.id:
            raise HTTPException(status_code=404, detail="Not found")
        return SimulatedPayment(**checkout.gateway.simulate_payment(gateway_order_id))

    @app.get("/orders", response_model=List[OrderView])
    async def list_orders(
        user: User = Depends(get_current_user),
        checkout: CheckoutService = Depends(get_checkout),
    ):
        orders = await checkout.list_orders(user)
        return [OrderView.from_order(o) for o in orders]

    @app.get("/orders/{order_id}", response_model=OrderView)
    async def get_order(
        order_id: int,
        user: User = Depends(get_current_user),
        checkout: CheckoutService = Depends(get_checkout),
    ):
        order = await checkout.get_order_for_user(user, order_id)
        return OrderView.from_order(order)


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("APP_ENV", "development") == "development",
        log_level="info"
    )
