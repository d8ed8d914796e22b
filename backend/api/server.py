# api/server.py
# ============================================================================
# DUCK STOREFRONT v1.0 — FASTAPI SERVER
# ============================================================================
# Public checkout API (payment init, email and code submission, gateway
# notifications, catalog) plus the admin router. Domain errors are mapped
# to JSON bodies of the form {"error": ..., "code": ...}.
# ============================================================================

import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
import structlog
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from api.admin import router as admin_router
from api.deps import (
    ShopServices,
    admin_secret_matches,
    get_services,
    provided_admin_secret,
)
from config import ShopConfig, config, configure_logging
from pipeline.errors import ProductNotFound, ShopError, ValidationError
from services.notifications import INotificationSink

VERSION = "1.0.0"

logger = structlog.get_logger().bind(component="server")


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class CreatePaymentRequest(BaseModel):
    """Checkout request. ``items``/``method`` are accepted for older clients."""
    cart: Optional[Dict[str, Any]] = None
    items: Optional[Dict[str, Any]] = None
    method_slug: Optional[str] = None
    method: Optional[str] = None

    def resolved_cart(self) -> Dict[str, Any]:
        return self.cart if self.cart is not None else (self.items or {})

    def resolved_method(self) -> str:
        method = self.method_slug or self.method
        if not method or not method.strip():
            raise ValidationError("Payment method is required")
        return method.strip()


class CreatePaymentResponse(BaseModel):
    redirect_url: str
    url: str
    order_id: str
    amount: int


class SubmitEmailRequest(BaseModel):
    order_id: str = Field(..., min_length=1)
    email: str
    cart: Dict[str, Any]


class SubmitEmailResponse(BaseModel):
    order_id: str
    email: str
    amount: int
    notified: bool


class SubmitCodeRequest(BaseModel):
    order_id: str = Field(..., min_length=1)
    email: str
    code: str = Field(..., max_length=64)


class SubmitCodeResponse(BaseModel):
    order_id: str
    status: str = "pending"
    notified: bool


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    payment_configured: bool
    relay_configured: bool
    durable: bool


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    cfg: Optional[ShopConfig] = None,
    gateway_transport: Optional[httpx.AsyncBaseTransport] = None,
    notifier: Optional[INotificationSink] = None,
) -> FastAPI:
    """
    Build the application.

    ``gateway_transport`` and ``notifier`` replace the real network
    collaborators (tests pass an httpx.MockTransport and a recording sink).
    """
    cfg = cfg or config
    started_at = time.time()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        logger.info("storefront_starting", version=VERSION, env=cfg.ENV)
        app.state.services = await ShopServices.start(
            cfg,
            gateway_transport=gateway_transport,
            notifier=notifier,
        )

        yield

        logger.info("storefront_stopping")
        await app.state.services.close()

    app = FastAPI(
        title="Duck Storefront",
        description="Order lifecycle and payment gateway backend",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.CORS_ORIGINS,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ========================================================================
    # MIDDLEWARE & ERROR HANDLERS
    # ========================================================================

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing header."""
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    @app.exception_handler(ShopError)
    async def shop_error_handler(request: Request, exc: ShopError):
        log = logger.bind(path=request.url.path, code=exc.code)
        if exc.http_status >= 500:
            log.error("request_failed", error=exc.message)
        else:
            log.info("request_rejected", error=exc.message)
        return JSONResponse(status_code=exc.http_status, content=jsonable_encoder(exc.to_dict()))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error = ValidationError("Invalid request body", details={"errors": jsonable_encoder(exc.errors())})
        return JSONResponse(status_code=error.http_status, content=error.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("unhandled_error", path=request.url.path, error=str(exc), exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error", "code": "internal_error"})

    # ========================================================================
    # ENDPOINTS
    # ========================================================================

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return "OK"

    @app.get("/health", response_model=HealthResponse)
    async def health_check(services: ShopServices = Depends(get_services)):
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=round(time.time() - started_at, 3),
            payment_configured=services.config.payment_configured,
            relay_configured=bool(services.config.NOTIFY_URL),
            durable=bool(services.config.DATA_DIR),
        )

    @app.post("/create-payment", response_model=CreatePaymentResponse)
    async def create_payment(request: CreatePaymentRequest, services: ShopServices = Depends(get_services)):
        result = await services.gateway.initiate_payment(request.resolved_cart(), request.resolved_method())
        return CreatePaymentResponse(
            redirect_url=result.redirect_url,
            url=result.redirect_url,
            order_id=result.order_id,
            amount=result.amount,
        )

    @app.post("/submit-email", response_model=SubmitEmailResponse)
    async def submit_email(request: SubmitEmailRequest, services: ShopServices = Depends(get_services)):
        order, notified = await services.engine.submit_email(request.order_id, request.email, request.cart)
        return SubmitEmailResponse(
            order_id=order.id,
            email=order.email,
            amount=order.amount,
            notified=notified,
        )

    @app.post("/submit-code", response_model=SubmitCodeResponse)
    async def submit_code(request: SubmitCodeRequest, services: ShopServices = Depends(get_services)):
        order, notified = await services.engine.submit_code(request.order_id, request.email, request.code)
        return SubmitCodeResponse(order_id=order.id, notified=notified)

    @app.get("/orders/{order_id}")
    async def get_order(
        order_id: str,
        services: ShopServices = Depends(get_services),
        secret: Optional[str] = Depends(provided_admin_secret),
    ):
        order = await services.engine.get_order(order_id)
        return order.public_view(include_admin=admin_secret_matches(services.config, secret))

    async def gateway_notify(request: Request, services: ShopServices = Depends(get_services)):
        try:
            payload = await request.json()
        except ValueError:
            raise ValidationError("Webhook body must be JSON")
        result = await services.gateway.handle_webhook(payload)
        return {"received": True, "status": result.status}

    app.add_api_route("/gateway/notify", gateway_notify, methods=["POST"])
    app.add_api_route("/bilee-notify", gateway_notify, methods=["POST"], include_in_schema=False)

    @app.get("/products")
    async def list_products(services: ShopServices = Depends(get_services)):
        return [p.model_dump() for p in services.catalog.list_products()]

    @app.get("/products/{product_id}")
    async def get_product(product_id: str, services: ShopServices = Depends(get_services)):
        product = services.catalog.get_product(product_id)
        if not product.active:
            raise ProductNotFound(product_id)
        return product.model_dump()

    app.include_router(admin_router)
    return app


# ============================================================================
# APP & MAIN
# ============================================================================

# `uvicorn api.server:app`
configure_logging(config)
app = create_app(config)


if __name__ == "__main__":
    uvicorn.run(
        app,
        host=config.HOST,
        port=config.PORT,
        log_level="debug" if config.debug else "info",
    )
