# api/deps.py
# ============================================================================
# DUCK STOREFRONT v1.0 — SERVICE WIRING & DEPENDENCIES
# ============================================================================
# Builds the object graph the routes share (catalog, order store, notifier,
# lifecycle engine, gateway adapter) and exposes it to FastAPI through
# request dependencies.
# ============================================================================

import hmac
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog
from fastapi import Header, Query, Request

from config import ShopConfig
from pipeline.errors import AdminAuthRequired
from pipeline.lifecycle import OrderLifecycleEngine
from pipeline.payment_gateway import GatewayConfig, PaymentGatewayAdapter
from services.catalog import CatalogService
from services.notifications import INotificationSink, create_notification_sink
from storage.order_store import IOrderStore, create_order_store

logger = structlog.get_logger().bind(component="server")


@dataclass
class ShopServices:
    """Everything a request handler may need, built once per process."""
    config: ShopConfig
    catalog: CatalogService
    store: IOrderStore
    notifier: INotificationSink
    engine: OrderLifecycleEngine
    gateway: PaymentGatewayAdapter

    @classmethod
    async def start(
        cls,
        cfg: ShopConfig,
        gateway_transport: Optional[httpx.AsyncBaseTransport] = None,
        notifier: Optional[INotificationSink] = None,
    ) -> "ShopServices":
        catalog = CatalogService.from_config(cfg)
        await catalog.load(cfg.CATALOG_SEED_PATH or None)

        store = create_order_store(cfg.DATA_DIR or None)
        await store.load()

        notifier = notifier or create_notification_sink(cfg)
        engine = OrderLifecycleEngine(store, catalog, notifier)
        gateway = PaymentGatewayAdapter(
            engine,
            GatewayConfig.from_config(cfg),
            transport=gateway_transport,
        )

        logger.info(
            "services_started",
            durable=bool(cfg.DATA_DIR),
            payment_configured=cfg.payment_configured,
            relay_configured=bool(cfg.NOTIFY_URL),
        )
        return cls(cfg, catalog, store, notifier, engine, gateway)

    async def close(self) -> None:
        await self.gateway.close()
        await self.notifier.close()
        await self.store.close()
        await self.catalog.close()
        logger.info("services_stopped")


def get_services(request: Request) -> ShopServices:
    return request.app.state.services


def admin_secret_matches(cfg: ShopConfig, provided: Optional[str]) -> bool:
    """Constant-time check; an unset ADMIN_SECRET matches nothing."""
    if not cfg.ADMIN_SECRET or not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), cfg.ADMIN_SECRET.encode("utf-8"))


def provided_admin_secret(
    x_admin_secret: Optional[str] = Header(default=None, alias="X-Admin-Secret"),
    secret: Optional[str] = Query(default=None),
) -> Optional[str]:
    return x_admin_secret or secret


def require_admin(
    request: Request,
    x_admin_secret: Optional[str] = Header(default=None, alias="X-Admin-Secret"),
    secret: Optional[str] = Query(default=None),
) -> bool:
    cfg = get_services(request).config
    if not admin_secret_matches(cfg, x_admin_secret or secret):
        logger.warning("admin_auth_rejected", path=request.url.path)
        raise AdminAuthRequired()
    return True
