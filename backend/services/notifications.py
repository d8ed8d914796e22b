# services/notifications.py
# ============================================================================
# DUCK STOREFRONT v1.0 — NOTIFICATION SINK
# ============================================================================
# Pushes order events to the operator relay (the Telegram bot in
# production) so a human can fetch the verification code and fulfil the
# order.
#
# FAILURE HANDLING:
# - best-effort: notify() never raises, it returns True/False
# - bounded by an explicit timeout
# - the order transition is already committed before notify() is called
# ============================================================================

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog

from schemas.order_definitions import NotificationStage, Order

logger = structlog.get_logger().bind(component="notifications")


def build_notification(order: Order, stage: NotificationStage, secret: str = "") -> Dict[str, Any]:
    return {
        "order_id": order.id,
        "email": order.email,
        "items": dict(order.cart),
        "amount": order.amount,
        "code": order.code,
        "stage": stage.value,
        "secret": secret,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class INotificationSink(ABC):
    """Best-effort receiver of order events"""

    @abstractmethod
    async def notify(self, order: Order, stage: NotificationStage) -> bool:
        pass

    async def close(self) -> None:
        pass


@dataclass
class RelayConfig:
    """Configuration for the HTTP relay."""
    url: str
    secret: str = ""
    timeout_seconds: float = 10.0

    @classmethod
    def from_config(cls, cfg) -> "RelayConfig":
        return cls(
            url=cfg.NOTIFY_URL,
            secret=cfg.NOTIFY_SECRET,
            timeout_seconds=cfg.NOTIFY_TIMEOUT,
        )


class HttpNotificationSink(INotificationSink):
    """POSTs order snapshots to the relay; response body is only logged."""

    def __init__(
        self,
        config: RelayConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self._client = httpx.AsyncClient(
            timeout=config.timeout_seconds,
            transport=transport,
        )

    async def notify(self, order: Order, stage: NotificationStage) -> bool:
        body = build_notification(order, stage, self.config.secret)
        try:
            response = await self._client.post(self.config.url, json=body)
        except httpx.TimeoutException:
            logger.warning("notification_timeout", order_id=order.id, stage=stage.value,
                           timeout=self.config.timeout_seconds)
            return False
        except httpx.HTTPError as e:
            logger.warning("notification_transport_error", order_id=order.id,
                           stage=stage.value, error=str(e))
            return False

        if response.is_success:
            logger.info("notification_sent", order_id=order.id, stage=stage.value)
            return True

        logger.warning(
            "notification_rejected",
            order_id=order.id,
            stage=stage.value,
            status_code=response.status_code,
            body=response.text[:500],
        )
        return False

    async def close(self) -> None:
        await self._client.aclose()


class NullNotificationSink(INotificationSink):
    """Used when no relay is configured."""

    async def notify(self, order: Order, stage: NotificationStage) -> bool:
        logger.info("notification_skipped", order_id=order.id, stage=stage.value,
                    reason="relay_not_configured")
        return False


class RecordingNotificationSink(INotificationSink):
    """Keeps every event in memory; handy for tests and local runs."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.events: List[Tuple[str, NotificationStage, Order]] = []

    async def notify(self, order: Order, stage: NotificationStage) -> bool:
        self.events.append((order.id, stage, order))
        return self.succeed


def create_notification_sink(cfg) -> INotificationSink:
    if cfg.NOTIFY_URL:
        return HttpNotificationSink(RelayConfig.from_config(cfg))
    return NullNotificationSink()
