"""
Payment Gateway Adapter
=======================
Signed payment initiation against the external gateway and verification of
its signed status notifications.

- Outbound: POST {GATEWAY_API}/payment/init with a signed payload, bounded
  by a timeout and NEVER retried (billing-sensitive; a retry can
  double-charge)
- Inbound: webhook signature is verified before the order store is touched
- No per-order lock is held while the gateway call is outstanding

pip install httpx pydantic structlog
"""

import uuid
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog
from pydantic import BaseModel

from pipeline import signer
from pipeline.errors import (
    EmptyCart,
    GatewayError,
    GatewayProtocolError,
    GatewayTimeout,
    InvalidSignature,
    InvalidTransition,
    OrderNotFound,
    PaymentNotConfigured,
    ValidationError,
)
from pipeline.lifecycle import OrderLifecycleEngine, normalize_cart
from schemas.order_definitions import Order


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class GatewayConfig:
    """Gateway credentials and URLs."""
    api_url: str
    shop_id: Optional[int]
    password: str
    timeout_seconds: float = 15.0
    success_url: str = ""
    fail_url: str = ""
    notify_url: str = ""
    description: str = "Order {order_id}"

    @classmethod
    def from_config(cls, cfg) -> "GatewayConfig":
        return cls(
            api_url=cfg.GATEWAY_API,
            shop_id=cfg.SHOP_ID,
            password=cfg.GATEWAY_PASSWORD,
            timeout_seconds=cfg.GATEWAY_TIMEOUT,
            success_url=cfg.SUCCESS_URL,
            fail_url=cfg.FAIL_URL,
            notify_url=cfg.notify_path,
            description=cfg.PAYMENT_DESCRIPTION,
        )

    @property
    def configured(self) -> bool:
        return self.shop_id is not None and bool(self.password)

    @property
    def init_url(self) -> str:
        return f"{self.api_url.rstrip('/')}/payment/init"


def _fill(template: str, order_id: str) -> str:
    return template.replace("{order_id}", order_id)


# =============================================================================
# RESULTS
# =============================================================================

class PaymentInitResult(BaseModel):
    """Payment initiation result"""
    redirect_url: str
    order_id: str
    amount: int
    correlation_id: str


class WebhookResult(BaseModel):
    """Outcome of an authenticated gateway notification"""
    status: str  # "processed" | "ignored"
    order_id: Optional[str] = None
    reason: Optional[str] = None


# =============================================================================
# ADAPTER
# =============================================================================

class PaymentGatewayAdapter:
    """
    Bridge between the lifecycle engine and the payment gateway.

    Example:
        adapter = PaymentGatewayAdapter(engine, GatewayConfig.from_config(config))
        result = await adapter.initiate_payment({"c30": 2}, "card")
        # customer pays at result.redirect_url
        # gateway calls back: await adapter.handle_webhook(payload)
    """

    def __init__(
        self,
        engine: OrderLifecycleEngine,
        config: GatewayConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.engine = engine
        self.config = config
        self._client = httpx.AsyncClient(
            timeout=config.timeout_seconds,
            transport=transport,
        )
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        return self._base_logger.bind(
            component="payment_gateway",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def close(self) -> None:
        await self._client.aclose()

    # =========================================================================
    # PAYMENT INITIATION
    # =========================================================================

    async def initiate_payment(self, cart: Mapping[str, int], method_slug: str) -> PaymentInitResult:
        """Create an order for ``cart`` and start its payment."""
        if not self.config.configured:
            raise PaymentNotConfigured()

        normalized = normalize_cart(cart)
        amount = self.engine.compute_amount(normalized)
        if amount <= 0:
            raise EmptyCart()
        self.engine.check_ceiling(amount)

        order = await self.engine.create_order(normalized, payment_method=method_slug)
        return await self.initiate_payment_for_order(order.id, method_slug)

    async def initiate_payment_for_order(self, order_id: str, method_slug: str) -> PaymentInitResult:
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        if not self.config.configured:
            raise PaymentNotConfigured()

        order = await self.engine.prepare_payment(order_id, method_slug)

        payload = self.build_payload(order)
        payload["signature"] = signer.sign(payload, self.config.password)

        log.info("payment_init_requested", order_id=order.id, amount=order.amount,
                 method_slug=order.payment_method)
        redirect_url = await self._post_init(payload, log)
        log.info("payment_init_accepted", order_id=order.id)

        return PaymentInitResult(
            redirect_url=redirect_url,
            order_id=order.id,
            amount=order.amount,
            correlation_id=correlation_id,
        )

    def build_payload(self, order: Order) -> Dict[str, Any]:
        return {
            "order_id": order.id,
            "method_slug": order.payment_method,
            "amount": order.amount,
            "shop_id": self.config.shop_id,
            "success_url": _fill(self.config.success_url, order.id),
            "fail_url": _fill(self.config.fail_url, order.id),
            "description": _fill(self.config.description, order.id),
            "notify_url": self.config.notify_url,
        }

    async def _post_init(self, payload: Dict[str, Any], log) -> str:
        try:
            response = await self._client.post(self.config.init_url, json=payload)
        except httpx.TimeoutException:
            log.error("payment_init_timeout", order_id=payload["order_id"],
                      timeout=self.config.timeout_seconds)
            raise GatewayTimeout(self.config.timeout_seconds)
        except httpx.HTTPError as e:
            log.error("payment_init_transport_error", order_id=payload["order_id"], error=str(e))
            raise GatewayError(f"Payment gateway unreachable: {e}")

        body = self._decode_body(response)
        if not response.is_success:
            log.error("payment_init_rejected", order_id=payload["order_id"],
                      status_code=response.status_code, body=body)
            raise GatewayError(
                f"Payment gateway answered {response.status_code}",
                status_code=response.status_code,
                body=body,
            )

        redirect_url = None
        if isinstance(body, dict):
            redirect_url = body.get("url") or body.get("redirect_url")
        if not isinstance(redirect_url, str) or not redirect_url:
            log.error("payment_init_missing_url", order_id=payload["order_id"], body=body)
            raise GatewayProtocolError(
                "Payment gateway response has no redirect url",
                status_code=response.status_code,
                body=body,
            )
        return redirect_url

    @staticmethod
    def _decode_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text[:1000]

    # =========================================================================
    # WEBHOOK PROCESSING
    # =========================================================================

    async def handle_webhook(self, raw_payload: Any) -> WebhookResult:
        """
        Verify and apply a gateway notification.

        Raises InvalidSignature before touching the store when verification
        fails. Unknown orders, locked orders and unknown statuses are logged
        and acknowledged.
        """
        log = self._get_logger()

        if not isinstance(raw_payload, Mapping):
            raise ValidationError("Webhook payload must be a JSON object")

        # verify BEFORE reading anything else
        if not self.config.password or not signer.verify(
            raw_payload, raw_payload.get("signature"), self.config.password
        ):
            log.warning("webhook_signature_invalid", order_id=raw_payload.get("order_id"))
            raise InvalidSignature()

        order_id = raw_payload.get("order_id")
        status = raw_payload.get("status")
        log.info("webhook_received", order_id=order_id, gateway_status=status)

        if not order_id:
            log.warning("webhook_without_order_id")
            return WebhookResult(status="ignored", reason="missing_order_id")

        order_id = str(order_id)
        try:
            order = await self.engine.record_payment_result(order_id, status)
        except OrderNotFound:
            log.warning("webhook_unknown_order", order_id=order_id)
            return WebhookResult(status="ignored", order_id=order_id, reason="unknown_order")
        except InvalidTransition as e:
            log.warning("webhook_order_locked", order_id=order_id, status=e.details.get("status"))
            return WebhookResult(status="ignored", order_id=order_id, reason="order_locked")

        log.info("webhook_processed", order_id=order_id,
                 payment_status=order.payment_status.value if order.payment_status else None)
        return WebhookResult(status="processed", order_id=order_id)
