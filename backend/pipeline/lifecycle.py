"""
Order Lifecycle Engine
======================
The only writer of Order state. Validates and applies transitions, prices
carts from the catalog and pushes best-effort operator notifications.

Flow status:

    created -> pending_email -> pending_code -> completed | rejected

Payment side status (``paid`` / ``failed``) is reported by the gateway and
coexists with any non-terminal flow status.

Rules:
- every transition runs inside OrderStore.update(), i.e. under the order's
  lock, and is all-or-nothing
- notifications and other network calls happen after the write, never
  under the lock
- completed/rejected orders are locked; only the admin comment can change
- unknown product ids price at 0 (kept on purpose, logged for review)
- zero-value orders may exist; prepare_payment() refuses them
"""

import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

import structlog
from pydantic import validate_email

from pipeline.errors import (
    CartLimitExceeded,
    EmailMismatch,
    EmptyOrZeroValueCart,
    InvalidTransition,
    ValidationError,
)
from schemas.order_definitions import (
    AuditEventType,
    AuditLogEntry,
    NotificationStage,
    Order,
    OrderStatus,
    PaymentStatus,
    utcnow,
)
from services.notifications import INotificationSink, NullNotificationSink
from storage.order_store import IOrderStore

PAID_GATEWAY_STATUSES = frozenset({"success", "succeeded", "paid", "confirmed", "completed"})
FAILED_GATEWAY_STATUSES = frozenset({"failed", "fail", "error", "canceled", "cancelled", "expired", "rejected"})


class ICatalog(Protocol):
    """What the engine needs from the catalog."""

    def get_price(self, product_id: str) -> Optional[int]: ...

    @property
    def cart_ceiling(self) -> Optional[int]: ...


# =============================================================================
# AUDIT LOG
# =============================================================================

class IAuditLog(ABC):
    """Audit log interface"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_order_id(self, order_id: str) -> List[AuditLogEntry]:
        pass


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: List[AuditLogEntry] = []
        self._by_order: Dict[str, List[AuditLogEntry]] = defaultdict(list)

    async def append(self, entry: AuditLogEntry) -> None:
        self._logs.append(entry)
        self._by_order[entry.order_id].append(entry)

    async def get_by_order_id(self, order_id: str) -> List[AuditLogEntry]:
        return list(self._by_order.get(order_id, []))


# =============================================================================
# INPUT VALIDATION
# =============================================================================

def normalize_cart(cart: Any) -> Dict[str, int]:
    """Validate a cart mapping: non-empty, product id -> integer quantity >= 1."""
    if not isinstance(cart, Mapping) or not cart:
        raise ValidationError("Cart must be a non-empty mapping of product id to quantity")
    normalized: Dict[str, int] = {}
    for product_id, quantity in cart.items():
        key = str(product_id).strip()
        if not key:
            raise ValidationError("Cart contains an empty product id")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError(
                f"Quantity for '{key}' must be an integer >= 1",
                details={"product_id": key, "quantity": quantity},
            )
        normalized[key] = quantity
    return normalized


def check_email(email: Any) -> str:
    """Validate a bare address (no display name) and return it stripped."""
    if not isinstance(email, str) or not email.strip():
        raise ValidationError("Email is required")
    raw = email.strip()
    try:
        _, address = validate_email(raw)
    except ValueError:
        raise ValidationError("Email is not valid", details={"email": email})
    # "Name <addr>" parses too; only the bare address is accepted
    if address.lower() != raw.lower():
        raise ValidationError("Email must be a bare address", details={"email": email})
    return raw


# =============================================================================
# ENGINE
# =============================================================================

class OrderLifecycleEngine:
    """
    State machine for orders.

    Example:
        engine = OrderLifecycleEngine(store, catalog, notifier)
        order = await engine.create_order({"c30": 2})
        order, notified = await engine.submit_email(order.id, "a@b.com", {"c30": 2})
        order, notified = await engine.submit_code(order.id, "a@b.com", "123456")
        await engine.mark_completed(order.id)
    """

    def __init__(
        self,
        store: IOrderStore,
        catalog: ICatalog,
        notifier: Optional[INotificationSink] = None,
        audit_log: Optional[IAuditLog] = None,
    ):
        self.store = store
        self.catalog = catalog
        self.notifier = notifier or NullNotificationSink()
        self.audit = audit_log or InMemoryAuditLog()
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        """Get logger bound with correlation context"""
        return self._base_logger.bind(
            component="lifecycle",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def _emit_audit(
        self,
        event_type: AuditEventType,
        order_id: str,
        correlation_id: str,
        previous_status: Optional[str] = None,
        new_status: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        actor: str = "system",
    ) -> None:
        entry = AuditLogEntry(
            correlation_id=correlation_id,
            event_type=event_type,
            order_id=order_id,
            previous_status=previous_status,
            new_status=new_status,
            metadata=metadata or {},
            actor=actor,
        )
        await self.audit.append(entry)

        log = self._get_logger(correlation_id)
        log.info("audit_event", event_type=event_type.value, order_id=order_id, actor=actor)

    # =========================================================================
    # PRICING
    # =========================================================================

    def compute_amount(self, cart: Mapping[str, int], log=None) -> int:
        """Sum of price * quantity using the catalog's prices right now."""
        total = 0
        for product_id, quantity in cart.items():
            price = self.catalog.get_price(product_id)
            if price is None:
                (log or self._get_logger()).warning("unknown_product_skipped", product_id=product_id)
                continue
            total += price * quantity
        return total

    def check_ceiling(self, amount: int) -> None:
        ceiling = self.catalog.cart_ceiling
        if ceiling is not None and amount > ceiling:
            raise CartLimitExceeded(amount, ceiling)

    # =========================================================================
    # CUSTOMER FLOW
    # =========================================================================

    async def create_order(
        self,
        cart: Mapping[str, int],
        payment_method: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> Order:
        """Open a new order. A zero total is allowed here; payment initiation refuses it."""
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        normalized = normalize_cart(cart)
        amount = self.compute_amount(normalized, log)

        order = Order(
            id=order_id or Order.generate_id(),
            cart=normalized,
            amount=amount,
            payment_method=payment_method,
        )
        await self.store.create(order)

        await self._emit_audit(
            AuditEventType.ORDER_CREATED, order.id, correlation_id,
            new_status=order.status.value,
            metadata={"amount": amount, "items": len(normalized)},
            actor="customer",
        )
        log.info("order_created", order_id=order.id, amount=amount)
        return order

    async def submit_email(
        self,
        order_id: str,
        email: str,
        cart: Mapping[str, int],
    ) -> Tuple[Order, bool]:
        """
        Attach contact info and (re)price the cart.

        Allowed from created and pending_email; resubmitting in pending_email
        overwrites email, cart and amount. Returns the order and whether the
        operator was notified.
        """
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        email = check_email(email)
        normalized = normalize_cart(cart)
        previous: Dict[str, str] = {}

        def apply(order: Order) -> Order:
            if order.status not in (OrderStatus.CREATED, OrderStatus.PENDING_EMAIL):
                raise InvalidTransition(order.id, order.status.value, "submit email for")
            amount = self.compute_amount(normalized, log)
            self.check_ceiling(amount)
            previous["status"] = order.status.value
            return order.transition_to(
                OrderStatus.PENDING_EMAIL,
                email=email,
                cart=normalized,
                amount=amount,
            )

        order = await self.store.update(order_id, apply)
        await self._emit_audit(
            AuditEventType.EMAIL_SUBMITTED, order.id, correlation_id,
            previous_status=previous.get("status"),
            new_status=order.status.value,
            metadata={"amount": order.amount},
            actor="customer",
        )

        notified = await self._notify(order, NotificationStage.EMAIL_SUBMITTED, correlation_id)
        return order, notified

    async def submit_code(self, order_id: str, email: str, code: str) -> Tuple[Order, bool]:
        """
        Relay the verification code. The email must match the stored one.

        From pending_email moves to pending_code; in pending_code it only
        overwrites the code.
        """
        correlation_id = str(uuid.uuid4())

        if not isinstance(code, str) or not code.strip():
            raise ValidationError("Code is required")
        code = code.strip()
        previous: Dict[str, str] = {}

        def apply(order: Order) -> Order:
            if order.is_terminal:
                raise InvalidTransition(order.id, order.status.value, "submit code for")
            if order.email is None:
                raise InvalidTransition(order.id, order.status.value, "submit code before email for")
            if order.email != email:
                raise EmailMismatch(order.id)
            previous["status"] = order.status.value
            return order.transition_to(OrderStatus.PENDING_CODE, code=code)

        order = await self.store.update(order_id, apply)
        await self._emit_audit(
            AuditEventType.CODE_SUBMITTED, order.id, correlation_id,
            previous_status=previous.get("status"),
            new_status=order.status.value,
            actor="customer",
        )

        notified = await self._notify(order, NotificationStage.CODE_SUBMITTED, correlation_id)
        return order, notified

    async def _notify(self, order: Order, stage: NotificationStage, correlation_id: str) -> bool:
        """Best-effort; the order is already persisted."""
        log = self._get_logger(correlation_id)
        try:
            notified = await self.notifier.notify(order, stage)
        except Exception as e:
            log.error("notification_error", order_id=order.id, stage=stage.value, error=str(e),
                      exc_info=True)
            notified = False

        await self._emit_audit(
            AuditEventType.NOTIFICATION_SENT if notified else AuditEventType.NOTIFICATION_FAILED,
            order.id, correlation_id,
            metadata={"stage": stage.value},
        )
        return notified

    # =========================================================================
    # ADMIN FLOW
    # =========================================================================

    async def mark_completed(self, order_id: str, comment: Optional[str] = None) -> Order:
        return await self._finish(order_id, OrderStatus.COMPLETED, comment)

    async def mark_rejected(self, order_id: str, comment: Optional[str] = None) -> Order:
        return await self._finish(order_id, OrderStatus.REJECTED, comment)

    async def set_status(self, order_id: str, status: OrderStatus, comment: Optional[str] = None) -> Order:
        if status not in (OrderStatus.COMPLETED, OrderStatus.REJECTED):
            raise ValidationError(f"Admins can only complete or reject orders, not '{status.value}'")
        return await self._finish(order_id, status, comment)

    async def _finish(self, order_id: str, status: OrderStatus, comment: Optional[str]) -> Order:
        correlation_id = str(uuid.uuid4())
        action = "complete" if status == OrderStatus.COMPLETED else "reject"

        def apply(order: Order) -> Order:
            if order.status != OrderStatus.PENDING_CODE:
                raise InvalidTransition(order.id, order.status.value, action)
            now = utcnow()
            changes: Dict[str, Any] = {}
            if status == OrderStatus.COMPLETED:
                changes["completed_at"] = order.completed_at or now
            else:
                changes["rejected_at"] = order.rejected_at or now
            if comment is not None:
                changes["admin_comment"] = comment
            return order.transition_to(status, **changes)

        order = await self.store.update(order_id, apply)
        await self._emit_audit(
            AuditEventType.ORDER_COMPLETED if status == OrderStatus.COMPLETED else AuditEventType.ORDER_REJECTED,
            order.id, correlation_id,
            previous_status=OrderStatus.PENDING_CODE.value,
            new_status=order.status.value,
            actor="admin",
        )
        return order

    async def set_admin_comment(self, order_id: str, comment: Optional[str]) -> Order:
        correlation_id = str(uuid.uuid4())
        order = await self.store.update(order_id, lambda o: o.touch(admin_comment=comment))
        await self._emit_audit(
            AuditEventType.COMMENT_UPDATED, order.id, correlation_id,
            new_status=order.status.value,
            actor="admin",
        )
        return order

    # =========================================================================
    # PAYMENT FLOW
    # =========================================================================

    async def prepare_payment(self, order_id: str, method_slug: str) -> Order:
        """
        Reprice the order for payment initiation and record the method.

        Raises EmptyOrZeroValueCart / CartLimitExceeded without writing.
        """
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        if not isinstance(method_slug, str) or not method_slug.strip():
            raise ValidationError("Payment method is required")

        def apply(order: Order) -> Order:
            if order.is_terminal:
                raise InvalidTransition(order.id, order.status.value, "pay for")
            amount = self.compute_amount(order.cart, log)
            if amount <= 0:
                raise EmptyOrZeroValueCart()
            self.check_ceiling(amount)
            return order.touch(amount=amount, payment_method=method_slug.strip())

        order = await self.store.update(order_id, apply)
        await self._emit_audit(
            AuditEventType.PAYMENT_INITIATED, order.id, correlation_id,
            new_status=order.status.value,
            metadata={"amount": order.amount, "method_slug": order.payment_method},
        )
        return order

    async def record_payment_result(
        self,
        order_id: str,
        gateway_status: str,
        correlation_id: Optional[str] = None,
    ) -> Order:
        """
        Apply a verified gateway status.

        ``paid_at`` is set once; a paid order never goes back to failed.
        Unrecognised statuses leave the order untouched.
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        log = self._get_logger(correlation_id)
        normalized = str(gateway_status or "").strip().lower()

        if normalized in PAID_GATEWAY_STATUSES:
            outcome = PaymentStatus.PAID
        elif normalized in FAILED_GATEWAY_STATUSES:
            outcome = PaymentStatus.FAILED
        else:
            log.warning("unknown_gateway_status", order_id=order_id, gateway_status=gateway_status)
            return await self.store.get(order_id)

        previous: Dict[str, Optional[str]] = {}

        def apply(order: Order) -> Order:
            if order.is_terminal:
                raise InvalidTransition(order.id, order.status.value, "record payment for")
            previous["payment_status"] = order.payment_status.value if order.payment_status else None
            if order.payment_status == PaymentStatus.PAID:
                return order
            if outcome == PaymentStatus.PAID:
                return order.touch(payment_status=PaymentStatus.PAID, paid_at=order.paid_at or utcnow())
            return order.touch(payment_status=PaymentStatus.FAILED)

        order = await self.store.update(order_id, apply)
        if order.payment_status != outcome:
            log.info("payment_result_ignored", order_id=order_id, gateway_status=normalized,
                     payment_status=order.payment_status.value if order.payment_status else None)
            return order

        if previous.get("payment_status") != outcome.value:
            await self._emit_audit(
                AuditEventType.PAYMENT_CONFIRMED if outcome == PaymentStatus.PAID else AuditEventType.PAYMENT_FAILED,
                order.id, correlation_id,
                previous_status=previous.get("payment_status"),
                new_status=outcome.value,
                metadata={"gateway_status": normalized},
                actor="gateway",
            )
        return order

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_order(self, order_id: str) -> Order:
        return await self.store.get(order_id)

    async def list_orders(
        self,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        sort: str = "-created_at",
    ) -> List[Order]:
        return await self.store.list(status=status, sort=sort, limit=limit, offset=offset)

    async def audit_trail(self, order_id: str) -> List[AuditLogEntry]:
        await self.store.get(order_id)
        return await self.audit.get_by_order_id(order_id)
