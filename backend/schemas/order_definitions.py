# schemas/order_definitions.py
# ============================================================================
# DUCK STOREFRONT v1.0 — ORDER & CATALOG SCHEMAS
# ============================================================================
# Purpose: Type-safe definitions for orders, catalog entries, shop settings
# and the audit trail written by the lifecycle engine.
# ============================================================================

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, computed_field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class OrderStatus(str, Enum):
    """Flow status of an order. COMPLETED and REJECTED are terminal."""
    CREATED = "created"
    PENDING_EMAIL = "pending_email"
    PENDING_CODE = "pending_code"
    COMPLETED = "completed"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.REJECTED})


class PaymentStatus(str, Enum):
    """Gateway-reported side status, coexists with any flow status."""
    PAID = "paid"
    FAILED = "failed"


class NotificationStage(str, Enum):
    EMAIL_SUBMITTED = "email_submitted"
    CODE_SUBMITTED = "code_submitted"


class AuditEventType(str, Enum):
    ORDER_CREATED = "order.created"
    EMAIL_SUBMITTED = "order.email_submitted"
    CODE_SUBMITTED = "order.code_submitted"
    ORDER_COMPLETED = "order.completed"
    ORDER_REJECTED = "order.rejected"
    COMMENT_UPDATED = "order.comment_updated"
    PAYMENT_INITIATED = "payment.initiated"
    PAYMENT_CONFIRMED = "payment.confirmed"
    PAYMENT_FAILED = "payment.failed"
    NOTIFICATION_SENT = "notification.sent"
    NOTIFICATION_FAILED = "notification.failed"


# ============================================================================
# SECTION 2: ORDER
# ============================================================================

class Order(BaseModel):
    """One checkout attempt."""
    id: str
    cart: Dict[str, int] = Field(default_factory=dict)
    amount: int = 0

    email: Optional[str] = None
    code: Optional[str] = None

    status: OrderStatus = OrderStatus.CREATED
    payment_status: Optional[PaymentStatus] = None
    payment_method: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    admin_comment: Optional[str] = None
    version: int = 1

    @staticmethod
    def generate_id() -> str:
        return str(uuid.uuid4())

    @computed_field
    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def statuses(self) -> List[str]:
        """Flow status followed by the payment side status, if any."""
        labels = [self.status.value]
        if self.payment_status is not None:
            labels.append(self.payment_status.value)
        return labels

    def matches_status(self, label: str) -> bool:
        return label in self.statuses

    def touch(self, **changes: Any) -> "Order":
        """Copy with ``changes`` applied, ``updated_at`` refreshed and version bumped."""
        return self.model_copy(update={
            **changes,
            "updated_at": utcnow(),
            "version": self.version + 1,
        })

    def transition_to(self, new_status: OrderStatus, **changes: Any) -> "Order":
        return self.touch(status=new_status, **changes)

    def public_view(self, include_admin: bool = False) -> Dict[str, Any]:
        data = self.model_dump(mode="json", exclude={"version", "is_terminal"})
        data["statuses"] = self.statuses
        if not include_admin:
            data.pop("admin_comment", None)
            data.pop("code", None)
        return data


# ============================================================================
# SECTION 3: CATALOG
# ============================================================================

class Product(BaseModel):
    """Catalog entry. Prices are integers in the smallest currency unit."""
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    price: int = Field(ge=0)
    description: str = ""
    active: bool = True


class ShopSettings(BaseModel):
    """Small settings record persisted next to the catalog."""
    cart_ceiling: Optional[int] = Field(default=None, ge=0)

    @property
    def ceiling(self) -> Optional[int]:
        return self.cart_ceiling or None


# ============================================================================
# SECTION 4: AUDIT TRAIL
# ============================================================================

class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    event_type: AuditEventType
    order_id: str
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str = "system"  # "system", "customer", "admin", "gateway"
