# pipeline/errors.py
# ============================================================================
# DUCK STOREFRONT v1.0 — ERROR TAXONOMY
# ============================================================================
# Every error carries a stable machine code, a message and the HTTP status
# the API layer answers with. Callers match on the class, clients on `code`.
# ============================================================================

from typing import Any, Dict, Optional


class ShopError(Exception):
    """Base class for every domain error raised by the order pipeline."""

    http_status: int = 500
    default_code: str = "internal_error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


# =============================================================================
# CATEGORIES
# =============================================================================

class ValidationError(ShopError):
    http_status = 400
    default_code = "validation_error"


class NotFound(ShopError):
    http_status = 404
    default_code = "not_found"


class Unauthorized(ShopError):
    http_status = 401
    default_code = "unauthorized"


class Conflict(ShopError):
    http_status = 409
    default_code = "conflict"


class UpstreamError(ShopError):
    http_status = 502
    default_code = "upstream_error"


class UpstreamTimeout(ShopError):
    http_status = 504
    default_code = "upstream_timeout"


class InternalError(ShopError):
    http_status = 500
    default_code = "internal_error"


# =============================================================================
# CONCRETE ERRORS
# =============================================================================

class OrderNotFound(NotFound):
    default_code = "order_not_found"

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order not found: {order_id}", details={"order_id": order_id})
        self.order_id = order_id


class ProductNotFound(NotFound):
    default_code = "product_not_found"

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product not found: {product_id}", details={"product_id": product_id})
        self.product_id = product_id


class DuplicateId(Conflict):
    default_code = "duplicate_id"

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order already exists: {order_id}", details={"order_id": order_id})


class EmailMismatch(Conflict):
    default_code = "email_mismatch"

    def __init__(self, order_id: str) -> None:
        super().__init__("Email does not match the one stored for this order",
                         details={"order_id": order_id})


class InvalidTransition(Conflict):
    default_code = "invalid_transition"

    def __init__(self, order_id: str, status: str, action: str) -> None:
        super().__init__(
            f"Cannot {action} an order in status '{status}'",
            details={"order_id": order_id, "status": status, "action": action},
        )


class EmptyOrZeroValueCart(ValidationError):
    default_code = "empty_cart"

    def __init__(self, message: str = "Cart is empty or its total is zero") -> None:
        super().__init__(message)


EmptyCart = EmptyOrZeroValueCart


class CartLimitExceeded(ValidationError):
    default_code = "cart_limit_exceeded"

    def __init__(self, amount: int, ceiling: int) -> None:
        super().__init__(
            f"Cart total {amount} exceeds the limit of {ceiling}",
            details={"amount": amount, "ceiling": ceiling},
        )


class PaymentNotConfigured(InternalError):
    http_status = 503
    default_code = "payment_not_configured"

    def __init__(self) -> None:
        super().__init__("Payment gateway credentials are not configured")


class GatewayError(UpstreamError):
    default_code = "gateway_error"

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None) -> None:
        super().__init__(message, details={"upstream_status": status_code, "upstream_body": body})
        self.status_code = status_code
        self.body = body


class GatewayProtocolError(GatewayError):
    default_code = "gateway_protocol_error"


class GatewayTimeout(UpstreamTimeout):
    default_code = "gateway_timeout"

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Payment gateway did not answer within {timeout:g}s",
                         details={"timeout_seconds": timeout})


class InvalidSignature(Unauthorized):
    http_status = 403
    default_code = "invalid_signature"

    def __init__(self) -> None:
        super().__init__("Signature verification failed")


class AdminAuthRequired(Unauthorized):
    default_code = "admin_auth_required"

    def __init__(self) -> None:
        super().__init__("Admin secret missing or invalid")
