"""
Fulfillment Error Taxonomy

Every error raised by the order fulfillment services derives from
FulfillmentError and carries:
    - code:        stable machine-readable identifier
    - status_code: HTTP status used by the API layer
    - retryable:   whether the caller may simply try again

Groups:
    - Validation (400/409): raised before any side effect
    - Contention (503): optimistic retry budget exhausted, retryable
    - Compensation (500): persistence failed after a reservation
    - External (502): payment provider failure
    - Terminal business (409): state machine and payment rules
    - Not found (404)
"""

from typing import Optional


class FulfillmentError(Exception):
    """Base class for all domain errors."""

    code = "fulfillment_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.code,
            "detail": self.message,
            "retryable": self.retryable,
            **({"context": self.detail} if self.detail else {}),
        }


# =============================================================================
# VALIDATION
# =============================================================================

class OrderValidationError(FulfillmentError):
    code = "order_validation_failed"
    status_code = 400

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors), detail={"errors": errors})
        self.errors = errors


class ProductUnavailableError(FulfillmentError):
    code = "product_unavailable"
    status_code = 409


class InsufficientStockError(FulfillmentError):
    code = "insufficient_stock"
    status_code = 409

    def __init__(self, product_id: str, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for {product_id}: requested {requested}, available {available}",
            detail={"product_id": product_id, "requested": requested, "available": available},
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class TenantClosedError(FulfillmentError):
    code = "tenant_closed"
    status_code = 409


class InvalidMovementError(FulfillmentError):
    code = "invalid_movement"
    status_code = 400


class InventoryItemExistsError(FulfillmentError):
    code = "inventory_item_exists"
    status_code = 409


# =============================================================================
# CONTENTION
# =============================================================================

class ContentionError(FulfillmentError):
    code = "contention"
    status_code = 503
    retryable = True


class SequenceContentionError(ContentionError):
    code = "sequence_contention"


class InventoryContentionError(ContentionError):
    code = "inventory_contention"


class OrderContentionError(ContentionError):
    code = "order_contention"


class PaymentContentionError(ContentionError):
    code = "payment_contention"


# =============================================================================
# PERSISTENCE / COMPENSATION
# =============================================================================

class OrderAlreadyExistsError(FulfillmentError):
    """A different order already holds this (tenant, day, number)."""

    code = "order_already_exists"
    status_code = 409


class OrderPersistenceError(FulfillmentError):
    code = "order_persistence_failed"
    status_code = 500


# =============================================================================
# EXTERNAL
# =============================================================================

class PaymentProviderError(FulfillmentError):
    code = "payment_provider_error"
    status_code = 502

    def __init__(self, message: str, *, error_code: Optional[str] = None, retryable: bool = False):
        super().__init__(message, detail={"provider_code": error_code} if error_code else None)
        self.error_code = error_code
        self.retryable = retryable


# =============================================================================
# TERMINAL BUSINESS
# =============================================================================

class InvalidTransitionError(FulfillmentError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, order_id: str, current: str, target: str):
        super().__init__(
            f"Order {order_id} cannot move from {current} to {target}",
            detail={"order_id": order_id, "current": current, "target": target},
        )
        self.current = current
        self.target = target


class RefundExceedsCapturedError(FulfillmentError):
    code = "refund_exceeds_captured"
    status_code = 409


class TipNotAllowedError(FulfillmentError):
    code = "tip_not_allowed"
    status_code = 409


class PaymentNotCapturedError(FulfillmentError):
    code = "payment_not_captured"
    status_code = 409


# =============================================================================
# NOT FOUND
# =============================================================================

class NotFoundError(FulfillmentError):
    code = "not_found"
    status_code = 404


class TenantNotFoundError(NotFoundError):
    code = "tenant_not_found"


class OrderNotFoundError(NotFoundError):
    code = "order_not_found"


class ProductNotFoundError(NotFoundError):
    code = "product_not_found"


class InventoryItemNotFoundError(NotFoundError):
    code = "inventory_item_not_found"


class LocationNotFoundError(NotFoundError):
    code = "location_not_found"


class PaymentRecordNotFoundError(NotFoundError):
    code = "payment_record_not_found"


class EscalationAlertNotFoundError(NotFoundError):
    code = "escalation_alert_not_found"
