"""
Pydantic Schemas for Request/Response Validation

Money is always an integer amount in minor units (Rappen / cents).
Business rules (phone format, schedule window, item limits) are checked by
the order service against tenant configuration; the schemas only enforce
shape and obvious bounds.
"""

from datetime import date, datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fulfillment.models import (
    EscalationSeverity,
    MovementType,
    OrderStatus,
    PaymentStatus,
    ServiceType,
    StockLevel,
)


# =============================================================================
# ORDER REQUESTS
# =============================================================================

class OrderItemCreate(BaseModel):
    """Single cart line."""
    product_id: str = Field(..., min_length=1, max_length=64, examples=["burger-classic"])
    quantity: int = Field(..., examples=[2])
    modifiers: List[str] = Field(default_factory=list, examples=[["no onions"]])


class CustomerCreate(BaseModel):
    name: str = Field(..., max_length=100, examples=["Anna Muster"])
    phone: str = Field(..., max_length=20, examples=["+41791234567"])
    email: Optional[str] = Field(None, examples=["anna@example.ch"])

    @field_validator('phone')
    @classmethod
    def strip_phone(cls, v: str) -> str:
        return v.replace(" ", "")

    @field_validator('email')
    @classmethod
    def empty_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v.strip() == "":
            return None
        return v.strip()


class OrderCreate(BaseModel):
    """Request schema for creating a new order."""
    items: List[OrderItemCreate] = Field(default_factory=list)
    customer: CustomerCreate
    service_type: ServiceType = Field(default=ServiceType.PICKUP, examples=["pickup"])
    location_id: Optional[str] = Field(None, examples=["bahnhofplatz"])
    payment_method: str = Field(default="card", examples=["card", "cash"])
    scheduled_for: Optional[datetime] = Field(None, examples=["2026-05-04T12:15:00+02:00"])
    special_instructions: Optional[str] = None
    discount: int = Field(default=0, examples=[0])
    tip: int = Field(default=0, examples=[200])


class TransitionRequest(BaseModel):
    status: OrderStatus = Field(..., examples=["confirmed"])
    reason: Optional[str] = Field(None, max_length=200)


class TipRequest(BaseModel):
    amount: int = Field(..., ge=0, examples=[300])


class RefundRequest(BaseModel):
    """Omit ``amount`` to refund everything still refundable."""
    amount: Optional[int] = Field(None, gt=0, examples=[500])
    reason: Optional[str] = Field(None, max_length=200, examples=["requested_by_customer"])


# =============================================================================
# ORDER RESPONSES
# =============================================================================

class OrderResponse(BaseModel):
    """Response schema for a single order."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    business_day: date
    order_number: int
    status: OrderStatus
    service_type: ServiceType
    location_id: Optional[str]
    customer_name: str
    customer_phone: str
    customer_email: Optional[str]
    items: List[dict[str, Any]]
    special_instructions: Optional[str]
    scheduled_for: Optional[datetime]
    estimated_minutes: int
    subtotal: int
    vat_rate: float
    vat_amount: int
    discount: int
    tip: int
    total: int
    refunded_amount: int
    payment_method: str
    payment_intent_id: Optional[str]
    payment_status: str
    cancellation_reason: Optional[str]
    version: int
    created_at: datetime
    confirmed_at: Optional[datetime]
    preparing_at: Optional[datetime]
    ready_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]


class OrderCreateResponse(BaseModel):
    """Response after successfully creating an order."""
    success: bool = True
    message: str
    order: OrderResponse


class OrderListResponse(BaseModel):
    total: int
    orders: List[OrderResponse]


class PaymentRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    intent_id: str
    order_id: str
    amount: int
    tip: int
    platform_fee: int
    captured_amount: int
    refunded_amount: int
    status: PaymentStatus
    currency: str


class RefundResponse(BaseModel):
    success: bool = True
    refund_id: str
    order_id: str
    refunded_amount: int
    payment_status: str


class EscalationAlertResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    tenant_id: str
    watched_status: OrderStatus
    severity: Optional[EscalationSeverity]
    step_index: int
    acknowledged: bool
    active: bool
    acknowledged_at: Optional[datetime]


# =============================================================================
# INVENTORY
# =============================================================================

class MovementRequest(BaseModel):
    """
    One stock movement. ``quantity`` is a magnitude for sale, waste,
    purchase and return; for adjustment it is the absolute new quantity.
    """
    movement_type: MovementType = Field(..., examples=["purchase"])
    quantity: int = Field(..., ge=0, examples=[24])
    reason: Optional[str] = Field(None, max_length=200)


class MovementResponse(BaseModel):
    success: bool = True
    product_id: str
    quantity: int


class CountRequest(BaseModel):
    counts: dict[str, int] = Field(..., examples=[{"burger-classic": 18, "fries": 40}])
    counted_by: Optional[str] = Field(None, max_length=100)


class CountReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    total_items: int
    accurate_items: int
    accuracy: float
    discrepancies: List[dict[str, Any]]
    unknown_products: List[str]
    counted_by: Optional[str]
    created_at: datetime


class InventoryItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: str
    product_id: str
    name: Optional[str]
    quantity: int
    unit: str
    min_quantity: int
    reorder_point: int
    max_quantity: Optional[int]
    level: StockLevel
    version: int
    last_sold_at: Optional[datetime]
    last_restocked_at: Optional[datetime]


# =============================================================================
# LOCATION
# =============================================================================

class PositionReport(BaseModel):
    location_id: str = Field(..., examples=["bahnhofplatz"])
    reported_at: Optional[datetime] = None


class PositionResponse(BaseModel):
    success: bool = True
    tenant_id: str
    current_location_id: Optional[str]
    last_location_update: Optional[datetime]


class VerifyLocationResponse(BaseModel):
    tenant_id: str
    location_id: str
    compliant: bool


# =============================================================================
# GENERIC
# =============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[Any] = None
    retryable: bool = False


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    payment_service: str
    notification_service: str
    environment: str
    timestamp: datetime
