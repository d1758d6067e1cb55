"""
SQLAlchemy Database Models

Relational model of the order fulfillment orchestrator:
- Tenants (food-truck operators), their products and announced locations
- Orders with a per-tenant daily sequence number
- Inventory items with an append-only movement ledger
- Payment records owned by the order aggregate
- Escalation alerts for stalled orders
- Compensation records for failed cleanups

Money columns are integer minor units (Rappen / cents).
Every row that is updated concurrently carries a ``version`` column used
for compare-and-swap writes.

Version: 1.0.0
"""

import enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from fulfillment.database import Base


class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ServiceType(str, enum.Enum):
    """Fulfillment model - selects the VAT regime."""
    PICKUP = "pickup"
    TABLE = "table"


class MovementType(str, enum.Enum):
    """Inventory movement kinds."""
    SALE = "sale"
    WASTE = "waste"
    PURCHASE = "purchase"
    RETURN = "return"
    ADJUSTMENT = "adjustment"


class StockLevel(str, enum.Enum):
    """Threshold level of an inventory item."""
    OK = "ok"
    CRITICAL = "critical"
    LOW = "low"
    OVERSTOCK = "overstock"


class PaymentStatus(str, enum.Enum):
    """Lifecycle of a payment intent as seen by the platform."""
    REQUIRES_PAYMENT = "requires_payment"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class EscalationSeverity(str, enum.Enum):
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"


# =============================================================================
# TENANT DIRECTORY
# =============================================================================

class Tenant(Base):
    """One food-truck operator; the data-isolation unit."""
    __tablename__ = "tenants"

    id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=False)
    is_open = Column(Boolean, default=True, nullable=False)

    # VAT defaults (percent); None falls back to settings
    takeaway_vat_rate = Column(Float, nullable=True)
    dine_in_vat_rate = Column(Float, nullable=True)
    phone_pattern = Column(String(200), nullable=True)

    # Platform fees
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    stripe_account_id = Column(String(100), nullable=True)

    # Contact
    contact_phone = Column(String(20), nullable=True)
    contact_email = Column(String(255), nullable=True)

    # Location tracking
    announced_location_id = Column(String(64), nullable=True)
    current_location_id = Column(String(64), nullable=True)
    last_location_update = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<Tenant {self.id} - {self.name} - {'open' if self.is_open else 'closed'}>"


class Product(Base):
    __tablename__ = "products"

    tenant_id = Column(String(64), primary_key=True)
    id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=False)
    price = Column(Integer, nullable=False)
    vat_rate = Column(Float, nullable=True)  # overrides the tenant rate
    available = Column(Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<Product {self.tenant_id}/{self.id} - {self.name}>"


class TruckLocation(Base):
    __tablename__ = "truck_locations"

    tenant_id = Column(String(64), primary_key=True)
    id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=False)
    address = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    not_at_location_since = Column(DateTime(timezone=True), nullable=True)


# =============================================================================
# ORDERS
# =============================================================================

class Order(Base):
    """
    Main Order table.

    Totals are computed once at creation and never change;
    ``refunded_amount`` is the only monetary column updated afterwards.
    Orders are never deleted.
    """
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "business_day", "order_number", name="uq_order_daily_number"),
    )

    id = Column(String(40), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    business_day = Column(Date, nullable=False)
    order_number = Column(Integer, nullable=False)

    status = Column(Enum(OrderStatus), default=OrderStatus.PENDING, nullable=False, index=True)
    service_type = Column(Enum(ServiceType), default=ServiceType.PICKUP, nullable=False)
    location_id = Column(String(64), nullable=True, index=True)

    # =========================================================================
    # CUSTOMER INFORMATION
    # =========================================================================
    customer_name = Column(String(100), nullable=False)
    customer_phone = Column(String(20), nullable=False)
    customer_email = Column(String(255), nullable=True)

    # =========================================================================
    # ORDER DETAILS
    # =========================================================================
    items = Column(JSON, nullable=False)
    special_instructions = Column(Text, nullable=True)
    scheduled_for = Column(DateTime(timezone=True), nullable=True)
    estimated_minutes = Column(Integer, nullable=False)

    # =========================================================================
    # PRICING
    # =========================================================================
    subtotal = Column(Integer, nullable=False)
    vat_rate = Column(Float, nullable=False)
    vat_amount = Column(Integer, nullable=False)
    discount = Column(Integer, nullable=False, default=0)
    tip = Column(Integer, nullable=False, default=0)
    total = Column(Integer, nullable=False)
    refunded_amount = Column(Integer, nullable=False, default=0)

    # =========================================================================
    # PAYMENT INFO
    # =========================================================================
    payment_method = Column(String(20), nullable=False, default="card")
    payment_intent_id = Column(String(100), nullable=True, index=True)
    payment_status = Column(String(30), nullable=False, default="unpaid")

    cancellation_reason = Column(String(100), nullable=True)
    version = Column(Integer, nullable=False, default=1)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), nullable=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    preparing_at = Column(DateTime(timezone=True), nullable=True)
    ready_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Order {self.id} #{self.order_number} - {self.tenant_id} - {self.status.value}>"


class SequenceCounter(Base):
    """Last issued order number per tenant per business day."""
    __tablename__ = "sequence_counters"

    tenant_id = Column(String(64), primary_key=True)
    business_day = Column(Date, primary_key=True)
    last_number = Column(Integer, nullable=False)
    version = Column(Integer, nullable=False, default=1)


# =============================================================================
# INVENTORY
# =============================================================================

class InventoryItem(Base):
    __tablename__ = "inventory_items"

    tenant_id = Column(String(64), primary_key=True)
    product_id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=True)
    quantity = Column(Integer, nullable=False, default=0)
    unit = Column(String(20), nullable=False, default="pcs")
    min_quantity = Column(Integer, nullable=False, default=0)
    reorder_point = Column(Integer, nullable=False, default=0)
    max_quantity = Column(Integer, nullable=True)
    level = Column(Enum(StockLevel), nullable=False, default=StockLevel.OK)
    version = Column(Integer, nullable=False, default=1)
    last_sold_at = Column(DateTime(timezone=True), nullable=True)
    last_restocked_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class InventoryMovement(Base):
    """Append-only ledger; summing ``delta`` reproduces the item quantity."""
    __tablename__ = "inventory_movements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    product_id = Column(String(64), nullable=False, index=True)
    movement_type = Column(Enum(MovementType), nullable=False)
    delta = Column(Integer, nullable=False)
    requested_quantity = Column(Integer, nullable=False)
    clamped = Column(Boolean, nullable=False, default=False)
    quantity_after = Column(Integer, nullable=False)
    order_id = Column(String(40), nullable=True, index=True)
    reason = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class InventoryCountReport(Base):
    __tablename__ = "inventory_count_reports"

    id = Column(String(40), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    total_items = Column(Integer, nullable=False)
    accurate_items = Column(Integer, nullable=False)
    accuracy = Column(Float, nullable=False)
    discrepancies = Column(JSON, nullable=False)
    unknown_products = Column(JSON, nullable=False)
    counted_by = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


# =============================================================================
# PAYMENTS
# =============================================================================

class PaymentRecord(Base):
    __tablename__ = "payment_records"

    intent_id = Column(String(100), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    order_id = Column(String(40), nullable=False, unique=True)
    amount = Column(Integer, nullable=False)  # includes the tip at creation
    tip = Column(Integer, nullable=False, default=0)
    platform_fee = Column(Integer, nullable=False, default=0)
    tip_fee_percent = Column(Float, nullable=False, default=0.0)
    captured_amount = Column(Integer, nullable=False, default=0)
    refunded_amount = Column(Integer, nullable=False, default=0)
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.REQUIRES_PAYMENT)
    currency = Column(String(3), nullable=False, default="chf")
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class PaymentRefund(Base):
    __tablename__ = "payment_refunds"

    id = Column(String(100), primary_key=True)
    intent_id = Column(String(100), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False)
    amount = Column(Integer, nullable=False)
    reason = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


# =============================================================================
# ESCALATION & COMPENSATION
# =============================================================================

class EscalationAlert(Base):
    __tablename__ = "escalation_alerts"

    order_id = Column(String(40), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    watched_status = Column(Enum(OrderStatus), nullable=False)
    severity = Column(Enum(EscalationSeverity), nullable=True)
    step_index = Column(Integer, nullable=False, default=-1)
    acknowledged = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)
    armed_at = Column(DateTime(timezone=True), nullable=False)
    last_fired_at = Column(DateTime(timezone=True), nullable=True)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)


class CompensationRecord(Base):
    """A cleanup that failed and needs manual reconciliation."""
    __tablename__ = "compensation_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(50), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False)
    order_id = Column(String(40), nullable=True)
    payload = Column(JSON, nullable=False)
    error = Column(Text, nullable=False)
    resolved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
