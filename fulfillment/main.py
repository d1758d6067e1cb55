"""
FastAPI Application Entry Point

Food-Truck Order Fulfillment - multi-tenant orchestration service.
Supports both Mock services (development) and Real APIs (production).

Endpoints:
    - POST /api/tenants/{tenant_id}/orders: Create order
    - GET  /api/tenants/{tenant_id}/orders: List orders
    - POST /api/tenants/{tenant_id}/orders/{order_id}/status: Transition order
    - POST /api/tenants/{tenant_id}/inventory/counts: Reconcile a physical count
    - POST /api/tenants/{tenant_id}/position: Truck position report
    - POST /webhook/payments: Payment provider events
    - GET  /health: System health check
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
import redis

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from fulfillment.core.config import get_settings, setup_logging
from fulfillment.core.exceptions import FulfillmentError
from fulfillment.database import engine, init_db
from fulfillment.models import OrderStatus
from fulfillment.schemas import (
    CountReportResponse,
    CountRequest,
    EscalationAlertResponse,
    ErrorResponse,
    HealthResponse,
    InventoryItemResponse,
    MovementRequest,
    MovementResponse,
    OrderCreate,
    OrderCreateResponse,
    OrderListResponse,
    OrderResponse,
    PaymentRecordResponse,
    PositionReport,
    PositionResponse,
    RefundRequest,
    RefundResponse,
    TipRequest,
    TransitionRequest,
    VerifyLocationResponse,
)
from fulfillment.services import Fulfillment, get_fulfillment
from fulfillment.services.escalation import AsyncioEscalationScheduler
from fulfillment.services.orders import CartLine, CustomerInfo

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚚 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    await init_db()
    logger.info("✅ Database initialized")

    services = get_fulfillment()
    logger.info(f"✅ Payment Service: {services.provider.provider_name}")
    logger.info(f"✅ Notification Service: {services.notifier.provider_name}")
    logger.info(f"✅ Escalation Scheduler: {type(services.scheduler).__name__}")

    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    if isinstance(services.scheduler, AsyncioEscalationScheduler):
        await services.scheduler.shutdown()
    await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Multi-tenant order fulfillment for food trucks: order lifecycle, "
        "inventory ledger, payments with platform fees, stalled-order "
        "escalation and location compliance."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    services: Fulfillment = Depends(get_fulfillment),
) -> HealthResponse:
    """Verify all system components are operational."""

    db_status = "healthy"
    try:
        async with services.session_factory() as session:
            await session.execute(select(func.now()))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    redis_status = "healthy"
    try:
        r = redis.Redis.from_url(settings.redis_url, socket_timeout=2)
        r.ping()
        r.close()
    except Exception as e:
        redis_status = f"unhealthy: {str(e)}"
        logger.error(f"Redis health check failed: {e}")

    payment_status = "healthy" if await services.provider.health_check() else "unhealthy"
    notification_status = "healthy" if await services.notifier.health_check() else "unhealthy"

    overall = "operational" if all(
        s == "healthy" for s in [db_status, redis_status, payment_status, notification_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        payment_service=payment_status,
        notification_service=notification_status,
        environment=settings.env_mode.value,
        timestamp=datetime.now(),
    )


# =============================================================================
# ORDER ENDPOINTS
# =============================================================================

@app.post(
    "/api/tenants/{tenant_id}/orders",
    response_model=OrderCreateResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Create Order",
)
async def create_order(
    tenant_id: str,
    order_data: OrderCreate,
    services: Fulfillment = Depends(get_fulfillment),
) -> OrderCreateResponse:
    """
    Create a new order.

    Validates the cart, assigns the daily order number, reserves stock and
    opens the payment intent for card orders. A failed payment intent does
    not fail the order; the client can retry it via ``/payment-intent``.
    """
    logger.info(f"Creating order for tenant {tenant_id}: {len(order_data.items)} line(s)")

    order = await services.orders.create(
        tenant_id,
        [CartLine(item.product_id, item.quantity, item.modifiers) for item in order_data.items],
        CustomerInfo(order_data.customer.name, order_data.customer.phone, order_data.customer.email),
        service_type=order_data.service_type,
        location_id=order_data.location_id,
        payment_method=order_data.payment_method,
        scheduled_for=order_data.scheduled_for,
        special_instructions=order_data.special_instructions,
        discount=order_data.discount,
        tip=order_data.tip,
    )

    return OrderCreateResponse(
        message=f"Order #{order.order_number} placed",
        order=OrderResponse.model_validate(order),
    )


@app.get(
    "/api/tenants/{tenant_id}/orders",
    response_model=OrderListResponse,
    tags=["Orders"],
    summary="List Orders",
)
async def list_orders(
    tenant_id: str,
    status: Optional[List[OrderStatus]] = Query(None),
    location_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    services: Fulfillment = Depends(get_fulfillment),
) -> OrderListResponse:
    """Newest first, optionally filtered by status and location."""
    orders = await services.orders.list_orders(
        tenant_id, statuses=status, location_id=location_id, limit=limit,
    )
    return OrderListResponse(
        total=len(orders),
        orders=[OrderResponse.model_validate(order) for order in orders],
    )


@app.get(
    "/api/tenants/{tenant_id}/orders/{order_id}",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def get_order(
    tenant_id: str,
    order_id: str,
    services: Fulfillment = Depends(get_fulfillment),
) -> OrderResponse:
    order = await services.orders.get_order(tenant_id, order_id)
    return OrderResponse.model_validate(order)


@app.post(
    "/api/tenants/{tenant_id}/orders/{order_id}/status",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Transition Order",
)
async def transition_order(
    tenant_id: str,
    order_id: str,
    body: TransitionRequest,
    services: Fulfillment = Depends(get_fulfillment),
) -> OrderResponse:
    """Move the order along its lifecycle. Invalid moves return 409."""
    order = await services.orders.transition(tenant_id, order_id, body.status, reason=body.reason)
    return OrderResponse.model_validate(order)


@app.post(
    "/api/tenants/{tenant_id}/orders/{order_id}/payment-intent",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Payments"],
)
async def retry_payment_intent(
    tenant_id: str,
    order_id: str,
    services: Fulfillment = Depends(get_fulfillment),
) -> OrderResponse:
    order = await services.orders.ensure_payment_intent(tenant_id, order_id)
    return OrderResponse.model_validate(order)


@app.post(
    "/api/tenants/{tenant_id}/orders/{order_id}/tip",
    response_model=PaymentRecordResponse,
    responses=ERROR_RESPONSES,
    tags=["Payments"],
)
async def add_tip(
    tenant_id: str,
    order_id: str,
    body: TipRequest,
    services: Fulfillment = Depends(get_fulfillment),
) -> PaymentRecordResponse:
    """Tips are accepted until the payment has been confirmed."""
    record = await services.orders.add_tip(tenant_id, order_id, body.amount)
    return PaymentRecordResponse.model_validate(record)


@app.post(
    "/api/tenants/{tenant_id}/orders/{order_id}/refunds",
    response_model=RefundResponse,
    responses=ERROR_RESPONSES,
    tags=["Payments"],
)
async def refund_order(
    tenant_id: str,
    order_id: str,
    body: RefundRequest,
    services: Fulfillment = Depends(get_fulfillment),
) -> RefundResponse:
    result = await services.orders.refund(tenant_id, order_id, amount=body.amount, reason=body.reason)
    return RefundResponse(**result)


@app.post(
    "/api/tenants/{tenant_id}/orders/{order_id}/escalation/ack",
    response_model=EscalationAlertResponse,
    responses=ERROR_RESPONSES,
    tags=["Escalation"],
)
async def acknowledge_escalation(
    tenant_id: str,
    order_id: str,
    services: Fulfillment = Depends(get_fulfillment),
) -> EscalationAlertResponse:
    alert = await services.orders.acknowledge_escalation(tenant_id, order_id)
    return EscalationAlertResponse.model_validate(alert)


# =============================================================================
# INVENTORY ENDPOINTS
# =============================================================================

@app.post(
    "/api/tenants/{tenant_id}/inventory/counts",
    response_model=CountReportResponse,
    responses=ERROR_RESPONSES,
    tags=["Inventory"],
    summary="Reconcile Physical Count",
)
async def reconcile_inventory(
    tenant_id: str,
    body: CountRequest,
    services: Fulfillment = Depends(get_fulfillment),
) -> CountReportResponse:
    report = await services.inventory.reconcile(tenant_id, body.counts, counted_by=body.counted_by)
    return CountReportResponse.model_validate(report)


@app.post(
    "/api/tenants/{tenant_id}/inventory/{product_id}/movements",
    response_model=MovementResponse,
    responses=ERROR_RESPONSES,
    tags=["Inventory"],
)
async def record_movement(
    tenant_id: str,
    product_id: str,
    body: MovementRequest,
    services: Fulfillment = Depends(get_fulfillment),
) -> MovementResponse:
    quantity = await services.inventory.apply(
        tenant_id, product_id, body.quantity, body.movement_type, reason=body.reason,
    )
    return MovementResponse(product_id=product_id, quantity=quantity)


@app.get(
    "/api/tenants/{tenant_id}/inventory/{product_id}",
    response_model=InventoryItemResponse,
    responses=ERROR_RESPONSES,
    tags=["Inventory"],
)
async def get_inventory_item(
    tenant_id: str,
    product_id: str,
    services: Fulfillment = Depends(get_fulfillment),
) -> InventoryItemResponse:
    item = await services.inventory.get_item(tenant_id, product_id)
    return InventoryItemResponse.model_validate(item)


# =============================================================================
# LOCATION ENDPOINTS
# =============================================================================

@app.post(
    "/api/tenants/{tenant_id}/position",
    response_model=PositionResponse,
    responses=ERROR_RESPONSES,
    tags=["Location"],
)
async def report_position(
    tenant_id: str,
    body: PositionReport,
    services: Fulfillment = Depends(get_fulfillment),
) -> PositionResponse:
    tenant = await services.locations.report_position(tenant_id, body.location_id, at=body.reported_at)
    return PositionResponse(
        tenant_id=tenant.id,
        current_location_id=tenant.current_location_id,
        last_location_update=tenant.last_location_update,
    )


@app.post(
    "/api/tenants/{tenant_id}/locations/{location_id}/announce",
    responses=ERROR_RESPONSES,
    tags=["Location"],
)
async def announce_location(
    tenant_id: str,
    location_id: str,
    services: Fulfillment = Depends(get_fulfillment),
) -> dict[str, Any]:
    tenant = await services.locations.announce(tenant_id, location_id)
    return {"success": True, "tenant_id": tenant.id, "announced_location_id": tenant.announced_location_id}


@app.post(
    "/api/tenants/{tenant_id}/locations/{location_id}/verify",
    response_model=VerifyLocationResponse,
    responses=ERROR_RESPONSES,
    tags=["Location"],
    summary="Verify Location",
)
async def verify_location(
    tenant_id: str,
    location_id: str,
    services: Fulfillment = Depends(get_fulfillment),
) -> VerifyLocationResponse:
    """
    Check the truck against its announced location. A breach closes the
    tenant and cancels the affected orders.
    """
    compliant = await services.locations.verify(tenant_id, location_id)
    return VerifyLocationResponse(tenant_id=tenant_id, location_id=location_id, compliant=compliant)


@app.get(
    "/api/tenants/{tenant_id}/compensations",
    tags=["Operations"],
    summary="Pending Compensations",
)
async def list_compensations(
    tenant_id: str,
    services: Fulfillment = Depends(get_fulfillment),
) -> dict[str, Any]:
    """Cleanups that failed and still need manual reconciliation."""
    records = await services.compensations.pending(tenant_id)
    return {
        "total": len(records),
        "records": [
            {
                "id": r.id,
                "kind": r.kind,
                "order_id": r.order_id,
                "payload": r.payload,
                "error": r.error,
                "created_at": r.created_at.isoformat(),
            }
            for r in records
        ],
    }


# =============================================================================
# PAYMENT WEBHOOK
# =============================================================================

@app.post(
    "/webhook/payments",
    tags=["Payments"],
    summary="Payment Provider Webhook",
)
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    services: Fulfillment = Depends(get_fulfillment),
) -> dict[str, Any]:
    """
    Handle payment intent events from the provider.

    Configure this URL in the Stripe dashboard:
        https://your-domain.com/webhook/payments
    """
    body = await request.body()
    event = await services.provider.verify_webhook(body, stripe_signature or "")
    if event is None:
        raise HTTPException(status_code=400, detail="Invalid webhook payload or signature")

    logger.info(f"Payment webhook received: {event.get('type', 'unknown')}")
    order_id = await services.orders.handle_payment_event(event)
    return {"received": True, "order_id": order_id}


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(FulfillmentError)
async def fulfillment_exception_handler(request: Request, exc: FulfillmentError) -> JSONResponse:
    """Domain errors carry their own status code and retry hint."""
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
            "retryable": False,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "fulfillment.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
    )
