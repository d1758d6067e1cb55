import json

import pytest
from httpx import ASGITransport, AsyncClient

from fulfillment.main import app
from fulfillment.services import get_fulfillment
from tests.conftest import LOCATION, PHONE, TENANT

ORDERS = f"/api/tenants/{TENANT}/orders"


@pytest.fixture
async def client(services):
    app.dependency_overrides[get_fulfillment] = lambda: services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def order_payload(**overrides):
    payload = {
        "items": [{"product_id": "burger", "quantity": 2, "modifiers": ["no onions"]}],
        "customer": {"name": "Anna Muster", "phone": "+41 79 123 45 67", "email": ""},
        "payment_method": "card",
    }
    payload.update(overrides)
    return payload


async def test_root(client):
    response = await client.get("/")

    assert response.status_code == 200
    assert response.json()["health"] == "/health"


async def test_health_reports_components(client):
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["database"] == "healthy"
    assert data["payment_service"] == "healthy"
    assert data["notification_service"] == "healthy"
    assert data["status"] in ("operational", "degraded")


async def test_create_order(client):
    response = await client.post(ORDERS, json=order_payload())

    assert response.status_code == 201
    data = response.json()
    assert data["success"] is True
    order = data["order"]
    assert order["status"] == "pending"
    assert order["order_number"] == 100
    assert order["customer_phone"] == PHONE
    assert order["customer_email"] is None
    assert order["items"][0]["modifiers"] == ["no onions"]
    assert order["payment_status"] == "requires_payment"
    assert data["message"] == "Order #100 placed"


async def test_validation_error_body(client):
    response = await client.post(ORDERS, json=order_payload(items=[]))

    assert response.status_code == 400
    data = response.json()
    assert data["success"] is False
    assert data["error"] == "order_validation_failed"
    assert data["retryable"] is False
    assert "Order must contain at least one item" in data["context"]["errors"]


async def test_insufficient_stock_is_conflict(client):
    payload = order_payload(items=[{"product_id": "burger", "quantity": 11}])

    response = await client.post(ORDERS, json=payload)

    assert response.status_code == 409
    assert response.json()["error"] == "insufficient_stock"


async def test_unknown_order_is_404(client):
    response = await client.get(f"{ORDERS}/ord_missing")

    assert response.status_code == 404
    assert response.json()["success"] is False


async def test_transitions(client):
    order = (await client.post(ORDERS, json=order_payload())).json()["order"]
    url = f"{ORDERS}/{order['id']}/status"

    response = await client.post(url, json={"status": "ready"})
    assert response.status_code == 409
    assert response.json()["error"] == "invalid_transition"

    response = await client.post(url, json={"status": "confirmed"})
    assert response.status_code == 200
    assert response.json()["status"] == "confirmed"
    assert response.json()["version"] == order["version"] + 1

    response = await client.post(url, json={"status": "cancelled", "reason": "customer left"})
    assert response.json()["cancellation_reason"] == "customer left"


async def test_list_orders_filters_by_status(client):
    first = (await client.post(ORDERS, json=order_payload())).json()["order"]
    await client.post(ORDERS, json=order_payload())
    await client.post(f"{ORDERS}/{first['id']}/status", json={"status": "confirmed"})

    response = await client.get(ORDERS, params={"status": ["pending"]})

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    assert data["orders"][0]["status"] == "pending"


async def test_webhook_marks_order_paid_and_refund_endpoint(client, provider):
    order = (await client.post(ORDERS, json=order_payload())).json()["order"]
    event = provider.confirm_payment_intent(order["payment_intent_id"])

    response = await client.post(
        "/webhook/payments",
        content=json.dumps(event),
        headers={"Stripe-Signature": "t=0,v1=mock"},
    )
    assert response.status_code == 200
    assert response.json() == {"received": True, "order_id": order["id"]}

    paid = (await client.get(f"{ORDERS}/{order['id']}")).json()
    assert paid["payment_status"] == "paid"

    response = await client.post(f"{ORDERS}/{order['id']}/refunds", json={"amount": 500})
    assert response.status_code == 200
    assert response.json()["refunded_amount"] == 500

    response = await client.post(f"{ORDERS}/{order['id']}/tip", json={"amount": 200})
    assert response.status_code == 409
    assert response.json()["error"] == "tip_not_allowed"


async def test_webhook_rejects_garbage(client):
    response = await client.post("/webhook/payments", content=b"not json")

    assert response.status_code == 400


async def test_tip_before_payment(client):
    order = (await client.post(ORDERS, json=order_payload())).json()["order"]

    response = await client.post(f"{ORDERS}/{order['id']}/tip", json={"amount": 300})

    assert response.status_code == 200
    assert response.json()["tip"] == 300
    assert response.json()["status"] == "requires_payment"


async def test_inventory_endpoints(client):
    url = f"/api/tenants/{TENANT}/inventory/fries"

    response = await client.post(f"{url}/movements", json={"movement_type": "purchase", "quantity": 5})
    assert response.status_code == 200
    assert response.json()["quantity"] == 25

    response = await client.get(url)
    assert response.status_code == 200
    assert response.json()["quantity"] == 25
    assert response.json()["level"] == "ok"

    response = await client.post(
        f"/api/tenants/{TENANT}/inventory/counts",
        json={"counts": {"fries": 24, "burger": 10}, "counted_by": "lea"},
    )
    assert response.status_code == 200
    assert response.json()["accuracy"] == 50.0

    response = await client.get(f"/api/tenants/{TENANT}/inventory/ghost")
    assert response.status_code == 404


async def test_position_and_verify(client):
    response = await client.post(f"/api/tenants/{TENANT}/position", json={"location_id": LOCATION})
    assert response.status_code == 200
    assert response.json()["current_location_id"] == LOCATION

    response = await client.post(f"/api/tenants/{TENANT}/locations/{LOCATION}/verify")
    assert response.status_code == 200
    assert response.json()["compliant"] is True

    response = await client.post(f"/api/tenants/{TENANT}/locations/marktplatz/announce")
    assert response.json()["announced_location_id"] == "marktplatz"


async def test_escalation_acknowledge(client):
    order = (await client.post(ORDERS, json=order_payload())).json()["order"]

    response = await client.post(f"{ORDERS}/{order['id']}/escalation/ack")

    assert response.status_code == 200
    assert response.json()["acknowledged"] is True


async def test_compensations_listing(client):
    response = await client.get(f"/api/tenants/{TENANT}/compensations")

    assert response.status_code == 200
    assert response.json() == {"total": 0, "records": []}
