"""
Tests for the HTTP surface — status codes and the exact JSON shapes of
/api/v1/orders.
"""
import pytest
from httpx import ASGITransport, AsyncClient

from services.order.app import main
from services.order.app.errors import EventPublishError, OrderStoreError
from services.order.app.events import StockRejected, StockReserved

ORDER_BODY = {
    "customerId": "cust-1",
    "items": [{"productId": "p1", "quantity": 2, "price": 9.99}],
    "shippingAddress": {"city": "Lisbon", "street": "Rua A", "zip": "1000"},
    "paymentReference": "pay-123",
}


@pytest.fixture
async def client(coordinator, monkeypatch):
    """HTTP client against the app with the test coordinator wired in."""
    monkeypatch.setattr(main, "coordinator", coordinator)
    transport = ASGITransport(app=main.app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


async def create(client, body=ORDER_BODY) -> str:
    resp = await client.post("/api/v1/orders", json=body)
    assert resp.status_code == 201
    return resp.json()["orderId"]


@pytest.mark.integration
async def test_create_order_returns_201(client):
    resp = await client.post("/api/v1/orders", json=ORDER_BODY)

    assert resp.status_code == 201
    body = resp.json()
    assert set(body) == {"orderId", "status", "message"}
    assert body["status"] == "PENDING"
    assert body["message"] == "Order received. Inventory check in progress."


@pytest.mark.integration
async def test_create_order_without_customer(client, coordinator):
    order_id = await create(client, {"items": ORDER_BODY["items"]})
    order = await coordinator.get_order(order_id)
    assert order.customer_id


@pytest.mark.integration
@pytest.mark.parametrize(
    "body",
    [
        {"items": []},
        {},
        {"items": [{"productId": "p1", "quantity": 0, "price": 1}]},
        {"items": [{"productId": "p1", "quantity": 1, "price": -5}]},
    ],
)
async def test_invalid_request_returns_400(client, channel, body):
    resp = await client.post("/api/v1/orders", json=body)

    assert resp.status_code == 400
    assert resp.json()["orderId"] is None
    assert resp.json()["status"] == "INVALID"
    channel.publish.assert_not_awaited()


@pytest.mark.integration
async def test_publish_failure_returns_500(client, channel):
    channel.publish.side_effect = EventPublishError("order.created", "refused")

    resp = await client.post("/api/v1/orders", json=ORDER_BODY)

    assert resp.status_code == 500
    body = resp.json()
    assert body["orderId"] is None
    assert body["status"] == "ERROR"
    assert body["message"].startswith("Failed to create order")


@pytest.mark.integration
async def test_scenario_reserved_order_is_confirmed(client, coordinator):
    order_id = await create(client)

    await coordinator.handle_result(StockReserved(order_id=order_id))
    resp = await client.get(f"/api/v1/orders/{order_id}")

    assert resp.status_code == 200
    assert resp.json() == {
        "orderId": order_id,
        "status": "CONFIRMED",
        "items": [{"productId": "p1", "quantity": 2, "price": 9.99}],
    }


@pytest.mark.integration
async def test_scenario_rejected_order_is_cancelled(client, coordinator):
    order_id = await create(client)

    await coordinator.handle_message(
        f'{{"eventType": "StockRejected", "orderId": "{order_id}", "reason": "Out of stock"}}'
    )
    resp = await client.get(f"/api/v1/orders/{order_id}")

    assert resp.json()["status"] == "CANCELLED"
    assert resp.json()["reason"] == "Out of stock"


@pytest.mark.integration
async def test_scenario_unknown_result_creates_nothing(client, coordinator):
    await coordinator.handle_result(StockRejected(order_id="ghost"))

    resp = await client.get("/api/v1/orders")
    assert resp.status_code == 200
    assert resp.json() == []


@pytest.mark.integration
async def test_scenario_unknown_order_returns_404(client):
    resp = await client.get("/api/v1/orders/unknown-id")

    assert resp.status_code == 404
    assert resp.json() == {
        "orderId": "unknown-id",
        "status": "NOT_FOUND",
        "message": "Order not found",
    }


@pytest.mark.integration
async def test_list_orders_returns_full_records(client):
    order_id = await create(client)

    resp = await client.get("/api/v1/orders")

    assert resp.status_code == 200
    [record] = resp.json()
    assert record["orderId"] == order_id
    assert record["customerId"] == "cust-1"
    assert record["status"] == "PENDING"
    assert record["items"] == ORDER_BODY["items"]
    assert "createdAt" in record and "updatedAt" in record
    assert "reason" not in record


@pytest.mark.integration
async def test_store_failure_on_read_returns_500(client, coordinator, monkeypatch):
    async def broken_get(order_id):
        raise OrderStoreError("db down")

    monkeypatch.setattr(coordinator.store, "get", broken_get)

    resp = await client.get("/api/v1/orders/o-1")

    assert resp.status_code == 500
    assert resp.json()["orderId"] == "o-1"
    assert resp.json()["status"] == "ERROR"


@pytest.mark.integration
async def test_health_reports_metrics(client):
    await create(client)

    resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json()["service"] == "order-service"
    assert resp.json()["metrics"]["orders_created"] == 1
