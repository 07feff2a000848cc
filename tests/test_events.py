"""
Tests for event contracts — the outbound OrderCreated payload and parsing
of inbound stock results into their tagged variants.
"""
import json
from datetime import datetime

import pytest

from services.order.app.aggregate import OrderItem
from services.order.app.errors import MalformedEventError
from services.order.app.events import (
    OrderCreatedEvent,
    StockRejected,
    StockReserved,
    UnrecognizedStockResult,
    parse_stock_result,
)


class TestOrderCreatedEvent:

    @pytest.mark.unit
    def test_payload_shape(self):
        event = OrderCreatedEvent(
            order_id="o-1", items=[OrderItem(product_id="p1", quantity=2, price=9.99)]
        )
        payload = event.to_payload()

        assert set(payload) == {"eventType", "orderId", "correlationId", "createdAt", "items"}
        assert payload["eventType"] == "OrderCreated"
        assert payload["items"] == [{"productId": "p1", "quantity": 2, "price": 9.99}]

    @pytest.mark.unit
    def test_correlation_id_is_fresh_and_distinct_from_order_id(self):
        first = OrderCreatedEvent(order_id="o-1", items=[])
        second = OrderCreatedEvent(order_id="o-1", items=[])
        assert first.correlation_id != second.correlation_id
        assert first.correlation_id != "o-1"

    @pytest.mark.unit
    def test_created_at_is_utc_with_z_marker(self):
        created_at = OrderCreatedEvent(order_id="o-1", items=[]).created_at
        assert created_at.endswith("Z")
        parsed = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
        assert parsed.utcoffset().total_seconds() == 0


class TestParseStockResult:

    @pytest.mark.unit
    def test_stock_reserved(self):
        result = parse_stock_result(json.dumps({
            "eventType": "StockReserved",
            "orderId": "o-1",
            "correlationId": "c-9",
            "reservedItems": [{"productId": "p1", "quantity": 2}],
            "reservedAt": "2024-01-01T00:00:00Z",
        }))
        assert result == StockReserved(
            order_id="o-1",
            correlation_id="c-9",
            reserved_at="2024-01-01T00:00:00Z",
            reserved_items=[{"productId": "p1", "quantity": 2}],
        )

    @pytest.mark.unit
    def test_stock_rejected_keeps_reason(self):
        result = parse_stock_result(
            {"eventType": "StockRejected", "orderId": "o-1", "reason": "Out of stock"}
        )
        assert isinstance(result, StockRejected)
        assert result.reason == "Out of stock"

    @pytest.mark.unit
    def test_bytes_payload(self):
        result = parse_stock_result(b'{"eventType": "StockReserved", "orderId": "o-1"}')
        assert isinstance(result, StockReserved)

    @pytest.mark.unit
    def test_unknown_event_type_is_not_an_error(self):
        result = parse_stock_result({"eventType": "StockPartiallyReserved", "orderId": "o-1"})
        assert result == UnrecognizedStockResult(
            order_id="o-1", event_type="StockPartiallyReserved"
        )

    @pytest.mark.unit
    def test_missing_event_type_is_unrecognized(self):
        result = parse_stock_result({"orderId": "o-1"})
        assert isinstance(result, UnrecognizedStockResult)
        assert result.event_type is None

    @pytest.mark.unit
    def test_extra_fields_are_ignored(self):
        result = parse_stock_result(
            {"eventType": "StockReserved", "orderId": "o-1", "warehouse": "north"}
        )
        assert isinstance(result, StockReserved)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            "[1, 2, 3]",
            None,
            {"eventType": "StockReserved"},
            {"eventType": "StockReserved", "orderId": ""},
            {"eventType": 42, "orderId": "o-1"},
        ],
    )
    def test_malformed_payloads(self, raw):
        with pytest.raises(MalformedEventError):
            parse_stock_result(raw)
