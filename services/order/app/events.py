"""
Order Service — イベント定義

送信: OrderCreated (order.created トピック)
受信: StockReserved / StockRejected (stock.results トピック、在庫サービスが発行)

受信イベントは在庫サービス側のスキーマなので、境界で一度だけ解釈して
StockReserved | StockRejected | UnrecognizedStockResult のいずれかに変換する。
以降の処理は文字列の eventType を見ない。
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .aggregate import OrderItem
from .errors import MalformedEventError

ORDER_CREATED = "OrderCreated"
STOCK_RESERVED = "StockReserved"
STOCK_REJECTED = "StockRejected"


def utc_timestamp() -> str:
    """UTC の ISO-8601 文字列（末尾 Z）"""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class OrderCreatedEvent(BaseModel):
    """注文が作成された（在庫サービスへの通知）"""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    event_type: Literal["OrderCreated"] = ORDER_CREATED
    order_id: str
    correlation_id: str = Field(default_factory=lambda: str(uuid4()))
    created_at: str = Field(default_factory=utc_timestamp)
    items: list[OrderItem]

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class StockResultEvent(BaseModel):
    """在庫サービスから届く結果イベントの生の形（未知のフィールドは無視）"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event_type: str | None = None
    order_id: str | None = None
    correlation_id: str | None = None
    reason: str | None = None
    reserved_items: list[dict[str, Any]] | None = None
    reserved_at: str | None = None
    rejected_at: str | None = None


# ── 解釈済みの在庫結果 (tagged variant) ─────────


@dataclass(frozen=True)
class StockReserved:
    order_id: str
    correlation_id: str | None = None
    reserved_at: str | None = None
    reserved_items: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class StockRejected:
    order_id: str
    correlation_id: str | None = None
    reason: str | None = None
    rejected_at: str | None = None


@dataclass(frozen=True)
class UnrecognizedStockResult:
    order_id: str
    event_type: str | None
    correlation_id: str | None = None


StockResult = StockReserved | StockRejected | UnrecognizedStockResult


def parse_stock_result(raw: str | bytes | dict) -> StockResult:
    """
    受信ペイロードを在庫結果に変換する。

    JSON として読めない・オブジェクトでない・orderId が無い場合は
    MalformedEventError。eventType が未知の場合は例外にせず
    UnrecognizedStockResult を返す。
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise MalformedEventError(f"Payload is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise MalformedEventError(
            f"Payload must be a JSON object, got {type(raw).__name__}"
        )

    try:
        event = StockResultEvent.model_validate(raw)
    except ValidationError as exc:
        raise MalformedEventError(f"Invalid stock result: {exc}") from exc

    if not event.order_id:
        raise MalformedEventError("Stock result has no orderId")

    if event.event_type == STOCK_RESERVED:
        return StockReserved(
            order_id=event.order_id,
            correlation_id=event.correlation_id,
            reserved_at=event.reserved_at,
            reserved_items=event.reserved_items or [],
        )
    if event.event_type == STOCK_REJECTED:
        return StockRejected(
            order_id=event.order_id,
            correlation_id=event.correlation_id,
            reason=event.reason,
            rejected_at=event.rejected_at,
        )
    return UnrecognizedStockResult(
        order_id=event.order_id,
        event_type=event.event_type,
        correlation_id=event.correlation_id,
    )
