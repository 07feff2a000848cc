"""
Order Service — 注文ライフサイクル・コーディネーター

注文の作成と、在庫サービスから非同期に届く結果イベントによる
状態遷移を受け持つ。

  ┌────────┐ create_order ┌─────────────┐  order.created  ┌───────────┐
  │  API   │─────────────▶│ Coordinator │────────────────▶│ Inventory │
  └────────┘              │             │◀────────────────│  Service  │
                          └──────┬──────┘  stock.results  └───────────┘
                                 │ get / put
                          ┌──────▼──────┐
                          │ Order Store │
                          └─────────────┘

結果イベントは at-least-once で届くため、以下を保証する:
- 遷移は PENDING からのみ。終端状態への再適用は異常(anomaly)として破棄
- 同一 order_id の read-modify-write はプロセス内でキーごとのロックで直列化し、
  プロセス間はストアの version チェックで検出して読み直す
- handle_result / handle_message は例外を呼び出し元（メッセージ配送）に投げない
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from uuid import uuid4

from pydantic import ValidationError

from .aggregate import Order, OrderItem, OrderStatus
from .channel import EventChannel
from .config import ORDER_CREATED_TOPIC
from .errors import (
    EventPublishError,
    InvalidOrderError,
    InvalidTransitionError,
    MalformedEventError,
    OrderNotFoundError,
    StaleOrderError,
)
from .events import (
    OrderCreatedEvent,
    StockRejected,
    StockReserved,
    StockResult,
    UnrecognizedStockResult,
    parse_stock_result,
)
from .metrics import CoordinatorMetrics
from .store import OrderStore

logger = logging.getLogger(__name__)

ORDER_ACCEPTED_MESSAGE = "Order received. Inventory check in progress."
MAX_WRITE_ATTEMPTS = 3


def new_id() -> str:
    return str(uuid4())


@dataclass(frozen=True)
class OrderReceipt:
    order_id: str
    status: OrderStatus
    message: str


class KeyedLocks:
    """キーごとの asyncio.Lock。待ち手がいなくなったロックは破棄する。"""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class OrderCoordinator:
    def __init__(
        self,
        store: OrderStore,
        channel: EventChannel,
        *,
        created_topic: str = ORDER_CREATED_TOPIC,
        metrics: CoordinatorMetrics | None = None,
    ) -> None:
        self.store = store
        self.channel = channel
        self.created_topic = created_topic
        self.metrics = metrics or CoordinatorMetrics()
        self.locks = KeyedLocks()

    # ── Command 側 ───────────────────────────────

    async def create_order(
        self,
        items: Sequence[OrderItem | Mapping],
        customer_id: str | None = None,
    ) -> OrderReceipt:
        """
        注文作成

        1. order_id を採番（customer_id が空なら同様に採番）
        2. PENDING でストアに保存
        3. OrderCreated イベントを発行（新しい correlationId 付き）

        発行に失敗しても保存済みの注文はロールバックしない。
        PENDING のまま在庫サービスに通知されない注文としてメトリクスに残し、
        EventPublishError を呼び出し元に返す。
        """
        order_items = _validate_items(items)
        order = Order(
            order_id=new_id(),
            customer_id=customer_id or new_id(),
            items=order_items,
        )

        stored = await self.store.put(order)
        logger.info(
            "Order created: %s customerId=%s status=%s",
            stored.order_id, stored.customer_id, stored.status.value,
        )

        event = OrderCreatedEvent(order_id=stored.order_id, items=stored.items)
        try:
            await self.channel.publish(self.created_topic, event.to_payload())
        except EventPublishError:
            self.metrics.record_publish_failure(stored.order_id)
            logger.exception(
                "OrderCreated publish failed; order %s left PENDING without "
                "inventory notification",
                stored.order_id,
            )
            raise

        self.metrics.record_created()
        logger.info(
            "OrderCreated published: %s correlationId=%s",
            stored.order_id, event.correlation_id,
        )
        return OrderReceipt(stored.order_id, stored.status, ORDER_ACCEPTED_MESSAGE)

    # ── Query 側 ─────────────────────────────────

    async def get_order(self, order_id: str) -> Order:
        order = await self.store.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def list_orders(self) -> list[Order]:
        return await self.store.list_all()

    # ── 在庫結果イベント ─────────────────────────

    async def handle_message(self, raw) -> None:
        """受信ペイロードを解釈して handle_result に渡す。例外は投げない。"""
        try:
            result = parse_stock_result(raw)
        except MalformedEventError as e:
            self.metrics.record_anomaly("malformed")
            logger.warning("Discarding malformed stock result: %s", e)
            return
        await self.handle_result(result)

    async def handle_result(self, result: StockResult) -> None:
        """在庫結果を注文に適用する。例外は投げない。"""
        logger.info(
            "Processing stock result: orderId=%s type=%s correlationId=%s",
            result.order_id, type(result).__name__, result.correlation_id,
        )
        try:
            async with self.locks.hold(result.order_id):
                await self._apply(result)
        except Exception:
            self.metrics.record_anomaly("fault")
            logger.exception(
                "Failed to apply stock result for order %s", result.order_id
            )

    async def _apply(self, result: StockResult) -> None:
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            order = await self.store.get(result.order_id)
            if order is None:
                self.metrics.record_anomaly("not_found")
                logger.warning(
                    "Order not found for stock result: %s", result.order_id
                )
                return

            if isinstance(result, UnrecognizedStockResult):
                self.metrics.record_anomaly("unrecognized")
                logger.warning(
                    "Unknown stock result type %r for order %s",
                    result.event_type, result.order_id,
                )
                return

            try:
                if isinstance(result, StockReserved):
                    order.confirm()
                elif isinstance(result, StockRejected):
                    order.cancel(result.reason)
                else:
                    raise TypeError(f"Unsupported stock result: {result!r}")
            except InvalidTransitionError as e:
                kind = "duplicate" if e.current == e.target else "conflict"
                self.metrics.record_anomaly(kind)
                logger.warning(
                    "Ignoring %s stock result for order %s: already %s",
                    kind, e.order_id, e.current,
                )
                return

            try:
                await self.store.put(order)
            except StaleOrderError:
                logger.info(
                    "Order %s changed concurrently (attempt %d/%d), re-reading",
                    order.order_id, attempt, MAX_WRITE_ATTEMPTS,
                )
                continue

            if order.status is OrderStatus.CONFIRMED:
                self.metrics.record_confirmed()
                logger.info(
                    "Order %s CONFIRMED at %s", order.order_id, result.reserved_at
                )
            else:
                self.metrics.record_cancelled()
                logger.warning(
                    "Order %s CANCELLED at %s reason=%s",
                    order.order_id, result.rejected_at, order.reason,
                )
            return

        raise StaleOrderError(result.order_id, order.version)


def _validate_items(items: Sequence[OrderItem | Mapping]) -> list[OrderItem]:
    if not items:
        raise InvalidOrderError("Order must contain at least one item")
    try:
        return [
            item if isinstance(item, OrderItem) else OrderItem.model_validate(item)
            for item in items
        ]
    except ValidationError as e:
        raise InvalidOrderError(f"Invalid order item: {e}") from e
