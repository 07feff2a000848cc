"""
Order Service — FastAPI エントリーポイント

注文の作成は同期（201 で即時に返す）、確定は非同期。
在庫サービスの結果は stock.results ストリームから
バックグラウンドのサブスクライバーが受け取り、コーディネーターに渡す。

┌──────────┐  POST /api/v1/orders  ┌───────────────┐  order.created  ┌───────────────────┐
│  Client  │ ─────────────────────▶│ Order Service │ ───── Redis ──▶ │ Inventory Service │
└──────────┘                       │               │ ◀──── Redis ─── │                   │
                                   └───────────────┘  stock.results  └───────────────────┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from . import store
from .aggregate import OrderItem
from .channel import EventChannel
from .config import (
    CLAIM_IDLE_MS,
    CONSUMER_NAME,
    DATABASE_URL,
    REDIS_URL,
    RESULT_QUEUE_SIZE,
    RESULT_WORKERS,
    STOCK_RESULTS_GROUP,
    STOCK_RESULTS_TOPIC,
    configure_logging,
)
from .coordinator import OrderCoordinator
from .errors import InvalidOrderError, OrderNotFoundError, OrderServiceError
from .subscriber import ResultConsumer

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT = 10.0

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None
coordinator: OrderCoordinator | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時にスキーマ作成・依存の組み立て・サブスクライバー起動を行う。"""
    global redis_pool, coordinator
    configure_logging()
    await store.create_schema(engine)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)

    channel = EventChannel(redis_pool, claim_idle_ms=CLAIM_IDLE_MS)
    coordinator = OrderCoordinator(store.OrderStore(async_session), channel)
    consumer = ResultConsumer(
        channel,
        coordinator,
        topic=STOCK_RESULTS_TOPIC,
        group=STOCK_RESULTS_GROUP,
        consumer=CONSUMER_NAME,
        workers=RESULT_WORKERS,
        queue_size=RESULT_QUEUE_SIZE,
    )

    shutdown_event = asyncio.Event()
    consumer_task = asyncio.create_task(consumer.run(shutdown_event))
    consumer_task.add_done_callback(_log_consumer_exit)
    yield
    # 受け取り済みの結果を処理し終えるまで待つ。間に合わなければキャンセル
    shutdown_event.set()
    try:
        if not consumer_task.done():
            await asyncio.wait_for(consumer_task, timeout=SHUTDOWN_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning("Result consumer did not drain within %ss", SHUTDOWN_TIMEOUT)
    except Exception:
        # 停止待ちの間に異常終了した場合。内容は _log_consumer_exit が記録済み
        pass
    finally:
        await redis_pool.aclose()
        await engine.dispose()


def _log_consumer_exit(task: asyncio.Task) -> None:
    # 異常終了はここで記録する（shutdown 時には再送出しない）
    if not task.cancelled() and task.exception() is not None:
        logger.error(
            "Result consumer stopped unexpectedly", exc_info=task.exception()
        )


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── Request / Response Models ────────────────────


class ShippingAddress(BaseModel):
    city: str | None = None
    street: str | None = None
    zip: str | None = None


class CreateOrderRequest(BaseModel):
    # shippingAddress / paymentReference は受け付けるが使わない
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    customer_id: str | None = None
    items: list[OrderItem] = Field(min_length=1)
    shipping_address: ShippingAddress | None = None
    payment_reference: str | None = None


def order_response(
    status_code: int, order_id: str | None, status: str, message: str
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"orderId": order_id, "status": status, "message": message},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'][1:]) or 'body'}: {err['msg']}"
        for err in exc.errors()
    )
    return order_response(400, None, "INVALID", f"Invalid order request: {problems}")


# ── Command Endpoints ────────────────────────────


@app.post("/api/v1/orders", status_code=201)
async def create_order(req: CreateOrderRequest):
    """注文作成 — PENDING で保存し OrderCreated を発行する"""
    try:
        receipt = await coordinator.create_order(req.items, req.customer_id)
    except InvalidOrderError as e:
        return order_response(400, None, "INVALID", str(e))
    except OrderServiceError as e:
        return order_response(500, None, "ERROR", f"Failed to create order: {e}")
    return order_response(201, receipt.order_id, receipt.status.value, receipt.message)


# ── Query Endpoints ──────────────────────────────


@app.get("/api/v1/orders")
async def list_orders():
    """全注文を取得"""
    try:
        orders = await coordinator.list_orders()
    except OrderServiceError as e:
        return order_response(500, None, "ERROR", f"Failed to retrieve orders: {e}")
    return [order.to_record() for order in orders]


@app.get("/api/v1/orders/{order_id}")
async def get_order(order_id: str):
    """指定注文を取得（キャンセル時は reason 付き）"""
    try:
        order = await coordinator.get_order(order_id)
    except OrderNotFoundError:
        return order_response(404, order_id, "NOT_FOUND", "Order not found")
    except OrderServiceError as e:
        return order_response(500, order_id, "ERROR", f"Failed to retrieve order: {e}")
    return order.to_summary()


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": "order-service",
        "metrics": coordinator.metrics.to_dict() if coordinator else {},
    }
