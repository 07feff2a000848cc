"""
Order Service — 注文ストア

注文レコードの get / put / list_all だけを提供する。
明細は order_items テーブルに正規化し、position で順序を保つ。

put はレコード全体の上書きで、version 列による楽観的ロックを行う:
  version == 0  → INSERT（同じ order_id があれば DuplicateOrderError）
  version >= 1  → UPDATE ... WHERE version = :expected
                  （0 行更新なら StaleOrderError = 読み出し後に誰かが書いた）
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .aggregate import Order, OrderItem, OrderStatus
from .errors import DuplicateOrderError, OrderStoreError, StaleOrderError

logger = logging.getLogger(__name__)

metadata = MetaData()

orders_table = Table(
    "orders",
    metadata,
    Column("order_id", String(64), primary_key=True),
    Column("customer_id", String(255), nullable=False),
    Column("status", String(16), nullable=False),
    Column("reason", Text, nullable=True),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_items_table = Table(
    "order_items",
    metadata,
    Column(
        "order_id",
        String(64),
        ForeignKey("orders.order_id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("position", Integer, primary_key=True),
    Column("product_id", String(255), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("price", Numeric(12, 2, asdecimal=False), nullable=False),
)


async def create_schema(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する（起動時に1回）。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    logger.info("Order tables created (or already exist)")


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite はタイムゾーンを保持しないので UTC として扱う
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class OrderStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, order_id: str) -> Order | None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(orders_table).where(orders_table.c.order_id == order_id)
                )
                row = result.fetchone()
                if row is None:
                    return None
                items = await self._load_items(session, [order_id])
        except SQLAlchemyError as exc:
            raise OrderStoreError(f"Failed to load order {order_id}: {exc}") from exc
        return self._to_order(row, items[order_id])

    async def list_all(self) -> list[Order]:
        """全注文を返す。並び順は指定しない（ストアの格納順）。"""
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(orders_table))
                rows = result.fetchall()
                items = await self._load_items(session)
        except SQLAlchemyError as exc:
            raise OrderStoreError(f"Failed to list orders: {exc}") from exc
        return [self._to_order(row, items[row.order_id]) for row in rows]

    async def put(self, order: Order) -> Order:
        """
        注文を保存し、保存後のスナップショット（新しい version と
        タイムスタンプ付き）を返す。引数の order は変更しない。
        """
        now = datetime.now(timezone.utc)
        new_version = order.version + 1
        created_at = order.created_at or now

        try:
            async with self._session_factory() as session, session.begin():
                if order.version == 0:
                    await session.execute(
                        insert(orders_table).values(
                            order_id=order.order_id,
                            customer_id=order.customer_id,
                            status=order.status.value,
                            reason=order.reason,
                            version=new_version,
                            created_at=created_at,
                            updated_at=now,
                        )
                    )
                else:
                    result = await session.execute(
                        update(orders_table)
                        .where(
                            orders_table.c.order_id == order.order_id,
                            orders_table.c.version == order.version,
                        )
                        .values(
                            customer_id=order.customer_id,
                            status=order.status.value,
                            reason=order.reason,
                            version=new_version,
                            updated_at=now,
                        )
                    )
                    if result.rowcount != 1:
                        raise StaleOrderError(order.order_id, order.version)
                    await session.execute(
                        delete(order_items_table).where(
                            order_items_table.c.order_id == order.order_id
                        )
                    )

                if order.items:
                    await session.execute(
                        insert(order_items_table),
                        [
                            {
                                "order_id": order.order_id,
                                "position": position,
                                "product_id": item.product_id,
                                "quantity": item.quantity,
                                "price": item.price,
                            }
                            for position, item in enumerate(order.items)
                        ],
                    )
        except IntegrityError as exc:
            if order.version == 0:
                raise DuplicateOrderError(order.order_id) from exc
            raise OrderStoreError(
                f"Failed to save order {order.order_id}: {exc}"
            ) from exc
        except SQLAlchemyError as exc:
            raise OrderStoreError(
                f"Failed to save order {order.order_id}: {exc}"
            ) from exc

        return order.model_copy(
            deep=True,
            update={
                "version": new_version,
                "created_at": created_at,
                "updated_at": now,
            },
        )

    # ── 内部ヘルパー ─────────────────────────────

    async def _load_items(
        self, session: AsyncSession, order_ids: list[str] | None = None
    ) -> dict[str, list[OrderItem]]:
        query = select(order_items_table).order_by(
            order_items_table.c.order_id, order_items_table.c.position
        )
        if order_ids is not None:
            query = query.where(order_items_table.c.order_id.in_(order_ids))
        result = await session.execute(query)

        items: dict[str, list[OrderItem]] = defaultdict(list)
        for row in result.fetchall():
            items[row.order_id].append(
                OrderItem(
                    product_id=row.product_id,
                    quantity=row.quantity,
                    price=float(row.price),
                )
            )
        return items

    @staticmethod
    def _to_order(row, items: list[OrderItem]) -> Order:
        return Order(
            order_id=row.order_id,
            customer_id=row.customer_id,
            items=items,
            status=OrderStatus(row.status),
            reason=row.reason,
            version=row.version,
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
        )
