"""
Order Service — 注文集約 (Order Aggregate)

注文の状態と状態遷移ルールを持つ。
在庫結果イベントを受けたときの遷移はここでしか行わない。

状態遷移:
    PENDING → CONFIRMED  (在庫引き当て成功)
    PENDING → CANCELLED  (在庫引き当て失敗)
    CONFIRMED / CANCELLED は終端状態 — 以降の遷移は InvalidTransitionError
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .errors import InvalidTransitionError

DEFAULT_REJECTION_REASON = "Insufficient stock"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class OrderItem(BaseModel):
    """注文明細（値オブジェクト）"""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    product_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    price: float = Field(ge=0)

    @field_validator("price")
    @classmethod
    def round_price(cls, value: float) -> float:
        # 保存先は NUMERIC(12,2)。イベントと保存値が食い違わないよう先に丸める
        return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class Order(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    order_id: str
    customer_id: str
    items: list[OrderItem]
    status: OrderStatus = OrderStatus.PENDING
    reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    # 楽観的ロック用。ストアが書き込みのたびに +1 する（0 = 未保存）
    version: int = Field(default=0, exclude=True)

    @property
    def is_terminal(self) -> bool:
        return self.status is not OrderStatus.PENDING

    # ── 状態遷移 ─────────────────────────────────

    def confirm(self) -> None:
        """在庫引き当て成功 → CONFIRMED"""
        self._transition(OrderStatus.CONFIRMED)
        self.reason = None

    def cancel(self, reason: str | None = None) -> None:
        """在庫引き当て失敗 → CANCELLED（理由が無ければ既定の理由を入れる）"""
        self._transition(OrderStatus.CANCELLED)
        self.reason = reason or DEFAULT_REJECTION_REASON

    def _transition(self, target: OrderStatus) -> None:
        if self.is_terminal:
            raise InvalidTransitionError(
                self.order_id, self.status.value, target.value
            )
        self.status = target

    # ── シリアライズ ─────────────────────────────

    def to_record(self) -> dict:
        """一覧 API 用の完全なレコード（reason は設定時のみ）"""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_summary(self) -> dict:
        """詳細 API 用: orderId, status, items (+ reason)"""
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            include={"order_id", "status", "items", "reason"},
        )
