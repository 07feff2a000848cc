"""
Order Service — 例外定義

API 側ではクライアントエラー(400/404)とサーバ障害(500)に振り分け、
イベント側ではすべて異常(anomaly)としてログに残して破棄する。
"""


class OrderServiceError(Exception):
    """注文サービスの例外の基底クラス"""


class InvalidOrderError(OrderServiceError):
    """注文リクエストが不正（空の明細、数量・価格が範囲外など）"""


class OrderNotFoundError(OrderServiceError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class InvalidTransitionError(OrderServiceError):
    """終端状態の注文に対してステータス遷移を試みた"""

    def __init__(self, order_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Order {order_id} cannot move from {current} to {target}"
        )
        self.order_id = order_id
        self.current = current
        self.target = target


class OrderStoreError(OrderServiceError):
    """永続化層の障害"""


class DuplicateOrderError(OrderStoreError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order already exists: {order_id}")
        self.order_id = order_id


class StaleOrderError(OrderStoreError):
    """楽観的ロックの競合 — 読み出し後に別の書き込みが入った"""

    def __init__(self, order_id: str, expected_version: int) -> None:
        super().__init__(
            f"Order {order_id} changed since version {expected_version}"
        )
        self.order_id = order_id
        self.expected_version = expected_version


class EventChannelError(OrderServiceError):
    """イベントチャネル(Redis)の障害"""


class EventPublishError(EventChannelError):
    def __init__(self, topic: str, detail: str = "") -> None:
        message = f"Failed to publish to {topic}"
        super().__init__(f"{message}: {detail}" if detail else message)
        self.topic = topic


class MalformedEventError(OrderServiceError):
    """受信ペイロードを在庫結果イベントとして解釈できない"""
