"""
Order Service — メトリクス

インメモリのカウンタ。/health で公開する。
PENDING のまま在庫サービスに通知されなかった注文（発行失敗）はここで追跡する。
"""

from collections import Counter, deque
from dataclasses import dataclass, field

ORPHAN_HISTORY = 100


@dataclass
class CoordinatorMetrics:
    orders_created: int = 0
    orders_confirmed: int = 0
    orders_cancelled: int = 0
    publish_failures: int = 0
    anomalies: Counter = field(default_factory=Counter)
    orphaned_orders: deque = field(
        default_factory=lambda: deque(maxlen=ORPHAN_HISTORY)
    )

    def record_created(self) -> None:
        self.orders_created += 1

    def record_confirmed(self) -> None:
        self.orders_confirmed += 1

    def record_cancelled(self) -> None:
        self.orders_cancelled += 1

    def record_publish_failure(self, order_id: str) -> None:
        self.publish_failures += 1
        self.orphaned_orders.append(order_id)

    def record_anomaly(self, kind: str) -> None:
        self.anomalies[kind] += 1

    def to_dict(self) -> dict:
        return {
            "orders_created": self.orders_created,
            "orders_confirmed": self.orders_confirmed,
            "orders_cancelled": self.orders_cancelled,
            "publish_failures": self.publish_failures,
            "orphaned_orders": list(self.orphaned_orders),
            "anomalies": dict(self.anomalies),
        }
