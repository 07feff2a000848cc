"""
Order Service — 設定

すべて環境変数から読み込む。DATABASE_URL のみ必須。
"""

import logging
import os
import socket

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

ORDER_CREATED_TOPIC = os.environ.get("ORDER_CREATED_TOPIC", "order.created")
STOCK_RESULTS_TOPIC = os.environ.get("STOCK_RESULTS_TOPIC", "stock.results")
STOCK_RESULTS_GROUP = os.environ.get("STOCK_RESULTS_GROUP", "order-service")
CONSUMER_NAME = os.environ.get("CONSUMER_NAME", socket.gethostname())
# この時間 ACK されないペンディングは別のコンシューマが引き取る
CLAIM_IDLE_MS = int(os.environ.get("CLAIM_IDLE_MS", "60000"))

RESULT_WORKERS = int(os.environ.get("RESULT_WORKERS", "4"))
RESULT_QUEUE_SIZE = int(os.environ.get("RESULT_QUEUE_SIZE", "100"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
