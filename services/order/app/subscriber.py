"""
Order Service — 在庫結果サブスクライバー

stock.results ストリームを購読し、受信したメッセージを
ワーカープールでコーディネーターに渡す。

  ┌─────────┐  Delivery   ┌──────────────┐   ┌──────────┐
  │ reader  │────────────▶│ asyncio.Queue│──▶│ worker×N │── handle_message → XACK
  └─────────┘             └──────────────┘   └──────────┘

ACK は handle_message の後に行う（handle_message は例外を投げない）。
ACK に失敗したメッセージはペンディングに残り、再起動時に再配信される。
"""

import asyncio
import logging

from .channel import Delivery, EventChannel
from .coordinator import OrderCoordinator
from .errors import EventChannelError

logger = logging.getLogger(__name__)


class ResultConsumer:
    def __init__(
        self,
        channel: EventChannel,
        coordinator: OrderCoordinator,
        *,
        topic: str,
        group: str,
        consumer: str,
        workers: int = 4,
        queue_size: int = 100,
        retry_delay: float = 5.0,
    ) -> None:
        self.channel = channel
        self.coordinator = coordinator
        self.topic = topic
        self.group = group
        self.consumer = consumer
        self.workers = max(1, workers)
        self.queue_size = queue_size
        self.retry_delay = retry_delay

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """
        shutdown_event がセットされるまで読み続ける。
        停止時は受け取り済みのメッセージを処理し終えてからワーカーを止める。
        """
        queue: asyncio.Queue[Delivery] = asyncio.Queue(maxsize=self.queue_size)
        worker_tasks = [
            asyncio.create_task(self._worker(queue), name=f"stock-result-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info(
            "Result consumer started on %s with %d workers",
            self.topic, self.workers,
        )
        try:
            while not shutdown_event.is_set():
                try:
                    async for delivery in self.channel.consume(
                        self.topic, self.group, self.consumer, shutdown_event
                    ):
                        await queue.put(delivery)
                except EventChannelError:
                    logger.exception(
                        "Stock result stream unavailable; retrying in %.1fs",
                        self.retry_delay,
                    )
                    await _wait(shutdown_event, self.retry_delay)
            await queue.join()
        finally:
            for task in worker_tasks:
                task.cancel()
            await asyncio.gather(*worker_tasks, return_exceptions=True)
            logger.info("Result consumer stopped")

    async def _worker(self, queue: asyncio.Queue) -> None:
        while True:
            delivery = await queue.get()
            try:
                await self.coordinator.handle_message(delivery.payload)
                await self.channel.ack(delivery)
            except Exception:
                logger.exception(
                    "Failed to process stock result %s", delivery.message_id
                )
            finally:
                queue.task_done()


async def _wait(shutdown_event: asyncio.Event, delay: float) -> None:
    """delay 秒待つ。途中で shutdown_event がセットされたら即座に戻る。"""
    try:
        await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass
