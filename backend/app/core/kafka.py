"""Kafka producer and consumer clients"""

import asyncio
import json
import time
from typing import Any, AsyncIterator

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.core.config import settings
from app.core.logging import get_logger
from app.core.metrics import (
    kafka_consumer_lag_messages,
    kafka_events_published_total,
    kafka_publish_duration_seconds,
)

logger = get_logger(__name__)


class KafkaProducerClient:
    """Async Kafka producer used by the outbox worker"""

    def __init__(self):
        self.producer: AIOKafkaProducer | None = None

    async def start(self):
        try:
            self.producer = AIOKafkaProducer(
                bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
                value_serializer=lambda v: json.dumps(v).encode("utf-8"),
                key_serializer=lambda k: k.encode("utf-8") if k else None,
                acks="all",
                compression_type="gzip",
                request_timeout_ms=30000,
                enable_idempotence=True,
            )
            await self.producer.start()
            logger.info(
                "kafka_producer_started", bootstrap=settings.KAFKA_BOOTSTRAP_SERVERS
            )
        except Exception as e:
            logger.error(
                "kafka_producer_start_failed",
                error_type=type(e).__name__,
                error_message=str(e),
            )
            raise

    async def stop(self):
        if self.producer:
            await self.producer.stop()
            logger.info("kafka_producer_stopped")

    @retry(
        retry=retry_if_exception_type(KafkaError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def send(
        self,
        topic: str,
        value: dict[str, Any],
        key: str | None = None,
        headers: list[tuple[str, bytes]] | None = None,
    ) -> None:
        """
        Publish one pre-built event envelope.

        Args:
            topic: Kafka topic name
            value: Event envelope (event_id, event_type, timestamp, version, data)
            key: Partition key (order id or dispute id)
            headers: Extra headers, e.g. traceparent

        Raises:
            KafkaError: After three failed attempts
        """
        if not self.producer:
            raise RuntimeError("Kafka producer not started")

        event_type = value.get("event_type", "unknown")
        start_time = time.time()
        try:
            await self.producer.send_and_wait(
                topic, value=value, key=key, headers=headers or []
            )
        except KafkaError:
            kafka_events_published_total.labels(
                topic=topic, event_type=event_type, status="failure"
            ).inc()
            raise

        kafka_events_published_total.labels(
            topic=topic, event_type=event_type, status="success"
        ).inc()
        kafka_publish_duration_seconds.labels(
            topic=topic, event_type=event_type
        ).observe(time.time() - start_time)


class KafkaConsumerClient:
    """Async Kafka consumer with manual commits (at-least-once)"""

    def __init__(self, topics: list[str]):
        self.topics = topics
        self.consumer: AIOKafkaConsumer | None = None
        self._lag_task: asyncio.Task | None = None

    async def start(self):
        try:
            self.consumer = AIOKafkaConsumer(
                *self.topics,
                bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
                group_id=settings.KAFKA_CONSUMER_GROUP_ID,
                value_deserializer=lambda m: json.loads(m.decode("utf-8")),
                auto_offset_reset="earliest",
                enable_auto_commit=False,
                max_poll_records=100,
                session_timeout_ms=30000,
                max_poll_interval_ms=300000,
            )
            await self.consumer.start()
            self._lag_task = asyncio.create_task(self._track_consumer_lag())
            logger.info("kafka_consumer_started", topics=self.topics)
        except Exception as e:
            logger.error(
                "kafka_consumer_start_failed",
                error_type=type(e).__name__,
                error_message=str(e),
            )
            raise

    async def stop(self):
        if self._lag_task and not self._lag_task.done():
            self._lag_task.cancel()
            try:
                await self._lag_task
            except asyncio.CancelledError:
                pass

        if self.consumer:
            await self.consumer.stop()
            logger.info("kafka_consumer_stopped")

    async def consume_messages(self) -> AsyncIterator[Any]:
        if not self.consumer:
            raise RuntimeError("Kafka consumer not started")

        async for message in self.consumer:
            yield message

    async def commit(self):
        if self.consumer:
            await self.consumer.commit()

    async def _track_consumer_lag(self):
        while True:
            try:
                if self.consumer:
                    for tp in self.consumer.assignment():
                        committed = await self.consumer.committed(tp) or 0
                        highwater = self.consumer.highwater(tp) or 0
                        kafka_consumer_lag_messages.labels(
                            topic=tp.topic,
                            consumer_group=settings.KAFKA_CONSUMER_GROUP_ID,
                        ).set(max(highwater - committed, 0))
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                break
            except KafkaError as e:
                logger.warning("kafka_lag_tracking_failed", error_message=str(e))
                await asyncio.sleep(30)


# Global Kafka instances
kafka_producer = KafkaProducerClient()
escrow_event_consumer = KafkaConsumerClient([settings.KAFKA_TOPIC_ESCROW_EVENTS])
