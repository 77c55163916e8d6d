import asyncio

from pydantic import ValidationError
from sqlalchemy.engine import Engine
from sqlmodel import Session

from app.core.config import settings
from app.core.db import engine
from app.core.kafka import KafkaConsumerClient, escrow_event_consumer
from app.core.logging import get_logger
from app.core.metrics import kafka_events_consumed_total, kafka_events_duplicate_total
from app.core.redis import redis_client
from app.core.tracing import (
    bind_trace_context,
    extract_trace_context_from_kafka_headers,
    unbind_trace_context,
)
from app.events import EscrowChainEventData
from app.services.escrow_service import EscrowService

logger = get_logger(__name__)


async def start_escrow_consumer(consumer: KafkaConsumerClient = escrow_event_consumer):
    """
    Main consumer loop - runs as background task
    Mirrors confirmed escrow contract transitions published by the chain indexer
    """
    logger.info("escrow_consumer_starting", topics=consumer.topics)

    try:
        async for message in consumer.consume_messages():
            await handle_message(message, consumer)

    except asyncio.CancelledError:
        logger.info("escrow_consumer_cancelled")
        raise
    except Exception as e:
        logger.error(
            "escrow_consumer_crashed",
            error_type=type(e).__name__,
            error_message=str(e),
            exc_info=True,
        )
        raise


async def handle_message(message, consumer: KafkaConsumerClient = escrow_event_consumer):
    """
    Process a single Kafka message with idempotency and trace context extraction

    The event id is remembered in Redis once applied; the escrow mirror is
    also idempotent by tx_hash, so a Redis miss only costs a lookup.
    """
    event = message.value
    event_id = event.get("event_id")
    event_type = event.get("event_type", "unknown")

    trace_context = extract_trace_context_from_kafka_headers(message.headers)
    if trace_context:
        bind_trace_context(trace_context)

    try:
        cache_key = f"processed_event:{event_id}"
        if event_id and await redis_client.exists(cache_key):
            logger.debug("kafka_event_duplicate", event_id=event_id, event_type=event_type)
            kafka_events_duplicate_total.labels(
                topic=message.topic, event_type=event_type
            ).inc()
            await consumer.commit()
            return

        applied = process_escrow_event(event)

        if event_id:
            await redis_client.set(cache_key, "1", ttl=settings.PROCESSED_EVENT_TTL)
        await consumer.commit()

        kafka_events_consumed_total.labels(
            topic=message.topic, event_type=event_type, status="success"
        ).inc()
        logger.info(
            "kafka_event_processed",
            event_id=event_id,
            event_type=event_type,
            applied=applied,
            has_trace_context=trace_context is not None,
        )

    except ValidationError as e:
        # A malformed event will never parse; skip it rather than block the partition
        logger.error(
            "kafka_event_invalid",
            event_id=event_id,
            event_type=event_type,
            error_message=str(e),
        )
        kafka_events_consumed_total.labels(
            topic=message.topic, event_type=event_type, status="invalid"
        ).inc()
        await consumer.commit()

    except Exception as e:
        logger.error(
            "kafka_event_processing_failed",
            event_id=event_id,
            event_type=event_type,
            error_type=type(e).__name__,
            error_message=str(e),
            exc_info=True,
        )
        kafka_events_consumed_total.labels(
            topic=message.topic, event_type=event_type, status="failure"
        ).inc()
        # Don't commit - will retry
    finally:
        unbind_trace_context()


def process_escrow_event(event: dict, bind: Engine | None = None) -> bool:
    """Validate an event envelope's data and mirror it into the escrow row"""
    event_data = EscrowChainEventData(**(event.get("data") or {}))
    with Session(bind or engine) as session:
        return EscrowService(session).apply_chain_event(event_data)
