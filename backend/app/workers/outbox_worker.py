"""
Outbox worker - separate process that publishes staged events to Kafka

Runs as its own deployment: the API only writes outbox rows inside its
business transactions (order.created, order.status_changed, order.cancelled,
dispute.opened, dispute.resolved). This loop claims unpublished rows with
SKIP LOCKED, so several workers can run side by side, and publishes each one
keyed by its partition key (the order id) to keep per-order ordering.

The trace captured when the row was written is continued here and injected
as a Kafka `traceparent` header, so consumers join the original request's
trace even when the event is published long after it.
"""

import asyncio
import signal
import sys
import time

from prometheus_client import start_http_server
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, func, select

from app.core.config import settings
from app.core.db import engine
from app.core.kafka import KafkaProducerClient, kafka_producer
from app.core.logging import configure_logging, get_logger
from app.core.metrics import (
    outbox_events_pending,
    outbox_events_processed_total,
    outbox_publish_duration_seconds,
    outbox_retry_attempts_total,
    registry,
)
from app.core.tracing import (
    bind_trace_context,
    create_trace_context,
    inject_trace_context_to_kafka_headers,
    unbind_trace_context,
)
from app.models import OutboxEvent, get_datetime_utc

logger = get_logger(__name__)

# Global flag for graceful shutdown
shutdown_flag = False


def signal_handler(sig, frame):
    global shutdown_flag
    logger.info("shutdown_signal_received", signal=sig)
    shutdown_flag = True


async def process_outbox_events(producer: KafkaProducerClient = kafka_producer):
    """Main worker loop - polls the outbox table and publishes events"""
    logger.info("outbox_worker_starting")

    await producer.start()

    try:
        while not shutdown_flag:
            try:
                published_count = await publish_pending_events(
                    settings.OUTBOX_BATCH_SIZE, producer=producer
                )
                if published_count > 0:
                    logger.info("outbox_events_published", count=published_count)

                update_pending_count()
                await asyncio.sleep(settings.OUTBOX_POLL_INTERVAL_SECONDS)

            except Exception as e:
                logger.error(
                    "outbox_processing_error",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(settings.OUTBOX_ERROR_BACKOFF_SECONDS)

    except asyncio.CancelledError:
        logger.info("outbox_worker_cancelled")
        raise
    finally:
        await producer.stop()
        logger.info("outbox_worker_stopped")


async def publish_pending_events(
    batch_size: int,
    producer: KafkaProducerClient = kafka_producer,
    bind: Engine | None = None,
) -> int:
    """
    Publish up to `batch_size` unpublished events, oldest first.

    A failed publish bumps the row's attempt counter and leaves it
    unpublished for the next poll; rows past OUTBOX_MAX_RETRY_ATTEMPTS are
    still retried but flagged for manual intervention in the logs.

    Returns:
        Number of events published
    """
    published_count = 0

    with Session(bind or engine) as session:
        statement = (
            select(OutboxEvent)
            .where(OutboxEvent.published == False)  # noqa: E712
            .order_by(col(OutboxEvent.created_at).asc())
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
        events = session.exec(statement).all()

        for event in events:
            start_time = time.time()

            trace_context = None
            if event.trace_id:
                # The creating span becomes the publishing span's parent
                trace_context = create_trace_context(
                    trace_id=event.trace_id, parent_span_id=event.span_id
                )
                bind_trace_context(trace_context, event_id=event.event_id)

            try:
                await producer.send(
                    event.topic,
                    event.payload,
                    key=event.partition_key,
                    headers=inject_trace_context_to_kafka_headers(context=trace_context),
                )

                event.published = True
                event.published_at = get_datetime_utc()
                event.updated_at = event.published_at
                session.add(event)
                session.commit()
                published_count += 1

                outbox_events_processed_total.labels(status="success").inc()
                outbox_publish_duration_seconds.observe(time.time() - start_time)
                logger.info(
                    "outbox_event_published",
                    event_id=event.event_id,
                    event_type=event.event_type,
                    topic=event.topic,
                    partition_key=event.partition_key,
                    has_trace_context=trace_context is not None,
                )

            except Exception as e:
                session.rollback()

                event.attempts += 1
                event.last_error = str(e)[: settings.OUTBOX_ERROR_MESSAGE_MAX_LENGTH]
                event.updated_at = get_datetime_utc()
                session.add(event)
                session.commit()

                outbox_events_processed_total.labels(status="failure").inc()
                outbox_retry_attempts_total.labels(event_type=event.event_type).inc()
                logger.error(
                    "outbox_event_publish_failed",
                    event_id=event.event_id,
                    event_type=event.event_type,
                    attempts=event.attempts,
                    error_type=type(e).__name__,
                    error_message=str(e),
                )
                if event.attempts >= settings.OUTBOX_MAX_RETRY_ATTEMPTS:
                    logger.critical(
                        "outbox_event_max_retries_exceeded",
                        event_id=event.event_id,
                        attempts=event.attempts,
                        needs_manual_intervention=True,
                    )
            finally:
                unbind_trace_context()

    return published_count


def update_pending_count(bind: Engine | None = None) -> None:
    try:
        with Session(bind or engine) as session:
            pending_count = session.exec(
                select(func.count())
                .select_from(OutboxEvent)
                .where(OutboxEvent.published == False)  # noqa: E712
            ).one()
            outbox_events_pending.set(pending_count)
    except Exception as e:
        logger.error(
            "outbox_pending_count_failed",
            error_type=type(e).__name__,
            error_message=str(e),
        )


async def main():
    """Entry point for the outbox worker"""
    configure_logging()
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info(
        "outbox_worker_main_starting",
        service=settings.SERVICE_NAME,
        environment=settings.ENVIRONMENT,
    )

    if settings.ENABLE_METRICS:
        start_http_server(settings.METRICS_PORT, registry=registry)
        logger.info("metrics_server_started", port=settings.METRICS_PORT)

    try:
        await process_outbox_events()
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt_received")
    except Exception as e:
        logger.error(
            "outbox_worker_fatal_error",
            error_type=type(e).__name__,
            error_message=str(e),
            exc_info=True,
        )
        sys.exit(1)
    logger.info("outbox_worker_shutdown_complete")


if __name__ == "__main__":
    asyncio.run(main())
