"""
Tracking refresher - polls 17track for shipped slices with stale tracking
and advances them to delivered when the carrier reports delivery

Background tasks don't have HTTP request context, so the trace of the
original checkout is picked up from the order.created outbox event and
continued here; transitions written by the refresher share its trace_id.
"""

import asyncio

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from app.clients.tracking_client import Track17Client
from app.core.config import settings
from app.core.db import session_scope
from app.core.logging import get_logger
from app.core.metrics import background_task_errors_total, background_tasks_running
from app.core.tracing import bind_trace_context, create_trace_context, unbind_trace_context
from app.models import Order, OutboxEvent
from app.services.tracking_service import TrackingService

logger = get_logger(__name__)

TASK_NAME = "tracking_processor"


async def start_tracking_processor(client: Track17Client) -> None:
    """Main processor loop - runs as a background task of the API process"""
    logger.info("tracking_processor_starting", configured=client.is_configured())
    background_tasks_running.labels(task_name=TASK_NAME).inc()

    try:
        while True:
            try:
                await refresh_stale_tracking(client)
                await asyncio.sleep(settings.TRACKING_PROCESSOR_INTERVAL)
            except Exception as e:
                background_task_errors_total.labels(
                    task_name=TASK_NAME, error_type=type(e).__name__
                ).inc()
                logger.error(
                    "tracking_processor_error",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(5)  # Backoff on errors

    except asyncio.CancelledError:
        logger.info("tracking_processor_cancelled")
        raise
    finally:
        background_tasks_running.labels(task_name=TASK_NAME).dec()


def _continue_order_trace(session: Session, order: Order) -> None:
    """Bind the trace of the checkout that created `order`, or start a new one"""
    original_event = session.exec(
        select(OutboxEvent)
        .where(
            OutboxEvent.event_type == "order.created",
            OutboxEvent.partition_key == str(order.id),
        )
        .limit(1)
    ).first()

    if original_event and original_event.trace_id:
        trace_context = create_trace_context(
            trace_id=original_event.trace_id,
            parent_span_id=original_event.span_id,
        )
    else:
        trace_context = create_trace_context()
    bind_trace_context(trace_context, order_id=str(order.id))


async def refresh_stale_tracking(client: Track17Client, bind: Engine | None = None) -> int:
    """
    Refresh one batch of stale shipped orders.

    Returns the number of slices that moved to delivered. A failure on one
    order is logged and does not stop the batch.
    """
    if not client.is_configured():
        # Mock histories are never stored, so there is nothing to refresh
        return 0

    delivered = 0
    with session_scope(bind) as session:
        service = TrackingService(session, client)
        orders = service.stale_shipped_orders()
        if orders:
            logger.info("tracking_refresh_batch", orders=len(orders))

        for order in orders:
            try:
                _continue_order_trace(session, order)
                outcomes = await service.refresh(order)
                delivered += sum(outcome.delivered_now for outcome in outcomes)
            except Exception as e:
                session.rollback()
                background_task_errors_total.labels(
                    task_name=TASK_NAME, error_type=type(e).__name__
                ).inc()
                logger.error(
                    "tracking_refresh_failed",
                    order_id=str(order.id),
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
            finally:
                unbind_trace_context()
    return delivered
