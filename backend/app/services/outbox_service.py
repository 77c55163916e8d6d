"""
Outbox service - transactional event publishing with trace context
"""

from datetime import datetime, UTC
from uuid import uuid4

from sqlmodel import Session

from app.core.logging import get_logger
from app.core.tracing import get_trace_context
from app.models import OutboxEvent
from app.events.base import BaseEventData

logger = get_logger(__name__)


class OutboxService:
    """Service for transactional outbox pattern"""

    @staticmethod
    def create_event(
        session: Session,
        event_type: str,
        topic: str,
        event_data: BaseEventData,
        partition_key: str | None = None,
    ) -> OutboxEvent:
        """
        Stage an outbox event in the caller's transaction.

        The current trace context (if any) is persisted on the row so the
        outbox worker can continue the trace when it publishes to Kafka.

        Args:
            session: Database session of the business transaction
            event_type: Type of event (e.g., "order.created")
            topic: Kafka topic name
            event_data: Pydantic model with event payload
            partition_key: Key for Kafka partitioning (order id)

        Returns:
            OutboxEvent: The staged row
        """
        event_id = str(uuid4())
        trace_context = get_trace_context()

        # Full event envelope as per schema
        payload = {
            "event_id": event_id,
            "event_type": event_type,
            "timestamp": datetime.now(UTC).isoformat(),
            "version": "1.0",
            "data": event_data.model_dump(mode="json"),
        }

        outbox_event = OutboxEvent(
            event_id=event_id,
            event_type=event_type,
            topic=topic,
            partition_key=partition_key,
            payload=payload,
            trace_id=trace_context.trace_id if trace_context else None,
            span_id=trace_context.span_id if trace_context else None,
            parent_span_id=trace_context.parent_span_id if trace_context else None,
        )

        session.add(outbox_event)
        # Do NOT commit here: the caller commits atomically with its state change

        logger.info(
            "outbox_event_created",
            event_id=event_id,
            event_type=event_type,
            topic=topic,
            has_trace_context=trace_context is not None,
        )

        return outbox_event
