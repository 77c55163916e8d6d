"""
Event schemas for Kafka events
Centralized event definitions using Pydantic for type safety
"""

from app.events.base import EventEnvelope, BaseEventData
from app.events.order_events import (
    OrderItemData,
    OrderCreatedData,
    OrderStatusChangedData,
    OrderCancelledData,
)
from app.events.dispute_events import DisputeOpenedData, DisputeResolvedData
from app.events.escrow_events import EscrowChainEventData

__all__ = [
    # Base
    "EventEnvelope",
    "BaseEventData",
    # Order events
    "OrderItemData",
    "OrderCreatedData",
    "OrderStatusChangedData",
    "OrderCancelledData",
    # Dispute events
    "DisputeOpenedData",
    "DisputeResolvedData",
    # Escrow events
    "EscrowChainEventData",
]
