"""
Escrow chain events consumed from the escrow indexer

The indexer publishes one message per confirmed contract transition.
"""

from datetime import datetime

from pydantic import Field

from app.events.base import BaseEventData


class EscrowChainEventData(BaseEventData):
    escrow_address: str = Field(min_length=1)
    order_id: str | None = None
    # Contract event name, e.g. "fundsReleaseRequested", "disputeRaised"
    type: str
    status: str
    tx_hash: str = Field(min_length=1)
    block_number: int | None = None
    by: str | None = None
    winner: str | None = None
    occurred_at: datetime
