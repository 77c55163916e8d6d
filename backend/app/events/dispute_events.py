"""
Dispute event schemas
"""

from datetime import datetime

from app.events.base import BaseEventData


class DisputeOpenedData(BaseEventData):
    dispute_id: str
    order_id: str
    buyer_id: str
    seller_id: str
    raised_by: str
    raised_by_role: str
    reason: str
    auto_created: bool = False
    opened_at: datetime


class DisputeResolvedData(BaseEventData):
    dispute_id: str
    order_id: str
    winner: str
    resolved_by: str
    escrow_status: str | None = None
    escrow_tx_hash: str | None = None
    resolved_at: datetime
