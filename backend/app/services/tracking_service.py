"""
Shipment tracking integrator

Normalizes 17track records into TrackingEvent rows on a vendor slice and
advances shipped slices to delivered once a Delivered scan shows up.

When no API key is configured, or 17track fails or has no record, a
deterministic mock history flagged is_mock_data is returned instead. Mock
events are display-only: they are never stored and never move a slice.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.orm import selectinload
from sqlmodel import Session, col, or_, select

from app.clients.tracking_client import Track17Client
from app.core.config import settings
from app.core.errors import InvalidInput, NotFound, TrackingUnavailable
from app.core.logging import get_logger
from app.core.metrics import tracking_fetch_total
from app.models import (
    Order,
    OrderStatus,
    TrackingEvent,
    VendorOrder,
    ensure_utc,
    get_datetime_utc,
)
from app.services.order_state import apply_slice_transition

logger = get_logger(__name__)

# 17track carrier codes
CARRIER_CODES: dict[str, int] = {
    "fedex": 70,
    "ups": 19,
    "usps": 41,
    "dhl": 29,
    "dhl-express": 29,
    "aramex": 122,
    "bluedart": 1070,
    "blue-dart": 1070,
    "delhivery": 2129,
    "dtdc": 1134,
    "india-post": 99,
    "professional-couriers": 2019,
    "xpressbees": 2130,
}

CARRIER_NAMES: dict[str, tuple[str, str]] = {
    "fedex": ("FedEx", "fedex"),
    "ups": ("UPS", "ups"),
    "usps": ("USPS", "usps"),
    "dhl": ("DHL Express", "dhl-express"),
    "dhl-express": ("DHL Express", "dhl-express"),
    "bluedart": ("Blue Dart", "bluedart"),
    "delhivery": ("Delhivery", "delhivery"),
    "dtdc": ("DTDC", "dtdc"),
    "india-post": ("India Post", "india-post"),
    "xpressbees": ("Xpressbees", "xpressbees"),
}

SUPPORTED_CARRIERS: list[dict[str, str]] = [
    {"name": "FedEx", "code": "fedex"},
    {"name": "UPS", "code": "ups"},
    {"name": "USPS", "code": "usps"},
    {"name": "DHL Express", "code": "dhl-express"},
    {"name": "Aramex", "code": "aramex"},
    {"name": "Blue Dart", "code": "bluedart"},
    {"name": "Delhivery", "code": "delhivery"},
    {"name": "DTDC", "code": "dtdc"},
    {"name": "India Post", "code": "india-post"},
    {"name": "Professional Couriers", "code": "professional-couriers"},
    {"name": "Xpressbees", "code": "xpressbees"},
]

TRACKING_PATTERNS: dict[str, re.Pattern[str]] = {
    "fedex": re.compile(r"^\d{12,14}$"),
    "ups": re.compile(r"^1Z[A-Z0-9]{16}$"),
    "usps": re.compile(r"^(?:(?:94|93|92|95)\d{20}|[A-Z]{2}\d{9}[A-Z]{2})$"),
    "dhl": re.compile(r"^\d{10,11}$"),
}

MIN_TRACKING_LENGTH = 8
MAX_TRACKING_LENGTH = 40

DELIVERED = "Delivered"
IN_TRANSIT = "In Transit"


def _pattern_key(carrier: str) -> str:
    key = carrier.strip().lower().replace(" ", "-")
    return "dhl" if key == "dhl-express" else key


def validate_tracking_number(tracking_number: str | None, carrier: str | None = None) -> str:
    """Trim and upper-case a tracking number, checking it against the carrier's format."""
    if not tracking_number or not tracking_number.strip():
        raise InvalidInput("Tracking number is required")

    normalized = tracking_number.strip().upper()
    if not MIN_TRACKING_LENGTH <= len(normalized) <= MAX_TRACKING_LENGTH:
        raise InvalidInput(
            f"Tracking number must be between {MIN_TRACKING_LENGTH} and "
            f"{MAX_TRACKING_LENGTH} characters"
        )

    if carrier:
        pattern = TRACKING_PATTERNS.get(_pattern_key(carrier))
        if pattern is not None and not pattern.match(normalized):
            raise InvalidInput(
                f"Invalid {carrier.upper()} tracking number format",
                details={"carrier": carrier, "trackingNumber": normalized},
            )
    return normalized


def detect_carrier(tracking_number: str) -> tuple[str, str | None]:
    """Guess (carrier name, courier code) from the number's shape."""
    normalized = tracking_number.strip().upper()
    if TRACKING_PATTERNS["fedex"].match(normalized):
        return "FedEx", "fedex"
    if normalized.startswith("1Z"):
        return "UPS", "ups"
    if TRACKING_PATTERNS["usps"].match(normalized):
        return "USPS", "usps"
    if TRACKING_PATTERNS["dhl"].match(normalized):
        return "DHL", "dhl-express"
    return "Unknown", None


def carrier_by_code(code: str) -> tuple[str, str]:
    return CARRIER_NAMES.get(code, ("Standard Carrier", code))


def courier_code_for(carrier: str | None) -> str | None:
    """Map a carrier name or code typed by a vendor onto a known courier code"""
    if not carrier:
        return None
    key = carrier.strip().lower().replace(" ", "-")
    if key in CARRIER_CODES:
        return CARRIER_NAMES.get(key, (carrier, key))[1]
    for entry in SUPPORTED_CARRIERS:
        if entry["name"].lower() == carrier.strip().lower():
            return entry["code"]
    return None


def courier_code_for_key(key: Any) -> str | None:
    """Courier code for a numeric 17track carrier key"""
    for code, number in CARRIER_CODES.items():
        if number == key:
            return CARRIER_NAMES.get(code, (code, code))[1]
    return None


def normalize_status(text: str | None) -> str:
    if not text:
        return IN_TRANSIT
    lower = text.lower()
    if "delivered" in lower:
        return DELIVERED
    if "out for delivery" in lower:
        return "Out for Delivery"
    if "picked up" in lower:
        return "Picked Up"
    if "in transit" in lower:
        return IN_TRANSIT
    if "customs" in lower:
        return "In Customs"
    if "exception" in lower or "failed" in lower:
        return "Exception"
    return IN_TRANSIT


@dataclass
class TrackingUpdate:
    occurred_at: datetime
    location: str
    status: str
    description: str
    raw_data: dict[str, Any] | None = None


@dataclass
class TrackingResult:
    tracking_number: str
    carrier: str | None
    courier_code: str | None
    status: str
    events: list[TrackingUpdate] = field(default_factory=list)
    is_mock_data: bool = False

    @property
    def is_delivered(self) -> bool:
        return any(event.status == DELIVERED for event in self.events)


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    text = str(value).strip().replace("Z", "+00:00")
    for candidate in (text, text.replace(" ", "T", 1)):
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError:
            continue
        return ensure_utc(parsed).astimezone(timezone.utc)
    return None


def parse_track17(record: dict[str, Any]) -> TrackingResult:
    """Normalize one accepted 17track record; events come from track.z1[{a, c, z}]."""
    track = record.get("track") or {}
    events = []
    for raw in track.get("z1") or []:
        occurred_at = _parse_timestamp(raw.get("a"))
        if occurred_at is None:
            logger.debug("track17_event_without_timestamp", raw=raw)
            continue
        events.append(
            TrackingUpdate(
                occurred_at=occurred_at,
                location=raw.get("c") or "Unknown",
                status=normalize_status(raw.get("z")),
                description=raw.get("z") or "Package in transit",
                raw_data=raw,
            )
        )
    events.sort(key=lambda event: event.occurred_at, reverse=True)

    carrier = record.get("carrier") or {}
    latest = track.get("e")
    return TrackingResult(
        tracking_number=record.get("number", ""),
        carrier=carrier.get("w1") or "Unknown Carrier",
        courier_code=courier_code_for_key(carrier.get("key")),
        status=latest if isinstance(latest, str) and latest else (events[0].status if events else IN_TRANSIT),
        events=events,
    )


MOCK_SCENARIO = [
    ("Delhi, Delhi, India", "Picked Up", "Package picked up from seller"),
    ("Delhi Processing Center, Delhi", IN_TRANSIT, "Package processed and ready for dispatch"),
    ("Delhi Distribution Center, Delhi", IN_TRANSIT, "Departed from regional hub"),
    ("Mumbai Sorting Facility, Maharashtra", IN_TRANSIT, "Arrived at local delivery facility"),
    ("Mumbai, Maharashtra, India", "Out for Delivery", "Package is out for delivery - arriving today"),
]


def mock_tracking(
    tracking_number: str, courier_code: str | None, anchor: datetime
) -> TrackingResult:
    """Five-scan history starting at `anchor`, one scan per day, newest first"""
    if courier_code:
        carrier, code = carrier_by_code(courier_code)
    else:
        carrier, code = detect_carrier(tracking_number)

    events = [
        TrackingUpdate(
            occurred_at=anchor + timedelta(days=day),
            location=location,
            status=status,
            description=description,
        )
        for day, (location, status, description) in enumerate(MOCK_SCENARIO)
    ]
    events.reverse()
    return TrackingResult(
        tracking_number=tracking_number,
        carrier=carrier,
        courier_code=code,
        status=events[0].status,
        events=events,
        is_mock_data=True,
    )


@dataclass
class SliceTracking:
    vendor_order: VendorOrder
    result: TrackingResult
    new_events: int = 0
    delivered_now: bool = False


class TrackingService:
    def __init__(self, session: Session, client: Track17Client):
        self.session = session
        self.client = client

    async def lookup(self, vendor_order: VendorOrder) -> TrackingResult:
        """Live tracking for a slice, or the mock history when 17track cannot answer"""
        tracking_number = vendor_order.tracking_number or ""
        anchor = ensure_utc(vendor_order.shipped_at) or (get_datetime_utc() - timedelta(days=4))
        carrier_code = CARRIER_CODES.get(vendor_order.courier_code or "")

        if not self.client.is_configured():
            tracking_fetch_total.labels(source="mock_unconfigured").inc()
            logger.info("tracking_mock_used", tracking_number=tracking_number, reason="no_api_key")
            return mock_tracking(tracking_number, vendor_order.courier_code, anchor)

        try:
            record = await self.client.fetch(tracking_number, carrier_code)
        except TrackingUnavailable:
            record = None
        if record is None:
            tracking_fetch_total.labels(source="mock_fallback").inc()
            logger.warning("tracking_mock_used", tracking_number=tracking_number, reason="upstream")
            return mock_tracking(tracking_number, vendor_order.courier_code, anchor)

        tracking_fetch_total.labels(source="upstream").inc()
        result = parse_track17(record)
        result.tracking_number = result.tracking_number or tracking_number
        return result

    def merge_events(self, vendor_order: VendorOrder, events: list[TrackingUpdate]) -> int:
        """Append events not yet stored; (occurred_at, status) identifies an event."""
        seen = {
            (ensure_utc(event.occurred_at), event.status)
            for event in vendor_order.tracking_events
        }
        added = 0
        for update in events:
            key = (ensure_utc(update.occurred_at), update.status)
            if key in seen:
                continue
            seen.add(key)
            self.session.add(
                TrackingEvent(
                    vendor_order_id=vendor_order.id,
                    occurred_at=update.occurred_at,
                    location=update.location,
                    status=update.status,
                    description=update.description,
                    raw_data=update.raw_data,
                )
            )
            added += 1
        return added

    def _lock_order(self, order_id: uuid.UUID) -> Order:
        """Re-read `order_id` and its slices under a row lock"""
        statement = (
            select(Order)
            .where(Order.id == order_id)
            .options(
                selectinload(Order.vendor_orders).selectinload(VendorOrder.tracking_events)  # type: ignore[arg-type]
            )
            .with_for_update(of=Order)
            .execution_options(populate_existing=True)
        )
        return self.session.exec(statement).one()

    def apply_lookup(
        self, order: Order, vendor_order: VendorOrder, tracking_number: str, result: TrackingResult
    ) -> SliceTracking:
        """Store a live lookup on a locked slice; mock data is returned untouched."""
        outcome = SliceTracking(vendor_order=vendor_order, result=result)
        if result.is_mock_data:
            return outcome
        if vendor_order.tracking_number != tracking_number:
            logger.info(
                "tracking_lookup_superseded",
                order_id=str(order.id),
                vendor_order_id=str(vendor_order.id),
                tracking_number=tracking_number,
            )
            return outcome

        outcome.new_events = self.merge_events(vendor_order, result.events)
        vendor_order.tracking_updated_at = get_datetime_utc()
        if not vendor_order.carrier and result.carrier:
            vendor_order.carrier = result.carrier
        if result.courier_code and not vendor_order.courier_code:
            vendor_order.courier_code = result.courier_code
        self.session.add(vendor_order)

        if result.is_delivered:
            if vendor_order.status == OrderStatus.SHIPPED.value:
                apply_slice_transition(order, vendor_order, OrderStatus.DELIVERED)
                outcome.delivered_now = True
            elif vendor_order.status != OrderStatus.DELIVERED.value:
                logger.warning(
                    "tracking_delivered_before_shipped",
                    order_id=str(order.id),
                    vendor_order_id=str(vendor_order.id),
                    status=vendor_order.status,
                )
        return outcome

    async def refresh(self, order: Order) -> list[SliceTracking]:
        """
        Refresh every slice of `order` that carries a tracking number and commit.

        Carrier calls run without a row lock. The order is then re-read under
        the lock and results are applied to its current state, so a refund or
        vendor update committed meanwhile is not overwritten.
        """
        slices = [vo for vo in order.vendor_orders if vo.tracking_number]
        if not slices:
            raise NotFound(
                "No tracking information available for this order",
                details={"orderId": str(order.id)},
            )

        lookups = [
            (vendor_order.id, vendor_order.tracking_number or "", await self.lookup(vendor_order))
            for vendor_order in slices
        ]

        order = self._lock_order(order.id)
        current = {vendor_order.id: vendor_order for vendor_order in order.vendor_orders}
        outcomes = [
            self.apply_lookup(order, current[vendor_order_id], tracking_number, result)
            for vendor_order_id, tracking_number, result in lookups
        ]
        self.session.add(order)
        self.session.commit()
        for outcome in outcomes:
            self.session.refresh(outcome.vendor_order)

        logger.info(
            "order_tracking_refreshed",
            order_id=str(order.id),
            shipments=len(outcomes),
            new_events=sum(outcome.new_events for outcome in outcomes),
            delivered=sum(outcome.delivered_now for outcome in outcomes),
            is_mock_data=any(outcome.result.is_mock_data for outcome in outcomes),
        )
        return outcomes

    def stale_shipped_orders(self, limit: int | None = None) -> list[Order]:
        """Orders with a shipped slice whose tracking is older than the refresh interval"""
        cutoff = get_datetime_utc() - timedelta(seconds=settings.TRACKING_REFRESH_INTERVAL)
        stale = select(VendorOrder.order_id).where(
            VendorOrder.status == OrderStatus.SHIPPED.value,
            col(VendorOrder.tracking_number).is_not(None),
            or_(
                col(VendorOrder.tracking_updated_at).is_(None),
                col(VendorOrder.tracking_updated_at) < cutoff,
            ),
        )
        statement = (
            select(Order)
            .where(col(Order.id).in_(stale))
            .options(selectinload(Order.vendor_orders))  # type: ignore[arg-type]
            .order_by(col(Order.updated_at))
            .limit(limit or settings.TRACKING_PROCESSOR_BATCH_SIZE)
        )
        return list(self.session.exec(statement).all())
