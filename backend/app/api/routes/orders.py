import uuid
from typing import Annotated, Any

from fastapi import APIRouter, Query

from app.core.logging import get_logger
from app.deps import CurrentAdmin, CurrentUser, CurrentVendor, SessionDep, TrackingClientDep
from app.models import OrderStatus
from app.schemas import (
    CarrierPublic,
    OrderCancel,
    OrderCreate,
    OrderPublic,
    OrdersPage,
    OrdersPublic,
    OrderStatusUpdate,
    OrderTrackingPublic,
    SliceTrackingPublic,
    TrackingEventPublic,
)
from app.services.checkout_service import CheckoutService
from app.services.order_service import OrderService
from app.services.tracking_service import SUPPORTED_CARRIERS, SliceTracking, TrackingService

router = APIRouter(prefix="/orders", tags=["orders"])
logger = get_logger(__name__)


def orders_page(page: dict[str, Any]) -> OrdersPage:
    return OrdersPage(
        orders=[OrderPublic.model_validate(order) for order in page["orders"]],
        total_pages=page["total_pages"],
        current_page=page["current_page"],
        total=page["total"],
    )


def slice_tracking_public(outcome: SliceTracking) -> SliceTrackingPublic:
    vendor_order = outcome.vendor_order
    result = outcome.result
    # Mock histories are never persisted, so they are served as generated
    history = result.events if result.is_mock_data else vendor_order.tracking_events
    return SliceTrackingPublic(
        vendor_order_id=vendor_order.id,
        vendor_id=vendor_order.vendor_id,
        status=vendor_order.status,
        carrier=vendor_order.carrier or result.carrier,
        tracking_number=vendor_order.tracking_number or result.tracking_number,
        courier_code=vendor_order.courier_code or result.courier_code,
        tracking_history=[TrackingEventPublic.model_validate(event) for event in history],
        last_updated=vendor_order.tracking_updated_at,
        is_delivered=result.is_delivered,
        is_mock_data=result.is_mock_data,
    )


@router.post("", status_code=201)
async def create_orders(
    *, session: SessionDep, user: CurrentUser, order_in: OrderCreate
) -> OrdersPublic:
    """Check out a cart with an offline payment method (one order per vendor)"""
    logger.info(
        "order_creation_started",
        customer_id=user.id,
        payment_method=order_in.payment_method.value,
        items_count=len(order_in.items),
    )
    orders = CheckoutService(session).checkout(user, order_in)
    return OrdersPublic(
        message="Orders created successfully",
        orders=[OrderPublic.model_validate(order) for order in orders],
    )


@router.get("/my-orders")
async def read_my_orders(
    session: SessionDep,
    user: CurrentUser,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    status: OrderStatus | None = None,
) -> OrdersPage:
    """Orders placed by the caller, newest first"""
    result = OrderService(session).list_customer_orders(user, page=page, limit=limit, status=status)
    logger.info("orders_list_retrieved", scope="customer", user_id=user.id, total=result["total"])
    return orders_page(result)


@router.get("/vendor/my-orders")
async def read_vendor_orders(
    session: SessionDep,
    vendor: CurrentVendor,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    status: OrderStatus | None = None,
) -> OrdersPage:
    """Orders holding a slice for the calling vendor"""
    result = OrderService(session).list_vendor_orders(vendor, page=page, limit=limit, status=status)
    logger.info("orders_list_retrieved", scope="vendor", user_id=vendor.id, total=result["total"])
    return orders_page(result)


@router.get("/admin/all")
async def read_all_orders(
    session: SessionDep,
    admin: CurrentAdmin,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    status: OrderStatus | None = None,
    payment_status: Annotated[str | None, Query(alias="paymentStatus")] = None,
) -> OrdersPage:
    result = OrderService(session).list_all_orders(
        page=page, limit=limit, status=status, payment_status=payment_status
    )
    logger.info("orders_list_retrieved", scope="admin", user_id=admin.id, total=result["total"])
    return orders_page(result)


@router.get("/carriers/supported")
async def read_supported_carriers() -> list[CarrierPublic]:
    return [CarrierPublic(**carrier) for carrier in SUPPORTED_CARRIERS]


@router.get("/{order_id}")
async def read_order(session: SessionDep, user: CurrentUser, order_id: uuid.UUID) -> OrderPublic:
    order = OrderService(session).get_for_participant(user, order_id)
    return OrderPublic.model_validate(order)


@router.patch("/{order_id}/cancel")
async def cancel_order(
    *,
    session: SessionDep,
    user: CurrentUser,
    order_id: uuid.UUID,
    body: OrderCancel | None = None,
) -> OrderPublic:
    """Customer cancellation; allowed until the first slice ships"""
    reason = body.reason if body else None
    order = OrderService(session).cancel_by_customer(user, order_id, reason)
    return OrderPublic.model_validate(order)


@router.patch("/{order_id}/status")
async def update_order_status(
    *,
    session: SessionDep,
    vendor: CurrentVendor,
    order_id: uuid.UUID,
    update: OrderStatusUpdate,
) -> OrderPublic:
    """Vendor transition of its own slice, optionally attaching tracking details"""
    order = OrderService(session).update_slice_status(
        vendor, order_id, update.status, update.tracking
    )
    return OrderPublic.model_validate(order)


@router.get("/{order_id}/tracking")
async def read_order_tracking(
    session: SessionDep,
    user: CurrentUser,
    tracking_client: TrackingClientDep,
    order_id: uuid.UUID,
) -> OrderTrackingPublic:
    """
    Live tracking for every shipped slice of an order.

    Fresh carrier events are merged into the stored history and a delivered
    scan moves the slice to delivered. When the carrier API is unavailable a
    deterministic mock history is returned and nothing is stored.
    """
    order = OrderService(session).get_for_participant(user, order_id)
    outcomes = await TrackingService(session, tracking_client).refresh(order)
    shipments = [slice_tracking_public(outcome) for outcome in outcomes]
    return OrderTrackingPublic(
        order_id=order.id,
        order_status=order.status,
        is_mock_data=any(shipment.is_mock_data for shipment in shipments),
        shipments=shipments,
    )
