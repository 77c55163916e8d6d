import uuid
from typing import Annotated

from fastapi import APIRouter, File, Form, Query, UploadFile

from app.core.config import settings
from app.core.logging import get_logger
from app.deps import CurrentAdmin, CurrentUser, EscrowDep, SessionDep
from app.models import DisputePriority, DisputeStatus, PartyRole
from app.schemas import (
    ChatMessageCreated,
    DisputeAssign,
    DisputeClose,
    DisputeCreate,
    DisputeDetail,
    DisputePriorityUpdate,
    DisputeResolve,
    DisputesPage,
)
from app.services.dispute_service import (
    DisputeAccess,
    DisputeService,
    ImageUpload,
    dispute_public,
    message_public,
    party_role,
)

router = APIRouter(prefix="/disputes", tags=["disputes"])
logger = get_logger(__name__)


def dispute_detail(access: DisputeAccess, viewer_id: str, message: str | None = None) -> DisputeDetail:
    return DisputeDetail(
        message=message,
        dispute=dispute_public(access.dispute, viewer_id),
        user_role=access.role.value,
        auto_created=access.auto_created,
    )


async def read_uploads(images: list[UploadFile] | None) -> list[ImageUpload]:
    uploads = []
    for upload in images or []:
        if not upload.filename:
            continue
        # Read at most one byte past the limit; the service rejects oversize files
        data = await upload.read(settings.DISPUTE_IMAGE_MAX_BYTES + 1)
        uploads.append(
            ImageUpload(
                filename=upload.filename,
                content_type=upload.content_type or "application/octet-stream",
                data=data,
            )
        )
    return uploads


@router.get("")
async def read_disputes(
    session: SessionDep,
    escrow: EscrowDep,
    user: CurrentUser,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    status: DisputeStatus | None = None,
    priority: DisputePriority | None = None,
) -> DisputesPage:
    """Admins see every dispute; buyers and sellers see their own"""
    result = DisputeService(session, escrow).list_disputes(
        user, status=status, priority=priority, page=page, limit=limit
    )
    logger.info("disputes_list_retrieved", user_id=user.id, total=result["total"])
    return DisputesPage(**result)


@router.post("", status_code=201)
async def create_dispute(
    *, session: SessionDep, escrow: EscrowDep, user: CurrentUser, dispute_in: DisputeCreate
) -> DisputeDetail:
    service = DisputeService(session, escrow)
    dispute = await service.create(user, dispute_in.order_id, dispute_in.reason)
    access = DisputeAccess(dispute=dispute, role=party_role(dispute, user))
    return dispute_detail(access, user.id, message="Dispute created successfully")


@router.get("/order/{order_id}")
async def read_dispute_by_order(
    session: SessionDep, escrow: EscrowDep, user: CurrentUser, order_id: uuid.UUID
) -> DisputeDetail:
    """
    The dispute for an order.

    An order whose escrow was disputed on-chain without a local dispute gets
    one opened on the spot, with the buyer as the raiser.
    """
    access = DisputeService(session, escrow).get_by_order(user, order_id)
    message = "Dispute auto-created from blockchain state" if access.auto_created else None
    return dispute_detail(access, user.id, message=message)


@router.get("/{dispute_id}")
async def read_dispute(
    session: SessionDep, escrow: EscrowDep, user: CurrentUser, dispute_id: uuid.UUID
) -> DisputeDetail:
    access = DisputeService(session, escrow).get(user, dispute_id)
    return dispute_detail(access, user.id)


@router.post("/{dispute_id}/messages", status_code=201)
async def send_dispute_message(
    *,
    session: SessionDep,
    escrow: EscrowDep,
    user: CurrentUser,
    dispute_id: uuid.UUID,
    content: Annotated[str | None, Form()] = None,
    images: Annotated[list[UploadFile] | None, File()] = None,
) -> ChatMessageCreated:
    """Append a chat message with up to DISPUTE_MAX_IMAGES image attachments"""
    uploads = await read_uploads(images)
    message = await DisputeService(session, escrow).send_message(
        user, dispute_id, content=content, images=uploads
    )
    return ChatMessageCreated(chat_message=message_public(message))


@router.post("/{dispute_id}/resolve")
async def resolve_dispute(
    *,
    session: SessionDep,
    escrow: EscrowDep,
    admin: CurrentAdmin,
    dispute_id: uuid.UUID,
    resolution: DisputeResolve,
) -> DisputeDetail:
    """Settle the escrow on-chain for the winner, then record the resolution"""
    dispute = await DisputeService(session, escrow).resolve(
        admin, dispute_id, resolution.winner, resolution.notes
    )
    access = DisputeAccess(dispute=dispute, role=PartyRole.ADMIN)
    return dispute_detail(access, admin.id, message="Dispute resolved successfully")


@router.post("/{dispute_id}/close")
async def close_dispute(
    *,
    session: SessionDep,
    escrow: EscrowDep,
    user: CurrentUser,
    dispute_id: uuid.UUID,
    body: DisputeClose | None = None,
) -> DisputeDetail:
    service = DisputeService(session, escrow)
    dispute = service.close(user, dispute_id, body.reason if body else "")
    access = DisputeAccess(dispute=dispute, role=party_role(dispute, user))
    return dispute_detail(access, user.id, message="Dispute closed successfully")


@router.patch("/{dispute_id}/priority")
async def update_dispute_priority(
    *,
    session: SessionDep,
    escrow: EscrowDep,
    admin: CurrentAdmin,
    dispute_id: uuid.UUID,
    update: DisputePriorityUpdate,
) -> DisputeDetail:
    dispute = DisputeService(session, escrow).update_priority(admin, dispute_id, update.priority)
    access = DisputeAccess(dispute=dispute, role=PartyRole.ADMIN)
    return dispute_detail(access, admin.id, message="Priority updated")


@router.patch("/{dispute_id}/assign")
async def assign_dispute(
    *,
    session: SessionDep,
    escrow: EscrowDep,
    admin: CurrentAdmin,
    dispute_id: uuid.UUID,
    body: DisputeAssign | None = None,
) -> DisputeDetail:
    dispute = DisputeService(session, escrow).assign_admin(
        admin, dispute_id, body.admin_id if body else None
    )
    access = DisputeAccess(dispute=dispute, role=PartyRole.ADMIN)
    return dispute_detail(access, admin.id, message="Dispute assigned")
