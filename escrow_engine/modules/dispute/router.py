"""Dispute API router."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.database.session import get_db
from escrow_engine.exceptions import ForbiddenException
from escrow_engine.models.dispute import Dispute
from escrow_engine.models.enums import DisputeStatus
from escrow_engine.modules.dispute.schemas import (
    DisputeCreate,
    DisputeListResponse,
    DisputeMessageResponse,
    DisputeResponse,
    MessageCreate,
    ResolveRequest,
)
from escrow_engine.modules.dispute.service import DisputeService
from escrow_engine.modules.identity.auth import AuthenticatedUser, get_current_user
from escrow_engine.schemas.responses import COMMAND_ERROR_RESPONSES

router = APIRouter(prefix="/disputes", tags=["disputes"])
transaction_disputes_router = APIRouter(prefix="/transactions", tags=["disputes"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_admin(user: AuthenticatedUser) -> None:
    """Raise ForbiddenException unless the user is an admin."""
    if not user.is_admin:
        raise ForbiddenException("This action requires admin access")


async def _dispute_response(svc: DisputeService, dispute: Dispute) -> DisputeResponse:
    messages = await svc.list_messages(dispute.id)
    response = DisputeResponse.model_validate(dispute)
    response.messages = [DisputeMessageResponse.model_validate(m) for m in messages]
    return response


# ---------------------------------------------------------------------------
# Opening
# ---------------------------------------------------------------------------


@transaction_disputes_router.post(
    "/{transaction_id}/disputes",
    response_model=DisputeResponse,
    status_code=201,
    responses=COMMAND_ERROR_RESPONSES,
)
async def open_dispute(
    transaction_id: uuid.UUID,
    body: DisputeCreate,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Buyer raises a dispute on a delivered transaction."""
    svc = DisputeService(db)
    dispute = await svc.open_dispute(
        transaction_id,
        user,
        reason=body.reason,
        attachment_key=body.attachment_key,
        attachment_filename=body.attachment_filename,
        attachment_content_type=body.attachment_content_type,
        expected_version=body.expected_version,
    )
    return await _dispute_response(svc, dispute)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@router.get("/", response_model=DisputeListResponse)
async def list_disputes(
    status: DisputeStatus | None = Query(None),
    transaction_id: uuid.UUID | None = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List disputes the caller is party to (admins see all)."""
    svc = DisputeService(db)
    items, total = await svc.list_disputes(
        actor=user,
        status=status,
        transaction_id=transaction_id,
        limit=limit,
        offset=offset,
    )
    return DisputeListResponse(
        items=[DisputeResponse.model_validate(d) for d in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{dispute_id}", response_model=DisputeResponse)
async def get_dispute(
    dispute_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get a dispute with its full chat history."""
    svc = DisputeService(db)
    dispute = await svc.get_dispute_for_actor(dispute_id, user)
    return await _dispute_response(svc, dispute)


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


@router.post(
    "/{dispute_id}/messages",
    response_model=DisputeMessageResponse,
    status_code=201,
    responses=COMMAND_ERROR_RESPONSES,
)
async def add_message(
    dispute_id: uuid.UUID,
    body: MessageCreate,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Post a message or evidence to an open or escalated dispute."""
    svc = DisputeService(db)
    message = await svc.add_message(
        dispute_id,
        user,
        text=body.text,
        attachment_key=body.attachment_key,
        attachment_filename=body.attachment_filename,
        attachment_content_type=body.attachment_content_type,
    )
    return DisputeMessageResponse.model_validate(message)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


@router.post(
    "/{dispute_id}/escalate",
    response_model=DisputeResponse,
    responses=COMMAND_ERROR_RESPONSES,
)
async def escalate_dispute(
    dispute_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    _require_admin(user)
    svc = DisputeService(db)
    dispute = await svc.escalate(dispute_id, user)
    return await _dispute_response(svc, dispute)


@router.post(
    "/{dispute_id}/resolve",
    response_model=DisputeResponse,
    responses=COMMAND_ERROR_RESPONSES,
)
async def resolve_dispute(
    dispute_id: uuid.UUID,
    body: ResolveRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Release to the seller, refund the buyer, or refund part of the amount."""
    _require_admin(user)
    svc = DisputeService(db)
    dispute = await svc.resolve(
        dispute_id,
        user,
        body.outcome,
        amount=body.amount,
        expected_version=body.expected_version,
        details=body.details,
    )
    return await _dispute_response(svc, dispute)
