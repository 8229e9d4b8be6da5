"""Admin intervention API router — overrides, ledger and reversals."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.database.session import get_db
from escrow_engine.exceptions import ForbiddenException
from escrow_engine.modules.admin_action.ledger import AdminActionLedger
from escrow_engine.modules.admin_action.schemas import (
    AdminActionListResponse,
    AdminActionResult,
    OverrideRequest,
    ReverseRequest,
)
from escrow_engine.modules.identity.auth import AuthenticatedUser, get_current_user
from escrow_engine.modules.transaction.schemas import AdminActionResponse, TransactionResponse
from escrow_engine.modules.transaction.service import TransactionService
from escrow_engine.schemas.responses import COMMAND_ERROR_RESPONSES

router = APIRouter(prefix="/admin/transactions", tags=["admin"])


def _require_admin(user: AuthenticatedUser) -> None:
    if not user.is_admin:
        raise ForbiddenException("This action requires admin access")


def _require_super_admin(user: AuthenticatedUser) -> None:
    if not user.is_super_admin:
        raise ForbiddenException("This action requires super admin access")


@router.post(
    "/{transaction_id}/override",
    response_model=AdminActionResult,
    responses=COMMAND_ERROR_RESPONSES,
)
async def admin_override(
    transaction_id: uuid.UUID,
    body: OverrideRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Force a payout or refund, bypassing buyer and seller."""
    _require_admin(user)
    svc = TransactionService(db)
    transaction, action = await svc.admin_override(
        transaction_id,
        user,
        body.outcome,
        amount=body.amount,
        expected_version=body.expected_version,
        details=body.details,
    )
    return AdminActionResult(
        transaction=TransactionResponse.model_validate(transaction),
        action=AdminActionResponse.model_validate(action),
    )


@router.get("/{transaction_id}/actions", response_model=AdminActionListResponse)
async def list_admin_actions(
    transaction_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Admin actions on a transaction, oldest first."""
    _require_admin(user)
    await TransactionService(db).get_transaction(transaction_id)
    actions = await AdminActionLedger(db).list_actions(transaction_id)
    return AdminActionListResponse(
        items=[AdminActionResponse.model_validate(a) for a in actions],
        total=len(actions),
    )


@router.post(
    "/{transaction_id}/actions/{action_id}/reverse",
    response_model=AdminActionResult,
    responses=COMMAND_ERROR_RESPONSES,
)
async def reverse_admin_action(
    transaction_id: uuid.UUID,
    action_id: uuid.UUID,
    body: ReverseRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Undo another admin's action, restoring the transaction's prior status."""
    _require_super_admin(user)
    svc = TransactionService(db)
    transaction, reversal = await svc.reverse_admin_action(
        transaction_id, action_id, user, expected_version=body.expected_version
    )
    return AdminActionResult(
        transaction=TransactionResponse.model_validate(transaction),
        action=AdminActionResponse.model_validate(reversal),
    )
