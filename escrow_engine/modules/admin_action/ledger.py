"""Append-only ledger of admin interventions on transactions."""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.exceptions import ConflictException, ForbiddenException, NotFoundException
from escrow_engine.models.admin_action import AdminAction
from escrow_engine.models.enums import AdminActionType, TransactionStatus
from escrow_engine.models.transaction import Transaction
from escrow_engine.modules.identity.auth import AuthenticatedUser

logger = logging.getLogger(__name__)


class AdminActionLedger:
    """Records admin actions and decides whether one may be reversed.

    Rows are only ever inserted. The transaction's own status change is
    applied by ``TransactionService``; the ledger keeps the history that a
    reversal reads to restore the earlier status.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(
        self,
        transaction: Transaction,
        admin: AuthenticatedUser,
        action_type: AdminActionType,
        original_status: TransactionStatus,
        resulting_status: TransactionStatus,
        amount: Decimal | None = None,
        details: str | None = None,
        reverses_action_id: uuid.UUID | None = None,
    ) -> AdminAction:
        """Append an action at the next sequence number for the transaction."""
        result = await self.db.execute(
            select(func.coalesce(func.max(AdminAction.sequence_number), 0)).where(
                AdminAction.transaction_id == transaction.id
            )
        )
        next_sequence = (result.scalar() or 0) + 1

        action = AdminAction(
            transaction_id=transaction.id,
            sequence_number=next_sequence,
            admin_id=admin.id,
            admin_name=admin.display_name,
            action_type=action_type,
            original_status=original_status,
            resulting_status=resulting_status,
            amount=amount,
            details=details,
            reverses_action_id=reverses_action_id,
        )
        self.db.add(action)
        await self.db.flush()

        logger.info(
            "Admin %s recorded %s on transaction %s (%s -> %s)",
            admin.id, action_type.value, transaction.id,
            original_status.value, resulting_status.value,
        )
        return action

    async def list_actions(self, transaction_id: uuid.UUID) -> list[AdminAction]:
        """Return the actions on a transaction in the order they were performed."""
        result = await self.db.execute(
            select(AdminAction)
            .where(AdminAction.transaction_id == transaction_id)
            .order_by(AdminAction.sequence_number.asc())
        )
        return list(result.scalars().all())

    async def get_action(self, transaction_id: uuid.UUID, action_id: uuid.UUID) -> AdminAction:
        result = await self.db.execute(
            select(AdminAction).where(
                AdminAction.id == action_id,
                AdminAction.transaction_id == transaction_id,
            )
        )
        action = result.scalar_one_or_none()
        if action is None:
            raise NotFoundException(
                f"Admin action {action_id} not found on transaction {transaction_id}"
            )
        return action

    async def find_reversal_of(self, action_id: uuid.UUID) -> AdminAction | None:
        result = await self.db.execute(
            select(AdminAction).where(AdminAction.reverses_action_id == action_id)
        )
        return result.scalar_one_or_none()

    async def ensure_reversible(
        self,
        transaction: Transaction,
        action: AdminAction,
        actor: AuthenticatedUser,
    ) -> None:
        """Raise unless ``actor`` may reverse ``action`` right now."""
        if not actor.is_super_admin:
            raise ForbiddenException("Only a super admin can reverse admin actions")

        if action.action_type == AdminActionType.REVERSAL:
            raise ConflictException("A reversal cannot itself be reversed")

        if action.admin_id == actor.id:
            raise ConflictException(
                "Admins cannot reverse their own actions; another super admin must do it"
            )

        existing = await self.find_reversal_of(action.id)
        if existing is not None:
            raise ConflictException(
                f"Admin action {action.id} was already reversed by action {existing.id}"
            )

        # A later admin action has moved the transaction on; undo that one first
        if transaction.status != action.resulting_status:
            raise ConflictException(
                f"Admin action {action.id} left the transaction in "
                f"'{action.resulting_status.value}' but it is now "
                f"'{transaction.status.value}'; reverse the later action first"
            )
