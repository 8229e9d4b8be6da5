"""Dispute engine — opening, chat/evidence, escalation and resolution."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.exceptions import (
    ConflictException,
    ForbiddenException,
    IllegalTransitionException,
    NotFoundException,
    ValidationException,
)
from escrow_engine.models.dispute import Dispute
from escrow_engine.models.dispute_message import DisputeMessage
from escrow_engine.models.enums import DisputeStatus, ResolutionOutcome
from escrow_engine.models.transaction import Transaction
from escrow_engine.modules.dispute.constants import (
    ACTIVE_STATUSES,
    EVENT_DISPUTE_ESCALATED,
    EVENT_DISPUTE_MESSAGE_POSTED,
    EVENT_DISPUTE_OPENED,
    EVENT_DISPUTE_RESOLVED,
    OPENING_MESSAGE_TEMPLATE,
    VALID_DISPUTE_TRANSITIONS,
)
from escrow_engine.modules.events.outbox_service import OutboxService
from escrow_engine.modules.identity.auth import AuthenticatedUser
from escrow_engine.modules.transaction.service import (
    TransactionService,
    transaction_event_payload,
)

logger = logging.getLogger(__name__)


class DisputeService:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_dispute(self, dispute_id: uuid.UUID) -> Dispute:
        result = await self.db.execute(select(Dispute).where(Dispute.id == dispute_id))
        dispute = result.scalar_one_or_none()
        if dispute is None:
            raise NotFoundException(f"Dispute {dispute_id} not found")
        return dispute

    async def get_dispute_for_actor(
        self, dispute_id: uuid.UUID, actor: AuthenticatedUser
    ) -> Dispute:
        dispute = await self.get_dispute(dispute_id)
        self._require_participant(dispute, actor)
        return dispute

    async def list_disputes(
        self,
        actor: AuthenticatedUser,
        status: DisputeStatus | None = None,
        transaction_id: uuid.UUID | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Dispute], int]:
        """List disputes visible to the actor (paginated, newest first)."""
        conditions = []
        if not actor.is_admin:
            conditions.append(
                or_(Dispute.buyer_id == actor.id, Dispute.seller_id == actor.id)
            )
        if status is not None:
            conditions.append(Dispute.status == status)
        if transaction_id is not None:
            conditions.append(Dispute.transaction_id == transaction_id)

        total_result = await self.db.execute(
            select(func.count()).select_from(Dispute).where(*conditions)
        )
        total = total_result.scalar() or 0

        result = await self.db.execute(
            select(Dispute)
            .where(*conditions)
            .order_by(Dispute.opened_at.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def list_messages(self, dispute_id: uuid.UUID) -> list[DisputeMessage]:
        result = await self.db.execute(
            select(DisputeMessage)
            .where(DisputeMessage.dispute_id == dispute_id)
            .order_by(DisputeMessage.sequence_number.asc())
        )
        return list(result.scalars().all())

    async def get_open_dispute(self, transaction_id: uuid.UUID) -> Dispute | None:
        result = await self.db.execute(
            select(Dispute).where(
                Dispute.transaction_id == transaction_id,
                Dispute.status.in_(ACTIVE_STATUSES),
            )
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def open_dispute(
        self,
        transaction_id: uuid.UUID,
        buyer: AuthenticatedUser,
        reason: str,
        attachment_key: str | None = None,
        attachment_filename: str | None = None,
        attachment_content_type: str | None = None,
        expected_version: int | None = None,
    ) -> Dispute:
        """Open a dispute and move the transaction to DISPUTED atomically."""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationException(
                "A reason is required to open a dispute",
                [{"field": "reason", "message": "Required"}],
            )

        existing = await self.get_open_dispute(transaction_id)
        if existing is not None:
            raise ConflictException(
                f"Transaction {transaction_id} already has an open dispute ({existing.id})"
            )

        transaction = await TransactionService(self.db).raise_dispute(
            transaction_id, buyer, reason, expected_version=expected_version
        )

        now = datetime.now(UTC)
        dispute = Dispute(
            transaction_id=transaction.id,
            buyer_id=transaction.buyer_id,
            seller_id=transaction.seller_id,
            reason=reason,
            status=DisputeStatus.OPEN,
            opened_at=now,
        )
        self.db.add(dispute)
        await self.db.flush()

        self.db.add(
            DisputeMessage(
                dispute_id=dispute.id,
                sequence_number=1,
                sender_id=buyer.id,
                text=OPENING_MESSAGE_TEMPLATE.format(reason=reason),
                attachment_key=attachment_key,
                attachment_filename=attachment_filename,
                attachment_content_type=attachment_content_type,
            )
        )
        await self.db.flush()

        await self._publish(
            transaction,
            dispute,
            EVENT_DISPUTE_OPENED,
            [transaction.seller_id],
            reason=reason,
        )

        logger.info("Opened dispute %s on transaction %s", dispute.id, transaction.id)
        return dispute

    async def add_message(
        self,
        dispute_id: uuid.UUID,
        sender: AuthenticatedUser,
        text: str | None = None,
        attachment_key: str | None = None,
        attachment_filename: str | None = None,
        attachment_content_type: str | None = None,
    ) -> DisputeMessage:
        """Append a chat message (optionally with evidence) to an active dispute."""
        dispute = await self._load_for_update(dispute_id)
        self._require_participant(dispute, sender)

        if dispute.status not in ACTIVE_STATUSES:
            raise IllegalTransitionException(
                f"Dispute {dispute_id} is {dispute.status.value}; no further messages are accepted"
            )

        text = text.strip() if text else None
        if not text and not attachment_key:
            raise ValidationException(
                "A message needs text or an attachment",
                [{"field": "text", "message": "Provide text or an attachment"}],
            )

        sequence_result = await self.db.execute(
            select(func.coalesce(func.max(DisputeMessage.sequence_number), 0)).where(
                DisputeMessage.dispute_id == dispute_id
            )
        )
        message = DisputeMessage(
            dispute_id=dispute_id,
            sequence_number=(sequence_result.scalar() or 0) + 1,
            sender_id=sender.id,
            text=text,
            attachment_key=attachment_key,
            attachment_filename=attachment_filename,
            attachment_content_type=attachment_content_type,
        )
        self.db.add(message)
        await self.db.flush()

        transaction = await self._get_transaction(dispute.transaction_id)
        recipients = [
            party for party in (dispute.buyer_id, dispute.seller_id) if party != sender.id
        ]
        await self._publish(
            transaction,
            dispute,
            EVENT_DISPUTE_MESSAGE_POSTED,
            recipients,
            message_id=str(message.id),
            sender_id=str(sender.id),
        )
        return message

    async def escalate(self, dispute_id: uuid.UUID, admin: AuthenticatedUser) -> Dispute:
        """Flag a dispute for senior review. Has no effect on the transaction."""
        if not admin.is_admin:
            raise ForbiddenException("This action requires admin access")

        dispute = await self._load_for_update(dispute_id)
        self._validate_transition(dispute, DisputeStatus.ESCALATED)

        dispute.status = DisputeStatus.ESCALATED
        dispute.escalated_at = datetime.now(UTC)
        dispute.escalated_by = admin.id
        await self.db.flush()

        transaction = await self._get_transaction(dispute.transaction_id)
        await self._publish(
            transaction,
            dispute,
            EVENT_DISPUTE_ESCALATED,
            [dispute.buyer_id, dispute.seller_id],
            escalated_by=str(admin.id),
        )
        logger.info("Dispute %s escalated by %s", dispute_id, admin.id)
        return dispute

    async def resolve(
        self,
        dispute_id: uuid.UUID,
        admin: AuthenticatedUser,
        outcome: ResolutionOutcome,
        amount: Decimal | str | None = None,
        expected_version: int | None = None,
        details: str | None = None,
    ) -> Dispute:
        """Resolve the dispute by applying ``outcome`` to its transaction.

        The admin override closes the dispute in the same database
        transaction, so either both records change or neither does.
        """
        if not admin.is_admin:
            raise ForbiddenException("This action requires admin access")

        dispute = await self.get_dispute(dispute_id)
        self._validate_transition(dispute, DisputeStatus.RESOLVED)

        await TransactionService(self.db).admin_override(
            dispute.transaction_id,
            admin,
            outcome,
            amount=amount,
            expected_version=expected_version,
            details=details,
        )
        dispute = await self._load_for_update(dispute_id)
        if dispute.status != DisputeStatus.RESOLVED:
            raise ConflictException(
                f"Dispute {dispute_id} is not the active dispute of its transaction"
            )
        return dispute

    async def close_active_dispute(
        self,
        transaction: Transaction,
        admin: AuthenticatedUser,
        outcome: ResolutionOutcome,
        refunded_amount: Decimal | None,
    ) -> Dispute | None:
        """Mark the transaction's active dispute resolved after an admin override."""
        result = await self.db.execute(
            select(Dispute)
            .where(
                Dispute.transaction_id == transaction.id,
                Dispute.status.in_(ACTIVE_STATUSES),
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        dispute = result.scalars().first()
        if dispute is None:
            return None

        dispute.status = DisputeStatus.RESOLVED
        dispute.resolved_at = datetime.now(UTC)
        dispute.resolved_by_admin_id = admin.id
        dispute.resolution_outcome = outcome
        dispute.resolution_amount = refunded_amount
        await self.db.flush()

        await self._publish(
            transaction,
            dispute,
            EVENT_DISPUTE_RESOLVED,
            [dispute.buyer_id, dispute.seller_id],
            outcome=outcome.value,
            refunded_amount=str(refunded_amount) if refunded_amount is not None else None,
            resolved_by=str(admin.id),
        )
        logger.info(
            "Dispute %s resolved by %s with outcome %s", dispute.id, admin.id, outcome.value
        )
        return dispute

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_for_update(self, dispute_id: uuid.UUID) -> Dispute:
        result = await self.db.execute(
            select(Dispute)
            .where(Dispute.id == dispute_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        dispute = result.scalar_one_or_none()
        if dispute is None:
            raise NotFoundException(f"Dispute {dispute_id} not found")
        return dispute

    async def _get_transaction(self, transaction_id: uuid.UUID) -> Transaction:
        return await TransactionService(self.db).get_transaction(transaction_id)

    @staticmethod
    def _require_participant(dispute: Dispute, actor: AuthenticatedUser) -> None:
        if not actor.is_admin and actor.id not in (dispute.buyer_id, dispute.seller_id):
            raise ForbiddenException("You are not a party to this dispute")

    @staticmethod
    def _validate_transition(dispute: Dispute, new_status: DisputeStatus) -> None:
        allowed = VALID_DISPUTE_TRANSITIONS.get(dispute.status, [])
        if new_status not in allowed:
            raise IllegalTransitionException(
                f"Cannot move dispute from '{dispute.status.value}' to '{new_status.value}'"
            )

    async def _publish(
        self,
        transaction: Transaction,
        dispute: Dispute,
        event_type: str,
        recipient_ids: list[uuid.UUID],
        **extra,
    ) -> None:
        outbox = OutboxService(self.db)
        await outbox.publish_event(
            event_type=event_type,
            aggregate_type="dispute",
            aggregate_id=str(dispute.id),
            payload=transaction_event_payload(
                transaction,
                event_type,
                recipient_ids,
                dispute_id=str(dispute.id),
                dispute_status=dispute.status.value,
                **extra,
            ),
        )
