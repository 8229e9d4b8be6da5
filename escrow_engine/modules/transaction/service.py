"""Transaction lifecycle service — purchase, capture, shipment, delivery,
acceptance, auto-release, admin override and reversal.

Every status change goes through ``TransactionService._transition`` which
authorizes the actor, checks the optimistic version, validates the move
against ``VALID_TRANSITIONS``, records status history and publishes the
outbox event in the caller's database transaction.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from escrow_engine.config import settings
from escrow_engine.exceptions import (
    ConflictException,
    ForbiddenException,
    IllegalTransitionException,
    InvariantViolationError,
    ListingUnavailableException,
    NotFoundException,
    SelfPurchaseException,
    ShippingAddressRequiredException,
    ValidationException,
)
from escrow_engine.models.admin_action import AdminAction
from escrow_engine.models.enums import (
    AdminActionType,
    ResolutionOutcome,
    TransactionStatus,
    TransactionTransitionType,
    UserRole,
)
from escrow_engine.models.transaction import Transaction
from escrow_engine.models.transaction_transition import TransactionTransition
from escrow_engine.modules.admin_action.ledger import AdminActionLedger
from escrow_engine.modules.events.outbox_service import OutboxService
from escrow_engine.modules.identity.auth import AuthenticatedUser
from escrow_engine.modules.marketplace.client import ListingDirectory
from escrow_engine.modules.transaction.constants import (
    ACTOR_ADMIN,
    ACTOR_BUYER,
    ACTOR_SELLER,
    ACTOR_SUPER_ADMIN,
    ACTOR_SYSTEM,
    CAPTURE_DECLINED_REASON,
    COMPLETION_MODE_ADMIN,
    COMPLETION_MODE_AUTO,
    COMPLETION_MODE_MANUAL,
    EVENT_ADMIN_ACTION_REVERSED,
    EVENT_ITEM_DELIVERED,
    EVENT_ITEM_SHIPPED,
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_SECURED,
    EVENT_STUCK_PENDING,
    EVENT_TRANSACTION_CANCELLED,
    EVENT_TRANSACTION_COMPLETED,
    INSPECTION_PERIOD,
    OUTCOME_ACTIONS,
    TERMINAL_STATUSES,
    TRANSITION_ACTORS,
    allowed_transitions,
)
from escrow_engine.modules.transaction.money import to_money

logger = logging.getLogger(__name__)

TRIGGER_USER = "USER"
TRIGGER_ADMIN = "ADMIN"
TRIGGER_SYSTEM = "SYSTEM"

_TRANSITION_EVENT_MAP: dict[TransactionTransitionType, str] = {
    TransactionTransitionType.CAPTURE_SUCCEEDED: EVENT_PAYMENT_SECURED,
    TransactionTransitionType.CAPTURE_FAILED: EVENT_PAYMENT_FAILED,
    TransactionTransitionType.SHIP: EVENT_ITEM_SHIPPED,
    TransactionTransitionType.DELIVER: EVENT_ITEM_DELIVERED,
    TransactionTransitionType.ACCEPT: EVENT_TRANSACTION_COMPLETED,
    TransactionTransitionType.AUTO_RELEASE: EVENT_TRANSACTION_COMPLETED,
    TransactionTransitionType.FORCE_PAYOUT: EVENT_TRANSACTION_COMPLETED,
    TransactionTransitionType.FORCE_REFUND: EVENT_TRANSACTION_CANCELLED,
}

_COMPLETION_MODES: dict[TransactionTransitionType, str] = {
    TransactionTransitionType.ACCEPT: COMPLETION_MODE_MANUAL,
    TransactionTransitionType.AUTO_RELEASE: COMPLETION_MODE_AUTO,
    TransactionTransitionType.FORCE_PAYOUT: COMPLETION_MODE_ADMIN,
}

# Transitions whose event only goes to the buyer
_BUYER_ONLY_EVENTS = {
    TransactionTransitionType.CAPTURE_FAILED,
    TransactionTransitionType.SHIP,
}

_ADMIN_DETAILS: dict[ResolutionOutcome, str] = {
    ResolutionOutcome.RELEASE: "Funds released to seller",
    ResolutionOutcome.FULL_REFUND: "Full refund of {amount} to buyer",
    ResolutionOutcome.PARTIAL_REFUND: "Partial refund of {amount} to buyer",
}


@dataclass(frozen=True)
class ShippingProof:
    """Opaque reference to the seller's proof-of-shipment upload."""

    key: str
    filename: str | None = None
    content_type: str | None = None


def transaction_event_payload(
    transaction: Transaction,
    event_type: str,
    recipient_ids: list[uuid.UUID],
    **extra,
) -> dict:
    """Common payload carried by every transaction-related outbox event."""
    payload = {
        "event_type": event_type,
        "transaction_id": str(transaction.id),
        "recipient_ids": [str(r) for r in recipient_ids],
        "buyer_id": str(transaction.buyer_id),
        "seller_id": str(transaction.seller_id),
        "listing_id": transaction.listing_id,
        "item_description": transaction.item_description,
        "amount": str(transaction.amount),
        "status": transaction.status.value,
    }
    payload.update(extra)
    return payload


def assert_invariants(transaction: Transaction) -> None:
    """Raise ``InvariantViolationError`` if the record is internally inconsistent."""
    problems = []
    if transaction.amount is None or transaction.amount <= 0:
        problems.append("amount must be positive")
    if transaction.completed_at is not None and transaction.cancelled_at is not None:
        problems.append("both completed_at and cancelled_at are set")
    if transaction.status == TransactionStatus.COMPLETED and transaction.completed_at is None:
        problems.append("completed without completed_at")
    if transaction.status == TransactionStatus.CANCELLED and transaction.cancelled_at is None:
        problems.append("cancelled without cancelled_at")
    if transaction.status not in TERMINAL_STATUSES and (
        transaction.completed_at is not None or transaction.cancelled_at is not None
    ):
        problems.append(f"{transaction.status.value} transaction carries an outcome timestamp")
    if transaction.refunded_amount is not None:
        if transaction.status != TransactionStatus.CANCELLED:
            problems.append("refunded_amount set on a transaction that is not cancelled")
        if not Decimal("0") < transaction.refunded_amount <= transaction.amount:
            problems.append("refunded_amount outside (0, amount]")

    if problems:
        message = "; ".join(problems)
        logger.critical("Invariant violation on transaction %s: %s", transaction.id, message)
        raise InvariantViolationError(transaction.id, message)


class TransactionService:
    def __init__(
        self,
        db: AsyncSession,
        dispute_eligible_statuses: list[str] | None = None,
    ):
        self.db = db
        eligible = (
            settings.dispute_eligible_statuses
            if dispute_eligible_statuses is None
            else dispute_eligible_statuses
        )
        self.dispute_eligible = {TransactionStatus(status) for status in eligible}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_transaction(self, transaction_id: uuid.UUID) -> Transaction:
        result = await self.db.execute(
            select(Transaction).where(Transaction.id == transaction_id)
        )
        transaction = result.scalar_one_or_none()
        if transaction is None:
            raise NotFoundException(f"Transaction {transaction_id} not found")
        return transaction

    async def get_transaction_for_actor(
        self, transaction_id: uuid.UUID, actor: AuthenticatedUser
    ) -> Transaction:
        """Get a transaction the actor is a party to (admins see everything)."""
        transaction = await self.get_transaction(transaction_id)
        if not actor.is_admin and actor.id not in (transaction.buyer_id, transaction.seller_id):
            raise ForbiddenException("You are not a party to this transaction")
        return transaction

    async def list_transactions(
        self,
        actor: AuthenticatedUser,
        status: TransactionStatus | None = None,
        role: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        """List transactions visible to the actor (paginated, newest first)."""
        conditions = []
        if role == "buyer":
            conditions.append(Transaction.buyer_id == actor.id)
        elif role == "seller":
            conditions.append(Transaction.seller_id == actor.id)
        elif not actor.is_admin:
            conditions.append(
                or_(Transaction.buyer_id == actor.id, Transaction.seller_id == actor.id)
            )
        if status is not None:
            conditions.append(Transaction.status == status)

        count_query = select(func.count()).select_from(Transaction).where(*conditions)
        total_result = await self.db.execute(count_query)
        total = total_result.scalar() or 0

        query = (
            select(Transaction)
            .where(*conditions)
            .order_by(Transaction.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def get_transitions(self, transaction_id: uuid.UUID) -> list[TransactionTransition]:
        """Return the status history of a transaction, oldest first."""
        result = await self.db.execute(
            select(TransactionTransition)
            .where(TransactionTransition.transaction_id == transaction_id)
            .order_by(TransactionTransition.created_at.asc())
        )
        return list(result.scalars().all())

    async def find_expired_inspections(
        self, now: datetime | None = None, limit: int = 500
    ) -> list[uuid.UUID]:
        """IDs of delivered transactions whose inspection period has elapsed."""
        now = now or datetime.now(UTC)
        result = await self.db.execute(
            select(Transaction.id)
            .where(
                Transaction.status == TransactionStatus.DELIVERED,
                Transaction.inspection_period_ends.isnot(None),
                Transaction.inspection_period_ends <= now,
            )
            .order_by(Transaction.inspection_period_ends.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_shipped_before(self, cutoff: datetime, limit: int = 500) -> list[uuid.UUID]:
        result = await self.db.execute(
            select(Transaction.id)
            .where(
                Transaction.status == TransactionStatus.SHIPPED,
                Transaction.shipped_at <= cutoff,
            )
            .order_by(Transaction.shipped_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_stuck_pending(self, cutoff: datetime, limit: int = 500) -> list[uuid.UUID]:
        """Pending transactions created before ``cutoff`` that were never flagged."""
        result = await self.db.execute(
            select(Transaction.id)
            .where(
                Transaction.status == TransactionStatus.PENDING,
                Transaction.created_at <= cutoff,
                Transaction.stuck_alerted_at.is_(None),
            )
            .order_by(Transaction.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Purchase and capture
    # ------------------------------------------------------------------

    async def initiate(
        self,
        buyer: AuthenticatedUser,
        listing_id: str,
        directory: ListingDirectory,
    ) -> Transaction:
        """Create a PENDING transaction for ``listing_id``.

        Capture happens asynchronously; see ``complete_capture``.
        """
        if buyer.role != UserRole.MEMBER:
            raise ForbiddenException("Only members can make purchases")

        listing = await directory.get_listing(listing_id)
        if listing is None or not listing.is_available:
            raise ListingUnavailableException(f"Listing {listing_id} is not available")

        if not await directory.has_shipping_address(buyer.id):
            raise ShippingAddressRequiredException(
                "Add a shipping address before making a purchase",
                [{"field": "shipping_address", "message": "A saved shipping address is required"}],
            )

        if listing.seller_id == buyer.id:
            raise SelfPurchaseException("You cannot purchase your own listing")

        amount = to_money(listing.price, "price")
        if amount <= 0:
            raise ListingUnavailableException(f"Listing {listing_id} has no valid price")

        transaction = Transaction(
            buyer_id=buyer.id,
            seller_id=listing.seller_id,
            listing_id=str(listing.id),
            item_description=listing.title[:500],
            amount=amount,
            status=TransactionStatus.PENDING,
        )
        self.db.add(transaction)
        await self.db.flush()

        self.db.add(
            TransactionTransition(
                transaction_id=transaction.id,
                from_status=None,
                to_status=TransactionStatus.PENDING,
                transition_type=TransactionTransitionType.INITIATE,
                triggered_by=buyer.id,
                trigger_source=TRIGGER_USER,
                reason="Purchase initiated",
            )
        )
        await self.db.flush()

        logger.info(
            "Transaction %s initiated by %s for listing %s (amount %s)",
            transaction.id, buyer.id, listing_id, amount,
        )
        return transaction

    async def complete_capture(
        self,
        transaction_id: uuid.UUID,
        success: bool,
        reason: str | None = None,
    ) -> Transaction:
        """Record the payment capture outcome.

        Repeating the recorded outcome is a no-op; reporting the opposite
        outcome afterwards is a conflict.
        """
        transaction = await self._load_for_update(transaction_id)

        if transaction.status != TransactionStatus.PENDING:
            already_captured = transaction.captured_at is not None
            if already_captured == success:
                logger.info(
                    "Duplicate capture outcome for transaction %s ignored", transaction_id
                )
                return transaction
            raise ConflictException(
                f"Capture for transaction {transaction_id} was already recorded as "
                f"{'successful' if already_captured else 'failed'}"
            )

        if success:
            return await self._transition(
                transaction, TransactionTransitionType.CAPTURE_SUCCEEDED, None
            )
        return await self._transition(
            transaction,
            TransactionTransitionType.CAPTURE_FAILED,
            None,
            reason=reason or CAPTURE_DECLINED_REASON,
        )

    # ------------------------------------------------------------------
    # Fulfilment
    # ------------------------------------------------------------------

    async def mark_shipped(
        self,
        transaction_id: uuid.UUID,
        seller: AuthenticatedUser,
        tracking_number: str,
        proof: ShippingProof | None,
        expected_version: int | None = None,
    ) -> Transaction:
        tracking_number = (tracking_number or "").strip()
        if not tracking_number:
            raise ValidationException(
                "A tracking number is required",
                [{"field": "tracking_number", "message": "Required"}],
            )
        if proof is None or not proof.key:
            raise ValidationException(
                "Proof of shipment is required",
                [{"field": "shipping_proof", "message": "Required"}],
            )

        transaction = await self._load_for_update(transaction_id)
        return await self._transition(
            transaction,
            TransactionTransitionType.SHIP,
            seller,
            expected_version=expected_version,
            tracking_number=tracking_number,
            proof=proof,
        )

    async def simulate_delivery(self, transaction_id: uuid.UUID) -> Transaction:
        """Mark a shipped item delivered (carrier webhook or demo clock)."""
        transaction = await self._load_for_update(transaction_id)
        return await self._transition(transaction, TransactionTransitionType.DELIVER, None)

    async def accept_item(
        self,
        transaction_id: uuid.UUID,
        buyer: AuthenticatedUser,
        expected_version: int | None = None,
    ) -> Transaction:
        transaction = await self._load_for_update(transaction_id)
        return await self._transition(
            transaction,
            TransactionTransitionType.ACCEPT,
            buyer,
            expected_version=expected_version,
        )

    async def auto_release(
        self, transaction_id: uuid.UUID, now: datetime | None = None
    ) -> Transaction | None:
        """Complete a delivered transaction whose inspection period has ended.

        Re-checks the row under lock, so a transaction already completed by
        the buyer or by a concurrent scan is left alone and None is returned.
        """
        now = now or datetime.now(UTC)
        transaction = await self._load_for_update(transaction_id)
        if (
            transaction.status != TransactionStatus.DELIVERED
            or transaction.inspection_period_ends is None
            or transaction.inspection_period_ends > now
        ):
            return None
        return await self._transition(
            transaction,
            TransactionTransitionType.AUTO_RELEASE,
            None,
            reason="Inspection period ended without buyer action",
        )

    async def raise_dispute(
        self,
        transaction_id: uuid.UUID,
        buyer: AuthenticatedUser,
        reason: str,
        expected_version: int | None = None,
    ) -> Transaction:
        """Move the transaction to DISPUTED. Use ``DisputeService.open_dispute``."""
        transaction = await self._load_for_update(transaction_id)
        return await self._transition(
            transaction,
            TransactionTransitionType.RAISE_DISPUTE,
            buyer,
            expected_version=expected_version,
            reason=reason,
        )

    async def flag_stuck(self, transaction_id: uuid.UUID) -> bool:
        """Raise the operator alert for a capture that never resolved."""
        transaction = await self._load_for_update(transaction_id)
        if (
            transaction.status != TransactionStatus.PENDING
            or transaction.stuck_alerted_at is not None
        ):
            return False
        transaction.stuck_alerted_at = datetime.now(UTC)
        await self._flush()

        outbox = OutboxService(self.db)
        await outbox.publish_event(
            event_type=EVENT_STUCK_PENDING,
            aggregate_type="transaction",
            aggregate_id=str(transaction.id),
            payload=transaction_event_payload(
                transaction,
                EVENT_STUCK_PENDING,
                [],
                created_at=transaction.created_at.isoformat(),
            ),
        )
        logger.warning("Transaction %s is stuck awaiting capture", transaction.id)
        return True

    # ------------------------------------------------------------------
    # Admin intervention
    # ------------------------------------------------------------------

    async def admin_override(
        self,
        transaction_id: uuid.UUID,
        admin: AuthenticatedUser,
        outcome: ResolutionOutcome,
        amount: Decimal | str | None = None,
        expected_version: int | None = None,
        details: str | None = None,
    ) -> tuple[Transaction, AdminAction]:
        """Force a payout or (full/partial) refund and record it in the ledger.

        If the transaction is disputed, its active dispute is resolved in the
        same database transaction.
        """
        transaction = await self._load_for_update(transaction_id)
        transition_type, action_type = OUTCOME_ACTIONS[outcome]
        self._authorize(transaction, transition_type, admin)

        refund: Decimal | None = None
        if outcome == ResolutionOutcome.FULL_REFUND:
            refund = transaction.amount
        elif outcome == ResolutionOutcome.PARTIAL_REFUND:
            if amount is None:
                raise ValidationException(
                    "A partial refund needs an amount",
                    [{"field": "amount", "message": "Required"}],
                )
            refund = to_money(amount)
            if not Decimal("0") < refund <= transaction.amount:
                raise ValidationException(
                    f"Partial refund must be greater than 0 and at most {transaction.amount}",
                    [{"field": "amount", "message": "Out of range"}],
                )

        original_status = transaction.status
        summary = _ADMIN_DETAILS[outcome].format(amount=refund)
        await self._transition(
            transaction,
            transition_type,
            admin,
            expected_version=expected_version,
            reason=summary if refund is not None else None,
            refunded_amount=refund,
        )

        action = await AdminActionLedger(self.db).append(
            transaction,
            admin,
            action_type,
            original_status=original_status,
            resulting_status=transaction.status,
            amount=refund,
            details=details or summary,
        )

        if original_status == TransactionStatus.DISPUTED:
            from escrow_engine.modules.dispute.service import DisputeService

            await DisputeService(self.db).close_active_dispute(
                transaction, admin, outcome, refund
            )

        return transaction, action

    async def reverse_admin_action(
        self,
        transaction_id: uuid.UUID,
        action_id: uuid.UUID,
        super_admin: AuthenticatedUser,
        expected_version: int | None = None,
    ) -> tuple[Transaction, AdminAction]:
        """Undo a prior admin action, restoring the status it started from."""
        transaction = await self._load_for_update(transaction_id)
        self._authorize(transaction, TransactionTransitionType.REVERSE, super_admin)
        self._check_version(transaction, expected_version)

        ledger = AdminActionLedger(self.db)
        target = await ledger.get_action(transaction_id, action_id)
        await ledger.ensure_reversible(transaction, target, super_admin)

        status_before = transaction.status
        await self._transition(
            transaction,
            TransactionTransitionType.REVERSE,
            super_admin,
            reason=f"Reversal of {target.action_type.value} action {target.id}",
            target_status=target.original_status,
        )

        reversal = await ledger.append(
            transaction,
            super_admin,
            AdminActionType.REVERSAL,
            original_status=status_before,
            resulting_status=transaction.status,
            details=f"Reversed action {target.id} ({target.action_type.value})",
            reverses_action_id=target.id,
        )

        outbox = OutboxService(self.db)
        await outbox.publish_event(
            event_type=EVENT_ADMIN_ACTION_REVERSED,
            aggregate_type="transaction",
            aggregate_id=str(transaction.id),
            payload=transaction_event_payload(
                transaction,
                EVENT_ADMIN_ACTION_REVERSED,
                [transaction.buyer_id, transaction.seller_id],
                action_id=str(reversal.id),
                reversed_action_id=str(target.id),
                reversed_action_type=target.action_type.value,
                from_status=status_before.value,
                to_status=transaction.status.value,
                triggered_by=str(super_admin.id),
            ),
        )
        return transaction, reversal

    # ------------------------------------------------------------------
    # State machine core
    # ------------------------------------------------------------------

    async def _load_for_update(self, transaction_id: uuid.UUID) -> Transaction:
        """Lock the row and refresh it so decisions use committed state."""
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        transaction = result.scalar_one_or_none()
        if transaction is None:
            raise NotFoundException(f"Transaction {transaction_id} not found")
        return transaction

    def _authorize(
        self,
        transaction: Transaction,
        transition_type: TransactionTransitionType,
        actor: AuthenticatedUser | None,
    ) -> None:
        required = TRANSITION_ACTORS[transition_type]
        action = transition_type.value.lower().replace("_", " ")

        if required == ACTOR_SYSTEM:
            if actor is not None:
                raise ForbiddenException(f"Only the system can {action}")
            return
        if actor is None:
            raise ForbiddenException(f"'{action}' requires an authenticated user")

        if required == ACTOR_SELLER and actor.id != transaction.seller_id:
            raise ForbiddenException(f"Only the seller can {action} this transaction")
        if required == ACTOR_BUYER and actor.id != transaction.buyer_id:
            raise ForbiddenException(f"Only the buyer can {action} this transaction")
        if required == ACTOR_ADMIN and not actor.is_admin:
            raise ForbiddenException("This action requires admin access")
        if required == ACTOR_SUPER_ADMIN and not actor.is_super_admin:
            raise ForbiddenException("This action requires super admin access")

    def _check_version(self, transaction: Transaction, expected_version: int | None) -> None:
        if expected_version is not None and transaction.version != expected_version:
            raise ConflictException(
                f"Transaction {transaction.id} has changed since it was read "
                f"(version {transaction.version}, expected {expected_version})",
                [{"field": "expected_version", "message": "Stale version"}],
            )

    async def _flush(self) -> None:
        try:
            await self.db.flush()
        except StaleDataError as exc:
            raise ConflictException("Transaction was modified concurrently") from exc

    async def _transition(
        self,
        transaction: Transaction,
        transition_type: TransactionTransitionType,
        actor: AuthenticatedUser | None,
        *,
        expected_version: int | None = None,
        reason: str | None = None,
        target_status: TransactionStatus | None = None,
        refunded_amount: Decimal | None = None,
        tracking_number: str | None = None,
        proof: ShippingProof | None = None,
    ) -> Transaction:
        """Single entry point for every status change."""
        self._authorize(transaction, transition_type, actor)
        self._check_version(transaction, expected_version)

        current_status = transaction.status
        if transition_type == TransactionTransitionType.REVERSE:
            new_status = target_status
        else:
            allowed = allowed_transitions(current_status, self.dispute_eligible)
            if transition_type not in allowed:
                raise IllegalTransitionException(
                    f"Cannot perform '{transition_type.value}' from status "
                    f"'{current_status.value}'. "
                    f"Allowed transitions: {[t.value for t in allowed.keys()]}"
                )
            new_status = allowed[transition_type]

        now = datetime.now(UTC)
        event_extra: dict = {}

        if transition_type == TransactionTransitionType.CAPTURE_SUCCEEDED:
            transaction.captured_at = now
        elif transition_type == TransactionTransitionType.CAPTURE_FAILED:
            transaction.cancelled_at = now
            transaction.failure_reason = reason
            event_extra["reason"] = reason
        elif transition_type == TransactionTransitionType.SHIP:
            transaction.shipped_at = now
            transaction.tracking_number = tracking_number
            transaction.shipping_proof_key = proof.key
            transaction.shipping_proof_filename = proof.filename
            transaction.shipping_proof_content_type = proof.content_type
            event_extra["tracking_number"] = tracking_number
        elif transition_type == TransactionTransitionType.DELIVER:
            transaction.delivered_at = now
            transaction.inspection_period_ends = now + INSPECTION_PERIOD
            event_extra["inspection_period_ends"] = transaction.inspection_period_ends.isoformat()
        elif transition_type in _COMPLETION_MODES:
            transaction.completed_at = now
            event_extra["mode"] = _COMPLETION_MODES[transition_type]
        elif transition_type == TransactionTransitionType.FORCE_REFUND:
            transaction.cancelled_at = now
            transaction.refunded_amount = refunded_amount
            transaction.failure_reason = reason
            event_extra["reason"] = reason
            event_extra["refunded_amount"] = str(refunded_amount)
        elif transition_type == TransactionTransitionType.REVERSE:
            transaction.completed_at = None
            transaction.cancelled_at = None
            transaction.refunded_amount = None
            transaction.failure_reason = None

        transaction.status = new_status
        assert_invariants(transaction)

        self.db.add(
            TransactionTransition(
                transaction_id=transaction.id,
                from_status=current_status,
                to_status=new_status,
                transition_type=transition_type,
                triggered_by=actor.id if actor else None,
                trigger_source=_trigger_source(actor),
                reason=reason,
            )
        )
        await self._flush()

        event_type = _TRANSITION_EVENT_MAP.get(transition_type)
        if event_type:
            recipients = (
                [transaction.buyer_id]
                if transition_type in _BUYER_ONLY_EVENTS
                else [transaction.buyer_id, transaction.seller_id]
            )
            outbox = OutboxService(self.db)
            await outbox.publish_event(
                event_type=event_type,
                aggregate_type="transaction",
                aggregate_id=str(transaction.id),
                payload=transaction_event_payload(
                    transaction,
                    event_type,
                    recipients,
                    from_status=current_status.value,
                    to_status=new_status.value,
                    triggered_by=str(actor.id) if actor else None,
                    **event_extra,
                ),
            )

        logger.info(
            "Transaction %s transitioned %s -> %s via %s",
            transaction.id, current_status.value, new_status.value, transition_type.value,
        )
        return transaction


def _trigger_source(actor: AuthenticatedUser | None) -> str:
    if actor is None:
        return TRIGGER_SYSTEM
    return TRIGGER_ADMIN if actor.is_admin else TRIGGER_USER
