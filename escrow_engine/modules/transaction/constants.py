"""Transaction state machine transitions, actors, event types and policy."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import timedelta
from decimal import Decimal

from escrow_engine.models.enums import (
    AdminActionType,
    ResolutionOutcome,
    TransactionStatus,
    TransactionTransitionType,
)

# Valid transitions: from_status -> {transition_type -> to_status}
# Reversal is absent on purpose: its target comes from the admin action ledger.
VALID_TRANSITIONS: dict[
    TransactionStatus, dict[TransactionTransitionType, TransactionStatus]
] = {
    TransactionStatus.PENDING: {
        TransactionTransitionType.CAPTURE_SUCCEEDED: TransactionStatus.IN_ESCROW,
        TransactionTransitionType.CAPTURE_FAILED: TransactionStatus.CANCELLED,
    },
    TransactionStatus.IN_ESCROW: {
        TransactionTransitionType.SHIP: TransactionStatus.SHIPPED,
        TransactionTransitionType.FORCE_PAYOUT: TransactionStatus.COMPLETED,
        TransactionTransitionType.FORCE_REFUND: TransactionStatus.CANCELLED,
    },
    TransactionStatus.SHIPPED: {
        TransactionTransitionType.DELIVER: TransactionStatus.DELIVERED,
        TransactionTransitionType.FORCE_PAYOUT: TransactionStatus.COMPLETED,
        TransactionTransitionType.FORCE_REFUND: TransactionStatus.CANCELLED,
    },
    TransactionStatus.DELIVERED: {
        TransactionTransitionType.ACCEPT: TransactionStatus.COMPLETED,
        TransactionTransitionType.AUTO_RELEASE: TransactionStatus.COMPLETED,
        TransactionTransitionType.RAISE_DISPUTE: TransactionStatus.DISPUTED,
        TransactionTransitionType.FORCE_PAYOUT: TransactionStatus.COMPLETED,
        TransactionTransitionType.FORCE_REFUND: TransactionStatus.CANCELLED,
    },
    TransactionStatus.DISPUTED: {
        TransactionTransitionType.FORCE_PAYOUT: TransactionStatus.COMPLETED,
        TransactionTransitionType.FORCE_REFUND: TransactionStatus.CANCELLED,
    },
}

# Statuses from which a dispute may be raised when configured to allow it
DISPUTABLE_STATUSES: set[TransactionStatus] = {
    TransactionStatus.IN_ESCROW,
    TransactionStatus.SHIPPED,
    TransactionStatus.DELIVERED,
}

# Who may fire each transition
ACTOR_SYSTEM = "SYSTEM"
ACTOR_BUYER = "BUYER"
ACTOR_SELLER = "SELLER"
ACTOR_ADMIN = "ADMIN"
ACTOR_SUPER_ADMIN = "SUPER_ADMIN"

TRANSITION_ACTORS: dict[TransactionTransitionType, str] = {
    TransactionTransitionType.CAPTURE_SUCCEEDED: ACTOR_SYSTEM,
    TransactionTransitionType.CAPTURE_FAILED: ACTOR_SYSTEM,
    TransactionTransitionType.SHIP: ACTOR_SELLER,
    TransactionTransitionType.DELIVER: ACTOR_SYSTEM,
    TransactionTransitionType.ACCEPT: ACTOR_BUYER,
    TransactionTransitionType.AUTO_RELEASE: ACTOR_SYSTEM,
    TransactionTransitionType.RAISE_DISPUTE: ACTOR_BUYER,
    TransactionTransitionType.FORCE_PAYOUT: ACTOR_ADMIN,
    TransactionTransitionType.FORCE_REFUND: ACTOR_ADMIN,
    TransactionTransitionType.REVERSE: ACTOR_SUPER_ADMIN,
}

# Terminal statuses (only an admin reversal leads out of them)
TERMINAL_STATUSES: set[TransactionStatus] = {
    TransactionStatus.COMPLETED,
    TransactionStatus.CANCELLED,
}

# Admin outcome -> (transition, ledger entry)
OUTCOME_ACTIONS: dict[
    ResolutionOutcome, tuple[TransactionTransitionType, AdminActionType]
] = {
    ResolutionOutcome.RELEASE: (
        TransactionTransitionType.FORCE_PAYOUT,
        AdminActionType.FORCED_PAYOUT,
    ),
    ResolutionOutcome.FULL_REFUND: (
        TransactionTransitionType.FORCE_REFUND,
        AdminActionType.FORCED_FULL_REFUND,
    ),
    ResolutionOutcome.PARTIAL_REFUND: (
        TransactionTransitionType.FORCE_REFUND,
        AdminActionType.PARTIAL_REFUND,
    ),
}

# Policy
INSPECTION_PERIOD = timedelta(days=3)
PLATFORM_FEE_RATE = Decimal("0.05")
MONEY_QUANTUM = Decimal("0.01")
# Amount columns are Numeric(15, 2)
MONEY_LIMIT = Decimal("1e13")
CAPTURE_DECLINED_REASON = "capture declined"

# Completion modes carried on transaction.completed
COMPLETION_MODE_MANUAL = "manual"
COMPLETION_MODE_AUTO = "auto"
COMPLETION_MODE_ADMIN = "admin"

# Event type strings for the outbox
EVENT_PAYMENT_SECURED = "transaction.payment_secured"
EVENT_PAYMENT_FAILED = "transaction.payment_failed"
EVENT_ITEM_SHIPPED = "transaction.shipped"
EVENT_ITEM_DELIVERED = "transaction.delivered"
EVENT_TRANSACTION_COMPLETED = "transaction.completed"
EVENT_TRANSACTION_CANCELLED = "transaction.cancelled"
EVENT_STUCK_PENDING = "transaction.stuck_pending"
EVENT_ADMIN_ACTION_REVERSED = "admin_action.reversed"


def allowed_transitions(
    status: TransactionStatus,
    dispute_eligible: Iterable[TransactionStatus] = (TransactionStatus.DELIVERED,),
) -> dict[TransactionTransitionType, TransactionStatus]:
    """Return the transitions available from ``status``.

    Raising a dispute is governed by ``dispute_eligible`` rather than the
    static table, restricted to the non-terminal pre-dispute statuses.
    """
    allowed = {
        transition: target
        for transition, target in VALID_TRANSITIONS.get(status, {}).items()
        if transition != TransactionTransitionType.RAISE_DISPUTE
    }
    if status in DISPUTABLE_STATUSES and status in set(dispute_eligible):
        allowed[TransactionTransitionType.RAISE_DISPUTE] = TransactionStatus.DISPUTED
    return allowed
