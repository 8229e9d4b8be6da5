# Import all models so SQLAlchemy metadata is complete for create_all and Alembic
from escrow_engine.models.admin_action import AdminAction
from escrow_engine.models.dispute import Dispute
from escrow_engine.models.dispute_message import DisputeMessage
from escrow_engine.models.enums import (
    AdminActionType,
    DisputeStatus,
    EventStatus,
    ResolutionOutcome,
    TransactionStatus,
    TransactionTransitionType,
    UserRole,
)
from escrow_engine.models.event_outbox import EventOutbox
from escrow_engine.models.processed_event import ProcessedEvent
from escrow_engine.models.transaction import Transaction
from escrow_engine.models.transaction_transition import TransactionTransition

__all__ = [
    "AdminAction",
    "AdminActionType",
    "Dispute",
    "DisputeMessage",
    "DisputeStatus",
    "EventOutbox",
    "EventStatus",
    "ProcessedEvent",
    "ResolutionOutcome",
    "Transaction",
    "TransactionStatus",
    "TransactionTransition",
    "TransactionTransitionType",
    "UserRole",
]
