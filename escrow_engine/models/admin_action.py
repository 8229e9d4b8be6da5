"""AdminAction model — append-only ledger of admin interventions."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from escrow_engine.database.base import Base, UTCDateTime, UUIDPrimaryKeyMixin, utcnow
from escrow_engine.models.enums import AdminActionType, TransactionStatus


class AdminAction(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "admin_actions"

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("transactions.id", ondelete="RESTRICT"),
        nullable=False,
    )
    # Insertion order within the transaction, starting at 1
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)

    admin_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    admin_name: Mapped[str] = mapped_column(String(255), nullable=False)
    action_type: Mapped[AdminActionType] = mapped_column(nullable=False)

    # Status immediately before and after the action was applied
    original_status: Mapped[TransactionStatus] = mapped_column(nullable=False)
    resulting_status: Mapped[TransactionStatus] = mapped_column(nullable=False)

    amount: Mapped[Decimal | None] = mapped_column(Numeric(15, 2))
    details: Mapped[str | None] = mapped_column(Text)
    reverses_action_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("admin_actions.id", ondelete="RESTRICT"),
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "transaction_id", "sequence_number", name="uq_admin_actions_sequence"
        ),
        # A given action can be reversed at most once
        UniqueConstraint("reverses_action_id", name="uq_admin_actions_reverses"),
        Index("ix_admin_actions_transaction_id", "transaction_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<AdminAction id={self.id} type={self.action_type} "
            f"{self.original_status} -> {self.resulting_status}>"
        )
