"""TransactionTransition model — status history for transactions."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from escrow_engine.database.base import Base, UTCDateTime, UUIDPrimaryKeyMixin, utcnow
from escrow_engine.models.enums import TransactionStatus, TransactionTransitionType


class TransactionTransition(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "transaction_transitions"

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
    )
    from_status: Mapped[TransactionStatus | None] = mapped_column()
    to_status: Mapped[TransactionStatus] = mapped_column(nullable=False)
    transition_type: Mapped[TransactionTransitionType] = mapped_column(nullable=False)
    # None for system and clock driven transitions
    triggered_by: Mapped[uuid.UUID | None] = mapped_column()
    trigger_source: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_transaction_transitions_transaction_id", "transaction_id"),
    )
