"""Dispute model — a buyer's claim against a delivered transaction."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import ForeignKey, Index, Numeric, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from escrow_engine.database.base import Base, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin
from escrow_engine.models.enums import DisputeStatus, ResolutionOutcome


class Dispute(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "disputes"

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("transactions.id", ondelete="RESTRICT"),
        nullable=False,
    )

    # Parties, copied from the transaction when the dispute is opened
    buyer_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    seller_id: Mapped[uuid.UUID] = mapped_column(nullable=False)

    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[DisputeStatus] = mapped_column(nullable=False, server_default="OPEN")
    opened_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    escalated_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    escalated_by: Mapped[uuid.UUID | None] = mapped_column()

    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    resolved_by_admin_id: Mapped[uuid.UUID | None] = mapped_column()
    resolution_outcome: Mapped[ResolutionOutcome | None] = mapped_column()
    resolution_amount: Mapped[Decimal | None] = mapped_column(Numeric(15, 2))

    __table_args__ = (
        Index("ix_disputes_transaction_id", "transaction_id"),
        Index("ix_disputes_status", "status"),
        # At most one active dispute per transaction
        Index(
            "uq_disputes_open_per_transaction",
            "transaction_id",
            unique=True,
            postgresql_where=text("status IN ('OPEN', 'ESCALATED')"),
            sqlite_where=text("status IN ('OPEN', 'ESCALATED')"),
        ),
    )

    def __repr__(self) -> str:
        return f"<Dispute id={self.id} transaction={self.transaction_id} status={self.status}>"
