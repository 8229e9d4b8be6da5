"""DisputeMessage model — append-only chat and evidence trail."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from escrow_engine.database.base import Base, UTCDateTime, UUIDPrimaryKeyMixin, utcnow


class DisputeMessage(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "dispute_messages"

    dispute_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("disputes.id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    sender_id: Mapped[uuid.UUID] = mapped_column(nullable=False)

    text: Mapped[str | None] = mapped_column(Text)

    # Evidence attachment (opaque reference to externally stored media)
    attachment_key: Mapped[str | None] = mapped_column(String(500))
    attachment_filename: Mapped[str | None] = mapped_column(String(255))
    attachment_content_type: Mapped[str | None] = mapped_column(String(100))

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("dispute_id", "sequence_number", name="uq_dispute_messages_sequence"),
        Index("ix_dispute_messages_dispute_id", "dispute_id"),
    )
