"""Transaction model — a purchase whose funds are held in escrow."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, Index, Integer, Numeric, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from escrow_engine.database.base import Base, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin
from escrow_engine.models.enums import TransactionStatus


class Transaction(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "transactions"

    # Parties (immutable after creation)
    buyer_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    seller_id: Mapped[uuid.UUID] = mapped_column(nullable=False)

    # Commerce snapshot
    listing_id: Mapped[str] = mapped_column(String(255), nullable=False)
    item_description: Mapped[str] = mapped_column(String(500), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(
        String(3), nullable=False, default="NGN", server_default="NGN"
    )

    status: Mapped[TransactionStatus] = mapped_column(
        nullable=False, server_default="PENDING"
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Lifecycle timestamps, each written once by the transition that owns it
    captured_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    shipped_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    inspection_period_ends: Mapped[datetime | None] = mapped_column(UTCDateTime)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    # Shipment
    tracking_number: Mapped[str | None] = mapped_column(String(100))
    shipping_proof_key: Mapped[str | None] = mapped_column(String(500))
    shipping_proof_filename: Mapped[str | None] = mapped_column(String(255))
    shipping_proof_content_type: Mapped[str | None] = mapped_column(String(100))

    # Outcome
    refunded_amount: Mapped[Decimal | None] = mapped_column(Numeric(15, 2))
    failure_reason: Mapped[str | None] = mapped_column(Text)

    # Operator alerting for captures that never resolve
    stuck_alerted_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "refunded_amount IS NULL OR (refunded_amount > 0 AND refunded_amount <= amount)",
            name="ck_transactions_refund_bounds",
        ),
        CheckConstraint(
            "completed_at IS NULL OR cancelled_at IS NULL",
            name="ck_transactions_single_outcome",
        ),
        Index("ix_transactions_buyer_id", "buyer_id"),
        Index("ix_transactions_seller_id", "seller_id"),
        Index("ix_transactions_status", "status"),
        Index(
            "ix_transactions_inspection_due",
            "inspection_period_ends",
            postgresql_where=text("status = 'DELIVERED'"),
        ),
    )

    def __repr__(self) -> str:
        return f"<Transaction id={self.id} status={self.status} amount={self.amount}>"
