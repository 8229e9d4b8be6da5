"""Pydantic v2 schemas for transaction API endpoints."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from escrow_engine.models.enums import (
    AdminActionType,
    TransactionStatus,
    TransactionTransitionType,
)

# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class PurchaseCreate(BaseModel):
    listing_id: str = Field(..., min_length=1, max_length=255)


class VersionedCommand(BaseModel):
    """Every mutating call names the transaction version it was based on."""

    expected_version: int = Field(..., ge=1)


class ShipRequest(VersionedCommand):
    tracking_number: str = Field(..., min_length=1, max_length=100)
    shipping_proof_key: str = Field(..., min_length=1, max_length=500)
    shipping_proof_filename: str | None = Field(None, max_length=255)
    shipping_proof_content_type: str | None = Field(None, max_length=100)


class AcceptRequest(VersionedCommand):
    pass


class CaptureWebhook(BaseModel):
    transaction_id: uuid.UUID
    success: bool
    reason: str | None = Field(None, max_length=500)


class DeliveryWebhook(BaseModel):
    transaction_id: uuid.UUID
    tracking_number: str | None = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class AdminActionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    transaction_id: uuid.UUID
    sequence_number: int
    admin_id: uuid.UUID
    admin_name: str
    action_type: AdminActionType
    original_status: TransactionStatus
    resulting_status: TransactionStatus
    amount: Decimal | None = None
    details: str | None = None
    reverses_action_id: uuid.UUID | None = None
    created_at: datetime


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    buyer_id: uuid.UUID
    seller_id: uuid.UUID
    listing_id: str
    item_description: str
    amount: Decimal
    currency: str
    status: TransactionStatus
    version: int
    created_at: datetime
    captured_at: datetime | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    inspection_period_ends: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    tracking_number: str | None = None
    shipping_proof_key: str | None = None
    shipping_proof_filename: str | None = None
    shipping_proof_content_type: str | None = None
    refunded_amount: Decimal | None = None
    failure_reason: str | None = None
    admin_actions: list[AdminActionResponse] = []


class PurchaseResponse(BaseModel):
    transaction: TransactionResponse
    platform_fee: Decimal
    total_due: Decimal


class TransactionListResponse(BaseModel):
    items: list[TransactionResponse]
    total: int
    limit: int
    offset: int


class TransactionTransitionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    transaction_id: uuid.UUID
    from_status: TransactionStatus | None = None
    to_status: TransactionStatus
    transition_type: TransactionTransitionType
    triggered_by: uuid.UUID | None = None
    trigger_source: str
    reason: str | None = None
    created_at: datetime


class SettlementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id: uuid.UUID
    amount: Decimal
    captured: bool
    final: bool
    held_in_escrow: Decimal
    buyer_refund: Decimal
    seller_payout: Decimal
