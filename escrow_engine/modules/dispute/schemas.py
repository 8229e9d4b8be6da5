"""Pydantic v2 schemas for dispute API endpoints."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from escrow_engine.models.enums import DisputeStatus, ResolutionOutcome


class DisputeCreate(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)
    expected_version: int = Field(..., ge=1)
    attachment_key: str | None = Field(None, max_length=500)
    attachment_filename: str | None = Field(None, max_length=255)
    attachment_content_type: str | None = Field(None, max_length=100)


class MessageCreate(BaseModel):
    text: str | None = Field(None, max_length=5000)
    attachment_key: str | None = Field(None, max_length=500)
    attachment_filename: str | None = Field(None, max_length=255)
    attachment_content_type: str | None = Field(None, max_length=100)


class ResolveRequest(BaseModel):
    outcome: ResolutionOutcome
    amount: Decimal | None = Field(None, gt=0)
    expected_version: int = Field(..., ge=1)
    details: str | None = Field(None, max_length=2000)

    @model_validator(mode="after")
    def _amount_matches_outcome(self) -> ResolveRequest:
        if self.outcome == ResolutionOutcome.PARTIAL_REFUND and self.amount is None:
            raise ValueError("amount is required for a partial refund")
        if self.outcome != ResolutionOutcome.PARTIAL_REFUND and self.amount is not None:
            raise ValueError("amount is only accepted for a partial refund")
        return self


class DisputeMessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    dispute_id: uuid.UUID
    sequence_number: int
    sender_id: uuid.UUID
    text: str | None = None
    attachment_key: str | None = None
    attachment_filename: str | None = None
    attachment_content_type: str | None = None
    created_at: datetime


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    transaction_id: uuid.UUID
    buyer_id: uuid.UUID
    seller_id: uuid.UUID
    reason: str
    status: DisputeStatus
    opened_at: datetime
    escalated_at: datetime | None = None
    resolved_at: datetime | None = None
    resolved_by_admin_id: uuid.UUID | None = None
    resolution_outcome: ResolutionOutcome | None = None
    resolution_amount: Decimal | None = None
    messages: list[DisputeMessageResponse] = []


class DisputeListResponse(BaseModel):
    items: list[DisputeResponse]
    total: int
    limit: int
    offset: int
