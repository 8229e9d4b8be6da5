"""Pydantic v2 schemas for admin intervention endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field

from escrow_engine.modules.dispute.schemas import ResolveRequest
from escrow_engine.modules.transaction.schemas import AdminActionResponse, TransactionResponse


class OverrideRequest(ResolveRequest):
    """Same shape as a dispute resolution, applied directly to a transaction."""


class ReverseRequest(BaseModel):
    expected_version: int = Field(..., ge=1)


class AdminActionResult(BaseModel):
    transaction: TransactionResponse
    action: AdminActionResponse


class AdminActionListResponse(BaseModel):
    items: list[AdminActionResponse]
    total: int

