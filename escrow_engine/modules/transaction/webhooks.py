"""Inbound callbacks from the payment gateway and carrier tracking."""

from __future__ import annotations

import hmac

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.config import settings
from escrow_engine.database.session import get_db
from escrow_engine.exceptions import UnauthorizedException
from escrow_engine.modules.transaction.schemas import (
    CaptureWebhook,
    DeliveryWebhook,
    TransactionResponse,
)
from escrow_engine.modules.transaction.service import TransactionService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def verify_webhook_secret(x_webhook_secret: str | None = Header(None)) -> None:
    """Reject callbacks that do not carry the shared secret."""
    if x_webhook_secret is None or not hmac.compare_digest(
        x_webhook_secret.encode(), settings.webhook_secret.encode()
    ):
        raise UnauthorizedException("Invalid webhook secret")


@router.post(
    "/payments/capture",
    response_model=TransactionResponse,
    dependencies=[Depends(verify_webhook_secret)],
)
async def payment_capture_callback(
    body: CaptureWebhook,
    db: AsyncSession = Depends(get_db),
):
    """Gateway reports the capture outcome. Repeated deliveries are no-ops."""
    svc = TransactionService(db)
    transaction = await svc.complete_capture(body.transaction_id, body.success, body.reason)
    return TransactionResponse.model_validate(transaction)


@router.post(
    "/carrier/delivered",
    response_model=TransactionResponse,
    dependencies=[Depends(verify_webhook_secret)],
)
async def carrier_delivered_callback(
    body: DeliveryWebhook,
    db: AsyncSession = Depends(get_db),
):
    """Carrier tracking reports the parcel as delivered."""
    svc = TransactionService(db)
    transaction = await svc.simulate_delivery(body.transaction_id)
    return TransactionResponse.model_validate(transaction)
