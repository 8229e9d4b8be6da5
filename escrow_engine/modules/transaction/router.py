"""Transaction API router — purchase, queries, shipment and acceptance."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.database.session import get_db
from escrow_engine.models.enums import TransactionStatus
from escrow_engine.models.transaction import Transaction
from escrow_engine.modules.admin_action.ledger import AdminActionLedger
from escrow_engine.modules.identity.auth import AuthenticatedUser, get_current_user
from escrow_engine.modules.marketplace.client import ListingDirectory, get_listing_directory
from escrow_engine.modules.transaction.money import platform_fee
from escrow_engine.modules.transaction.schemas import (
    AcceptRequest,
    AdminActionResponse,
    PurchaseCreate,
    PurchaseResponse,
    SettlementResponse,
    ShipRequest,
    TransactionListResponse,
    TransactionResponse,
    TransactionTransitionResponse,
)
from escrow_engine.modules.transaction.service import ShippingProof, TransactionService
from escrow_engine.modules.transaction.settlement import settle
from escrow_engine.modules.transaction.tasks import capture_payment
from escrow_engine.schemas.responses import COMMAND_ERROR_RESPONSES

router = APIRouter(prefix="/transactions", tags=["transactions"])


async def _transaction_response(db: AsyncSession, transaction: Transaction) -> TransactionResponse:
    """Serialize a transaction together with its admin action ledger."""
    actions = await AdminActionLedger(db).list_actions(transaction.id)
    response = TransactionResponse.model_validate(transaction)
    response.admin_actions = [AdminActionResponse.model_validate(a) for a in actions]
    return response


# ---------------------------------------------------------------------------
# Purchase
# ---------------------------------------------------------------------------


@router.post(
    "/", response_model=PurchaseResponse, status_code=201, responses=COMMAND_ERROR_RESPONSES
)
async def initiate_purchase(
    body: PurchaseCreate,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    directory: ListingDirectory = Depends(get_listing_directory),
):
    """Start a purchase. The transaction stays PENDING until capture completes."""
    svc = TransactionService(db)
    transaction = await svc.initiate(user, body.listing_id, directory)
    response = TransactionResponse.model_validate(transaction)

    # The capture worker must see the committed row
    await db.commit()
    capture_payment.delay(str(transaction.id))

    fee = platform_fee(transaction.amount)
    return PurchaseResponse(
        transaction=response,
        platform_fee=fee,
        total_due=transaction.amount + fee,
    )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@router.get("/", response_model=TransactionListResponse)
async def list_transactions(
    status: TransactionStatus | None = Query(None),
    role: str | None = Query(None, pattern="^(buyer|seller)$"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List the caller's transactions (admins see all)."""
    svc = TransactionService(db)
    items, total = await svc.list_transactions(
        actor=user, status=status, role=role, limit=limit, offset=offset
    )
    return TransactionListResponse(
        items=[TransactionResponse.model_validate(t) for t in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(
    transaction_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    svc = TransactionService(db)
    transaction = await svc.get_transaction_for_actor(transaction_id, user)
    return await _transaction_response(db, transaction)


@router.get("/{transaction_id}/history", response_model=list[TransactionTransitionResponse])
async def get_transaction_history(
    transaction_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Status history, oldest first."""
    svc = TransactionService(db)
    await svc.get_transaction_for_actor(transaction_id, user)
    transitions = await svc.get_transitions(transaction_id)
    return [TransactionTransitionResponse.model_validate(t) for t in transitions]


@router.get("/{transaction_id}/settlement", response_model=SettlementResponse)
async def get_settlement(
    transaction_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """How the transaction's funds are split between buyer and seller."""
    svc = TransactionService(db)
    transaction = await svc.get_transaction_for_actor(transaction_id, user)
    settlement = settle(transaction)
    return SettlementResponse(
        transaction_id=transaction.id,
        amount=transaction.amount,
        captured=settlement.captured,
        final=settlement.final,
        held_in_escrow=settlement.held_in_escrow,
        buyer_refund=settlement.buyer_refund,
        seller_payout=settlement.seller_payout,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@router.post(
    "/{transaction_id}/ship",
    response_model=TransactionResponse,
    responses=COMMAND_ERROR_RESPONSES,
)
async def mark_shipped(
    transaction_id: uuid.UUID,
    body: ShipRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Seller records the shipment with tracking number and proof."""
    svc = TransactionService(db)
    transaction = await svc.mark_shipped(
        transaction_id,
        user,
        tracking_number=body.tracking_number,
        proof=ShippingProof(
            key=body.shipping_proof_key,
            filename=body.shipping_proof_filename,
            content_type=body.shipping_proof_content_type,
        ),
        expected_version=body.expected_version,
    )
    return await _transaction_response(db, transaction)


@router.post(
    "/{transaction_id}/accept",
    response_model=TransactionResponse,
    responses=COMMAND_ERROR_RESPONSES,
)
async def accept_item(
    transaction_id: uuid.UUID,
    body: AcceptRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Buyer accepts the delivered item, releasing funds to the seller."""
    svc = TransactionService(db)
    transaction = await svc.accept_item(
        transaction_id, user, expected_version=body.expected_version
    )
    return await _transaction_response(db, transaction)
