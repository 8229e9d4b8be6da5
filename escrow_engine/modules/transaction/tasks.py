"""Celery tasks for payment capture and the escrow clock."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import UTC, datetime, timedelta

from celery_app import celery
from escrow_engine.config import settings
from escrow_engine.database.engine import async_session
from escrow_engine.exceptions import AppException
from escrow_engine.models.enums import TransactionStatus
from escrow_engine.models.transaction import Transaction
from escrow_engine.modules.transaction.providers.factory import get_capture_provider
from escrow_engine.modules.transaction.service import TransactionService

logger = logging.getLogger(__name__)


async def _capture_payment_async(transaction_id: str, session_factory=async_session) -> dict:
    """Attempt capture outside any row lock, then record the outcome."""
    txn_id = uuid.UUID(transaction_id)

    async with session_factory() as session:
        transaction = await session.get(Transaction, txn_id)
        if transaction is None or transaction.status != TransactionStatus.PENDING:
            return {"transaction_id": transaction_id, "status": "skipped"}
        amount = transaction.amount

    result = await get_capture_provider().attempt_capture(txn_id, amount)

    async with session_factory() as session:
        svc = TransactionService(session)
        try:
            transaction = await svc.complete_capture(txn_id, result.success, result.reason)
            await session.commit()
        except AppException as exc:
            # A webhook recorded a different outcome first; retrying cannot change it
            await session.rollback()
            logger.warning("Capture outcome for %s rejected: %s", transaction_id, exc.message)
            return {"transaction_id": transaction_id, "status": "rejected", "reason": exc.code}

    return {"transaction_id": transaction_id, "status": transaction.status.value}


async def _auto_release_expired_async(session_factory=async_session) -> dict:
    """Complete DELIVERED transactions whose inspection period has ended.

    The scan is a query, so deadlines that passed while workers were down are
    picked up on the next tick. Each transaction is committed on its own.
    """
    stats = {"checked": 0, "released": 0, "skipped": 0, "errors": 0}
    now = datetime.now(UTC)

    async with session_factory() as session:
        candidate_ids = await TransactionService(session).find_expired_inspections(now)
    stats["checked"] = len(candidate_ids)

    for transaction_id in candidate_ids:
        async with session_factory() as session:
            try:
                released = await TransactionService(session).auto_release(transaction_id, now)
                await session.commit()
            except AppException:
                await session.rollback()
                logger.info("Auto-release of %s lost a race; skipping", transaction_id)
                stats["skipped"] += 1
                continue
            except Exception:
                await session.rollback()
                logger.exception("Error auto-releasing transaction %s", transaction_id)
                stats["errors"] += 1
                continue
        if released is None:
            stats["skipped"] += 1
        else:
            stats["released"] += 1

    return stats


async def _simulate_deliveries_async(session_factory=async_session) -> dict:
    """Demo carrier: deliver items shipped more than the configured delay ago."""
    stats = {"checked": 0, "delivered": 0, "errors": 0}
    cutoff = datetime.now(UTC) - timedelta(seconds=settings.demo_delivery_delay_seconds)

    async with session_factory() as session:
        candidate_ids = await TransactionService(session).find_shipped_before(cutoff)
    stats["checked"] = len(candidate_ids)

    for transaction_id in candidate_ids:
        async with session_factory() as session:
            try:
                await TransactionService(session).simulate_delivery(transaction_id)
                await session.commit()
                stats["delivered"] += 1
            except Exception:
                await session.rollback()
                logger.exception("Error delivering transaction %s", transaction_id)
                stats["errors"] += 1

    return stats


async def _flag_stuck_pending_async(session_factory=async_session) -> dict:
    stats = {"checked": 0, "flagged": 0, "errors": 0}
    cutoff = datetime.now(UTC) - timedelta(minutes=settings.stuck_pending_threshold_minutes)

    async with session_factory() as session:
        candidate_ids = await TransactionService(session).find_stuck_pending(cutoff)
    stats["checked"] = len(candidate_ids)

    for transaction_id in candidate_ids:
        async with session_factory() as session:
            try:
                if await TransactionService(session).flag_stuck(transaction_id):
                    stats["flagged"] += 1
                await session.commit()
            except Exception:
                await session.rollback()
                logger.exception("Error flagging stuck transaction %s", transaction_id)
                stats["errors"] += 1

    return stats


@celery.task(
    name="escrow_engine.modules.transaction.tasks.capture_payment",
    bind=True,
    max_retries=5,
)
def capture_payment(self, transaction_id: str):
    """Capture the buyer's payment for a newly initiated transaction."""
    try:
        result = asyncio.run(_capture_payment_async(transaction_id))
        logger.info("capture_payment complete for %s: %s", transaction_id, result)
        return result
    except Exception as exc:
        # Provider or infrastructure failure; business rejections return above
        logger.exception("capture_payment failed for %s", transaction_id)
        raise self.retry(exc=exc, countdown=30)


@celery.task(name="escrow_engine.modules.transaction.tasks.auto_release_expired")
def auto_release_expired():
    """Release funds for transactions whose inspection period has ended."""
    stats = asyncio.run(_auto_release_expired_async())
    logger.info("auto_release_expired complete: %s", stats)
    return stats


@celery.task(name="escrow_engine.modules.transaction.tasks.simulate_deliveries")
def simulate_deliveries():
    """Deliver shipped items after a fixed delay (demo only)."""
    if not settings.demo_delivery_enabled:
        return {"checked": 0, "delivered": 0, "errors": 0}
    stats = asyncio.run(_simulate_deliveries_async())
    logger.info("simulate_deliveries complete: %s", stats)
    return stats


@celery.task(name="escrow_engine.modules.transaction.tasks.flag_stuck_pending")
def flag_stuck_pending():
    """Alert operators about captures that never resolved."""
    stats = asyncio.run(_flag_stuck_pending_async())
    logger.info("flag_stuck_pending complete: %s", stats)
    return stats
