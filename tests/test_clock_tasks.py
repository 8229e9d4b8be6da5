"""Tests for the capture task and the escrow clock (auto-release, demo delivery, stuck alerts)."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import update

from conftest import EscrowDriver
from escrow_engine.models.enums import TransactionStatus, TransactionTransitionType
from escrow_engine.models.transaction import Transaction
from escrow_engine.modules.events.outbox_service import OutboxService
from escrow_engine.modules.transaction.constants import (
    EVENT_STUCK_PENDING,
    EVENT_TRANSACTION_COMPLETED,
)
from escrow_engine.modules.transaction.providers.base import CaptureResult
from escrow_engine.modules.transaction.providers.factory import get_capture_provider
from escrow_engine.modules.transaction.providers.simulated import SimulatedCaptureProvider
from escrow_engine.modules.transaction.service import TransactionService
from escrow_engine.modules.transaction.tasks import (
    _auto_release_expired_async,
    _capture_payment_async,
    _flag_stuck_pending_async,
    _simulate_deliveries_async,
    capture_payment,
    simulate_deliveries,
)


async def _committed(session_factory, directory, buyer, seller, admin, status) -> uuid.UUID:
    """Create a transaction in ``status`` and commit it; returns its id."""
    async with session_factory() as session:
        transaction = await EscrowDriver(session, directory, buyer, seller, admin).at(status)
        await session.commit()
        return transaction.id


async def _backdate(session_factory, transaction_id, **columns) -> None:
    async with session_factory() as session:
        await session.execute(
            update(Transaction).where(Transaction.id == transaction_id).values(**columns)
        )
        await session.commit()


async def _load(session_factory, transaction_id) -> Transaction:
    async with session_factory() as session:
        return await TransactionService(session).get_transaction(transaction_id)


@pytest.fixture
def parties(directory, buyer, seller, admin):
    return directory, buyer, seller, admin


# ---------------------------------------------------------------------------
# Payment capture
# ---------------------------------------------------------------------------


def _provider(result: CaptureResult) -> MagicMock:
    provider = MagicMock()
    provider.attempt_capture = AsyncMock(return_value=result)
    return provider


class TestCapturePayment:
    @pytest.mark.asyncio
    async def test_successful_capture_secures_funds(self, session_factory, parties):
        transaction_id = await _committed(session_factory, *parties, TransactionStatus.PENDING)
        provider = _provider(CaptureResult(success=True))

        with patch(
            "escrow_engine.modules.transaction.tasks.get_capture_provider", return_value=provider
        ):
            result = await _capture_payment_async(str(transaction_id), session_factory)

        assert result == {"transaction_id": str(transaction_id), "status": "IN_ESCROW"}
        provider.attempt_capture.assert_awaited_once()
        assert (await _load(session_factory, transaction_id)).status == TransactionStatus.IN_ESCROW

    @pytest.mark.asyncio
    async def test_declined_capture_cancels(self, session_factory, parties):
        transaction_id = await _committed(session_factory, *parties, TransactionStatus.PENDING)
        provider = _provider(CaptureResult(success=False, reason="capture declined"))

        with patch(
            "escrow_engine.modules.transaction.tasks.get_capture_provider", return_value=provider
        ):
            result = await _capture_payment_async(str(transaction_id), session_factory)

        assert result["status"] == "CANCELLED"
        transaction = await _load(session_factory, transaction_id)
        assert transaction.failure_reason == "capture declined"

    @pytest.mark.asyncio
    async def test_redelivered_task_skips_settled_transaction(self, session_factory, parties):
        transaction_id = await _committed(session_factory, *parties, TransactionStatus.IN_ESCROW)
        provider = _provider(CaptureResult(success=True))

        with patch(
            "escrow_engine.modules.transaction.tasks.get_capture_provider", return_value=provider
        ):
            result = await _capture_payment_async(str(transaction_id), session_factory)

        assert result["status"] == "skipped"
        provider.attempt_capture.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_outcome_recorded_by_webhook_first_is_kept(self, session_factory, parties):
        transaction_id = await _committed(session_factory, *parties, TransactionStatus.PENDING)

        async def webhook_declines_first(txn_id, amount):
            async with session_factory() as session:
                await TransactionService(session).complete_capture(
                    txn_id, False, "capture declined"
                )
                await session.commit()
            return CaptureResult(success=True)

        provider = MagicMock()
        provider.attempt_capture = AsyncMock(side_effect=webhook_declines_first)

        with patch(
            "escrow_engine.modules.transaction.tasks.get_capture_provider", return_value=provider
        ):
            result = await _capture_payment_async(str(transaction_id), session_factory)

        assert result == {
            "transaction_id": str(transaction_id),
            "status": "rejected",
            "reason": "CONFLICT",
        }
        assert (await _load(session_factory, transaction_id)).status == TransactionStatus.CANCELLED

    def test_rejected_outcome_is_not_retried(self):
        rejected = {"transaction_id": "t-1", "status": "rejected", "reason": "CONFLICT"}

        with (
            patch(
                "escrow_engine.modules.transaction.tasks._capture_payment_async",
                AsyncMock(return_value=rejected),
            ),
            patch.object(capture_payment, "retry") as retry,
        ):
            assert capture_payment("t-1") == rejected

        retry.assert_not_called()

    def test_provider_failure_is_retried(self):
        with (
            patch(
                "escrow_engine.modules.transaction.tasks._capture_payment_async",
                AsyncMock(side_effect=ConnectionError("gateway down")),
            ),
            patch.object(capture_payment, "retry", side_effect=RuntimeError("retrying")) as retry,
        ):
            with pytest.raises(RuntimeError, match="retrying"):
                capture_payment("t-1")

        assert isinstance(retry.call_args.kwargs["exc"], ConnectionError)


class TestSimulatedProvider:
    @pytest.mark.asyncio
    async def test_always_succeeds_at_rate_one(self):
        provider = SimulatedCaptureProvider(success_rate=1.0, delay_seconds=0)

        result = await provider.attempt_capture(uuid.uuid4(), 100)

        assert result.success is True

    @pytest.mark.asyncio
    async def test_declines_at_rate_zero(self):
        provider = SimulatedCaptureProvider(success_rate=0.0, delay_seconds=0)

        result = await provider.attempt_capture(uuid.uuid4(), 100)

        assert result.success is False
        assert result.reason == "capture declined"

    def test_factory_caches_and_rejects_unknown(self):
        assert get_capture_provider("simulated") is get_capture_provider("simulated")
        with pytest.raises(ValueError):
            get_capture_provider("carrier-pigeon")


# ---------------------------------------------------------------------------
# Auto-release
# ---------------------------------------------------------------------------


class TestAutoRelease:
    @pytest.mark.asyncio
    async def test_releases_after_inspection_period(self, session_factory, parties):
        transaction_id = await _committed(session_factory, *parties, TransactionStatus.DELIVERED)
        await _backdate(
            session_factory,
            transaction_id,
            inspection_period_ends=datetime.now(UTC) - timedelta(minutes=1),
        )

        stats = await _auto_release_expired_async(session_factory)

        assert stats == {"checked": 1, "released": 1, "skipped": 0, "errors": 0}
        transaction = await _load(session_factory, transaction_id)
        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.completed_at is not None

        async with session_factory() as session:
            history = await TransactionService(session).get_transitions(transaction_id)
            events = await OutboxService(session).get_events_for_aggregate(
                "transaction", str(transaction_id)
            )
        assert history[-1].transition_type == TransactionTransitionType.AUTO_RELEASE
        assert history[-1].trigger_source == "SYSTEM"
        completed = [e for e in events if e.event_type == EVENT_TRANSACTION_COMPLETED]
        assert [e.payload["mode"] for e in completed] == ["auto"]

    @pytest.mark.asyncio
    async def test_leaves_transactions_still_in_inspection(self, session_factory, parties):
        transaction_id = await _committed(session_factory, *parties, TransactionStatus.DELIVERED)

        stats = await _auto_release_expired_async(session_factory)

        assert stats["checked"] == 0
        assert (await _load(session_factory, transaction_id)).status == TransactionStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_repeated_scans_release_once(self, session_factory, parties):
        transaction_id = await _committed(session_factory, *parties, TransactionStatus.DELIVERED)
        await _backdate(
            session_factory,
            transaction_id,
            inspection_period_ends=datetime.now(UTC) - timedelta(seconds=1),
        )

        first = await _auto_release_expired_async(session_factory)
        second = await _auto_release_expired_async(session_factory)

        assert first["released"] == 1
        assert second == {"checked": 0, "released": 0, "skipped": 0, "errors": 0}

    @pytest.mark.asyncio
    async def test_overlapping_scans_release_once(self, session_factory, parties):
        transaction_id = await _committed(session_factory, *parties, TransactionStatus.DELIVERED)
        await _backdate(
            session_factory,
            transaction_id,
            inspection_period_ends=datetime.now(UTC) - timedelta(seconds=1),
        )
        now = datetime.now(UTC)

        # Both ticks see the same candidate before either acts
        async with session_factory() as first, session_factory() as second:
            assert await TransactionService(first).find_expired_inspections(now) == [transaction_id]
            assert await TransactionService(second).find_expired_inspections(now) == [transaction_id]

            released = await TransactionService(first).auto_release(transaction_id, now)
            await first.commit()
            again = await TransactionService(second).auto_release(transaction_id, now)
            await second.commit()

        assert released is not None
        assert again is None
        async with session_factory() as session:
            history = await TransactionService(session).get_transitions(transaction_id)
        auto = [h for h in history if h.transition_type == TransactionTransitionType.AUTO_RELEASE]
        assert len(auto) == 1

    @pytest.mark.asyncio
    async def test_buyer_acceptance_wins_over_late_scan(self, session_factory, parties):
        _, buyer, _, _ = parties
        transaction_id = await _committed(session_factory, *parties, TransactionStatus.DELIVERED)
        await _backdate(
            session_factory,
            transaction_id,
            inspection_period_ends=datetime.now(UTC) - timedelta(seconds=1),
        )
        async with session_factory() as session:
            await TransactionService(session).accept_item(transaction_id, buyer)
            await session.commit()

        async with session_factory() as session:
            assert await TransactionService(session).auto_release(transaction_id) is None

    @pytest.mark.asyncio
    async def test_missed_deadline_is_caught_on_next_tick(self, session_factory, parties):
        transaction_id = await _committed(session_factory, *parties, TransactionStatus.DELIVERED)
        # Deadline passed long ago, e.g. while workers were down
        await _backdate(
            session_factory,
            transaction_id,
            inspection_period_ends=datetime.now(UTC) - timedelta(days=10),
        )

        stats = await _auto_release_expired_async(session_factory)

        assert stats["released"] == 1


# ---------------------------------------------------------------------------
# Demo delivery and stuck capture alerts
# ---------------------------------------------------------------------------


class TestSimulateDeliveries:
    @pytest.mark.asyncio
    async def test_delivers_items_shipped_before_delay(self, session_factory, parties):
        transaction_id = await _committed(session_factory, *parties, TransactionStatus.SHIPPED)
        await _backdate(
            session_factory, transaction_id, shipped_at=datetime.now(UTC) - timedelta(minutes=5)
        )

        stats = await _simulate_deliveries_async(session_factory)

        assert stats == {"checked": 1, "delivered": 1, "errors": 0}
        transaction = await _load(session_factory, transaction_id)
        assert transaction.status == TransactionStatus.DELIVERED
        assert transaction.inspection_period_ends == transaction.delivered_at + timedelta(days=3)

    def test_disabled_outside_demo(self):
        assert simulate_deliveries() == {"checked": 0, "delivered": 0, "errors": 0}


class TestFlagStuckPending:
    @pytest.mark.asyncio
    async def test_flags_old_pending_transactions_once(self, session_factory, parties):
        transaction_id = await _committed(session_factory, *parties, TransactionStatus.PENDING)
        await _backdate(
            session_factory, transaction_id, created_at=datetime.now(UTC) - timedelta(hours=2)
        )

        first = await _flag_stuck_pending_async(session_factory)
        second = await _flag_stuck_pending_async(session_factory)

        assert first == {"checked": 1, "flagged": 1, "errors": 0}
        assert second["checked"] == 0
        transaction = await _load(session_factory, transaction_id)
        assert transaction.status == TransactionStatus.PENDING
        assert transaction.stuck_alerted_at is not None

        async with session_factory() as session:
            events = await OutboxService(session).get_events_for_aggregate(
                "transaction", str(transaction_id)
            )
        assert [e.event_type for e in events] == [EVENT_STUCK_PENDING]

    @pytest.mark.asyncio
    async def test_recent_pending_not_flagged(self, session_factory, parties):
        await _committed(session_factory, *parties, TransactionStatus.PENDING)

        stats = await _flag_stuck_pending_async(session_factory)

        assert stats["flagged"] == 0
