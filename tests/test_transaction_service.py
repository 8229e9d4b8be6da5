"""Tests for TransactionService — purchase, capture, fulfilment and the state machine guard."""

from __future__ import annotations

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import LISTING_ID, make_user
from escrow_engine.exceptions import (
    ConflictException,
    ForbiddenException,
    IllegalTransitionException,
    InvariantViolationError,
    ListingUnavailableException,
    NotFoundException,
    SelfPurchaseException,
    ShippingAddressRequiredException,
    ValidationException,
)
from escrow_engine.models.enums import (
    ResolutionOutcome,
    TransactionStatus,
    TransactionTransitionType,
    UserRole,
)
from escrow_engine.models.transaction import Transaction
from escrow_engine.modules.admin_action.ledger import AdminActionLedger
from escrow_engine.modules.events.outbox_service import OutboxService
from escrow_engine.modules.transaction.constants import (
    CAPTURE_DECLINED_REASON,
    EVENT_ITEM_DELIVERED,
    EVENT_ITEM_SHIPPED,
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_SECURED,
    INSPECTION_PERIOD,
    allowed_transitions,
)
from escrow_engine.modules.transaction.service import (
    ShippingProof,
    TransactionService,
    assert_invariants,
)

PROOF = ShippingProof(key="proofs/trk.jpg")


async def _event_types(db, transaction_id) -> list[str]:
    events = await OutboxService(db).get_events_for_aggregate("transaction", str(transaction_id))
    return [e.event_type for e in events]


async def _events(db, transaction_id, event_type):
    events = await OutboxService(db).get_events_for_aggregate("transaction", str(transaction_id))
    return [e for e in events if e.event_type == event_type]


# ---------------------------------------------------------------------------
# Purchase
# ---------------------------------------------------------------------------


class TestInitiate:
    @pytest.mark.asyncio
    async def test_creates_pending_transaction_at_listing_price(self, db, directory, buyer, seller):
        svc = TransactionService(db)

        transaction = await svc.initiate(buyer, LISTING_ID, directory)

        assert transaction.status == TransactionStatus.PENDING
        assert transaction.amount == Decimal("1000.00")
        assert transaction.buyer_id == buyer.id
        assert transaction.seller_id == seller.id
        assert transaction.item_description == "Vintage film camera"
        assert transaction.version == 1
        assert transaction.captured_at is None

    @pytest.mark.asyncio
    async def test_records_initial_history_row(self, db, directory, buyer):
        svc = TransactionService(db)
        transaction = await svc.initiate(buyer, LISTING_ID, directory)

        history = await svc.get_transitions(transaction.id)

        assert len(history) == 1
        assert history[0].from_status is None
        assert history[0].to_status == TransactionStatus.PENDING
        assert history[0].transition_type == TransactionTransitionType.INITIATE
        assert history[0].triggered_by == buyer.id

    @pytest.mark.asyncio
    async def test_missing_shipping_address_is_recoverable(self, db, directory, buyer):
        directory.addresses.clear()
        svc = TransactionService(db)

        with pytest.raises(ShippingAddressRequiredException) as exc_info:
            await svc.initiate(buyer, LISTING_ID, directory)
        assert exc_info.value.code == "NO_SHIPPING_ADDRESS"

        # Saving an address and retrying succeeds
        directory.addresses.add(buyer.id)
        transaction = await svc.initiate(buyer, LISTING_ID, directory)
        assert transaction.status == TransactionStatus.PENDING

    @pytest.mark.asyncio
    async def test_rejects_self_purchase(self, db, directory, seller):
        directory.addresses.add(seller.id)
        svc = TransactionService(db)

        with pytest.raises(SelfPurchaseException):
            await svc.initiate(seller, LISTING_ID, directory)

    @pytest.mark.asyncio
    async def test_rejects_unknown_listing(self, db, directory, buyer):
        svc = TransactionService(db)

        with pytest.raises(ListingUnavailableException):
            await svc.initiate(buyer, "no-such-listing", directory)

    @pytest.mark.asyncio
    async def test_rejects_sold_listing(self, db, directory, buyer, seller):
        directory.add_listing(seller.id, listing_id="sold", is_available=False)
        svc = TransactionService(db)

        with pytest.raises(ListingUnavailableException):
            await svc.initiate(buyer, "sold", directory)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price", ["10.005", "1e30"])
    async def test_rejects_unrepresentable_price(self, db, directory, buyer, seller, price):
        directory.add_listing(seller.id, listing_id="odd", price=price)
        svc = TransactionService(db)

        with pytest.raises(ValidationException):
            await svc.initiate(buyer, "odd", directory)

    @pytest.mark.asyncio
    async def test_admins_cannot_buy(self, db, directory, admin):
        directory.addresses.add(admin.id)
        svc = TransactionService(db)

        with pytest.raises(ForbiddenException):
            await svc.initiate(admin, LISTING_ID, directory)


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------


class TestCompleteCapture:
    @pytest.mark.asyncio
    async def test_success_moves_to_escrow_and_notifies_both_parties(self, db, escrow, buyer, seller):
        transaction = await escrow.pending()

        transaction = await escrow.transactions.complete_capture(transaction.id, True)

        assert transaction.status == TransactionStatus.IN_ESCROW
        assert transaction.captured_at is not None
        (event,) = await _events(db, transaction.id, EVENT_PAYMENT_SECURED)
        assert set(event.payload["recipient_ids"]) == {str(buyer.id), str(seller.id)}

    @pytest.mark.asyncio
    async def test_failure_cancels_and_notifies_buyer_only(self, db, escrow, buyer):
        transaction = await escrow.pending()

        transaction = await escrow.transactions.complete_capture(transaction.id, False)

        assert transaction.status == TransactionStatus.CANCELLED
        assert transaction.failure_reason == CAPTURE_DECLINED_REASON
        assert transaction.cancelled_at is not None
        assert transaction.completed_at is None
        (event,) = await _events(db, transaction.id, EVENT_PAYMENT_FAILED)
        assert event.payload["recipient_ids"] == [str(buyer.id)]
        assert event.payload["reason"] == CAPTURE_DECLINED_REASON

    @pytest.mark.asyncio
    async def test_repeated_success_is_a_noop(self, db, escrow):
        transaction = await escrow.in_escrow()
        version = transaction.version
        captured_at = transaction.captured_at

        again = await escrow.transactions.complete_capture(transaction.id, True)

        assert again.status == TransactionStatus.IN_ESCROW
        assert again.version == version
        assert again.captured_at == captured_at
        assert (await _event_types(db, transaction.id)).count(EVENT_PAYMENT_SECURED) == 1

    @pytest.mark.asyncio
    async def test_repeated_failure_is_a_noop(self, escrow):
        transaction = await escrow.cancelled()

        again = await escrow.transactions.complete_capture(transaction.id, False)

        assert again.status == TransactionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_opposite_outcome_after_success_conflicts(self, escrow):
        transaction = await escrow.in_escrow()

        with pytest.raises(ConflictException):
            await escrow.transactions.complete_capture(transaction.id, False)

    @pytest.mark.asyncio
    async def test_opposite_outcome_after_failure_conflicts(self, escrow):
        transaction = await escrow.cancelled()

        with pytest.raises(ConflictException):
            await escrow.transactions.complete_capture(transaction.id, True)

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, db):
        with pytest.raises(NotFoundException):
            await TransactionService(db).complete_capture(uuid.uuid4(), True)


# ---------------------------------------------------------------------------
# Fulfilment
# ---------------------------------------------------------------------------


class TestFulfilment:
    @pytest.mark.asyncio
    async def test_mark_shipped_records_tracking_and_proof(self, db, escrow, buyer):
        transaction = await escrow.in_escrow()

        transaction = await escrow.transactions.mark_shipped(
            transaction.id,
            escrow.seller,
            tracking_number="  TRK1  ",
            proof=ShippingProof(key="proofs/a.jpg", filename="a.jpg", content_type="image/jpeg"),
            expected_version=transaction.version,
        )

        assert transaction.status == TransactionStatus.SHIPPED
        assert transaction.tracking_number == "TRK1"
        assert transaction.shipping_proof_key == "proofs/a.jpg"
        assert transaction.shipping_proof_content_type == "image/jpeg"
        assert transaction.shipped_at is not None
        (event,) = await _events(db, transaction.id, EVENT_ITEM_SHIPPED)
        assert event.payload["recipient_ids"] == [str(buyer.id)]
        assert event.payload["tracking_number"] == "TRK1"

    @pytest.mark.asyncio
    async def test_mark_shipped_requires_tracking_number(self, escrow):
        transaction = await escrow.in_escrow()

        with pytest.raises(ValidationException):
            await escrow.transactions.mark_shipped(transaction.id, escrow.seller, "   ", PROOF)

        reloaded = await escrow.transactions.get_transaction(transaction.id)
        assert reloaded.status == TransactionStatus.IN_ESCROW

    @pytest.mark.asyncio
    async def test_mark_shipped_requires_proof(self, escrow):
        transaction = await escrow.in_escrow()

        with pytest.raises(ValidationException):
            await escrow.transactions.mark_shipped(transaction.id, escrow.seller, "TRK1", None)

    @pytest.mark.asyncio
    async def test_delivery_starts_three_day_inspection_period(self, db, escrow):
        transaction = await escrow.shipped()

        transaction = await escrow.transactions.simulate_delivery(transaction.id)

        assert transaction.status == TransactionStatus.DELIVERED
        assert transaction.inspection_period_ends - transaction.delivered_at == timedelta(days=3)
        assert INSPECTION_PERIOD == timedelta(days=3)
        assert EVENT_ITEM_DELIVERED in await _event_types(db, transaction.id)

    @pytest.mark.asyncio
    async def test_accept_completes_without_refund_fields(self, escrow):
        transaction = await escrow.delivered()

        transaction = await escrow.transactions.accept_item(
            transaction.id, escrow.buyer, expected_version=transaction.version
        )

        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.completed_at is not None
        assert transaction.cancelled_at is None
        assert transaction.refunded_amount is None

    @pytest.mark.asyncio
    async def test_history_is_totally_ordered(self, escrow):
        transaction = await escrow.completed()

        history = await escrow.transactions.get_transitions(transaction.id)

        assert [h.transition_type for h in history] == [
            TransactionTransitionType.INITIATE,
            TransactionTransitionType.CAPTURE_SUCCEEDED,
            TransactionTransitionType.SHIP,
            TransactionTransitionType.DELIVER,
            TransactionTransitionType.ACCEPT,
        ]
        for earlier, later in zip(history, history[1:]):
            assert earlier.to_status == later.from_status


# ---------------------------------------------------------------------------
# Authorization and versions
# ---------------------------------------------------------------------------


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_buyer_cannot_mark_shipped(self, escrow):
        transaction = await escrow.in_escrow()

        with pytest.raises(ForbiddenException):
            await escrow.transactions.mark_shipped(transaction.id, escrow.buyer, "TRK1", PROOF)

        reloaded = await escrow.transactions.get_transaction(transaction.id)
        assert reloaded.status == TransactionStatus.IN_ESCROW

    @pytest.mark.asyncio
    async def test_seller_cannot_accept(self, escrow):
        transaction = await escrow.delivered()

        with pytest.raises(ForbiddenException):
            await escrow.transactions.accept_item(transaction.id, escrow.seller)

    @pytest.mark.asyncio
    async def test_admin_is_not_the_buyer(self, escrow, admin):
        transaction = await escrow.delivered()

        with pytest.raises(ForbiddenException):
            await escrow.transactions.accept_item(transaction.id, admin)

    @pytest.mark.asyncio
    async def test_member_cannot_override(self, escrow):
        transaction = await escrow.in_escrow()

        with pytest.raises(ForbiddenException):
            await escrow.transactions.admin_override(
                transaction.id, escrow.buyer, ResolutionOutcome.FULL_REFUND
            )

    @pytest.mark.asyncio
    async def test_stranger_cannot_read(self, escrow, stranger, admin):
        transaction = await escrow.pending()

        with pytest.raises(ForbiddenException):
            await escrow.transactions.get_transaction_for_actor(transaction.id, stranger)
        assert (
            await escrow.transactions.get_transaction_for_actor(transaction.id, admin)
        ).id == transaction.id

    @pytest.mark.asyncio
    async def test_stale_expected_version_conflicts(self, escrow):
        transaction = await escrow.delivered()
        stale = transaction.version - 1

        with pytest.raises(ConflictException):
            await escrow.transactions.accept_item(transaction.id, escrow.buyer, expected_version=stale)

        reloaded = await escrow.transactions.get_transaction(transaction.id)
        assert reloaded.status == TransactionStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_authorization_is_checked_before_legality(self, escrow):
        transaction = await escrow.pending()

        # Buyer is the wrong actor for shipping, so the status never matters
        with pytest.raises(ForbiddenException):
            await escrow.transactions.mark_shipped(transaction.id, escrow.buyer, "TRK1", PROOF)


# ---------------------------------------------------------------------------
# Illegal transition matrix
# ---------------------------------------------------------------------------


async def _ship(escrow, transaction):
    return await escrow.transactions.mark_shipped(transaction.id, escrow.seller, "TRK1", PROOF)


async def _deliver(escrow, transaction):
    return await escrow.transactions.simulate_delivery(transaction.id)


async def _accept(escrow, transaction):
    return await escrow.transactions.accept_item(transaction.id, escrow.buyer)


async def _dispute(escrow, transaction):
    return await escrow.transactions.raise_dispute(transaction.id, escrow.buyer, "broken")


async def _force_payout(escrow, transaction):
    return await escrow.transactions.admin_override(
        transaction.id, escrow.admin, ResolutionOutcome.RELEASE
    )


async def _force_refund(escrow, transaction):
    return await escrow.transactions.admin_override(
        transaction.id, escrow.admin, ResolutionOutcome.FULL_REFUND
    )


COMMANDS = {
    "ship": (_ship, {TransactionStatus.IN_ESCROW}),
    "deliver": (_deliver, {TransactionStatus.SHIPPED}),
    "accept": (_accept, {TransactionStatus.DELIVERED}),
    "dispute": (_dispute, {TransactionStatus.DELIVERED}),
    "force_payout": (
        _force_payout,
        {
            TransactionStatus.IN_ESCROW,
            TransactionStatus.SHIPPED,
            TransactionStatus.DELIVERED,
            TransactionStatus.DISPUTED,
        },
    ),
    "force_refund": (
        _force_refund,
        {
            TransactionStatus.IN_ESCROW,
            TransactionStatus.SHIPPED,
            TransactionStatus.DELIVERED,
            TransactionStatus.DISPUTED,
        },
    ),
}

ILLEGAL_CASES = [
    (command, status)
    for command, (_, legal_from) in COMMANDS.items()
    for status in TransactionStatus
    if status not in legal_from
]


class TestIllegalTransitions:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "command,status", ILLEGAL_CASES, ids=[f"{c}-from-{s.value}" for c, s in ILLEGAL_CASES]
    )
    async def test_rejected_without_state_change(self, db, escrow, command, status):
        transaction = await escrow.at(status)
        version = transaction.version
        history_len = len(await escrow.transactions.get_transitions(transaction.id))
        action, _ = COMMANDS[command]

        with pytest.raises(IllegalTransitionException):
            await action(escrow, transaction)

        reloaded = await escrow.transactions.get_transaction(transaction.id)
        assert reloaded.status == status
        assert reloaded.version == version
        assert len(await escrow.transactions.get_transitions(transaction.id)) == history_len
        assert await AdminActionLedger(db).list_actions(transaction.id) == []

    def test_every_status_has_an_entry_or_is_terminal(self):
        for status in TransactionStatus:
            allowed = allowed_transitions(status)
            if status in (TransactionStatus.COMPLETED, TransactionStatus.CANCELLED):
                assert allowed == {}
            else:
                assert allowed

    def test_dispute_eligibility_is_configurable(self):
        assert TransactionTransitionType.RAISE_DISPUTE not in allowed_transitions(
            TransactionStatus.SHIPPED
        )
        assert TransactionTransitionType.RAISE_DISPUTE in allowed_transitions(
            TransactionStatus.SHIPPED,
            {TransactionStatus.SHIPPED, TransactionStatus.DELIVERED},
        )
        # Terminal and already-disputed states stay ineligible whatever the setting
        assert TransactionTransitionType.RAISE_DISPUTE not in allowed_transitions(
            TransactionStatus.COMPLETED, set(TransactionStatus)
        )

    @pytest.mark.asyncio
    async def test_dispute_from_shipped_when_enabled(self, db, escrow):
        transaction = await escrow.shipped()
        svc = TransactionService(db, dispute_eligible_statuses=["SHIPPED", "DELIVERED"])

        transaction = await svc.raise_dispute(transaction.id, escrow.buyer, "never arrived")

        assert transaction.status == TransactionStatus.DISPUTED


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_filters_by_party_and_status(self, escrow, buyer, seller, stranger, admin):
        await escrow.in_escrow()
        await escrow.cancelled()

        mine, total = await escrow.transactions.list_transactions(buyer)
        assert total == 2 and len(mine) == 2

        selling, total = await escrow.transactions.list_transactions(seller, role="seller")
        assert total == 2

        buying, total = await escrow.transactions.list_transactions(seller, role="buyer")
        assert total == 0

        cancelled, total = await escrow.transactions.list_transactions(
            buyer, status=TransactionStatus.CANCELLED
        )
        assert total == 1 and cancelled[0].status == TransactionStatus.CANCELLED

        _, total = await escrow.transactions.list_transactions(stranger)
        assert total == 0

        _, total = await escrow.transactions.list_transactions(admin)
        assert total == 2

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, db):
        with pytest.raises(NotFoundException):
            await TransactionService(db).get_transaction(uuid.uuid4())


# ---------------------------------------------------------------------------
# Invariants
# ---------------------------------------------------------------------------


def _transaction(**fields) -> Transaction:
    values = {
        "id": uuid.uuid4(),
        "buyer_id": uuid.uuid4(),
        "seller_id": uuid.uuid4(),
        "listing_id": "x",
        "item_description": "x",
        "amount": Decimal("100.00"),
        "status": TransactionStatus.IN_ESCROW,
    }
    values.update(fields)
    return Transaction(**values)


class TestAssertInvariants:
    def test_consistent_record_passes(self):
        assert_invariants(_transaction())

    def test_both_outcome_timestamps(self, caplog):
        from datetime import UTC, datetime

        now = datetime.now(UTC)
        transaction = _transaction(
            status=TransactionStatus.COMPLETED, completed_at=now, cancelled_at=now
        )

        with pytest.raises(InvariantViolationError):
            assert_invariants(transaction)
        assert any(r.levelname == "CRITICAL" for r in caplog.records)

    def test_refund_above_amount(self):
        from datetime import UTC, datetime

        transaction = _transaction(
            status=TransactionStatus.CANCELLED,
            cancelled_at=datetime.now(UTC),
            refunded_amount=Decimal("100.01"),
        )

        with pytest.raises(InvariantViolationError):
            assert_invariants(transaction)

    def test_refund_on_non_cancelled(self):
        transaction = _transaction(refunded_amount=Decimal("10.00"))

        with pytest.raises(InvariantViolationError):
            assert_invariants(transaction)

    def test_invariant_error_is_not_a_user_error(self):
        assert issubclass(InvariantViolationError, AssertionError)


class TestRoles:
    def test_role_helpers(self):
        assert make_user(UserRole.SUPER_ADMIN).is_admin
        assert make_user(UserRole.SUPER_ADMIN).is_super_admin
        assert make_user(UserRole.ADMIN).is_admin
        assert not make_user(UserRole.ADMIN).is_super_admin
        assert not make_user().is_admin
