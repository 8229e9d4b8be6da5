"""Pytest fixtures for escrow engine tests."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import escrow_engine.models  # noqa: F401  (registers every table on Base.metadata)
from escrow_engine.database.base import Base
from escrow_engine.models.enums import ResolutionOutcome, TransactionStatus, UserRole
from escrow_engine.models.transaction import Transaction
from escrow_engine.modules.dispute.service import DisputeService
from escrow_engine.modules.identity.auth import AuthenticatedUser
from escrow_engine.modules.marketplace.client import Listing, ListingDirectory
from escrow_engine.modules.transaction.service import ShippingProof, TransactionService

LISTING_ID = "listing-1"


def make_user(role: UserRole = UserRole.MEMBER, name: str | None = None) -> AuthenticatedUser:
    user_id = uuid.uuid4()
    return AuthenticatedUser(
        id=user_id,
        email=f"{user_id.hex[:8]}@example.com",
        role=role,
        name=name,
    )


class FakeListingDirectory(ListingDirectory):
    """In-memory stand-in for the marketplace listing service."""

    def __init__(self) -> None:
        self.listings: dict[str, Listing] = {}
        self.addresses: set[uuid.UUID] = set()

    def add_listing(
        self,
        seller_id: uuid.UUID,
        price: str = "1000.00",
        listing_id: str = LISTING_ID,
        title: str = "Vintage film camera",
        is_available: bool = True,
    ) -> Listing:
        listing = Listing(
            id=listing_id,
            seller_id=seller_id,
            title=title,
            price=Decimal(price),
            is_available=is_available,
        )
        self.listings[listing_id] = listing
        return listing

    async def get_listing(self, listing_id: str) -> Listing | None:
        return self.listings.get(listing_id)

    async def has_shipping_address(self, user_id: uuid.UUID) -> bool:
        return user_id in self.addresses


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """A fresh SQLite database per test, shared by every session the test opens."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------


@pytest.fixture
def buyer() -> AuthenticatedUser:
    return make_user(name="Bola Buyer")


@pytest.fixture
def seller() -> AuthenticatedUser:
    return make_user(name="Sade Seller")


@pytest.fixture
def stranger() -> AuthenticatedUser:
    return make_user()


@pytest.fixture
def admin() -> AuthenticatedUser:
    return make_user(UserRole.ADMIN, name="Ada Admin")


@pytest.fixture
def super_admin() -> AuthenticatedUser:
    return make_user(UserRole.SUPER_ADMIN, name="Segun Super")


@pytest.fixture
def other_super_admin() -> AuthenticatedUser:
    return make_user(UserRole.SUPER_ADMIN, name="Tola Super")


@pytest.fixture
def directory(buyer, seller) -> FakeListingDirectory:
    """A ₦1000 listing from ``seller``; ``buyer`` has a saved address."""
    fake = FakeListingDirectory()
    fake.add_listing(seller.id)
    fake.addresses.add(buyer.id)
    return fake


# ---------------------------------------------------------------------------
# Lifecycle driver
# ---------------------------------------------------------------------------


class EscrowDriver:
    """Moves a fresh transaction into a given status through the public API."""

    def __init__(self, db, directory, buyer, seller, admin) -> None:
        self.db = db
        self.directory = directory
        self.buyer = buyer
        self.seller = seller
        self.admin = admin
        self.transactions = TransactionService(db)

    async def pending(self) -> Transaction:
        return await self.transactions.initiate(self.buyer, LISTING_ID, self.directory)

    async def in_escrow(self) -> Transaction:
        transaction = await self.pending()
        return await self.transactions.complete_capture(transaction.id, True)

    async def cancelled(self) -> Transaction:
        transaction = await self.pending()
        return await self.transactions.complete_capture(transaction.id, False)

    async def shipped(self) -> Transaction:
        transaction = await self.in_escrow()
        return await self.transactions.mark_shipped(
            transaction.id,
            self.seller,
            tracking_number="TRK1",
            proof=ShippingProof(key="proofs/trk1.jpg", filename="receipt.jpg", content_type="image/jpeg"),
        )

    async def delivered(self) -> Transaction:
        transaction = await self.shipped()
        return await self.transactions.simulate_delivery(transaction.id)

    async def completed(self) -> Transaction:
        transaction = await self.delivered()
        return await self.transactions.accept_item(transaction.id, self.buyer)

    async def disputed(self, reason: str = "item not as described") -> Transaction:
        transaction = await self.delivered()
        await DisputeService(self.db).open_dispute(transaction.id, self.buyer, reason)
        return await self.transactions.get_transaction(transaction.id)

    async def admin_cancelled(self) -> Transaction:
        transaction = await self.in_escrow()
        transaction, _ = await self.transactions.admin_override(
            transaction.id, self.admin, ResolutionOutcome.FULL_REFUND
        )
        return transaction

    async def at(self, status: TransactionStatus) -> Transaction:
        steps = {
            TransactionStatus.PENDING: self.pending,
            TransactionStatus.IN_ESCROW: self.in_escrow,
            TransactionStatus.SHIPPED: self.shipped,
            TransactionStatus.DELIVERED: self.delivered,
            TransactionStatus.COMPLETED: self.completed,
            TransactionStatus.DISPUTED: self.disputed,
            TransactionStatus.CANCELLED: self.cancelled,
        }
        return await steps[status]()


@pytest.fixture
def escrow(db, directory, buyer, seller, admin) -> EscrowDriver:
    return EscrowDriver(db, directory, buyer, seller, admin)
