"""Pytest configuration and fixtures."""

import os
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "true"
os.environ["JWT_SECRET"] = "test-secret-key-that-is-long-enough-for-hs256"
os.environ["DEPOSIT_WEBHOOK_SECRET"] = ""
os.environ["P2P_EXPIRY_SWEEP_INTERVAL"] = "0"
os.environ["WITHDRAWAL_FEE_PERCENT"] = "0"

from starbit.config import Settings
from starbit.ledger.models import Base, Cryptocurrency, PaymentMethod
from starbit.ledger.repository import LedgerRepository
from starbit.utils.locks import clear_account_locks


@pytest.fixture(autouse=True)
def reset_account_locks():
    """Locks are bound to an event loop; start every test with a fresh registry."""
    clear_account_locks()
    yield
    clear_account_locks()


@pytest.fixture
def settings() -> Settings:
    """Settings pinned for pipeline tests."""
    return Settings(
        _env_file=None,
        deposit_amount_tolerance=Decimal("0.001"),
        withdrawal_fee_percent=Decimal("0"),
        withdrawal_min_amount=Decimal("20"),
        withdrawal_max_amount=Decimal("50000"),
        p2p_trade_expiry_minutes=30,
        chat_message_max_length=2000,
    )


@pytest_asyncio.fixture
async def db_engine():
    """Create in-memory database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    session_factory = async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def ledger_repo(db_session: AsyncSession) -> LedgerRepository:
    """Create ledger repository for testing."""
    return LedgerRepository(db_session)


@pytest_asyncio.fixture
async def users(ledger_repo: LedgerRepository):
    """Three accounts: alice, bob and carol."""
    alice = await ledger_repo.get_or_create_user("alice", "alice")
    bob = await ledger_repo.get_or_create_user("bob", "bob")
    carol = await ledger_repo.get_or_create_user("carol", "carol")
    return alice, bob, carol


@pytest_asyncio.fixture
async def btc_method(db_session: AsyncSession) -> PaymentMethod:
    """Active BTC deposit method requiring 2 confirmations, 0.001 to 10 BTC."""
    btc = Cryptocurrency(name="Bitcoin", symbol="BTC", network="bitcoin", required_confirmations=2)
    db_session.add(btc)
    await db_session.flush()
    method = PaymentMethod(
        cryptocurrency_id=btc.id,
        wallet_address="bc1qexampleaddress0000000000000000000000",
        network="bitcoin",
        min_amount=Decimal("0.001"),
        max_amount=Decimal("10"),
    )
    db_session.add(method)
    await db_session.flush()
    return method
