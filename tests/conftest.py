"""Pytest configuration and fixtures."""

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "false"
os.environ["DRY_RUN"] = "true"
os.environ.pop("WALLET_MNEMONIC", None)

from tonsettle.chain.base import SimulatedChain
from tonsettle.config import Settings
from tonsettle.ledger.database import (
    build_engine,
    close_db,
    session_factory_for,
    set_session_factory,
)
from tonsettle.ledger.models import Base
from tonsettle.ledger.repository import LedgerRepository
from tonsettle.ton.address import Address
from tonsettle.ton.wallet import HotWallet
from tonsettle.utils.locks import clear_locks

DEPOSIT_HASH = bytes.fromhex("ab" * 32)
DEPOSIT_ADDRESS = Address(0, DEPOSIT_HASH)
USDT_MASTER = Address(0, bytes.fromhex("cd" * 32)).to_friendly()


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """File-backed SQLite engine, installed as the global session factory."""
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    set_session_factory(session_factory_for(engine))

    yield engine

    await close_db()
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    session_factory = async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def ledger_repo(db_session: AsyncSession) -> LedgerRepository:
    """Create ledger repository for testing."""
    return LedgerRepository(db_session)


@pytest_asyncio.fixture
async def user_id(db_session: AsyncSession) -> int:
    """A committed user with a zero balance."""
    user = await LedgerRepository(db_session).get_or_create_user(telegram_id=100001)
    await db_session.commit()
    return user.id


@pytest.fixture(autouse=True)
def _reset_locks():
    clear_locks()
    yield
    clear_locks()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="test",
        dry_run=True,
        deposit_ton_address=DEPOSIT_ADDRESS.to_friendly(),
        usdt_jetton_master=USDT_MASTER,
        wallet_mnemonic=None,
        withdraw_max_attempts=3,
        withdraw_batch_size=5,
    )


@pytest.fixture
def chain() -> SimulatedChain:
    return SimulatedChain()


@pytest.fixture
def wallet() -> HotWallet:
    return HotWallet.from_seed(bytes(range(32)))


@pytest.fixture
def deposit_address() -> Address:
    return DEPOSIT_ADDRESS


@pytest.fixture
def usdt_master() -> str:
    return USDT_MASTER
