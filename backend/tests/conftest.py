"""Shared fixtures for ledger, trade engine and funding tests."""

import sys
import uuid
from decimal import Decimal
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from models.actor import Actor
from models.database import Base, KycStatus, User, UserRole
from services import ledger
from services.errors import PriceUnavailable

# Every module that opens its own sessions
_SESSION_MODULES = (
    "services.trade_engine",
    "services.funding",
    "services.accounts",
)


class FakeOracle:
    """Stands in for PriceOracle; answers from a queue, then a fixed price."""

    def __init__(self, price: float = 100.0):
        self.price = price
        self.queue: list = []
        self.calls: list[str] = []

    def push(self, *prices):
        self.queue.extend(prices)

    async def get_price_or_fallback(self, pair: str) -> float:
        self.calls.append(pair)
        value = self.queue.pop(0) if self.queue else self.price
        if isinstance(value, Exception):
            raise value
        if value is None:
            raise PriceUnavailable(f"Price unavailable for {pair}")
        return value

    async def close(self):
        return None


@pytest_asyncio.fixture
async def session_factory(tmp_path, monkeypatch):
    """Fresh SQLite database per test, wired into every service module."""
    db_path = tmp_path / "coinvade_test.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    for module in _SESSION_MODULES:
        monkeypatch.setattr(f"{module}.AsyncSessionLocal", factory)

    yield factory

    await engine.dispose()


@pytest.fixture
def fake_oracle():
    return FakeOracle()


@pytest.fixture
def make_user(session_factory):
    """Insert a user (optionally with a funded USDT wallet) and return its Actor."""

    async def _make_user(balance=None, role: UserRole = UserRole.USER, email=None) -> Actor:
        user_id = str(uuid.uuid4())
        async with session_factory() as session:
            session.add(
                User(
                    id=user_id,
                    email=email or f"{user_id[:8]}@example.com",
                    name="Test User",
                    password_hash=None,
                    role=role,
                    kyc_status=KycStatus.UNVERIFIED,
                )
            )
            await session.flush()
            if balance is not None:
                await ledger.ensure_wallet(session, user_id, "USDT", initial_balance=Decimal(str(balance)))
            await session.commit()
        return Actor(user_id=user_id, role=role)

    return _make_user


@pytest.fixture
def balance_of(session_factory):
    async def _balance_of(user_id: str, asset: str = "USDT") -> Decimal:
        async with session_factory() as session:
            return await ledger.get_balance(session, user_id, asset)

    return _balance_of
