"""Account ledger: one balance row per (user, asset).

All functions take the caller's ``AsyncSession`` and never commit, so the
balance check and the mutation always land in the same transaction as the
business write that depends on them (trade insert, withdraw request, ...).

Balance changes are single SQL statements (``balance = balance +/- :amount``)
rather than read-modify-write on a loaded ORM object. ``debit`` guards with
``WHERE balance >= :amount`` and treats "no row updated" as insufficient
funds, which keeps the check atomic with the write under concurrent callers.
"""

import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import Wallet
from services.errors import InsufficientBalance, NotFound
from utils.logger import get_logger
from utils.utcnow import utcnow
from utils.validation import parse_amount

logger = get_logger("ledger")


def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    return pg_insert if dialect == "postgresql" else sqlite_insert


def normalize_asset(asset: Optional[str]) -> str:
    return (asset or settings.QUOTE_ASSET).strip().upper()


async def ensure_wallet(
    session: AsyncSession,
    user_id: str,
    asset: Optional[str] = None,
    initial_balance: Decimal = Decimal("0"),
) -> Wallet:
    """Return the (user, asset) wallet, creating it with ``initial_balance`` if absent."""
    asset = normalize_asset(asset)
    now = utcnow()
    insert = _insert_for(session)
    stmt = (
        insert(Wallet)
        .values(
            id=str(uuid.uuid4()),
            user_id=user_id,
            asset=asset,
            balance=initial_balance,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["user_id", "asset"])
    )
    result = await session.execute(stmt)
    if result.rowcount:
        logger.debug("Created wallet", user_id=user_id, asset=asset)

    return await get_wallet(session, user_id, asset)


async def get_wallet(session: AsyncSession, user_id: str, asset: Optional[str] = None) -> Wallet:
    """Load a wallet, refreshing any stale identity-map copy."""
    asset = normalize_asset(asset)
    result = await session.execute(
        select(Wallet)
        .where(Wallet.user_id == user_id, Wallet.asset == asset)
        .execution_options(populate_existing=True)
    )
    wallet = result.scalar_one_or_none()
    if wallet is None:
        raise NotFound(f"Wallet not found: {user_id}/{asset}")
    return wallet


async def find_wallet(session: AsyncSession, user_id: str, asset: Optional[str] = None) -> Optional[Wallet]:
    try:
        return await get_wallet(session, user_id, asset)
    except NotFound:
        return None


async def get_balance(session: AsyncSession, user_id: str, asset: Optional[str] = None) -> Decimal:
    """Balance of the (user, asset) wallet; zero when it does not exist yet."""
    wallet = await find_wallet(session, user_id, asset)
    return wallet.balance if wallet is not None else Decimal("0")


async def _reload(session: AsyncSession, wallet_id: str) -> Wallet:
    result = await session.execute(
        select(Wallet).where(Wallet.id == wallet_id).execution_options(populate_existing=True)
    )
    wallet = result.scalar_one_or_none()
    if wallet is None:
        raise NotFound(f"Wallet not found: {wallet_id}")
    return wallet


async def credit(session: AsyncSession, wallet_id: str, amount) -> Wallet:
    """Atomically add ``amount`` to a wallet balance."""
    amount = parse_amount(amount)
    result = await session.execute(
        update(Wallet)
        .where(Wallet.id == wallet_id)
        .values(balance=Wallet.balance + amount, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        raise NotFound(f"Wallet not found: {wallet_id}")

    wallet = await _reload(session, wallet_id)
    logger.info("Credited wallet", wallet_id=wallet_id, amount=amount, balance=wallet.balance)
    return wallet


async def debit(session: AsyncSession, wallet_id: str, amount) -> Wallet:
    """Atomically subtract ``amount``; raises InsufficientBalance if it would go negative."""
    amount = parse_amount(amount)
    result = await session.execute(
        update(Wallet)
        .where(Wallet.id == wallet_id, Wallet.balance >= amount)
        .values(balance=Wallet.balance - amount, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        exists = await session.scalar(select(func.count()).select_from(Wallet).where(Wallet.id == wallet_id))
        if not exists:
            raise NotFound(f"Wallet not found: {wallet_id}")
        raise InsufficientBalance("Insufficient balance")

    wallet = await _reload(session, wallet_id)
    logger.info("Debited wallet", wallet_id=wallet_id, amount=amount, balance=wallet.balance)
    return wallet


async def list_wallets(session: AsyncSession, user_id: str) -> list[Wallet]:
    result = await session.execute(
        select(Wallet).where(Wallet.user_id == user_id).order_by(Wallet.asset)
    )
    return list(result.scalars().all())


async def total_balance(session: AsyncSession, asset: Optional[str] = None) -> Decimal:
    """Sum of all balances for one asset across users."""
    asset = normalize_asset(asset)
    total = await session.scalar(
        select(func.coalesce(func.sum(Wallet.balance), 0)).where(Wallet.asset == asset)
    )
    return Decimal(str(total or 0))
