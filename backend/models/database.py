from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    DateTime,
    Text,
    ForeignKey,
    Enum as SQLEnum,
    Index,
    UniqueConstraint,
    event,
)
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
import enum
import logging
import os

from config import settings
from models.types import Money, PreciseFloat as Float
from utils.utcnow import utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()


class UserRole(enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class KycStatus(enum.Enum):
    UNVERIFIED = "UNVERIFIED"
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class TradeDirection(enum.Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class DepositStatus(enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class WithdrawStatus(enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PAID = "PAID"


# ==================== USERS ====================


class User(Base):
    """Registered account; root aggregate for authorization decisions"""

    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)
    password_hash = Column(String, nullable=True)
    role = Column(SQLEnum(UserRole), nullable=False, default=UserRole.USER)
    kyc_status = Column(SQLEnum(KycStatus), nullable=False, default=KycStatus.UNVERIFIED)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    wallets = relationship("Wallet", back_populates="user")
    trades = relationship("Trade", back_populates="user")

    __table_args__ = (Index("idx_user_created", "created_at"),)


# ==================== LEDGER ====================


class Wallet(Base):
    """Per-user, per-asset balance. Only mutated through services.ledger"""

    __tablename__ = "wallets"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    asset = Column(String, nullable=False)
    balance = Column(Money, nullable=False, default=Decimal("0"))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="wallets")

    __table_args__ = (
        UniqueConstraint("user_id", "asset", name="uq_wallet_user_asset"),
        Index("idx_wallet_asset", "asset"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "asset": self.asset,
            "balance": float(self.balance),
        }


# ==================== TRADES ====================


class Trade(Base):
    """Timed long/short contract. Stake is reserved from the wallet at open."""

    __tablename__ = "trades"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    pair = Column(String, nullable=False)
    direction = Column(SQLEnum(TradeDirection), nullable=False)
    amount = Column(Money, nullable=False)  # Stake in the quote asset
    duration = Column(Integer, nullable=False)  # Seconds

    entry_price = Column(Float, nullable=True)
    exit_price = Column(Float, nullable=True)  # Set exactly once, at resolve
    payout = Column(Money, nullable=False, default=Decimal("0"))
    won = Column(Boolean, nullable=True)  # None = open or tie

    created_at = Column(DateTime, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="trades")

    __table_args__ = (
        Index("idx_trade_user", "user_id"),
        Index("idx_trade_created", "created_at"),
    )

    @property
    def is_resolved(self) -> bool:
        return self.exit_price is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "pair": self.pair,
            "direction": self.direction.value,
            "amount": float(self.amount),
            "duration": self.duration,
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "payout": float(self.payout or 0),
            "won": self.won,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


# ==================== FUNDING ====================


class DepositIntent(Base):
    """User-declared deposit awaiting admin confirmation"""

    __tablename__ = "deposit_intents"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    asset = Column(String, nullable=False)
    network = Column(String, nullable=False)
    amount = Column(Money, nullable=False)
    tx_ref = Column(String, nullable=True)  # On-chain tx hash or payment reference
    status = Column(SQLEnum(DepositStatus), nullable=False, default=DepositStatus.PENDING)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User")

    __table_args__ = (
        Index("idx_deposit_user", "user_id"),
        Index("idx_deposit_status", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "asset": self.asset,
            "network": self.network,
            "amount": float(self.amount),
            "tx_ref": self.tx_ref,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class WithdrawRequest(Base):
    """Payout request; the amount is debited from the wallet when created"""

    __tablename__ = "withdraw_requests"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    asset = Column(String, nullable=False)
    network = Column(String, nullable=False)
    address = Column(String, nullable=False)
    amount = Column(Money, nullable=False)
    note = Column(Text, nullable=True)
    status = Column(SQLEnum(WithdrawStatus), nullable=False, default=WithdrawStatus.PENDING)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User")

    __table_args__ = (
        Index("idx_withdraw_user", "user_id"),
        Index("idx_withdraw_status", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "asset": self.asset,
            "network": self.network,
            "address": self.address,
            "amount": float(self.amount),
            "note": self.note,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


# ==================== DATABASE SETUP ====================

# SQLite-specific: improve concurrency (WAL + busy_timeout applied in _set_sqlite_pragma)
_engine_kw: dict = {"echo": False}
if "sqlite" in settings.DATABASE_URL:
    _engine_kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked

async_engine = create_async_engine(settings.DATABASE_URL, **_engine_kw)


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite for better concurrent access (WAL mode, busy timeout)."""
    if "sqlite" not in settings.DATABASE_URL:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")  # Allow concurrent reads during writes
    cursor.execute("PRAGMA busy_timeout=30000")  # Wait up to 30s when locked (ms)
    cursor.close()


# Apply pragmas on each new SQLite connection
event.listens_for(async_engine.sync_engine, "connect")(_set_sqlite_pragma)

AsyncSessionLocal = sessionmaker(
    async_engine, class_=AsyncSession, expire_on_commit=False
)


def _run_alembic_upgrade(connection) -> None:
    from alembic import command
    from alembic.config import Config

    backend_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(backend_root / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(backend_root / "alembic"))
    alembic_cfg.set_main_option(
        "sqlalchemy.url", connection.engine.url.render_as_string(hide_password=False).replace("%", "%%")
    )
    alembic_cfg.attributes["connection"] = connection
    command.upgrade(alembic_cfg, "head")


def _ensure_sqlite_parent_dir(url: str) -> None:
    parsed = make_url(url)
    if not parsed.drivername.startswith("sqlite"):
        return
    database = parsed.database or ""
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)


@contextmanager
def _sqlite_migration_lock():
    """Serialize Alembic upgrades across processes for SQLite databases."""
    if "sqlite" not in settings.DATABASE_URL or os.name != "posix":
        yield
        return

    import fcntl

    lock_path = Path(__file__).resolve().parents[1] / ".alembic.sqlite.lock"
    try:
        lock_file = lock_path.open("a", encoding="utf-8")
    except OSError:
        logger.warning("Cannot open migration lock file, proceeding without lock")
        yield
        return

    try:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
    finally:
        lock_file.close()


async def init_database():
    """Initialize database and apply Alembic migrations."""
    _ensure_sqlite_parent_dir(async_engine.url.render_as_string(hide_password=False))
    with _sqlite_migration_lock():
        async with async_engine.begin() as conn:
            await conn.run_sync(_run_alembic_upgrade)
