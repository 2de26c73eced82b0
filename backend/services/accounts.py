import uuid
from decimal import Decimal
from typing import Optional

from passlib.context import CryptContext
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from config import settings
from models.actor import Actor
from models.database import (
    AsyncSessionLocal,
    DepositIntent,
    DepositStatus,
    KycStatus,
    Trade,
    User,
    UserRole,
    Wallet,
    WithdrawRequest,
    WithdrawStatus,
)
from services import ledger
from services.errors import (
    AuthenticationFailed,
    Conflict,
    Forbidden,
    InvalidInput,
    NotFound,
)
from utils.logger import get_logger
from utils.utcnow import utcnow
from utils.validation import parse_amount, require_text, validate_email, validate_limit

logger = get_logger("accounts")

# pbkdf2 first so hashing never depends on a native bcrypt build; bcrypt
# hashes from older accounts still verify.
pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        # Unrecognized hash format
        return False


def _require_admin(actor: Actor):
    if not actor.is_admin:
        raise Forbidden("Admin role required")


class AccountService:
    """Registration, login, KYC and the admin user dashboard"""

    async def register(self, email: str, password: str, name: Optional[str] = None) -> User:
        """Create a USER account with a funded quote-asset wallet."""
        try:
            email = validate_email(email)
        except ValueError as e:
            raise InvalidInput(str(e))
        if len(password or "") < settings.MIN_PASSWORD_LENGTH:
            raise InvalidInput(f"Password must be at least {settings.MIN_PASSWORD_LENGTH} characters")

        async with AsyncSessionLocal() as session:
            existing = await session.scalar(select(User.id).where(User.email == email))
            if existing:
                raise Conflict("Email already registered")

            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=(name or "").strip() or None,
                password_hash=hash_password(password),
                role=UserRole.USER,
                kyc_status=KycStatus.UNVERIFIED,
            )
            session.add(user)
            try:
                await session.flush()
            except IntegrityError:
                raise Conflict("Email already registered")

            bonus = Decimal(str(settings.SIGNUP_BONUS_USDT))
            await ledger.ensure_wallet(session, user.id, settings.QUOTE_ASSET, initial_balance=bonus)

            await session.commit()
            await session.refresh(user)

        logger.info("Registered user", user_id=user.id, email=email)
        return user

    async def authenticate(self, email: str, password: str) -> User:
        email = str(email or "").strip().lower()
        async with AsyncSessionLocal() as session:
            user = await session.scalar(select(User).where(User.email == email))

        if user is None or not verify_password(password or "", user.password_hash):
            logger.warning("Authentication failed", email=email)
            raise AuthenticationFailed("Invalid email or password")
        return user

    async def get_user(self, user_id: str) -> User:
        async with AsyncSessionLocal() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise NotFound(f"User not found: {user_id}")
            return user

    async def get_wallet(self, user_id: str, asset: Optional[str] = None) -> Wallet:
        """Ensure and return the caller's wallet."""
        async with AsyncSessionLocal() as session:
            if await session.get(User, user_id) is None:
                raise NotFound(f"User not found: {user_id}")
            wallet = await ledger.ensure_wallet(session, user_id, asset)
            await session.commit()
            return wallet

    # ==================== KYC ====================

    async def submit_kyc(
        self,
        user_id: str,
        full_name: str,
        country: str,
        doc_type: str,
        doc_number: str,
    ) -> User:
        """Check the identity details and queue the account for review.

        Details are not stored; an admin verifies the documents out of band.
        """
        full_name = require_text(full_name, "full_name")
        country = require_text(country, "country")
        doc_type = require_text(doc_type, "doc_type")
        require_text(doc_number, "doc_number")

        async with AsyncSessionLocal() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise NotFound(f"User not found: {user_id}")
            user.kyc_status = KycStatus.PENDING
            await session.commit()
            await session.refresh(user)

        logger.info("KYC submitted", user_id=user_id, full_name=full_name, country=country, doc_type=doc_type)
        return user

    async def set_kyc_status(self, actor: Actor, user_id: str, status: KycStatus) -> User:
        _require_admin(actor)
        return await self._update_user(actor, user_id, kyc_status=KycStatus(status))

    async def set_role(self, actor: Actor, user_id: str, role: UserRole) -> User:
        _require_admin(actor)
        return await self._update_user(actor, user_id, role=UserRole(role))

    async def _update_user(self, actor: Actor, user_id: str, **values) -> User:
        async with AsyncSessionLocal() as session:
            result = await session.execute(
                update(User)
                .where(User.id == user_id)
                .values(updated_at=utcnow(), **values)
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                raise NotFound(f"User not found: {user_id}")
            await session.commit()
            user = await session.get(User, user_id, populate_existing=True)

        logger.info(
            "Updated user",
            user_id=user_id,
            admin_id=actor.user_id,
            **{k: v.value for k, v in values.items()},
        )
        return user

    # ==================== ADMIN ====================

    async def admin_credit(self, actor: Actor, user_id: str, amount, asset: Optional[str] = None) -> Wallet:
        """Manual top-up of a user's wallet."""
        _require_admin(actor)
        value = parse_amount(amount, "amount")
        async with AsyncSessionLocal() as session:
            if await session.get(User, user_id) is None:
                raise NotFound(f"User not found: {user_id}")
            wallet = await ledger.ensure_wallet(session, user_id, asset)
            wallet = await ledger.credit(session, wallet.id, value)
            await session.commit()

        logger.info("Admin credit", user_id=user_id, admin_id=actor.user_id, amount=value, asset=wallet.asset)
        return wallet

    async def list_users(
        self,
        actor: Actor,
        limit: int = 200,
        kyc_status: Optional[KycStatus] = None,
    ) -> list[dict]:
        """Users newest first, each with their quote-asset balance."""
        _require_admin(actor)
        async with AsyncSessionLocal() as session:
            query = (
                select(User, Wallet.balance)
                .outerjoin(
                    Wallet,
                    (Wallet.user_id == User.id) & (Wallet.asset == settings.QUOTE_ASSET),
                )
            )
            if kyc_status is not None:
                query = query.where(User.kyc_status == kyc_status)
            result = await session.execute(
                query.order_by(User.created_at.desc()).limit(validate_limit(limit, settings.MAX_LIST_LIMIT))
            )
            rows = result.all()

        return [{**_user_summary(user), "balance": float(balance or 0)} for user, balance in rows]

    async def metrics(self, actor: Actor, recent: int = 5) -> dict:
        _require_admin(actor)
        async with AsyncSessionLocal() as session:
            user_count = await session.scalar(select(func.count()).select_from(User))
            trade_count = await session.scalar(select(func.count()).select_from(Trade))
            open_trades = await session.scalar(
                select(func.count()).select_from(Trade).where(Trade.exit_price.is_(None))
            )
            pending_deposits = await session.scalar(
                select(func.count()).select_from(DepositIntent).where(DepositIntent.status == DepositStatus.PENDING)
            )
            pending_withdrawals = await session.scalar(
                select(func.count())
                .select_from(WithdrawRequest)
                .where(WithdrawRequest.status == WithdrawStatus.PENDING)
            )
            total_quote = await ledger.total_balance(session, settings.QUOTE_ASSET)

            recent_users = (
                await session.execute(select(User).order_by(User.created_at.desc()).limit(recent))
            ).scalars().all()
            recent_trades = (
                await session.execute(select(Trade).order_by(Trade.created_at.desc()).limit(recent))
            ).scalars().all()

        return {
            "users": int(user_count or 0),
            "trades": int(trade_count or 0),
            "open_trades": int(open_trades or 0),
            "pending_deposits": int(pending_deposits or 0),
            "pending_withdrawals": int(pending_withdrawals or 0),
            "total_balance": float(total_quote),
            "asset": settings.QUOTE_ASSET,
            "recent_users": [_user_summary(u) for u in recent_users],
            "recent_trades": [t.to_dict() for t in recent_trades],
        }


def _user_summary(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role.value,
        "kyc_status": user.kyc_status.value,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


def user_to_dict(user: User) -> dict:
    return _user_summary(user)


# Singleton instance
account_service = AccountService()
