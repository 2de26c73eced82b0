import math
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update

from config import settings
from models.actor import Actor
from models.database import AsyncSessionLocal, Trade, TradeDirection, User, Wallet
from services import ledger
from services.errors import (
    Forbidden,
    InvalidAmount,
    InvalidDirection,
    InvalidDuration,
    InvalidPair,
    InvalidState,
    NotFound,
)
from services.payout import PayoutSchedule, Settlement, determine_outcome
from services.price_oracle import PriceOracle, normalize_pair, price_oracle
from utils.logger import get_logger
from utils.utcnow import utcnow
from utils.validation import parse_amount, validate_limit, validate_positive_number

logger = get_logger("trade_engine")


@dataclass
class TradeResult:
    trade: Trade
    wallet: Optional[Wallet]
    settlement: Optional[Settlement] = None

    def to_dict(self) -> dict:
        out = {
            "trade": self.trade.to_dict(),
            "wallet": self.wallet.to_dict() if self.wallet else None,
        }
        if self.settlement is not None:
            out["settlement"] = self.settlement.to_dict()
        return out


class TradeEngine:
    """Opens and settles timed long/short contracts against the USDT ledger"""

    def __init__(
        self,
        oracle: Optional[PriceOracle] = None,
        schedule: Optional[PayoutSchedule] = None,
    ):
        self.oracle = oracle or price_oracle
        self.schedule = schedule or PayoutSchedule()

    # ==================== VALIDATION ====================

    def _validate_pair(self, pair: str) -> str:
        symbol = normalize_pair(pair)
        quote = settings.QUOTE_ASSET
        if not symbol.endswith(quote) or len(symbol) <= len(quote) or not symbol.isalnum():
            raise InvalidPair(f"Only {quote} pairs are supported: {pair!r}")
        return symbol

    @staticmethod
    def _validate_direction(direction: str) -> TradeDirection:
        try:
            return TradeDirection(str(direction or "").strip().upper())
        except ValueError:
            raise InvalidDirection(f"Invalid direction: {direction!r}")

    def _validate_duration(self, duration) -> int:
        try:
            seconds = int(duration)
        except (TypeError, ValueError):
            raise InvalidAmount(f"Invalid duration: {duration!r}")
        if seconds <= 0 or seconds != duration:
            raise InvalidAmount(f"Invalid duration: {duration!r}")
        if not self.schedule.supports(seconds):
            raise InvalidDuration(f"Unsupported duration: {seconds}s")
        return seconds

    # ==================== OPEN ====================

    async def open_trade(
        self,
        user_id: str,
        pair: str,
        direction: str,
        amount,
        duration,
        entry_price: Optional[float] = None,
    ) -> TradeResult:
        """Reserve the stake and record a new open contract."""
        symbol = self._validate_pair(pair)
        side = self._validate_direction(direction)
        stake = parse_amount(amount, "amount")
        seconds = self._validate_duration(duration)

        # Price is fetched before the transaction opens; a failure here
        # leaves no trace in the ledger.
        if entry_price is None:
            entry = await self.oracle.get_price_or_fallback(symbol)
        else:
            entry = validate_positive_number(entry_price, "entry_price")

        async with AsyncSessionLocal() as session:
            if await session.get(User, user_id) is None:
                raise NotFound(f"User not found: {user_id}")

            wallet = await ledger.ensure_wallet(session, user_id, settings.QUOTE_ASSET)
            wallet = await ledger.debit(session, wallet.id, stake)

            trade = Trade(
                id=str(uuid.uuid4()),
                user_id=user_id,
                pair=symbol,
                direction=side,
                amount=stake,
                duration=seconds,
                entry_price=entry,
                exit_price=None,
                payout=0,
                won=None,
            )
            session.add(trade)

            await session.commit()
            await session.refresh(trade)

            logger.info(
                "Opened trade",
                trade_id=trade.id,
                user_id=user_id,
                pair=symbol,
                direction=side.value,
                stake=stake,
                duration=seconds,
                entry_price=entry,
                balance=wallet.balance,
            )

            return TradeResult(trade=trade, wallet=wallet)

    # ==================== RESOLVE ====================

    def _stored_settlement(self, trade: Trade) -> Settlement:
        payout = trade.payout or 0
        return Settlement(
            won=trade.won,
            payout=payout,
            delta=payout - trade.amount,
            exit_price=trade.exit_price,
        )

    async def _resolved_result(self, session, trade_id: str) -> TradeResult:
        trade = await session.get(Trade, trade_id, populate_existing=True)
        wallet = await ledger.find_wallet(session, trade.user_id, settings.QUOTE_ASSET)
        return TradeResult(trade=trade, wallet=wallet, settlement=self._stored_settlement(trade))

    async def resolve_trade(self, actor: Actor, trade_id: str) -> TradeResult:
        """Settle a contract at the current price. Safe to call repeatedly."""
        log = logger.with_context(trade_id=trade_id, actor_id=actor.user_id)
        async with AsyncSessionLocal() as session:
            trade = await session.get(Trade, trade_id)
            if trade is None:
                raise NotFound(f"Trade not found: {trade_id}")

            if not actor.can_access(trade.user_id):
                raise Forbidden("Only the trade owner or an admin can resolve this trade")

            if trade.is_resolved:
                return await self._resolved_result(session, trade_id)

            entry = trade.entry_price
            if entry is None or not math.isfinite(entry) or entry <= 0:
                raise InvalidState(f"Trade {trade_id} has no valid entry price")

            owner_id = trade.user_id
            pair = trade.pair
            direction = trade.direction
            stake = trade.amount
            duration = trade.duration

        if not self.schedule.supports(duration):
            log.warning("Resolving trade with unscheduled duration", duration=duration)

        current = await self.oracle.get_price_or_fallback(pair)
        won = determine_outcome(direction.value, entry, current)
        settlement = self.schedule.settle(stake, duration, won, current)

        async with AsyncSessionLocal() as session:
            # The exit-price guard makes the settlement write win at most once
            # even if two resolvers race past the read above.
            result = await session.execute(
                update(Trade)
                .where(Trade.id == trade_id, Trade.exit_price.is_(None))
                .values(
                    exit_price=current,
                    payout=settlement.payout,
                    won=settlement.won,
                    resolved_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                await session.rollback()
                log.info("Trade already resolved concurrently")
                return await self._resolved_result(session, trade_id)

            wallet = await ledger.ensure_wallet(session, owner_id, settings.QUOTE_ASSET)
            if settlement.payout > 0:
                wallet = await ledger.credit(session, wallet.id, settlement.payout)

            await session.commit()

            trade = await session.get(Trade, trade_id, populate_existing=True)

            log.info(
                "Resolved trade",
                pair=pair,
                entry_price=entry,
                exit_price=current,
                won=settlement.won,
                payout=settlement.payout,
                balance=wallet.balance,
            )

            return TradeResult(trade=trade, wallet=wallet, settlement=settlement)

    # ==================== QUERIES ====================

    async def get_trade(self, actor: Actor, trade_id: str) -> Trade:
        async with AsyncSessionLocal() as session:
            trade = await session.get(Trade, trade_id)
            if trade is None:
                raise NotFound(f"Trade not found: {trade_id}")
            if not actor.can_access(trade.user_id):
                raise Forbidden("Not your trade")
            return trade

    async def list_trades(self, user_id: str, limit: int = 50) -> list[Trade]:
        """Most recent trades for one user"""
        async with AsyncSessionLocal() as session:
            result = await session.execute(
                select(Trade)
                .where(Trade.user_id == user_id)
                .order_by(Trade.created_at.desc())
                .limit(validate_limit(limit, settings.MAX_LIST_LIMIT))
            )
            return list(result.scalars().all())

    async def list_all_trades(self, limit: int = 200, open_only: bool = False) -> list[Trade]:
        """Most recent trades across all users (admin view)"""
        async with AsyncSessionLocal() as session:
            query = select(Trade)
            if open_only:
                query = query.where(Trade.exit_price.is_(None))
            result = await session.execute(
                query.order_by(Trade.created_at.desc()).limit(validate_limit(limit, settings.MAX_LIST_LIMIT))
            )
            return list(result.scalars().all())


# Singleton instance
trade_engine = TradeEngine()
