"""Deposit and withdrawal approval workflow.

Deposits:    PENDING -> CONFIRMED (credits wallet once) | FAILED
Withdrawals: PENDING -> APPROVED -> PAID | PENDING -> REJECTED

Withdrawals reserve funds at request time. Every status flip is a
conditional UPDATE on the expected current status, so two admins acting on
the same record cannot both apply its ledger effect.
"""

import uuid
from typing import Optional

from sqlalchemy import select, update

from config import settings
from models.actor import Actor
from models.database import (
    AsyncSessionLocal,
    DepositIntent,
    DepositStatus,
    User,
    WithdrawRequest,
    WithdrawStatus,
)
from services import ledger
from services.errors import Forbidden, InvalidAmount, InvalidTransition, NotFound
from utils.logger import get_logger
from utils.utcnow import utcnow
from utils.validation import parse_amount, require_text, validate_limit

logger = get_logger("funding")

DEPOSIT_ACTIONS = {
    "approve": DepositStatus.CONFIRMED,
    "confirm": DepositStatus.CONFIRMED,
    "reject": DepositStatus.FAILED,
    "fail": DepositStatus.FAILED,
}

# action -> (required current status, next status)
WITHDRAW_ACTIONS = {
    "approve": (WithdrawStatus.PENDING, WithdrawStatus.APPROVED),
    "reject": (WithdrawStatus.PENDING, WithdrawStatus.REJECTED),
    "paid": (WithdrawStatus.APPROVED, WithdrawStatus.PAID),
}


def _require_admin(actor: Actor):
    if not actor.is_admin:
        raise Forbidden("Admin role required")


class FundingService:
    """Deposit intents and withdrawal requests"""

    def __init__(self, refund_on_reject: Optional[bool] = None):
        self.refund_on_reject = (
            settings.WITHDRAW_REJECT_REFUNDS if refund_on_reject is None else refund_on_reject
        )

    async def _require_user(self, session, user_id: str):
        if await session.get(User, user_id) is None:
            raise NotFound(f"User not found: {user_id}")

    # ==================== DEPOSITS ====================

    async def create_deposit(
        self,
        user_id: str,
        asset: Optional[str],
        network: str,
        amount,
        tx_ref: Optional[str] = None,
    ) -> DepositIntent:
        value = parse_amount(amount, "amount")
        network = require_text(network, "network")
        asset = ledger.normalize_asset(asset)

        async with AsyncSessionLocal() as session:
            await self._require_user(session, user_id)
            deposit = DepositIntent(
                id=str(uuid.uuid4()),
                user_id=user_id,
                asset=asset,
                network=network,
                amount=value,
                tx_ref=(tx_ref or "").strip() or None,
                status=DepositStatus.PENDING,
            )
            session.add(deposit)
            await session.commit()
            await session.refresh(deposit)

        logger.info("Deposit requested", deposit_id=deposit.id, user_id=user_id, asset=asset, amount=value)
        return deposit

    async def decide_deposit(self, actor: Actor, deposit_id: str, action: str) -> DepositIntent:
        _require_admin(actor)
        target = DEPOSIT_ACTIONS.get(str(action or "").strip().lower())
        if target is None:
            raise InvalidTransition(f"Unknown deposit action: {action!r}")

        async with AsyncSessionLocal() as session:
            deposit = await session.get(DepositIntent, deposit_id)
            if deposit is None:
                raise NotFound(f"Deposit not found: {deposit_id}")

            if deposit.status is DepositStatus.CONFIRMED and target is DepositStatus.CONFIRMED:
                return deposit
            if deposit.status is not DepositStatus.PENDING:
                raise InvalidTransition(
                    f"Deposit {deposit_id} is {deposit.status.value}, cannot {action}"
                )
            if target is DepositStatus.CONFIRMED and not deposit.amount > 0:
                raise InvalidAmount(f"Deposit {deposit_id} has non-positive amount")

            result = await session.execute(
                update(DepositIntent)
                .where(DepositIntent.id == deposit_id, DepositIntent.status == DepositStatus.PENDING)
                .values(status=target, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                await session.rollback()
                deposit = await session.get(DepositIntent, deposit_id, populate_existing=True)
                if deposit.status is DepositStatus.CONFIRMED and target is DepositStatus.CONFIRMED:
                    return deposit
                raise InvalidTransition(
                    f"Deposit {deposit_id} is {deposit.status.value}, cannot {action}"
                )

            if target is DepositStatus.CONFIRMED:
                wallet = await ledger.ensure_wallet(session, deposit.user_id, deposit.asset)
                await ledger.credit(session, wallet.id, deposit.amount)

            await session.commit()
            deposit = await session.get(DepositIntent, deposit_id, populate_existing=True)

        logger.info(
            "Deposit decided",
            deposit_id=deposit_id,
            admin_id=actor.user_id,
            status=deposit.status.value,
            amount=deposit.amount,
        )
        return deposit

    async def list_deposits(self, user_id: str, limit: int = 50) -> list[DepositIntent]:
        async with AsyncSessionLocal() as session:
            result = await session.execute(
                select(DepositIntent)
                .where(DepositIntent.user_id == user_id)
                .order_by(DepositIntent.created_at.desc())
                .limit(validate_limit(limit, settings.MAX_LIST_LIMIT))
            )
            return list(result.scalars().all())

    async def list_all_deposits(
        self, status: Optional[DepositStatus] = None, limit: int = 200
    ) -> list[DepositIntent]:
        async with AsyncSessionLocal() as session:
            query = select(DepositIntent)
            if status is not None:
                query = query.where(DepositIntent.status == status)
            result = await session.execute(
                query.order_by(DepositIntent.created_at.desc()).limit(
                    validate_limit(limit, settings.MAX_LIST_LIMIT)
                )
            )
            return list(result.scalars().all())

    # ==================== WITHDRAWALS ====================

    async def create_withdrawal(
        self,
        user_id: str,
        asset: Optional[str],
        network: str,
        address: str,
        amount,
        note: Optional[str] = None,
    ) -> WithdrawRequest:
        """Debit the wallet and record a PENDING request, or persist nothing."""
        value = parse_amount(amount, "amount")
        network = require_text(network, "network")
        address = require_text(address, "address")
        asset = ledger.normalize_asset(asset)

        async with AsyncSessionLocal() as session:
            await self._require_user(session, user_id)
            wallet = await ledger.ensure_wallet(session, user_id, asset)
            wallet = await ledger.debit(session, wallet.id, value)

            withdrawal = WithdrawRequest(
                id=str(uuid.uuid4()),
                user_id=user_id,
                asset=asset,
                network=network,
                address=address,
                amount=value,
                note=(note or "").strip() or None,
                status=WithdrawStatus.PENDING,
            )
            session.add(withdrawal)
            await session.commit()
            await session.refresh(withdrawal)

        logger.info(
            "Withdrawal requested",
            withdrawal_id=withdrawal.id,
            user_id=user_id,
            asset=asset,
            amount=value,
            balance=wallet.balance,
        )
        return withdrawal

    async def decide_withdrawal(
        self,
        actor: Actor,
        withdrawal_id: str,
        action: str,
        note: Optional[str] = None,
    ) -> WithdrawRequest:
        _require_admin(actor)
        action = str(action or "").strip().lower()
        transition = WITHDRAW_ACTIONS.get(action)
        if transition is None:
            raise InvalidTransition(f"Unknown withdrawal action: {action!r}")
        expected, target = transition

        async with AsyncSessionLocal() as session:
            withdrawal = await session.get(WithdrawRequest, withdrawal_id)
            if withdrawal is None:
                raise NotFound(f"Withdrawal not found: {withdrawal_id}")

            values = {"status": target, "updated_at": utcnow()}
            if note is not None:
                values["note"] = note.strip() or None

            result = await session.execute(
                update(WithdrawRequest)
                .where(WithdrawRequest.id == withdrawal_id, WithdrawRequest.status == expected)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                await session.rollback()
                current = await session.get(WithdrawRequest, withdrawal_id, populate_existing=True)
                raise InvalidTransition(
                    f"Withdrawal {withdrawal_id} is {current.status.value}, cannot {action}"
                )

            if target is WithdrawStatus.REJECTED and self.refund_on_reject:
                wallet = await ledger.ensure_wallet(session, withdrawal.user_id, withdrawal.asset)
                await ledger.credit(session, wallet.id, withdrawal.amount)
                logger.info("Refunded rejected withdrawal", withdrawal_id=withdrawal_id, amount=withdrawal.amount)

            await session.commit()
            withdrawal = await session.get(WithdrawRequest, withdrawal_id, populate_existing=True)

        logger.info(
            "Withdrawal decided",
            withdrawal_id=withdrawal_id,
            admin_id=actor.user_id,
            action=action,
            status=withdrawal.status.value,
        )
        return withdrawal

    async def list_withdrawals(self, user_id: str, limit: int = 50) -> list[WithdrawRequest]:
        async with AsyncSessionLocal() as session:
            result = await session.execute(
                select(WithdrawRequest)
                .where(WithdrawRequest.user_id == user_id)
                .order_by(WithdrawRequest.created_at.desc())
                .limit(validate_limit(limit, settings.MAX_LIST_LIMIT))
            )
            return list(result.scalars().all())

    async def list_all_withdrawals(
        self, status: Optional[WithdrawStatus] = None, limit: int = 200
    ) -> list[WithdrawRequest]:
        async with AsyncSessionLocal() as session:
            query = select(WithdrawRequest)
            if status is not None:
                query = query.where(WithdrawRequest.status == status)
            result = await session.execute(
                query.order_by(WithdrawRequest.created_at.desc()).limit(
                    validate_limit(limit, settings.MAX_LIST_LIMIT)
                )
            )
            return list(result.scalars().all())


# Singleton instance
funding_service = FundingService()
