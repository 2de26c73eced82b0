import asyncio
import sys
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy import func, select

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import DepositStatus, Trade, UserRole, WithdrawRequest, WithdrawStatus
from services.errors import (
    Forbidden,
    InsufficientBalance,
    InvalidAmount,
    InvalidInput,
    InvalidTransition,
    NotFound,
)
from services.funding import FundingService
from services.payout import PayoutSchedule
from services.trade_engine import TradeEngine


@pytest.fixture
def funding():
    return FundingService(refund_on_reject=False)


@pytest.fixture
def admin(make_user):
    async def _admin():
        return await make_user(role=UserRole.ADMIN)

    return _admin


# ==================== DEPOSITS ====================


@pytest.mark.asyncio
async def test_create_deposit_is_pending_and_does_not_credit(funding, make_user, balance_of):
    user = await make_user(balance=10)

    deposit = await funding.create_deposit(user.user_id, "usdt", "TRC20", 50, tx_ref=" 0xabc ")

    assert deposit.status is DepositStatus.PENDING
    assert deposit.asset == "USDT"
    assert deposit.amount == Decimal("50")
    assert deposit.tx_ref == "0xabc"
    assert await balance_of(user.user_id) == Decimal("10")


@pytest.mark.asyncio
async def test_create_deposit_validation(funding, make_user):
    user = await make_user()
    with pytest.raises(InvalidAmount):
        await funding.create_deposit(user.user_id, "USDT", "TRC20", 0)
    with pytest.raises(InvalidInput):
        await funding.create_deposit(user.user_id, "USDT", "  ", 10)
    with pytest.raises(NotFound):
        await funding.create_deposit("ghost", "USDT", "TRC20", 10)


@pytest.mark.asyncio
async def test_confirm_deposit_credits_exactly_once(funding, make_user, admin, balance_of):
    user = await make_user(balance=10)
    boss = await admin()
    deposit = await funding.create_deposit(user.user_id, "USDT", "TRC20", 50)

    confirmed = await funding.decide_deposit(boss, deposit.id, "approve")
    again = await funding.decide_deposit(boss, deposit.id, "confirm")

    assert confirmed.status is DepositStatus.CONFIRMED
    assert again.status is DepositStatus.CONFIRMED
    assert await balance_of(user.user_id) == Decimal("60")


@pytest.mark.asyncio
async def test_confirm_creates_wallet_for_new_asset(funding, make_user, admin, balance_of):
    user = await make_user(balance=10)
    boss = await admin()
    deposit = await funding.create_deposit(user.user_id, "BTC", "bitcoin", "0.05")

    await funding.decide_deposit(boss, deposit.id, "confirm")

    assert await balance_of(user.user_id, "BTC") == Decimal("0.05")
    assert await balance_of(user.user_id, "USDT") == Decimal("10")


@pytest.mark.asyncio
async def test_reject_deposit_fails_without_ledger_change(funding, make_user, admin, balance_of):
    user = await make_user(balance=10)
    boss = await admin()
    deposit = await funding.create_deposit(user.user_id, "USDT", "TRC20", 50)

    failed = await funding.decide_deposit(boss, deposit.id, "reject")

    assert failed.status is DepositStatus.FAILED
    assert await balance_of(user.user_id) == Decimal("10")

    with pytest.raises(InvalidTransition):
        await funding.decide_deposit(boss, deposit.id, "approve")
    with pytest.raises(InvalidTransition):
        await funding.decide_deposit(boss, deposit.id, "fail")
    assert await balance_of(user.user_id) == Decimal("10")


@pytest.mark.asyncio
async def test_failing_a_confirmed_deposit_is_invalid(funding, make_user, admin):
    user = await make_user()
    boss = await admin()
    deposit = await funding.create_deposit(user.user_id, "USDT", "TRC20", 50)
    await funding.decide_deposit(boss, deposit.id, "approve")

    with pytest.raises(InvalidTransition):
        await funding.decide_deposit(boss, deposit.id, "reject")


@pytest.mark.asyncio
async def test_decide_deposit_requires_admin(funding, make_user, balance_of):
    user = await make_user(balance=10)
    deposit = await funding.create_deposit(user.user_id, "USDT", "TRC20", 50)

    with pytest.raises(Forbidden):
        await funding.decide_deposit(user, deposit.id, "approve")
    assert await balance_of(user.user_id) == Decimal("10")


@pytest.mark.asyncio
async def test_decide_deposit_unknown_id_and_action(funding, admin):
    boss = await admin()
    with pytest.raises(NotFound):
        await funding.decide_deposit(boss, "missing", "approve")
    with pytest.raises(InvalidTransition):
        await funding.decide_deposit(boss, "missing", "refund")


@pytest.mark.asyncio
async def test_list_deposits(funding, make_user, admin):
    user = await make_user()
    other = await make_user()
    boss = await admin()
    first = await funding.create_deposit(user.user_id, "USDT", "TRC20", 5)
    await funding.create_deposit(user.user_id, "USDT", "ERC20", 6)
    await funding.create_deposit(other.user_id, "USDT", "TRC20", 7)
    await funding.decide_deposit(boss, first.id, "approve")

    assert len(await funding.list_deposits(user.user_id)) == 2
    assert len(await funding.list_all_deposits()) == 3
    pending = await funding.list_all_deposits(status=DepositStatus.PENDING)
    assert len(pending) == 2
    assert all(d.status is DepositStatus.PENDING for d in pending)


# ==================== WITHDRAWALS ====================


@pytest.mark.asyncio
async def test_withdrawal_debits_at_request_time(funding, make_user, balance_of):
    user = await make_user(balance=100)

    withdrawal = await funding.create_withdrawal(user.user_id, "USDT", "TRC20", "TXYZ", 40, note="rent")

    assert withdrawal.status is WithdrawStatus.PENDING
    assert withdrawal.amount == Decimal("40")
    assert withdrawal.note == "rent"
    assert await balance_of(user.user_id) == Decimal("60")


@pytest.mark.asyncio
async def test_withdrawal_over_balance_is_rejected_without_trace(funding, make_user, balance_of, session_factory):
    user = await make_user(balance=30)

    with pytest.raises(InsufficientBalance):
        await funding.create_withdrawal(user.user_id, "USDT", "TRC20", "TXYZ", 50)

    assert await balance_of(user.user_id) == Decimal("30")
    async with session_factory() as session:
        count = await session.scalar(select(func.count()).select_from(WithdrawRequest))
    assert count == 0


@pytest.mark.asyncio
async def test_withdrawal_validation(funding, make_user, balance_of):
    user = await make_user(balance=30)
    with pytest.raises(InvalidAmount):
        await funding.create_withdrawal(user.user_id, "USDT", "TRC20", "TXYZ", -1)
    with pytest.raises(InvalidInput):
        await funding.create_withdrawal(user.user_id, "USDT", "TRC20", "", 5)
    with pytest.raises(InvalidInput):
        await funding.create_withdrawal(user.user_id, "USDT", None, "TXYZ", 5)
    assert await balance_of(user.user_id) == Decimal("30")


@pytest.mark.asyncio
async def test_withdrawal_approve_then_paid(funding, make_user, admin, balance_of):
    user = await make_user(balance=100)
    boss = await admin()
    withdrawal = await funding.create_withdrawal(user.user_id, "USDT", "TRC20", "TXYZ", 40)

    approved = await funding.decide_withdrawal(boss, withdrawal.id, "approve")
    paid = await funding.decide_withdrawal(boss, withdrawal.id, "paid", note="tx 0x99")

    assert approved.status is WithdrawStatus.APPROVED
    assert paid.status is WithdrawStatus.PAID
    assert paid.note == "tx 0x99"
    assert await balance_of(user.user_id) == Decimal("60")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "steps,bad_action",
    [
        ([], "paid"),
        (["approve"], "approve"),
        (["approve"], "reject"),
        (["reject"], "approve"),
        (["reject"], "paid"),
        (["approve", "paid"], "paid"),
        (["approve", "paid"], "reject"),
    ],
)
async def test_withdrawal_invalid_transitions(funding, make_user, admin, steps, bad_action):
    user = await make_user(balance=100)
    boss = await admin()
    withdrawal = await funding.create_withdrawal(user.user_id, "USDT", "TRC20", "TXYZ", 40)
    for step in steps:
        await funding.decide_withdrawal(boss, withdrawal.id, step)

    with pytest.raises(InvalidTransition):
        await funding.decide_withdrawal(boss, withdrawal.id, bad_action)


@pytest.mark.asyncio
async def test_rejected_withdrawal_holds_funds_by_default(funding, make_user, admin, balance_of):
    user = await make_user(balance=100)
    boss = await admin()
    withdrawal = await funding.create_withdrawal(user.user_id, "USDT", "TRC20", "TXYZ", 40)

    rejected = await funding.decide_withdrawal(boss, withdrawal.id, "reject")

    assert rejected.status is WithdrawStatus.REJECTED
    assert await balance_of(user.user_id) == Decimal("60")


@pytest.mark.asyncio
async def test_rejected_withdrawal_refunds_when_enabled(make_user, admin, balance_of):
    funding = FundingService(refund_on_reject=True)
    user = await make_user(balance=100)
    boss = await admin()
    withdrawal = await funding.create_withdrawal(user.user_id, "USDT", "TRC20", "TXYZ", 40)

    await funding.decide_withdrawal(boss, withdrawal.id, "reject")

    assert await balance_of(user.user_id) == Decimal("100")


@pytest.mark.asyncio
async def test_decide_withdrawal_requires_admin(funding, make_user):
    user = await make_user(balance=100)
    withdrawal = await funding.create_withdrawal(user.user_id, "USDT", "TRC20", "TXYZ", 40)

    with pytest.raises(Forbidden):
        await funding.decide_withdrawal(user, withdrawal.id, "approve")


@pytest.mark.asyncio
async def test_decide_withdrawal_unknown(funding, admin):
    boss = await admin()
    with pytest.raises(NotFound):
        await funding.decide_withdrawal(boss, "missing", "approve")
    with pytest.raises(InvalidTransition):
        await funding.decide_withdrawal(boss, "missing", "cancel")


@pytest.mark.asyncio
async def test_list_withdrawals_by_status(funding, make_user, admin):
    user = await make_user(balance=100)
    boss = await admin()
    first = await funding.create_withdrawal(user.user_id, "USDT", "TRC20", "A", 10)
    await funding.create_withdrawal(user.user_id, "USDT", "TRC20", "B", 10)
    await funding.decide_withdrawal(boss, first.id, "approve")

    assert len(await funding.list_withdrawals(user.user_id)) == 2
    approved = await funding.list_all_withdrawals(status=WithdrawStatus.APPROVED)
    assert [w.id for w in approved] == [first.id]


@pytest.mark.asyncio
async def test_fractional_withdrawals_spend_whole_balance(funding, make_user, balance_of):
    user = await make_user(balance=1)

    await funding.create_withdrawal(user.user_id, "USDT", "TRC20", "A", 0.9)
    assert await balance_of(user.user_id) == Decimal("0.1")

    await funding.create_withdrawal(user.user_id, "USDT", "TRC20", "B", "0.10000000")
    assert await balance_of(user.user_id) == Decimal("0")


# ==================== SAME-WALLET CONCURRENCY ====================


@pytest.mark.asyncio
async def test_concurrent_opens_and_withdrawals_never_overdraw(
    funding, make_user, balance_of, fake_oracle, session_factory
):
    user = await make_user(balance=100)
    engine = TradeEngine(oracle=fake_oracle, schedule=PayoutSchedule.flat(0.8, [60]))

    opens = [engine.open_trade(user.user_id, "BTCUSDT", "LONG", "20.25", 60, entry_price=100.0) for _ in range(5)]
    withdrawals = [
        funding.create_withdrawal(user.user_id, "USDT", "TRC20", f"addr-{i}", "15.5") for i in range(5)
    ]
    results = await asyncio.gather(*opens, *withdrawals, return_exceptions=True)

    open_results, withdraw_results = results[:5], results[5:]
    failures = [r for r in results if isinstance(r, Exception)]
    assert failures, "demand exceeds the balance, some debits must fail"
    assert all(isinstance(r, InsufficientBalance) for r in failures)

    opened = [r for r in open_results if not isinstance(r, Exception)]
    withdrawn = [r for r in withdraw_results if not isinstance(r, Exception)]
    spent = Decimal("20.25") * len(opened) + Decimal("15.5") * len(withdrawn)

    final = await balance_of(user.user_id)
    assert final >= 0
    assert final == Decimal("100") - spent

    async with session_factory() as session:
        trade_rows = await session.scalar(select(func.count()).select_from(Trade))
        withdraw_rows = await session.scalar(select(func.count()).select_from(WithdrawRequest))
    assert (trade_rows, withdraw_rows) == (len(opened), len(withdrawn))
