from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.auth import get_current_actor
from models.actor import Actor
from services.accounts import account_service
from services.funding import funding_service

wallet_router = APIRouter()


class DepositRequest(BaseModel):
    asset: str = Field(default="USDT", max_length=16)
    network: str = Field(..., min_length=1, max_length=32)
    amount: float
    tx_ref: Optional[str] = Field(default=None, max_length=200)


class WithdrawalRequest(BaseModel):
    asset: str = Field(default="USDT", max_length=16)
    network: str = Field(..., min_length=1, max_length=32)
    address: str = Field(..., min_length=1, max_length=200)
    amount: float
    note: Optional[str] = Field(default=None, max_length=500)


@wallet_router.get("/wallet")
async def get_wallet(actor: Actor = Depends(get_current_actor)):
    """Caller's quote-asset wallet, created on first access"""
    wallet = await account_service.get_wallet(actor.user_id)
    return {"ok": True, "wallet": wallet.to_dict()}


# ==================== DEPOSITS ====================


@wallet_router.post("/wallet/deposits")
async def create_deposit(request: DepositRequest, actor: Actor = Depends(get_current_actor)):
    deposit = await funding_service.create_deposit(
        user_id=actor.user_id,
        asset=request.asset,
        network=request.network,
        amount=request.amount,
        tx_ref=request.tx_ref,
    )
    return {"ok": True, "deposit": deposit.to_dict()}


@wallet_router.get("/wallet/deposits")
async def list_deposits(
    limit: int = Query(default=50, ge=1, le=500),
    actor: Actor = Depends(get_current_actor),
):
    deposits = await funding_service.list_deposits(actor.user_id, limit=limit)
    return {"ok": True, "deposits": [d.to_dict() for d in deposits]}


# ==================== WITHDRAWALS ====================


@wallet_router.post("/wallet/withdrawals")
async def create_withdrawal(request: WithdrawalRequest, actor: Actor = Depends(get_current_actor)):
    """Reserve funds and queue a withdrawal for admin review"""
    withdrawal = await funding_service.create_withdrawal(
        user_id=actor.user_id,
        asset=request.asset,
        network=request.network,
        address=request.address,
        amount=request.amount,
        note=request.note,
    )
    return {"ok": True, "withdrawal": withdrawal.to_dict()}


@wallet_router.get("/wallet/withdrawals")
async def list_withdrawals(
    limit: int = Query(default=50, ge=1, le=500),
    actor: Actor = Depends(get_current_actor),
):
    withdrawals = await funding_service.list_withdrawals(actor.user_id, limit=limit)
    return {"ok": True, "withdrawals": [w.to_dict() for w in withdrawals]}
