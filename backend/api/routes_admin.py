from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.auth import require_admin
from models.actor import Actor
from models.database import DepositStatus, KycStatus, UserRole, WithdrawStatus
from services.accounts import account_service, user_to_dict
from services.funding import funding_service
from services.trade_engine import trade_engine

admin_router = APIRouter()


class DepositDecisionRequest(BaseModel):
    action: Literal["approve", "confirm", "reject", "fail"]


class WithdrawalDecisionRequest(BaseModel):
    id: str = Field(..., min_length=1)
    action: Literal["approve", "reject", "paid"]
    note: Optional[str] = Field(default=None, max_length=500)


class RoleUpdateRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    role: UserRole


class KycUpdateRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    status: KycStatus


class CreditRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    amount: float
    asset: Optional[str] = Field(default=None, max_length=16)


# ==================== FUNDING ====================


@admin_router.get("/admin/deposits")
async def list_deposits(
    status: Optional[DepositStatus] = Query(default=None),
    limit: int = Query(default=200, ge=1, le=500),
    actor: Actor = Depends(require_admin),
):
    deposits = await funding_service.list_all_deposits(status=status, limit=limit)
    return {"ok": True, "deposits": [d.to_dict() for d in deposits]}


@admin_router.post("/admin/deposits/{deposit_id}")
async def decide_deposit(
    deposit_id: str,
    request: DepositDecisionRequest,
    actor: Actor = Depends(require_admin),
):
    """Confirm (credits the wallet) or fail a pending deposit"""
    deposit = await funding_service.decide_deposit(actor, deposit_id, request.action)
    return {"ok": True, "deposit": deposit.to_dict()}


@admin_router.get("/admin/withdrawals")
async def list_withdrawals(
    status: Optional[WithdrawStatus] = Query(default=None),
    limit: int = Query(default=200, ge=1, le=500),
    actor: Actor = Depends(require_admin),
):
    withdrawals = await funding_service.list_all_withdrawals(status=status, limit=limit)
    return {"ok": True, "withdrawals": [w.to_dict() for w in withdrawals]}


@admin_router.put("/admin/withdrawals")
async def decide_withdrawal(request: WithdrawalDecisionRequest, actor: Actor = Depends(require_admin)):
    withdrawal = await funding_service.decide_withdrawal(actor, request.id, request.action, note=request.note)
    return {"ok": True, "withdrawal": withdrawal.to_dict()}


# ==================== USERS ====================


@admin_router.get("/admin/users")
async def list_users(
    limit: int = Query(default=200, ge=1, le=500),
    actor: Actor = Depends(require_admin),
):
    users = await account_service.list_users(actor, limit=limit)
    return {"ok": True, "users": users}


@admin_router.put("/admin/users")
async def set_role(request: RoleUpdateRequest, actor: Actor = Depends(require_admin)):
    user = await account_service.set_role(actor, request.user_id, request.role)
    return {"ok": True, "user": user_to_dict(user)}


@admin_router.get("/admin/kyc")
async def list_kyc(
    status: Optional[KycStatus] = Query(default=KycStatus.PENDING),
    limit: int = Query(default=200, ge=1, le=500),
    actor: Actor = Depends(require_admin),
):
    """Users awaiting (or in) a given KYC state"""
    users = await account_service.list_users(actor, limit=limit, kyc_status=status)
    return {"ok": True, "users": users}


@admin_router.put("/admin/kyc")
async def set_kyc(request: KycUpdateRequest, actor: Actor = Depends(require_admin)):
    user = await account_service.set_kyc_status(actor, request.user_id, request.status)
    return {"ok": True, "user": user_to_dict(user)}


@admin_router.post("/admin/wallet/credit")
async def credit_wallet(request: CreditRequest, actor: Actor = Depends(require_admin)):
    wallet = await account_service.admin_credit(actor, request.user_id, request.amount, asset=request.asset)
    return {"ok": True, "wallet": wallet.to_dict()}


# ==================== DASHBOARD ====================


@admin_router.get("/admin/metrics")
async def metrics(actor: Actor = Depends(require_admin)):
    return {"ok": True, "metrics": await account_service.metrics(actor)}


@admin_router.get("/admin/trades")
async def list_all_trades(
    open_only: bool = Query(default=False),
    limit: int = Query(default=200, ge=1, le=500),
    actor: Actor = Depends(require_admin),
):
    trades = await trade_engine.list_all_trades(limit=limit, open_only=open_only)
    return {"ok": True, "trades": [t.to_dict() for t in trades]}
