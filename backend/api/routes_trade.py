from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.auth import get_current_actor
from models.actor import Actor
from services.trade_engine import trade_engine

trade_router = APIRouter()


class OpenTradeRequest(BaseModel):
    pair: str = Field(..., min_length=1, max_length=20)
    direction: str = Field(..., description="LONG or SHORT")
    amount: float
    duration: int = Field(..., description="Contract length in seconds")


class ResolveTradeRequest(BaseModel):
    trade_id: str = Field(..., min_length=1)


@trade_router.post("/trade/open")
async def open_trade(request: OpenTradeRequest, actor: Actor = Depends(get_current_actor)):
    """Stake `amount` on the price direction of `pair` over `duration` seconds"""
    result = await trade_engine.open_trade(
        user_id=actor.user_id,
        pair=request.pair,
        direction=request.direction,
        amount=request.amount,
        duration=request.duration,
    )
    return {"ok": True, **result.to_dict()}


@trade_router.post("/trade/resolve")
async def resolve_trade(request: ResolveTradeRequest, actor: Actor = Depends(get_current_actor)):
    result = await trade_engine.resolve_trade(actor, request.trade_id)
    return {"ok": True, **result.to_dict()}


@trade_router.get("/trade/durations")
async def get_durations(stake: Optional[float] = Query(default=None, gt=0)):
    """Supported contract durations, their profit rates and the win payout for `stake`"""
    return {"ok": True, "durations": trade_engine.schedule.as_table(stake)}


@trade_router.get("/trades")
async def list_trades(
    limit: int = Query(default=50, ge=1, le=500),
    actor: Actor = Depends(get_current_actor),
):
    trades = await trade_engine.list_trades(actor.user_id, limit=limit)
    return {"ok": True, "trades": [t.to_dict() for t in trades]}
