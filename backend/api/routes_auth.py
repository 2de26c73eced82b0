from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.auth import create_access_token, get_current_actor, get_current_user
from models.actor import Actor
from models.database import User
from services.accounts import account_service, user_to_dict

auth_router = APIRouter()
kyc_router = APIRouter()


class RegisterRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., max_length=256)
    name: Optional[str] = Field(default=None, max_length=100)


class LoginRequest(BaseModel):
    email: str
    password: str


@auth_router.post("/register")
async def register(request: RegisterRequest):
    """Create an account and return a bearer token for it"""
    user = await account_service.register(request.email, request.password, request.name)
    return {
        "ok": True,
        "user": user_to_dict(user),
        "access_token": create_access_token(user),
        "token_type": "bearer",
    }


@auth_router.post("/token")
async def login(request: LoginRequest):
    user = await account_service.authenticate(request.email, request.password)
    return {
        "ok": True,
        "user": user_to_dict(user),
        "access_token": create_access_token(user),
        "token_type": "bearer",
    }


@auth_router.get("/me")
async def me(user: User = Depends(get_current_user)):
    return {"ok": True, "user": user_to_dict(user)}


class KycRequest(BaseModel):
    full_name: Optional[str] = Field(default=None, max_length=200)
    country: Optional[str] = Field(default=None, max_length=100)
    doc_type: Optional[str] = Field(default=None, max_length=50)
    doc_number: Optional[str] = Field(default=None, max_length=100)


@kyc_router.post("/submit")
async def submit_kyc(request: KycRequest, actor: Actor = Depends(get_current_actor)):
    """Submit identity details; the account waits for admin review"""
    user = await account_service.submit_kyc(
        actor.user_id,
        full_name=request.full_name,
        country=request.country,
        doc_type=request.doc_type,
        doc_number=request.doc_number,
    )
    return {"ok": True, "kyc_status": user.kyc_status.value}
