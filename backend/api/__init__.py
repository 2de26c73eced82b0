from .routes_admin import admin_router
from .routes_auth import auth_router, kyc_router
from .routes_trade import trade_router
from .routes_wallet import wallet_router

__all__ = [
    "admin_router",
    "auth_router",
    "kyc_router",
    "trade_router",
    "wallet_router",
]
