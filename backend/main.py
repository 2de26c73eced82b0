from contextlib import asynccontextmanager
import traceback

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import DEV_JWT_SECRET, settings
from api import admin_router, auth_router, kyc_router, trade_router, wallet_router
from models.database import init_database
from services.errors import CoinvadeError
from services.price_oracle import price_oracle
from utils.logger import setup_logging, get_logger
from utils.utcnow import utcnow

# Setup logging
setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting Coinvade backend...")

    if settings.JWT_SECRET == DEV_JWT_SECRET:
        logger.warning("JWT_SECRET is the development default; set it in the environment")

    await init_database()
    logger.info(
        "Database initialized",
        quote_asset=settings.QUOTE_ASSET,
        tie_policy=settings.TIE_POLICY,
        withdraw_reject_refunds=settings.WITHDRAW_REJECT_REFUNDS,
    )

    try:
        yield
    finally:
        logger.info("Shutting down...")
        await price_oracle.close()
        logger.info("Shutdown complete")


app = FastAPI(
    title="Coinvade",
    description="Demo crypto exchange: timed long/short contracts on a simulated USDT ledger",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(CoinvadeError)
async def domain_exception_handler(request: Request, exc: CoinvadeError):
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "Request rejected",
        path=request.url.path,
        method=request.method,
        code=exc.code,
        error=exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        traceback=traceback.format_exc(),
    )
    return JSONResponse(
        status_code=500,
        content={"ok": False, "error": "Internal server error", "code": "internal_error"},
    )


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# API routes
app.include_router(auth_router, prefix="/api/auth", tags=["Auth"])
app.include_router(kyc_router, prefix="/api/kyc", tags=["KYC"])
app.include_router(wallet_router, prefix="/api", tags=["Wallet"])
app.include_router(trade_router, prefix="/api", tags=["Trading"])
app.include_router(admin_router, prefix="/api", tags=["Admin"])


# Health checks
@app.get("/health")
async def health_check():
    """Basic health check - for load balancers"""
    return {"status": "ok", "timestamp": utcnow().isoformat()}


if __name__ == "__main__":
    import os
    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port, timeout_keep_alive=30)
