from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()


def _detect_project_root(backend_dir: Path) -> Path:
    """Resolve project root from the backend directory in the repo layout."""
    return backend_dir.parent.resolve()


_PROJECT_ROOT = _detect_project_root(_BACKEND_DIR)
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "coinvade.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_SQLITE_SYNC_PREFIX = "sqlite:///"


class Settings(BaseSettings):
    # Market data
    BINANCE_API_URL: str = "https://api.binance.com"
    PRICE_FETCH_TIMEOUT_SECONDS: float = 5.0
    PRICE_RETRY_ATTEMPTS: int = 3
    PRICE_RETRY_BASE_DELAY: float = 0.25  # seconds, doubled per attempt
    PRICE_RETRY_BACKOFF_FACTOR: float = 2.0

    # Approximate last-known prices used when the upstream feed is down
    FALLBACK_PRICES: dict[str, float] = {
        "BTCUSDT": 91000.0,
        "ETHUSDT": 3400.0,
        "SOLUSDT": 190.0,
        "XRPUSDT": 0.60,
        "ADAUSDT": 0.55,
    }

    # Ledger
    QUOTE_ASSET: str = "USDT"
    SIGNUP_BONUS_USDT: float = 1000.0  # Credited to new accounts (demo money)

    # Settlement
    # Profit rate per supported contract duration (seconds). A winning
    # contract pays stake * (1 + rate). For the flat 1.8x rule set every
    # duration to 0.8, e.g. PAYOUT_PROFIT_RATES='{"30": 0.8, "60": 0.8, "120": 0.8}'.
    PAYOUT_PROFIT_RATES: dict[int, float] = {
        30: 0.15,
        45: 0.20,
        60: 0.35,
        90: 0.65,
        120: 0.90,
        180: 0.92,
        240: 0.93,
        300: 0.95,
    }
    TIE_POLICY: str = "refund"  # refund | loss

    # Withdrawals rejected by an admin keep their reserved funds on hold
    # unless this is enabled.
    WITHDRAW_REJECT_REFUNDS: bool = False

    # Auth
    JWT_SECRET: str = "coinvade-dev-secret-change-me"  # Override in production
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24
    MIN_PASSWORD_LENGTH: int = 6

    # Database - canonical path under project-root data directory
    DATABASE_URL: str = f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}"

    # Production Settings
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: Optional[str] = None
    CORS_ORIGINS: list[str] = ["*"]

    # Upper bound for any listing query
    MAX_LIST_LIMIT: int = 500

    @field_validator("BINANCE_API_URL", mode="before")
    @classmethod
    def _normalize_url_field(cls, value: object) -> object:
        """Trim accidental quotes/whitespace from URL env vars."""
        if value is None:
            return value
        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text
        # Keep scheme://host normalization simple and deterministic.
        return text.rstrip("/")

    @field_validator("QUOTE_ASSET", mode="before")
    @classmethod
    def _normalize_quote_asset(cls, value: object) -> object:
        if value is None:
            return value
        return str(value).strip().upper()

    @field_validator("TIE_POLICY", mode="before")
    @classmethod
    def _normalize_tie_policy(cls, value: object) -> object:
        text = str(value or "refund").strip().lower()
        if text not in {"refund", "loss"}:
            raise ValueError(f"TIE_POLICY must be 'refund' or 'loss', got {value!r}")
        return text

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Normalize DB URL so a changed cwd never splits databases."""
        if value is None:
            return value

        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text

        # Convert relative SQLite paths to absolute project-root paths.
        for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
            if not text.startswith(prefix):
                continue
            path_part = text[len(prefix) :]
            if not path_part:
                return text
            if path_part in {":memory:", "/:memory:"}:
                return f"{prefix}:memory:"
            absolute = Path(path_part).resolve() if path_part.startswith("/") else (_PROJECT_ROOT / path_part).resolve()
            absolute.parent.mkdir(parents=True, exist_ok=True)
            return f"{prefix}{absolute}"

        return text

    class Config:
        # Load project-root .env first (common workflow), then backend/.env
        # as an override if present.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"


settings = Settings()

DEV_JWT_SECRET = "coinvade-dev-secret-change-me"
