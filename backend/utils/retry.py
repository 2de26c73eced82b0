"""Exponential backoff for upstream HTTP calls.

Defaults follow the price feed budget: three attempts, 250 ms doubling,
no jitter, so a dead feed costs well under a second before the caller
falls back.
"""

import asyncio
import random
from functools import wraps
from typing import Callable, Optional, Tuple, Type

import httpx

from utils.logger import get_logger

logger = get_logger("retry")

TRANSIENT_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    ConnectionError,
    asyncio.TimeoutError,
)
TRANSIENT_STATUS_CODES: Tuple[int, ...] = (418, 429, 500, 502, 503, 504)


class RetryConfig:
    """Configuration for retry behavior"""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.25,
        max_delay: float = 5.0,
        exponential_base: float = 2.0,
        jitter: bool = False,
        retryable_exceptions: Tuple[Type[Exception], ...] = TRANSIENT_EXCEPTIONS,
        retryable_status_codes: Tuple[int, ...] = TRANSIENT_STATUS_CODES,
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions
        self.retryable_status_codes = retryable_status_codes


def _retry_after(error: Exception) -> Optional[float]:
    # Binance sends Retry-After (seconds) with 418/429 rate-limit bans.
    if not isinstance(error, httpx.HTTPStatusError):
        return None
    header = error.response.headers.get("Retry-After")
    try:
        return float(header) if header is not None else None
    except ValueError:
        return None


def calculate_delay(attempt: int, config: RetryConfig, error: Optional[Exception] = None) -> float:
    """Backoff for the given zero-based attempt, never shorter than Retry-After"""
    delay = min(config.base_delay * (config.exponential_base**attempt), config.max_delay)
    if config.jitter:
        delay = delay * (0.5 + random.random())
    hinted = _retry_after(error) if error is not None else None
    if hinted is not None:
        delay = min(max(delay, hinted), config.max_delay)
    return delay


def is_retryable_error(error: Exception, config: RetryConfig) -> bool:
    if isinstance(error, config.retryable_exceptions):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in config.retryable_status_codes
    return False


def with_retry(config: Optional[RetryConfig] = None):
    """Retry an async callable on transient httpx failures.

    Without an explicit config the bound instance's ``retry_config``
    attribute is used, so services can build theirs from settings.
    """

    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            cfg = config
            if cfg is None and args:
                cfg = getattr(args[0], "retry_config", None)
            cfg = cfg or RetryConfig()

            for attempt in range(cfg.max_attempts):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not is_retryable_error(e, cfg):
                        raise
                    if attempt == cfg.max_attempts - 1:
                        logger.error(
                            "All retry attempts exhausted",
                            function=func.__name__,
                            attempts=cfg.max_attempts,
                            error=str(e),
                        )
                        raise

                    delay = calculate_delay(attempt, cfg, e)
                    logger.warning(
                        "Retrying after transient error",
                        function=func.__name__,
                        attempt=attempt + 1,
                        max_attempts=cfg.max_attempts,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
