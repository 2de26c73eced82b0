from .logger import setup_logging, get_logger
from .retry import RetryConfig, with_retry

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",

    # Retry
    "RetryConfig",
    "with_retry",
]
