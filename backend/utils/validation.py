import math
import re
from decimal import Decimal
from typing import Optional

from models.types import to_decimal
from services.errors import InvalidAmount, InvalidInput


EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def validate_email(email: Optional[str]) -> str:
    """Normalize and validate an email address"""
    if not email:
        raise ValueError("Email cannot be empty")

    email = email.strip().lower()

    if not EMAIL_REGEX.match(email):
        raise ValueError(f"Invalid email format: {email}")

    return email


def validate_positive_number(value, name: str) -> float:
    """Validate that a number is finite and strictly positive"""
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidAmount(f"{name} must be a number")
    if not math.isfinite(number) or number <= 0:
        raise InvalidAmount(f"{name} must be greater than 0")
    return number


def parse_amount(value, name: str = "amount") -> Decimal:
    """Coerce a money amount to Decimal; must be finite and > 0"""
    try:
        amount = to_decimal(value)
    except ValueError:
        raise InvalidAmount(f"{name} must be a number")
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount(f"{name} must be greater than 0")
    return amount


def validate_limit(value: int, max_limit: int = 1000) -> int:
    """Validate pagination limit"""
    if value < 1:
        return 1
    if value > max_limit:
        return max_limit
    return value



def require_text(value: Optional[str], name: str) -> str:
    """Trimmed non-empty string, else InvalidInput"""
    text = str(value or "").strip()
    if not text:
        raise InvalidInput(f"{name} is required")
    return text
