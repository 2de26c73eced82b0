"""Shared SQLAlchemy column types used across ORM models."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.types import BigInteger, Numeric, TypeDecorator

MONEY_SCALE = 8
_MONEY_QUANTUM = Decimal(1).scaleb(-MONEY_SCALE)


def to_decimal(value: Any) -> Decimal:
    """Coerce a float/int/str/Decimal into a Decimal without float artifacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Invalid numeric value: {value!r}")
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError(f"Invalid numeric value: {value!r}") from exc


class PreciseFloat(TypeDecorator):
    """Persist float-like values through Decimal-backed NUMERIC storage.

    This keeps API/service ergonomics (Python ``float`` in/out) while avoiding
    binary float serialization artifacts at the DB boundary. Used for market
    prices, which arrive from the feed as floats.
    """

    impl = Numeric(24, 12, asdecimal=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        try:
            return to_decimal(value)
        except ValueError as exc:
            raise ValueError(f"Invalid numeric value for PreciseFloat: {value!r}") from exc

    def process_result_value(self, value: Any, dialect):
        if value is None:
            return None
        return float(value)


class Money(TypeDecorator):
    """Ledger amounts: ``Decimal`` in, ``Decimal`` out, quantized to 8 places.

    SQLite has no exact decimal storage (NUMERIC columns fall back to REAL),
    so there the value is stored as a BIGINT count of 1e-8 units. That keeps
    ``balance - :amount`` and ``balance >= :amount`` integer-exact inside the
    database. Other backends use ``NUMERIC(28, 8)``.
    """

    impl = Numeric(28, MONEY_SCALE, asdecimal=True)
    cache_ok = True

    @staticmethod
    def _stores_units(dialect) -> bool:
        return dialect is not None and dialect.name == "sqlite"

    def load_dialect_impl(self, dialect):
        if self._stores_units(dialect):
            return dialect.type_descriptor(BigInteger())
        return dialect.type_descriptor(Numeric(28, MONEY_SCALE, asdecimal=True))

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        try:
            amount = to_decimal(value).quantize(_MONEY_QUANTUM)
        except (ValueError, InvalidOperation) as exc:
            raise ValueError(f"Invalid numeric value for Money: {value!r}") from exc
        if self._stores_units(dialect):
            return int(amount.scaleb(MONEY_SCALE))
        return amount

    def process_result_value(self, value: Any, dialect):
        if value is None:
            return None
        amount = to_decimal(value)
        if self._stores_units(dialect):
            amount = amount.scaleb(-MONEY_SCALE)
        return amount.quantize(_MONEY_QUANTUM)
