from .types import Money, PreciseFloat, to_decimal

__all__ = [
    "Money",
    "PreciseFloat",
    "to_decimal",
]
