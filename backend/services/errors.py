"""Domain error taxonomy shared by the ledger, trade engine and funding workflow.

Every error carries a stable ``code`` and the HTTP status the API layer
reports it with, so routes never have to translate exceptions by hand.
"""

from __future__ import annotations


class CoinvadeError(Exception):
    """Base class for expected, user-visible failures."""

    code = "error"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.message, "code": self.code}


class InvalidAmount(CoinvadeError):
    code = "invalid_amount"


class InvalidDuration(InvalidAmount):
    code = "invalid_duration"


class InvalidDirection(CoinvadeError):
    code = "invalid_direction"


class InvalidPair(CoinvadeError):
    code = "invalid_pair"


class InsufficientBalance(CoinvadeError):
    code = "insufficient_balance"


class UpstreamUnavailable(CoinvadeError):
    """Raised by the price oracle when the market-data source cannot answer."""

    code = "upstream_unavailable"
    status_code = 502


class PriceUnavailable(CoinvadeError):
    code = "price_unavailable"
    status_code = 503


class NotFound(CoinvadeError):
    code = "not_found"
    status_code = 404


class Forbidden(CoinvadeError):
    code = "forbidden"
    status_code = 403


class AuthenticationFailed(CoinvadeError):
    code = "unauthorized"
    status_code = 401


class InvalidState(CoinvadeError):
    code = "invalid_state"
    status_code = 409


class InvalidTransition(CoinvadeError):
    code = "invalid_transition"
    status_code = 409


class Conflict(CoinvadeError):
    code = "conflict"
    status_code = 409


class InvalidInput(CoinvadeError):
    """Malformed request field other than an amount (email, address, ...)."""

    code = "invalid_input"
