"""Payout math for timed contracts.

One schedule, used by every settlement path: a winning contract pays
``stake * (1 + rate)`` where ``rate`` depends on the contract duration.
A loss pays nothing; a tie refunds the stake unless the tie policy says
ties are losses. The stake itself was already taken at open.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Optional

from config import settings
from models.types import to_decimal

TIE_REFUND = "refund"
TIE_LOSS = "loss"


@dataclass(frozen=True)
class Settlement:
    """Outcome of a resolved contract, as reported back to the caller."""

    won: Optional[bool]
    payout: Decimal
    delta: Decimal  # Net change versus the pre-open balance: payout - stake
    exit_price: float

    def to_dict(self) -> dict:
        return {
            "won": self.won,
            "payout": float(self.payout),
            "delta": float(self.delta),
            "exit_price": self.exit_price,
        }


class PayoutSchedule:
    def __init__(self, profit_rates: Optional[Mapping[int, float]] = None, tie_policy: Optional[str] = None):
        rates = settings.PAYOUT_PROFIT_RATES if profit_rates is None else profit_rates
        self.profit_rates: dict[int, Decimal] = {int(k): to_decimal(v) for k, v in rates.items()}
        self.tie_policy = (tie_policy or settings.TIE_POLICY).lower()

    @classmethod
    def flat(cls, rate: float, durations, tie_policy: Optional[str] = None) -> "PayoutSchedule":
        """Same profit rate for every listed duration."""
        return cls({int(d): rate for d in durations}, tie_policy=tie_policy)

    def supports(self, duration) -> bool:
        try:
            return int(duration) in self.profit_rates
        except (TypeError, ValueError):
            return False

    def profit_rate(self, duration) -> Decimal:
        return self.profit_rates.get(int(duration), Decimal("0"))

    def estimated_payout(self, stake, duration) -> Decimal:
        """What a win would pay; shown to the user before opening."""
        return to_decimal(stake) * (1 + self.profit_rate(duration))

    def payout(self, stake, duration, won: Optional[bool]) -> Decimal:
        stake = to_decimal(stake)
        if won is True:
            return self.estimated_payout(stake, duration)
        if won is False:
            return Decimal("0")
        return stake if self.tie_policy == TIE_REFUND else Decimal("0")

    def settle(self, stake, duration, won: Optional[bool], exit_price: float) -> Settlement:
        if won is None and self.tie_policy == TIE_LOSS:
            won = False
        payout = self.payout(stake, duration, won)
        return Settlement(
            won=won,
            payout=payout,
            delta=payout - to_decimal(stake),
            exit_price=exit_price,
        )

    def as_table(self, stake=None) -> list[dict]:
        rows = []
        for duration, rate in sorted(self.profit_rates.items()):
            row = {"duration": duration, "profit_rate": float(rate)}
            if stake is not None:
                row["payout"] = float(self.estimated_payout(stake, duration))
            rows.append(row)
        return rows


def determine_outcome(direction: str, entry_price: float, current_price: float) -> Optional[bool]:
    """True if the contract won, False if lost, None on an exact tie."""
    is_long = str(direction).upper() == "LONG"
    if current_price > entry_price:
        return is_long
    if current_price < entry_price:
        return not is_long
    return None
