"""Smallest-unit conversion between the two chains.

All arithmetic is exact (``fractions.Fraction``); the only loss is the final
rounding to an integer number of destination units.
"""

from decimal import Decimal
from fractions import Fraction
from typing import Union

ROUNDING_DOWN = "down"
ROUNDING_HALF_EVEN = "half_even"

Rate = Union[Decimal, Fraction, int, str]


class AmountConverter:
    """Convert source smallest units into destination smallest units.

    ``rate`` is the nominal number of destination whole units paid per source
    whole unit (1 for a 1:1 bridge). With 9 source decimals and 18
    destination decimals, 1 lamport becomes ``rate * 10**9`` token wei.
    """

    def __init__(
        self,
        source_decimals: int,
        destination_decimals: int,
        rate: Rate = 1,
        rounding: str = ROUNDING_DOWN,
    ):
        if source_decimals < 0 or destination_decimals < 0:
            raise ValueError("decimals must be non-negative")
        if rounding not in (ROUNDING_DOWN, ROUNDING_HALF_EVEN):
            raise ValueError(f"Unknown rounding policy: {rounding}")

        self.rate = Fraction(rate)
        if self.rate <= 0:
            raise ValueError("rate must be positive")

        self.source_decimals = source_decimals
        self.destination_decimals = destination_decimals
        self.rounding = rounding
        self._factor = self.rate * Fraction(10**destination_decimals, 10**source_decimals)

    def convert(self, amount: int) -> int:
        """Convert a non-negative source amount.

        Raises:
            ValueError: if ``amount`` is negative
        """
        if amount < 0:
            raise ValueError(f"amount must be non-negative: {amount}")
        exact = amount * self._factor
        if self.rounding == ROUNDING_HALF_EVEN:
            return round(exact)
        return exact.numerator // exact.denominator

    def inverse(self) -> "AmountConverter":
        """Converter for the opposite direction at the same nominal rate."""
        return AmountConverter(
            self.destination_decimals,
            self.source_decimals,
            rate=1 / self.rate,
            rounding=self.rounding,
        )

    def __repr__(self) -> str:
        return (
            f"AmountConverter({self.source_decimals}->{self.destination_decimals}, "
            f"rate={self.rate}, rounding={self.rounding})"
        )
