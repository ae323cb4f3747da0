from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from settlement.errors import ValidationError
from settlement.utils import round_half_up


@dataclass(frozen=True)
class CommissionSplit:
    rate: Decimal
    commission: int
    seller_earnings: int


class CommissionCalculator:
    """Splits a line total between the platform and the seller.

    The platform default rate is injected, never hard-coded at call sites.
    """

    def __init__(self, default_rate: Decimal):
        self.default_rate = self._checked(Decimal(default_rate))

    def resolve_rate(self, seller_rate: Optional[Decimal] = None,
                     category_rate: Optional[Decimal] = None) -> Decimal:
        """Seller's configured rate, else the category override, else the platform default."""
        for rate in (seller_rate, category_rate):
            if rate is not None:
                return self._checked(Decimal(rate))
        return self.default_rate

    def split(self, line_total: int, rate: Decimal) -> CommissionSplit:
        if line_total < 0:
            raise ValidationError(f"Line total must not be negative: {line_total}")
        rate = self._checked(Decimal(rate))
        commission = round_half_up(Decimal(line_total) * rate / 100)
        return CommissionSplit(rate=rate, commission=commission, seller_earnings=line_total - commission)

    @staticmethod
    def _checked(rate: Decimal) -> Decimal:
        if rate < 0 or rate > 100:
            raise ValidationError(f"Commission rate must be between 0 and 100, got {rate}")
        return rate
