"""Executive membership pricing: the only place a plan's price is computed."""

from __future__ import annotations

import math
from dataclasses import dataclass
from fractions import Fraction
from typing import Any

from .errors import InvalidPlan


PLAN_BASE_PRICES = {
    1: 350,
    2: 650,
    3: 900,
}
FEE_RATE = Fraction(2, 100)
MINOR_UNITS_PER_MAJOR = 100


@dataclass(frozen=True)
class PriceQuote:
    plan_years: int
    base_price: int
    total_price: int
    platform_fee: int

    @property
    def total_minor(self) -> int:
        return self.total_price * MINOR_UNITS_PER_MAJOR

    @property
    def plan_label(self) -> str:
        return f"{self.plan_years}-Year Executive Membership"

    def as_dict(self) -> dict[str, Any]:
        return {
            "selectedYears": self.plan_years,
            "baseAmount": self.base_price,
            "platformFee": self.platform_fee,
            "totalAmount": self.total_price,
            "label": self.plan_label,
        }


def parse_plan_years(value: Any) -> int:
    """Coerce a plan duration to an int, rejecting anything that is not a whole number."""
    if isinstance(value, bool):
        raise InvalidPlan()
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise InvalidPlan()


def quote(plan_years: Any) -> PriceQuote:
    years = parse_plan_years(plan_years)
    base = PLAN_BASE_PRICES.get(years)
    if base is None:
        raise InvalidPlan()
    total = math.ceil(Fraction(base) / (1 - FEE_RATE))
    return PriceQuote(
        plan_years=years,
        base_price=base,
        total_price=total,
        platform_fee=total - base,
    )


def supported_plans() -> list[PriceQuote]:
    return [quote(years) for years in sorted(PLAN_BASE_PRICES)]
