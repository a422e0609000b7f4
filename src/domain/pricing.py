"""Cost-price formulas.

Everything here is pure and deterministic. A cost price of ``0`` is the
"unpriceable" sentinel: it is returned instead of raising when an fx rate is
missing or zero, so a single bad currency never blocks the rest of the set.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping

from pydantic import BaseModel, ConfigDict, Field

ZERO = Decimal("0")
HUNDRED = Decimal("100")

# USDT -> USD conversion friction (0.10%).
TRANSFER_FEE = Decimal("0.001")

USD = "USD"


class ValidationError(ValueError):
    """Raised when a caller supplies a rate or margin that cannot be priced."""


class MarginSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    usd_margin_percent: Decimal = Field(default=Decimal("2.5"), ge=0)
    other_currencies_margin_percent: Decimal = Field(default=Decimal("3.0"), ge=0)


@dataclass(frozen=True)
class CostPriceSet:
    prices: Mapping[str, Decimal] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "prices", MappingProxyType(dict(self.prices)))

    def __getitem__(self, currency: str) -> Decimal:
        return self.prices[currency.upper()]

    def __contains__(self, currency: object) -> bool:
        return isinstance(currency, str) and currency.upper() in self.prices

    def __len__(self) -> int:
        return len(self.prices)

    def get(self, currency: str, default: Decimal = ZERO) -> Decimal:
        return self.prices.get(currency.upper(), default)


def _to_decimal(value: Decimal | float | int | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def validate_margin(margin_percent: Decimal | float | str) -> Decimal:
    try:
        margin = _to_decimal(margin_percent)
    except ArithmeticError as exc:
        raise ValidationError(f"Margin {margin_percent!r} is not a number") from exc
    if not margin.is_finite() or margin < 0:
        raise ValidationError(f"Margin must be a non-negative number, got {margin_percent!r}")
    return margin


def compute_usd_cost(base_rate: Decimal | float, usd_margin_percent: Decimal | float) -> Decimal:
    """USD/NGN = USDT/NGN x (1 + margin)."""
    margin = validate_margin(usd_margin_percent)
    base = _to_decimal(base_rate)
    if not base.is_finite() or base <= 0:
        return ZERO
    return base * (1 + margin / HUNDRED)


def compute_other_currency_cost(
    base_rate: Decimal | float,
    fx_rate: Decimal | float,
    margin_percent: Decimal | float,
    transfer_fee: Decimal | float = TRANSFER_FEE,
) -> Decimal:
    """TARGET/NGN = (USDT/NGN x (1 - fee)) / (TARGET/USD) x (1 + margin)."""
    margin = validate_margin(margin_percent)
    base = _to_decimal(base_rate)
    fx = _to_decimal(fx_rate)
    if not base.is_finite() or not fx.is_finite() or base <= 0 or fx <= 0:
        return ZERO
    fee = _to_decimal(transfer_fee)
    return (base * (1 - fee)) / fx * (1 + margin / HUNDRED)


def validate_base_rate(base_rate: Decimal | float | str) -> Decimal:
    try:
        rate = _to_decimal(base_rate)
    except ArithmeticError as exc:
        raise ValidationError(f"Rate {base_rate!r} is not a number") from exc
    if not rate.is_finite() or rate <= 0:
        raise ValidationError(f"Rate must be a positive number, got {base_rate!r}")
    return rate


def compute_cost_prices(
    base_rate: Decimal | float,
    fx_rates: Mapping[str, Decimal],
    margins: MarginSettings,
    *,
    transfer_fee: Decimal = TRANSFER_FEE,
) -> CostPriceSet:
    """Price USD and every currency in ``fx_rates`` (TARGET/USD) against the base rate."""
    base = validate_base_rate(base_rate)
    validate_margin(margins.usd_margin_percent)
    validate_margin(margins.other_currencies_margin_percent)

    prices: dict[str, Decimal] = {USD: compute_usd_cost(base, margins.usd_margin_percent)}
    for currency, fx_rate in fx_rates.items():
        code = currency.upper()
        if code == USD:
            continue
        prices[code] = compute_other_currency_cost(
            base,
            fx_rate,
            margins.other_currencies_margin_percent,
            transfer_fee,
        )
    return CostPriceSet(prices)


class CostPriceBook:
    """Holds the current cost prices and exactly one previous generation."""

    def __init__(self) -> None:
        self._current = CostPriceSet()
        self._previous = CostPriceSet()

    @property
    def current(self) -> CostPriceSet:
        return self._current

    @property
    def previous(self) -> CostPriceSet:
        return self._previous

    def replace(self, new_set: CostPriceSet) -> CostPriceSet:
        self._previous, self._current = self._current, new_set
        return self._previous


def compare_rates(ours: Decimal, competitor: Decimal, *, is_buy: bool) -> bool:
    """True when our rate beats the competitor (lower buy, higher sell)."""
    if is_buy:
        return ours < competitor
    return ours > competitor


def percent_difference(ours: Decimal, competitor: Decimal) -> Decimal:
    if not ours or not competitor:
        return ZERO
    return (ours - competitor) / competitor * HUNDRED


__all__ = [
    "CostPriceBook",
    "CostPriceSet",
    "MarginSettings",
    "TRANSFER_FEE",
    "ValidationError",
    "compare_rates",
    "compute_cost_prices",
    "compute_other_currency_cost",
    "compute_usd_cost",
    "percent_difference",
    "validate_base_rate",
    "validate_margin",
]
