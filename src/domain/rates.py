from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import StrEnum
from types import MappingProxyType
from typing import Mapping, TypeAlias


class SourceId(StrEnum):
    P2P = "P2P"
    FOREX = "FOREX"
    COMPARISON = "COMPARISON"


class RateOrigin(StrEnum):
    """Provenance of a served rate, used by the UI for trust indicators."""

    LIVE = "LIVE"
    CACHE = "CACHE"
    LAST_KNOWN_GOOD = "LAST_KNOWN_GOOD"
    DEFAULT = "DEFAULT"


@dataclass(frozen=True)
class BuySellPair:
    buy: Decimal
    sell: Decimal

    def __post_init__(self) -> None:
        if self.buy < 0 or self.sell < 0:
            raise ValueError("buy and sell must be >= 0")

    @property
    def is_priced(self) -> bool:
        return self.buy > 0 or self.sell > 0


RateValue: TypeAlias = Decimal | BuySellPair

# Key under which the P2P quote stores the USDT/NGN base rate.
BASE_RATE_KEY = "USDT"


@dataclass(frozen=True)
class RateQuote:
    """Immutable rate snapshot for one source.

    ``rates`` maps a currency code to either a single rate or a buy/sell pair.
    The mapping is copied and exposed read-only so a quote can be shared
    between the cache, the last-known-good cell and callers.
    """

    source_id: SourceId
    rates: Mapping[str, RateValue]
    fetched_at: datetime
    origin: RateOrigin = RateOrigin.LIVE

    def __post_init__(self) -> None:
        frozen = MappingProxyType({code.upper(): value for code, value in self.rates.items()})
        object.__setattr__(self, "rates", frozen)

    def with_origin(self, origin: RateOrigin) -> RateQuote:
        if origin == self.origin:
            return self
        return replace(self, rates=dict(self.rates), origin=origin)

    def rate(self, code: str) -> Decimal:
        value = self.rates[code.upper()]
        if isinstance(value, BuySellPair):
            msg = f"{self.source_id} quotes {code} as a buy/sell pair"
            raise TypeError(msg)
        return value

    def pair(self, code: str) -> BuySellPair:
        value = self.rates[code.upper()]
        if not isinstance(value, BuySellPair):
            msg = f"{self.source_id} quotes {code} as a single rate"
            raise TypeError(msg)
        return value

    @property
    def base_rate(self) -> Decimal:
        return self.rate(BASE_RATE_KEY)

    def single_rates(self) -> dict[str, Decimal]:
        return {code: value for code, value in self.rates.items() if isinstance(value, Decimal)}


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

DEFAULT_RATES: Mapping[SourceId, Mapping[str, RateValue]] = MappingProxyType(
    {
        SourceId.P2P: {BASE_RATE_KEY: Decimal("1450")},
        SourceId.FOREX: {
            "EUR": Decimal("0.92"),
            "GBP": Decimal("0.79"),
            "CAD": Decimal("1.36"),
            "USD": Decimal("1.0"),
        },
        SourceId.COMPARISON: {
            "USD": BuySellPair(buy=Decimal("1635"), sell=Decimal("1600")),
            "EUR": BuySellPair(buy=Decimal("1870"), sell=Decimal("1805")),
            "GBP": BuySellPair(buy=Decimal("2150"), sell=Decimal("2080")),
            "CAD": BuySellPair(buy=Decimal("1190"), sell=Decimal("1140")),
        },
    }
)


def default_quote(source_id: SourceId) -> RateQuote:
    """Hardcoded fallback that is always renderable, even with no network."""
    return RateQuote(
        source_id=source_id,
        rates=dict(DEFAULT_RATES[source_id]),
        fetched_at=_EPOCH,
        origin=RateOrigin.DEFAULT,
    )


__all__ = [
    "BASE_RATE_KEY",
    "BuySellPair",
    "DEFAULT_RATES",
    "RateOrigin",
    "RateQuote",
    "RateValue",
    "SourceId",
    "default_quote",
]
