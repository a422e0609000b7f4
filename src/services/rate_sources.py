from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable, Protocol

from domain.rates import BASE_RATE_KEY, BuySellPair, RateOrigin, RateQuote, SourceId

from .errors import InvalidResponseError
from .rate_clients import ComparisonRatesClient, ForexRatesClient, P2PProxyClient

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RateSource(Protocol):
    """Blocking fetch of one rate family; raises ``RateFetchError`` subclasses on failure."""

    source_id: SourceId

    def fetch_quote(self) -> RateQuote: ...


class P2PRateSource(RateSource):
    source_id = SourceId.P2P

    def __init__(
        self,
        *,
        client: P2PProxyClient | None = None,
        currency_id: str = "NGN",
        token_id: str = "USDT",
        verified_only: bool = True,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.client = client or P2PProxyClient()
        self.currency_id = currency_id
        self.token_id = token_id
        self.verified_only = verified_only
        self._now = now

    def fetch_quote(self) -> RateQuote:
        market = self.client.get_market(
            currency_id=self.currency_id,
            token_id=self.token_id,
            verified_only=self.verified_only,
        )
        if not market.success or market.total_traders <= 0:
            msg = market.error or "No traders found or empty response"
            raise InvalidResponseError(msg, payload=market)

        # Median is stable against outlier ads.
        rate = market.median
        if rate is None and market.trader_prices:
            rate = upper_median(market.trader_prices)
        if rate is None or rate <= 0:
            raise InvalidResponseError("Received invalid rate value (zero or negative)", payload=market)

        return RateQuote(
            source_id=self.source_id,
            rates={BASE_RATE_KEY: rate},
            fetched_at=self._now(),
            origin=RateOrigin.LIVE,
        )


class ForexRateSource(RateSource):
    source_id = SourceId.FOREX

    def __init__(
        self,
        *,
        client: ForexRatesClient | None = None,
        currencies: Iterable[str] = ("EUR", "GBP", "CAD"),
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.client = client or ForexRatesClient()
        self.currencies = tuple(code.upper() for code in currencies)
        if not self.currencies:
            raise ValueError("currencies must contain at least one entry")
        self._now = now

    def fetch_quote(self) -> RateQuote:
        fetched = self.client.get_latest_rates(currencies=self.currencies)
        rates = {code: rate for code, rate in fetched.items() if rate > 0}
        if not rates:
            raise InvalidResponseError("Forex provider returned no positive rates", payload=fetched)

        dropped = set(fetched) - set(rates)
        if dropped:
            logger.warning("Dropping non-positive forex rates for %s", ", ".join(sorted(dropped)))

        # Everything is quoted against USD.
        rates.setdefault("USD", Decimal("1"))
        return RateQuote(source_id=self.source_id, rates=rates, fetched_at=self._now(), origin=RateOrigin.LIVE)


class ComparisonRateSource(RateSource):
    source_id = SourceId.COMPARISON

    def __init__(
        self,
        *,
        client: ComparisonRatesClient | None = None,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.client = client or ComparisonRatesClient()
        self._now = now

    def fetch_quote(self) -> RateQuote:
        fetched = self.client.get_rates()
        pairs = {
            code: BuySellPair(buy=entry.buy, sell=entry.sell)
            for code, entry in fetched.items()
            if entry.buy >= 0 and entry.sell >= 0
        }
        if not any(pair.is_priced for pair in pairs.values()):
            raise InvalidResponseError("Comparison broker returned only zero buy/sell pairs", payload=fetched)
        return RateQuote(source_id=self.source_id, rates=pairs, fetched_at=self._now(), origin=RateOrigin.LIVE)


def upper_median(values: Iterable[Decimal]) -> Decimal:
    ordered = sorted(values)
    if not ordered:
        raise ValueError("values must not be empty")
    return ordered[len(ordered) // 2]


__all__ = [
    "ComparisonRateSource",
    "ForexRateSource",
    "P2PRateSource",
    "RateSource",
    "upper_median",
]
