from __future__ import annotations

from decimal import Decimal

import pytest

from domain.rates import BASE_RATE_KEY, BuySellPair, RateOrigin, SourceId, default_quote
from tests.helpers.fakes import comparison_quote, forex_quote, p2p_quote


def test_quote_rates_are_read_only_and_upper_cased() -> None:
    quote = forex_quote(eur="0.92")

    assert quote.rate("EUR") == Decimal("0.92")
    with pytest.raises(TypeError):
        quote.rates["EUR"] = Decimal("1")  # type: ignore[index]


def test_with_origin_returns_relabelled_copy() -> None:
    quote = p2p_quote("1500")

    cached = quote.with_origin(RateOrigin.CACHE)

    assert cached.origin == RateOrigin.CACHE
    assert cached.base_rate == Decimal("1500")
    assert quote.origin == RateOrigin.LIVE
    assert quote.with_origin(RateOrigin.LIVE) is quote


def test_pair_and_single_rate_accessors_are_strict() -> None:
    quote = comparison_quote(USD=("1635", "1600"))

    assert quote.pair("usd").buy == Decimal("1635")
    with pytest.raises(TypeError):
        quote.rate("USD")
    with pytest.raises(TypeError):
        p2p_quote("1450").pair(BASE_RATE_KEY)


def test_buy_sell_pair_rejects_negative_values() -> None:
    with pytest.raises(ValueError):
        BuySellPair(buy=Decimal("-1"), sell=Decimal("1"))
    assert not BuySellPair(buy=Decimal("0"), sell=Decimal("0")).is_priced


@pytest.mark.parametrize("source_id", list(SourceId))
def test_defaults_exist_for_every_source(source_id: SourceId) -> None:
    quote = default_quote(source_id)

    assert quote.origin == RateOrigin.DEFAULT
    assert quote.source_id == source_id
    assert len(quote.rates) > 0


def test_default_values() -> None:
    assert default_quote(SourceId.P2P).base_rate == Decimal("1450")
    assert default_quote(SourceId.FOREX).rate("EUR") == Decimal("0.92")
    assert default_quote(SourceId.COMPARISON).pair("GBP") == BuySellPair(buy=Decimal("2150"), sell=Decimal("2080"))
