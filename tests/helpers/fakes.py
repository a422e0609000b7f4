from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Mapping

from domain.pricing import CostPriceSet, MarginSettings
from domain.rates import BASE_RATE_KEY, BuySellPair, RateOrigin, RateQuote, RateValue, SourceId
from services.notifications import NotificationKind

FIXED_NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


@dataclass
class FakeClock:
    now: float = 1_700_000_000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_quote(source_id: SourceId, rates: Mapping[str, RateValue], origin: RateOrigin = RateOrigin.LIVE) -> RateQuote:
    return RateQuote(source_id=source_id, rates=dict(rates), fetched_at=FIXED_NOW, origin=origin)


def p2p_quote(rate: str) -> RateQuote:
    return make_quote(SourceId.P2P, {BASE_RATE_KEY: Decimal(rate)})


def forex_quote(**rates: str) -> RateQuote:
    return make_quote(SourceId.FOREX, {code: Decimal(value) for code, value in rates.items()})


def comparison_quote(**pairs: tuple[str, str]) -> RateQuote:
    return make_quote(
        SourceId.COMPARISON,
        {code: BuySellPair(buy=Decimal(buy), sell=Decimal(sell)) for code, (buy, sell) in pairs.items()},
    )


class ScriptedSource:
    """Blocking source that plays back a list of quotes or exceptions, one per call."""

    def __init__(self, source_id: SourceId, outcomes: list[RateQuote | Exception | Callable[[], RateQuote]]) -> None:
        self.source_id = source_id
        self._outcomes = list(outcomes)
        self.calls = 0

    def fetch_quote(self) -> RateQuote:
        self.calls += 1
        outcome = self._outcomes[min(self.calls, len(self._outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome()
        return outcome


class BlockingSource:
    """Source that blocks in its worker thread until released."""

    def __init__(self, source_id: SourceId, quote: RateQuote) -> None:
        self.source_id = source_id
        self.quote = quote
        self.release = threading.Event()
        self.started = threading.Event()
        self.finished = threading.Event()
        self.calls = 0

    def fetch_quote(self) -> RateQuote:
        self.calls += 1
        self.started.set()
        self.release.wait(timeout=5)
        self.finished.set()
        return self.quote


@dataclass
class RecordingNotifier:
    messages: list[tuple[NotificationKind, str]] = field(default_factory=list)

    def notify(self, kind: NotificationKind, message: str) -> None:
        self.messages.append((kind, message))

    @property
    def kinds(self) -> list[NotificationKind]:
        return [kind for kind, _ in self.messages]


@dataclass
class RecordingSink:
    calls: list[tuple[dict[SourceId, RateQuote], CostPriceSet, MarginSettings, str]] = field(default_factory=list)
    fail: bool = False

    def persist(
        self,
        quotes: Mapping[SourceId, RateQuote],
        cost_prices: CostPriceSet,
        margins: MarginSettings,
        trigger: str,
    ) -> None:
        if self.fail:
            raise RuntimeError("database unavailable")
        self.calls.append((dict(quotes), cost_prices, margins, str(trigger)))


async def no_sleep(seconds: float) -> None:
    return None
