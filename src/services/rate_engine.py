from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import StrEnum
from pathlib import Path
from typing import Awaitable, Callable, Mapping, Protocol

from config import AppSettings, config
from domain.pricing import (
    TRANSFER_FEE,
    CostPriceBook,
    CostPriceSet,
    MarginSettings,
    compute_cost_prices,
    validate_base_rate,
)
from domain.rates import BASE_RATE_KEY, RateOrigin, RateQuote, SourceId

from .attempt_throttle import AttemptThrottle
from .expiring_cache import ExpiringCache
from .notifications import Notifier
from .rate_clients import ComparisonRatesClient, ForexRatesClient, P2PProxyClient
from .rate_resolver import RateContext, RateResolver, policies_from_settings
from .rate_sources import ComparisonRateSource, ForexRateSource, P2PRateSource
from .source_fetcher import SourceFetcher
from .throttle_store import JsonThrottleStateStore

logger = logging.getLogger(__name__)


class RefreshTrigger(StrEnum):
    AUTO = "auto"
    REFRESH = "refresh"


class SnapshotSink(Protocol):
    def persist(
        self,
        quotes: Mapping[SourceId, RateQuote],
        cost_prices: CostPriceSet,
        margins: MarginSettings,
        trigger: RefreshTrigger,
    ) -> None: ...


class MarginSettingsProvider(Protocol):
    def load(self) -> MarginSettings: ...


class StaticMarginSettingsProvider(MarginSettingsProvider):
    def __init__(self, settings: MarginSettings | None = None) -> None:
        self.settings = settings or MarginSettings()

    def load(self) -> MarginSettings:
        return self.settings


@dataclass(frozen=True)
class RefreshResult:
    updated: bool
    quotes: Mapping[SourceId, RateQuote]
    cost_prices: CostPriceSet
    previous_cost_prices: CostPriceSet = field(default_factory=CostPriceSet)


class RateEngine:
    def __init__(
        self,
        resolver: RateResolver,
        *,
        margins: MarginSettingsProvider | None = None,
        snapshot_sink: SnapshotSink | None = None,
        transfer_fee: Decimal = TRANSFER_FEE,
    ) -> None:
        self.resolver = resolver
        self.margins = margins or StaticMarginSettingsProvider()
        self.snapshot_sink = snapshot_sink
        self.transfer_fee = transfer_fee
        self.book = CostPriceBook()
        self._pending_writes: set[asyncio.Task[None]] = set()

    async def resolve_rate(
        self,
        source_id: SourceId,
        *,
        force_refresh: bool = False,
        is_constrained_client: bool = False,
    ) -> RateQuote:
        return await self.resolver.resolve(
            source_id,
            force_refresh=force_refresh,
            is_constrained_client=is_constrained_client,
        )

    def compute_cost_prices(
        self,
        base_rate: Decimal,
        fx_rates: Mapping[str, Decimal],
        margins: MarginSettings | None = None,
    ) -> CostPriceSet:
        return compute_cost_prices(
            base_rate,
            fx_rates,
            margins or self.margins.load(),
            transfer_fee=self.transfer_fee,
        )

    async def refresh_all(
        self,
        *,
        force_refresh: bool = False,
        is_constrained_client: bool = False,
        trigger: RefreshTrigger = RefreshTrigger.REFRESH,
    ) -> RefreshResult:
        source_ids = self.resolver.source_ids
        resolved = await asyncio.gather(
            *(
                self.resolver.resolve(
                    source_id,
                    force_refresh=force_refresh,
                    is_constrained_client=is_constrained_client,
                )
                for source_id in source_ids
            )
        )
        quotes = dict(zip(source_ids, resolved))
        updated = any(quote.origin is RateOrigin.LIVE for quote in quotes.values())
        return self._reprice(quotes, updated=updated, trigger=trigger)

    async def set_manual_base_rate(self, rate: Decimal | float | str) -> RefreshResult:
        """Accept a manually entered USDT/NGN rate and reprice with it.

        Invalid input raises ``ValidationError`` before any state is touched.
        """
        base_rate = validate_base_rate(rate)
        manual = RateQuote(
            source_id=SourceId.P2P,
            rates={BASE_RATE_KEY: base_rate},
            fetched_at=datetime.now(timezone.utc),
            origin=RateOrigin.LIVE,
        )
        self.resolver.accept_quote(manual)
        logger.info("Manual P2P base rate set to %s", base_rate)

        quotes = {SourceId.P2P: manual}
        for source_id in self.resolver.source_ids:
            if source_id is not SourceId.P2P:
                quotes[source_id] = await self.resolver.resolve(source_id)
        return self._reprice(quotes, updated=True, trigger=RefreshTrigger.REFRESH)

    async def aclose(self) -> None:
        await self.resolver.shutdown()
        if self._pending_writes:
            await asyncio.gather(*self._pending_writes, return_exceptions=True)

    def _reprice(
        self,
        quotes: dict[SourceId, RateQuote],
        *,
        updated: bool,
        trigger: RefreshTrigger,
    ) -> RefreshResult:
        margins = self.margins.load()
        base_quote = quotes.get(SourceId.P2P)
        fx_quote = quotes.get(SourceId.FOREX)
        fx_rates = fx_quote.single_rates() if fx_quote is not None else {}

        if base_quote is None:
            logger.warning("No P2P quote resolved, keeping previous cost prices")
            return RefreshResult(
                updated=False,
                quotes=quotes,
                cost_prices=self.book.current,
                previous_cost_prices=self.book.previous,
            )

        cost_prices = self.compute_cost_prices(base_quote.base_rate, fx_rates, margins)
        previous = self.book.replace(cost_prices)

        if updated:
            self._persist_in_background(quotes, cost_prices, margins, trigger)

        return RefreshResult(updated=updated, quotes=quotes, cost_prices=cost_prices, previous_cost_prices=previous)

    def _persist_in_background(
        self,
        quotes: Mapping[SourceId, RateQuote],
        cost_prices: CostPriceSet,
        margins: MarginSettings,
        trigger: RefreshTrigger,
    ) -> None:
        if self.snapshot_sink is None:
            return
        task = asyncio.create_task(self._persist(quotes, cost_prices, margins, trigger))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _persist(
        self,
        quotes: Mapping[SourceId, RateQuote],
        cost_prices: CostPriceSet,
        margins: MarginSettings,
        trigger: RefreshTrigger,
    ) -> None:
        assert self.snapshot_sink is not None
        try:
            await asyncio.to_thread(self.snapshot_sink.persist, quotes, cost_prices, margins, trigger)
        except Exception:
            logger.exception("Failed to persist %s rate snapshot", trigger)


class PeriodicRefresher:
    """Calls ``refresh_all`` on a fixed interval until stopped."""

    def __init__(
        self,
        engine: RateEngine,
        *,
        interval_seconds: float,
        on_result: Callable[[RefreshResult], None] | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.on_result = on_result
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="periodic-rate-refresh")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval_seconds)
            try:
                result = await self.engine.refresh_all(trigger=RefreshTrigger.AUTO)
            except Exception:
                logger.exception("Automatic rate refresh failed")
                continue
            if not result.updated:
                logger.info("Automatic refresh did not produce live rates")
            if self.on_result is not None:
                self.on_result(result)


def build_default_engine(
    settings: AppSettings | None = None,
    *,
    snapshot_sink: SnapshotSink | None = None,
    notifier: Notifier | None = None,
) -> RateEngine:
    settings = settings or config()
    throttle = AttemptThrottle(store=JsonThrottleStateStore(path=Path(settings.throttle_state_path)))
    context = RateContext(cache=ExpiringCache(), throttle=throttle)

    fetchers = {
        SourceId.P2P: SourceFetcher(
            P2PRateSource(
                client=P2PProxyClient(
                    url=settings.p2p_proxy_url,
                    api_key=settings.p2p_proxy_api_key,
                    timeout=settings.p2p_timeout,
                )
            )
        ),
        SourceId.FOREX: SourceFetcher(
            ForexRateSource(
                client=ForexRatesClient(
                    base_url=settings.forex_base_url,
                    api_key=settings.forex_api_key,
                    timeout=settings.forex_timeout,
                ),
                currencies=settings.forex_currencies,
            )
        ),
        SourceId.COMPARISON: SourceFetcher(
            ComparisonRateSource(
                client=ComparisonRatesClient(url=settings.comparison_url, timeout=settings.comparison_timeout)
            )
        ),
    }
    resolver = RateResolver(fetchers, policies_from_settings(settings), context=context, notifier=notifier)
    margins = StaticMarginSettingsProvider(
        MarginSettings(
            usd_margin_percent=settings.usd_margin_percent,
            other_currencies_margin_percent=settings.other_currencies_margin_percent,
        )
    )
    return RateEngine(resolver, margins=margins, snapshot_sink=snapshot_sink, transfer_fee=settings.transfer_fee)


__all__ = [
    "MarginSettingsProvider",
    "PeriodicRefresher",
    "RateEngine",
    "RefreshResult",
    "RefreshTrigger",
    "SnapshotSink",
    "StaticMarginSettingsProvider",
    "build_default_engine",
]
