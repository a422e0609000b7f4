from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Awaitable, Callable

from domain.rates import BuySellPair, RateQuote, SourceId

from .errors import FetchTimeoutError, InvalidResponseError, NetworkError, RateFetchError
from .rate_sources import RateSource

logger = logging.getLogger(__name__)

BlockingRunner = Callable[[Callable[[], RateQuote]], Awaitable[RateQuote]]


def quote_is_usable(quote: RateQuote) -> bool:
    """At least one positive value and nothing negative."""
    values: list[Decimal] = []
    for value in quote.rates.values():
        if isinstance(value, BuySellPair):
            values.extend((value.buy, value.sell))
        else:
            values.append(value)
    return bool(values) and all(value >= 0 for value in values) and any(value > 0 for value in values)


class SourceFetcher:
    """Runs one blocking upstream call in a worker thread, raced against a timer.

    When the timer wins the worker is abandoned rather than killed: its
    eventual outcome is consumed and logged but never returned.
    """

    def __init__(self, source: RateSource, *, run_blocking: BlockingRunner | None = None) -> None:
        self.source = source
        self._run_blocking = run_blocking or asyncio.to_thread
        self.abandoned_count = 0

    @property
    def source_id(self) -> SourceId:
        return self.source.source_id

    async def fetch(self, timeout_seconds: float) -> RateQuote:
        worker = asyncio.ensure_future(self._run_blocking(self.source.fetch_quote))
        wanted = True
        try:
            done, _ = await asyncio.wait({worker}, timeout=timeout_seconds)
            if worker not in done:
                raise FetchTimeoutError(f"{self.source_id} request timed out after {timeout_seconds:g}s")
            wanted = False
            quote = self._unwrap(worker)
        finally:
            if wanted:
                self._abandon(worker)

        if quote.source_id != self.source_id:
            raise InvalidResponseError(
                f"{self.source_id} fetcher received a quote for {quote.source_id}",
                payload=quote,
            )
        if not quote_is_usable(quote):
            raise InvalidResponseError(f"{self.source_id} returned no usable rate values", payload=quote)
        return quote

    def _unwrap(self, worker: asyncio.Future[RateQuote]) -> RateQuote:
        try:
            return worker.result()
        except RateFetchError:
            raise
        except Exception as exc:
            raise NetworkError(f"{self.source_id} request failed: {exc}") from exc

    def _abandon(self, worker: asyncio.Future[RateQuote]) -> None:
        self.abandoned_count += 1
        source_id = self.source_id

        def _discard(finished: asyncio.Future[RateQuote]) -> None:
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is None:
                logger.debug("Discarding late %s response that arrived after timeout", source_id)
            else:
                logger.debug("Late %s request failed after timeout: %s", source_id, exc)

        worker.add_done_callback(_discard)


__all__ = ["SourceFetcher", "quote_is_usable"]
