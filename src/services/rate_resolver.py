from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Mapping

from config import AppSettings
from domain.rates import RateOrigin, RateQuote, SourceId, default_quote

from .attempt_throttle import AttemptThrottle
from .errors import RateFetchError
from .expiring_cache import ExpiringCache
from .notifications import LoggingNotifier, NotificationKind, Notifier
from .retry import with_retry
from .source_fetcher import SourceFetcher, quote_is_usable

logger = logging.getLogger(__name__)

SOURCE_LABELS = {
    SourceId.P2P: "P2P rate",
    SourceId.FOREX: "Forex rates",
    SourceId.COMPARISON: "Market comparison rates",
}


@dataclass(frozen=True)
class SourcePolicy:
    cache_ttl: float
    cooldown: float
    timeout: float
    constrained_timeout: float
    constrained_cache_ttl: float | None = None
    retry_attempts: int = 1
    retry_delay: float = 0.0

    def ttl_for(self, constrained: bool) -> float:
        if constrained and self.constrained_cache_ttl is not None:
            return self.constrained_cache_ttl
        return self.cache_ttl


def policies_from_settings(settings: AppSettings) -> dict[SourceId, SourcePolicy]:
    return {
        SourceId.P2P: SourcePolicy(
            cache_ttl=settings.p2p_cache_ttl,
            cooldown=settings.p2p_cooldown,
            timeout=settings.p2p_timeout,
            constrained_timeout=settings.p2p_constrained_timeout,
            retry_attempts=settings.p2p_retry_attempts,
            retry_delay=settings.p2p_retry_delay,
        ),
        SourceId.FOREX: SourcePolicy(
            cache_ttl=settings.forex_cache_ttl,
            cooldown=settings.forex_cooldown,
            timeout=settings.forex_timeout,
            constrained_timeout=settings.forex_constrained_timeout,
        ),
        SourceId.COMPARISON: SourcePolicy(
            cache_ttl=settings.comparison_cache_ttl,
            cooldown=settings.comparison_cooldown,
            timeout=settings.comparison_timeout,
            constrained_timeout=settings.comparison_constrained_timeout,
            constrained_cache_ttl=settings.comparison_constrained_cache_ttl,
        ),
    }


@dataclass(frozen=True)
class SourceState:
    """Per-source outcome cell. Always replaced whole, never edited in place."""

    last_known_good: RateQuote | None = None
    settled_ticket: int = 0
    failing: bool = False


@dataclass
class RateContext:
    """Process-wide resolution state, owned by one resolver and passed explicitly."""

    cache: ExpiringCache[SourceId, RateQuote] = field(default_factory=ExpiringCache)
    throttle: AttemptThrottle = field(default_factory=AttemptThrottle)
    states: dict[SourceId, SourceState] = field(default_factory=dict)
    background: set[asyncio.Task[RateQuote]] = field(default_factory=set)
    in_flight: dict[SourceId, asyncio.Task[RateQuote]] = field(default_factory=dict)
    _tickets: itertools.count = field(default_factory=lambda: itertools.count(1))

    def state(self, source_id: SourceId) -> SourceState:
        return self.states.get(source_id, SourceState())

    def next_ticket(self) -> int:
        return next(self._tickets)

    def settle(self, source_id: SourceId, ticket: int, **changes: object) -> bool:
        """Apply an attempt outcome unless a newer attempt has already settled."""
        current = self.state(source_id)
        if ticket <= current.settled_ticket:
            return False
        self.states[source_id] = replace(current, settled_ticket=ticket, **changes)
        return True

    def last_known_good(self, source_id: SourceId) -> RateQuote | None:
        return self.state(source_id).last_known_good


class RateResolver:
    """Resolves one source through cache, cooldown, live fetch and fallbacks.

    Resolution never raises for upstream trouble: the worst case is the
    hardcoded default quote plus a user notification.
    """

    def __init__(
        self,
        fetchers: Mapping[SourceId, SourceFetcher],
        policies: Mapping[SourceId, SourcePolicy],
        *,
        context: RateContext | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        missing = set(fetchers) - set(policies)
        if missing:
            msg = f"No policy configured for {', '.join(sorted(missing))}"
            raise ValueError(msg)
        self._fetchers = dict(fetchers)
        self._policies = dict(policies)
        self.context = context or RateContext(
            cache=ExpiringCache(clock=clock),
            throttle=AttemptThrottle(clock=clock),
        )
        self._notifier = notifier or LoggingNotifier()
        self._sleep = sleep

    @property
    def source_ids(self) -> list[SourceId]:
        return list(self._fetchers)

    async def resolve(
        self,
        source_id: SourceId,
        *,
        force_refresh: bool = False,
        is_constrained_client: bool = False,
    ) -> RateQuote:
        policy = self._policies[source_id]
        context = self.context

        if not force_refresh:
            cached = context.cache.get(source_id)
            if cached is not None:
                logger.debug("Serving cached %s", source_id)
                return cached.with_origin(RateOrigin.CACHE)

        if is_constrained_client:
            immediate = self._immediate_value(source_id)
            if immediate is not None:
                self._spawn_background_refresh(source_id, policy, force_refresh)
                return immediate

        if not context.throttle.should_attempt(source_id, policy.cooldown, forced=force_refresh):
            pending = context.in_flight.get(source_id)
            if pending is not None:
                logger.debug("Joining in-flight %s attempt", source_id)
                if is_constrained_client:
                    try:
                        quote = await asyncio.wait_for(asyncio.shield(pending), policy.constrained_timeout)
                    except TimeoutError:
                        logger.debug("In-flight %s attempt outlasted the constrained timeout", source_id)
                        return self._fallback(source_id)
                else:
                    quote = await asyncio.shield(pending)
                return quote.with_origin(RateOrigin.CACHE) if quote.origin is RateOrigin.LIVE else quote
            logger.debug("Cooldown active for %s, skipping live fetch", source_id)
            return self._fallback(source_id)

        if is_constrained_client:
            attempt = self._launch_attempt(
                source_id,
                timeout=policy.constrained_timeout,
                attempts=1,
                ttl=policy.ttl_for(True),
                forced=force_refresh,
            )
        else:
            attempt = self._launch_attempt(
                source_id,
                timeout=policy.timeout,
                attempts=policy.retry_attempts,
                ttl=policy.ttl_for(False),
                forced=force_refresh,
            )
        # A caller that stops waiting does not cancel the shared attempt.
        return await asyncio.shield(attempt)

    def accept_quote(self, quote: RateQuote) -> None:
        """Adopt an externally supplied quote, e.g. a manually entered rate, as the newest value."""
        source_id = quote.source_id
        self.context.settle(source_id, self.context.next_ticket(), last_known_good=quote, failing=False)
        self.context.cache.set(source_id, quote, self._policies[source_id].cache_ttl)

    async def shutdown(self) -> None:
        tasks = set(self.context.background) | set(self.context.in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.context.background.clear()
        self.context.in_flight.clear()

    def _immediate_value(self, source_id: SourceId) -> RateQuote | None:
        cached = self.context.cache.get(source_id)
        if cached is not None:
            return cached.with_origin(RateOrigin.CACHE)
        last_good = self.context.last_known_good(source_id)
        if last_good is not None:
            return last_good.with_origin(RateOrigin.LAST_KNOWN_GOOD)
        return None

    def _spawn_background_refresh(self, source_id: SourceId, policy: SourcePolicy, forced: bool) -> None:
        if not self.context.throttle.should_attempt(source_id, policy.cooldown, forced=forced):
            return
        task = self._launch_attempt(
            source_id,
            timeout=policy.constrained_timeout,
            attempts=1,
            ttl=policy.ttl_for(True),
            forced=forced,
        )
        self.context.background.add(task)
        task.add_done_callback(self.context.background.discard)
        logger.debug("Spawned background refresh for %s", source_id)

    def _launch_attempt(
        self,
        source_id: SourceId,
        *,
        timeout: float,
        attempts: int,
        ttl: float,
        forced: bool,
    ) -> asyncio.Task[RateQuote]:
        # Recorded before the network call so overlapping resolutions see the cooldown.
        self.context.throttle.record_attempt(source_id)
        ticket = self.context.next_ticket()
        task = asyncio.create_task(
            self._run_attempt(source_id, ticket, timeout=timeout, attempts=attempts, ttl=ttl, forced=forced),
            name=f"rate-attempt-{source_id}-{ticket}",
        )
        in_flight = self.context.in_flight
        in_flight[source_id] = task

        def _release(finished: asyncio.Task[RateQuote]) -> None:
            if in_flight.get(source_id) is finished:
                del in_flight[source_id]

        task.add_done_callback(_release)
        return task

    async def _run_attempt(
        self,
        source_id: SourceId,
        ticket: int,
        *,
        timeout: float,
        attempts: int,
        ttl: float,
        forced: bool,
    ) -> RateQuote:
        fetcher = self._fetchers[source_id]
        try:
            if attempts > 1:
                policy = self._policies[source_id]
                quote = await with_retry(
                    lambda: fetcher.fetch(timeout),
                    attempts,
                    policy.retry_delay,
                    is_valid=quote_is_usable,
                    sleep=self._sleep,
                    label=f"{source_id} fetch",
                )
            else:
                quote = await fetcher.fetch(timeout)
        except RateFetchError as exc:
            return self._on_failure(source_id, ticket, exc)

        if not self._on_success(source_id, ticket, quote, ttl=ttl, forced=forced):
            return self._current_value(source_id)
        return quote

    def _on_success(self, source_id: SourceId, ticket: int, quote: RateQuote, *, ttl: float, forced: bool) -> bool:
        was_failing = self.context.state(source_id).failing
        if not self.context.settle(source_id, ticket, last_known_good=quote, failing=False):
            logger.debug("Discarding superseded %s result (attempt %d)", source_id, ticket)
            return False
        self.context.cache.set(source_id, quote, ttl)
        logger.info("Fetched live %s", source_id)

        label = SOURCE_LABELS.get(source_id, str(source_id))
        if was_failing:
            self._notify(NotificationKind.SUCCESS, f"{label} connection restored")
        elif forced:
            self._notify(NotificationKind.SUCCESS, f"{label} refreshed")
        return True

    def _on_failure(self, source_id: SourceId, ticket: int, exc: RateFetchError) -> RateQuote:
        if not self.context.settle(source_id, ticket, failing=True):
            logger.debug("Ignoring superseded %s failure (attempt %d): %s", source_id, ticket, exc)
            return self._current_value(source_id)
        fallback = self._fallback(source_id)

        label = SOURCE_LABELS.get(source_id, str(source_id))
        if fallback.origin is RateOrigin.LAST_KNOWN_GOOD:
            logger.warning("Live %s fetch failed (%s), serving last known good value", source_id, exc)
            self._notify(NotificationKind.WARNING, f"{label} unavailable, showing last known values")
        else:
            logger.warning("Live %s fetch failed (%s), serving default value", source_id, exc)
            self._notify(NotificationKind.ERROR, f"{label} unavailable, showing default values")
        return fallback

    def _current_value(self, source_id: SourceId) -> RateQuote:
        """Value settled by the newer attempt that superseded the caller's own."""
        cached = self.context.cache.get(source_id)
        if cached is not None:
            return cached.with_origin(RateOrigin.CACHE)
        last_good = self.context.last_known_good(source_id)
        if last_good is not None:
            return last_good.with_origin(RateOrigin.CACHE)
        return default_quote(source_id)

    def _fallback(self, source_id: SourceId) -> RateQuote:
        last_good = self.context.last_known_good(source_id)
        if last_good is not None:
            return last_good.with_origin(RateOrigin.LAST_KNOWN_GOOD)
        return default_quote(source_id)

    def _notify(self, kind: NotificationKind, message: str) -> None:
        try:
            self._notifier.notify(kind, message)
        except Exception:
            logger.exception("Notifier failed to deliver %s message", kind)


__all__ = [
    "RateContext",
    "RateResolver",
    "SourcePolicy",
    "SourceState",
    "policies_from_settings",
]
