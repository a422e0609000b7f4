from __future__ import annotations

import asyncio
import time
from decimal import Decimal

import pytest

from config import AppSettings
from domain.rates import RateOrigin, SourceId
from services.errors import NetworkError
from services.notifications import NotificationKind
from services.rate_resolver import RateContext, RateResolver, SourcePolicy, policies_from_settings
from services.rate_sources import RateSource
from services.source_fetcher import SourceFetcher
from tests.helpers.fakes import (
    BlockingSource,
    FakeClock,
    RecordingNotifier,
    ScriptedSource,
    comparison_quote,
    forex_quote,
    no_sleep,
    p2p_quote,
)

POLICY = SourcePolicy(
    cache_ttl=60,
    cooldown=30,
    timeout=2,
    constrained_timeout=2,
    constrained_cache_ttl=120,
    retry_attempts=2,
    retry_delay=2,
)


def _resolver(clock: FakeClock, notifier: RecordingNotifier, *sources: RateSource) -> RateResolver:
    fetchers = {source.source_id: SourceFetcher(source) for source in sources}
    return RateResolver(
        fetchers,
        {source_id: POLICY for source_id in fetchers},
        notifier=notifier,
        clock=clock,
        sleep=no_sleep,
    )


def test_second_resolution_is_served_from_cache(clock: FakeClock, notifier: RecordingNotifier) -> None:
    source = ScriptedSource(SourceId.P2P, [p2p_quote("1500")])
    resolver = _resolver(clock, notifier, source)

    async def scenario():
        first = await resolver.resolve(SourceId.P2P)
        clock.advance(59)
        second = await resolver.resolve(SourceId.P2P)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.origin == RateOrigin.LIVE
    assert second.origin == RateOrigin.CACHE
    assert second.base_rate == Decimal("1500")
    assert source.calls == 1
    assert notifier.messages == []


def test_expired_cache_triggers_new_fetch(clock: FakeClock, notifier: RecordingNotifier) -> None:
    source = ScriptedSource(SourceId.P2P, [p2p_quote("1500"), p2p_quote("1510")])
    resolver = _resolver(clock, notifier, source)

    async def scenario():
        await resolver.resolve(SourceId.P2P)
        clock.advance(61)
        return (await resolver.resolve(SourceId.P2P)).base_rate

    assert asyncio.run(scenario()) == Decimal("1510")
    assert source.calls == 2


def test_total_failure_serves_default_with_error_notice(clock: FakeClock, notifier: RecordingNotifier) -> None:
    source = ScriptedSource(SourceId.P2P, [NetworkError("down")])
    resolver = _resolver(clock, notifier, source)

    quote = asyncio.run(resolver.resolve(SourceId.P2P))

    assert quote.origin == RateOrigin.DEFAULT
    assert quote.base_rate == Decimal("1450")
    assert source.calls == 2
    assert notifier.kinds == [NotificationKind.ERROR]


def test_cooldown_blocks_fetch_and_serves_fallback(clock: FakeClock, notifier: RecordingNotifier) -> None:
    source = ScriptedSource(SourceId.P2P, [NetworkError("down")])
    resolver = _resolver(clock, notifier, source)

    async def scenario():
        first = await resolver.resolve(SourceId.P2P)
        clock.advance(10)
        second = await resolver.resolve(SourceId.P2P)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.origin == second.origin == RateOrigin.DEFAULT
    assert source.calls == 2
    assert notifier.kinds == [NotificationKind.ERROR]


def test_failure_after_success_serves_last_known_good(clock: FakeClock, notifier: RecordingNotifier) -> None:
    source = ScriptedSource(SourceId.FOREX, [forex_quote(EUR="0.91"), NetworkError("down")])
    resolver = _resolver(clock, notifier, source)

    async def scenario():
        await resolver.resolve(SourceId.FOREX)
        clock.advance(61)
        return await resolver.resolve(SourceId.FOREX)

    quote = asyncio.run(scenario())

    assert quote.origin == RateOrigin.LAST_KNOWN_GOOD
    assert quote.rate("EUR") == Decimal("0.91")
    assert notifier.kinds == [NotificationKind.WARNING]


def test_recovery_emits_single_success_notice(clock: FakeClock, notifier: RecordingNotifier) -> None:
    source = ScriptedSource(SourceId.P2P, [NetworkError("a"), NetworkError("b"), p2p_quote("1490")])
    resolver = _resolver(clock, notifier, source)

    async def scenario():
        await resolver.resolve(SourceId.P2P)
        clock.advance(31)
        recovered = await resolver.resolve(SourceId.P2P)
        clock.advance(61)
        await resolver.resolve(SourceId.P2P)
        return recovered

    recovered = asyncio.run(scenario())

    assert recovered.origin == RateOrigin.LIVE
    assert notifier.kinds == [NotificationKind.ERROR, NotificationKind.SUCCESS]
    assert "restored" in notifier.messages[-1][1]


def test_force_refresh_bypasses_cache_and_cooldown(clock: FakeClock, notifier: RecordingNotifier) -> None:
    source = ScriptedSource(SourceId.P2P, [p2p_quote("1500"), p2p_quote("1520")])
    resolver = _resolver(clock, notifier, source)

    async def scenario():
        await resolver.resolve(SourceId.P2P)
        return await resolver.resolve(SourceId.P2P, force_refresh=True)

    quote = asyncio.run(scenario())

    assert quote.origin == RateOrigin.LIVE
    assert quote.base_rate == Decimal("1520")
    assert source.calls == 2
    assert notifier.kinds == [NotificationKind.SUCCESS]


def test_zero_priced_comparison_is_failure(clock: FakeClock, notifier: RecordingNotifier) -> None:
    source = ScriptedSource(SourceId.COMPARISON, [comparison_quote(USD=("0", "0"))])
    resolver = _resolver(clock, notifier, source)

    quote = asyncio.run(resolver.resolve(SourceId.COMPARISON))

    assert quote.origin == RateOrigin.DEFAULT
    assert quote.pair("USD").buy == Decimal("1635")
    assert source.calls == 2


def test_concurrent_resolutions_issue_one_attempt(clock: FakeClock, notifier: RecordingNotifier) -> None:
    source = ScriptedSource(SourceId.P2P, [p2p_quote("1500")])
    resolver = _resolver(clock, notifier, source)

    async def scenario():
        return await asyncio.gather(resolver.resolve(SourceId.P2P), resolver.resolve(SourceId.P2P))

    first, second = asyncio.run(scenario())

    assert source.calls == 1
    assert first.origin == RateOrigin.LIVE
    assert second.origin == RateOrigin.CACHE
    assert first.base_rate == second.base_rate == Decimal("1500")
    assert resolver.context.in_flight == {}


def test_cooldown_without_in_flight_attempt_does_not_wait(clock: FakeClock, notifier: RecordingNotifier) -> None:
    source = ScriptedSource(SourceId.P2P, [p2p_quote("1500")])
    resolver = _resolver(clock, notifier, source)
    resolver.context.throttle.record_attempt(SourceId.P2P)

    quote = asyncio.run(resolver.resolve(SourceId.P2P))

    assert quote.origin == RateOrigin.DEFAULT
    assert source.calls == 0


def test_constrained_client_gets_immediate_value_and_background_refresh(
    clock: FakeClock, notifier: RecordingNotifier
) -> None:
    source = ScriptedSource(
        SourceId.COMPARISON,
        [comparison_quote(USD=("1600", "1550")), comparison_quote(USD=("1700", "1650"))],
    )
    resolver = _resolver(clock, notifier, source)

    async def scenario():
        await resolver.resolve(SourceId.COMPARISON)
        clock.advance(61)
        immediate = await resolver.resolve(SourceId.COMPARISON, is_constrained_client=True)
        await asyncio.gather(*resolver.context.background)
        refreshed = await resolver.resolve(SourceId.COMPARISON, is_constrained_client=True)
        return immediate, refreshed

    immediate, refreshed = asyncio.run(scenario())

    assert immediate.origin == RateOrigin.LAST_KNOWN_GOOD
    assert immediate.pair("USD").buy == Decimal("1600")
    assert refreshed.origin == RateOrigin.CACHE
    assert refreshed.pair("USD").buy == Decimal("1700")
    assert source.calls == 2


def test_constrained_client_without_value_makes_single_attempt(
    clock: FakeClock, notifier: RecordingNotifier
) -> None:
    source = ScriptedSource(SourceId.P2P, [NetworkError("down")])
    resolver = _resolver(clock, notifier, source)

    quote = asyncio.run(resolver.resolve(SourceId.P2P, is_constrained_client=True))

    assert quote.origin == RateOrigin.DEFAULT
    assert source.calls == 1


def test_superseded_background_result_is_discarded(clock: FakeClock, notifier: RecordingNotifier) -> None:
    source = BlockingSource(SourceId.P2P, p2p_quote("1500"))
    resolver = _resolver(clock, notifier, source)

    async def scenario():
        resolver.accept_quote(p2p_quote("1400"))
        clock.advance(61)
        immediate = await resolver.resolve(SourceId.P2P, is_constrained_client=True)
        await asyncio.to_thread(source.started.wait, 1)

        resolver.accept_quote(p2p_quote("1600"))
        source.release.set()
        await asyncio.gather(*resolver.context.background)
        return immediate

    immediate = asyncio.run(scenario())

    assert immediate.base_rate == Decimal("1400")
    last_good = resolver.context.last_known_good(SourceId.P2P)
    assert last_good is not None
    assert last_good.base_rate == Decimal("1600")


def test_settle_rejects_stale_tickets() -> None:
    context = RateContext()
    older, newer = context.next_ticket(), context.next_ticket()

    assert context.settle(SourceId.P2P, newer, failing=True)
    assert not context.settle(SourceId.P2P, older, failing=False)
    assert context.state(SourceId.P2P).failing is True


def test_failing_notifier_does_not_break_resolution(clock: FakeClock) -> None:
    class _Broken:
        def notify(self, kind: NotificationKind, message: str) -> None:
            raise RuntimeError("toast queue full")

    source = ScriptedSource(SourceId.P2P, [NetworkError("down")])
    resolver = RateResolver(
        {SourceId.P2P: SourceFetcher(source)},
        {SourceId.P2P: POLICY},
        notifier=_Broken(),
        clock=clock,
        sleep=no_sleep,
    )

    assert asyncio.run(resolver.resolve(SourceId.P2P)).origin == RateOrigin.DEFAULT


def test_missing_policy_is_rejected() -> None:
    source = ScriptedSource(SourceId.P2P, [p2p_quote("1500")])

    with pytest.raises(ValueError):
        RateResolver({SourceId.P2P: SourceFetcher(source)}, {})


def test_policies_from_settings() -> None:
    policies = policies_from_settings(AppSettings(_env_file=None))

    assert policies[SourceId.P2P].retry_attempts == 2
    assert policies[SourceId.P2P].ttl_for(True) == 30
    assert policies[SourceId.COMPARISON].ttl_for(False) == 300
    assert policies[SourceId.COMPARISON].ttl_for(True) == 600
    assert policies[SourceId.FOREX].cache_ttl == 1800


def test_constrained_client_joining_slow_attempt_is_bounded_by_short_timeout(
    clock: FakeClock, notifier: RecordingNotifier
) -> None:
    source = BlockingSource(SourceId.P2P, p2p_quote("1500"))
    policy = SourcePolicy(cache_ttl=60, cooldown=30, timeout=5, constrained_timeout=0.1)
    resolver = RateResolver(
        {SourceId.P2P: SourceFetcher(source)},
        {SourceId.P2P: policy},
        notifier=notifier,
        clock=clock,
        sleep=no_sleep,
    )

    async def scenario():
        normal = asyncio.ensure_future(resolver.resolve(SourceId.P2P))
        await asyncio.to_thread(source.started.wait, 1)

        started = time.monotonic()
        constrained = await resolver.resolve(SourceId.P2P, is_constrained_client=True)
        elapsed = time.monotonic() - started

        source.release.set()
        return constrained, elapsed, await normal

    constrained, elapsed, live = asyncio.run(scenario())

    assert elapsed < 1.0
    assert constrained.origin == RateOrigin.DEFAULT
    assert live.origin == RateOrigin.LIVE
    assert live.base_rate == Decimal("1500")
    assert source.calls == 1


def test_superseded_foreground_caller_gets_newer_value(clock: FakeClock, notifier: RecordingNotifier) -> None:
    source = BlockingSource(SourceId.P2P, p2p_quote("1500"))
    resolver = _resolver(clock, notifier, source)

    async def scenario():
        pending = asyncio.ensure_future(resolver.resolve(SourceId.P2P))
        await asyncio.to_thread(source.started.wait, 1)

        resolver.accept_quote(p2p_quote("1600"))
        source.release.set()
        return await pending

    quote = asyncio.run(scenario())

    assert quote.base_rate == Decimal("1600")
    assert quote.origin == RateOrigin.CACHE
    last_good = resolver.context.last_known_good(SourceId.P2P)
    assert last_good is not None
    assert last_good.base_rate == Decimal("1600")
