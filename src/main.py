from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Sequence

from config import config
from db.db import init_db
from db.repositories import RateSnapshotRepository
from domain.pricing import compare_rates, percent_difference
from domain.rates import BuySellPair, SourceId
from services.rate_engine import PeriodicRefresher, RateEngine, RefreshResult, build_default_engine

logger = logging.getLogger(__name__)


def render_result(result: RefreshResult) -> str:
    lines = [f"Updated from live sources: {'yes' if result.updated else 'no'}", ""]

    lines.append("Rates:")
    for source_id, quote in result.quotes.items():
        rendered = ", ".join(
            f"{code} {value.buy}/{value.sell}" if isinstance(value, BuySellPair) else f"{code} {value}"
            for code, value in quote.rates.items()
        )
        lines.append(f"  {source_id:<11} [{quote.origin}] {rendered}")

    lines.append("")
    lines.append("Cost prices (NGN):")
    comparison = result.quotes.get(SourceId.COMPARISON)
    for currency, price in sorted(result.cost_prices.prices.items()):
        previous = result.previous_cost_prices.prices.get(currency)
        line = f"  {currency}: {price:.2f}"
        if previous is not None and previous != price:
            line += f" (was {previous:.2f})"
        pair = comparison.rates.get(currency) if comparison is not None else None
        if isinstance(pair, BuySellPair) and pair.buy > 0:
            better = compare_rates(price, pair.buy, is_buy=True)
            diff = percent_difference(price, pair.buy)
            line += f" | vs market buy {pair.buy}: {diff:+.2f}% ({'better' if better else 'worse'})"
        lines.append(line)
    return "\n".join(lines)


async def run_once(engine: RateEngine, *, force_refresh: bool, constrained: bool) -> None:
    try:
        result = await engine.refresh_all(force_refresh=force_refresh, is_constrained_client=constrained)
        print(render_result(result))
    finally:
        await engine.aclose()


async def run_forever(engine: RateEngine, *, interval: float, force_refresh: bool, constrained: bool) -> None:
    refresher = PeriodicRefresher(engine, interval_seconds=interval, on_result=lambda r: print(render_result(r)))
    try:
        result = await engine.refresh_all(force_refresh=force_refresh, is_constrained_client=constrained)
        print(render_result(result))
        refresher.start()
        await asyncio.Event().wait()
    finally:
        await refresher.stop()
        await engine.aclose()


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    settings = config()
    parser = argparse.ArgumentParser(description="Resolve exchange rates and compute NGN cost prices.")
    parser.add_argument("--once", action="store_true", help="Refresh once and exit instead of polling.")
    parser.add_argument("--force", action="store_true", help="Bypass cache and cooldown for the first refresh.")
    parser.add_argument(
        "--constrained",
        action="store_true",
        help="Behave like a low-bandwidth client: serve known values and refresh in the background.",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.refresh_interval,
        help=f"Seconds between automatic refreshes (default: {settings.refresh_interval:g}).",
    )
    parser.add_argument(
        "--database-url",
        default=settings.database_url,
        help="SQLAlchemy URL for the rate history (default from settings).",
    )
    parser.add_argument("--no-history", action="store_true", help="Do not persist refresh snapshots.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    snapshot_sink = None if args.no_history else RateSnapshotRepository(init_db(args.database_url))
    engine = build_default_engine(snapshot_sink=snapshot_sink)

    try:
        if args.once:
            asyncio.run(run_once(engine, force_refresh=args.force, constrained=args.constrained))
        else:
            asyncio.run(
                run_forever(engine, interval=args.interval, force_refresh=args.force, constrained=args.constrained)
            )
    except KeyboardInterrupt:
        logger.info("Stopped")


if __name__ == "__main__":
    main()
