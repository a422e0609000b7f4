from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Mapping
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from db import models
from domain.pricing import CostPriceSet, MarginSettings
from domain.rates import RateQuote, SourceId


@dataclass(frozen=True)
class SnapshotPrice:
    currency: str
    fx_rate: Decimal | None
    cost_price: Decimal


@dataclass(frozen=True)
class RateSnapshot:
    id: UUID
    created_at: datetime
    trigger: str
    base_rate: Decimal
    base_rate_origin: str
    fx_origin: str | None
    margins: MarginSettings
    prices: list[SnapshotPrice]

    def cost_price(self, currency: str) -> Decimal | None:
        for price in self.prices:
            if price.currency == currency.upper():
                return price.cost_price
        return None


class RateSnapshotRepository:
    """Historical log of refreshes; one row per persisted refresh plus one per priced currency."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._session_factory = session_factory
        self._now = now

    def persist(
        self,
        quotes: Mapping[SourceId, RateQuote],
        cost_prices: CostPriceSet,
        margins: MarginSettings,
        trigger: str,
    ) -> RateSnapshot:
        base_quote = quotes[SourceId.P2P]
        fx_quote = quotes.get(SourceId.FOREX)
        fx_rates = fx_quote.single_rates() if fx_quote is not None else {}

        orm_snapshot = models.RateSnapshotOrm(
            created_at=self._now(),
            trigger=str(trigger),
            base_rate=base_quote.base_rate,
            base_rate_origin=str(base_quote.origin),
            fx_origin=str(fx_quote.origin) if fx_quote is not None else None,
            usd_margin_percent=margins.usd_margin_percent,
            other_currencies_margin_percent=margins.other_currencies_margin_percent,
        )
        orm_snapshot.prices = [
            models.RateSnapshotPriceOrm(
                currency=currency,
                fx_rate=fx_rates.get(currency),
                cost_price=cost_price,
            )
            for currency, cost_price in sorted(cost_prices.prices.items())
        ]

        with self._session_factory() as session:
            session.add(orm_snapshot)
            session.commit()
            session.refresh(orm_snapshot)
            return self._to_domain(orm_snapshot)

    def list(self, limit: int | None = None) -> list[RateSnapshot]:
        with self._session_factory() as session:
            query = session.query(models.RateSnapshotOrm).order_by(models.RateSnapshotOrm.created_at.desc())
            if limit is not None:
                query = query.limit(limit)
            return [self._to_domain(snapshot) for snapshot in query.all()]

    @staticmethod
    def _to_domain(orm_snapshot: models.RateSnapshotOrm) -> RateSnapshot:
        created_at = orm_snapshot.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)

        return RateSnapshot(
            id=orm_snapshot.id,
            created_at=created_at,
            trigger=orm_snapshot.trigger,
            base_rate=orm_snapshot.base_rate,
            base_rate_origin=orm_snapshot.base_rate_origin,
            fx_origin=orm_snapshot.fx_origin,
            margins=MarginSettings(
                usd_margin_percent=orm_snapshot.usd_margin_percent,
                other_currencies_margin_percent=orm_snapshot.other_currencies_margin_percent,
            ),
            prices=[
                SnapshotPrice(currency=price.currency, fx_rate=price.fx_rate, cost_price=price.cost_price)
                for price in sorted(orm_snapshot.prices, key=lambda price: price.currency)
            ],
        )


__all__ = ["RateSnapshot", "RateSnapshotRepository", "SnapshotPrice"]
