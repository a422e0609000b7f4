from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import DateTime, ForeignKey, String, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator


class DecimalAsString(TypeDecorator):
    impl = String
    cache_ok = True

    def process_bind_param(self, value: Decimal | None, dialect: object) -> str | None:
        if value is None:
            return None
        return str(value)

    def process_result_value(self, value: str | None, dialect: object) -> Decimal | None:
        if value is None:
            return None
        return Decimal(value)


class Base(DeclarativeBase):
    pass


class RateSnapshotOrm(Base):
    __tablename__ = "rate_snapshots"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    trigger: Mapped[str] = mapped_column(String, nullable=False)
    base_rate: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    base_rate_origin: Mapped[str] = mapped_column(String, nullable=False)
    fx_origin: Mapped[str | None] = mapped_column(String, nullable=True)
    usd_margin_percent: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    other_currencies_margin_percent: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)

    prices: Mapped[list["RateSnapshotPriceOrm"]] = relationship(
        cascade="all, delete-orphan", back_populates="snapshot", lazy="joined"
    )


class RateSnapshotPriceOrm(Base):
    __tablename__ = "rate_snapshot_prices"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    snapshot_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("rate_snapshots.id"), nullable=False)
    currency: Mapped[str] = mapped_column(String, nullable=False)
    fx_rate: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    cost_price: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)

    snapshot: Mapped[RateSnapshotOrm] = relationship(back_populates="prices")
