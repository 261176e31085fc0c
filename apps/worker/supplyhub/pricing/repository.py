from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from supplyhub.core.clock import as_utc, utcnow
from supplyhub.core.errors import DataIncompleteError
from supplyhub.pricing.models import GridSubscription, SpotPrice, Tariff, TariffRate, TariffType
from supplyhub.settlement.engine import PricePoint
from supplyhub.settlement.formula import RateCard, RateSegment, SubscriptionSegment, TariffSchedule


logger = logging.getLogger("supplyhub.pricing")


class PricingRepository:
    def store_spot_prices(self, session: Session, price_area: str, points: Sequence[PricePoint]) -> int:
        """Upsert spot prices keyed by (area, timestamp); returns the number of new rows. The caller commits."""
        if not points:
            return 0
        by_timestamp = {as_utc(point.timestamp): point for point in points}
        existing = {
            as_utc(row.timestamp): row
            for row in session.scalars(
                select(SpotPrice).where(SpotPrice.price_area == price_area, SpotPrice.timestamp.in_(list(by_timestamp)))
            )
        }
        inserted = 0
        for timestamp, point in by_timestamp.items():
            row = existing.get(timestamp)
            if row is None:
                session.add(
                    SpotPrice(
                        price_area=price_area,
                        timestamp=timestamp,
                        resolution=point.resolution,
                        price_per_kwh=point.price_per_kwh,
                    )
                )
                inserted += 1
            else:
                row.price_per_kwh = point.price_per_kwh
                row.resolution = point.resolution
                row.received_at = utcnow()
                session.add(row)
        session.flush()
        return inserted

    def get_spot_prices(self, session: Session, price_area: str, start: datetime, end: datetime) -> list[PricePoint]:
        rows = session.scalars(
            select(SpotPrice)
            .where(
                SpotPrice.price_area == price_area,
                SpotPrice.timestamp >= as_utc(start),
                SpotPrice.timestamp < as_utc(end),
            )
            .order_by(SpotPrice.timestamp)
        )
        return [
            PricePoint(timestamp=as_utc(row.timestamp), price_per_kwh=Decimal(row.price_per_kwh), resolution=row.resolution)
            for row in rows
        ]

    def average_spot_price(self, session: Session, price_area: str, start: datetime, end: datetime) -> Decimal | None:
        value = session.scalar(
            select(func.avg(SpotPrice.price_per_kwh)).where(
                SpotPrice.price_area == price_area,
                SpotPrice.timestamp >= as_utc(start),
                SpotPrice.timestamp < as_utc(end),
            )
        )
        return Decimal(str(value)) if value is not None else None

    def replace_tariff(
        self,
        session: Session,
        *,
        tariff_type: TariffType,
        grid_area: str | None,
        valid_from: date,
        valid_to: date | None,
        flat_rate: Decimal | None = None,
        hourly_rates: Sequence[Decimal] | None = None,
        source_message_id: str | None = None,
    ) -> Tariff:
        """Store a tariff version, truncating the open-ended version it supersedes. The caller commits."""
        previous = session.scalars(
            select(Tariff).where(
                Tariff.tariff_type == tariff_type,
                Tariff.grid_area.is_(None) if grid_area is None else Tariff.grid_area == grid_area,
                Tariff.valid_from < valid_from,
                or_(Tariff.valid_to.is_(None), Tariff.valid_to > valid_from),
            )
        )
        for tariff in previous:
            tariff.valid_to = valid_from
            session.add(tariff)

        same_start = session.scalar(
            select(Tariff).where(
                Tariff.tariff_type == tariff_type,
                Tariff.grid_area.is_(None) if grid_area is None else Tariff.grid_area == grid_area,
                Tariff.valid_from == valid_from,
            )
        )
        if same_start is not None:
            session.delete(same_start)
            session.flush()

        tariff = Tariff(
            tariff_type=tariff_type,
            grid_area=grid_area,
            valid_from=valid_from,
            valid_to=valid_to,
            flat_rate=flat_rate,
            source_message_id=source_message_id,
            rates=[
                TariffRate(hour_number=index + 1, price_per_kwh=rate)
                for index, rate in enumerate(hourly_rates or [])
            ],
        )
        session.add(tariff)
        session.flush()
        return tariff

    def store_grid_subscription(
        self, session: Session, grid_area: str, amount_per_month: Decimal, valid_from: date, valid_to: date | None = None
    ) -> GridSubscription:
        """Store a subscription version, truncating the one it supersedes. The caller commits."""
        previous = session.scalars(
            select(GridSubscription).where(
                GridSubscription.grid_area == grid_area,
                GridSubscription.valid_from < valid_from,
                or_(GridSubscription.valid_to.is_(None), GridSubscription.valid_to > valid_from),
            )
        )
        for row in previous:
            row.valid_to = valid_from
            session.add(row)
        subscription = GridSubscription(
            grid_area=grid_area, amount_per_month=amount_per_month, valid_from=valid_from, valid_to=valid_to
        )
        session.add(subscription)
        session.flush()
        return subscription

    def get_grid_subscription(self, session: Session, grid_area: str, on: date) -> Decimal | None:
        row = session.scalar(
            select(GridSubscription)
            .where(
                GridSubscription.grid_area == grid_area,
                GridSubscription.valid_from <= on,
                or_(GridSubscription.valid_to.is_(None), GridSubscription.valid_to > on),
            )
            .order_by(GridSubscription.valid_from.desc())
            .limit(1)
        )
        return Decimal(row.amount_per_month) if row is not None else None

    def get_grid_subscription_segments(
        self, session: Session, grid_area: str, start: date, end: date
    ) -> list[SubscriptionSegment]:
        rows = session.scalars(
            select(GridSubscription)
            .where(
                GridSubscription.grid_area == grid_area,
                GridSubscription.valid_from < end,
                or_(GridSubscription.valid_to.is_(None), GridSubscription.valid_to > start),
            )
            .order_by(GridSubscription.valid_from)
        )
        return [
            SubscriptionSegment(valid_from=row.valid_from, valid_to=row.valid_to, amount_per_month=Decimal(row.amount_per_month))
            for row in rows
        ]

    def _tariffs_overlapping(self, session: Session, grid_area: str, start: date, end: date) -> list[Tariff]:
        return list(
            session.scalars(
                select(Tariff)
                .where(
                    or_(Tariff.grid_area.is_(None), Tariff.grid_area == grid_area),
                    Tariff.valid_from < end,
                    or_(Tariff.valid_to.is_(None), Tariff.valid_to > start),
                )
                .options(selectinload(Tariff.rates))
                .order_by(Tariff.valid_from)
            )
        )

    def load_schedule(
        self,
        session: Session,
        metering_point_id: str,
        grid_area: str,
        start: date,
        end: date,
        *,
        margin: Decimal,
        supplement: Decimal,
    ) -> TariffSchedule:
        """Build the rate cards in force over [start, end), one segment per tariff change.

        Raises DataIncompleteError when any tariff type is missing for part of the range.
        """
        tariffs = self._tariffs_overlapping(session, grid_area, start, end)
        boundaries = {start, end}
        for tariff in tariffs:
            if start < tariff.valid_from < end:
                boundaries.add(tariff.valid_from)
            if tariff.valid_to is not None and start < tariff.valid_to < end:
                boundaries.add(tariff.valid_to)
        ordered = sorted(boundaries)

        segments: list[RateSegment] = []
        missing: list[str] = []
        for segment_start, segment_end in zip(ordered, ordered[1:]):
            in_force: dict[TariffType, Tariff] = {}
            for tariff in tariffs:
                if tariff.valid_from <= segment_start and (tariff.valid_to is None or tariff.valid_to > segment_start):
                    in_force[tariff.tariff_type] = tariff
            absent = [tariff_type for tariff_type in TariffType if tariff_type not in in_force]
            if absent:
                missing.extend(f"{tariff_type.value}_tariff@{segment_start.isoformat()}" for tariff_type in absent)
                continue
            grid = in_force[TariffType.GRID]
            grid_rates = {rate.hour_number: Decimal(rate.price_per_kwh) for rate in grid.rates}
            if not grid_rates and grid.flat_rate is not None:
                grid_rates = {hour: Decimal(grid.flat_rate) for hour in range(1, 25)}
            flat = {}
            for tariff_type in (TariffType.SYSTEM, TariffType.TRANSMISSION, TariffType.ELECTRICITY_TAX):
                value = in_force[tariff_type].flat_rate
                if value is None:
                    missing.append(f"{tariff_type.value}_rate@{segment_start.isoformat()}")
                else:
                    flat[tariff_type] = Decimal(value)
            if len(flat) < 3:
                continue
            segments.append(
                RateSegment(
                    valid_from=segment_start,
                    valid_to=segment_end,
                    card=RateCard(
                        grid_rates=grid_rates,
                        system_rate=flat[TariffType.SYSTEM],
                        transmission_rate=flat[TariffType.TRANSMISSION],
                        electricity_tax_rate=flat[TariffType.ELECTRICITY_TAX],
                        margin=Decimal(margin),
                        supplement=Decimal(supplement),
                    ),
                )
            )

        if missing:
            raise DataIncompleteError(metering_point_id, missing)
        return TariffSchedule(segments=tuple(segments))


pricing_repository = PricingRepository()
