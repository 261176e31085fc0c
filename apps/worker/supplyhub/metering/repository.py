from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from supplyhub.core.clock import as_utc, utcnow
from supplyhub.metering.models import MeteringRevision, MeteringSample


logger = logging.getLogger("supplyhub.metering")

_QTY = Decimal("0.000001")


@dataclass(frozen=True, slots=True)
class SampleRow:
    timestamp: datetime
    resolution: str
    quantity: Decimal
    quality_code: str
    source_message_id: str


class MeteringRepository:
    def store_samples(self, session: Session, metering_point_id: str, rows: Sequence[SampleRow]) -> int:
        """Upsert samples keyed by (point, timestamp) and return how many stored quantities changed.

        A MeteringRevision row is written for each changed quantity. Re-storing identical
        values only refreshes quality and source. The caller commits.
        """
        if not rows:
            return 0

        by_timestamp = {as_utc(row.timestamp): row for row in rows}
        existing = {
            as_utc(sample.timestamp): sample
            for sample in session.scalars(
                select(MeteringSample).where(
                    MeteringSample.metering_point_id == metering_point_id,
                    MeteringSample.timestamp.in_(list(by_timestamp)),
                )
            )
        }

        changed = 0
        now = utcnow()
        for timestamp, row in sorted(by_timestamp.items()):
            quantity = Decimal(row.quantity).quantize(_QTY)
            sample = existing.get(timestamp)
            if sample is None:
                session.add(
                    MeteringSample(
                        metering_point_id=metering_point_id,
                        timestamp=timestamp,
                        resolution=row.resolution,
                        quantity=quantity,
                        quality_code=row.quality_code,
                        source_message_id=row.source_message_id,
                        received_at=now,
                    )
                )
                continue

            previous = Decimal(sample.quantity).quantize(_QTY)
            if previous != quantity:
                session.add(
                    MeteringRevision(
                        metering_point_id=metering_point_id,
                        timestamp=timestamp,
                        previous_quantity=previous,
                        new_quantity=quantity,
                        previous_source=sample.source_message_id,
                        new_source=row.source_message_id,
                        revised_at=now,
                    )
                )
                changed += 1
            sample.quantity = quantity
            sample.resolution = row.resolution
            sample.quality_code = row.quality_code
            sample.source_message_id = row.source_message_id
            sample.received_at = now
            session.add(sample)

        session.flush()
        if changed:
            logger.info(
                "metering.revised",
                extra={"metering_point_id": metering_point_id, "count": changed},
            )
        return changed

    def get_samples(self, session: Session, metering_point_id: str, start: datetime, end: datetime) -> list[MeteringSample]:
        return list(
            session.scalars(
                select(MeteringSample)
                .where(
                    MeteringSample.metering_point_id == metering_point_id,
                    MeteringSample.timestamp >= as_utc(start),
                    MeteringSample.timestamp < as_utc(end),
                )
                .order_by(MeteringSample.timestamp)
            )
        )

    def count_samples(self, session: Session, metering_point_id: str, start: datetime, end: datetime) -> int:
        return (
            session.scalar(
                select(func.count())
                .select_from(MeteringSample)
                .where(
                    MeteringSample.metering_point_id == metering_point_id,
                    MeteringSample.timestamp >= as_utc(start),
                    MeteringSample.timestamp < as_utc(end),
                )
            )
            or 0
        )

    def latest_timestamp(self, session: Session, metering_point_id: str) -> datetime | None:
        value = session.scalar(
            select(func.max(MeteringSample.timestamp)).where(MeteringSample.metering_point_id == metering_point_id)
        )
        return as_utc(value) if value is not None else None

    def get_revisions(
        self,
        session: Session,
        metering_point_id: str,
        start: datetime,
        end: datetime,
        *,
        revised_after: datetime | None = None,
    ) -> list[MeteringRevision]:
        stmt = select(MeteringRevision).where(
            MeteringRevision.metering_point_id == metering_point_id,
            MeteringRevision.timestamp >= as_utc(start),
            MeteringRevision.timestamp < as_utc(end),
        )
        if revised_after is not None:
            stmt = stmt.where(MeteringRevision.revised_at > as_utc(revised_after))
        return list(session.scalars(stmt.order_by(MeteringRevision.timestamp, MeteringRevision.revised_at)))

    def latest_revision_at(self, session: Session, metering_point_id: str, start: datetime, end: datetime) -> datetime | None:
        value = session.scalar(
            select(func.max(MeteringRevision.revised_at)).where(
                MeteringRevision.metering_point_id == metering_point_id,
                MeteringRevision.timestamp >= as_utc(start),
                MeteringRevision.timestamp < as_utc(end),
            )
        )
        return as_utc(value) if value is not None else None

    def hourly_totals(
        self, session: Session, metering_point_ids: Sequence[str], start: datetime, end: datetime
    ) -> dict[datetime, Decimal]:
        """Summed quantity per UTC hour across ``metering_point_ids``; quarter hours fold into their hour."""
        if not metering_point_ids:
            return {}
        rows = session.execute(
            select(MeteringSample.timestamp, MeteringSample.quantity).where(
                MeteringSample.metering_point_id.in_(list(metering_point_ids)),
                MeteringSample.timestamp >= as_utc(start),
                MeteringSample.timestamp < as_utc(end),
            )
        )
        totals: dict[datetime, Decimal] = defaultdict(Decimal)
        for timestamp, quantity in rows:
            totals[as_utc(timestamp).replace(minute=0, second=0, microsecond=0)] += Decimal(quantity)
        return dict(totals)


metering_repository = MeteringRepository()
