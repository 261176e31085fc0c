from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from supplyhub.core.clock import local_midnight_utc, local_zone
from supplyhub.metering.repository import MeteringRepository

_STEP_SECONDS = {"PT1H": 3600, "PT15M": 900}


@dataclass(frozen=True, slots=True)
class CompletenessResult:
    expected: int
    received: int

    @property
    def is_complete(self) -> bool:
        return self.received >= self.expected

    @property
    def missing(self) -> int:
        return max(0, self.expected - self.received)


def expected_sample_count(start: date, end: date, resolution: str, zone: ZoneInfo | None = None) -> int:
    """Number of resolution steps between local midnights, so DST days count 23 or 25 hours."""
    span = local_midnight_utc(end, zone) - local_midnight_utc(start, zone)
    return int(span.total_seconds()) // _STEP_SECONDS[resolution]


@dataclass(slots=True)
class MeteringCompletenessChecker:
    metering_repository: MeteringRepository = MeteringRepository()

    def check(
        self,
        session: Session,
        metering_point_id: str,
        start: date,
        end: date,
        resolution: str = "PT1H",
    ) -> CompletenessResult:
        zone = local_zone()
        expected = expected_sample_count(start, end, resolution, zone)
        received = self.metering_repository.count_samples(
            session,
            metering_point_id,
            local_midnight_utc(start, zone),
            local_midnight_utc(end, zone),
        )
        return CompletenessResult(expected=expected, received=received)


completeness_checker = MeteringCompletenessChecker()
