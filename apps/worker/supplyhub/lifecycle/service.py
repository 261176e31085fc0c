from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from opentelemetry import trace
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from supplyhub import events
from supplyhub.core.clock import as_utc, utcnow
from supplyhub.core.errors import ConcurrencyConflict, ConflictError, NotFoundError, ValidationError
from supplyhub.lifecycle.models import ProcessEvent, ProcessRequest
from supplyhub.lifecycle.schemas import ProcessRequestCreate
from supplyhub.lifecycle.state_machine import TERMINAL_STATUSES, ProcessStatus, ProcessTrigger, ProcessType, resolve_transition
from supplyhub.market_rules.validator import MarketRules
from supplyhub.messaging.gateway import HubGateway
from supplyhub.metrics import observe_concurrency_conflict, observe_transition
from supplyhub.portfolio.repository import MeteringPointRepository, SupplyPeriodRepository
from supplyhub.portfolio.service import PortfolioService


logger = logging.getLogger("supplyhub.lifecycle")
tracer = trace.get_tracer("supplyhub.lifecycle")

_SUPPLY_START_TYPES = {ProcessType.SWITCH, ProcessType.MOVE_IN}


@dataclass(slots=True)
class ProcessService:
    rules: MarketRules = field(default_factory=MarketRules)
    metering_point_repository: MeteringPointRepository = MeteringPointRepository()
    supply_period_repository: SupplyPeriodRepository = SupplyPeriodRepository()
    portfolio_service: PortfolioService = field(default_factory=PortfolioService)

    def create_request(self, session: Session, payload: ProcessRequestCreate, *, source: str = "operator") -> ProcessRequest:
        if self.metering_point_repository.get(session, payload.metering_point_id) is None:
            raise NotFoundError("metering_point", payload.metering_point_id)

        if payload.process_type in _SUPPLY_START_TYPES:
            rule = self.rules.can_change_supplier(session, payload.metering_point_id)
            if not rule.valid:
                raise ConflictError(rule.reason)
        else:
            supply = self.supply_period_repository.get_active(session, payload.metering_point_id)
            if supply is None:
                raise ConflictError(f"metering point {payload.metering_point_id} has no active supply to end")
            if payload.effective_date < supply.start_date:
                raise ValidationError(
                    f"effective date {payload.effective_date} precedes the supply start {supply.start_date}"
                )
            if self._open_process_count(session, payload.metering_point_id):
                raise ConflictError(f"metering point {payload.metering_point_id} already has an active process")

        now = utcnow()
        process = ProcessRequest(
            process_type=payload.process_type,
            metering_point_id=payload.metering_point_id,
            status=ProcessStatus.PENDING,
            effective_date=payload.effective_date,
            created_at=now,
            updated_at=now,
        )
        session.add(process)
        try:
            session.flush()
            session.add(
                ProcessEvent(
                    process_request_id=process.id,
                    occurred_at=now,
                    event_type="created",
                    payload={
                        "process_type": payload.process_type.value,
                        "effective_date": payload.effective_date.isoformat(),
                    },
                    source=source,
                )
            )
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError(f"metering point {payload.metering_point_id} already has an active process") from exc

        session.refresh(process)
        logger.info(
            "process.created",
            extra={"process_id": str(process.id), "metering_point_id": process.metering_point_id, "status": process.status.value},
        )
        events.publish(
            "process.created",
            process_id=str(process.id),
            process_type=process.process_type.value,
            metering_point_id=process.metering_point_id,
        )
        return process

    def send_request(self, session: Session, process_id: uuid.UUID, gateway: HubGateway) -> ProcessRequest:
        process = self.get(session, process_id)
        if process.status != ProcessStatus.PENDING:
            observe_concurrency_conflict("process_request")
            raise ConcurrencyConflict("process_request", process_id, ProcessStatus.PENDING.value, process.status.value)

        with tracer.start_as_current_span("process.send") as span:
            span.set_attribute("process_id", str(process_id))
            result = gateway.send(
                process.process_type.value,
                {
                    "process_id": str(process.id),
                    "metering_point_id": process.metering_point_id,
                    "effective_date": process.effective_date.isoformat(),
                },
            )
            span.set_attribute("accepted", result.accepted)

        process = self._transition(
            session,
            process_id,
            expected=ProcessStatus.PENDING,
            trigger=ProcessTrigger.SEND,
            event_type="sent",
            source="hub",
            payload={"correlation_id": result.correlation_id},
            values={"external_correlation_id": result.correlation_id},
        )
        if not result.accepted:
            process = self.mark_rejected(
                session,
                process_id,
                reason=result.rejection_reason or "rejected by hub",
                expected=ProcessStatus.SENT,
            )
        return process

    def mark_acknowledged(
        self, session: Session, process_id: uuid.UUID, *, expected: ProcessStatus = ProcessStatus.SENT, source: str = "hub"
    ) -> ProcessRequest:
        return self._transition(
            session, process_id, expected=expected, trigger=ProcessTrigger.ACKNOWLEDGE, event_type="acknowledged", source=source
        )

    def confirm(
        self,
        session: Session,
        process_id: uuid.UUID,
        *,
        expected: ProcessStatus = ProcessStatus.ACKNOWLEDGED,
        source: str = "hub",
    ) -> ProcessRequest:
        return self._transition(
            session,
            process_id,
            expected=expected,
            trigger=ProcessTrigger.CONFIRM,
            event_type="awaiting_effectuation",
            source=source,
        )

    def mark_rejected(
        self,
        session: Session,
        process_id: uuid.UUID,
        *,
        reason: str,
        expected: ProcessStatus = ProcessStatus.SENT,
        source: str = "hub",
    ) -> ProcessRequest:
        return self._transition(
            session,
            process_id,
            expected=expected,
            trigger=ProcessTrigger.REJECT,
            event_type="rejected",
            source=source,
            payload={"reason": reason},
        )

    def mark_completed(
        self,
        session: Session,
        process_id: uuid.UUID,
        *,
        expected: ProcessStatus = ProcessStatus.EFFECTUATION_PENDING,
        source: str = "scheduler",
    ) -> ProcessRequest:
        return self._transition(
            session,
            process_id,
            expected=expected,
            trigger=ProcessTrigger.COMPLETE,
            event_type="completed",
            source=source,
        )

    def request_cancellation(
        self, session: Session, process_id: uuid.UUID, gateway: HubGateway, *, reason: str, source: str = "operator"
    ) -> ProcessRequest:
        process = self.get(session, process_id)
        if process.status != ProcessStatus.EFFECTUATION_PENDING:
            observe_concurrency_conflict("process_request")
            raise ConcurrencyConflict(
                "process_request", process_id, ProcessStatus.EFFECTUATION_PENDING.value, process.status.value
            )

        result = gateway.send(
            "cancel",
            {
                "process_id": str(process.id),
                "metering_point_id": process.metering_point_id,
                "original_correlation_id": process.external_correlation_id,
                "reason": reason,
            },
        )
        return self._transition(
            session,
            process_id,
            expected=ProcessStatus.EFFECTUATION_PENDING,
            trigger=ProcessTrigger.REQUEST_CANCELLATION,
            event_type="cancellation_sent",
            source=source,
            payload={"reason": reason, "correlation_id": result.correlation_id},
            values={"cancel_correlation_id": result.correlation_id},
        )

    def mark_cancelled(
        self,
        session: Session,
        process_id: uuid.UUID,
        *,
        expected: ProcessStatus = ProcessStatus.CANCELLATION_PENDING,
        source: str = "hub",
    ) -> ProcessRequest:
        return self._transition(
            session,
            process_id,
            expected=expected,
            trigger=ProcessTrigger.ACKNOWLEDGE_CANCELLATION,
            event_type="cancelled",
            source=source,
        )

    def revert_cancellation(
        self,
        session: Session,
        process_id: uuid.UUID,
        *,
        reason: str,
        expected: ProcessStatus = ProcessStatus.CANCELLATION_PENDING,
        source: str = "hub",
    ) -> ProcessRequest:
        return self._transition(
            session,
            process_id,
            expected=expected,
            trigger=ProcessTrigger.REVERT_CANCELLATION,
            event_type="cancellation_rejected",
            source=source,
            payload={"reason": reason},
        )

    def auto_cancel(
        self,
        session: Session,
        process_id: uuid.UUID,
        *,
        reason: str,
        expected: ProcessStatus = ProcessStatus.EFFECTUATION_PENDING,
        source: str = "hub",
    ) -> ProcessRequest:
        return self._transition(
            session,
            process_id,
            expected=expected,
            trigger=ProcessTrigger.AUTO_CANCEL,
            event_type="auto_cancelled",
            source=source,
            payload={"reason": reason},
        )

    def start_offboarding(
        self,
        session: Session,
        process_id: uuid.UUID,
        *,
        supply_end_date: date,
        expected: ProcessStatus = ProcessStatus.COMPLETED,
        source: str = "operator",
    ) -> ProcessRequest:
        """Close the point's supply at ``supply_end_date`` and hand it to final settlement."""
        expected = ProcessStatus(expected)
        process = self.get(session, process_id)
        rule = self.rules.can_offboard(session, process.metering_point_id)
        if not rule.valid:
            raise ConflictError(rule.reason)
        if process.status != expected or resolve_transition(expected, ProcessTrigger.START_OFFBOARDING) is None:
            observe_concurrency_conflict("process_request")
            raise ConcurrencyConflict("process_request", process_id, expected.value, process.status.value)

        self.portfolio_service.close_supply(session, process.metering_point_id, supply_end_date, "offboarding")
        return self._transition(
            session,
            process_id,
            expected=expected,
            trigger=ProcessTrigger.START_OFFBOARDING,
            event_type="offboarding_started",
            source=source,
            payload={"supply_end_date": supply_end_date.isoformat()},
        )

    def mark_final_settled(
        self,
        session: Session,
        process_id: uuid.UUID,
        *,
        settlement_run_id: uuid.UUID | None = None,
        expected: ProcessStatus = ProcessStatus.OFFBOARDING_STARTED,
        source: str = "settlement",
    ) -> ProcessRequest:
        return self._transition(
            session,
            process_id,
            expected=expected,
            trigger=ProcessTrigger.SETTLE_FINAL,
            event_type="final_settled",
            source=source,
            payload={"settlement_run_id": str(settlement_run_id)} if settlement_run_id else None,
        )

    def get(self, session: Session, process_id: uuid.UUID) -> ProcessRequest:
        process = session.get(ProcessRequest, process_id)
        if process is None:
            raise NotFoundError("process_request", process_id)
        return process

    def get_timeline(self, session: Session, process_id: uuid.UUID) -> list[ProcessEvent]:
        self.get(session, process_id)
        return list(
            session.scalars(
                select(ProcessEvent)
                .where(ProcessEvent.process_request_id == process_id)
                .order_by(ProcessEvent.occurred_at, ProcessEvent.id)
            )
        )

    def find_by_correlation_id(self, session: Session, correlation_id: str) -> tuple[ProcessRequest | None, bool]:
        """Return the process a hub correlation id belongs to, and whether it was its cancel request."""
        process = session.scalar(select(ProcessRequest).where(ProcessRequest.external_correlation_id == correlation_id))
        if process is not None:
            return process, False
        process = session.scalar(select(ProcessRequest).where(ProcessRequest.cancel_correlation_id == correlation_id))
        return process, process is not None

    def find_open_for_point(self, session: Session, metering_point_id: str) -> ProcessRequest | None:
        return session.scalar(
            select(ProcessRequest).where(
                ProcessRequest.metering_point_id == metering_point_id,
                ProcessRequest.status.not_in(list(TERMINAL_STATUSES)),
            )
        )

    def _transition(
        self,
        session: Session,
        process_id: uuid.UUID,
        *,
        expected: ProcessStatus,
        trigger: ProcessTrigger,
        event_type: str,
        source: str,
        payload: dict[str, Any] | None = None,
        values: dict[str, Any] | None = None,
    ) -> ProcessRequest:
        expected = ProcessStatus(expected)
        target = resolve_transition(expected, trigger)
        if target is None:
            self._raise_conflict(session, process_id, expected, trigger)

        now = utcnow()
        occurred_at = self._next_event_time(session, process_id, now)
        try:
            result = session.execute(
                update(ProcessRequest)
                .where(ProcessRequest.id == process_id, ProcessRequest.status == expected)
                .values(status=target, updated_at=now, **(values or {}))
                .execution_options(synchronize_session=False)
            )
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError(f"process {process_id} cannot move to {target.value}: another process is active") from exc
        if result.rowcount != 1:
            session.rollback()
            self._raise_conflict(session, process_id, expected, trigger)

        session.add(
            ProcessEvent(
                process_request_id=process_id,
                occurred_at=occurred_at,
                event_type=event_type,
                payload=payload or {},
                source=source,
            )
        )
        session.commit()

        process = self.get(session, process_id)
        session.refresh(process)
        observe_transition(trigger.value, target.value)
        logger.info(
            "process.transitioned",
            extra={
                "process_id": str(process_id),
                "metering_point_id": process.metering_point_id,
                "from_status": expected.value,
                "to_status": target.value,
            },
        )
        events.publish(
            f"process.{target.value}",
            process_id=str(process_id),
            metering_point_id=process.metering_point_id,
            from_status=expected.value,
            to_status=target.value,
            trigger=trigger.value,
        )
        return process

    def _raise_conflict(
        self, session: Session, process_id: uuid.UUID, expected: ProcessStatus, trigger: ProcessTrigger
    ) -> None:
        actual = session.scalar(select(ProcessRequest.status).where(ProcessRequest.id == process_id))
        if actual is None:
            raise NotFoundError("process_request", process_id)
        observe_concurrency_conflict("process_request")
        logger.warning(
            "process.transition_conflict",
            extra={
                "process_id": str(process_id),
                "from_status": expected.value,
                "to_status": str(actual),
                "status": trigger.value,
            },
        )
        raise ConcurrencyConflict("process_request", process_id, expected.value, str(actual))

    @staticmethod
    def _next_event_time(session: Session, process_id: uuid.UUID, now: datetime) -> datetime:
        last = session.scalar(select(func.max(ProcessEvent.occurred_at)).where(ProcessEvent.process_request_id == process_id))
        if last is None:
            return now
        return max(now, as_utc(last))

    @staticmethod
    def _open_process_count(session: Session, metering_point_id: str) -> int:
        return (
            session.scalar(
                select(func.count())
                .select_from(ProcessRequest)
                .where(
                    ProcessRequest.metering_point_id == metering_point_id,
                    ProcessRequest.status.not_in(list(TERMINAL_STATUSES)),
                )
            )
            or 0
        )


process_service = ProcessService()
