"""Side effects for each (queue, message type) pair.

Handlers receive an already-validated payload, commit their own changes and must
tolerate being re-run for a message whose earlier attempt failed midway.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from supplyhub.core.errors import ConcurrencyConflict, ValidationError
from supplyhub.lifecycle.effectuation import effectuation_service
from supplyhub.lifecycle.service import process_service
from supplyhub.lifecycle.state_machine import ProcessStatus
from supplyhub.market_rules.validator import market_rules
from supplyhub.messaging.gateway import HubMessage, QueueName
from supplyhub.messaging.schemas import (
    Aggregation,
    MarketOverride,
    MessageType,
    MeteringSeries,
    ProcessAcknowledgement,
    SpotPrices,
    TariffUpdate,
)
from supplyhub.metering.repository import SampleRow, metering_repository
from supplyhub.pricing.repository import pricing_repository
from supplyhub.settlement.engine import PricePoint
from supplyhub.settlement.reconciliation import reconciliation_service


logger = logging.getLogger("supplyhub.messaging")

Handler = Callable[[Session, HubMessage, Any], None]

# statuses in which an accepted request acknowledgement has already been applied
_REQUEST_ACCEPT_APPLIED = {
    ProcessStatus.EFFECTUATION_PENDING,
    ProcessStatus.COMPLETED,
    ProcessStatus.CANCELLATION_PENDING,
    ProcessStatus.CANCELLED,
    ProcessStatus.OFFBOARDING_STARTED,
    ProcessStatus.FINAL_SETTLED,
}


class HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[tuple[QueueName, MessageType], Handler] = {}

    def register(self, queue: QueueName, message_type: MessageType, handler: Handler) -> None:
        self._handlers[(QueueName(queue), MessageType(message_type))] = handler

    def resolve(self, queue: QueueName, message_type: MessageType) -> Handler | None:
        return self._handlers.get((QueueName(queue), MessageType(message_type)))

    def __contains__(self, key: tuple[QueueName, MessageType]) -> bool:
        return key in self._handlers


def handle_process_acknowledgement(session: Session, message: HubMessage, payload: ProcessAcknowledgement) -> None:
    process, is_cancel = process_service.find_by_correlation_id(session, payload.correlation_id)
    if process is None:
        raise ValidationError(f"no process request for correlation id {payload.correlation_id}")

    status = process.status
    reason = payload.reason or "rejected by hub"
    if is_cancel:
        if payload.accepted:
            if status == ProcessStatus.CANCELLED:
                return _replayed(message, process.id, status)
            process_service.mark_cancelled(session, process.id)
            return
        if status == ProcessStatus.CANCELLATION_PENDING:
            process_service.revert_cancellation(session, process.id, reason=reason)
            return
        return _replayed(message, process.id, status)

    if payload.accepted:
        if status in _REQUEST_ACCEPT_APPLIED:
            return _replayed(message, process.id, status)
        if status == ProcessStatus.SENT:
            process_service.mark_acknowledged(session, process.id)
        process_service.confirm(session, process.id)
        return

    if status == ProcessStatus.REJECTED:
        return _replayed(message, process.id, status)
    process_service.mark_rejected(session, process.id, reason=reason, expected=status)


def handle_market_override(session: Session, message: HubMessage, payload: MarketOverride) -> None:
    process = process_service.find_open_for_point(session, payload.metering_point_id)
    if process is None:
        raise ValidationError(f"metering point {payload.metering_point_id} has no open process to override")

    if payload.action == "auto_cancel":
        process_service.auto_cancel(session, process.id, reason=payload.reason or "cancelled by hub")
        return
    if process.status != ProcessStatus.EFFECTUATION_PENDING:
        raise ConcurrencyConflict(
            "process_request", process.id, ProcessStatus.EFFECTUATION_PENDING.value, process.status.value
        )
    effectuation_service.complete(session, process.id, source="hub")


def handle_metering_series(session: Session, message: HubMessage, payload: MeteringSeries) -> None:
    rule = market_rules.can_receive_metering(session, payload.metering_point_id)
    if not rule.valid:
        raise ValidationError(rule.reason)

    rows = [
        SampleRow(
            timestamp=observation.timestamp,
            resolution=payload.resolution,
            quantity=observation.quantity,
            quality_code=observation.quality,
            source_message_id=message.message_id,
        )
        for observation in payload.observations
    ]
    revised = metering_repository.store_samples(session, payload.metering_point_id, rows)
    session.commit()
    logger.info(
        "metering.stored",
        extra={
            "message_id": message.message_id,
            "metering_point_id": payload.metering_point_id,
            "count": len(rows),
            "outcome": f"{revised} revised",
        },
    )


def handle_spot_prices(session: Session, message: HubMessage, payload: SpotPrices) -> None:
    points = [
        PricePoint(timestamp=price.timestamp, price_per_kwh=Decimal(price.price_per_kwh), resolution=payload.resolution)
        for price in payload.prices
    ]
    inserted = pricing_repository.store_spot_prices(session, payload.price_area, points)
    session.commit()
    logger.info("prices.stored", extra={"message_id": message.message_id, "count": inserted})


def handle_tariff_update(session: Session, message: HubMessage, payload: TariffUpdate) -> None:
    tariff = pricing_repository.replace_tariff(
        session,
        tariff_type=payload.tariff_type,
        grid_area=payload.grid_area,
        valid_from=payload.valid_from,
        valid_to=payload.valid_to,
        flat_rate=payload.flat_rate,
        hourly_rates=payload.hourly_rates,
        source_message_id=message.message_id,
    )
    session.commit()
    logger.info(
        "tariff.replaced",
        extra={
            "message_id": message.message_id,
            "status": tariff.tariff_type.value,
            "period_start": payload.valid_from.isoformat(),
        },
    )


def handle_aggregation(session: Session, message: HubMessage, payload: Aggregation) -> None:
    reconciliation_service.reconcile_aggregation(
        session,
        payload.grid_area,
        payload.period_start,
        payload.period_end,
        payload.total_kwh,
        {point.timestamp: point.quantity for point in payload.points},
        source_message_id=message.message_id,
    )


def _replayed(message: HubMessage, process_id: Any, status: ProcessStatus) -> None:
    logger.info(
        "process.ack_replayed",
        extra={"message_id": message.message_id, "process_id": str(process_id), "status": status.value},
    )


def default_registry() -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.register(QueueName.PROCESSES, MessageType.PROCESS_ACKNOWLEDGEMENT, handle_process_acknowledgement)
    registry.register(QueueName.PROCESSES, MessageType.MARKET_OVERRIDE, handle_market_override)
    registry.register(QueueName.METERING, MessageType.METERING_SERIES, handle_metering_series)
    registry.register(QueueName.PRICES, MessageType.SPOT_PRICES, handle_spot_prices)
    registry.register(QueueName.PRICES, MessageType.TARIFF_UPDATE, handle_tariff_update)
    registry.register(QueueName.AGGREGATIONS, MessageType.AGGREGATION, handle_aggregation)
    return registry
