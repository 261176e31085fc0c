from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy.orm import Session

from supplyhub.billing.service import InvoicingService
from supplyhub.core.clock import local_today
from supplyhub.core.errors import SupplyHubError
from supplyhub.lifecycle.models import ProcessRequest
from supplyhub.lifecycle.service import ProcessService
from supplyhub.lifecycle.state_machine import ProcessStatus, ProcessType
from supplyhub.portfolio.service import PortfolioService


logger = logging.getLogger("supplyhub.lifecycle")

_ACTIVATING = {ProcessType.SWITCH, ProcessType.MOVE_IN}


@dataclass(slots=True)
class EffectuationService:
    """Completes processes together with their effect on the portfolio."""

    process_service: ProcessService = field(default_factory=ProcessService)
    portfolio_service: PortfolioService = field(default_factory=PortfolioService)
    invoicing_service: InvoicingService = field(default_factory=InvoicingService)

    def complete(
        self,
        session: Session,
        process_id: uuid.UUID,
        *,
        today: date | None = None,
        source: str = "scheduler",
    ) -> ProcessRequest:
        process = self.process_service.get(session, process_id)
        process_type = process.process_type
        metering_point_id = process.metering_point_id
        effective_date = process.effective_date

        # supply change is flushed first so the completion commit covers both
        if process.status == ProcessStatus.EFFECTUATION_PENDING:
            if process_type in _ACTIVATING:
                self.portfolio_service.open_supply(session, metering_point_id, effective_date)
            else:
                self.portfolio_service.close_supply(session, metering_point_id, effective_date, process_type.value)

        completed = self.process_service.mark_completed(session, process_id, source=source)

        if process_type in _ACTIVATING:
            try:
                self.invoicing_service.bill_aconto_on_activation(
                    session, metering_point_id, effective_date, today=today or local_today()
                )
            except SupplyHubError:
                session.rollback()
                logger.exception(
                    "effectuation.aconto_failed",
                    extra={"process_id": str(process_id), "metering_point_id": metering_point_id},
                )
        return completed


effectuation_service = EffectuationService()
