from __future__ import annotations

from datetime import date, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from supplyhub.lifecycle.state_machine import ProcessStatus, ProcessType


class ProcessRequestCreate(BaseModel):
    process_type: ProcessType
    metering_point_id: str = Field(pattern=r"^\d{18}$")
    effective_date: date


class ProcessRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    process_type: ProcessType
    metering_point_id: str
    status: ProcessStatus
    effective_date: date
    external_correlation_id: str | None
    cancel_correlation_id: str | None
    created_at: datetime
    updated_at: datetime


class ProcessEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    process_request_id: UUID
    occurred_at: datetime
    event_type: str
    payload: dict[str, Any]
    source: str
