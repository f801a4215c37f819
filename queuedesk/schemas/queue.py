# queuedesk/schemas/queue.py
from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from queuedesk.db.models import QueueStatusEnum as Status
from queuedesk.services.statuses import normalize_status, parse_status


class StatusChangeRequest(BaseModel):
    # "  Serving " is accepted, "on_hold" is rejected here and never reaches the engine
    status: Status

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, v):
        return parse_status(v)


class QueueResetRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=255)


class QueueEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_name: Optional[str] = None
    token_number: int
    status: Status
    processing_started_at: Optional[datetime] = None
    processing_ended_at: Optional[datetime] = None
    remarks: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    # stored legacy values are shown as 'waiting'
    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v):
        return normalize_status(v).status


class QueueEntryDetail(QueueEntryOut):
    allowed_transitions: list[Status] = []


class QueueEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entry_id: int
    previous_status: str
    new_status: str
    actor_id: Optional[int] = None
    actor_role: Optional[str] = None
    event_type: str
    processing_start_at: Optional[datetime] = None
    processing_end_at: Optional[datetime] = None
    details: Optional[dict] = None
    created_at: datetime


class QueueResetOut(BaseModel):
    cancelled: int
    skipped: int
    message: str


class ProcessingStatsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    stat_date: date
    stat_hour: int
    total_count: int
    avg_seconds: float
    min_seconds: float
    max_seconds: float


class DisplayEntryOut(BaseModel):
    """What a public monitor may show: token and state, no customer details."""
    model_config = ConfigDict(from_attributes=True)

    token_number: int
    status: Status

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v):
        return normalize_status(v).status
