# queuedesk/db/models.py
from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from queuedesk.db.base import Base

# ==== Enums ====


class RoleEnum(str, enum.Enum):
    super_admin = "super_admin"
    admin = "admin"
    cashier = "cashier"
    sales = "sales"


class QueueStatusEnum(str, enum.Enum):
    waiting = "waiting"
    serving = "serving"        # called to a counter
    processing = "processing"  # order is being prepared, not shown on public display
    completed = "completed"
    cancelled = "cancelled"


REMARKS_SEPARATOR = " | "


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def append_remark(remarks: Optional[str], note: str) -> str:
    """Remarks are append-only: new notes go after the existing ones."""
    return f"{remarks}{REMARKS_SEPARATOR}{note}" if remarks else note


# ==== Mixins ====


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


# ==== Models ====


class QueueEntry(TimestampMixin, Base):
    __tablename__ = "queue_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    token_number: Mapped[int] = mapped_column(Integer, nullable=False)

    # plain VARCHAR, not an ENUM type: legacy rows may carry values outside the vocabulary
    status: Mapped[str] = mapped_column(
        String(32),
        default=QueueStatusEnum.waiting.value,
        server_default=QueueStatusEnum.waiting.value,
        nullable=False,
    )
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    processing_ended_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    remarks: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_queue_entries_status", "status"),
        Index("ix_queue_entries_token_number", "token_number"),
    )

    def __repr__(self) -> str:
        return f"<QueueEntry id={self.id} token={self.token_number} status={self.status}>"


class QueueEvent(Base):
    """Append-only ledger: one row per committed status transition."""

    __tablename__ = "queue_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    entry_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    previous_status: Mapped[str] = mapped_column(String(32), nullable=False)
    new_status: Mapped[str] = mapped_column(String(32), nullable=False)
    actor_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    processing_start_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    processing_end_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    details: Mapped[Optional[dict]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_queue_events_event_type_created_at", "event_type", "created_at"),
        Index("ix_queue_events_processing_end_at", "processing_end_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<QueueEvent id={self.id} entry={self.entry_id} "
            f"{self.previous_status}->{self.new_status} type={self.event_type}>"
        )


class ProcessingStats(Base):
    """Hourly processing-duration aggregates, rebuilt from queue_events."""

    __tablename__ = "processing_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    stat_date: Mapped[date] = mapped_column(Date, nullable=False)
    stat_hour: Mapped[int] = mapped_column(Integer, nullable=False)
    total_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    avg_seconds: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    min_seconds: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    max_seconds: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("stat_date", "stat_hour", name="uq_processing_stats_date_hour"),
    )


# ==== Storage safety net ====
# Same rule as the validate_queue_status trigger (migration 0002): whatever is
# written through the ORM ends up inside the vocabulary.


@event.listens_for(QueueEntry, "before_insert")
@event.listens_for(QueueEntry, "before_update")
def _ensure_valid_status(mapper, connection, target: QueueEntry) -> None:
    from queuedesk.services.statuses import normalize_status

    raw = target.status
    if raw is None:
        # column default not applied yet
        target.status = QueueStatusEnum.waiting.value
        return

    result = normalize_status(raw)
    if result.was_fallback:
        target.remarks = append_remark(
            target.remarks,
            f'Status auto-corrected from "{raw}" to "{result.status.value}"',
        )
    target.status = result.status.value
