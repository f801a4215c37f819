"""
Processing-window timestamps and processing-duration analytics.

stamp_processing_window runs inside the status transaction. Aggregates
(count/avg/min/max per hour) are rebuilt after commit from queue_events, so a
failed or repeated refresh only affects reporting, never the queue itself.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Optional, Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from queuedesk.db.models import ProcessingStats, QueueEntry, QueueEvent, QueueStatusEnum as Status
from queuedesk.services import notifications
from queuedesk.services.events import StatusTransition

log = logging.getLogger(__name__)

ANALYTICS_JOB = "queue.analytics_refresh"


def _as_utc(v: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything we store is UTC
    return v.replace(tzinfo=timezone.utc) if v.tzinfo is None else v.astimezone(timezone.utc)


def stamp_processing_window(entry: QueueEntry, src: Status, dst: Status, now: datetime) -> None:
    """
    Entering 'processing' sets processing_started_at, leaving it sets
    processing_ended_at. Existing stamps are never overwritten or cleared.
    """
    if dst == Status.processing and entry.processing_started_at is None:
        entry.processing_started_at = now
    if src == Status.processing and dst != Status.processing and entry.processing_ended_at is None:
        entry.processing_ended_at = now


def processing_duration(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    """Seconds spent in processing, None while the window is open."""
    if start is None or end is None:
        return None
    seconds = (_as_utc(end) - _as_utc(start)).total_seconds()
    return max(seconds, 0.0)


def bucket_for(transition: StatusTransition) -> Optional[tuple[date, int]]:
    """(date, hour) the transition's processing exit falls into."""
    if not transition.leaves_processing or transition.processing_ended_at is None:
        return None
    end = _as_utc(transition.processing_ended_at)
    return end.date(), end.hour


def _summarize(durations: Sequence[float]) -> dict:
    return {
        "total_count": len(durations),
        "avg_seconds": sum(durations) / len(durations),
        "min_seconds": min(durations),
        "max_seconds": max(durations),
    }


async def refresh_processing_stats(
    db: AsyncSession, stat_date: date, stat_hour: int
) -> Optional[ProcessingStats]:
    """
    Recompute one hourly bucket from the event ledger and upsert it.
    Idempotent: running it twice gives the same row.
    """
    start = datetime.combine(stat_date, time(hour=stat_hour), tzinfo=timezone.utc)
    end = start + timedelta(hours=1)

    rows = (await db.execute(
        select(QueueEvent.processing_start_at, QueueEvent.processing_end_at).where(
            QueueEvent.previous_status == Status.processing.value,
            QueueEvent.processing_start_at.is_not(None),
            QueueEvent.processing_end_at >= start,
            QueueEvent.processing_end_at < end,
        )
    )).all()

    durations = [d for d in (processing_duration(s, e) for s, e in rows) if d is not None]
    if not durations:
        return None
    values = _summarize(durations)

    # two workers may race on a brand-new bucket: the loser retries as an update
    for attempt in range(2):
        stats = (await db.execute(
            select(ProcessingStats)
            .where(ProcessingStats.stat_date == stat_date, ProcessingStats.stat_hour == stat_hour)
            .with_for_update()
        )).scalar_one_or_none()
        if stats is None:
            stats = ProcessingStats(stat_date=stat_date, stat_hour=stat_hour, **values)
            db.add(stats)
        else:
            for key, value in values.items():
                setattr(stats, key, value)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            if attempt:
                raise
            continue
        await db.refresh(stats)
        log.info(
            "processing_stats_refreshed",
            extra={"stat_date": stat_date.isoformat(), "stat_hour": stat_hour, **values},
        )
        return stats
    return None


async def get_processing_stats(db: AsyncSession, since: date) -> list[ProcessingStats]:
    rows = (await db.execute(
        select(ProcessingStats)
        .where(ProcessingStats.stat_date >= since)
        .order_by(ProcessingStats.stat_date, ProcessingStats.stat_hour)
    )).scalars().all()
    return list(rows)


# ==== Recorders (post-commit side effect of the executor) ====


class AnalyticsRecorder(Protocol):
    async def record(self, transition: StatusTransition) -> None: ...


class NullAnalyticsRecorder:
    async def record(self, transition: StatusTransition) -> None:
        return None


class QueuedAnalyticsRecorder:
    """Default: hand the bucket to the RQ worker, the request does not wait for it."""

    async def record(self, transition: StatusTransition) -> None:
        bucket = bucket_for(transition)
        if bucket is None:
            return
        stat_date, stat_hour = bucket
        await asyncio.to_thread(
            notifications.enqueue,
            ANALYTICS_JOB,
            {
                "stat_date": stat_date.isoformat(),
                "stat_hour": stat_hour,
                "entry_id": transition.entry_id,
            },
        )


class InlineAnalyticsRecorder:
    """Refresh in-process with a fresh session (no worker deployments, tests)."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def record(self, transition: StatusTransition) -> None:
        bucket = bucket_for(transition)
        if bucket is None:
            return
        async with self.session_factory() as db:
            await refresh_processing_stats(db, *bucket)


def build_recorder(settings, session_factory) -> AnalyticsRecorder:
    if settings.analytics_mode == "inline":
        return InlineAnalyticsRecorder(session_factory)
    if settings.analytics_mode == "off":
        return NullAnalyticsRecorder()
    return QueuedAnalyticsRecorder()
