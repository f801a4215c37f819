"""
Queue status transition executor.

change_status is the only code path that mutates QueueEntry.status. One call is
one transaction: lock the row, normalize what is stored, check the graph and
the role matrix, update, append the audit event, commit. Publishing and
analytics run as background tasks after the commit: they can neither undo it
nor hold up the response.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy import case, func, or_, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from queuedesk.core.metrics import (
    queue_status_rejections_total,
    queue_status_transitions_total,
    side_effect_failures_total,
)
from queuedesk.db.models import (
    QueueEntry,
    QueueEvent,
    QueueStatusEnum as Status,
    RoleEnum as Role,
    append_remark,
    utcnow,
)
from queuedesk.services.analytics import AnalyticsRecorder, NullAnalyticsRecorder, stamp_processing_window
from queuedesk.services.errors import (
    AccessDenied,
    EntryNotFound,
    InvalidTransition,
    PersistenceError,
    QueueError,
)
from queuedesk.services.events import EventPublisher, NullEventPublisher, StatusTransition
from queuedesk.services.statuses import normalize_status, parse_status, valid_statuses
from queuedesk.services.transitions import (
    TERMINAL_STATUSES,
    can_reset_queue,
    check_transition,
    event_type_for,
    is_allowed_for_role,
)

log = logging.getLogger(__name__)

DEFAULT_RESET_REASON = "Queue reset by admin"
NO_ONE_WAITING = "No customers waiting"

# public monitors show who is called and who waits, never back-office processing
DISPLAY_STATUSES = (Status.serving, Status.waiting)


@dataclass(frozen=True)
class QueueResetResult:
    cancelled: int
    skipped: int

    @property
    def message(self) -> str:
        return f"Queue reset: {self.cancelled} entries cancelled, {self.skipped} skipped"


class QueueStatusService:
    def __init__(
        self,
        publisher: Optional[EventPublisher] = None,
        recorder: Optional[AnalyticsRecorder] = None,
        *,
        lock_timeout_ms: Optional[int] = None,
        side_effect_timeout_s: Optional[float] = None,
    ):
        self.publisher = publisher or NullEventPublisher()
        self.recorder = recorder or NullAnalyticsRecorder()
        self.lock_timeout_ms = lock_timeout_ms
        self.side_effect_timeout_s = side_effect_timeout_s
        # strong refs, the loop only keeps weak ones to running tasks
        self._pending: set[asyncio.Task] = set()

    # ---------- status change ----------

    async def change_status(
        self,
        db: AsyncSession,
        entry_id: int,
        target_status: Union[Status, str],
        *,
        actor_id: Optional[int] = None,
        actor_role: Union[Role, str, None] = None,
        remark: Optional[str] = None,
    ) -> QueueEntry:
        """
        Move one entry to target_status.

        actor_role=None skips the role check; only internal callers (scheduled
        jobs, the queue reset) may rely on that, HTTP routes always pass the
        role from the token.

        Raises EntryNotFound, InvalidTransition, AccessDenied or PersistenceError;
        in every case the transaction is rolled back and nothing is visible.
        """
        try:
            entry, transition = await self._apply(
                db, entry_id, target_status, actor_id, actor_role, remark
            )
        except QueueError as e:
            await db.rollback()
            queue_status_rejections_total.labels(reason=type(e).__name__).inc()
            raise
        except SQLAlchemyError as exc:
            await db.rollback()
            queue_status_rejections_total.labels(reason=PersistenceError.__name__).inc()
            log.exception("queue_status_persistence_failed", extra={"entry_id": entry_id})
            raise PersistenceError() from exc

        self._after_commit(transition)
        return entry

    async def _apply(
        self,
        db: AsyncSession,
        entry_id: int,
        target_status: Union[Status, str],
        actor_id: Optional[int],
        actor_role: Union[Role, str, None],
        remark: Optional[str],
    ) -> tuple[QueueEntry, StatusTransition]:
        await self._set_lock_timeout(db)

        entry = (await db.execute(
            select(QueueEntry)
            .where(QueueEntry.id == entry_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if entry is None:
            raise EntryNotFound()

        stored = entry.status
        current = normalize_status(stored)
        src = current.status
        details: dict = {}
        if current.was_fallback:
            details["corrected_from"] = stored
            entry.remarks = append_remark(
                entry.remarks, f'Status auto-corrected from "{stored}" to "{src.value}"'
            )

        try:
            dst = parse_status(target_status)
        except ValueError:
            raise InvalidTransition()

        role = getattr(actor_role, "value", actor_role)
        try:
            check_transition(src, dst, role)
        except AccessDenied:
            log.warning(
                "queue_transition_denied",
                extra={
                    "entry_id": entry_id,
                    "actor_id": actor_id,
                    "actor_role": role,
                    "from": src.value,
                    "to": dst.value,
                },
            )
            raise

        now = utcnow()
        entry.status = dst.value
        entry.updated_at = now
        stamp_processing_window(entry, src, dst, now)
        if remark:
            entry.remarks = append_remark(entry.remarks, remark)
            details["remark"] = remark

        event_type = event_type_for(dst)
        db.add(QueueEvent(
            entry_id=entry.id,
            previous_status=src.value,
            new_status=dst.value,
            actor_id=actor_id,
            actor_role=role,
            event_type=event_type,
            processing_start_at=entry.processing_started_at,
            processing_end_at=entry.processing_ended_at,
            details=details or None,
            created_at=now,
        ))

        transition = StatusTransition.from_entry(
            entry, src, event_type, actor_id=actor_id, actor_role=role, occurred_at=now
        )
        await db.commit()
        return entry, transition

    async def _set_lock_timeout(self, db: AsyncSession) -> None:
        # bounded wait for the row lock; only PostgreSQL knows lock_timeout
        if not self.lock_timeout_ms:
            return
        if db.get_bind().dialect.name != "postgresql":
            return
        await db.execute(text(f"SET LOCAL lock_timeout = '{int(self.lock_timeout_ms)}ms'"))

    def _after_commit(self, transition: StatusTransition) -> None:
        queue_status_transitions_total.labels(
            from_status=transition.previous_status.value,
            to_status=transition.new_status.value,
        ).inc()
        log.info(
            "queue_status_changed",
            extra={
                "entry_id": transition.entry_id,
                "from": transition.previous_status.value,
                "to": transition.new_status.value,
                "actor_id": transition.actor_id,
                "event_type": transition.event_type,
            },
        )

        task = asyncio.create_task(self._run_side_effects(transition))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _run_side_effects(self, transition: StatusTransition) -> None:
        for name, side_effect in (
            ("publish", self.publisher.publish),
            ("analytics", self.recorder.record),
        ):
            try:
                await asyncio.wait_for(side_effect(transition), self.side_effect_timeout_s)
            except Exception:
                side_effect_failures_total.labels(side_effect=name).inc()
                log.exception(
                    "queue_side_effect_failed",
                    extra={"side_effect": name, "entry_id": transition.entry_id},
                )

    async def drain(self) -> None:
        """Wait for scheduled side effects (app shutdown, tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ---------- call next ----------

    async def call_next(
        self,
        db: AsyncSession,
        *,
        actor_id: Optional[int] = None,
        actor_role: Union[Role, str, None] = None,
    ) -> QueueEntry:
        """
        Call the lowest waiting token to the counter. The candidate row is
        locked with SKIP LOCKED, so two counters calling at once get two
        different customers; the move itself goes through change_status.
        """
        role = getattr(actor_role, "value", actor_role)
        if role is not None and not is_allowed_for_role(role, Status.waiting, Status.serving):
            raise self._denied("call_next", actor_id, role)

        try:
            await self._set_lock_timeout(db)
            folded = func.lower(func.trim(QueueEntry.status))
            entry_id = (await db.execute(
                select(QueueEntry.id)
                # legacy values wait in line too
                .where(or_(folded == Status.waiting.value, folded.not_in(valid_statuses())))
                .order_by(QueueEntry.token_number, QueueEntry.id)
                .limit(1)
                .with_for_update(skip_locked=True)
            )).scalar_one_or_none()
        except SQLAlchemyError as exc:
            await db.rollback()
            log.exception("queue_call_next_failed", extra={"actor_id": actor_id})
            raise PersistenceError() from exc

        if entry_id is None:
            await db.rollback()
            raise EntryNotFound(NO_ONE_WAITING)

        # same transaction: the row lock is still ours
        return await self.change_status(
            db, entry_id, Status.serving, actor_id=actor_id, actor_role=role
        )

    def _denied(self, action: str, actor_id: Optional[int], role) -> AccessDenied:
        queue_status_rejections_total.labels(reason=AccessDenied.__name__).inc()
        log.warning(
            "queue_action_denied",
            extra={"action": action, "actor_id": actor_id, "actor_role": role},
        )
        return AccessDenied()

    # ---------- queue reset ----------

    async def reset_queue(
        self,
        db: AsyncSession,
        *,
        actor_id: Optional[int] = None,
        actor_role: Union[Role, str, None] = None,
        reason: Optional[str] = None,
    ) -> QueueResetResult:
        """
        End-of-day reset: cancel every entry that is still open. Each entry
        goes through change_status, so the graph, RBAC and the audit ledger
        apply as for a manual cancel.
        """
        role = getattr(actor_role, "value", actor_role)
        if not can_reset_queue(role):
            raise self._denied("reset_queue", actor_id, role)

        terminal = [s.value for s in TERMINAL_STATUSES]
        ids = (await db.execute(
            select(QueueEntry.id)
            .where(QueueEntry.status.not_in(terminal))
            .order_by(QueueEntry.token_number, QueueEntry.id)
        )).scalars().all()
        # release the read transaction before per-entry transactions
        await db.commit()

        note = f"Queue reset: {reason or DEFAULT_RESET_REASON}"
        cancelled = skipped = 0
        for entry_id in ids:
            try:
                await self.change_status(
                    db,
                    entry_id,
                    Status.cancelled,
                    actor_id=actor_id,
                    actor_role=role,
                    remark=note,
                )
            except (EntryNotFound, InvalidTransition):
                # closed by someone else since we listed it
                skipped += 1
                continue
            cancelled += 1

        result = QueueResetResult(cancelled=cancelled, skipped=skipped)
        log.info(
            "queue_reset",
            extra={"actor_id": actor_id, "cancelled": cancelled, "skipped": skipped, "reason": reason},
        )
        return result


# ---------- read side ----------


async def get_entry(db: AsyncSession, entry_id: int) -> QueueEntry:
    entry = (await db.execute(select(QueueEntry).where(QueueEntry.id == entry_id))).scalar_one_or_none()
    if entry is None:
        raise EntryNotFound()
    return entry


async def list_entries(
    db: AsyncSession,
    status: Optional[Status] = None,
    limit: int = 200,
    offset: int = 0,
) -> list[QueueEntry]:
    q = select(QueueEntry)
    if status is not None:
        folded = func.lower(func.trim(QueueEntry.status))
        if status == Status.waiting:
            # legacy values read as 'waiting'
            q = q.where(or_(folded == status.value, folded.not_in(valid_statuses())))
        else:
            q = q.where(folded == status.value)
    q = q.order_by(QueueEntry.token_number, QueueEntry.id).limit(limit).offset(offset)
    return list((await db.execute(q)).scalars().all())


async def list_display_entries(db: AsyncSession) -> list[QueueEntry]:
    """Public monitor view: serving first, then waiting, each by token."""
    folded = func.lower(func.trim(QueueEntry.status))
    serving_first = case((folded == Status.serving.value, 0), else_=1)
    q = (
        select(QueueEntry)
        # legacy values read as waiting, so they wait on the monitor too
        .where(or_(folded.in_([s.value for s in DISPLAY_STATUSES]), folded.not_in(valid_statuses())))
        .order_by(serving_first, QueueEntry.token_number, QueueEntry.id)
    )
    return list((await db.execute(q)).scalars().all())


async def list_events(db: AsyncSession, entry_id: int) -> list[QueueEvent]:
    await get_entry(db, entry_id)
    rows = (await db.execute(
        select(QueueEvent)
        .where(QueueEvent.entry_id == entry_id)
        .order_by(QueueEvent.created_at, QueueEvent.id)
    )).scalars().all()
    return list(rows)
