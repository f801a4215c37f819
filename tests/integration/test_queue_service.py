"""Tests for the status transition executor against an in-memory database."""

import asyncio
import logging
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from queuedesk.db.models import QueueEvent, QueueStatusEnum as Status, RoleEnum as Role, utcnow
from queuedesk.services.errors import AccessDenied, EntryNotFound, InvalidTransition, PersistenceError
from queuedesk.services.queue import (
    DEFAULT_RESET_REASON,
    NO_ONE_WAITING,
    QueueStatusService,
    get_entry,
    list_display_entries,
    list_entries,
    list_events,
)


async def _events(session_factory, entry_id: int) -> list[QueueEvent]:
    async with session_factory() as session:
        rows = await session.execute(
            select(QueueEvent).where(QueueEvent.entry_id == entry_id).order_by(QueueEvent.id)
        )
        return list(rows.scalars().all())


def _side_effect_failures(name: str) -> float:
    return REGISTRY.get_sample_value("queue_side_effect_failures_total", {"side_effect": name}) or 0.0


def _access_denials() -> float:
    return REGISTRY.get_sample_value("queue_status_rejections_total", {"reason": "AccessDenied"}) or 0.0


class StallingRecorder:
    """Analytics backend that never answers."""

    def __init__(self) -> None:
        self.started = asyncio.Event()

    async def record(self, transition) -> None:
        self.started.set()
        await asyncio.Event().wait()


# ===========================================
# SCENARIOS
# ===========================================


class TestScenarios:
    @pytest.mark.asyncio
    async def test_cashier_calls_waiting_entry(self, service, db_session, make_entry, load_entry, session_factory):
        entry = await make_entry(token_number=1)

        result = await service.change_status(db_session, entry.id, "serving", actor_id=7, actor_role=Role.cashier)

        assert result.status == "serving"
        assert (await load_entry(entry.id)).status == "serving"
        [event] = await _events(session_factory, entry.id)
        assert event.event_type == "called"
        assert (event.previous_status, event.new_status) == ("waiting", "serving")
        assert event.actor_id == 7
        assert event.actor_role == "cashier"

    @pytest.mark.asyncio
    async def test_cashier_starts_processing(self, service, db_session, make_entry, session_factory):
        entry = await make_entry(token_number=2, status="serving")

        result = await service.change_status(db_session, entry.id, Status.processing, actor_role=Role.cashier)

        assert result.status == "processing"
        assert result.processing_started_at is not None
        [event] = await _events(session_factory, entry.id)
        assert event.event_type == "processing_started"
        assert event.processing_start_at is not None
        assert event.processing_end_at is None

    @pytest.mark.asyncio
    async def test_admin_completes_processing(self, service, db_session, make_entry, session_factory):
        entry = await make_entry(
            token_number=3, status="processing", processing_started_at=utcnow() - timedelta(minutes=4)
        )

        result = await service.change_status(db_session, entry.id, "completed", actor_role=Role.admin)

        assert result.status == "completed"
        [event] = await _events(session_factory, entry.id)
        assert event.event_type == "served"
        assert event.processing_start_at is not None
        assert event.processing_end_at is not None

    @pytest.mark.asyncio
    async def test_completed_cannot_go_back_to_processing(self, service, db_session, make_entry):
        entry = await make_entry(token_number=4, status="completed")

        with pytest.raises(InvalidTransition):
            await service.change_status(db_session, entry.id, "processing", actor_role=Role.admin)

    @pytest.mark.asyncio
    async def test_cancelled_is_terminal(self, service, db_session, make_entry):
        entry = await make_entry(token_number=5, status="cancelled")

        with pytest.raises(InvalidTransition):
            await service.change_status(db_session, entry.id, "waiting", actor_role=Role.admin)

    @pytest.mark.asyncio
    async def test_sales_cannot_call_entries(self, service, db_session, make_entry, load_entry):
        entry = await make_entry(token_number=6)

        with pytest.raises(AccessDenied):
            await service.change_status(db_session, entry.id, "serving", actor_role=Role.sales)
        assert (await load_entry(entry.id)).status == "waiting"

    @pytest.mark.asyncio
    async def test_cashier_cannot_fast_track_to_processing(self, service, db_session, make_entry, load_entry):
        entry = await make_entry(token_number=7)

        with pytest.raises(AccessDenied):
            await service.change_status(db_session, entry.id, "processing", actor_role=Role.cashier)
        assert (await load_entry(entry.id)).status == "waiting"

    @pytest.mark.asyncio
    async def test_admin_may_fast_track_to_processing(self, service, db_session, make_entry):
        entry = await make_entry(token_number=8)

        result = await service.change_status(db_session, entry.id, "processing", actor_role=Role.admin)

        assert result.status == "processing"
        assert result.processing_started_at is not None


# ===========================================
# INVARIANTS
# ===========================================


class TestInvariants:
    @pytest.mark.asyncio
    async def test_failure_is_idempotent_and_mutates_nothing(
        self, service, publisher, db_session, make_entry, load_entry, session_factory
    ):
        entry = await make_entry(token_number=10)
        before = await load_entry(entry.id)

        for _ in range(2):
            with pytest.raises(InvalidTransition) as exc_info:
                await service.change_status(db_session, entry.id, "completed", actor_role=Role.admin)
            assert exc_info.value.message == "Invalid status transition"

        after = await load_entry(entry.id)
        assert after.status == before.status == "waiting"
        assert after.updated_at == before.updated_at
        assert after.remarks is None
        assert await _events(session_factory, entry.id) == []
        assert publisher.published == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("terminal", ["completed", "cancelled"])
    async def test_nothing_leaves_a_terminal_status(self, service, db_session, make_entry, terminal):
        entry = await make_entry(token_number=11, status=terminal)

        for target in Status:
            with pytest.raises(InvalidTransition):
                await service.change_status(db_session, entry.id, target, actor_role=Role.super_admin)

    @pytest.mark.asyncio
    async def test_processing_window_is_stamped_once(self, service, db_session, make_entry, load_entry):
        entry = await make_entry(token_number=12)

        await service.change_status(db_session, entry.id, "serving", actor_role=Role.cashier)
        assert (await load_entry(entry.id)).processing_started_at is None

        await service.change_status(db_session, entry.id, "processing", actor_role=Role.cashier)
        started = (await load_entry(entry.id)).processing_started_at
        assert started is not None

        await service.change_status(db_session, entry.id, "completed", actor_role=Role.admin)
        done = await load_entry(entry.id)
        assert done.processing_started_at == started
        assert done.processing_ended_at is not None
        assert done.processing_ended_at >= started

    @pytest.mark.asyncio
    async def test_cancel_from_processing_closes_the_window(self, service, db_session, make_entry, load_entry):
        entry = await make_entry(token_number=13, status="processing", processing_started_at=utcnow())

        await service.change_status(db_session, entry.id, "cancelled", actor_role=Role.cashier)

        assert (await load_entry(entry.id)).processing_ended_at is not None

    @pytest.mark.asyncio
    async def test_missing_entry(self, service, db_session):
        with pytest.raises(EntryNotFound) as exc_info:
            await service.change_status(db_session, 999, "serving", actor_role=Role.admin)
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_target_is_an_invalid_transition(self, service, db_session, make_entry):
        entry = await make_entry(token_number=14)

        with pytest.raises(InvalidTransition):
            await service.change_status(db_session, entry.id, "on_hold", actor_role=Role.admin)

    @pytest.mark.asyncio
    async def test_internal_caller_without_role_skips_rbac(self, service, db_session, make_entry):
        entry = await make_entry(token_number=15)

        result = await service.change_status(db_session, entry.id, "processing")

        assert result.status == "processing"


# ===========================================
# LEGACY STATUSES
# ===========================================


class TestLegacyStatus:
    @pytest.mark.asyncio
    async def test_legacy_status_transitions_from_waiting(
        self, service, db_session, make_entry, plant_status, load_entry, session_factory
    ):
        entry = await make_entry(token_number=20)
        await plant_status(entry.id, "on_hold")

        result = await service.change_status(db_session, entry.id, "serving", actor_role=Role.cashier)

        assert result.status == "serving"
        stored = await load_entry(entry.id)
        assert stored.status == "serving"
        assert 'Status auto-corrected from "on_hold" to "waiting"' in stored.remarks
        [event] = await _events(session_factory, entry.id)
        assert event.previous_status == "waiting"
        assert event.details["corrected_from"] == "on_hold"

    @pytest.mark.asyncio
    async def test_orm_writes_are_kept_inside_the_vocabulary(self, make_entry, load_entry):
        bogus = await make_entry(token_number=21, status="paused")
        folded = await make_entry(token_number=22, status=" Serving ")

        stored = await load_entry(bogus.id)
        assert stored.status == "waiting"
        assert stored.remarks == 'Status auto-corrected from "paused" to "waiting"'
        assert (await load_entry(folded.id)).status == "serving"

    @pytest.mark.asyncio
    async def test_waiting_filter_includes_legacy_rows(self, db_session, make_entry, plant_status):
        legacy = await make_entry(token_number=23)
        await plant_status(legacy.id, "on_hold")
        await make_entry(token_number=24, status="serving")
        waiting = await make_entry(token_number=25)

        rows = await list_entries(db_session, Status.waiting)

        assert [r.id for r in rows] == [legacy.id, waiting.id]


# ===========================================
# FAILURES AND SIDE EFFECTS
# ===========================================


class TestSideEffects:
    @pytest.mark.asyncio
    async def test_publisher_and_recorder_see_the_committed_transition(
        self, service, publisher, recorder, db_session, make_entry
    ):
        entry = await make_entry(token_number=30, status="serving")

        await service.change_status(db_session, entry.id, "processing", actor_id=3, actor_role=Role.cashier)
        await service.drain()

        [transition] = publisher.published
        assert recorder.recorded == [transition]
        assert transition.entry_id == entry.id
        assert transition.token_number == 30
        assert transition.previous_status == Status.serving
        assert transition.new_status == Status.processing
        assert transition.event_type == "processing_started"
        assert transition.silent is True

    @pytest.mark.asyncio
    async def test_side_effect_failures_do_not_fail_the_call(self, db_session, make_entry, load_entry):
        publisher = AsyncMock()
        publisher.publish.side_effect = RuntimeError("redis down")
        recorder = AsyncMock()
        recorder.record.side_effect = RuntimeError("worker queue down")
        service = QueueStatusService(publisher, recorder)
        entry = await make_entry(token_number=31)
        publish_before = _side_effect_failures("publish")
        analytics_before = _side_effect_failures("analytics")

        result = await service.change_status(db_session, entry.id, "serving", actor_role=Role.cashier)

        assert result.status == "serving"
        assert (await load_entry(entry.id)).status == "serving"
        await service.drain()
        publisher.publish.assert_awaited_once()
        recorder.record.assert_awaited_once()
        assert _side_effect_failures("publish") == publish_before + 1
        assert _side_effect_failures("analytics") == analytics_before + 1

    @pytest.mark.asyncio
    async def test_stalled_side_effect_does_not_hold_the_response(
        self, publisher, db_session, make_entry, load_entry
    ):
        recorder = StallingRecorder()
        service = QueueStatusService(publisher, recorder, side_effect_timeout_s=0.05)
        entry = await make_entry(token_number=33)
        analytics_before = _side_effect_failures("analytics")

        result = await asyncio.wait_for(
            service.change_status(db_session, entry.id, "serving", actor_role=Role.cashier), timeout=2
        )

        assert result.status == "serving"
        assert (await load_entry(entry.id)).status == "serving"
        await asyncio.wait_for(service.drain(), timeout=2)
        assert recorder.started.is_set()
        assert [t.entry_id for t in publisher.published] == [entry.id]
        assert _side_effect_failures("analytics") == analytics_before + 1

    @pytest.mark.asyncio
    async def test_commit_failure_is_a_persistence_error(
        self, service, publisher, db_session, make_entry, load_entry, session_factory
    ):
        entry = await make_entry(token_number=32)
        boom = OperationalError("COMMIT", {}, Exception("database is locked"))

        with patch.object(db_session, "commit", AsyncMock(side_effect=boom)):
            with pytest.raises(PersistenceError) as exc_info:
                await service.change_status(db_session, entry.id, "serving", actor_role=Role.cashier)

        assert exc_info.value.status_code == 500
        assert (await load_entry(entry.id)).status == "waiting"
        assert await _events(session_factory, entry.id) == []
        assert publisher.published == []


# ===========================================
# LOCK TIMEOUT
# ===========================================


class TestLockTimeout:
    @pytest.mark.asyncio
    async def test_sets_local_lock_timeout_on_postgres(self, db_session):
        service = QueueStatusService(lock_timeout_ms=2500)
        bind = db_session.get_bind()

        with patch.object(bind.dialect, "name", "postgresql"), \
                patch.object(db_session, "execute", AsyncMock()) as execute:
            await service._set_lock_timeout(db_session)

        [call] = execute.await_args_list
        assert str(call.args[0]) == "SET LOCAL lock_timeout = '2500ms'"

    @pytest.mark.asyncio
    async def test_other_dialects_are_skipped(self, db_session):
        service = QueueStatusService(lock_timeout_ms=2500)

        with patch.object(db_session, "execute", AsyncMock()) as execute:
            await service._set_lock_timeout(db_session)

        execute.assert_not_awaited()


# ===========================================
# QUEUE RESET
# ===========================================


class TestResetQueue:
    @pytest.mark.asyncio
    async def test_cancels_every_open_entry(self, service, publisher, db_session, make_entry, load_entry):
        open_entries = [
            await make_entry(token_number=40),
            await make_entry(token_number=41, status="serving"),
            await make_entry(token_number=42, status="processing", processing_started_at=utcnow()),
        ]
        done = await make_entry(token_number=43, status="completed")
        gone = await make_entry(token_number=44, status="cancelled")

        result = await service.reset_queue(db_session, actor_id=1, actor_role=Role.admin, reason="closing time")
        await service.drain()

        assert (result.cancelled, result.skipped) == (3, 0)
        assert result.message == "Queue reset: 3 entries cancelled, 0 skipped"
        for entry in open_entries:
            stored = await load_entry(entry.id)
            assert stored.status == "cancelled"
            assert stored.remarks == "Queue reset: closing time"
        assert (await load_entry(done.id)).status == "completed"
        assert (await load_entry(gone.id)).remarks is None
        assert [t.entry_id for t in publisher.published] == [e.id for e in open_entries]

    @pytest.mark.asyncio
    async def test_default_reason(self, service, db_session, make_entry, load_entry):
        entry = await make_entry(token_number=45)

        await service.reset_queue(db_session, actor_role=Role.super_admin)

        assert (await load_entry(entry.id)).remarks == f"Queue reset: {DEFAULT_RESET_REASON}"

    @pytest.mark.asyncio
    async def test_sales_may_not_reset(self, service, db_session, make_entry, load_entry):
        entry = await make_entry(token_number=46)

        with pytest.raises(AccessDenied):
            await service.reset_queue(db_session, actor_role=Role.sales)
        assert (await load_entry(entry.id)).status == "waiting"

    @pytest.mark.asyncio
    async def test_denied_reset_is_logged_and_counted(self, service, db_session, make_entry, caplog):
        await make_entry(token_number=47)
        denials_before = _access_denials()

        with caplog.at_level(logging.WARNING, logger="queuedesk.services.queue"):
            with pytest.raises(AccessDenied):
                await service.reset_queue(db_session, actor_id=9, actor_role=Role.sales)

        [record] = [r for r in caplog.records if r.getMessage() == "queue_action_denied"]
        assert record.levelno == logging.WARNING
        assert record.action == "reset_queue"
        assert record.actor_id == 9
        assert record.actor_role == "sales"
        assert _access_denials() == denials_before + 1


# ===========================================
# CALL NEXT
# ===========================================


class TestCallNext:
    @pytest.mark.asyncio
    async def test_calls_the_lowest_waiting_token(
        self, service, publisher, db_session, make_entry, load_entry, session_factory
    ):
        await make_entry(token_number=60, status="serving")
        await make_entry(token_number=61, status="processing", processing_started_at=utcnow())
        later = await make_entry(token_number=63)
        first = await make_entry(token_number=62)

        called = await service.call_next(db_session, actor_id=7, actor_role=Role.cashier)
        await service.drain()

        assert called.id == first.id
        assert called.status == "serving"
        assert (await load_entry(later.id)).status == "waiting"
        [event] = await _events(session_factory, first.id)
        assert event.event_type == "called"
        assert event.actor_id == 7
        assert [t.entry_id for t in publisher.published] == [first.id]

    @pytest.mark.asyncio
    async def test_successive_calls_walk_the_line(self, service, db_session, make_entry):
        for token in (70, 71, 72):
            await make_entry(token_number=token)

        tokens = [(await service.call_next(db_session, actor_role=Role.cashier)).token_number for _ in range(3)]

        assert tokens == [70, 71, 72]

    @pytest.mark.asyncio
    async def test_legacy_status_waits_in_line(self, service, db_session, make_entry, plant_status):
        legacy = await make_entry(token_number=73)
        await plant_status(legacy.id, "on_hold")
        await make_entry(token_number=74)

        called = await service.call_next(db_session, actor_role=Role.cashier)

        assert called.id == legacy.id
        assert called.status == "serving"

    @pytest.mark.asyncio
    async def test_empty_queue(self, service, db_session, make_entry):
        await make_entry(token_number=75, status="completed")

        with pytest.raises(EntryNotFound) as exc_info:
            await service.call_next(db_session, actor_role=Role.cashier)

        assert exc_info.value.message == NO_ONE_WAITING
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_sales_may_not_call_next(self, service, db_session, make_entry, load_entry, caplog):
        entry = await make_entry(token_number=76)

        with caplog.at_level(logging.WARNING, logger="queuedesk.services.queue"):
            with pytest.raises(AccessDenied):
                await service.call_next(db_session, actor_id=9, actor_role=Role.sales)

        assert (await load_entry(entry.id)).status == "waiting"
        assert any(getattr(r, "action", None) == "call_next" for r in caplog.records)


# ===========================================
# READ SIDE
# ===========================================


class TestReadSide:
    @pytest.mark.asyncio
    async def test_get_entry_missing(self, db_session):
        with pytest.raises(EntryNotFound):
            await get_entry(db_session, 404)

    @pytest.mark.asyncio
    async def test_list_events_in_order(self, service, db_session, make_entry):
        entry = await make_entry(token_number=50)
        await service.change_status(db_session, entry.id, "serving", actor_role=Role.cashier)
        await service.change_status(db_session, entry.id, "cancelled", actor_role=Role.cashier)

        events = await list_events(db_session, entry.id)

        assert [e.event_type for e in events] == ["called", "cancelled"]

    @pytest.mark.asyncio
    async def test_list_events_missing_entry(self, db_session):
        with pytest.raises(EntryNotFound):
            await list_events(db_session, 404)

    @pytest.mark.asyncio
    async def test_display_shows_serving_then_waiting(self, db_session, make_entry, plant_status):
        waiting_late = await make_entry(token_number=82)
        serving = await make_entry(token_number=85, status="serving")
        await make_entry(token_number=80, status="processing", processing_started_at=utcnow())
        await make_entry(token_number=79, status="completed")
        await make_entry(token_number=78, status="cancelled")
        legacy = await make_entry(token_number=81)
        await plant_status(legacy.id, "on_hold")

        rows = await list_display_entries(db_session)

        assert [r.id for r in rows] == [serving.id, legacy.id, waiting_late.id]
