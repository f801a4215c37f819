# queuedesk/api/routes/queue.py
from __future__ import annotations

import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ..deps import ActorDep, DBDep, QueueServiceDep, require_role
from queuedesk.core.logging import log_extra
from queuedesk.db.models import QueueStatusEnum as Status, RoleEnum as Role, utcnow
from queuedesk.schemas.queue import (
    DisplayEntryOut,
    ProcessingStatsOut,
    QueueEntryDetail,
    QueueEntryOut,
    QueueEventOut,
    QueueResetOut,
    QueueResetRequest,
    StatusChangeRequest,
)
from queuedesk.services import analytics
from queuedesk.services.errors import QueueError
from queuedesk.services.queue import get_entry, list_display_entries, list_entries, list_events
from queuedesk.services.statuses import normalize_status
from queuedesk.services.transitions import allowed_targets

router = APIRouter()
log = logging.getLogger(__name__)

ADMINS = (Role.admin, Role.super_admin)


def _http_error(e: QueueError) -> HTTPException:
    # stable message only, no internals
    return HTTPException(status_code=e.status_code, detail=e.message)


@router.get("", response_model=list[QueueEntryOut])
async def list_queue(
    db: DBDep,
    current: ActorDep,
    status_: Status | None = Query(default=None, alias="status"),
    limit: int = Query(default=200, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    return await list_entries(db, status_, limit=limit, offset=offset)


@router.get("/display", response_model=list[DisplayEntryOut])
async def display_queue(db: DBDep):
    """Public monitors: serving and waiting tokens only, no auth."""
    return await list_display_entries(db)


@router.post("/call-next", response_model=QueueEntryOut)
async def call_next(request: Request, db: DBDep, current: ActorDep, service: QueueServiceDep):
    try:
        entry = await service.call_next(db, actor_id=current.id, actor_role=current.role)
    except QueueError as e:
        raise _http_error(e)
    log.info(
        "queue_called_next",
        extra={**log_extra(request), "entry_id": entry.id, "token_number": entry.token_number},
    )
    return entry


@router.get(
    "/analytics/processing",
    response_model=list[ProcessingStatsOut],
    dependencies=[Depends(require_role(*ADMINS))],
)
async def processing_analytics(db: DBDep, days: int = Query(default=7, ge=1, le=90)):
    # buckets are UTC hours
    since = utcnow().date() - timedelta(days=days - 1)
    return await analytics.get_processing_stats(db, since)


@router.post(
    "/reset",
    response_model=QueueResetOut,
)
async def reset_queue(
    payload: QueueResetRequest,
    request: Request,
    db: DBDep,
    service: QueueServiceDep,
    current=Depends(require_role(*ADMINS)),
):
    try:
        result = await service.reset_queue(
            db, actor_id=current.id, actor_role=current.role, reason=payload.reason
        )
    except QueueError as e:
        raise _http_error(e)
    log.info("queue_reset_requested", extra={**log_extra(request), "actor_id": current.id})
    return QueueResetOut(cancelled=result.cancelled, skipped=result.skipped, message=result.message)


@router.get("/{entry_id}", response_model=QueueEntryDetail)
async def get_queue_entry(entry_id: int, db: DBDep, current: ActorDep):
    try:
        entry = await get_entry(db, entry_id)
    except QueueError as e:
        raise _http_error(e)
    out = QueueEntryOut.model_validate(entry)
    return QueueEntryDetail(
        **out.model_dump(),
        allowed_transitions=allowed_targets(normalize_status(entry.status).status, current.role),
    )


@router.get("/{entry_id}/events", response_model=list[QueueEventOut])
async def get_queue_entry_events(entry_id: int, db: DBDep, current: ActorDep):
    try:
        return await list_events(db, entry_id)
    except QueueError as e:
        raise _http_error(e)


@router.patch("/{entry_id}/status", response_model=QueueEntryOut)
async def change_queue_status(
    entry_id: int,
    payload: StatusChangeRequest,
    request: Request,
    db: DBDep,
    current: ActorDep,
    service: QueueServiceDep,
):
    """
    Status change for one entry:
      - 404 entry not found
      - 400 "Invalid status transition" (not in the graph, or terminal)
      - 403 "Access denied" (legal, but not for this role)
      - 500 storage failure, nothing was changed
    """
    try:
        entry = await service.change_status(
            db,
            entry_id,
            payload.status,
            actor_id=current.id,
            actor_role=current.role,
        )
    except QueueError as e:
        log.info(
            "queue_status_change_rejected",
            extra={**log_extra(request), "entry_id": entry_id, "reason": type(e).__name__},
        )
        raise _http_error(e)
    return entry
