# queuedesk/workers/rq_worker.py
import asyncio
import hashlib
import hmac
import json
import logging
import os
from datetime import date
from typing import Any, Callable, Mapping

import redis
import requests
from rq import Queue, Worker
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from queuedesk.core.config import settings
from queuedesk.core.logging import setup_logging
from queuedesk.services.analytics import ANALYTICS_JOB, refresh_processing_stats
from queuedesk.services.events import AUDIT_JOB

logger = logging.getLogger("worker.queue_events")


def _sign(payload: Mapping[str, Any]) -> str | None:
    if not settings.webhook_secret:
        return None
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return hmac.new(settings.webhook_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _post(url: str, event_type: str, payload: Mapping[str, Any]) -> None:
    if not url:
        logger.debug("webhook_url_missing", extra={"event_type": event_type})
        return
    headers = {"Content-Type": "application/json", "X-QueueDesk-Event": event_type}
    sig = _sign(payload)
    if sig:
        headers["X-QueueDesk-Signature"] = f"sha256={sig}"
    r = requests.post(url, json=dict(payload), headers=headers, timeout=10)
    # non-2xx raises so RQ retries the job
    r.raise_for_status()
    logger.info("webhook_sent", extra={"event_type": event_type, "status": r.status_code})


def on_status_changed(payload: Mapping[str, Any]) -> None:
    logger.info(
        "status_changed",
        extra={
            "entry_id": payload.get("entry_id"),
            "from": payload.get("previous_status"),
            "to": payload.get("new_status"),
            "actor_id": payload.get("actor_id"),
        },
    )
    _post(settings.audit_webhook_url or "", AUDIT_JOB, payload)


async def _refresh(stat_date: date, stat_hour: int) -> None:
    # own engine: the job runs in a fresh event loop, outside the web process
    engine = create_async_engine(settings.database_url, future=True)
    session_maker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    try:
        async with session_maker() as db:
            await refresh_processing_stats(db, stat_date, stat_hour)
    finally:
        await engine.dispose()


def on_analytics_refresh(payload: Mapping[str, Any]) -> None:
    stat_date = date.fromisoformat(payload["stat_date"])
    stat_hour = int(payload["stat_hour"])
    logger.info("analytics_refresh", extra={"stat_date": payload["stat_date"], "stat_hour": stat_hour})
    asyncio.run(_refresh(stat_date, stat_hour))


EVENT_HANDLERS: dict[str, Callable[[Mapping[str, Any]], None]] = {
    AUDIT_JOB: on_status_changed,
    ANALYTICS_JOB: on_analytics_refresh,
}


def handle_event(event_type: str, payload: Mapping[str, Any] | None = None) -> None:
    handler = EVENT_HANDLERS.get(event_type)
    if not handler:
        logger.warning("unknown_event", extra={"event_type": event_type})
        return
    handler(payload or {})


def main() -> None:
    setup_logging(settings.log_level)
    logger.info("worker_starting", extra={"queue": settings.jobs_queue, "redis": settings.redis_url})
    conn = redis.from_url(settings.redis_url)
    queue = Queue(settings.jobs_queue, connection=conn)
    worker = Worker([queue], connection=conn, name=os.getenv("WORKER_NAME", "queue-events-worker"))
    worker.work(logging_level=logging.INFO)


if __name__ == "__main__":
    main()
