# queuedesk/services/notifications.py
import logging
from typing import Any, Mapping

import redis
from rq import Queue
from rq import Retry

from queuedesk.core.config import settings

log = logging.getLogger(__name__)

HANDLER = "queuedesk.workers.rq_worker.handle_event"

_queue: Queue | None = None


def _get_queue() -> Queue:
    global _queue
    if _queue is None:
        conn = redis.from_url(
            settings.redis_url,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_socket_timeout,
        )
        _queue = Queue(settings.jobs_queue, connection=conn)
    return _queue


def enqueue(event_type: str, payload: Mapping[str, Any]) -> str | None:
    """
    Put an event on the jobs queue: the worker calls handle_event.
    Returns job.id, or None on failure (a broken Redis must not fail the
    status change that already committed).
    """
    q = _get_queue()

    kwargs: dict[str, Any] = {
        "job_timeout": 60,
        "retry": Retry(max=3, interval=[5, 15, 30]),
    }

    try:
        job = q.enqueue(
            HANDLER,
            event_type,
            dict(payload),
            **kwargs,
        )
        return getattr(job, "id", None)
    except Exception as e:
        log.exception("Failed to enqueue event '%s': %s", event_type, e)
        return None
