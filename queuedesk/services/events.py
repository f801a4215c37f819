"""
Real-time publishing of committed status transitions.

The publisher is injected into the executor (built once in the app lifespan),
there is no process-wide emitter. Publishing is fire-and-forget: dashboards
that miss a message reconcile by refetching the entry.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

import redis.asyncio as redis

from queuedesk.db.models import QueueEntry, QueueStatusEnum as Status, utcnow
from queuedesk.services import notifications

log = logging.getLogger(__name__)

STATUS_CHANGED = "queue:status_changed"
AUDIT_JOB = "queue.status_changed"


def _iso(v: Optional[datetime]) -> Optional[str]:
    return v.isoformat() if v else None


@dataclass(frozen=True)
class StatusTransition:
    entry_id: int
    token_number: int
    previous_status: Status
    new_status: Status
    event_type: str
    actor_id: Optional[int] = None
    actor_role: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    processing_ended_at: Optional[datetime] = None
    occurred_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_entry(
        cls,
        entry: QueueEntry,
        previous: Status,
        event_type: str,
        *,
        actor_id: Optional[int] = None,
        actor_role: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> "StatusTransition":
        return cls(
            entry_id=entry.id,
            token_number=entry.token_number,
            previous_status=previous,
            new_status=Status(entry.status),
            event_type=event_type,
            actor_id=actor_id,
            actor_role=actor_role,
            processing_started_at=entry.processing_started_at,
            processing_ended_at=entry.processing_ended_at,
            occurred_at=occurred_at or utcnow(),
        )

    @property
    def enters_processing(self) -> bool:
        return self.new_status == Status.processing

    @property
    def leaves_processing(self) -> bool:
        return self.previous_status == Status.processing

    @property
    def silent(self) -> bool:
        """Processing edges are back-office moves: clients should not play a sound."""
        return self.enters_processing or self.leaves_processing

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": STATUS_CHANGED,
            "entry_id": self.entry_id,
            "token_number": self.token_number,
            "previous_status": self.previous_status.value,
            "new_status": self.new_status.value,
            "event_type": self.event_type,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "processing_started_at": _iso(self.processing_started_at),
            "processing_ended_at": _iso(self.processing_ended_at),
            "silent": self.silent,
            "timestamp": _iso(self.occurred_at),
        }


class EventPublisher(Protocol):
    async def publish(self, transition: StatusTransition) -> None: ...


class NullEventPublisher:
    """Used when real-time publishing is switched off."""

    async def publish(self, transition: StatusTransition) -> None:
        log.debug("publish_skipped", extra={"entry_id": transition.entry_id})


class RedisEventPublisher:
    """
    Two audiences:
      - the room channel (all open dashboards) via Redis pub/sub,
      - the global audit stream: the audit channel plus an RQ job, so the
        worker can forward it to the audit webhook.
    """

    def __init__(
        self,
        client: redis.Redis,
        *,
        room_channel: str = "queue:updates",
        audit_channel: str = "queue:audit",
        forward_audit_job: bool = True,
    ):
        self.client = client
        self.room_channel = room_channel
        self.audit_channel = audit_channel
        self.forward_audit_job = forward_audit_job

    async def publish(self, transition: StatusTransition) -> None:
        payload = transition.to_payload()
        message = json.dumps(payload, separators=(",", ":"))

        receivers = await self.client.publish(self.room_channel, message)
        await self.client.publish(self.audit_channel, message)
        log.info(
            "queue_status_published",
            extra={
                "entry_id": transition.entry_id,
                "to": transition.new_status.value,
                "silent": transition.silent,
                "receivers": receivers,
            },
        )

        if self.forward_audit_job:
            # sync RQ client, keep it off the event loop
            await asyncio.to_thread(notifications.enqueue, AUDIT_JOB, payload)

    async def aclose(self) -> None:
        await self.client.aclose()


def build_publisher(settings) -> EventPublisher:
    if not settings.realtime_enabled:
        return NullEventPublisher()
    client = redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout,
        socket_connect_timeout=settings.redis_socket_timeout,
    )
    return RedisEventPublisher(
        client,
        room_channel=settings.realtime_channel,
        audit_channel=settings.audit_channel,
    )
