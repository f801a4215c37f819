"""
Queue status vocabulary and the normalizer for legacy values.

Rows written before the current vocabulary (or through a path that bypassed
validation) may carry any string. Reading such a row must not break the queue,
so unknown values fall back to 'waiting', loudly: a WARNING with the raw value
and a Prometheus counter, so operators can trace the upstream corruption.
"""

from __future__ import annotations

import logging
from typing import NamedTuple, Optional

from queuedesk.core.metrics import queue_status_fallbacks_total
from queuedesk.db.models import QueueStatusEnum

log = logging.getLogger(__name__)

FALLBACK_STATUS = QueueStatusEnum.waiting

_BY_VALUE: dict[str, QueueStatusEnum] = {s.value: s for s in QueueStatusEnum}


class NormalizedStatus(NamedTuple):
    status: QueueStatusEnum
    was_fallback: bool


def _fold(raw: str) -> str:
    return raw.strip().casefold()


def normalize_status(raw: Optional[str]) -> NormalizedStatus:
    """
    Map any input to a valid status.
    Members of the vocabulary (any case, surrounding whitespace) pass through;
    None, blank and unknown values become 'waiting' with was_fallback=True.
    """
    if isinstance(raw, QueueStatusEnum):
        return NormalizedStatus(raw, False)

    if raw is not None:
        found = _BY_VALUE.get(_fold(str(raw)))
        if found is not None:
            return NormalizedStatus(found, False)

    log.warning(
        "queue_status_fallback",
        extra={"raw_status": raw, "fallback_status": FALLBACK_STATUS.value},
    )
    queue_status_fallbacks_total.inc()
    return NormalizedStatus(FALLBACK_STATUS, True)


def parse_status(raw: Optional[str]) -> QueueStatusEnum:
    """Strict variant for external input: no fallback, ValueError instead."""
    if isinstance(raw, QueueStatusEnum):
        return raw
    if not isinstance(raw, str):
        raise ValueError(f"Unknown queue status: {raw!r}")
    found = _BY_VALUE.get(_fold(raw))
    if found is None:
        raise ValueError(f"Unknown queue status: {raw!r}")
    return found


def is_valid_status(raw: Optional[str]) -> bool:
    if raw is None:
        return False
    return _fold(str(raw)) in _BY_VALUE


def valid_statuses() -> list[str]:
    return [s.value for s in QueueStatusEnum]
