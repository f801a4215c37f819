"""
Queue transitions service (business rules for status changes)

The transition graph and the role permission matrix live here as data.
Widening a role means editing ROLE_PERMISSIONS, not adding branches.
"""

from __future__ import annotations

from typing import FrozenSet, Optional, Tuple, Union

from queuedesk.db.models import QueueStatusEnum as Status, RoleEnum as Role
from queuedesk.services.errors import AccessDenied, InvalidTransition

Edge = Tuple[Status, Status]

TERMINAL_STATUSES: FrozenSet[Status] = frozenset({Status.completed, Status.cancelled})

_CANCELLABLE: FrozenSet[Status] = frozenset(s for s in Status if s not in TERMINAL_STATUSES)

# Allowed transitions (state machine)
LEGAL_TRANSITIONS: FrozenSet[Edge] = frozenset(
    {
        (Status.waiting, Status.serving),
        (Status.serving, Status.processing),
        (Status.processing, Status.completed),
        # fast-track straight to processing, admin only (see ROLE_PERMISSIONS)
        (Status.waiting, Status.processing),
    }
    | {(src, Status.cancelled) for src in _CANCELLABLE}
)

ROLE_PERMISSIONS: dict[Role, FrozenSet[Edge]] = {
    Role.super_admin: LEGAL_TRANSITIONS,
    Role.admin: LEGAL_TRANSITIONS,
    Role.cashier: frozenset(
        {
            (Status.waiting, Status.serving),
            (Status.serving, Status.processing),
        }
        | {(src, Status.cancelled) for src in _CANCELLABLE}
    ),
    # sales may look at the queue but never move it
    Role.sales: frozenset(),
}

# event_type written to queue_events, by target status
EVENT_TYPES: dict[Status, str] = {
    Status.serving: "called",
    Status.processing: "processing_started",
    Status.completed: "served",
    Status.cancelled: "cancelled",
}
DEFAULT_EVENT_TYPE = "status_changed"


def _role(role: Union[Role, str, None]) -> Optional[Role]:
    if role is None or isinstance(role, Role):
        return role
    try:
        return Role(role)
    except ValueError:
        return None


def is_terminal(status: Status) -> bool:
    return status in TERMINAL_STATUSES


def is_legal_transition(src: Status, dst: Status) -> bool:
    """Graph lookup only; same-status pairs are never legal."""
    return src != dst and (src, dst) in LEGAL_TRANSITIONS


def is_allowed_for_role(role: Union[Role, str], src: Status, dst: Status) -> bool:
    """
    Legal in the graph AND granted to the role.
    Unknown role strings have no permissions.
    """
    if not is_legal_transition(src, dst):
        return False
    resolved = _role(role)
    if resolved is None:
        return False
    return (src, dst) in ROLE_PERMISSIONS.get(resolved, frozenset())


def check_transition(src: Status, dst: Status, role: Union[Role, str, None] = None) -> None:
    """
    Raise InvalidTransition for edges outside the graph, AccessDenied for
    legal edges the role may not take. role=None skips the RBAC check and is
    reserved for internal callers.
    """
    if not is_legal_transition(src, dst):
        raise InvalidTransition()
    if role is not None and not is_allowed_for_role(role, src, dst):
        raise AccessDenied()


def allowed_targets(src: Status, role: Union[Role, str, None] = None) -> list[Status]:
    targets = [dst for (s, dst) in LEGAL_TRANSITIONS if s == src]
    if role is not None:
        targets = [dst for dst in targets if is_allowed_for_role(role, src, dst)]
    return sorted(targets, key=lambda s: s.value)


def event_type_for(dst: Status) -> str:
    return EVENT_TYPES.get(dst, DEFAULT_EVENT_TYPE)


def can_reset_queue(role: Union[Role, str, None]) -> bool:
    """Reset cancels everything still open, so the role must cancel from every open status."""
    if role is None:
        return True
    return all(is_allowed_for_role(role, src, Status.cancelled) for src in _CANCELLABLE)
