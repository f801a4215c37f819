"""
Failures of the status transition engine.

Each carries the HTTP status and the stable, client-facing message; routes
translate them into HTTPException without adding internals.
"""


class QueueError(Exception):
    status_code: int = 500
    message: str = "Queue operation failed"

    def __init__(self, message: str | None = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class EntryNotFound(QueueError):
    status_code = 404
    message = "Queue entry not found"


class InvalidTransition(QueueError):
    """The edge is not in the transition graph (or the target is not a status)."""
    status_code = 400
    message = "Invalid status transition"


class AccessDenied(QueueError):
    """The edge is legal, but not for this role."""
    status_code = 403
    message = "Access denied"


class PersistenceError(QueueError):
    """Storage failed or the row lock timed out. Rolled back, safe to retry."""
    status_code = 500
    message = "Failed to update queue status"
