# queuedesk/core/logging.py
import logging
import logging.config
import uuid
from typing import Any, Mapping
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# attributes every LogRecord has; anything else came in through extra=
_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class ExtraFormatter(logging.Formatter):
    """
    Plain line format plus the structured fields passed via extra=:
    2026-10-18 09:30:00,123 INFO queuedesk.services.queue queue_status_changed entry_id=5 from=waiting to=serving
    """

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = {k: v for k, v in vars(record).items() if k not in _RESERVED and not k.startswith("_")}
        if not fields:
            return line
        pairs = " ".join(f"{k}={v}" for k, v in fields.items())
        head, sep, tail = line.partition("\n")
        return f"{head} {pairs}{sep}{tail}"


def setup_logging(level: str = "INFO") -> None:
    """One logging config for the API, the RQ worker, uvicorn and the scripts."""
    level = level.upper()
    handlers = ["default"]
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "extra": {
                "()": ExtraFormatter,
                "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
            },
        },
        "handlers": {
            "default": {"class": "logging.StreamHandler", "formatter": "extra"},
        },
        "loggers": {
            "": {"handlers": handlers, "level": level},
            **{
                name: {"handlers": handlers, "level": level, "propagate": False}
                for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "rq.worker")
            },
            # SQL echo only when explicitly debugging
            "sqlalchemy.engine": {"level": "WARNING"},
        },
    })


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    X-Request-ID for tracing a status change across API logs and worker jobs:
    taken from the incoming header or generated, echoed in the response and
    kept on request.state for log_extra().
    """

    header_name = "X-Request-ID"

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(self.header_name) or uuid.uuid4().hex
        request.state.request_id = request_id

        response: Response = await call_next(request)
        response.headers[self.header_name] = request_id
        return response


def log_extra(request: Request) -> Mapping[str, Any]:
    """
    Route helper:
    log.info("queue_status_change_rejected", extra={**log_extra(request), "entry_id": 5})
    """
    rid = getattr(request.state, "request_id", None)
    return {"request_id": rid} if rid else {}
