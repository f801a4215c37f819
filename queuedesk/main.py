# queuedesk/main.py
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from queuedesk.api.routes import health, queue
from queuedesk.core.config import settings
from queuedesk.core.logging import setup_logging, RequestIdMiddleware
from queuedesk.db.session import AsyncSessionLocal, engine
from queuedesk.services.analytics import build_recorder
from queuedesk.services.errors import InvalidTransition
from queuedesk.services.events import build_publisher
from queuedesk.services.queue import QueueStatusService

setup_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    publisher = build_publisher(settings)
    app.state.queue_service = QueueStatusService(
        publisher,
        build_recorder(settings, AsyncSessionLocal),
        lock_timeout_ms=settings.status_lock_timeout_ms,
        side_effect_timeout_s=settings.side_effect_timeout_s,
    )
    yield
    await app.state.queue_service.drain()
    aclose = getattr(publisher, "aclose", None)
    if aclose is not None:
        await aclose()
    await engine.dispose()


app = FastAPI(
    title="Queue Desk",
    version="0.1.0",
    docs_url="/api/docs",
    redoc_url=None,
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

# ==== Middlewares ====
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestIdMiddleware)


# ==== Errors ====
@app.exception_handler(RequestValidationError)
async def status_validation_handler(request: Request, exc: RequestValidationError):
    # an unknown status string in the body is a business-rule failure, not a schema one
    for err in exc.errors():
        loc = err.get("loc", ())
        if len(loc) >= 2 and loc[0] == "body" and loc[-1] == "status" and err.get("type") == "value_error":
            return JSONResponse(status_code=InvalidTransition.status_code, content={"detail": InvalidTransition.message})
    return await request_validation_exception_handler(request, exc)


# ==== API under /api ====
app.include_router(health.router, prefix="/api",       tags=["health"])
app.include_router(queue.router,  prefix="/api/queue", tags=["queue"])
