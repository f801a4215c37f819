# queuedesk/api/routes/health.py
from fastapi import APIRouter
from fastapi.responses import Response

from queuedesk.core.metrics import get_metrics_bytes, get_metrics_content_type

router = APIRouter()


@router.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@router.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: transitions, rejections, status fallbacks."""
    return Response(content=get_metrics_bytes(), media_type=get_metrics_content_type())
