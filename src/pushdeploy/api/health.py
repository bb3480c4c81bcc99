"""Health check endpoints."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request

from pushdeploy import __version__

router = APIRouter()

START_TIME = datetime.now(timezone.utc)


@router.get("/health")
async def health_check(request: Request) -> Dict[str, Any]:
    """Service health plus trigger queue state."""
    worker = getattr(request.app.state, "worker", None)
    queue = getattr(request.app.state, "queue", None)
    return {
        "status": "healthy",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "started_at": START_TIME.isoformat(),
        "worker_running": bool(worker and worker.running),
        "queued": queue.qsize() if queue else 0,
    }
