"""HTTP API for pushdeploy."""

from .health import router as health_router
from .runs import router as runs_router
from .webhook import router as webhook_router

__all__ = [
    "health_router",
    "runs_router",
    "webhook_router",
]
