"""Accessors for components stored on the application state."""

from fastapi import HTTPException, Request

from pushdeploy.deploy.orchestrator import DeploymentOrchestrator
from pushdeploy.deploy.queue import DeploymentQueue, DeploymentWorker
from pushdeploy.deploy.registry import TargetRegistry


def _component(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(status_code=503, detail=f"{name} not initialized")
    return value


def get_orchestrator(request: Request) -> DeploymentOrchestrator:
    return _component(request, "orchestrator")


def get_registry(request: Request) -> TargetRegistry:
    return _component(request, "registry")


def get_queue(request: Request) -> DeploymentQueue:
    return _component(request, "queue")


def get_worker(request: Request) -> DeploymentWorker:
    return _component(request, "worker")
