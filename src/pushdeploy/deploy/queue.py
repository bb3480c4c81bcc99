"""Deployment request queue between the trigger gateway and the orchestrator."""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from pushdeploy.core.exceptions import PushDeployError, QueueUnavailable, StagingError, TargetBusy
from pushdeploy.deploy.models import utcnow
from pushdeploy.deploy.orchestrator import DeploymentOrchestrator
from pushdeploy.deploy.registry import TargetRegistry
from pushdeploy.deploy.stager import ArtifactStager
from pushdeploy.utils.logging import bind_run_context, clear_run_context


logger = structlog.get_logger()


class DeploymentRequest(BaseModel):
    """What the core needs from a push notification."""

    repository: str = Field(..., min_length=1)
    revision: str = Field(..., min_length=1)
    received_at: datetime = Field(default_factory=utcnow)
    delivery_id: Optional[str] = None


class DeploymentQueue:
    """Bounded queue of pending requests; rejects instead of blocking."""

    def __init__(self, maxsize: int = 100):
        self._queue: asyncio.Queue[DeploymentRequest] = asyncio.Queue(maxsize=maxsize)
        self.accepting = True

    def put(self, request: DeploymentRequest) -> None:
        if not self.accepting:
            raise QueueUnavailable("Deployment queue is not accepting requests")
        try:
            self._queue.put_nowait(request)
        except asyncio.QueueFull as exc:
            raise QueueUnavailable("Deployment queue is full") from exc

    async def get(self) -> DeploymentRequest:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    def qsize(self) -> int:
        return self._queue.qsize()


class DeploymentWorker:
    """Consumes requests: stage the repository's checkout, then submit it."""

    def __init__(
        self,
        queue: DeploymentQueue,
        orchestrator: DeploymentOrchestrator,
        registry: TargetRegistry,
        stager: ArtifactStager,
    ):
        self.queue = queue
        self.orchestrator = orchestrator
        self.registry = registry
        self.stager = stager
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self.queue.accepting = True
            self._task = asyncio.create_task(self._consume())

    async def stop(self) -> None:
        self.queue.accepting = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _consume(self) -> None:
        while True:
            request = await self.queue.get()
            try:
                await self.handle(request)
            except Exception:
                logger.exception("Deployment request failed", repository=request.repository)
            finally:
                # One worker task serves every request
                clear_run_context()
                self.queue.task_done()

    async def handle(self, request: DeploymentRequest) -> Optional[str]:
        """Turn one request into a submitted run. Returns the run id."""
        repo = self.registry.inventory.repository(request.repository)
        if repo is None:
            logger.warning("No repository configured, dropping request", repository=request.repository)
            return None

        loop = asyncio.get_event_loop()
        try:
            target_ids = self.registry.select(repo.targets)
            if not target_ids:
                logger.warning("Selector matched no targets", repository=repo.name, selector=repo.targets)
                return None
            # Hashing and tarring block, keep them off the event loop
            artifact = await loop.run_in_executor(None, self.stager.stage, Path(repo.source), request.revision)
        except StagingError as exc:
            logger.error("Staging failed", repository=repo.name, revision=request.revision, error=str(exc))
            return None

        try:
            run = await self.orchestrator.submit(artifact, target_ids)
        except TargetBusy as exc:
            self.stager.release(artifact)
            logger.warning("Targets busy, request dropped", repository=repo.name, error=str(exc))
            return None
        except PushDeployError:
            self.stager.release(artifact)
            raise
        bind_run_context(run_id=run.id)
        logger.info(
            "Request submitted",
            repository=repo.name,
            revision=request.revision,
            deliveryId=request.delivery_id,
        )
        return run.id
