"""Service entry point for pushdeploy."""

import asyncio
import signal
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from pushdeploy import __version__
from pushdeploy.api.health import router as health_router
from pushdeploy.api.middleware import (
    setup_error_handling,
    setup_logging_middleware,
    setup_metrics_middleware,
)
from pushdeploy.api.runs import router as runs_router
from pushdeploy.api.webhook import router as webhook_router
from pushdeploy.core.config import Settings
from pushdeploy.core.exceptions import ConfigurationError
from pushdeploy.deploy.executor import RemoteExecutor, SSHExecutor
from pushdeploy.deploy.health import HealthVerifier
from pushdeploy.deploy.orchestrator import DeploymentOrchestrator, RetryPolicy
from pushdeploy.deploy.queue import DeploymentQueue, DeploymentWorker
from pushdeploy.deploy.registry import TargetRegistry
from pushdeploy.deploy.stager import ArtifactStager
from pushdeploy.deploy.store import RunStore
from pushdeploy.utils.logging import setup_logging

logger = structlog.get_logger()


@dataclass
class Components:
    registry: TargetRegistry
    store: RunStore
    stager: ArtifactStager
    orchestrator: DeploymentOrchestrator


def build_components(
    settings: Settings,
    executor: Optional[RemoteExecutor] = None,
    verifier: Optional[HealthVerifier] = None,
) -> Components:
    """Wire registry, journal, stager and orchestrator from settings."""
    state_dir = Path(settings.state_dir)
    store = RunStore(state_dir)
    registry = TargetRegistry(state_path=state_dir / "targets.json", runs=store)
    inventory_path = Path(settings.inventory_path)
    if inventory_path.exists():
        registry.reload(inventory_path)
    else:
        logger.warning("Inventory file not found, starting with no targets", path=str(inventory_path))

    stager = ArtifactStager(Path(settings.staging_dir), settings.stage_ignore_list)
    if executor is None:
        executor = SSHExecutor(
            settings.connect_timeout,
            settings.operation_timeout,
            strict_host_keys=settings.strict_host_keys,
        )
    orchestrator = DeploymentOrchestrator(
        registry=registry,
        executor=executor,
        verifier=verifier or HealthVerifier(),
        store=store,
        stager=stager,
        retry=RetryPolicy(settings.max_retries, settings.backoff_base, settings.backoff_max),
    )
    return Components(registry, store, stager, orchestrator)


def _install_reload_handler(app: FastAPI) -> None:
    """Reload the inventory on SIGHUP."""

    def _reload():
        path = Path(app.state.settings.inventory_path)
        try:
            app.state.registry.reload(path)
        except ConfigurationError as exc:
            logger.error("Inventory reload failed", path=str(path), error=str(exc))

    try:
        asyncio.get_event_loop().add_signal_handler(signal.SIGHUP, _reload)
    except (NotImplementedError, AttributeError, RuntimeError):
        logger.debug("SIGHUP reload not supported on this platform")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting pushdeploy", version=__version__)
    settings = app.state.settings

    if getattr(app.state, "orchestrator", None) is None:
        components = build_components(settings)
        app.state.registry = components.registry
        app.state.stager = components.stager
        app.state.orchestrator = components.orchestrator
    app.state.queue = DeploymentQueue(settings.queue_size)
    app.state.worker = DeploymentWorker(
        app.state.queue,
        app.state.orchestrator,
        app.state.registry,
        app.state.stager,
    )
    app.state.worker.start()
    _install_reload_handler(app)
    logger.info("Deployment worker started", targets=len(app.state.registry.list()))

    yield

    logger.info("Shutting down pushdeploy")
    await app.state.worker.stop()
    await app.state.orchestrator.shutdown()


def create_app(settings: Settings | None = None, components: Optional[Components] = None) -> FastAPI:
    """Create FastAPI application."""
    if settings is None:
        settings = Settings()

    setup_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="pushdeploy",
        version=__version__,
        description="Push-triggered deployment orchestration over SSH",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.orchestrator = None
    app.state.queue = None
    app.state.worker = None
    if components is not None:
        app.state.registry = components.registry
        app.state.stager = components.stager
        app.state.orchestrator = components.orchestrator

    setup_error_handling(app)
    setup_logging_middleware(app)
    setup_metrics_middleware(app)

    app.include_router(health_router, tags=["health"])
    app.include_router(webhook_router, tags=["trigger"])
    app.include_router(runs_router, tags=["runs"])

    if settings.metrics_enabled:
        metrics_app = make_asgi_app()
        app.mount("/metrics", metrics_app)

    return app


def run(settings: Settings | None = None):
    """Run the HTTP service."""
    settings = settings or Settings()

    def handle_sigterm(signum, frame):
        logger.info("Received SIGTERM, initiating graceful shutdown")
        sys.exit(0)

    signal.signal(signal.SIGTERM, handle_sigterm)

    config = uvicorn.Config(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_config=None,  # We handle logging ourselves
        access_log=False,  # Handled by middleware
    )

    server = uvicorn.Server(config)
    server.run()


if __name__ == "__main__":
    run()
