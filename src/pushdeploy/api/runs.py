"""Run and target query surface."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

import structlog
from fastapi import APIRouter, Depends, Request

from pushdeploy.api.deps import get_orchestrator, get_registry
from pushdeploy.deploy.models import DeploymentRun, Target
from pushdeploy.deploy.orchestrator import DeploymentOrchestrator
from pushdeploy.deploy.registry import TargetRegistry


router = APIRouter()
logger = structlog.get_logger()


def _summary(run: DeploymentRun) -> Dict[str, Any]:
    return {
        "id": run.id,
        "status": run.status.value,
        "fingerprint": run.artifact.fingerprint if run.artifact else None,
        "revision": run.artifact.revision if run.artifact else None,
        "rollbackOf": run.rollback_of,
        "targets": {tid: o.phase.value for tid, o in run.targets.items()},
        "createdAt": run.created_at.isoformat(),
        "updatedAt": run.updated_at.isoformat(),
    }


@router.get("/runs")
async def list_runs(orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)) -> List[Dict[str, Any]]:
    return [_summary(run) for run in orchestrator.list()]


@router.get("/runs/{run_id}", response_model=DeploymentRun)
async def get_run(run_id: str, orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)) -> DeploymentRun:
    return orchestrator.status(run_id)


@router.post("/runs/{run_id}/cancel", response_model=DeploymentRun, status_code=202)
async def cancel_run(run_id: str, orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)) -> DeploymentRun:
    return orchestrator.cancel(run_id)


@router.post("/runs/{run_id}/rollback", response_model=DeploymentRun, status_code=202)
async def rollback_run(run_id: str, orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)) -> DeploymentRun:
    return await orchestrator.rollback(run_id)


@router.get("/targets", response_model=List[Target])
async def list_targets(registry: TargetRegistry = Depends(get_registry)) -> List[Target]:
    return registry.list()


@router.get("/targets/{target_id}", response_model=Target)
async def get_target(target_id: str, registry: TargetRegistry = Depends(get_registry)) -> Target:
    return registry.get(target_id)


@router.post("/targets/reload")
async def reload_targets(req: Request, registry: TargetRegistry = Depends(get_registry)) -> Dict[str, Any]:
    path = Path(req.app.state.settings.inventory_path)
    registry.reload(path)
    logger.info("Inventory reloaded via API", path=str(path))
    return {"status": "reloaded", "targets": [t.id for t in registry.list()]}
