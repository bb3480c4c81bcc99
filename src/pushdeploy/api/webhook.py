"""Trigger gateway: turns push notifications into queued deployment requests."""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import ValidationError

from pushdeploy.api.deps import get_queue, get_registry, get_worker
from pushdeploy.core.exceptions import QueueUnavailable
from pushdeploy.deploy.queue import DeploymentQueue, DeploymentRequest, DeploymentWorker
from pushdeploy.deploy.registry import TargetRegistry


router = APIRouter()
logger = structlog.get_logger()


def _require_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    if not secret:
        return  # if not configured, skip verification for local dev
    if not signature or not signature.startswith("sha256="):
        raise HTTPException(status_code=401, detail="Missing or invalid X-Hub-Signature-256 header")
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(signature.split("=", 1)[1], expected):
        raise HTTPException(status_code=401, detail="Signature mismatch")


def extract_request(payload: Any, delivery_id: Optional[str] = None) -> DeploymentRequest:
    """Pull ``{repository, revision}`` out of a push payload.

    Accepts GitHub push events (``repository.full_name`` and ``after``) and a
    flat ``{"repository": ..., "revision": ...}`` body.
    """
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Payload must be a JSON object")

    repository = payload.get("repository")
    if isinstance(repository, dict):
        repository = repository.get("full_name") or repository.get("name")

    revision = payload.get("revision") or payload.get("after")
    if not revision and isinstance(payload.get("head_commit"), dict):
        revision = payload["head_commit"].get("id")

    try:
        return DeploymentRequest(repository=repository, revision=revision, delivery_id=delivery_id)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Payload must name a repository and a revision")


@router.post("/webhook")
async def webhook_endpoint(
    req: Request,
    queue: DeploymentQueue = Depends(get_queue),
    worker: DeploymentWorker = Depends(get_worker),
    registry: TargetRegistry = Depends(get_registry),
    event: str | None = Header(default=None, alias="X-GitHub-Event"),
    signature: str | None = Header(default=None, alias="X-Hub-Signature-256"),
    delivery_id: str | None = Header(default=None, alias="X-GitHub-Delivery"),
) -> Dict[str, Any]:
    body = await req.body()
    settings = req.app.state.settings
    _require_signature(body, signature, settings.webhook_secret)

    if event == "ping":
        return {"status": "pong"}

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")

    if isinstance(payload, dict) and payload.get("deleted"):
        logger.info("Ignoring branch deletion push", ref=payload.get("ref"))
        return {"status": "ignored"}

    request = extract_request(payload, delivery_id)
    if registry.inventory.repository(request.repository) is None:
        raise HTTPException(status_code=404, detail=f"Repository not configured: {request.repository}")

    if not worker.running:
        raise QueueUnavailable("Deployment worker is not running")
    queue.put(request)

    logger.info(
        "Deployment request queued",
        repository=request.repository,
        revision=request.revision,
        deliveryId=delivery_id,
        queued=queue.qsize(),
    )
    return {
        "status": "queued",
        "repository": request.repository,
        "revision": request.revision,
        "queued": queue.qsize(),
    }
