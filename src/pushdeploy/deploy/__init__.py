"""
Deployment primitives.

- TargetRegistry: targets, lifecycle state and per-target leases
- ArtifactStager: fingerprinted bundles of a source tree
- SSHExecutor: runs declarative stage operations over SSH
- HealthVerifier: HTTP readiness polling
- DeploymentOrchestrator: per-target stage pipelines with retry and rollback
- DeploymentQueue/DeploymentWorker: message passing from the trigger gateway
"""

from .models import (
    Artifact,
    DeploymentRun,
    RunStatus,
    StageResult,
    Target,
    TargetPhase,
    TargetState,
)
from .registry import TargetRegistry, load_inventory
from .stager import ArtifactStager
from .executor import RemoteExecutor, SSHExecutor
from .health import HealthVerifier
from .orchestrator import DeploymentOrchestrator, RetryPolicy
from .queue import DeploymentQueue, DeploymentRequest, DeploymentWorker
from .store import RunStore

__all__ = [
    "Artifact",
    "DeploymentRun",
    "RunStatus",
    "StageResult",
    "Target",
    "TargetPhase",
    "TargetState",
    "TargetRegistry",
    "load_inventory",
    "ArtifactStager",
    "RemoteExecutor",
    "SSHExecutor",
    "HealthVerifier",
    "DeploymentOrchestrator",
    "RetryPolicy",
    "DeploymentQueue",
    "DeploymentRequest",
    "DeploymentWorker",
    "RunStore",
]
