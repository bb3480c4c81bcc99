"""
Pytest configuration and fixtures for pushdeploy tests.
"""

import itertools
import threading
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Tuple

import pytest
from structlog.contextvars import clear_contextvars

from pushdeploy.core.exceptions import HealthCheckTimeout
from pushdeploy.deploy.executor import RemoteExecutor
from pushdeploy.deploy.models import (
    Artifact,
    AuthRef,
    StageResult,
    Target,
    TargetState,
)
from pushdeploy.deploy.orchestrator import DeploymentOrchestrator, RetryPolicy
from pushdeploy.deploy.registry import TargetRegistry
from pushdeploy.deploy.stages import ActivateRelease, InstallRequirements, Stage, UploadBundle


def make_target(target_id: str = "t1", **overrides) -> Target:
    fields = {
        "id": target_id,
        "host": f"{target_id}.internal",
        "auth": AuthRef(username="deploy", key_path="~/.ssh/id_ed25519"),
        "app_dir": "/srv/app",
        "service": "app",
    }
    fields.update(overrides)
    return Target(**fields)


def make_artifact(fingerprint: str = "f1", revision: str = "rev-1") -> Artifact:
    return Artifact(fingerprint=fingerprint, revision=revision, bundle_path=f"/tmp/{fingerprint}.tar.gz")


def mark_running(registry: TargetRegistry, target_id: str, fingerprint: str, revision: str = "prior") -> None:
    """Put a target into Running on ``fingerprint`` as a finished run would."""
    registry.acquire(target_id, "seed")
    registry.release(target_id, "seed", TargetState.RUNNING, fingerprint=fingerprint, revision=revision)


def stage_fingerprint(stage: Stage) -> Optional[str]:
    for op in stage.operations:
        if isinstance(op, (UploadBundle, ActivateRelease)):
            return op.fingerprint
        if isinstance(op, InstallRequirements):
            return Path(op.release_dir).name
    return None


class FakeExecutor(RemoteExecutor):
    """Records stage calls and raises scripted errors instead of touching SSH."""

    def __init__(self):
        self.calls: List[Tuple[str, str, Optional[str]]] = []
        self._failures: Dict[Tuple[str, str, Optional[str]], Iterator[Exception]] = {}
        self._gates: Dict[Tuple[str, Optional[str]], threading.Event] = {}
        self._lock = threading.Lock()

    def fail(self, target_id: str, stage: str, *errors: Exception, fingerprint: Optional[str] = None) -> None:
        """Raise ``errors`` in order on the next calls for that stage."""
        self._failures[(target_id, stage, fingerprint)] = iter(errors)

    def fail_always(self, target_id: str, stage: str, error: Exception) -> None:
        self._failures[(target_id, stage, None)] = itertools.repeat(error)

    def gate(self, stage: str, target_id: Optional[str] = None) -> threading.Event:
        """Block calls for ``stage`` (on one target, or all) until the event is set."""
        event = threading.Event()
        self._gates[(stage, target_id)] = event
        return event

    def calls_for(self, target_id: str, stage: Optional[str] = None) -> List[Tuple[str, str, Optional[str]]]:
        return [c for c in self.calls if c[0] == target_id and (stage is None or c[1] == stage)]

    def run(self, target: Target, stage: Stage) -> List[StageResult]:
        fingerprint = stage_fingerprint(stage)
        with self._lock:
            self.calls.append((target.id, stage.name.value, fingerprint))

        gate = self._gates.get((stage.name.value, target.id)) or self._gates.get((stage.name.value, None))
        if gate is not None:
            gate.wait(5)

        for key in ((target.id, stage.name.value, fingerprint), (target.id, stage.name.value, None)):
            errors = self._failures.get(key)
            if errors is None:
                continue
            error = next(errors, None)
            if error is not None:
                raise error

        return [
            StageResult(target_id=target.id, stage=stage.name, operation=op.name, exit_status=0, output="ok")
            for op in stage.operations
        ]


class FakeVerifier:
    """Health verifier that passes unless a target is marked unhealthy."""

    def __init__(self):
        self.unhealthy: Set[str] = set()
        self.verified: List[str] = []

    async def verify(self, target: Target) -> TargetState:
        self.verified.append(target.id)
        if target.id in self.unhealthy:
            raise HealthCheckTimeout(f"{target.id} not ready", code="health_timeout")
        return TargetState.RUNNING


@pytest.fixture(autouse=True)
def clear_log_context():
    """Keep bound correlation fields from leaking between tests."""
    yield
    clear_contextvars()


@pytest.fixture
def registry() -> TargetRegistry:
    registry = TargetRegistry()
    registry.register(make_target("t1", tags=["web"]))
    registry.register(make_target("t2", tags=["web", "canary"]))
    registry.register(make_target("t3", tags=["worker"]))
    return registry


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def orchestrator(registry, executor, verifier) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(
        registry=registry,
        executor=executor,
        verifier=verifier,
        retry=RetryPolicy(max_retries=3, backoff_base=0, backoff_max=0),
    )


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    root = tmp_path / "checkout"
    (root / "app").mkdir(parents=True)
    (root / "app" / "__init__.py").write_text("")
    (root / "app" / "server.py").write_text("from flask import Flask\napp = Flask(__name__)\n")
    (root / "requirements.txt").write_text("flask\n")
    return root


INVENTORY_TEMPLATE = """\
targets:
  - id: t1
    host: 10.0.0.11
    auth:
      username: deploy
      key_path: ~/.ssh/id_ed25519
    app_dir: /srv/shop
    service: shop
    tags: [web]
  - id: t2
    host: 10.0.0.12
    auth:
      username: deploy
      key_env: SHOP_DEPLOY_KEY
    app_dir: /srv/shop
    service: shop
    tags: [web]
repositories:
  - name: acme/shop
    source: {source}
    targets: tag:web
"""


@pytest.fixture
def inventory_file(tmp_path: Path, source_tree: Path) -> Path:
    path = tmp_path / "inventory.yaml"
    path.write_text(INVENTORY_TEMPLATE.format(source=source_tree))
    return path
