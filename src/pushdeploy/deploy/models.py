"""Models for targets, artifacts and deployment runs."""

from __future__ import annotations

import string
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# Fields a restart_command or probe URL may reference
RESTART_PLACEHOLDERS = frozenset({"service", "app_dir", "release"})
PROBE_PLACEHOLDERS = frozenset({"host"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def check_placeholders(template: str, allowed: frozenset) -> str:
    """Reject templates that ``str.format`` could not render from ``allowed``.

    Literal braces must be doubled, as for ``str.format``.
    """
    try:
        fields = [name for _, name, _, _ in string.Formatter().parse(template) if name is not None]
    except ValueError as exc:
        raise ValueError(f"malformed template {template!r}: {exc}") from exc
    unknown = sorted(set(fields) - allowed)
    if unknown:
        names = ", ".join("{%s}" % f for f in unknown)
        raise ValueError(f"unknown placeholder(s) {names} in {template!r}; allowed: {', '.join(sorted(allowed))}")
    return template


class TargetState(str, Enum):
    """Registry lifecycle state of a target."""

    UNKNOWN = "unknown"
    STAGING = "staging"
    INSTALLING = "installing"
    RUNNING = "running"
    UNHEALTHY = "unhealthy"
    ROLLED_BACK = "rolled_back"


# States in which a target serves a verified, known-good artifact
KNOWN_GOOD_STATES = {TargetState.RUNNING, TargetState.ROLLED_BACK}


class TargetPhase(str, Enum):
    """Per (run, target) orchestration phase."""

    STAGED = "staged"
    UPLOADING = "uploading"
    INSTALLING = "installing"
    STARTING = "starting"
    VERIFYING = "verifying"
    RUNNING = "running"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FATAL = "fatal"
    CANCELLED = "cancelled"


TERMINAL_PHASES = {
    TargetPhase.RUNNING,
    TargetPhase.FAILED,
    TargetPhase.ROLLED_BACK,
    TargetPhase.FATAL,
    TargetPhase.CANCELLED,
}


class RunStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


class StageName(str, Enum):
    UPLOAD = "upload"
    INSTALL = "install"
    START = "start"
    VERIFY = "verify"


class AuthRef(BaseModel):
    """Reference to SSH credentials. Secrets are resolved at connect time."""

    username: str
    key_path: Optional[str] = None
    key_env: Optional[str] = None
    password_env: Optional[str] = None


class HealthProbe(BaseModel):
    """HTTP readiness probe for a deployed process."""

    url: str = Field(..., description="Probe URL, may contain {host}")
    expected_status: Tuple[int, int] = (200, 399)
    interval: float = Field(2.0, gt=0)
    timeout: float = Field(60.0, gt=0)
    request_timeout: float = Field(5.0, gt=0)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return check_placeholders(v, PROBE_PLACEHOLDERS)

    @field_validator("expected_status")
    @classmethod
    def validate_range(cls, v: Tuple[int, int]) -> Tuple[int, int]:
        low, high = v
        if low > high:
            raise ValueError("expected_status low bound exceeds high bound")
        return v

    def render_url(self, host: str) -> str:
        return self.url.format(host=host)


class Target(BaseModel):
    """One remote deployment destination."""

    id: str
    host: str
    port: int = 22
    auth: AuthRef
    app_dir: str
    service: Optional[str] = None
    restart_command: str = "sudo systemctl restart {service}"
    python: str = "python3"
    tags: List[str] = Field(default_factory=list)
    health: Optional[HealthProbe] = None

    # Registry-owned fields
    state: TargetState = TargetState.UNKNOWN
    current_fingerprint: Optional[str] = None
    current_revision: Optional[str] = None
    active_run: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_restart_command(self) -> "Target":
        try:
            check_placeholders(self.restart_command, RESTART_PLACEHOLDERS)
        except ValueError as exc:
            raise ValueError(f"target {self.id}: restart_command has {exc}") from exc
        if "{service}" in self.restart_command and not self.service:
            raise ValueError(f"target {self.id}: restart_command needs 'service'")
        return self

    @property
    def releases_dir(self) -> str:
        return f"{self.app_dir.rstrip('/')}/releases"

    def release_dir(self, fingerprint: str) -> str:
        return f"{self.releases_dir}/{fingerprint}"


class Artifact(BaseModel):
    """Immutable, fingerprinted snapshot of deployable source."""

    model_config = ConfigDict(frozen=True)

    fingerprint: str
    revision: str
    created_at: datetime = Field(default_factory=utcnow)
    source: Optional[str] = None
    bundle_path: Optional[str] = None
    file_count: int = 0

    @property
    def short(self) -> str:
        return self.fingerprint[:12]


class StageResult(BaseModel):
    """Outcome of one remote operation. Never mutated after write."""

    model_config = ConfigDict(frozen=True)

    target_id: str
    stage: StageName
    operation: str
    exit_status: Optional[int] = None
    duration_seconds: float = 0.0
    output: str = ""
    started_at: datetime = Field(default_factory=utcnow)

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class PhaseTransition(BaseModel):
    phase: TargetPhase
    at: datetime = Field(default_factory=utcnow)


class TargetOutcome(BaseModel):
    target_id: str
    phase: TargetPhase = TargetPhase.STAGED
    transitions: List[PhaseTransition] = Field(
        default_factory=lambda: [PhaseTransition(phase=TargetPhase.STAGED)]
    )
    previous_state: TargetState = TargetState.UNKNOWN
    previous_fingerprint: Optional[str] = None
    previous_revision: Optional[str] = None
    attempts: Dict[str, int] = Field(default_factory=dict)
    error: Optional[str] = None
    error_type: Optional[str] = None
    last_result: Optional[StageResult] = None

    def advance(self, phase: TargetPhase) -> None:
        self.phase = phase
        self.transitions.append(PhaseTransition(phase=phase))

    @property
    def phases(self) -> List[TargetPhase]:
        return [t.phase for t in self.transitions]

    @property
    def done(self) -> bool:
        return self.phase in TERMINAL_PHASES


class DeploymentRun(BaseModel):
    """One end-to-end orchestration attempt across one or more targets."""

    id: str
    artifact: Optional[Artifact] = None
    rollback_of: Optional[str] = None
    target_ids: List[str]
    targets: Dict[str, TargetOutcome] = Field(default_factory=dict)
    results: List[StageResult] = Field(default_factory=list)
    status: RunStatus = RunStatus.PENDING
    cancel_requested: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    # Process that drives the run; its target leases die with it
    owner_pid: Optional[int] = None

    def record(self, result: StageResult) -> None:
        self.results.append(result)
        outcome = self.targets.get(result.target_id)
        if outcome is not None:
            outcome.last_result = result
        self.touch()

    def touch(self) -> None:
        self.updated_at = utcnow()

    @property
    def finished(self) -> bool:
        return self.status not in (RunStatus.PENDING, RunStatus.IN_PROGRESS)

    def aggregate_status(self) -> RunStatus:
        """Roll per-target outcomes up into a run status."""
        phases = [o.phase for o in self.targets.values()]
        if phases and all(p == TargetPhase.RUNNING for p in phases):
            return RunStatus.SUCCEEDED
        if any(p in (TargetPhase.FAILED, TargetPhase.FATAL) for p in phases):
            return RunStatus.FAILED
        if any(p == TargetPhase.ROLLED_BACK for p in phases):
            return RunStatus.ROLLED_BACK
        if any(p == TargetPhase.CANCELLED for p in phases):
            return RunStatus.CANCELLED
        return RunStatus.FAILED


class RepositoryConfig(BaseModel):
    """Maps a source repository to a local checkout and a target selector."""

    name: str
    source: str
    targets: str = "all"


class Inventory(BaseModel):
    targets: List[Target] = Field(default_factory=list)
    repositories: List[RepositoryConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_ids(self) -> "Inventory":
        seen = set()
        for target in self.targets:
            if target.id in seen:
                raise ValueError(f"duplicate target id: {target.id}")
            seen.add(target.id)
        return self

    def repository(self, name: str) -> Optional[RepositoryConfig]:
        for repo in self.repositories:
            if repo.name == name:
                return repo
        return None
