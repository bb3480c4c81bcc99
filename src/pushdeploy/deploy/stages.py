"""Declarative, idempotent stage operations.

Each operation describes a desired remote state rather than a step to
replay. Applying an operation twice against a host that already matches
leaves the host unchanged.

Remote layout per target::

    <app_dir>/releases/<fingerprint>/      unpacked bundle + .venv
    <app_dir>/current -> releases/<fp>     active release
"""

from __future__ import annotations

import posixpath
import shlex
from dataclasses import dataclass, field
from typing import List, Protocol, Tuple

from pushdeploy.deploy.models import Artifact, StageName, Target
from pushdeploy.deploy.stager import FINGERPRINT_MARKER


# (exit_status, stdout, stderr)
CommandOutput = Tuple[int, str, str]


class RemoteSession(Protocol):
    """What operations need from an authenticated connection."""

    def exec(self, command: str, timeout: float) -> CommandOutput: ...

    def put(self, local_path: str, remote_path: str) -> None: ...

    def exists(self, remote_path: str) -> bool: ...

    def close(self) -> None: ...


class Operation:
    """One shell-level remote operation."""

    name = "operation"

    def command(self) -> str:
        raise NotImplementedError

    def apply(self, session: RemoteSession, timeout: float) -> CommandOutput:
        return session.exec(self.command(), timeout)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name}>"


@dataclass(repr=False)
class EnsureDirectory(Operation):
    path: str
    name: str = "ensure-directory"

    def command(self) -> str:
        return f"mkdir -p {shlex.quote(self.path)}"


@dataclass(repr=False)
class UploadBundle(Operation):
    """Place an unpacked bundle at ``release_dir``, unless it is already there."""

    bundle_path: str
    release_dir: str
    fingerprint: str
    name: str = "upload-bundle"

    @property
    def marker(self) -> str:
        return posixpath.join(self.release_dir, FINGERPRINT_MARKER)

    def command(self) -> str:
        release = shlex.quote(self.release_dir)
        staging = shlex.quote(f"{self.release_dir}.partial")
        archive = shlex.quote(f"{self.release_dir}.tar.gz")
        return (
            f"rm -rf {staging} && mkdir -p {staging} && "
            f"tar -xzf {archive} -C {staging} && "
            f"rm -rf {release} && mv {staging} {release} && rm -f {archive}"
        )

    def apply(self, session: RemoteSession, timeout: float) -> CommandOutput:
        if session.exists(self.marker):
            return 0, f"release {self.fingerprint[:12]} already present\n", ""
        session.put(self.bundle_path, f"{self.release_dir}.tar.gz")
        return session.exec(self.command(), timeout)


@dataclass(repr=False)
class InstallRequirements(Operation):
    release_dir: str
    python: str = "python3"
    name: str = "install-requirements"

    def command(self) -> str:
        release = shlex.quote(self.release_dir)
        return (
            f"cd {release} && "
            f"(test -x .venv/bin/python || {shlex.quote(self.python)} -m venv .venv) && "
            "if [ -f requirements.txt ]; then "
            ".venv/bin/pip install --disable-pip-version-check -q -r requirements.txt; "
            "fi"
        )


@dataclass(repr=False)
class ActivateRelease(Operation):
    app_dir: str
    fingerprint: str
    name: str = "activate-release"

    def command(self) -> str:
        current = shlex.quote(posixpath.join(self.app_dir, "current"))
        release = shlex.quote(posixpath.join("releases", self.fingerprint))
        # -n replaces the link itself instead of descending into it
        return f"ln -sfn {release} {current}"


@dataclass(repr=False)
class RestartService(Operation):
    """Restart through the supervising process manager."""

    restart_command: str
    name: str = "restart-service"

    def command(self) -> str:
        return self.restart_command


@dataclass
class Stage:
    name: StageName
    operations: List[Operation] = field(default_factory=list)


def upload_stage(target: Target, artifact: Artifact) -> Stage:
    if not artifact.bundle_path:
        raise ValueError(f"artifact {artifact.short} has no staged bundle")
    return Stage(
        StageName.UPLOAD,
        [
            EnsureDirectory(target.releases_dir),
            UploadBundle(
                bundle_path=artifact.bundle_path,
                release_dir=target.release_dir(artifact.fingerprint),
                fingerprint=artifact.fingerprint,
            ),
        ],
    )


def install_stage(target: Target, fingerprint: str) -> Stage:
    return Stage(
        StageName.INSTALL,
        [InstallRequirements(target.release_dir(fingerprint), python=target.python)],
    )


def start_stage(target: Target, fingerprint: str) -> Stage:
    restart = target.restart_command.format(
        service=target.service or "",
        app_dir=target.app_dir,
        release=target.release_dir(fingerprint),
    )
    return Stage(
        StageName.START,
        [ActivateRelease(target.app_dir, fingerprint), RestartService(restart)],
    )

