"""Remote execution of stage operations over SSH."""

from __future__ import annotations

import io
import os
import socket
import time
from typing import Callable, List, Optional

import paramiko
import structlog

from pushdeploy.core.exceptions import (
    AuthenticationError,
    ConnectivityError,
    RemoteCommandError,
)
from pushdeploy.deploy.models import StageResult, Target, utcnow
from pushdeploy.deploy.stages import CommandOutput, RemoteSession, Stage


logger = structlog.get_logger()

OUTPUT_TAIL_CHARS = 4000
_POLL_INTERVAL = 0.05
_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)

# Errors that mean the transport went away, not that the command failed
TRANSPORT_ERRORS = (paramiko.SSHException, EOFError, ConnectionError, socket.timeout)


class OperationTimedOut(Exception):
    """Raised by a session when a command outlives its timeout."""


def _tail(stdout: str, stderr: str) -> str:
    combined = stdout
    if stderr:
        if combined and not combined.endswith("\n"):
            combined += "\n"
        combined += stderr
    return combined[-OUTPUT_TAIL_CHARS:]


class SSHSession:
    """A single authenticated paramiko connection."""

    def __init__(self, client: paramiko.SSHClient):
        self.client = client
        self._sftp: Optional[paramiko.SFTPClient] = None

    def _sftp_client(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            self._sftp = self.client.open_sftp()
        return self._sftp

    def exec(self, command: str, timeout: float) -> CommandOutput:
        transport = self.client.get_transport()
        if transport is None or not transport.is_active():
            raise ConnectionError("SSH transport is not active")

        channel = transport.open_session(timeout=timeout)
        try:
            channel.exec_command(command)
            deadline = time.monotonic() + timeout
            out: List[bytes] = []
            err: List[bytes] = []
            # Drain both streams while waiting so a chatty command cannot
            # stall on a full channel window
            while True:
                while channel.recv_ready():
                    out.append(channel.recv(32768))
                while channel.recv_stderr_ready():
                    err.append(channel.recv_stderr(32768))
                if (
                    channel.exit_status_ready()
                    and not channel.recv_ready()
                    and not channel.recv_stderr_ready()
                ):
                    break
                if time.monotonic() > deadline:
                    raise OperationTimedOut(f"command exceeded {timeout:.0f}s")
                time.sleep(_POLL_INTERVAL)
            status = channel.recv_exit_status()
        finally:
            channel.close()

        return (
            status,
            b"".join(out).decode("utf-8", errors="replace"),
            b"".join(err).decode("utf-8", errors="replace"),
        )

    def put(self, local_path: str, remote_path: str) -> None:
        self._sftp_client().put(local_path, remote_path)

    def exists(self, remote_path: str) -> bool:
        try:
            self._sftp_client().stat(remote_path)
        except IOError:
            return False
        return True

    def close(self) -> None:
        if self._sftp is not None:
            self._sftp.close()
            self._sftp = None
        self.client.close()


def _load_key(pem: str) -> paramiko.PKey:
    last_error: Optional[Exception] = None
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(pem))
        except paramiko.SSHException as exc:
            last_error = exc
    raise AuthenticationError(f"Unsupported private key: {last_error}")


class UnknownHostKey(paramiko.SSHException):
    """Host is missing from known_hosts and unknown hosts are refused."""


class RejectUnknownHost(paramiko.MissingHostKeyPolicy):
    def missing_host_key(self, client, hostname, key):
        raise UnknownHostKey(f"{hostname} is not in known_hosts ({key.get_name()})")


def connect_ssh(target: Target, connect_timeout: float, strict_host_keys: bool = False) -> SSHSession:
    """Open an authenticated session to ``target``.

    Raises:
        AuthenticationError: credential missing, rejected, or host key mismatch.
        ConnectivityError: host unreachable or SSH handshake failed.
    """
    auth = target.auth
    kwargs = {}
    if auth.key_path:
        kwargs["key_filename"] = os.path.expanduser(auth.key_path)
    elif auth.key_env:
        pem = os.getenv(auth.key_env)
        if not pem:
            raise AuthenticationError(f"Environment variable {auth.key_env} is not set", code="missing_credential")
        kwargs["pkey"] = _load_key(pem)
    if auth.password_env:
        password = os.getenv(auth.password_env)
        if password is None:
            raise AuthenticationError(f"Environment variable {auth.password_env} is not set", code="missing_credential")
        kwargs["password"] = password

    client = paramiko.SSHClient()
    client.load_system_host_keys()
    if strict_host_keys:
        client.set_missing_host_key_policy(RejectUnknownHost())
    else:
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    logger.debug("SSH connecting", host=target.host, port=target.port, username=auth.username)
    try:
        client.connect(
            hostname=target.host,
            port=target.port,
            username=auth.username,
            timeout=connect_timeout,
            banner_timeout=connect_timeout,
            auth_timeout=connect_timeout,
            allow_agent=not kwargs,
            look_for_keys=not kwargs,
            **kwargs,
        )
    except (paramiko.AuthenticationException, paramiko.BadHostKeyException) as exc:
        client.close()
        raise AuthenticationError(f"SSH authentication to {target.host} failed: {exc}") from exc
    except UnknownHostKey as exc:
        client.close()
        raise AuthenticationError(str(exc), code="unknown_host_key") from exc
    except (paramiko.SSHException, OSError, EOFError) as exc:
        client.close()
        raise ConnectivityError(f"Cannot reach {target.host}:{target.port}: {exc}") from exc

    return SSHSession(client)


class RemoteExecutor:
    """Runs a stage's operations on one target."""

    def run(self, target: Target, stage: Stage) -> List[StageResult]:
        raise NotImplementedError


class SSHExecutor(RemoteExecutor):
    """Executes stages over one paramiko session per call.

    Operations run in order and the first non-zero exit aborts the rest of
    the stage. Calls block; the orchestrator runs them in a worker thread.
    """

    def __init__(
        self,
        connect_timeout: float = 10.0,
        operation_timeout: float = 600.0,
        strict_host_keys: bool = False,
        session_factory: Optional[Callable[[Target], RemoteSession]] = None,
    ):
        self.connect_timeout = connect_timeout
        self.operation_timeout = operation_timeout
        self.strict_host_keys = strict_host_keys
        self._session_factory = session_factory or self._connect

    def _connect(self, target: Target) -> RemoteSession:
        return connect_ssh(target, self.connect_timeout, self.strict_host_keys)

    def run(self, target: Target, stage: Stage) -> List[StageResult]:
        session = self._session_factory(target)
        results: List[StageResult] = []
        try:
            for op in stage.operations:
                started_at = utcnow()
                start = time.monotonic()
                try:
                    status, stdout, stderr = op.apply(session, self.operation_timeout)
                except OperationTimedOut as exc:
                    results.append(
                        StageResult(
                            target_id=target.id,
                            stage=stage.name,
                            operation=op.name,
                            exit_status=None,
                            duration_seconds=time.monotonic() - start,
                            output=str(exc),
                            started_at=started_at,
                        )
                    )
                    raise RemoteCommandError(
                        f"{op.name} on {target.id} timed out",
                        stderr=str(exc),
                        results=results,
                        code="operation_timeout",
                    ) from exc
                except TRANSPORT_ERRORS as exc:
                    raise ConnectivityError(f"Connection to {target.host} lost during {op.name}: {exc}") from exc
                except OSError as exc:
                    # SFTP failures surface as IOError with the remote reason
                    results.append(
                        StageResult(
                            target_id=target.id,
                            stage=stage.name,
                            operation=op.name,
                            exit_status=None,
                            duration_seconds=time.monotonic() - start,
                            output=str(exc),
                            started_at=started_at,
                        )
                    )
                    raise RemoteCommandError(
                        f"{op.name} on {target.id} failed: {exc}", stderr=str(exc), results=results
                    ) from exc

                result = StageResult(
                    target_id=target.id,
                    stage=stage.name,
                    operation=op.name,
                    exit_status=status,
                    duration_seconds=time.monotonic() - start,
                    output=_tail(stdout, stderr),
                    started_at=started_at,
                )
                results.append(result)
                logger.info(
                    "Remote operation finished",
                    target=target.id,
                    stage=stage.name.value,
                    operation=op.name,
                    exit_status=status,
                    duration_seconds=round(result.duration_seconds, 3),
                )
                if status != 0:
                    raise RemoteCommandError(
                        f"{op.name} on {target.id} exited with status {status}",
                        exit_status=status,
                        stderr=stderr,
                        results=results,
                    )
        finally:
            session.close()
        return results
