"""Deployment orchestrator: drives per-target stage pipelines for a run."""

from __future__ import annotations

import asyncio
import os
import time
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

import structlog
from prometheus_client import Counter

from pushdeploy.core.exceptions import (
    AuthenticationError,
    ConnectivityError,
    FatalFailure,
    HealthCheckTimeout,
    RemoteCommandError,
    RunNotFound,
)
from pushdeploy.deploy.executor import RemoteExecutor
from pushdeploy.deploy.health import HealthVerifier
from pushdeploy.deploy.models import (
    KNOWN_GOOD_STATES,
    Artifact,
    DeploymentRun,
    RunStatus,
    StageName,
    StageResult,
    Target,
    TargetOutcome,
    TargetPhase,
    TargetState,
    utcnow,
)
from pushdeploy.deploy.registry import TargetRegistry
from pushdeploy.deploy.stager import ArtifactStager
from pushdeploy.deploy.stages import Stage, install_stage, start_stage, upload_stage
from pushdeploy.deploy.store import RunStore
from pushdeploy.utils.logging import bind_run_context

logger = structlog.get_logger()

STAGE_RESULTS = Counter(
    "pushdeploy_stage_results_total",
    "Remote stage outcomes",
    ["stage", "outcome"],
)

RUNS_TOTAL = Counter(
    "pushdeploy_runs_total",
    "Finished deployment runs",
    ["status"],
)

# Registry lifecycle state entered alongside each phase
_PHASE_STATE = {
    TargetPhase.UPLOADING: TargetState.STAGING,
    TargetPhase.INSTALLING: TargetState.INSTALLING,
    TargetPhase.STARTING: TargetState.INSTALLING,
    TargetPhase.VERIFYING: TargetState.INSTALLING,
    TargetPhase.ROLLING_BACK: TargetState.INSTALLING,
}

# Failures that end a target's pipeline
TARGET_FAILURES = (ConnectivityError, AuthenticationError, RemoteCommandError, HealthCheckTimeout)

Pipeline = Callable[[DeploymentRun, TargetOutcome, Target], Awaitable[None]]


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for connectivity failures."""

    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0

    def delay(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)


@dataclass
class RunHandle:
    run: DeploymentRun
    task: Optional[asyncio.Task] = None


class DeploymentOrchestrator:
    """Sequences stages per target, retries transient failures, rolls back.

    Targets within a run proceed independently and concurrently; within a
    target, stages run strictly in order. Blocking remote work is pushed to
    the default thread pool.
    """

    def __init__(
        self,
        registry: TargetRegistry,
        executor: RemoteExecutor,
        verifier: HealthVerifier,
        store: Optional[RunStore] = None,
        stager: Optional[ArtifactStager] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        self.registry = registry
        self.executor = executor
        self.verifier = verifier
        self.store = store
        self.stager = stager
        self.retry = retry or RetryPolicy()

        self.runs: Dict[str, RunHandle] = {}

    # ---------------------------------------------------------------- public

    async def submit(self, artifact: Artifact, target_ids: Iterable[str]) -> DeploymentRun:
        """Lease every target and start the run in the background.

        Raises:
            TargetBusy: a target is held by another run; nothing was leased.
            TargetNotFound: a target id is not registered.
        """
        run = DeploymentRun(
            id=self._new_run_id(),
            artifact=artifact,
            target_ids=self._unique(target_ids),
            owner_pid=os.getpid(),
        )
        snapshots = self._lease(run)
        for target_id, before in snapshots.items():
            known_good = before.state in KNOWN_GOOD_STATES and before.current_fingerprint is not None
            run.targets[target_id] = TargetOutcome(
                target_id=target_id,
                previous_state=before.state,
                previous_fingerprint=before.current_fingerprint if known_good else None,
                previous_revision=before.current_revision if known_good else None,
            )
        self._start(run, self._deploy_target)
        logger.info(
            "Deployment submitted",
            runId=run.id,
            fingerprint=artifact.short,
            revision=artifact.revision,
            targets=run.target_ids,
        )
        return self._snapshot(run)

    async def rollback(self, run_id: str) -> DeploymentRun:
        """Start a run that restores each target's pre-``run_id`` artifact."""
        source = self.status(run_id)
        run = DeploymentRun(
            id=self._new_run_id(),
            rollback_of=source.id,
            target_ids=list(source.target_ids),
            owner_pid=os.getpid(),
        )
        snapshots = self._lease(run)
        for target_id, before in snapshots.items():
            prior = source.targets.get(target_id)
            run.targets[target_id] = TargetOutcome(
                target_id=target_id,
                previous_state=before.state,
                previous_fingerprint=prior.previous_fingerprint if prior else None,
                previous_revision=prior.previous_revision if prior else None,
            )
        self._start(run, self._rollback_only)
        logger.info("Rollback submitted", runId=run.id, rollbackOf=source.id, targets=run.target_ids)
        return self._snapshot(run)

    def status(self, run_id: str) -> DeploymentRun:
        handle = self.runs.get(run_id)
        if handle is not None:
            return self._snapshot(handle.run)
        if self.store is not None:
            run = self.store.load(run_id)
            if run is not None:
                return run
        raise RunNotFound(f"Deployment run not found: {run_id}")

    def list(self) -> List[DeploymentRun]:
        runs = {h.run.id: self._snapshot(h.run) for h in self.runs.values()}
        if self.store is not None:
            for run in self.store.list():
                runs.setdefault(run.id, run)
        return sorted(runs.values(), key=lambda r: r.created_at, reverse=True)

    def cancel(self, run_id: str) -> DeploymentRun:
        """Stop issuing new stages for targets that have not begun starting."""
        handle = self.runs.get(run_id)
        if handle is None:
            # Known but finished in another process, or unknown
            return self.status(run_id)
        run = handle.run
        if not run.finished and not run.cancel_requested:
            run.cancel_requested = True
            run.touch()
            self._save(run)
            logger.info("Cancellation requested", runId=run_id)
        return self._snapshot(run)

    async def wait(self, run_id: str, timeout: Optional[float] = None) -> DeploymentRun:
        handle = self.runs.get(run_id)
        if handle is None:
            return self.status(run_id)
        if handle.task is not None:
            await asyncio.wait_for(asyncio.shield(handle.task), timeout)
        return self._snapshot(handle.run)

    async def shutdown(self) -> None:
        """Cancel in-flight runs cooperatively and wait for them to settle."""
        tasks = []
        for run_id, handle in list(self.runs.items()):
            if handle.task is not None and not handle.task.done():
                self.cancel(run_id)
                tasks.append(handle.task)
        if tasks:
            logger.info("Waiting for in-flight runs", count=len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

    # --------------------------------------------------------------- helpers

    @staticmethod
    def _new_run_id() -> str:
        return f"run-{uuid.uuid4().hex[:12]}"

    @staticmethod
    def _unique(target_ids: Iterable[str]) -> List[str]:
        ids = list(dict.fromkeys(target_ids))
        if not ids:
            raise ValueError("At least one target is required")
        return ids

    @staticmethod
    def _snapshot(run: DeploymentRun) -> DeploymentRun:
        return run.model_copy(deep=True)

    def _save(self, run: DeploymentRun) -> None:
        if self.store is not None:
            self.store.save(run)

    def _lease(self, run: DeploymentRun) -> Dict[str, Target]:
        """Acquire all targets for ``run`` or none of them."""
        acquired: Dict[str, Target] = {}
        try:
            for target_id in run.target_ids:
                acquired[target_id] = self.registry.acquire(target_id, run.id)
        except Exception:
            for target_id, before in acquired.items():
                self.registry.release(target_id, run.id, before.state)
            raise
        return acquired

    def _start(self, run: DeploymentRun, pipeline: Pipeline) -> None:
        handle = RunHandle(run=run)
        self.runs[run.id] = handle
        self._save(run)
        handle.task = asyncio.create_task(self._execute_run(run, pipeline))

    def _advance(self, run: DeploymentRun, outcome: TargetOutcome, phase: TargetPhase) -> None:
        outcome.advance(phase)
        state = _PHASE_STATE.get(phase)
        if state is not None:
            self.registry.transition(outcome.target_id, run.id, state)
        run.touch()
        self._save(run)
        logger.info("Target phase changed", phase=phase.value)

    async def _execute_run(self, run: DeploymentRun, pipeline: Pipeline) -> None:
        bind_run_context(run_id=run.id)
        run.status = RunStatus.IN_PROGRESS
        run.touch()
        self._save(run)
        try:
            await asyncio.gather(*(self._run_target(run, target_id, pipeline) for target_id in run.target_ids))
        finally:
            run.status = run.aggregate_status()
            run.finished_at = utcnow()
            run.touch()
            self._save(run)
            RUNS_TOTAL.labels(status=run.status.value).inc()
            if self.stager is not None and run.artifact is not None:
                self.stager.release(run.artifact)
            if self.store is not None:
                # The journal answers for finished runs from here on
                self.runs.pop(run.id, None)
            logger.info(
                "Deployment run finished",
                status=run.status.value,
                targets={tid: o.phase.value for tid, o in run.targets.items()},
            )

    async def _run_target(self, run: DeploymentRun, target_id: str, pipeline: Pipeline) -> None:
        # Runs in its own task, so the bound target id stays local to it
        bind_run_context(run_id=run.id, target_id=target_id)
        outcome = run.targets[target_id]
        try:
            target = self.registry.get(target_id)
            await pipeline(run, outcome, target)
        except Exception as exc:
            logger.exception("Target pipeline crashed")
            outcome.error = str(exc)
            outcome.error_type = exc.__class__.__name__
            if not outcome.done:
                self._advance(run, outcome, TargetPhase.FAILED)
            if self.registry.get(target_id).active_run == run.id:
                self.registry.release(target_id, run.id, TargetState.UNHEALTHY)

    # ------------------------------------------------------------- pipelines

    async def _deploy_target(self, run: DeploymentRun, outcome: TargetOutcome, target: Target) -> None:
        artifact = run.artifact
        plan = [
            (TargetPhase.UPLOADING, upload_stage(target, artifact)),
            (TargetPhase.INSTALLING, install_stage(target, artifact.fingerprint)),
            (TargetPhase.STARTING, start_stage(target, artifact.fingerprint)),
        ]
        try:
            for phase, stage in plan:
                # Once starting, the target runs to completion or failure
                if run.cancel_requested:
                    self._cancel_target(run, outcome)
                    return
                self._advance(run, outcome, phase)
                await self._run_stage(run, outcome, target, stage)

            self._advance(run, outcome, TargetPhase.VERIFYING)
            await self._verify(run, target)
        except TARGET_FAILURES as exc:
            await self._handle_failure(run, outcome, target, exc)
            return

        self._advance(run, outcome, TargetPhase.RUNNING)
        self.registry.release(
            target.id,
            run.id,
            TargetState.RUNNING,
            fingerprint=artifact.fingerprint,
            revision=artifact.revision,
        )
        logger.info("Target running", fingerprint=artifact.short, revision=artifact.revision)

    async def _rollback_only(self, run: DeploymentRun, outcome: TargetOutcome, target: Target) -> None:
        if not outcome.previous_fingerprint:
            outcome.error = "No known-good artifact to roll back to"
            outcome.error_type = "FatalFailure"
            self._advance(run, outcome, TargetPhase.FAILED)
            self.registry.release(target.id, run.id, outcome.previous_state)
            logger.warning("Nothing to roll back to")
            return
        await self._rollback_target(run, outcome, target)

    def _cancel_target(self, run: DeploymentRun, outcome: TargetOutcome) -> None:
        self._advance(run, outcome, TargetPhase.CANCELLED)
        # The active release was never switched, so the old state still holds
        self.registry.release(outcome.target_id, run.id, outcome.previous_state)
        logger.info("Target cancelled before start")

    async def _handle_failure(
        self, run: DeploymentRun, outcome: TargetOutcome, target: Target, exc: Exception
    ) -> None:
        outcome.error = str(exc)
        outcome.error_type = exc.__class__.__name__
        self._advance(run, outcome, TargetPhase.FAILED)
        logger.error("Target deployment failed", error=str(exc), error_type=outcome.error_type)

        if outcome.previous_fingerprint:
            await self._rollback_target(run, outcome, target)
        else:
            self.registry.release(target.id, run.id, TargetState.UNHEALTHY)

    async def _rollback_target(self, run: DeploymentRun, outcome: TargetOutcome, target: Target) -> None:
        fingerprint = outcome.previous_fingerprint
        self._advance(run, outcome, TargetPhase.ROLLING_BACK)
        logger.warning("Rolling back", fingerprint=fingerprint[:12])
        try:
            await self._run_stage(run, outcome, target, install_stage(target, fingerprint), label="rollback-install")
            await self._run_stage(run, outcome, target, start_stage(target, fingerprint), label="rollback-start")
        except (ConnectivityError, AuthenticationError, RemoteCommandError) as exc:
            fatal = FatalFailure(
                f"Rollback of {target.id} to {fingerprint[:12]} failed: {exc}",
                code="rollback_failed",
            )
            outcome.error = str(fatal)
            outcome.error_type = fatal.__class__.__name__
            self._advance(run, outcome, TargetPhase.FATAL)
            self.registry.release(target.id, run.id, TargetState.UNHEALTHY)
            logger.critical("Rollback failed, operator intervention required", error=str(exc))
            return

        self._advance(run, outcome, TargetPhase.ROLLED_BACK)
        self.registry.release(
            target.id,
            run.id,
            TargetState.ROLLED_BACK,
            fingerprint=fingerprint,
            revision=outcome.previous_revision,
        )
        logger.info("Target rolled back", fingerprint=fingerprint[:12])

    # ---------------------------------------------------------------- stages

    async def _run_stage(
        self,
        run: DeploymentRun,
        outcome: TargetOutcome,
        target: Target,
        stage: Stage,
        label: Optional[str] = None,
    ) -> List[StageResult]:
        """Run one stage, retrying only on connectivity errors."""
        label = label or stage.name.value
        loop = asyncio.get_event_loop()
        attempt = 0
        while True:
            attempt += 1
            outcome.attempts[label] = attempt
            try:
                results = await loop.run_in_executor(None, self.executor.run, target, stage)
            except ConnectivityError as exc:
                STAGE_RESULTS.labels(stage=stage.name.value, outcome="connectivity_error").inc()
                if attempt > self.retry.max_retries:
                    logger.error("Stage failed after retries", stage=label, attempts=attempt, error=str(exc))
                    raise
                delay = self.retry.delay(attempt)
                logger.warning(
                    "Stage connectivity failure, retrying",
                    stage=label,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(exc),
                )
                await asyncio.sleep(delay)
                continue
            except RemoteCommandError as exc:
                for result in exc.results:
                    run.record(result)
                self._save(run)
                STAGE_RESULTS.labels(stage=stage.name.value, outcome="command_error").inc()
                raise
            except AuthenticationError:
                STAGE_RESULTS.labels(stage=stage.name.value, outcome="auth_error").inc()
                raise

            for result in results:
                run.record(result)
            self._save(run)
            STAGE_RESULTS.labels(stage=stage.name.value, outcome="ok").inc()
            return results

    async def _verify(self, run: DeploymentRun, target: Target) -> None:
        started_at = utcnow()
        start = time.monotonic()
        try:
            await self.verifier.verify(target)
        except HealthCheckTimeout as exc:
            run.record(
                StageResult(
                    target_id=target.id,
                    stage=StageName.VERIFY,
                    operation="health-probe",
                    exit_status=None,
                    duration_seconds=time.monotonic() - start,
                    output=str(exc),
                    started_at=started_at,
                )
            )
            self._save(run)
            STAGE_RESULTS.labels(stage=StageName.VERIFY.value, outcome="health_timeout").inc()
            raise
        run.record(
            StageResult(
                target_id=target.id,
                stage=StageName.VERIFY,
                operation="health-probe",
                exit_status=0,
                duration_seconds=time.monotonic() - start,
                output="ready",
                started_at=started_at,
            )
        )
        self._save(run)
        STAGE_RESULTS.labels(stage=StageName.VERIFY.value, outcome="ok").inc()
