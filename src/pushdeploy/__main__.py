"""CLI entrypoints (pushdeploy deploy, rollback, status, serve)."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from pushdeploy.core.config import Settings
from pushdeploy.core.exceptions import (
    ConfigurationError,
    RunNotFound,
    StagingError,
    TargetBusy,
    TargetNotFound,
)
from pushdeploy.deploy.models import DeploymentRun, RunStatus
from pushdeploy.deploy.store import RunStore
from pushdeploy.main import Components, build_components
from pushdeploy.utils.logging import setup_logging

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_UNKNOWN_RUN = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pushdeploy", description="Deployment orchestration over SSH")
    parser.add_argument("--inventory", help="Inventory YAML (overrides PUSHDEPLOY_INVENTORY_PATH)")
    parser.add_argument("--state-dir", help="State directory (overrides PUSHDEPLOY_STATE_DIR)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    cmd_deploy = sub.add_parser("deploy", help="Stage a source tree and deploy it")
    cmd_deploy.add_argument("--artifact", required=True, help="Path to the source tree")
    cmd_deploy.add_argument("--targets", required=True, help="'all', 'tag:<name>' or comma-separated ids")
    cmd_deploy.add_argument("--revision", default="local", help="Revision label recorded with the artifact")

    cmd_rollback = sub.add_parser("rollback", help="Restore the artifacts a run replaced")
    cmd_rollback.add_argument("--run", required=True, dest="run_id")

    cmd_status = sub.add_parser("status", help="Print a run snapshot")
    cmd_status.add_argument("--run", required=True, dest="run_id")

    cmd_serve = sub.add_parser("serve", help="Run the webhook and query service")
    cmd_serve.add_argument("--host")
    cmd_serve.add_argument("--port", type=int)

    return parser


def _settings(args: argparse.Namespace) -> Settings:
    overrides = {}
    if args.inventory:
        overrides["inventory_path"] = args.inventory
    if args.state_dir:
        overrides["state_dir"] = args.state_dir
    if getattr(args, "host", None):
        overrides["host"] = args.host
    if getattr(args, "port", None):
        overrides["port"] = args.port
    return Settings(**overrides)


def _print_run(run: DeploymentRun) -> None:
    print(run.model_dump_json(indent=2))


def _error(message: str) -> None:
    print(f"ERROR: {message}", file=sys.stderr)


async def _deploy(components: Components, source: Path, revision: str, target_ids: List[str]) -> DeploymentRun:
    loop = asyncio.get_event_loop()
    artifact = await loop.run_in_executor(None, components.stager.stage, source, revision)
    try:
        run = await components.orchestrator.submit(artifact, target_ids)
    except Exception:
        components.stager.release(artifact)
        raise
    return await components.orchestrator.wait(run.id)


async def _rollback(components: Components, run_id: str) -> DeploymentRun:
    run = await components.orchestrator.rollback(run_id)
    return await components.orchestrator.wait(run.id)


def cmd_deploy(args: argparse.Namespace, settings: Settings) -> int:
    try:
        components = build_components(settings)
    except ConfigurationError as exc:
        _error(str(exc))
        return EXIT_USAGE

    try:
        target_ids = components.registry.select(args.targets)
    except TargetNotFound as exc:
        _error(str(exc))
        return EXIT_USAGE
    if not target_ids:
        _error(f"Selector '{args.targets}' matched no targets")
        return EXIT_USAGE

    try:
        run = asyncio.run(_deploy(components, Path(args.artifact), args.revision, target_ids))
    except StagingError as exc:
        _error(f"Staging failed: {exc}")
        return EXIT_FAILED
    except TargetBusy as exc:
        _error(str(exc))
        return EXIT_FAILED

    _print_run(run)
    return EXIT_OK if run.status == RunStatus.SUCCEEDED else EXIT_FAILED


def cmd_rollback(args: argparse.Namespace, settings: Settings) -> int:
    try:
        components = build_components(settings)
    except ConfigurationError as exc:
        _error(str(exc))
        return EXIT_USAGE

    try:
        run = asyncio.run(_rollback(components, args.run_id))
    except (RunNotFound, TargetBusy, TargetNotFound) as exc:
        _error(str(exc))
        return EXIT_FAILED

    _print_run(run)
    return EXIT_OK if run.status == RunStatus.ROLLED_BACK else EXIT_FAILED


def cmd_status(args: argparse.Namespace, settings: Settings) -> int:
    run = RunStore(Path(settings.state_dir)).load(args.run_id)
    if run is None:
        _error(f"Unknown run: {args.run_id}")
        return EXIT_UNKNOWN_RUN
    _print_run(run)
    return EXIT_OK


def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    from pushdeploy.main import run

    run(settings)
    return EXIT_OK


COMMANDS = {
    "deploy": cmd_deploy,
    "rollback": cmd_rollback,
    "status": cmd_status,
    "serve": cmd_serve,
}


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = _settings(args)
    if args.cmd != "serve":
        # stdout carries the run snapshot
        setup_logging(settings.log_level, settings.log_format, stream=sys.stderr)
    return COMMANDS[args.cmd](args, settings)


def main():
    sys.exit(run_cli())


if __name__ == "__main__":
    main()
