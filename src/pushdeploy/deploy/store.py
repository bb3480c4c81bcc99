"""On-disk journal of deployment run snapshots."""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

import structlog
from pydantic import ValidationError

from pushdeploy.deploy.models import DeploymentRun


logger = structlog.get_logger()


class RunStore:
    """Persists one JSON snapshot per run under ``<state_dir>/runs``."""

    def __init__(self, state_dir: Path):
        self.runs_dir = Path(state_dir) / "runs"

    def _path(self, run_id: str) -> Path:
        if not run_id or "/" in run_id or run_id.startswith("."):
            raise ValueError(f"Invalid run id: {run_id!r}")
        return self.runs_dir / f"{run_id}.json"

    def save(self, run: DeploymentRun) -> None:
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(run.id)
        tmp_file = path.with_suffix(".tmp")
        tmp_file.write_text(run.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp_file, path)

    def load(self, run_id: str) -> Optional[DeploymentRun]:
        try:
            path = self._path(run_id)
            raw = path.read_text(encoding="utf-8")
        except (ValueError, FileNotFoundError):
            return None
        try:
            return DeploymentRun.model_validate_json(raw)
        except ValidationError:
            logger.warning("Corrupt run snapshot", run=run_id, path=str(path))
            return None

    def list(self, limit: int = 50) -> List[DeploymentRun]:
        """Most recently updated runs first."""
        if not self.runs_dir.exists():
            return []
        paths = sorted(self.runs_dir.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True)
        runs = []
        for path in paths[:limit]:
            run = self.load(path.stem)
            if run is not None:
                runs.append(run)
        return runs
