"""Target registry: inventory-backed records plus per-target leases."""

from __future__ import annotations

import fcntl
import json
import os
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

import structlog
import yaml
from pydantic import ValidationError

from pushdeploy.core.exceptions import ConfigurationError, TargetBusy, TargetNotFound
from pushdeploy.deploy.models import Inventory, Target, TargetState, utcnow
from pushdeploy.deploy.store import RunStore


logger = structlog.get_logger()

# Fields that survive an inventory reload
_RUNTIME_FIELDS = ("state", "current_fingerprint", "current_revision", "active_run", "updated_at")


def load_inventory(path: Path) -> Inventory:
    """Parse and validate an inventory YAML file."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Inventory not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid inventory YAML in {path}: {exc}") from exc
    try:
        return Inventory.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid inventory {path}: {exc}") from exc


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class TargetRegistry:
    """Holds deployment targets and their lifecycle state.

    Every state change goes through a per-target lock, so runs on unrelated
    targets never contend. ``acquire`` is a compare-and-set on the target's
    lease: the loser gets ``TargetBusy`` immediately instead of waiting.

    With a ``state_path``, the state file is the shared source of truth for
    every process using the same state directory. Mutations re-read the
    target's entry and write it back under an exclusive ``flock`` on
    ``<state_path>.lock``, so a ``serve`` process and a CLI invocation cannot
    both lease one target. ``runs`` lets the registry tell a live lease from
    one left behind by a finished or dead run.
    """

    def __init__(self, state_path: Optional[Path] = None, runs: Optional[RunStore] = None):
        self._targets: Dict[str, Target] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._table_lock = threading.Lock()
        self.state_path = Path(state_path) if state_path else None
        self.runs = runs
        self.inventory = Inventory()

    # ------------------------------------------------------------------ CRUD

    def _lock_for(self, target_id: str) -> threading.Lock:
        with self._table_lock:
            if target_id not in self._targets:
                raise TargetNotFound(f"Unknown target: {target_id}")
            return self._locks[target_id]

    def register(self, target: Target) -> Target:
        with self._table_lock:
            if target.id in self._targets:
                raise ConfigurationError(f"Target already registered: {target.id}")
            self._targets[target.id] = target.model_copy(deep=True)
            self._locks[target.id] = threading.Lock()
        with self._state_lock():
            self._write_state([self._targets[target.id]])
        logger.info("Target registered", target=target.id, host=target.host)
        return self.get(target.id)

    def get(self, target_id: str) -> Target:
        with self._lock_for(target_id):
            self._sync(self._read_state(), [target_id])
            return self._targets[target_id].model_copy(deep=True)

    def list(self) -> List[Target]:
        with self._table_lock:
            ids = sorted(self._targets)
        saved = self._read_state()
        targets = []
        for target_id in ids:
            try:
                lock = self._lock_for(target_id)
            except TargetNotFound:
                continue
            with lock:
                self._sync(saved, [target_id])
                targets.append(self._targets[target_id].model_copy(deep=True))
        return targets

    def update(self, target: Target) -> Target:
        """Replace a target's configuration, keeping its lifecycle fields."""
        with self._lock_for(target.id), self._state_lock():
            current = self._refresh(target.id)
            merged = target.model_copy(update={f: getattr(current, f) for f in _RUNTIME_FIELDS}, deep=True)
            self._targets[target.id] = merged
            self._write_state([merged])
        return self.get(target.id)

    def deregister(self, target_id: str) -> None:
        with self._lock_for(target_id):
            with self._state_lock():
                target = self._refresh(target_id)
                if target.active_run:
                    raise TargetBusy(target_id, target.active_run)
                self._write_state([], removed=[target_id])
            with self._table_lock:
                del self._targets[target_id]
                del self._locks[target_id]
        logger.info("Target deregistered", target=target_id)

    def select(self, selector: str) -> List[str]:
        """Resolve ``all``, ``tag:<name>`` or comma-separated ids to target ids."""
        selector = selector.strip()
        targets = self.list()
        if selector == "all":
            return [t.id for t in targets]
        if selector.startswith("tag:"):
            tag = selector[len("tag:"):]
            return [t.id for t in targets if tag in t.tags]
        wanted = [s.strip() for s in selector.split(",") if s.strip()]
        known = {t.id for t in targets}
        missing = [w for w in wanted if w not in known]
        if missing:
            raise TargetNotFound(f"Unknown target(s): {', '.join(missing)}")
        return wanted

    # ------------------------------------------------------------- lifecycle

    def compare_and_set(self, target_id: str, expected: Iterable[TargetState], new: TargetState) -> bool:
        """Set ``new`` only if the current state is one of ``expected``."""
        expected = set(expected)
        with self._lock_for(target_id), self._state_lock():
            target = self._refresh(target_id)
            if target.state not in expected:
                return False
            target.state = new
            target.updated_at = utcnow()
            self._write_state([target])
        return True

    def acquire(self, target_id: str, run_id: str) -> Target:
        """Take the target's lease for ``run_id``, moving it to staging.

        Returns a snapshot of the target as it was before the lease.
        """
        with self._lock_for(target_id), self._state_lock():
            target = self._refresh(target_id)
            holder = target.active_run
            if holder is not None and holder != run_id:
                if self._lease_live(holder):
                    raise TargetBusy(target_id, holder)
                logger.warning("Taking over stale lease", target=target_id, run=run_id, stale_run=holder)
                target.active_run = None
            snapshot = target.model_copy(deep=True)
            target.active_run = run_id
            target.state = TargetState.STAGING
            target.updated_at = utcnow()
            self._write_state([target])
        logger.debug("Target lease acquired", target=target_id, run=run_id)
        return snapshot

    def transition(self, target_id: str, run_id: str, state: TargetState) -> None:
        with self._lock_for(target_id), self._state_lock():
            target = self._refresh(target_id)
            if target.active_run != run_id:
                raise TargetBusy(target_id, target.active_run)
            target.state = state
            target.updated_at = utcnow()
            self._write_state([target])

    def release(
        self,
        target_id: str,
        run_id: str,
        state: TargetState,
        fingerprint: Optional[str] = None,
        revision: Optional[str] = None,
    ) -> None:
        """Drop the lease, recording the final state and, if given, artifact."""
        with self._lock_for(target_id), self._state_lock():
            target = self._refresh(target_id)
            if target.active_run != run_id:
                raise TargetBusy(target_id, target.active_run)
            target.active_run = None
            target.state = state
            if fingerprint is not None:
                target.current_fingerprint = fingerprint
                target.current_revision = revision
            target.updated_at = utcnow()
            self._write_state([target])
        logger.debug("Target lease released", target=target_id, run=run_id, state=state.value)

    def _lease_live(self, run_id: str) -> bool:
        """Whether ``run_id`` may still be driving its targets."""
        if self.runs is None:
            return True
        run = self.runs.load(run_id)
        if run is None:
            # Leases are taken before the run is first journalled
            return True
        if run.finished_at is not None:
            return False
        return run.owner_pid is None or _pid_alive(run.owner_pid)

    # ------------------------------------------------------------- inventory

    def load(self, inventory: Inventory) -> None:
        """Replace the target set from ``inventory``.

        Surviving targets keep their lifecycle state. Departed targets are
        dropped unless a run still holds them. Leases recorded in the state
        file are kept while their run is live.
        """
        incoming = {t.id: t for t in inventory.targets}
        with self._table_lock, self._state_lock():
            saved = self._read_state()
            removed = []
            for target_id in list(self._targets):
                if target_id in incoming:
                    continue
                holder = saved.get(target_id, {}).get("active_run") or self._targets[target_id].active_run
                if holder:
                    logger.warning("Keeping busy target removed from inventory", target=target_id)
                    continue
                del self._targets[target_id]
                del self._locks[target_id]
                removed.append(target_id)
            for target_id, target in incoming.items():
                existing = self._targets.get(target_id)
                if target_id in saved:
                    runtime = dict(saved[target_id])
                elif existing is not None:
                    runtime = {f: getattr(existing, f) for f in _RUNTIME_FIELDS}
                else:
                    runtime = {}
                holder = runtime.get("active_run")
                if holder and not self._lease_live(holder):
                    logger.warning("Dropping stale lease", target=target_id, stale_run=holder)
                    runtime["active_run"] = None
                self._targets[target_id] = target.model_copy(update=runtime, deep=True)
                self._locks.setdefault(target_id, threading.Lock())
            self.inventory = inventory
            self._write_state(list(self._targets.values()), removed=removed)
        logger.info("Inventory loaded", targets=len(incoming), repositories=len(inventory.repositories))

    def reload(self, path: Path) -> None:
        self.load(load_inventory(path))

    # ----------------------------------------------------------- persistence

    @contextmanager
    def _state_lock(self) -> Iterator[None]:
        """Exclusive lock on the state file, shared with other processes."""
        if not self.state_path:
            yield
            return
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        lock_path = self.state_path.with_name(self.state_path.name + ".lock")
        with open(lock_path, "a+") as lock:
            fcntl.flock(lock.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock.fileno(), fcntl.LOCK_UN)

    def _refresh(self, target_id: str) -> Target:
        """Pull the target's persisted lifecycle fields into memory."""
        self._sync(self._read_state(), [target_id])
        return self._targets[target_id]

    def _sync(self, saved: Dict[str, dict], target_ids: Iterable[str]) -> None:
        for target_id in target_ids:
            fields = saved.get(target_id)
            if fields:
                current = self._targets[target_id]
                self._targets[target_id] = current.model_copy(update=fields)

    def _read_raw(self) -> Dict[str, dict]:
        if not self.state_path or not self.state_path.exists():
            return {}
        try:
            raw = json.loads(self.state_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable registry state", path=str(self.state_path), error=str(exc))
            return {}
        return raw if isinstance(raw, dict) else {}

    def _read_state(self) -> Dict[str, dict]:
        state = {}
        for target_id, fields in self._read_raw().items():
            fields = dict(fields)
            if "state" in fields:
                fields["state"] = TargetState(fields["state"])
            if "updated_at" in fields:
                fields["updated_at"] = datetime.fromisoformat(fields["updated_at"])
            state[target_id] = {k: v for k, v in fields.items() if k in _RUNTIME_FIELDS}
        return state

    def _write_state(self, targets: Iterable[Target], removed: Iterable[str] = ()) -> None:
        """Merge ``targets`` into the state file. Call with ``_state_lock`` held."""
        if not self.state_path:
            return
        data = self._read_raw()
        for target in targets:
            data[target.id] = target.model_dump(mode="json", include=set(_RUNTIME_FIELDS))
        for target_id in removed:
            data.pop(target_id, None)
        tmp_file = self.state_path.with_name(f"{self.state_path.name}.{os.getpid()}.tmp")
        tmp_file.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp_file, self.state_path)
