"""Tests for the target registry and inventory loading."""

import os
import threading
from pathlib import Path
from typing import Optional

import pytest

import pushdeploy.deploy.registry as registry_module
from pushdeploy.core.exceptions import ConfigurationError, TargetBusy, TargetNotFound
from pushdeploy.deploy.models import DeploymentRun, RunStatus, TargetState, utcnow
from pushdeploy.deploy.registry import TargetRegistry, load_inventory
from pushdeploy.deploy.store import RunStore

from conftest import make_target, mark_running


class TestSelect:
    def test_all(self, registry):
        assert registry.select("all") == ["t1", "t2", "t3"]

    def test_tag(self, registry):
        assert registry.select("tag:web") == ["t1", "t2"]
        assert registry.select("tag:none") == []

    def test_ids(self, registry):
        assert registry.select("t3, t1") == ["t3", "t1"]

    def test_unknown_id(self, registry):
        with pytest.raises(TargetNotFound):
            registry.select("t1,t9")


class TestLifecycle:
    def test_acquire_returns_prior_snapshot(self, registry):
        mark_running(registry, "t1", "f1")

        before = registry.acquire("t1", "run-1")

        assert before.state == TargetState.RUNNING
        assert before.active_run is None
        current = registry.get("t1")
        assert current.state == TargetState.STAGING
        assert current.active_run == "run-1"

    def test_second_acquire_is_busy(self, registry):
        registry.acquire("t1", "run-1")
        with pytest.raises(TargetBusy) as exc_info:
            registry.acquire("t1", "run-2")
        assert exc_info.value.holder == "run-1"
        assert exc_info.value.status_code == 409

    def test_concurrent_acquire_has_one_winner(self, registry):
        winners = []
        barrier = threading.Barrier(8)

        def contend(run_id):
            barrier.wait()
            try:
                registry.acquire("t1", run_id)
                winners.append(run_id)
            except TargetBusy:
                pass

        threads = [threading.Thread(target=contend, args=(f"run-{n}",)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1
        assert registry.get("t1").active_run == winners[0]

    def test_release_records_artifact(self, registry):
        registry.acquire("t1", "run-1")
        registry.release("t1", "run-1", TargetState.RUNNING, fingerprint="f1", revision="abc")

        target = registry.get("t1")
        assert target.active_run is None
        assert target.state == TargetState.RUNNING
        assert target.current_fingerprint == "f1"
        assert target.current_revision == "abc"

    def test_release_by_other_run_rejected(self, registry):
        registry.acquire("t1", "run-1")
        with pytest.raises(TargetBusy):
            registry.release("t1", "run-2", TargetState.RUNNING)

    def test_compare_and_set(self, registry):
        assert registry.compare_and_set("t1", [TargetState.UNKNOWN], TargetState.UNHEALTHY)
        assert not registry.compare_and_set("t1", [TargetState.RUNNING], TargetState.STAGING)
        assert registry.get("t1").state == TargetState.UNHEALTHY

    def test_get_returns_copy(self, registry):
        target = registry.get("t1")
        target.state = TargetState.RUNNING
        assert registry.get("t1").state == TargetState.UNKNOWN


class TestCrud:
    def test_register_duplicate(self, registry):
        with pytest.raises(ConfigurationError):
            registry.register(make_target("t1"))

    def test_update_keeps_lifecycle(self, registry):
        mark_running(registry, "t1", "f1")
        registry.update(make_target("t1", host="10.9.9.9"))

        target = registry.get("t1")
        assert target.host == "10.9.9.9"
        assert target.current_fingerprint == "f1"
        assert target.state == TargetState.RUNNING

    def test_deregister(self, registry):
        registry.deregister("t3")
        with pytest.raises(TargetNotFound):
            registry.get("t3")

    def test_deregister_busy(self, registry):
        registry.acquire("t1", "run-1")
        with pytest.raises(TargetBusy):
            registry.deregister("t1")


class TestInventory:
    def test_load_inventory(self, inventory_file):
        inventory = load_inventory(inventory_file)
        assert [t.id for t in inventory.targets] == ["t1", "t2"]
        assert inventory.repository("acme/shop").targets == "tag:web"
        assert inventory.repository("acme/other") is None

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "inventory.yaml"
        path.write_text("targets: [unclosed\n")
        with pytest.raises(ConfigurationError):
            load_inventory(path)

    def test_duplicate_ids(self, tmp_path):
        path = tmp_path / "inventory.yaml"
        path.write_text(
            "targets:\n"
            "  - {id: a, host: h1, auth: {username: u}, app_dir: /srv, service: s}\n"
            "  - {id: a, host: h2, auth: {username: u}, app_dir: /srv, service: s}\n"
        )
        with pytest.raises(ConfigurationError):
            load_inventory(path)

    def test_unknown_placeholder_fails_at_load(self, tmp_path):
        path = tmp_path / "inventory.yaml"
        path.write_text(
            "targets:\n"
            "  - id: a\n"
            "    host: h1\n"
            "    auth: {username: u}\n"
            "    app_dir: /srv\n"
            "    service: s\n"
            "    restart_command: supervisorctl restart {svc}\n"
        )
        with pytest.raises(ConfigurationError, match="svc"):
            load_inventory(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_inventory(tmp_path / "absent.yaml")

    def test_reload_keeps_state_and_drops_departed(self, inventory_file):
        registry = TargetRegistry()
        registry.register(make_target("old"))
        registry.reload(inventory_file)
        mark_running(registry, "t1", "f1")

        registry.reload(inventory_file)

        assert [t.id for t in registry.list()] == ["t1", "t2"]
        assert registry.get("t1").current_fingerprint == "f1"

    def test_reload_keeps_busy_departed_target(self, inventory_file):
        registry = TargetRegistry()
        registry.register(make_target("old"))
        registry.acquire("old", "run-1")

        registry.reload(inventory_file)

        assert "old" in [t.id for t in registry.list()]

    def test_state_persists_across_instances(self, inventory_file, tmp_path: Path):
        state_path = tmp_path / "state" / "targets.json"
        first = TargetRegistry(state_path=state_path)
        first.reload(inventory_file)
        mark_running(first, "t1", "f1", revision="abc")

        second = TargetRegistry(state_path=state_path)
        second.reload(inventory_file)

        t1 = second.get("t1")
        assert t1.state == TargetState.RUNNING
        assert t1.current_fingerprint == "f1"
        assert t1.current_revision == "abc"
        assert t1.active_run is None


def journal(store: RunStore, run_id: str, finished: bool = False, owner_pid: Optional[int] = None) -> None:
    run = DeploymentRun(id=run_id, target_ids=["t1"], owner_pid=owner_pid or os.getpid())
    if finished:
        run.status = RunStatus.SUCCEEDED
        run.finished_at = utcnow()
    store.save(run)


class TestSharedState:
    """Two registries over one state directory, as ``serve`` and the CLI run."""

    @pytest.fixture
    def store(self, tmp_path: Path) -> RunStore:
        return RunStore(tmp_path / "state")

    @pytest.fixture
    def open_registry(self, inventory_file, store, tmp_path: Path):
        def factory() -> TargetRegistry:
            registry = TargetRegistry(state_path=tmp_path / "state" / "targets.json", runs=store)
            registry.reload(inventory_file)
            return registry

        return factory

    def test_lease_held_by_other_process_is_busy(self, open_registry, store):
        server = open_registry()
        server.acquire("t1", "run-server")
        journal(store, "run-server")

        cli = open_registry()

        assert cli.get("t1").active_run == "run-server"
        with pytest.raises(TargetBusy) as exc_info:
            cli.acquire("t1", "run-cli")
        assert exc_info.value.holder == "run-server"

    def test_acquire_rereads_state(self, open_registry):
        # Both loaded before either leases, so neither can trust its memory
        server = open_registry()
        cli = open_registry()

        server.acquire("t1", "run-server")

        with pytest.raises(TargetBusy):
            cli.acquire("t1", "run-cli")
        with pytest.raises(TargetBusy):
            cli.transition("t1", "run-cli", TargetState.INSTALLING)

    def test_release_is_visible_to_other_registry(self, open_registry):
        server = open_registry()
        cli = open_registry()
        server.acquire("t1", "run-server")
        server.release("t1", "run-server", TargetState.RUNNING, fingerprint="f1", revision="abc")

        before = cli.acquire("t1", "run-cli")

        assert before.current_fingerprint == "f1"
        assert server.get("t1").active_run == "run-cli"

    def test_writes_to_different_targets_merge(self, open_registry, tmp_path: Path):
        server = open_registry()
        cli = open_registry()

        server.acquire("t1", "run-server")
        cli.acquire("t2", "run-cli")

        fresh = TargetRegistry(state_path=tmp_path / "state" / "targets.json")
        fresh.load(server.inventory)
        assert fresh.get("t1").active_run == "run-server"
        assert fresh.get("t2").active_run == "run-cli"

    def test_concurrent_acquire_across_registries(self, open_registry):
        registries = [open_registry() for _ in range(4)]
        winners = []
        barrier = threading.Barrier(len(registries))

        def contend(registry, run_id):
            barrier.wait()
            try:
                registry.acquire("t1", run_id)
                winners.append(run_id)
            except TargetBusy:
                pass

        threads = [
            threading.Thread(target=contend, args=(registry, f"run-{n}"))
            for n, registry in enumerate(registries)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1

    def test_finished_run_lease_dropped_on_load(self, open_registry, store):
        server = open_registry()
        server.acquire("t1", "run-done")
        journal(store, "run-done", finished=True)

        cli = open_registry()

        assert cli.get("t1").active_run is None
        cli.acquire("t1", "run-cli")

    def test_dead_owner_lease_taken_over(self, open_registry, store, monkeypatch):
        server = open_registry()
        server.acquire("t1", "run-crashed")
        journal(store, "run-crashed", owner_pid=424242)
        monkeypatch.setattr(registry_module, "_pid_alive", lambda pid: pid != 424242)
        cli = open_registry()

        cli.acquire("t1", "run-cli")

        assert cli.get("t1").active_run == "run-cli"

    def test_unjournalled_lease_is_kept(self, open_registry):
        server = open_registry()
        server.acquire("t1", "run-submitting")

        cli = open_registry()

        assert cli.get("t1").active_run == "run-submitting"
