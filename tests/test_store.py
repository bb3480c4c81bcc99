"""Tests for the on-disk run journal."""

import os

from pushdeploy.deploy.models import DeploymentRun, RunStatus
from pushdeploy.deploy.store import RunStore

from conftest import make_artifact


def test_save_and_load(tmp_path):
    store = RunStore(tmp_path)
    run = DeploymentRun(id="run-1", artifact=make_artifact("f1"), target_ids=["t1"], status=RunStatus.SUCCEEDED)

    store.save(run)
    loaded = store.load("run-1")

    assert loaded == run
    assert (tmp_path / "runs" / "run-1.json").exists()


def test_load_missing_and_invalid(tmp_path):
    store = RunStore(tmp_path)
    assert store.load("run-nope") is None
    assert store.load("../etc/passwd") is None
    assert store.load("") is None


def test_corrupt_snapshot_ignored(tmp_path):
    store = RunStore(tmp_path)
    store.runs_dir.mkdir(parents=True)
    (store.runs_dir / "run-bad.json").write_text("{not json")

    assert store.load("run-bad") is None
    assert store.list() == []


def test_list_most_recent_first(tmp_path):
    store = RunStore(tmp_path)
    for n, run_id in enumerate(["run-a", "run-b", "run-c"]):
        store.save(DeploymentRun(id=run_id, target_ids=["t1"]))
        os.utime(store.runs_dir / f"{run_id}.json", (1000 + n, 1000 + n))

    assert [r.id for r in store.list()] == ["run-c", "run-b", "run-a"]
    assert [r.id for r in store.list(limit=2)] == ["run-c", "run-b"]
