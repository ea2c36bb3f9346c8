from __future__ import annotations

import json
import os
import time
from datetime import timedelta
from pathlib import Path

from vibeci.artifacts import ArtifactStore, render_change_set
from vibeci.memory.schema import ArtifactKind
from vibeci.memory.store import TaskStore
from vibeci.structured import ChangeSet
from vibeci.tools.verification import interpret


def test_save_diff_and_test_result_are_recorded(tmp_path: Path) -> None:
    store = TaskStore(":memory:")
    store.create_task("task-1", "desc", "/repo")
    artifacts = ArtifactStore(tmp_path / "artifacts", store=store)
    change_set = ChangeSet.from_pairs([("a.py", "x = 1\n"), ("b.py", "y = 2\n")])

    diff = artifacts.save_diff("task-1", change_set, 1)
    result = artifacts.save_test_result("task-1", 1, interpret("1 failed, 2 passed", exit_success=False))

    assert diff.name == "Patches (Iteration 1)"
    assert diff.kind is ArtifactKind.DIFF
    assert artifacts.read(diff) == "=== a.py ===\nx = 1\n\n\n=== b.py ===\ny = 2\n"
    payload = json.loads(artifacts.read(result))
    assert payload["passed"] is False and payload["failed_cases"] == 1
    assert Path(result.path).suffix == ".json"
    assert [item.id for item in store.list_artifacts("task-1")] == [diff.id, result.id]


def test_in_memory_records_and_manifest(tmp_path: Path) -> None:
    artifacts = ArtifactStore(tmp_path)
    report = artifacts.save_report("task-2", "final", "# Report\n")
    artifacts.save_log("task-2", "final-diff", "diff --git a/x b/x\n")

    manifest = json.loads(artifacts.write_manifest("task-2").read_text(encoding="utf-8"))

    assert [item["name"] for item in manifest["artifacts"]] == ["final", "final-diff"]
    assert manifest["artifacts"][0]["path"] == Path(report.path).name
    assert Path(report.path).parent == artifacts.task_dir("task-2")


def test_save_screenshot_copies_bytes(tmp_path: Path) -> None:
    image = tmp_path / "shot.png"
    image.write_bytes(b"\x89PNG fake")
    artifacts = ArtifactStore(tmp_path / "artifacts")

    artifact = artifacts.save_screenshot("task-3", "home page", image)

    assert artifacts.read(artifact) == b"\x89PNG fake"
    assert artifact.metadata["source"] == str(image)


def test_cleanup_removes_only_old_task_directories(tmp_path: Path) -> None:
    artifacts = ArtifactStore(tmp_path)
    artifacts.save_log("old-task", "log", "old")
    artifacts.save_log("new-task", "log", "new")
    old_dir = artifacts.task_dir("old-task")
    ten_days_ago = time.time() - timedelta(days=10).total_seconds()
    os.utime(old_dir, (ten_days_ago, ten_days_ago))

    removed = artifacts.cleanup_older_than(timedelta(days=7))

    assert removed == [old_dir.name]
    assert not old_dir.exists()
    assert (tmp_path / "new-task").is_dir()
    assert artifacts.list("old-task") == []
    assert [item.name for item in artifacts.list("new-task")] == ["log"]


def test_cleanup_drops_store_records_of_removed_directories(tmp_path: Path) -> None:
    store = TaskStore(":memory:")
    store.create_task("task-1", "desc", "/repo")
    store.create_task("task-10", "desc", "/repo")
    artifacts = ArtifactStore(tmp_path / "artifacts", store=store)
    artifacts.save_log("task-1", "old log", "old")
    artifacts.save_log("task-10", "recent log", "new")
    stale = artifacts.task_dir("task-1")
    ten_days_ago = time.time() - timedelta(days=10).total_seconds()
    os.utime(stale, (ten_days_ago, ten_days_ago))

    assert artifacts.cleanup_older_than(timedelta(days=7)) == ["task-1"]

    assert store.list_artifacts("task-1") == []
    assert [item.name for item in store.list_artifacts("task-10")] == ["recent log"]


def test_render_change_set_blocks() -> None:
    assert render_change_set(ChangeSet()) == ""
    assert render_change_set(ChangeSet.from_pairs([("f", "body")])) == "=== f ===\nbody"
