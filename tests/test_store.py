from __future__ import annotations

import uuid
from pathlib import Path

from vibeci.events import EventSink
from vibeci.memory.schema import Artifact, ArtifactKind, TaskStatus, ThoughtSignature
from vibeci.memory.store import StoreEventWriter, TaskStore


def test_task_round_trip_and_status_update(tmp_path: Path) -> None:
    with TaskStore(tmp_path / "vibeci.sqlite") as store:
        task = store.create_task("t1", "Add a sum function", "/repo", max_iterations=2, metadata={"origin": "test"})

        store.update_task_status(task.id, TaskStatus.FAILED, current_iteration=2, failure_reason="budget")
        loaded = store.get_task("t1")

    assert loaded is not None
    assert loaded.status is TaskStatus.FAILED
    assert loaded.current_iteration == 2
    assert loaded.failure_reason == "budget"
    assert loaded.completed_at is not None
    assert loaded.metadata == {"origin": "test"}


def test_save_task_upserts() -> None:
    store = TaskStore(":memory:")
    task = store.create_task("t1", "first", "/repo")

    task.description = "second"
    task.status = TaskStatus.PLANNING
    store.save_task(task)

    tasks = store.list_tasks()
    assert len(tasks) == 1
    assert tasks[0].description == "second"
    assert store.list_tasks(statuses=[TaskStatus.COMPLETED]) == []
    store.close()


def test_events_persist_through_writer() -> None:
    store = TaskStore(":memory:")
    store.create_task("t1", "desc", "/repo")
    sink = EventSink()
    sink.subscribe_all(StoreEventWriter(store))

    sink.emit("t1", "created", "Task created")
    sink.emit("t1", "test-result", "Tests FAILED", iteration=1, data={"passed": False})

    events = store.list_events("t1")
    assert [event.sequence for event in events] == [1, 2]
    assert events[1].data == {"passed": False}
    assert [event.type for event in store.list_events("t1", after_sequence=1)] == ["test-result"]


def test_thought_signatures_and_artifacts() -> None:
    store = TaskStore(":memory:")
    store.create_task("t1", "desc", "/repo")
    store.record_thought_signature(
        ThoughtSignature(
            id=uuid.uuid4().hex,
            task_id="t1",
            iteration=1,
            phase="planning",
            summary="Plan: a -> b",
            status=TaskStatus.PLANNING,
        )
    )
    artifact = Artifact(id="a1", task_id="t1", kind=ArtifactKind.DIFF, name="Patches (Iteration 1)", path="/tmp/x.diff")
    store.record_artifact(artifact)

    assert store.list_thought_signatures("t1")[0].summary == "Plan: a -> b"
    assert [item.id for item in store.list_artifacts("t1", kind=ArtifactKind.DIFF)] == ["a1"]
    assert store.list_artifacts("t1", kind=ArtifactKind.REPORT) == []

    store.delete_artifact("a1")
    assert store.list_artifacts("t1") == []


def test_from_config_uses_db_path(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "state.sqlite"

    with TaskStore.from_config({"paths": {"db_path": str(target)}}) as store:
        store.create_task("t1", "desc", "/repo")

    assert target.exists()
