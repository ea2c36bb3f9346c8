from __future__ import annotations

import threading

import pytest

from vibeci.events import EventSink, kind_for
from vibeci.memory.schema import EventKind, TaskEvent


def test_sequences_are_per_task_and_dense() -> None:
    sink = EventSink()

    sink.emit("a", "created", "Task created")
    sink.emit("b", "created", "Task created")
    sink.emit("a", "iteration", "Starting iteration 1", iteration=1)

    assert [record.sequence for record in sink.records("a")] == [1, 2]
    assert [record.sequence for record in sink.records("b")] == [1]
    assert sink.records("a")[1].kind is EventKind.STATUS


def test_subscribers_see_records_in_order_and_can_unsubscribe() -> None:
    sink = EventSink()
    seen: list[str] = []
    unsubscribe = sink.subscribe("task", lambda record: seen.append(record.type))

    sink.emit("task", "plan", "Generated implementation plan")
    sink.emit("other", "plan", "ignored")
    unsubscribe()
    sink.emit("task", "complete", "Task completed")

    assert seen == ["plan"]


def test_failing_subscriber_does_not_break_delivery() -> None:
    sink = EventSink()
    delivered: list[TaskEvent] = []

    def broken(_: TaskEvent) -> None:
        raise RuntimeError("boom")

    sink.subscribe_all(broken)
    sink.subscribe_all(delivered.append)

    record = sink.emit("task", "error", "Task failed: boom")

    assert delivered == [record]


def test_concurrent_emitters_keep_sequences_unique() -> None:
    sink = EventSink()

    def worker() -> None:
        for _ in range(50):
            sink.emit("shared", "status", "tick")

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert [record.sequence for record in sink.records("shared")] == list(range(1, 201))


def test_kind_for_rejects_unknown_types() -> None:
    assert kind_for("test-result") is EventKind.VERIFICATION_RESULT
    assert kind_for("patches") is EventKind.CHANGE_APPLIED
    with pytest.raises(ValueError):
        kind_for("mystery")


def test_forget_drops_trail() -> None:
    sink = EventSink()
    sink.emit("task", "created", "Task created")

    sink.forget("task")

    assert sink.records("task") == []
