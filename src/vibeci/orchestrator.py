"""Iteration control loop: change, verify, diagnose, retry within a budget."""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .artifacts import ArtifactStore
from .events import EventSink
from .generator import ChangeGenerator, GeneratorUnavailable, ReportContext, render_report_fallback
from .memory.schema import Task, TaskStatus, ThoughtSignature, utc_now
from .memory.store import StoreEventWriter, TaskStore
from .structured import ChangeSet, DiagnosisResult, GenerationFailure, GenerationResult, PlanResult
from .tools.applier import ApplyOutcome, apply_change_set
from .tools.patch import PatchEngine
from .tools.vcs import GitError
from .tools.verification import RawVerification, VerificationResult, interpret_raw
from .tools.workspace import WorkspaceProvider, summarize_repository

LOGGER = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"
BUDGET_REASON = "iteration budget exhausted"

ALLOWED_TRANSITIONS: Dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.PLANNING, TaskStatus.FAILED}),
    TaskStatus.PLANNING: frozenset({TaskStatus.GENERATING, TaskStatus.FAILED}),
    TaskStatus.GENERATING: frozenset({TaskStatus.TESTING, TaskStatus.FAILED}),
    TaskStatus.TESTING: frozenset({TaskStatus.COMPLETED, TaskStatus.ANALYZING, TaskStatus.FAILED}),
    TaskStatus.ANALYZING: frozenset({TaskStatus.FIXING, TaskStatus.FAILED}),
    TaskStatus.FIXING: frozenset({TaskStatus.TESTING, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


class IllegalTransition(RuntimeError):
    """Raised when the loop attempts a status change the state machine forbids."""


class VerificationRunner(Protocol):
    def run(self, workspace_path: Path, *, cancel_event: Optional[threading.Event] = None) -> RawVerification:
        ...


def check_transition(current: TaskStatus, target: TaskStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise IllegalTransition(f"Cannot move task from {current.value} to {target.value}")


@dataclass(slots=True)
class _RunState:
    """State carried from one iteration to the next."""

    workspace: Optional[Path] = None
    base_ref: Optional[str] = None
    last_result: Optional[VerificationResult] = None
    last_change_set: ChangeSet = field(default_factory=ChangeSet)
    last_apply: Optional[ApplyOutcome] = None
    plan: List[str] = field(default_factory=list)
    change_sets: List[ChangeSet] = field(default_factory=list)
    results: List[tuple[bool, str]] = field(default_factory=list)
    generator_down: bool = False


class IterationLoop:
    """Drive one task at a time through the change/verify state machine.

    The loop is the sole writer of a task's status.  Every run ends in exactly
    one terminal status followed by a final ``complete`` event; faults are
    recorded as an ``error`` event plus an error log and never propagate.
    """

    def __init__(
        self,
        *,
        generator: ChangeGenerator,
        workspace: WorkspaceProvider,
        verifier: VerificationRunner,
        events: Optional[EventSink] = None,
        store: Optional[TaskStore] = None,
        artifacts: Optional[ArtifactStore] = None,
        engine: Optional[PatchEngine] = None,
        cleanup_snapshots: bool = False,
        persist_events: bool = True,
    ) -> None:
        self.generator = generator
        self.workspace = workspace
        self.verifier = verifier
        self.events = events or EventSink()
        self.store = store
        self.artifacts = artifacts
        self.engine = engine or PatchEngine()
        self.cleanup_snapshots = cleanup_snapshots
        if store is not None and persist_events:
            self.events.subscribe_all(StoreEventWriter(store))

    # ------------------------------------------------------------------ tasks
    def create_task(
        self,
        description: str,
        repo_path: str,
        *,
        max_iterations: int = 3,
        task_id: Optional[str] = None,
    ) -> Task:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        task = Task(
            id=task_id or uuid.uuid4().hex,
            description=description,
            repo_path=str(repo_path),
            max_iterations=max_iterations,
        )
        self._save(task)
        self.events.emit(task.id, "created", "Task created", data={"description": description})
        return task

    def _save(self, task: Task) -> None:
        task.updated_at = utc_now()
        if self.store is not None:
            self.store.save_task(task)

    def _transition(self, task: Task, target: TaskStatus, *, reason: Optional[str] = None) -> None:
        check_transition(task.status, target)
        task.status = target
        if target.terminal:
            task.completed_at = utc_now()
            if reason:
                task.failure_reason = reason
        self._save(task)

    def _fail(self, task: Task, reason: str) -> None:
        if not task.status.terminal:
            self._transition(task, TaskStatus.FAILED, reason=reason)

    def _think(self, task: Task, phase: str, summary: str) -> None:
        if self.store is None:
            return
        self.store.record_thought_signature(
            ThoughtSignature(
                id=uuid.uuid4().hex,
                task_id=task.id,
                iteration=task.current_iteration,
                phase=phase,
                summary=summary,
                status=task.status,
            )
        )

    # -------------------------------------------------------------------- run
    def run(self, task: Task, *, cancel_event: Optional[threading.Event] = None) -> Task:
        """Run ``task`` to a terminal status and return it."""

        if task.status is not TaskStatus.PENDING:
            raise IllegalTransition(f"Task {task.id} has already been run (status {task.status.value})")

        state = _RunState()
        try:
            self._transition(task, TaskStatus.PLANNING)
            self._prepare_workspace(task, state)
            while not task.status.terminal:
                if cancel_event is not None and cancel_event.is_set():
                    LOGGER.info("Task %s cancelled before iteration %d", task.id, task.current_iteration + 1)
                    self._fail(task, CANCELLED_REASON)
                    break
                self._iterate(task, state, cancel_event)
        except GeneratorUnavailable as error:
            state.generator_down = True
            self._record_fault(task, f"Change generator unavailable: {error}")
        except Exception as error:
            LOGGER.exception("Task %s failed with an unexpected error", task.id)
            self._record_fault(task, f"{type(error).__name__}: {error}")

        self._finish(task, state)
        return task

    def _prepare_workspace(self, task: Task, state: _RunState) -> None:
        workspace = self.workspace.snapshot(task.repo_path)
        state.workspace = workspace
        task.workspace_path = str(workspace)
        start_branch = getattr(self.workspace, "start_branch", None)
        if callable(start_branch):
            task.branch = start_branch(workspace, task.id)
        state.base_ref = self.workspace.current_ref(workspace)
        self._save(task)
        self.events.emit(
            task.id,
            "status",
            "Repository snapshot created",
            data={"path": str(workspace), "branch": task.branch},
        )

    def _iterate(self, task: Task, state: _RunState, cancel_event: Optional[threading.Event]) -> None:
        assert state.workspace is not None
        task.current_iteration += 1
        iteration = task.current_iteration
        self._save(task)
        self.events.emit(
            task.id,
            "iteration",
            f"Starting iteration {iteration} of {task.max_iterations}",
            iteration=iteration,
        )

        summary = summarize_repository(state.workspace)
        if iteration == 1:
            result = self.generator.propose(task.description, summary)
            change_set = self._record_proposal(task, state, result)
            self._transition(task, TaskStatus.GENERATING)
        else:
            previous = state.last_result
            failed_files = list(state.last_apply.failed_files) if state.last_apply else []
            result = self.generator.diagnose_and_fix(
                task.description,
                previous.raw_output if previous else "",
                state.last_change_set,
                summary,
                failed_files,
            )
            change_set = self._record_diagnosis(task, result)
            self._transition(task, TaskStatus.FIXING)

        outcome = apply_change_set(state.workspace, change_set, engine=self.engine)
        label = "Initial implementation" if iteration == 1 else "Fix attempt"
        commit = self.workspace.commit(state.workspace, f"VibeCI: Iteration {iteration} - {label}")
        state.last_change_set = change_set
        state.last_apply = outcome
        state.change_sets.append(change_set)
        if self.artifacts is not None:
            self.artifacts.save_diff(task.id, change_set, iteration)
        message = "Applied patches" if not outcome.failed_files else f"Applied patches ({len(outcome.failed_files)} failed)"
        self.events.emit(
            task.id,
            "patches",
            message,
            iteration=iteration,
            data={**outcome.to_payload(), "commit": commit},
        )

        self._transition(task, TaskStatus.TESTING)
        raw = self.verifier.run(state.workspace, cancel_event=cancel_event)
        if raw.cancelled:
            LOGGER.info("Task %s cancelled during verification", task.id)
            self._fail(task, CANCELLED_REASON)
            return

        verification = interpret_raw(raw)
        state.last_result = verification
        state.results.append((verification.passed, verification.raw_output))
        if self.artifacts is not None:
            self.artifacts.save_test_result(task.id, iteration, verification)
        self.events.emit(
            task.id,
            "test-result",
            f"Tests {'PASSED' if verification.passed else 'FAILED'}",
            iteration=iteration,
            data=verification.to_payload(include_output=False),
        )
        self._think(
            task,
            "verification",
            f"Tests: {verification.passed_cases}/{verification.total_cases} passed. "
            f"{'SUCCESS' if verification.passed else 'Needs fix'}",
        )

        if verification.passed:
            self._transition(task, TaskStatus.COMPLETED)
            self.events.emit(task.id, "success", "All tests passed!", iteration=iteration)
        elif iteration >= task.max_iterations:
            self._transition(task, TaskStatus.FAILED, reason=BUDGET_REASON)
        else:
            self._transition(task, TaskStatus.ANALYZING)

    def _record_proposal(self, task: Task, state: _RunState, result: GenerationResult) -> ChangeSet:
        if isinstance(result, PlanResult):
            state.plan = list(result.plan)
            self.events.emit(
                task.id,
                "plan",
                "Generated implementation plan",
                iteration=task.current_iteration,
                data={
                    "plan": list(result.plan),
                    "files": list(result.change_set.paths),
                    "reasoning_summary": result.reasoning_summary,
                },
            )
            self._think(task, "planning", result.reasoning_summary)
            return result.change_set
        return self._record_unusable(task, "plan", result)

    def _record_diagnosis(self, task: Task, result: GenerationResult) -> ChangeSet:
        if isinstance(result, DiagnosisResult):
            self.events.emit(
                task.id,
                "analysis",
                "Analyzed failure",
                iteration=task.current_iteration,
                data={
                    "analysis": result.analysis,
                    "next_steps": list(result.next_steps),
                    "files": list(result.change_set.paths),
                    "reasoning_summary": result.reasoning_summary,
                },
            )
            self._think(task, "analyzing", result.reasoning_summary)
            return result.change_set
        return self._record_unusable(task, "analysis", result)

    def _record_unusable(self, task: Task, event_type: str, result: GenerationResult) -> ChangeSet:
        """Record generator output that cannot drive this iteration; it applies nothing."""
        if isinstance(result, GenerationFailure):
            reason = f"{result.stage}: {result.reason}"
        else:
            reason = f"unexpected {result.kind} result"
        LOGGER.warning("Task %s iteration %d: unusable generator output (%s)", task.id, task.current_iteration, reason)
        self.events.emit(
            task.id,
            event_type,
            "Generator output could not be used",
            iteration=task.current_iteration,
            data={"error": reason, "files": []},
        )
        self._think(task, "planning" if event_type == "plan" else "analyzing", f"Unusable output: {reason}")
        return ChangeSet()

    # ----------------------------------------------------------------- ending
    def _record_fault(self, task: Task, message: str) -> None:
        self.events.emit(task.id, "error", f"Task failed: {message}", iteration=task.current_iteration, data={"error": message})
        self._fail(task, message)
        if self.artifacts is not None:
            try:
                self.artifacts.save_log(task.id, "error", message)
            except OSError as error:
                LOGGER.error("Unable to save error log for task %s: %s", task.id, error)

    def _report(self, task: Task, state: _RunState) -> str:
        context = ReportContext(
            task_description=task.description,
            plan=list(state.plan),
            change_sets=list(state.change_sets),
            results=list(state.results),
            iterations=task.current_iteration,
            success=task.status is TaskStatus.COMPLETED,
            failure_reason=task.failure_reason,
        )
        if state.generator_down:
            return render_report_fallback(context)
        try:
            return self.generator.generate_report(context)
        except GeneratorUnavailable as error:
            LOGGER.warning("Report generation unavailable for task %s: %s", task.id, error)
        except Exception:
            LOGGER.exception("Report generation failed for task %s", task.id)
        return render_report_fallback(context)

    def _finish(self, task: Task, state: _RunState) -> None:
        artifact_names: List[str] = []
        if self.artifacts is not None:
            try:
                self.artifacts.save_report(task.id, "final", self._report(task, state))
                if state.workspace is not None and state.base_ref:
                    final_diff = self.workspace.diff(state.workspace, state.base_ref, "HEAD")
                    if final_diff:
                        self.artifacts.save_log(task.id, "final-diff", final_diff)
                artifact_names = [artifact.name for artifact in self.artifacts.list(task.id)]
                self.artifacts.write_manifest(task.id)
            except (OSError, GitError) as error:
                LOGGER.error("Unable to finalise artifacts for task %s: %s", task.id, error)

        passed = state.last_result.passed if state.last_result else False
        data: Dict[str, Any] = {
            "status": task.status.value,
            "iterations": task.current_iteration,
            "passed": passed,
            "artifacts": artifact_names,
        }
        if task.failure_reason:
            data["reason"] = task.failure_reason
        self.events.emit(task.id, "complete", f"Task {task.status.value}", iteration=task.current_iteration, data=data)

        if self.cleanup_snapshots and state.workspace is not None:
            cleanup = getattr(self.workspace, "cleanup", None)
            if callable(cleanup):
                cleanup(state.workspace)


class TaskRunner:
    """Run many tasks concurrently, one sequential loop per worker thread."""

    def __init__(self, loop: IterationLoop, *, max_workers: int = 4) -> None:
        self.loop = loop
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="vibeci-task")
        self._lock = threading.Lock()
        self._futures: Dict[str, Future[Task]] = {}
        self._cancel_events: Dict[str, threading.Event] = {}

    def start_task(self, description: str, repo_path: str, *, max_iterations: int = 3) -> Task:
        task = self.loop.create_task(description, repo_path, max_iterations=max_iterations)
        cancel_event = threading.Event()
        with self._lock:
            self._cancel_events[task.id] = cancel_event
            future = self._executor.submit(self.loop.run, task, cancel_event=cancel_event)
            self._futures[task.id] = future
        # Outside the lock: an already finished future runs the callback here.
        future.add_done_callback(lambda _: self._release(task.id))
        return task

    def _release(self, task_id: str) -> None:
        """Drop bookkeeping of an ended run; the future stays until ``wait`` collects it."""
        with self._lock:
            self._cancel_events.pop(task_id, None)
        if self.loop.store is not None:
            # The store holds the persisted trail from here on.
            self.loop.events.forget(task_id)

    def cancel(self, task_id: str) -> bool:
        """Signal a running task to stop; returns False for unknown or finished tasks."""
        with self._lock:
            event = self._cancel_events.get(task_id)
        if event is None:
            return False
        event.set()
        return True

    def wait(self, task_id: str, timeout: Optional[float] = None) -> Task:
        with self._lock:
            future = self._futures[task_id]
        task = future.result(timeout=timeout)
        with self._lock:
            self._futures.pop(task_id, None)
        return task

    def shutdown(self, *, wait: bool = True) -> None:
        if not wait:
            with self._lock:
                for event in self._cancel_events.values():
                    event.set()
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "TaskRunner":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()


__all__ = [
    "ALLOWED_TRANSITIONS",
    "BUDGET_REASON",
    "CANCELLED_REASON",
    "IllegalTransition",
    "IterationLoop",
    "TaskRunner",
    "VerificationRunner",
    "check_transition",
]
