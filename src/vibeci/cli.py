"""CLI commands for running VibeCI tasks and inspecting their history."""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from .artifacts import ArtifactStore
from .config import (
    DEFAULT_CONFIG_NAME,
    ConfigError,
    copy_config_template,
    load_config,
    write_config,
)
from .events import EventSink
from .generator import LLMChangeGenerator
from .memory.schema import Task, TaskEvent, TaskStatus
from .memory.store import TaskStore
from .models import GeminiClient, LLMClient, LLMClientError
from .orchestrator import IterationLoop, TaskRunner
from .tools.applier import resolve_workspace_path
from .tools.patch import PatchError
from .tools.verification import CommandVerificationRunner
from .tools.workspace import GitWorkspaceProvider, list_workspace_files

APP_HELP = "VibeCI: generate code changes, run the tests, and iterate until they pass."

app = typer.Typer(help=APP_HELP)


def _load_config(config_path: Path) -> Dict[str, Any]:
    """Load configuration or exit with a readable message."""
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}. Run `vibeci init` first.")
    try:
        return load_config(config_path)
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


class _OfflineLLMClient(LLMClient):
    """Local stub that synthesizes deterministic responses for demos/tests.

    It proposes a plan but never any file changes, so a task only completes
    when the repository's tests already pass.
    """

    def __init__(self) -> None:
        super().__init__("offline", max_attempts=1)

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        if payload.get("response_format") == "text":
            return "# VibeCI Task Report\n\nGenerated by the offline stub client; no model was consulted.\n"
        metadata = payload.get("metadata") or {}
        return json.dumps(self._build_response(str(metadata.get("stage", "unknown"))))

    @staticmethod
    def _build_response(stage: str) -> Dict[str, Any]:
        if stage == "plan":
            return {
                "plan": [
                    "Review the repository layout and existing tests.",
                    "Implement the requested behaviour.",
                    "Run the test suite.",
                ],
                "reasoning_summary": "Offline stub plan; no changes proposed.",
            }
        if stage == "analysis":
            return {
                "analysis": "Offline stub cannot analyse test output.",
                "next_steps": ["Re-run with --use-remote for model-generated fixes."],
                "reasoning_summary": "Offline stub analysis.",
            }
        return {"patches": []}


def _build_client(config: Dict[str, Any], *, use_remote: bool) -> LLMClient:
    """Select either the Gemini client or the offline stub."""
    models_cfg = config.get("models") or {}
    model_name = str(models_cfg.get("default") or "")
    offline_model = model_name.lower() == "offline" or model_name.lower().endswith("-offline")

    if use_remote and not offline_model:
        typer.echo(f"Using Gemini client ({model_name}).")
        try:
            return GeminiClient.from_config(config)
        except ValueError as error:
            if "api_key" in str(error).lower():
                typer.echo(
                    "No API key given. Set GEMINI_API_KEY or models.api_key, "
                    "or re-run with --no-use-remote to use the offline stub."
                )
            else:
                typer.echo(f"Failed to initialise Gemini client: {error}")
            raise typer.Exit(code=1)
        except LLMClientError as error:
            typer.echo(f"Failed to initialise Gemini client: {error}")
            raise typer.Exit(code=1)

    if use_remote and offline_model:
        typer.echo(f"Model '{model_name}' is offline-only; using offline stub client.")
    else:
        typer.echo("Using offline stub client.")
    return _OfflineLLMClient()


def _build_loop(config: Dict[str, Any], store: TaskStore, client: LLMClient, events: EventSink) -> IterationLoop:
    iteration_cfg = config.get("iteration") or {}
    return IterationLoop(
        generator=LLMChangeGenerator(client),
        workspace=GitWorkspaceProvider.from_config(config),
        verifier=CommandVerificationRunner.from_config(config),
        events=events,
        store=store,
        artifacts=ArtifactStore.from_config(config, store=store),
        cleanup_snapshots=bool(iteration_cfg.get("cleanup_snapshots", False)),
    )


def _render_event(event: TaskEvent) -> None:
    prefix = f"[{event.iteration}] " if event.iteration else ""
    typer.echo(f"{prefix}{event.type}: {event.message}")


def _require_task(store: TaskStore, task_id: str) -> Task:
    task = store.get_task(task_id)
    if task is None:
        typer.echo(f"Task not found: {task_id}")
        raise typer.Exit(code=1)
    return task


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file to create.",
    ),
    repo: Optional[str] = typer.Option(
        None,
        "--repo",
        help="Default repository (path or git URL) recorded as project.repo_root.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Overwrite an existing configuration file.",
    ),
) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Config already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)

    config_data = copy_config_template()
    if repo:
        config_data["project"]["repo_root"] = repo
    config_data["project"]["name"] = config_path.resolve().parent.name
    write_config(config_path, config_data)
    typer.echo(f"Wrote configuration to {config_path}")


@app.command()
def run(
    description: str = typer.Argument(..., help="Natural-language description of the change to make."),
    repo: Optional[str] = typer.Option(
        None,
        "--repo",
        "-r",
        help="Repository path or git URL; defaults to project.repo_root.",
    ),
    max_iterations: Optional[int] = typer.Option(
        None,
        "--max-iterations",
        "-n",
        min=1,
        help="Iteration budget; defaults to iteration.max_iterations.",
    ),
    use_remote: bool = typer.Option(
        True,
        "--use-remote/--no-use-remote",
        help="Call the Gemini API instead of the offline stub (requires API key).",
    ),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Run one task until its tests pass or the iteration budget runs out."""
    _configure_logging(verbose)
    config_data = _load_config(Path(config))
    iteration_cfg = config_data.get("iteration") or {}
    project_cfg = config_data.get("project") or {}
    repo_ref = repo or str(project_cfg.get("repo_root") or ".")
    budget = max_iterations or int(iteration_cfg.get("max_iterations", 3) or 3)

    client = _build_client(config_data, use_remote=use_remote)
    events = EventSink()
    events.subscribe_all(_render_event)

    with TaskStore.from_config(config_data) as store:
        loop = _build_loop(config_data, store, client, events)
        with TaskRunner(loop, max_workers=int(iteration_cfg.get("max_workers", 4) or 4)) as runner:
            task = runner.start_task(description, repo_ref, max_iterations=budget)
            typer.echo(f"Task {task.id} started")
            try:
                task = runner.wait(task.id)
            except KeyboardInterrupt:
                typer.echo("Cancelling task...")
                runner.cancel(task.id)
                task = runner.wait(task.id)

    typer.echo(f"Task {task.id} {task.status.value} after {task.current_iteration} iteration(s)")
    if task.failure_reason:
        typer.echo(f"Reason: {task.failure_reason}")
    if task.status is not TaskStatus.COMPLETED:
        raise typer.Exit(code=1)


@app.command()
def status(
    task_id: str = typer.Argument(..., help="Task identifier."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
) -> None:
    """Show a task's status and iteration progress."""
    config_data = _load_config(Path(config))
    with TaskStore.from_config(config_data) as store:
        task = _require_task(store, task_id)
        signatures = store.list_thought_signatures(task_id)

    typer.echo(f"Task: {task.id}")
    typer.echo(f"Description: {task.description}")
    typer.echo(f"Status: {task.status.value}")
    typer.echo(f"Iteration: {task.current_iteration}/{task.max_iterations}")
    if task.branch:
        typer.echo(f"Branch: {task.branch}")
    if task.workspace_path:
        typer.echo(f"Workspace: {task.workspace_path}")
    if task.failure_reason:
        typer.echo(f"Reason: {task.failure_reason}")
    if signatures:
        typer.echo("Reasoning:")
        for signature in signatures:
            typer.echo(f"- [{signature.iteration}:{signature.phase}] {signature.summary}")


@app.command()
def tasks(
    limit: int = typer.Option(20, "--limit", "-l", min=1, help="Maximum number of tasks to list."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
) -> None:
    """List recent tasks, newest first."""
    config_data = _load_config(Path(config))
    with TaskStore.from_config(config_data) as store:
        records = store.list_tasks(limit=limit)

    if not records:
        typer.echo("No tasks recorded.")
        return
    for task in records:
        typer.echo(
            f"{task.id} [{task.status.value}] {task.current_iteration}/{task.max_iterations} {task.description}"
        )


@app.command()
def events(
    task_id: str = typer.Argument(..., help="Task identifier."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    as_json: bool = typer.Option(False, "--json", help="Print one JSON object per event."),
) -> None:
    """Replay a task's persisted event trail in order."""
    config_data = _load_config(Path(config))
    with TaskStore.from_config(config_data) as store:
        _require_task(store, task_id)
        records = store.list_events(task_id)

    for event in records:
        if as_json:
            typer.echo(event.model_dump_json())
        else:
            typer.echo(f"{event.sequence:>3} {event.timestamp.isoformat()} {event.type}: {event.message}")


@app.command()
def artifacts(
    task_id: str = typer.Argument(..., help="Task identifier."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
) -> None:
    """List the artifacts saved for a task."""
    config_data = _load_config(Path(config))
    with TaskStore.from_config(config_data) as store:
        _require_task(store, task_id)
        records = ArtifactStore.from_config(config_data, store=store).list(task_id)

    if not records:
        typer.echo("No artifacts recorded.")
        return
    for artifact in records:
        typer.echo(f"{artifact.kind.value:<10} {artifact.name} ({artifact.size} bytes) {artifact.path}")


@app.command()
def workspace(
    task_id: str = typer.Argument(..., help="Task identifier."),
    path: Optional[str] = typer.Argument(None, help="File inside the workspace to print."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
) -> None:
    """List a task's workspace files, or print one of them."""
    config_data = _load_config(Path(config))
    with TaskStore.from_config(config_data) as store:
        task = _require_task(store, task_id)

    root = Path(task.workspace_path) if task.workspace_path else None
    if root is None or not root.is_dir():
        typer.echo(f"Workspace for task {task_id} no longer exists.")
        raise typer.Exit(code=1)

    if path is None:
        for entry in list_workspace_files(root):
            if entry.is_dir:
                typer.echo(f"{entry.path}/")
            else:
                typer.echo(f"{entry.path} ({entry.size} bytes)")
        return

    try:
        target = resolve_workspace_path(root, path)
    except PatchError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1)
    if not target.is_file():
        typer.echo(f"File not found: {path}")
        raise typer.Exit(code=1)
    typer.echo(target.read_bytes().decode("utf-8", errors="replace"), nl=False)


@app.command()
def cleanup(
    days: int = typer.Option(7, "--days", min=0, help="Remove artifact directories older than this many days."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
) -> None:
    """Delete old per-task artifact directories."""
    config_data = _load_config(Path(config))
    removed = ArtifactStore.from_config(config_data).cleanup_older_than(timedelta(days=days))
    typer.echo(f"Removed {len(removed)} artifact director{'y' if len(removed) == 1 else 'ies'}.")


if __name__ == "__main__":
    app()
