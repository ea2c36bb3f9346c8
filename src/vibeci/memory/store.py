"""Durable storage layer for tasks, their event trail, and artifacts."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Mapping, Optional, Sequence

from .schema import (
    Artifact,
    ArtifactKind,
    Task,
    TaskEvent,
    TaskStatus,
    ThoughtSignature,
    utc_now,
)

DEFAULT_DB_PATH = Path("data/vibeci.sqlite")
LOGGER = logging.getLogger(__name__)


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _from_iso(value: str) -> datetime:
    """Parse an ISO 8601 timestamp produced by `_as_iso`."""
    return datetime.fromisoformat(value)


def _optional_iso(timestamp: Optional[datetime]) -> Optional[str]:
    return _as_iso(timestamp) if timestamp is not None else None


def _dump_json(data: Any, *, default: Any) -> str:
    """Convert arbitrary JSON-like payloads into a persisted string."""
    serialisable = default if data is None else data
    return json.dumps(serialisable, default=str)


def _load_json(value: Optional[str], *, default: Any) -> Any:
    """Decode JSON columns while falling back to the provided default."""
    if not value:
        return default
    data = json.loads(value)
    if data is None:
        return default
    return data


def _artifact_from_row(row: sqlite3.Row) -> Artifact:
    return Artifact(
        id=row["id"],
        task_id=row["task_id"],
        kind=row["kind"],
        name=row["name"],
        path=row["path"],
        size=row["size"],
        metadata=_load_json(row["metadata"], default={}),
        created_at=_from_iso(row["created_at"]),
    )


class TaskStore:
    """SQLite-backed persistence shared by concurrently running task loops."""

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        requested = str(db_path)
        if requested == ":memory:":
            self.db_path = Path(requested)
        else:
            self.db_path = Path(db_path).resolve()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._open_connection()
        self._bootstrap()

    def close(self) -> None:
        if getattr(self, "_conn", None) is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "TaskStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _open_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.db_path), check_same_thread=False)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "TaskStore":
        paths = config.get("paths") or {}
        db_path = paths.get("db_path")
        if db_path:
            return cls(Path(db_path))

        data_path = paths.get("data") or "data"
        return cls(Path(data_path) / "vibeci.sqlite")

    def _bootstrap(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    description TEXT NOT NULL,
                    repo_path TEXT NOT NULL,
                    workspace_path TEXT,
                    branch TEXT,
                    status TEXT NOT NULL,
                    current_iteration INTEGER NOT NULL DEFAULT 0,
                    max_iterations INTEGER NOT NULL DEFAULT 3,
                    failure_reason TEXT,
                    metadata TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_tasks_status
                    ON tasks(status, created_at);

                CREATE TABLE IF NOT EXISTS task_events (
                    id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    iteration INTEGER NOT NULL,
                    kind TEXT NOT NULL,
                    type TEXT NOT NULL,
                    message TEXT NOT NULL,
                    data TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    FOREIGN KEY(task_id) REFERENCES tasks(id) ON DELETE CASCADE,
                    UNIQUE(task_id, sequence)
                );

                CREATE TABLE IF NOT EXISTS thought_signatures (
                    id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    iteration INTEGER NOT NULL,
                    phase TEXT NOT NULL,
                    summary TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(task_id) REFERENCES tasks(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS artifacts (
                    id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    name TEXT NOT NULL,
                    path TEXT NOT NULL,
                    size INTEGER NOT NULL DEFAULT 0,
                    metadata TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(task_id) REFERENCES tasks(id) ON DELETE CASCADE
                );
                CREATE INDEX IF NOT EXISTS idx_artifacts_task
                    ON artifacts(task_id, created_at);
                """
            )
            self._conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # Task operations -----------------------------------------------------------------
    def create_task(
        self,
        task_id: str,
        description: str,
        repo_path: str,
        *,
        max_iterations: int = 3,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Task:
        task = Task(
            id=task_id,
            description=description,
            repo_path=repo_path,
            max_iterations=max_iterations,
            metadata=dict(metadata or {}),
        )
        self.save_task(task)
        return task

    def save_task(self, task: Task) -> None:
        record = task.model_copy(update={"updated_at": utc_now()})
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO tasks (
                    id, description, repo_path, workspace_path, branch, status,
                    current_iteration, max_iterations, failure_reason, metadata,
                    created_at, updated_at, completed_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    description = excluded.description,
                    repo_path = excluded.repo_path,
                    workspace_path = excluded.workspace_path,
                    branch = excluded.branch,
                    status = excluded.status,
                    current_iteration = excluded.current_iteration,
                    max_iterations = excluded.max_iterations,
                    failure_reason = excluded.failure_reason,
                    metadata = excluded.metadata,
                    updated_at = excluded.updated_at,
                    completed_at = excluded.completed_at
                """,
                (
                    record.id,
                    record.description,
                    record.repo_path,
                    record.workspace_path,
                    record.branch,
                    record.status.value,
                    record.current_iteration,
                    record.max_iterations,
                    record.failure_reason,
                    _dump_json(record.metadata, default={}),
                    _as_iso(record.created_at),
                    _as_iso(record.updated_at),
                    _optional_iso(record.completed_at),
                ),
            )

    def get_task(self, task_id: str) -> Optional[Task]:
        rows = self._query("SELECT * FROM tasks WHERE id = ?", (task_id,))
        if not rows:
            return None
        return self._row_to_task(rows[0])

    def list_tasks(
        self,
        *,
        statuses: Optional[Sequence[TaskStatus]] = None,
        limit: Optional[int] = None,
    ) -> List[Task]:
        query = "SELECT * FROM tasks"
        params: List[Any] = []
        if statuses:
            placeholders = ",".join("?" for _ in statuses)
            query += f" WHERE status IN ({placeholders})"
            params.extend(status.value for status in statuses)
        query += " ORDER BY created_at DESC"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
        return [self._row_to_task(row) for row in self._query(query, params)]

    def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        current_iteration: Optional[int] = None,
        failure_reason: Optional[str] = None,
    ) -> None:
        now = utc_now()
        assignments = ["status = ?", "updated_at = ?"]
        params: List[Any] = [status.value, _as_iso(now)]
        if current_iteration is not None:
            assignments.append("current_iteration = ?")
            params.append(current_iteration)
        if failure_reason is not None:
            assignments.append("failure_reason = ?")
            params.append(failure_reason)
        if status.terminal:
            assignments.append("completed_at = ?")
            params.append(_as_iso(now))
        params.append(task_id)
        with self._transaction():
            self._conn.execute(f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?", params)

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            description=row["description"],
            repo_path=row["repo_path"],
            workspace_path=row["workspace_path"],
            branch=row["branch"],
            status=row["status"],
            current_iteration=row["current_iteration"],
            max_iterations=row["max_iterations"],
            failure_reason=row["failure_reason"],
            metadata=_load_json(row["metadata"], default={}),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
            completed_at=_from_iso(row["completed_at"]) if row["completed_at"] else None,
        )

    # Event operations ----------------------------------------------------------------
    def append_event(self, event: TaskEvent) -> None:
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO task_events (
                    id, task_id, sequence, iteration, kind, type, message, data, timestamp
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.task_id,
                    event.sequence,
                    event.iteration,
                    event.kind.value,
                    event.type,
                    event.message,
                    _dump_json(event.data, default={}),
                    _as_iso(event.timestamp),
                ),
            )

    def list_events(self, task_id: str, *, after_sequence: int = 0) -> List[TaskEvent]:
        rows = self._query(
            "SELECT * FROM task_events WHERE task_id = ? AND sequence > ? ORDER BY sequence ASC",
            (task_id, after_sequence),
        )
        return [
            TaskEvent(
                id=row["id"],
                task_id=row["task_id"],
                sequence=row["sequence"],
                iteration=row["iteration"],
                kind=row["kind"],
                type=row["type"],
                message=row["message"],
                data=_load_json(row["data"], default={}),
                timestamp=_from_iso(row["timestamp"]),
            )
            for row in rows
        ]

    # Thought signatures --------------------------------------------------------------
    def record_thought_signature(self, signature: ThoughtSignature) -> None:
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO thought_signatures (id, task_id, iteration, phase, summary, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    summary = excluded.summary,
                    status = excluded.status
                """,
                (
                    signature.id,
                    signature.task_id,
                    signature.iteration,
                    signature.phase,
                    signature.summary,
                    signature.status.value,
                    _as_iso(signature.created_at),
                ),
            )

    def list_thought_signatures(self, task_id: str) -> List[ThoughtSignature]:
        rows = self._query(
            "SELECT * FROM thought_signatures WHERE task_id = ? ORDER BY iteration ASC, created_at ASC, rowid ASC",
            (task_id,),
        )
        return [
            ThoughtSignature(
                id=row["id"],
                task_id=row["task_id"],
                iteration=row["iteration"],
                phase=row["phase"],
                summary=row["summary"],
                status=row["status"],
                created_at=_from_iso(row["created_at"]),
            )
            for row in rows
        ]

    # Artifact operations -------------------------------------------------------------
    def record_artifact(self, artifact: Artifact) -> None:
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO artifacts (id, task_id, kind, name, path, size, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    path = excluded.path,
                    size = excluded.size,
                    metadata = excluded.metadata
                """,
                (
                    artifact.id,
                    artifact.task_id,
                    artifact.kind.value,
                    artifact.name,
                    artifact.path,
                    artifact.size,
                    _dump_json(artifact.metadata, default={}),
                    _as_iso(artifact.created_at),
                ),
            )

    def list_artifacts(self, task_id: str, *, kind: Optional[ArtifactKind] = None) -> List[Artifact]:
        query = "SELECT * FROM artifacts WHERE task_id = ?"
        params: List[Any] = [task_id]
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind.value)
        query += " ORDER BY created_at ASC, rowid ASC"
        return [_artifact_from_row(row) for row in self._query(query, params)]

    def list_artifacts_under(self, directory: str) -> List[Artifact]:
        """Artifacts of any task whose file lives below ``directory``."""
        prefix = directory.rstrip("/") + "/"
        rows = self._query(
            "SELECT * FROM artifacts WHERE substr(path, 1, ?) = ? ORDER BY created_at ASC, rowid ASC",
            [len(prefix), prefix],
        )
        return [_artifact_from_row(row) for row in rows]

    def delete_artifact(self, artifact_id: str) -> None:
        with self._transaction():
            self._conn.execute("DELETE FROM artifacts WHERE id = ?", (artifact_id,))


class StoreEventWriter:
    """EventSink subscriber that persists every record it receives."""

    def __init__(self, store: TaskStore) -> None:
        self.store = store

    def __call__(self, event: TaskEvent) -> None:
        try:
            self.store.append_event(event)
        except sqlite3.Error as error:
            LOGGER.error("Failed to persist event %s for task %s: %s", event.type, event.task_id, error)


__all__ = ["DEFAULT_DB_PATH", "StoreEventWriter", "TaskStore"]
