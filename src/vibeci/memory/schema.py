"""Typed records tracked by the VibeCI task store."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class TaskStatus(str, Enum):
    """Lifecycle states for a task."""

    PENDING = "pending"
    PLANNING = "planning"
    GENERATING = "generating"
    TESTING = "testing"
    ANALYZING = "analyzing"
    FIXING = "fixing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class EventKind(str, Enum):
    """Coarse category of an iteration record."""

    STATUS = "status"
    PLAN = "plan"
    CHANGE_APPLIED = "change-applied"
    VERIFICATION_RESULT = "verification-result"
    DIAGNOSIS = "diagnosis"
    ERROR = "error"
    TERMINAL = "terminal"


class ArtifactKind(str, Enum):
    """Artifact categories stored per task."""

    LOG = "log"
    DIFF = "diff"
    SCREENSHOT = "screenshot"
    REPORT = "report"


class Task(RecordModel):
    """One automated change request and its progress through the loop."""

    id: str
    description: str
    repo_path: str
    workspace_path: Optional[str] = None
    branch: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    current_iteration: int = 0
    max_iterations: int = 3
    failure_reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


class TaskEvent(RecordModel):
    """Append-only entry of a task's audit trail, ordered by ``sequence``."""

    id: str
    task_id: str
    sequence: int = 0
    iteration: int = 0
    kind: EventKind
    type: str
    message: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class ThoughtSignature(RecordModel):
    """Reasoning summary captured at a decision point of an iteration."""

    id: str
    task_id: str
    iteration: int
    phase: str
    summary: str
    status: TaskStatus
    created_at: datetime = Field(default_factory=utc_now)


class Artifact(RecordModel):
    """File produced for a task (diff, log, report, screenshot)."""

    id: str
    task_id: str
    kind: ArtifactKind
    name: str
    path: str
    size: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


__all__ = [
    "Artifact",
    "ArtifactKind",
    "EventKind",
    "RecordModel",
    "Task",
    "TaskEvent",
    "TaskStatus",
    "ThoughtSignature",
    "utc_now",
]
