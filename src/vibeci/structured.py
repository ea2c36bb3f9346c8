"""Typed payloads exchanged between the change generator and the iteration loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Literal, Union


@dataclass(frozen=True, slots=True)
class FileChange:
    """Proposed modification for a single file, expressed as diff or full text."""

    path: str
    change_text: str


@dataclass(frozen=True, slots=True)
class ChangeSet:
    """Ordered batch of per-file changes produced by one generator call."""

    changes: tuple[FileChange, ...] = ()

    @classmethod
    def from_pairs(cls, pairs: Iterable[tuple[str, str]]) -> "ChangeSet":
        return cls(tuple(FileChange(path=path, change_text=text) for path, text in pairs))

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(change.path for change in self.changes)

    def __len__(self) -> int:
        return len(self.changes)

    def __iter__(self):
        return iter(self.changes)

    def __bool__(self) -> bool:
        return bool(self.changes)

    def to_payload(self) -> list[dict[str, str]]:
        return [{"file": change.path, "diff": change.change_text} for change in self.changes]


@dataclass(slots=True)
class PlanResult:
    """First-iteration output: an implementation plan and its change set."""

    plan: list[str]
    change_set: ChangeSet
    reasoning_summary: str = ""
    kind: Literal["plan"] = "plan"


@dataclass(slots=True)
class DiagnosisResult:
    """Later-iteration output: failure analysis and a corrective change set."""

    analysis: str
    next_steps: list[str]
    change_set: ChangeSet
    reasoning_summary: str = ""
    kind: Literal["diagnosis"] = "diagnosis"


@dataclass(slots=True)
class GenerationFailure:
    """Generator output that could not be parsed into a usable response."""

    stage: str
    reason: str
    raw: str | None = None
    change_set: ChangeSet = field(default_factory=ChangeSet)
    kind: Literal["failure"] = "failure"


GenerationResult = Union[PlanResult, DiagnosisResult, GenerationFailure]


__all__ = [
    "ChangeSet",
    "DiagnosisResult",
    "FileChange",
    "GenerationFailure",
    "GenerationResult",
    "PlanResult",
]
