"""Apply a ChangeSet to a workspace directory one file at a time."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Mapping

import logging

from ..structured import ChangeSet
from .patch import PatchEngine, PatchError

LOGGER = logging.getLogger(__name__)


class PartialApplyFailure(RuntimeError):
    """Some files of a ChangeSet could not be written; the rest were applied."""

    def __init__(self, failed: Mapping[str, str]) -> None:
        joined = ", ".join(sorted(failed))
        super().__init__(f"{len(failed)} file(s) failed to apply: {joined}")
        self.failed: dict[str, str] = dict(failed)


@dataclass(slots=True)
class ApplyOutcome:
    """Per-file result of applying a ChangeSet.

    Every path of the ChangeSet lands in exactly one of ``applied_files`` and
    ``failed_files``; when a path repeats, its last attempt decides.
    """

    applied_files: list[str] = field(default_factory=list)
    failed_files: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    strategies: dict[str, str] = field(default_factory=dict)

    @property
    def partial_failure(self) -> PartialApplyFailure | None:
        if not self.failed_files:
            return None
        return PartialApplyFailure({path: self.errors.get(path, "") for path in self.failed_files})

    def _record(self, path: str, *, strategy: str | None = None, error: str | None = None) -> None:
        if path in self.applied_files:
            self.applied_files.remove(path)
        if path in self.failed_files:
            self.failed_files.remove(path)
        self.errors.pop(path, None)
        self.strategies.pop(path, None)
        if error is None:
            self.applied_files.append(path)
            if strategy:
                self.strategies[path] = strategy
        else:
            self.failed_files.append(path)
            self.errors[path] = error

    def to_payload(self) -> dict[str, Any]:
        return {
            "applied": list(self.applied_files),
            "failed": list(self.failed_files),
            "errors": dict(self.errors),
            "strategies": dict(self.strategies),
        }


def resolve_workspace_path(workspace_root: Path, relative: str) -> Path:
    """Return the absolute target for ``relative`` or raise ``PatchError`` if unsafe."""
    cleaned = relative.strip().replace("\\", "/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    candidate = PurePosixPath(cleaned)
    if not cleaned or candidate.is_absolute() or Path(relative).is_absolute():
        raise PatchError(f"Absolute or empty paths are not permitted: {relative!r}")
    parts = list(candidate.parts)
    if any(part == ".." for part in parts):
        raise PatchError(f"Path escaping detected: {relative}")
    if parts and parts[0] == ".git":
        raise PatchError("Changes may not target the .git directory.")
    root = workspace_root.resolve()
    target = (root / Path(*parts)).resolve()
    if not target.is_relative_to(root):
        raise PatchError(f"Path resolves outside the workspace: {relative}")
    return target


def _read_text(path: Path) -> str | None:
    if not path.exists():
        return None
    with path.open("r", encoding="utf-8", newline="") as handle:
        return handle.read()


def _write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        handle.write(content)


def apply_change_set(
    workspace_root: Path | str,
    change_set: ChangeSet,
    *,
    engine: PatchEngine | None = None,
) -> ApplyOutcome:
    """Apply every change in order; a failing file never stops the others."""

    root = Path(workspace_root)
    patch_engine = engine or PatchEngine()
    outcome = ApplyOutcome()
    for change in change_set:
        try:
            target = resolve_workspace_path(root, change.path)
            prior = _read_text(target)
            result = patch_engine.apply_detailed(prior, change.change_text, path=change.path)
            if not (result.noop and prior is None):
                if result.content != prior:
                    _write_text(target, result.content)
        except Exception as error:
            LOGGER.warning("Failed to apply change to %s: %s", change.path, error)
            outcome._record(change.path, error=str(error))
            continue
        outcome._record(change.path, strategy=result.strategy)
    return outcome


__all__ = ["ApplyOutcome", "PartialApplyFailure", "apply_change_set", "resolve_workspace_path"]
