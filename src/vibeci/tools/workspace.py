"""Isolated task workspaces and repository summaries for the change generator."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Collection, Iterable, Mapping, Protocol

import json
import logging
import os
import shutil
import uuid

from .vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)

SKIP_COPY_DIRS = frozenset({"node_modules", ".git", ".venv", "venv", "__pycache__"})
SKIP_SUMMARY_DIRS = frozenset({"node_modules", ".git", "dist", "coverage", "__pycache__", ".venv", "venv", ".vibeci"})
CODE_EXTENSIONS = frozenset({".ts", ".tsx", ".js", ".jsx", ".py", ".json"})
LANGUAGES = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".py": "python",
    ".json": "json",
    ".md": "markdown",
    ".css": "css",
    ".html": "html",
    ".yaml": "yaml",
    ".yml": "yaml",
}
WORKSPACE_EXCLUDES = (".vibeci/", "node_modules/", "__pycache__/", ".pytest_cache/")


class WorkspaceProvider(Protocol):
    """Operations the iteration loop needs from an isolated workspace."""

    def snapshot(self, source_ref: str) -> Path:
        ...

    def commit(self, path: Path, message: str) -> str | None:
        ...

    def diff(self, path: Path, from_ref: str | None, to_ref: str | None) -> str:
        ...

    def current_ref(self, path: Path) -> str | None:
        ...


@dataclass(slots=True)
class FileSummary:
    path: str
    content: str
    language: str

    def to_payload(self) -> dict[str, str]:
        return {"path": self.path, "content": self.content, "language": self.language}


@dataclass(slots=True)
class RepoSummary:
    """Code files of a workspace, with test files split out."""

    files: list[FileSummary] = field(default_factory=list)
    test_files: list[FileSummary] = field(default_factory=list)
    package_json: dict[str, Any] | None = None

    @property
    def paths(self) -> list[str]:
        return [item.path for item in (*self.files, *self.test_files)]

    def to_payload(self) -> dict[str, Any]:
        return {
            "files": [item.to_payload() for item in self.files],
            "test_files": [item.to_payload() for item in self.test_files],
            "package_json": self.package_json,
        }


@dataclass(slots=True)
class WorkspaceEntry:
    path: str
    is_dir: bool
    size: int | None = None


def list_workspace_files(root: Path | str) -> list[WorkspaceEntry]:
    """List a workspace depth-first, leaving out ``node_modules`` and hidden entries."""

    base = Path(root)
    entries: list[WorkspaceEntry] = []
    for current, dirnames, filenames in os.walk(base):
        dirnames[:] = sorted(name for name in dirnames if name != "node_modules" and not name.startswith("."))
        here = Path(current)
        if here != base:
            entries.append(WorkspaceEntry(path=here.relative_to(base).as_posix(), is_dir=True))
        for filename in sorted(filenames):
            if filename.startswith("."):
                continue
            full_path = here / filename
            entries.append(
                WorkspaceEntry(
                    path=full_path.relative_to(base).as_posix(),
                    is_dir=False,
                    size=full_path.stat().st_size,
                )
            )
    return entries


def _is_remote(source_ref: str) -> bool:
    return source_ref.startswith(("http://", "https://", "git@", "ssh://"))


def copy_tree(source: Path, destination: Path, *, skip: Collection[Path] = ()) -> None:
    """Copy ``source`` into ``destination`` skipping dependency and VCS folders.

    Entries whose resolved path is listed in ``skip`` (absolute paths) are left
    out, which keeps VibeCI's own data directory out of snapshots taken from
    the repository that holds it.
    """
    destination.mkdir(parents=True, exist_ok=True)
    for entry in sorted(source.iterdir(), key=lambda item: item.name):
        if entry.name in SKIP_COPY_DIRS:
            continue
        if skip and entry.resolve() in skip:
            continue
        target = destination / entry.name
        if entry.is_symlink():
            os.symlink(os.readlink(entry), target)
        elif entry.is_dir():
            copy_tree(entry, target, skip=skip)
        else:
            shutil.copy2(entry, target)


def summarize_repository(root: Path | str, *, max_file_bytes: int = 64_000) -> RepoSummary:
    """Walk ``root`` and collect code files by extension for prompt context."""

    base = Path(root).resolve()
    summary = RepoSummary()
    for current, dirnames, filenames in os.walk(base):
        dirnames[:] = sorted(name for name in dirnames if name not in SKIP_SUMMARY_DIRS)
        for filename in sorted(filenames):
            full_path = Path(current) / filename
            suffix = full_path.suffix.lower()
            if suffix not in CODE_EXTENSIONS:
                continue
            try:
                if full_path.stat().st_size > max_file_bytes:
                    LOGGER.debug("Skipping large file %s", full_path)
                    continue
                content = full_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            relative = full_path.relative_to(base).as_posix()
            item = FileSummary(path=relative, content=content, language=LANGUAGES.get(suffix, "text"))
            lowered = relative.lower()
            if "test" in lowered or "spec" in lowered:
                summary.test_files.append(item)
            else:
                summary.files.append(item)
            if filename == "package.json" and summary.package_json is None:
                try:
                    parsed = json.loads(content)
                except json.JSONDecodeError:
                    parsed = None
                if isinstance(parsed, dict):
                    summary.package_json = parsed
    return summary


class GitWorkspaceProvider:
    """Create per-task git workspaces under a common root directory."""

    def __init__(
        self,
        root: Path | str,
        *,
        branch_prefix: str = "vibeci/task-",
        exclude: Iterable[Path | str] = (),
    ) -> None:
        self.root = Path(root).resolve()
        self.branch_prefix = branch_prefix
        # Never copied into a snapshot, even when they live inside the source.
        self.exclude = frozenset({self.root, *(Path(item).resolve() for item in exclude)})

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "GitWorkspaceProvider":
        paths = config.get("paths", {}) or {}
        iteration = config.get("iteration", {}) or {}
        return cls(
            paths.get("workspaces", "data/workspaces"),
            branch_prefix=iteration.get("branch_prefix", "vibeci/task-"),
            exclude=[paths[key] for key in ("data", "db_path", "artifacts", "logs") if paths.get(key)],
        )

    def snapshot(self, source_ref: str) -> Path:
        """Copy or clone ``source_ref`` into a fresh workspace and return its path."""

        destination = self.root / uuid.uuid4().hex
        try:
            if _is_remote(source_ref):
                LOGGER.info("Cloning %s into %s", source_ref, destination)
                repo = GitRepository.clone(source_ref, destination)
                repo.ensure_identity()
            else:
                source = Path(source_ref).expanduser().resolve()
                if not source.is_dir():
                    raise GitError(f"Workspace source is not a directory: {source}")
                LOGGER.info("Copying %s into %s", source, destination)
                copy_tree(source, destination, skip=self.exclude)
                repo = GitRepository.initialise(destination)
            repo.exclude(*WORKSPACE_EXCLUDES)
        except (OSError, GitError):
            shutil.rmtree(destination, ignore_errors=True)
            raise
        return destination

    def start_branch(self, path: Path, task_id: str) -> str:
        """Switch the workspace to the task branch and return its name."""

        name = f"{self.branch_prefix}{task_id[:8]}"
        GitRepository(path).checkout_branch(name)
        return name

    def commit(self, path: Path, message: str) -> str | None:
        return GitRepository(path).commit_all(message, allow_empty=True)

    def diff(self, path: Path, from_ref: str | None, to_ref: str | None) -> str:
        return GitRepository(path).diff(from_ref, to_ref)

    def current_ref(self, path: Path) -> str | None:
        return GitRepository(path).head()

    def cleanup(self, path: Path) -> None:
        """Remove a workspace created by this provider."""

        target = Path(path).resolve()
        if not target.is_relative_to(self.root):
            raise GitError(f"Refusing to remove a path outside {self.root}: {target}")
        shutil.rmtree(target, ignore_errors=True)


__all__ = [
    "CODE_EXTENSIONS",
    "FileSummary",
    "GitWorkspaceProvider",
    "RepoSummary",
    "WorkspaceEntry",
    "WorkspaceProvider",
    "copy_tree",
    "list_workspace_files",
    "summarize_repository",
]
