"""Per-task artifact files (diffs, logs, reports, screenshots) and their records."""

from __future__ import annotations

import json
import logging
import shutil
import time
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Any, List, Mapping, Optional

from .memory.schema import Artifact, ArtifactKind, utc_now
from .memory.store import TaskStore
from .structured import ChangeSet
from .tools.verification import VerificationResult
from .utils.slug import slugify

LOGGER = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(days=7)
_EXTENSIONS = {
    ArtifactKind.LOG: ".log",
    ArtifactKind.DIFF: ".diff",
    ArtifactKind.REPORT: ".md",
    ArtifactKind.SCREENSHOT: ".png",
}


def render_change_set(change_set: ChangeSet) -> str:
    """Render a ChangeSet as ``=== path ===`` blocks."""
    return "\n\n".join(f"=== {change.path} ===\n{change.change_text}" for change in change_set)


class ArtifactStore:
    """Write artifact files under ``root/<task_id>/`` and mirror them into the task store."""

    def __init__(self, root: Path | str, *, store: Optional[TaskStore] = None) -> None:
        self.root = Path(root).resolve()
        self.store = store
        self._memory: dict[str, List[Artifact]] = {}

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, store: Optional[TaskStore] = None) -> "ArtifactStore":
        paths = config.get("paths") or {}
        return cls(paths.get("artifacts") or "data/artifacts", store=store)

    def task_dir(self, task_id: str) -> Path:
        directory = self.root / slugify(task_id, fallback="task", max_length=80)
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def _filename(self, kind: ArtifactKind, name: str, suffix: Optional[str]) -> str:
        stamp = int(time.time() * 1000)
        extension = suffix or _EXTENSIONS[kind]
        return f"{kind.value}-{slugify(name)}-{stamp}-{uuid.uuid4().hex[:6]}{extension}"

    def save(
        self,
        task_id: str,
        kind: ArtifactKind | str,
        name: str,
        content: str | bytes,
        *,
        suffix: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Artifact:
        """Write ``content`` to the task directory and record it."""
        artifact_kind = ArtifactKind(kind)
        target = self.task_dir(task_id) / self._filename(artifact_kind, name, suffix)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            target.write_text(content, encoding="utf-8")
        return self._register(task_id, artifact_kind, name, target, metadata)

    def _register(
        self,
        task_id: str,
        kind: ArtifactKind,
        name: str,
        target: Path,
        metadata: Optional[Mapping[str, Any]],
    ) -> Artifact:
        artifact = Artifact(
            id=uuid.uuid4().hex,
            task_id=task_id,
            kind=kind,
            name=name,
            path=str(target),
            size=target.stat().st_size,
            metadata=dict(metadata or {}),
        )
        if self.store is not None:
            self.store.record_artifact(artifact)
        else:
            self._memory.setdefault(task_id, []).append(artifact)
        LOGGER.debug("Saved %s artifact %s for task %s", kind.value, target.name, task_id)
        return artifact

    def save_log(self, task_id: str, name: str, content: str) -> Artifact:
        return self.save(task_id, ArtifactKind.LOG, name, content)

    def save_diff(self, task_id: str, change_set: ChangeSet, iteration: int) -> Artifact:
        return self.save(
            task_id,
            ArtifactKind.DIFF,
            f"Patches (Iteration {iteration})",
            render_change_set(change_set),
            metadata={"iteration": iteration, "files": list(change_set.paths)},
        )

    def save_test_result(self, task_id: str, iteration: int, result: VerificationResult) -> Artifact:
        return self.save(
            task_id,
            ArtifactKind.LOG,
            f"Test Result (Iteration {iteration})",
            json.dumps(result.to_payload(), indent=2),
            suffix=".json",
            metadata={"iteration": iteration, "passed": result.passed},
        )

    def save_report(self, task_id: str, name: str, content: str) -> Artifact:
        return self.save(task_id, ArtifactKind.REPORT, name, content)

    def save_screenshot(self, task_id: str, name: str, image_path: Path | str) -> Artifact:
        source = Path(image_path)
        target = self.task_dir(task_id) / self._filename(ArtifactKind.SCREENSHOT, name, source.suffix or None)
        shutil.copy2(source, target)
        return self._register(task_id, ArtifactKind.SCREENSHOT, name, target, {"source": str(source)})

    def list(self, task_id: str) -> List[Artifact]:
        if self.store is not None:
            return self.store.list_artifacts(task_id)
        return list(self._memory.get(task_id, ()))

    def read(self, artifact: Artifact) -> str | bytes:
        path = Path(artifact.path)
        if artifact.kind is ArtifactKind.SCREENSHOT:
            return path.read_bytes()
        return path.read_text(encoding="utf-8")

    def write_manifest(self, task_id: str) -> Path:
        """Write ``manifest.json`` listing the task's artifacts and return its path."""
        manifest = {
            "task_id": task_id,
            "created_at": utc_now().isoformat(),
            "artifacts": [
                {
                    "id": artifact.id,
                    "kind": artifact.kind.value,
                    "name": artifact.name,
                    "path": Path(artifact.path).name,
                }
                for artifact in self.list(task_id)
            ],
        }
        path = self.task_dir(task_id) / "manifest.json"
        path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        return path

    def cleanup_older_than(self, max_age: timedelta = DEFAULT_RETENTION, *, now: Optional[float] = None) -> List[str]:
        """Remove task directories older than ``max_age`` along with their records."""
        if not self.root.exists():
            return []
        current = time.time() if now is None else now
        removed: List[str] = []
        for entry in sorted(self.root.iterdir()):
            if not entry.is_dir():
                continue
            if current - entry.stat().st_mtime > max_age.total_seconds():
                shutil.rmtree(entry, ignore_errors=True)
                self._forget_directory(entry)
                removed.append(entry.name)
                LOGGER.info("Cleaned up old artifacts: %s", entry.name)
        return removed

    def _forget_directory(self, directory: Path) -> None:
        if self.store is not None:
            for artifact in self.store.list_artifacts_under(str(directory)):
                self.store.delete_artifact(artifact.id)
            return
        for task_id, artifacts in list(self._memory.items()):
            kept = [artifact for artifact in artifacts if not Path(artifact.path).is_relative_to(directory)]
            if kept:
                self._memory[task_id] = kept
            else:
                del self._memory[task_id]


__all__ = ["ArtifactStore", "DEFAULT_RETENTION", "render_change_set"]
