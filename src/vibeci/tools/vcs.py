"""Git plumbing for task workspaces.

Each iteration lands as one commit on the task branch, so any two recorded
refs can be diffed for the final report.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Sequence

import subprocess

DEFAULT_IDENTITY = ("vibeci@example.com", "VibeCI")


class GitError(RuntimeError):
    """A git invocation exited non-zero or the directory is not a repository."""


def _run(args: Sequence[str], *, cwd: Path, check: bool = True) -> subprocess.CompletedProcess[str]:
    # Bytes in, replacement-decoded text out: workspaces may hold any encoding.
    process = subprocess.run(["git", *args], cwd=cwd, capture_output=True, check=False)
    completed = subprocess.CompletedProcess(
        process.args,
        process.returncode,
        (process.stdout or b"").decode("utf-8", errors="replace"),
        (process.stderr or b"").decode("utf-8", errors="replace"),
    )
    if check and completed.returncode != 0:
        detail = completed.stderr.strip() or completed.stdout.strip() or "no output"
        raise GitError(f"git {' '.join(args)} exited {completed.returncode}: {detail}")
    return completed


class GitRepository:
    """A working tree VibeCI is allowed to commit into."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def initialise(
        cls,
        root: Path | str,
        *,
        identity: tuple[str, str] = DEFAULT_IDENTITY,
        message: str = "Initial commit",
    ) -> "GitRepository":
        """Turn ``root`` into a repository with at least one commit."""

        target = Path(root).resolve()
        target.mkdir(parents=True, exist_ok=True)
        if not (target / ".git").exists():
            _run(["init"], cwd=target)
        repo = cls(target)
        repo.ensure_identity(identity)
        if repo.head() is None:
            repo.commit_all(message, allow_empty=True)
        return repo

    @classmethod
    def clone(cls, url: str, destination: Path | str) -> "GitRepository":
        target = Path(destination).resolve()
        target.parent.mkdir(parents=True, exist_ok=True)
        _run(["clone", url, str(target)], cwd=target.parent)
        return cls(target)

    def _git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        return _run(args, cwd=self.root, check=check)

    def ensure_identity(self, identity: tuple[str, str] = DEFAULT_IDENTITY) -> None:
        """Configure a repo-local author only where the user has none."""

        email, name = identity
        for key, value in (("user.email", email), ("user.name", name)):
            configured = self._git(["config", "--get", key], check=False)
            if configured.returncode != 0 or not configured.stdout.strip():
                self._git(["config", key, value])

    def exclude(self, *patterns: str) -> None:
        """Ignore ``patterns`` via ``.git/info/exclude`` so no tracked file changes."""

        exclude_file = self.root / ".git" / "info" / "exclude"
        exclude_file.parent.mkdir(parents=True, exist_ok=True)
        present = set(exclude_file.read_text(encoding="utf-8").splitlines()) if exclude_file.exists() else set()
        additions = [pattern for pattern in patterns if pattern not in present]
        if additions:
            with exclude_file.open("a", encoding="utf-8") as handle:
                handle.writelines(f"{pattern}\n" for pattern in additions)

    def current_branch(self) -> str | None:
        """Branch name, or ``None`` on a detached or unborn ``HEAD``."""

        result = self._git(["symbolic-ref", "--quiet", "--short", "HEAD"], check=False)
        name = result.stdout.strip()
        return name if result.returncode == 0 and name else None

    def checkout_branch(self, name: str) -> None:
        self._git(["checkout", "-B", name])

    def head(self) -> str | None:
        result = self._git(["rev-parse", "--verify", "--quiet", "HEAD"], check=False)
        sha = result.stdout.strip()
        return sha if result.returncode == 0 and sha else None

    def diff(self, from_ref: str | None = None, to_ref: str | None = None, *paths: str) -> str:
        """Unified diff between two refs; omitted refs fall back to git's defaults."""

        args: List[str] = ["diff", *[ref for ref in (from_ref, to_ref) if ref]]
        if paths:
            args += ["--", *paths]
        return self._git(args).stdout

    def commit_all(self, message: str, *, allow_empty: bool = False) -> str | None:
        """Stage everything and commit it.

        Gives back the new ``HEAD`` SHA, or ``None`` when the tree was clean and
        ``allow_empty`` was not requested.
        """

        self._git(["add", "--all"])
        args: List[str] = ["commit", "-m", message] + (["--allow-empty"] if allow_empty else [])
        committed = self._git(args, check=False)
        if committed.returncode != 0:
            detail = f"{committed.stdout}\n{committed.stderr}".strip()
            if "nothing to commit" in detail.lower():
                return None
            raise GitError(f"git commit failed: {detail}")
        return self.head()


__all__ = ["DEFAULT_IDENTITY", "GitError", "GitRepository"]
