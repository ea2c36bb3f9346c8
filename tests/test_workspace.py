from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import TinyRepo, run_git
from vibeci.tools.vcs import GitError, GitRepository
from vibeci.tools.workspace import GitWorkspaceProvider, summarize_repository


def test_snapshot_copies_repo_without_dependencies(tiny_repo: TinyRepo, tmp_path: Path) -> None:
    provider = GitWorkspaceProvider(tmp_path / "workspaces")

    workspace = provider.snapshot(str(tiny_repo.root))

    assert workspace.parent == (tmp_path / "workspaces").resolve()
    assert (workspace / "src" / "tiny_app" / "calculator.py").exists()
    assert not (workspace / "node_modules").exists()
    assert provider.current_ref(workspace) is not None
    exclude = (workspace / ".git" / "info" / "exclude").read_text(encoding="utf-8")
    assert ".vibeci/" in exclude
    assert run_git(workspace, "status", "--porcelain") == ""


def test_snapshot_skips_data_directory_inside_source(tiny_repo: TinyRepo) -> None:
    data = tiny_repo.root / "data"
    data.mkdir()
    (data / "vibeci.sqlite").write_bytes(b"db")
    provider = GitWorkspaceProvider(data / "workspaces", exclude=[data])

    first = provider.snapshot(str(tiny_repo.root))
    second = provider.snapshot(str(tiny_repo.root))

    assert first.parent == second.parent == (data / "workspaces").resolve()
    assert not (second / "data").exists()
    assert (second / "src" / "tiny_app" / "calculator.py").exists()
    assert "data/" not in run_git(second, "ls-files")


def test_snapshot_does_not_copy_its_own_workspace_root(tiny_repo: TinyRepo) -> None:
    provider = GitWorkspaceProvider(tiny_repo.root / "workspaces")

    provider.snapshot(str(tiny_repo.root))
    workspace = provider.snapshot(str(tiny_repo.root))

    assert not (workspace / "workspaces").exists()


def test_failed_snapshot_leaves_nothing_behind(
    tiny_repo: TinyRepo,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _refuse(cls, root, **_: object) -> GitRepository:
        raise GitError("git init refused")

    monkeypatch.setattr(GitRepository, "initialise", classmethod(_refuse))
    provider = GitWorkspaceProvider(tmp_path / "workspaces")

    with pytest.raises(GitError):
        provider.snapshot(str(tiny_repo.root))

    assert list((tmp_path / "workspaces").iterdir()) == []


def test_from_config_excludes_data_paths(tmp_path: Path) -> None:
    config = {
        "paths": {
            "workspaces": str(tmp_path / "data" / "workspaces"),
            "data": str(tmp_path / "data"),
            "db_path": str(tmp_path / "state.sqlite"),
        }
    }

    provider = GitWorkspaceProvider.from_config(config)

    assert provider.exclude == {
        (tmp_path / "data" / "workspaces").resolve(),
        (tmp_path / "data").resolve(),
        (tmp_path / "state.sqlite").resolve(),
    }


def test_snapshots_are_isolated(tiny_repo: TinyRepo, tmp_path: Path) -> None:
    provider = GitWorkspaceProvider(tmp_path / "workspaces")

    first = provider.snapshot(str(tiny_repo.root))
    second = provider.snapshot(str(tiny_repo.root))
    (first / "src" / "tiny_app" / "calculator.py").write_text("broken\n", encoding="utf-8")

    assert first != second
    assert tiny_repo.read("src/tiny_app/calculator.py").startswith("def add")
    assert (second / "src" / "tiny_app" / "calculator.py").read_text(encoding="utf-8").startswith("def add")


def test_branch_commit_and_diff(tiny_repo: TinyRepo, tmp_path: Path) -> None:
    provider = GitWorkspaceProvider(tmp_path / "workspaces", branch_prefix="vibeci/task-")
    workspace = provider.snapshot(str(tiny_repo.root))
    base = provider.current_ref(workspace)

    branch = provider.start_branch(workspace, "0123456789abcdef")
    (workspace / "NOTES.md").write_text("hello\n", encoding="utf-8")
    first = provider.commit(workspace, "VibeCI: Iteration 1 - Initial implementation")
    empty = provider.commit(workspace, "VibeCI: Iteration 2 - Fix attempt")

    assert branch == "vibeci/task-01234567"
    assert GitRepository(workspace).current_branch() == branch
    assert first and empty and first != empty
    diff = provider.diff(workspace, base, "HEAD")
    assert "+hello" in diff
    assert "NOTES.md" in diff


def test_snapshot_of_missing_directory_fails(tmp_path: Path) -> None:
    provider = GitWorkspaceProvider(tmp_path / "workspaces")

    with pytest.raises(GitError):
        provider.snapshot(str(tmp_path / "does-not-exist"))


def test_cleanup_removes_only_own_workspaces(tiny_repo: TinyRepo, tmp_path: Path) -> None:
    provider = GitWorkspaceProvider(tmp_path / "workspaces")
    workspace = provider.snapshot(str(tiny_repo.root))

    provider.cleanup(workspace)

    assert not workspace.exists()
    with pytest.raises(GitError):
        provider.cleanup(tiny_repo.root)


def test_summarize_repository_splits_tests_and_reads_package_json(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "sum.js").write_text("module.exports = 1;\n", encoding="utf-8")
    (tmp_path / "src" / "sum.spec.js").write_text("test('x', () => {});\n", encoding="utf-8")
    (tmp_path / "package.json").write_text(json.dumps({"name": "demo", "scripts": {"test": "jest"}}), encoding="utf-8")
    (tmp_path / "README.md").write_text("# demo\n", encoding="utf-8")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.js").write_text("x", encoding="utf-8")
    (tmp_path / "big.py").write_text("x = 1\n" * 100, encoding="utf-8")

    summary = summarize_repository(tmp_path, max_file_bytes=200)

    assert sorted(item.path for item in summary.files) == ["package.json", "src/sum.js"]
    assert [item.path for item in summary.test_files] == ["src/sum.spec.js"]
    assert summary.package_json == {"name": "demo", "scripts": {"test": "jest"}}
    assert summary.files[0].language in {"json", "javascript"}
