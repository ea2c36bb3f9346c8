from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def run_git(root: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=root,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


@dataclass(slots=True)
class TinyRepo:
    """Fixture payload representing the synthetic repository under test."""

    root: Path

    def read(self, relative: str) -> str:
        return (self.root / relative).read_text(encoding="utf-8")


@pytest.fixture()
def tiny_repo(tmp_path: Path) -> TinyRepo:
    """Create a tiny git repository with a module and a passing test."""

    repo_root = tmp_path / "tiny-repo"
    (repo_root / "src" / "tiny_app").mkdir(parents=True)
    (repo_root / "tests").mkdir()
    (repo_root / "src" / "tiny_app" / "__init__.py").write_text("", encoding="utf-8")
    (repo_root / "src" / "tiny_app" / "calculator.py").write_text(
        "def add(left, right):\n    return left + right\n",
        encoding="utf-8",
    )
    (repo_root / "tests" / "test_calculator.py").write_text(
        "from tiny_app.calculator import add\n\n\ndef test_add():\n    assert add(2, 3) == 5\n",
        encoding="utf-8",
    )
    (repo_root / "node_modules" / "left-pad").mkdir(parents=True)
    (repo_root / "node_modules" / "left-pad" / "index.js").write_text("module.exports = 1;\n", encoding="utf-8")

    run_git(repo_root, "init")
    run_git(repo_root, "config", "user.email", "agent@example.com")
    run_git(repo_root, "config", "user.name", "Tiny Repo")
    run_git(repo_root, "add", "src", "tests")
    run_git(repo_root, "commit", "-m", "Initial tiny repo state")
    return TinyRepo(root=repo_root)
