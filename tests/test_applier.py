from __future__ import annotations

from pathlib import Path

import pytest

from vibeci.structured import ChangeSet
from vibeci.tools.applier import PartialApplyFailure, apply_change_set, resolve_workspace_path
from vibeci.tools.patch import PatchError


def test_applies_each_file_and_creates_directories(tmp_path: Path) -> None:
    (tmp_path / "app.py").write_text("value = 1\n", encoding="utf-8")
    change_set = ChangeSet.from_pairs(
        [
            ("app.py", "--- a/app.py\n+++ b/app.py\n@@ -1 +1 @@\n-value = 1\n+value = 2\n"),
            ("pkg/new_module.py", "def helper():\n    return 'ok'\n"),
        ]
    )

    outcome = apply_change_set(tmp_path, change_set)

    assert outcome.applied_files == ["app.py", "pkg/new_module.py"]
    assert outcome.failed_files == []
    assert outcome.partial_failure is None
    assert outcome.strategies == {"app.py": "unified-diff", "pkg/new_module.py": "replace"}
    assert (tmp_path / "app.py").read_text(encoding="utf-8") == "value = 2\n"
    assert (tmp_path / "pkg" / "new_module.py").exists()


def test_unsafe_paths_fail_without_stopping_other_files(tmp_path: Path) -> None:
    change_set = ChangeSet.from_pairs(
        [
            ("../escape.txt", "nope\n"),
            ("/etc/passwd", "nope\n"),
            (".git/config", "nope\n"),
            ("ok.txt", "fine\n"),
        ]
    )

    outcome = apply_change_set(tmp_path, change_set)

    assert outcome.applied_files == ["ok.txt"]
    assert sorted(outcome.failed_files) == sorted(["../escape.txt", "/etc/passwd", ".git/config"])
    assert not (tmp_path.parent / "escape.txt").exists()
    failure = outcome.partial_failure
    assert isinstance(failure, PartialApplyFailure)
    assert set(failure.failed) == set(outcome.failed_files)
    assert outcome.to_payload()["failed"] == outcome.failed_files


def test_noop_change_for_absent_file_writes_nothing(tmp_path: Path) -> None:
    outcome = apply_change_set(tmp_path, ChangeSet.from_pairs([("missing.txt", "")]))

    assert outcome.applied_files == ["missing.txt"]
    assert outcome.strategies["missing.txt"] == "noop"
    assert not (tmp_path / "missing.txt").exists()


def test_duplicate_paths_last_change_wins(tmp_path: Path) -> None:
    change_set = ChangeSet.from_pairs([("notes.md", "first\n"), ("notes.md", "second\n")])

    outcome = apply_change_set(tmp_path, change_set)

    assert outcome.applied_files == ["notes.md"]
    assert (tmp_path / "notes.md").read_text(encoding="utf-8") == "second\n"


def test_crlf_content_is_written_byte_for_byte(tmp_path: Path) -> None:
    apply_change_set(tmp_path, ChangeSet.from_pairs([("win.txt", "a\r\nb\r\n")]))

    assert (tmp_path / "win.txt").read_bytes() == b"a\r\nb\r\n"


@pytest.mark.parametrize("relative", ["", "..", "a/../../b", ".git/HEAD"])
def test_resolve_workspace_path_rejects(tmp_path: Path, relative: str) -> None:
    with pytest.raises(PatchError):
        resolve_workspace_path(tmp_path, relative)


def test_resolve_workspace_path_normalises_dot_prefix(tmp_path: Path) -> None:
    assert resolve_workspace_path(tmp_path, "./src/app.py") == (tmp_path / "src" / "app.py").resolve()
