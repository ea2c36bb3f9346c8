from __future__ import annotations

import sys
import threading
import time
from pathlib import Path

from vibeci.tools.verification import (
    CANCELLED_NOTE,
    MAX_EXCERPTS,
    TIMEOUT_NOTE,
    CommandVerificationRunner,
    RawVerification,
    extract_excerpts,
    interpret,
    interpret_raw,
)

JEST_TRANSCRIPT = """
FAIL src/sum.test.js
  ● sum › adds numbers

    expect(received).toBe(expected)

PASS src/other.test.js

Tests:       1 failed, 4 passed, 5 total
"""


def test_interpret_jest_summary() -> None:
    result = interpret(JEST_TRANSCRIPT, exit_success=False, duration_ms=1200)

    assert result.passed is False
    assert (result.total_cases, result.passed_cases, result.failed_cases) == (5, 4, 1)
    assert result.duration_ms == 1200
    assert result.excerpts[0].startswith("FAIL src/sum.test.js")
    assert result.raw_output == JEST_TRANSCRIPT


def test_interpret_generic_counts() -> None:
    result = interpret("==== 2 failed, 7 passed in 0.31s ====", exit_success=False)

    assert (result.total_cases, result.passed_cases, result.failed_cases) == (9, 7, 2)


def test_passed_mirrors_exit_status_regardless_of_counts() -> None:
    assert interpret("Tests: 3 failed, 0 passed, 3 total", exit_success=True).passed is True
    assert interpret("12 passed", exit_success=False).passed is False


def test_successful_run_has_no_excerpts() -> None:
    assert interpret("FAIL something\n", exit_success=True).excerpts == []


def test_excerpts_are_capped() -> None:
    transcript = "\n\n".join(f"FAIL case {index}\n  detail" for index in range(MAX_EXCERPTS + 3))

    excerpts = extract_excerpts(transcript)

    assert len(excerpts) == MAX_EXCERPTS
    assert excerpts[0] == "FAIL case 0\n  detail"


def test_timeout_note_leads_excerpts() -> None:
    raw = RawVerification(exit_success=False, transcript="FAIL slow\n", duration_ms=10, timed_out=True)

    result = interpret_raw(raw)

    assert result.timed_out
    assert result.excerpts[0] == TIMEOUT_NOTE


def test_runner_reports_pass_and_fail(tmp_path: Path) -> None:
    passing = CommandVerificationRunner(command=[sys.executable, "-c", "print('3 passed')"])
    failing = CommandVerificationRunner(command=[sys.executable, "-c", "import sys; print('FAIL x'); sys.exit(1)"])

    ok = passing.run(tmp_path)
    bad = failing.run(tmp_path)

    assert ok.exit_success and "3 passed" in ok.transcript
    assert not bad.exit_success and "FAIL x" in bad.transcript
    assert ok.duration_ms >= 0


def test_runner_sets_ci_environment(tmp_path: Path) -> None:
    runner = CommandVerificationRunner(command=[sys.executable, "-c", "import os; print(os.environ['CI'], os.environ['FORCE_COLOR'])"])

    assert "true 0" in runner.run(tmp_path).transcript


def test_runner_times_out(tmp_path: Path) -> None:
    runner = CommandVerificationRunner(
        command=[sys.executable, "-c", "import time; time.sleep(30)"],
        timeout_seconds=0.5,
    )

    started = time.monotonic()
    raw = runner.run(tmp_path)

    assert time.monotonic() - started < 15
    assert raw.timed_out and not raw.exit_success
    assert interpret_raw(raw).excerpts[0] == TIMEOUT_NOTE


def test_runner_cancellation_discards_run(tmp_path: Path) -> None:
    runner = CommandVerificationRunner(command=[sys.executable, "-c", "import time; time.sleep(30)"])
    cancel = threading.Event()
    threading.Timer(0.3, cancel.set).start()

    raw = runner.run(tmp_path, cancel_event=cancel)

    assert raw.cancelled
    assert CANCELLED_NOTE in raw.transcript


def test_missing_executable_is_reported_as_failure(tmp_path: Path) -> None:
    runner = CommandVerificationRunner(command=["definitely-not-a-real-binary-vibeci"])

    raw = runner.run(tmp_path)

    assert not raw.exit_success
    assert raw.transcript.startswith("Process error")


def test_install_step_runs_once_per_fingerprint(tmp_path: Path) -> None:
    marker = tmp_path / "installs.txt"
    install = [sys.executable, "-c", f"open({str(marker)!r}, 'a').write('x')"]
    runner = CommandVerificationRunner(command=[sys.executable, "-c", "pass"], install_command=install)

    runner.run(tmp_path)
    runner.run(tmp_path)

    assert marker.read_text() == "x"
    assert (tmp_path / ".vibeci" / "deps-installed.json").exists()


def test_resolve_command_auto_detects(tmp_path: Path) -> None:
    runner = CommandVerificationRunner()
    assert runner.resolve_command(tmp_path)[1:] == ("-m", "pytest", "-q")

    (tmp_path / "package.json").write_text("{}", encoding="utf-8")
    assert runner.resolve_command(tmp_path) == "npm test"


def test_from_config_reads_verification_section() -> None:
    runner = CommandVerificationRunner.from_config(
        {"verification": {"command": "make test", "timeout_seconds": 5, "install_command": ""}}
    )

    assert runner.command == "make test"
    assert runner.install_command is None
    assert runner.timeout_seconds == 5.0
