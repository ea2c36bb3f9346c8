"""Verification command execution and transcript interpretation."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Sequence

import hashlib
import json
import logging
import os
import re
import shlex
import signal
import subprocess
import sys
import threading
import time

LOGGER = logging.getLogger(__name__)

TIMEOUT_NOTE = "Test process timed out"
CANCELLED_NOTE = "Verification cancelled"
MAX_EXCERPTS = 5

_JEST_SUMMARY_RE = re.compile(r"Tests:\s+(\d+)\s+failed,\s+(\d+)\s+passed,\s+(\d+)\s+total")
_PASSED_RE = re.compile(r"(\d+)\s+passed")
_FAILED_RE = re.compile(r"(\d+)\s+failed")
_TOTAL_RE = re.compile(r"(\d+)\s+total")
_FAILURE_MARKERS = ("FAIL", "● ")


class VerificationError(RuntimeError):
    """Base class for verification runner failures."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class VerificationTimeout(VerificationError):
    """Raised internally when the verification command exceeds its deadline."""


class VerificationCancelled(VerificationError):
    """Raised internally when a cancellation signal abandons a running command."""


@dataclass(slots=True)
class RawVerification:
    """Unparsed outcome of running the verification command once."""

    exit_success: bool
    transcript: str
    duration_ms: int
    timed_out: bool = False
    cancelled: bool = False


@dataclass(slots=True)
class VerificationResult:
    """Structured interpretation of a verification transcript."""

    passed: bool
    total_cases: int = 0
    passed_cases: int = 0
    failed_cases: int = 0
    duration_ms: int = 0
    raw_output: str = ""
    excerpts: list[str] = field(default_factory=list)
    timed_out: bool = False

    def to_payload(self, *, include_output: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "passed": self.passed,
            "total_cases": self.total_cases,
            "passed_cases": self.passed_cases,
            "failed_cases": self.failed_cases,
            "duration_ms": self.duration_ms,
            "excerpts": list(self.excerpts),
            "timed_out": self.timed_out,
        }
        if include_output:
            payload["raw_output"] = self.raw_output
        return payload


def _parse_counts(transcript: str) -> tuple[int, int, int]:
    """Return ``(total, passed, failed)`` from the first summary pattern that matches."""
    summary = _JEST_SUMMARY_RE.search(transcript)
    if summary:
        failed, passed, total = (int(value) for value in summary.groups())
        return total, passed, failed

    passed_match = _PASSED_RE.search(transcript)
    failed_match = _FAILED_RE.search(transcript)
    total_match = _TOTAL_RE.search(transcript)
    passed = int(passed_match.group(1)) if passed_match else 0
    failed = int(failed_match.group(1)) if failed_match else 0
    total = int(total_match.group(1)) if total_match else passed + failed
    return total, passed, failed


def extract_excerpts(transcript: str, *, limit: int = MAX_EXCERPTS) -> list[str]:
    """Collect failure blocks that start at a marker line and end at a blank line."""
    excerpts: list[str] = []
    current: list[str] = []
    in_block = False
    for line in transcript.split("\n"):
        if any(marker in line for marker in _FAILURE_MARKERS):
            if current:
                excerpts.append("\n".join(current).strip())
            current = [line]
            in_block = True
        elif in_block:
            if not line.strip():
                excerpts.append("\n".join(current).strip())
                current = []
                in_block = False
            else:
                current.append(line)
    if current:
        excerpts.append("\n".join(current).strip())
    return [excerpt for excerpt in excerpts if excerpt][:limit]


def interpret(raw_transcript: str, exit_success: bool, duration_ms: int = 0) -> VerificationResult:
    """Interpret a verification transcript; ``passed`` mirrors ``exit_success``."""

    transcript = raw_transcript or ""
    total, passed_cases, failed_cases = _parse_counts(transcript)
    excerpts = [] if exit_success else extract_excerpts(transcript)
    return VerificationResult(
        passed=bool(exit_success),
        total_cases=total,
        passed_cases=passed_cases,
        failed_cases=failed_cases,
        duration_ms=max(int(duration_ms), 0),
        raw_output=transcript,
        excerpts=excerpts,
    )


def interpret_raw(raw: RawVerification) -> VerificationResult:
    """Interpret a runner outcome, surfacing timeouts as the leading excerpt."""
    result = interpret(raw.transcript, raw.exit_success, raw.duration_ms)
    if raw.timed_out:
        result.timed_out = True
        result.excerpts = [TIMEOUT_NOTE, *[item for item in result.excerpts if item != TIMEOUT_NOTE]][:MAX_EXCERPTS]
    return result


def _merge_env(extra: Mapping[str, str] | None) -> Dict[str, str]:
    """Merge provided environment overrides with the current process state."""
    env: Dict[str, str] = os.environ.copy()
    if extra:
        env.update({str(key): str(value) for key, value in extra.items()})
    return env


_DEPENDENCY_SENTINEL = Path(".vibeci") / "deps-installed.json"


def _discover_requirements(root: Path) -> list[Path]:
    """Locate non-empty requirement files that should be installed before verifying."""
    candidates = [
        root / name
        for name in ("requirements.txt", "requirements-dev.txt", "requirements-test.txt")
        if (root / name).is_file()
    ]
    filtered: list[Path] = []
    for path in candidates:
        try:
            if path.read_text(encoding="utf-8").strip():
                filtered.append(path)
        except OSError:
            continue
    return filtered


def _fingerprint(root: Path, commands: Sequence[Sequence[str] | str], files: Sequence[Path]) -> str:
    digest = hashlib.sha256()
    for command in commands:
        digest.update(_display(command).encode("utf-8"))
        digest.update(b"\0")
    for path in sorted(files):
        digest.update(path.relative_to(root).as_posix().encode("utf-8"))
        digest.update(b"\0")
        try:
            digest.update(path.read_bytes())
        except OSError:
            digest.update(b"<missing>")
        digest.update(b"\0")
    return digest.hexdigest()


def _display(command: Sequence[str] | str) -> str:
    if isinstance(command, str):
        return command
    return shlex.join(command)


def _terminate(process: subprocess.Popen[str]) -> None:
    """Kill the command and anything it spawned."""
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except (ProcessLookupError, PermissionError):
        process.kill()


@dataclass(slots=True)
class CommandVerificationRunner:
    """Run an install step and then the test command inside a workspace.

    A string command runs through the shell; a sequence runs directly.  An
    empty command is auto-detected per workspace.
    """

    command: Sequence[str] | str | None = None
    install_command: Sequence[str] | str | None = None
    timeout_seconds: float = 60.0
    install_timeout_seconds: float = 120.0
    env: Mapping[str, str] | None = None
    poll_interval: float = 0.1

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "CommandVerificationRunner":
        section = config.get("verification", {}) or {}
        return cls(
            command=section.get("command") or None,
            install_command=section.get("install_command") or None,
            timeout_seconds=float(section.get("timeout_seconds", 60) or 60),
            install_timeout_seconds=float(section.get("install_timeout_seconds", 120) or 120),
        )

    def resolve_command(self, root: Path) -> Sequence[str] | str:
        if self.command:
            return self.command
        if (root / "package.json").is_file():
            return "npm test"
        return (sys.executable, "-m", "pytest", "-q")

    def _install_commands(self, root: Path) -> tuple[list[Sequence[str] | str], list[Path]]:
        if self.install_command:
            return [self.install_command], []
        if (root / "package.json").is_file():
            if (root / "node_modules").exists():
                return [], []
            return ["npm install"], []
        requirements = _discover_requirements(root)
        commands: list[Sequence[str] | str] = [
            (sys.executable, "-m", "pip", "install", "-r", str(path)) for path in requirements
        ]
        return commands, requirements

    def _execute(
        self,
        command: Sequence[str] | str,
        *,
        cwd: Path,
        env: Mapping[str, str],
        timeout: float,
        cancel_event: threading.Event | None,
    ) -> tuple[int, str]:
        process = subprocess.Popen(
            command if isinstance(command, str) else list(command),
            cwd=cwd,
            env=dict(env),
            shell=isinstance(command, str),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=True,
        )
        deadline = time.monotonic() + timeout
        while True:
            try:
                output, _ = process.communicate(timeout=self.poll_interval)
                return process.returncode, output or ""
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    _terminate(process)
                    output, _ = process.communicate()
                    raise VerificationCancelled(CANCELLED_NOTE, details={"output": output or ""})
                if time.monotonic() >= deadline:
                    _terminate(process)
                    output, _ = process.communicate()
                    raise VerificationTimeout(
                        f"{_display(command)} exceeded {timeout:g}s",
                        details={"output": output or ""},
                    )

    def _ensure_installed(
        self,
        root: Path,
        env: Mapping[str, str],
        cancel_event: threading.Event | None,
    ) -> str | None:
        """Run install commands when their fingerprint changed; return an error message."""
        commands, files = self._install_commands(root)
        if not commands:
            return None
        sentinel_path = root / _DEPENDENCY_SENTINEL
        fingerprint = _fingerprint(root, commands, files)
        if sentinel_path.is_file():
            try:
                data = json.loads(sentinel_path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError):
                data = {}
            if data.get("fingerprint") == fingerprint:
                return None

        for command in commands:
            LOGGER.info("Installing dependencies: %s", _display(command))
            try:
                exit_code, output = self._execute(
                    command,
                    cwd=root,
                    env=env,
                    timeout=self.install_timeout_seconds,
                    cancel_event=cancel_event,
                )
            except VerificationTimeout as error:
                return f"Failed to install dependencies: {error}\n{error.details.get('output', '')}"
            except OSError as error:
                return f"Failed to install dependencies: {error}"
            if exit_code != 0:
                return f"{_display(command)} failed with exit code {exit_code}\n{output}"

        sentinel_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            sentinel_path.write_text(
                json.dumps({"fingerprint": fingerprint, "commands": [_display(c) for c in commands]}, indent=2),
                encoding="utf-8",
            )
        except OSError:
            LOGGER.debug("Unable to write dependency sentinel at %s", sentinel_path)
        return None

    def run(self, workspace_path: Path | str, *, cancel_event: threading.Event | None = None) -> RawVerification:
        """Install dependencies if needed, then run the verification command once."""

        root = Path(workspace_path).resolve()
        started = time.monotonic()
        env_vars = _merge_env({"CI": "true", "FORCE_COLOR": "0", **dict(self.env or {})})
        src_dir = root / "src"
        if src_dir.is_dir():
            current = env_vars.get("PYTHONPATH")
            env_vars["PYTHONPATH"] = os.pathsep.join([str(src_dir), current]) if current else str(src_dir)

        def _elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            install_error = self._ensure_installed(root, env_vars, cancel_event)
        except VerificationCancelled as error:
            return RawVerification(False, f"{error.details.get('output', '')}\n{CANCELLED_NOTE}", _elapsed(), cancelled=True)
        if install_error:
            return RawVerification(exit_success=False, transcript=install_error, duration_ms=_elapsed())

        command = self.resolve_command(root)
        LOGGER.info("Running verification command %s in %s", _display(command), root)
        try:
            exit_code, output = self._execute(
                command,
                cwd=root,
                env=env_vars,
                timeout=self.timeout_seconds,
                cancel_event=cancel_event,
            )
        except VerificationTimeout as error:
            LOGGER.warning("Verification timed out after %.1fs", self.timeout_seconds)
            transcript = f"{error.details.get('output', '')}\n\n{TIMEOUT_NOTE}"
            return RawVerification(False, transcript, _elapsed(), timed_out=True)
        except VerificationCancelled as error:
            return RawVerification(False, f"{error.details.get('output', '')}\n{CANCELLED_NOTE}", _elapsed(), cancelled=True)
        except OSError as error:
            return RawVerification(False, f"Process error: {error}", _elapsed())

        return RawVerification(exit_success=exit_code == 0, transcript=output, duration_ms=_elapsed())


__all__ = [
    "CANCELLED_NOTE",
    "CommandVerificationRunner",
    "RawVerification",
    "TIMEOUT_NOTE",
    "VerificationCancelled",
    "VerificationError",
    "VerificationResult",
    "VerificationTimeout",
    "extract_excerpts",
    "interpret",
    "interpret_raw",
]
