"""Change-text application with layered fallbacks for unreliable generators.

The engine turns the text a generator proposed for one file into that file's
new content.  Strategies are tried in order and each either returns content or
declines with a reason:

1. ``unified-diff``: a well-formed unified diff applied literally.
2. ``reconstruct``: diff-like text that did not apply cleanly, rebuilt line by
   line from its added and context lines.
3. ``replace``: text without diff markers, taken as the complete new file.

When every strategy declines the prior content is kept unchanged.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol, Sequence, Tuple


class PatchError(RuntimeError):
    """Raised when change text cannot be parsed or applied."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class MalformedChange(PatchError):
    """Raised when no strategy could derive usable content from change text."""


TELEMETRY_LOGGER = logging.getLogger("vibeci.telemetry")
LOGGER = logging.getLogger(__name__)

_HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@"
)
_MARKER_RE = re.compile(r"^(?:@@|--- \S|\+\+\+ \S)")
_METADATA_PREFIXES = (
    "diff --git ",
    "index ",
    "new file mode",
    "deleted file mode",
    "old mode",
    "new mode",
    "similarity index",
    "rename from",
    "rename to",
)
_NO_NEWLINE_MARKER = "\\"


@dataclass(frozen=True, slots=True)
class NotApplicable:
    """Returned by a strategy that cannot handle the given change text."""

    reason: str


@dataclass(slots=True)
class PatchOutcome:
    """Result of running the strategy cascade for one file."""

    content: str
    strategy: str
    notes: Tuple[str, ...] = ()

    @property
    def noop(self) -> bool:
        return self.strategy == "noop"


@dataclass(slots=True)
class _HunkLine:
    op: str
    text: str
    no_eol: bool = False


@dataclass(slots=True)
class _Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: list[_HunkLine] = field(default_factory=list)


def _serialise_event_value(value: Any) -> Any:
    """Convert telemetry payload values into JSON-friendly representations."""
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (list, tuple, set)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialise_event_value(child) for key, child in value.items()}
    return str(value)


def _emit_patch_event(event: str, **fields: Any) -> None:
    """Log a single-line JSON telemetry record for a patch decision."""
    payload = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    for key, value in fields.items():
        payload[key] = _serialise_event_value(value)
    TELEMETRY_LOGGER.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))


def has_diff_markers(text: str) -> bool:
    """Return True when ``text`` contains a hunk header or a file header line."""
    return any(_MARKER_RE.match(line) for line in text.splitlines())


def _is_fence(line: str) -> bool:
    return line.lstrip().startswith("```")


def strip_code_fences(text: str) -> str:
    """Unwrap one Markdown fence enclosing the whole text.

    Fence lines anywhere else are content (a diff of a Markdown file carries
    them as context or changed lines) and are kept.
    """
    lines = text.split("\n")
    filled = [index for index, line in enumerate(lines) if line.strip()]
    if len(filled) < 2 or not _is_fence(lines[filled[0]]) or lines[filled[-1]].strip() != "```":
        return text
    body = "\n".join(lines[filled[0] + 1 : filled[-1]]).strip("\n")
    return f"{body}\n" if body else ""


def _split_content(content: str) -> tuple[list[str], bool]:
    """Split file content into lines plus a trailing-newline flag."""
    if not content:
        return [], False
    lines = content.split("\n")
    if content.endswith("\n"):
        return lines[:-1], True
    return lines, False


def _count(value: str | None) -> int:
    return int(value) if value is not None else 1


def _parse_hunk_body(lines: list[str], index: int, hunk: _Hunk) -> int:
    """Consume hunk body lines starting at ``index`` and return the next index."""
    seen_old = 0
    seen_new = 0
    while index < len(lines) and (seen_old < hunk.old_count or seen_new < hunk.new_count):
        candidate = lines[index]
        if candidate.startswith(_NO_NEWLINE_MARKER):
            if hunk.lines:
                hunk.lines[-1].no_eol = True
            index += 1
            continue
        if candidate.startswith("@@"):
            break
        op = candidate[:1] if candidate else " "
        if op not in {" ", "-", "+"}:
            raise PatchError(f"Unexpected line inside hunk: {candidate!r}")
        text = candidate[1:]
        if op in {" ", "-"}:
            seen_old += 1
        if op in {" ", "+"}:
            seen_new += 1
        hunk.lines.append(_HunkLine(op=op, text=text))
        index += 1

    if index < len(lines) and lines[index].startswith(_NO_NEWLINE_MARKER):
        if hunk.lines:
            hunk.lines[-1].no_eol = True
        index += 1

    if seen_old != hunk.old_count or seen_new != hunk.new_count:
        raise PatchError(
            "Hunk line counts do not match header: "
            f"expected -{hunk.old_count}/+{hunk.new_count} but saw -{seen_old}/+{seen_new}."
        )
    if index < len(lines) and lines[index][:1] in {"+", "-", " "} and not lines[index].startswith(("--- ", "+++ ")):
        raise PatchError("Hunk body is longer than its header declares.")
    return index


def parse_unified_diff(text: str) -> list[_Hunk]:
    """Parse the first file section of a unified diff into hunks.

    Leading prose before the file headers is ignored.  Anything else that is
    not a header, a hunk header or a hunk body line raises ``PatchError``.
    """

    lines = text.split("\n")
    if text.endswith("\n"):
        lines = lines[:-1]

    hunks: list[_Hunk] = []
    seen_old_header = False
    seen_new_header = False
    index = 0
    while index < len(lines):
        line = lines[index]
        if line.startswith("diff --git ") or line.startswith("--- "):
            if hunks:
                break
            if line.startswith("--- "):
                seen_old_header = True
            index += 1
            continue
        if line.startswith("+++ "):
            seen_new_header = True
            index += 1
            continue
        if line.startswith(_METADATA_PREFIXES):
            index += 1
            continue
        if line.startswith("@@"):
            if not (seen_old_header and seen_new_header):
                raise PatchError("Hunk appears before the ---/+++ file headers.")
            match = _HUNK_HEADER.match(line)
            if not match:
                raise PatchError(f"Malformed hunk header: {line}")
            hunk = _Hunk(
                old_start=int(match.group("old_start")),
                old_count=_count(match.group("old_count")),
                new_start=int(match.group("new_start")),
                new_count=_count(match.group("new_count")),
            )
            index = _parse_hunk_body(lines, index + 1, hunk)
            hunks.append(hunk)
            continue
        if hunks:
            if line.startswith("```"):
                break
            if not line.strip():
                index += 1
                continue
            raise PatchError(f"Unexpected line between hunks: {line!r}")
        index += 1

    if not hunks:
        raise PatchError("Diff does not contain any hunks.")
    return hunks


def apply_hunks(prior: str, hunks: Sequence[_Hunk]) -> str:
    """Apply parsed hunks to ``prior``; context and removals must match exactly."""
    old_lines, trailing = _split_content(prior)
    result: list[str] = []
    cursor = 0
    new_trailing = trailing

    for hunk in hunks:
        start = hunk.old_start - 1 if hunk.old_count > 0 else hunk.old_start
        if start < cursor or start > len(old_lines):
            raise PatchError(f"Hunk at line {hunk.old_start} is out of range or overlaps a previous hunk.")
        result.extend(old_lines[cursor:start])
        position = start
        last_new_line: _HunkLine | None = None
        for line in hunk.lines:
            if line.op in {" ", "-"}:
                if position >= len(old_lines) or old_lines[position] != line.text:
                    raise PatchError(
                        f"Content mismatch at line {position + 1}: expected {line.text!r}.",
                        details={"line": position + 1},
                    )
                position += 1
            if line.op in {" ", "+"}:
                result.append(line.text)
                last_new_line = line
        cursor = position
        if cursor == len(old_lines):
            if last_new_line is not None:
                new_trailing = not last_new_line.no_eol
            else:
                new_trailing = bool(result)

    result.extend(old_lines[cursor:])
    if not result:
        return ""
    return "\n".join(result) + ("\n" if new_trailing else "")


class PatchStrategy(Protocol):
    """One step of the fallback cascade."""

    name: str

    def attempt(self, prior: str, change_text: str) -> str | NotApplicable:
        ...


class UnifiedDiffStrategy:
    """Apply a well-formed unified diff literally."""

    name = "unified-diff"

    def attempt(self, prior: str, change_text: str) -> str | NotApplicable:
        if not has_diff_markers(change_text):
            return NotApplicable("no diff markers")
        try:
            content = apply_hunks(prior, parse_unified_diff(change_text))
        except PatchError as error:
            return NotApplicable(str(error))
        if not content:
            return NotApplicable("diff produced empty content")
        return content


class LineReconstructionStrategy:
    """Rebuild content from degraded diff text by keeping added and context lines.

    Capture starts at the first hunk header, or right after a ``+++`` header
    when the generator omitted hunk headers entirely.  Removed lines and diff
    metadata are dropped; unprefixed lines pass through verbatim.
    """

    name = "reconstruct"

    def attempt(self, prior: str, change_text: str) -> str | NotApplicable:
        text = strip_code_fences(change_text)
        if not has_diff_markers(text):
            return NotApplicable("no diff markers")

        kept: list[str] = []
        capturing = False
        for line in text.split("\n"):
            if line.startswith("--- "):
                continue
            if line.startswith("+++ "):
                capturing = True
                continue
            if line.startswith("@@"):
                capturing = True
                continue
            if not capturing:
                continue
            if line.startswith(_METADATA_PREFIXES) or line.startswith(_NO_NEWLINE_MARKER):
                continue
            if line.startswith("+"):
                kept.append(line[1:])
            elif line.startswith("-"):
                continue
            elif line.startswith(" "):
                kept.append(line[1:])
            else:
                kept.append(line)

        while kept and not kept[-1]:
            kept.pop()
        if not any(line.strip() for line in kept):
            return NotApplicable("no content lines recovered")

        content = "\n".join(kept)
        if (prior.endswith("\n") or not prior) and not content.endswith("\n"):
            content += "\n"
        return content


class ReplacementStrategy:
    """Treat marker-free text as the complete new file content."""

    name = "replace"

    def attempt(self, prior: str, change_text: str) -> str | NotApplicable:
        if has_diff_markers(change_text):
            return NotApplicable("diff markers present")
        content = strip_code_fences(change_text)
        if not content.strip():
            return NotApplicable("empty replacement")
        return content


def default_strategies() -> tuple[PatchStrategy, ...]:
    return (UnifiedDiffStrategy(), LineReconstructionStrategy(), ReplacementStrategy())


class PatchEngine:
    """Run the strategy cascade for a single file's change text."""

    def __init__(self, strategies: Iterable[PatchStrategy] | None = None) -> None:
        self.strategies: tuple[PatchStrategy, ...] = tuple(strategies or default_strategies())

    def derive(self, prior: str | None, change_text: str) -> PatchOutcome:
        """Return the first strategy's content or raise ``MalformedChange``."""
        base = prior or ""
        notes: list[str] = []
        for strategy in self.strategies:
            attempt = strategy.attempt(base, change_text or "")
            if isinstance(attempt, NotApplicable):
                notes.append(f"{strategy.name}: {attempt.reason}")
                continue
            return PatchOutcome(content=attempt, strategy=strategy.name, notes=tuple(notes))
        raise MalformedChange(
            "No usable content could be derived from the change text.",
            details={"notes": notes},
        )

    def apply_detailed(self, prior: str | None, change_text: str, *, path: str | None = None) -> PatchOutcome:
        """Derive new content, keeping ``prior`` unchanged when nothing is usable."""
        try:
            outcome = self.derive(prior, change_text)
        except MalformedChange as error:
            notes = tuple(error.details.get("notes") or ())
            _emit_patch_event("patch_noop", path=path, notes=notes)
            LOGGER.warning("No usable change for %s; keeping prior content", path or "<unnamed>")
            return PatchOutcome(content=prior or "", strategy="noop", notes=notes)

        event = "patch_applied" if outcome.strategy == "unified-diff" else "patch_fallback"
        _emit_patch_event(event, path=path, strategy=outcome.strategy, notes=outcome.notes)
        return outcome

    def apply(self, prior: str | None, change_text: str) -> str:
        """Return the new content for a file given its prior content."""
        return self.apply_detailed(prior, change_text).content


def apply_change(prior: str | None, change_text: str) -> str:
    """Apply ``change_text`` to ``prior`` with the default strategy cascade."""
    return PatchEngine().apply(prior, change_text)


__all__ = [
    "LineReconstructionStrategy",
    "MalformedChange",
    "NotApplicable",
    "PatchEngine",
    "PatchError",
    "PatchOutcome",
    "PatchStrategy",
    "ReplacementStrategy",
    "UnifiedDiffStrategy",
    "apply_change",
    "apply_hunks",
    "default_strategies",
    "has_diff_markers",
    "parse_unified_diff",
    "strip_code_fences",
]
