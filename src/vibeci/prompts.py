"""Prompt templates and helpers for the change generator."""

from __future__ import annotations

import json
from typing import Iterable, Sequence

from .structured import ChangeSet
from .tools.workspace import FileSummary, RepoSummary

SYSTEM_PROMPT = (
    "You are an autonomous software engineer working inside a disposable copy of a repository. "
    "You change code so that the repository's automated tests pass and the requested task is done. "
    "Prefer small, focused edits and keep existing behaviour unless the task requires otherwise."
)

JSON_RESPONSE_INSTRUCTION = (
    "Return only JSON. Emit a single JSON object that satisfies the documented response shape. "
    "Do not include markdown fences, explanations, or trailing text."
)

PATCH_FORMAT_INSTRUCTION = (
    'Each patch is an object {"file": <path relative to the repository root>, "diff": <text>}. '
    "The diff is either a unified diff with ---/+++ headers and @@ hunk headers whose line counts are exact, "
    "or the complete new content of the file. Use complete content for new files."
)

MAX_TRANSCRIPT_CHARS = 12_000


def _numbered(steps: Sequence[str]) -> str:
    return "\n".join(f"{index}. {step}" for index, step in enumerate(steps, start=1))


def render_files(files: Iterable[FileSummary]) -> str:
    """Render file contents as fenced blocks headed by their paths."""
    blocks = [f"### {item.path}\n```{item.language}\n{item.content}\n```" for item in files]
    return "\n\n".join(blocks) if blocks else "(no files)"


def render_change_set(change_set: ChangeSet) -> str:
    if not change_set:
        return "(no changes were applied)"
    return "\n\n".join(f"### {change.path}\n```diff\n{change.change_text}\n```" for change in change_set)


def _tail(text: str, limit: int = MAX_TRANSCRIPT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return f"...[truncated {len(text) - limit} characters]\n{text[-limit:]}"


def render_plan_prompt(task_description: str, summary: RepoSummary) -> str:
    return (
        f"## Task Description\n{task_description}\n\n"
        f"## Repository Summary\n{json.dumps(summary.to_payload(), indent=2)}\n\n"
        "Produce a short ordered implementation plan. "
        'Respond with {"plan": [<step>, ...], "reasoning_summary": <one sentence>}.\n'
        f"{JSON_RESPONSE_INSTRUCTION}"
    )


def render_patches_prompt(task_description: str, plan: Sequence[str], summary: RepoSummary) -> str:
    return (
        f"## Task Description\n{task_description}\n\n"
        f"## Plan\n{_numbered(plan)}\n\n"
        f"## Relevant Files\n{render_files(summary.files)}\n\n"
        f"## Existing Tests\n{render_files(summary.test_files)}\n\n"
        "Generate the patches needed to implement this plan. "
        f"{PATCH_FORMAT_INSTRUCTION}\n"
        'Respond with {"patches": [...]}.\n'
        f"{JSON_RESPONSE_INSTRUCTION}"
    )


def render_failure_analysis_prompt(
    task_description: str,
    transcript: str,
    previous_change_set: ChangeSet,
    summary: RepoSummary,
    failed_files: Sequence[str] = (),
) -> str:
    failed = ""
    if failed_files:
        failed = "## Files That Could Not Be Written\n" + "\n".join(f"- {path}" for path in failed_files) + "\n\n"
    return (
        f"## Original Task\n{task_description}\n\n"
        f"## Test Output (Failure)\n```\n{_tail(transcript)}\n```\n\n"
        f"## Previously Applied Patches\n{render_change_set(previous_change_set)}\n\n"
        f"{failed}"
        f"## Relevant Files\n{render_files(summary.files)}\n\n"
        "Analyze the failure and suggest corrective actions. "
        'Respond with {"analysis": <text>, "next_steps": [<step>, ...], "reasoning_summary": <one sentence>}.\n'
        f"{JSON_RESPONSE_INSTRUCTION}"
    )


def render_fix_prompt(
    task_description: str,
    analysis: str,
    next_steps: Sequence[str],
    summary: RepoSummary,
) -> str:
    return (
        f"## Original Task\n{task_description}\n\n"
        f"## Failure Analysis\n{analysis}\n\n"
        f"## Suggested Next Steps\n{_numbered(next_steps)}\n\n"
        f"## Current Files\n{render_files(summary.files)}\n\n"
        f"## Current Tests\n{render_files(summary.test_files)}\n\n"
        "Generate fix patches that address the identified issues. "
        f"{PATCH_FORMAT_INSTRUCTION}\n"
        'Respond with {"patches": [...]}.\n'
        f"{JSON_RESPONSE_INSTRUCTION}"
    )


def render_report_prompt(
    task_description: str,
    plan: Sequence[str],
    change_sets: Sequence[ChangeSet],
    results: Sequence[tuple[bool, str]],
    iterations: int,
) -> str:
    changes = "\n\n".join(
        f"### Iteration {index}\n" + ("\n".join(f"- {path}" for path in change_set.paths) or "- (no changes)")
        for index, change_set in enumerate(change_sets, start=1)
    )
    tests = "\n\n".join(
        f"### Iteration {index}\n- Status: {'PASSED' if passed else 'FAILED'}\n```\n{output[:500]}\n```"
        for index, (passed, output) in enumerate(results, start=1)
    )
    final = "SUCCESS" if results and results[-1][0] else "FAILED"
    return (
        f"## Task\n{task_description}\n\n"
        f"## Plan Executed\n{_numbered(plan) or '(no plan)'}\n\n"
        f"## Changes Made\n{changes or '(none)'}\n\n"
        f"## Test Results\n{tests or '(none)'}\n\n"
        f"## Summary\n- Total iterations: {iterations}\n- Final status: {final}\n\n"
        "Write a concise human-readable Markdown report summarizing what was done."
    )


__all__ = [
    "JSON_RESPONSE_INSTRUCTION",
    "PATCH_FORMAT_INSTRUCTION",
    "SYSTEM_PROMPT",
    "render_change_set",
    "render_failure_analysis_prompt",
    "render_files",
    "render_fix_prompt",
    "render_patches_prompt",
    "render_plan_prompt",
    "render_report_prompt",
]
