"""Change generation backed by a language model.

The iteration loop talks to a :class:`ChangeGenerator`.  The LLM-backed
implementation makes two calls per iteration: plan then patches on the first
iteration, failure analysis then fix afterwards.  Output that cannot be parsed
comes back as a :class:`GenerationFailure` value; an unreachable or exhausted
provider raises :class:`GeneratorUnavailable`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence, Type, TypeVar, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .models.llm_client import LLMClient, LLMRequest, LLMRetryError, LLMTransportError
from .prompts import (
    SYSTEM_PROMPT,
    render_failure_analysis_prompt,
    render_fix_prompt,
    render_patches_prompt,
    render_plan_prompt,
    render_report_prompt,
)
from .structured import ChangeSet, DiagnosisResult, FileChange, GenerationFailure, GenerationResult, PlanResult
from .tools.workspace import RepoSummary

LOGGER = logging.getLogger(__name__)

ResponseT = TypeVar("ResponseT", bound=BaseModel)


class GeneratorUnavailable(RuntimeError):
    """The change generator cannot be reached or has exhausted its retries."""


class _Response(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class PatchEntry(_Response):
    file: str = Field(validation_alias=AliasChoices("file", "path"))
    diff: str = Field(default="", validation_alias=AliasChoices("diff", "content", "patch"))


class PlanResponse(_Response):
    plan: List[str]
    reasoning_summary: str = ""


class PatchesResponse(_Response):
    patches: List[PatchEntry] = Field(default_factory=list)

    def to_change_set(self) -> ChangeSet:
        return ChangeSet(
            tuple(FileChange(path=entry.file.strip(), change_text=entry.diff) for entry in self.patches if entry.file.strip())
        )


class FailureAnalysisResponse(_Response):
    analysis: str
    next_steps: List[str] = Field(default_factory=list)
    reasoning_summary: str = ""


@dataclass(slots=True)
class ReportContext:
    """Everything a final report describes."""

    task_description: str
    plan: List[str] = field(default_factory=list)
    change_sets: List[ChangeSet] = field(default_factory=list)
    results: List[tuple[bool, str]] = field(default_factory=list)
    iterations: int = 0
    success: bool = False
    failure_reason: Optional[str] = None


class ChangeGenerator(Protocol):
    def propose(self, task_description: str, repo_summary: RepoSummary) -> GenerationResult:
        ...

    def diagnose_and_fix(
        self,
        task_description: str,
        last_transcript: str,
        last_change_set: ChangeSet,
        repo_summary: RepoSummary,
        failed_files: Sequence[str] = (),
    ) -> GenerationResult:
        ...

    def generate_report(self, context: ReportContext) -> str:
        ...


def render_report_fallback(context: ReportContext) -> str:
    """Render a plain Markdown report without calling the model."""
    lines = [
        "# VibeCI Task Report",
        "",
        "## Task",
        context.task_description,
        "",
        "## Outcome",
        f"- Status: {'SUCCESS' if context.success else 'FAILED'}",
        f"- Iterations: {context.iterations}",
    ]
    if context.failure_reason:
        lines.append(f"- Reason: {context.failure_reason}")
    if context.plan:
        lines.extend(["", "## Plan"])
        lines.extend(f"{index}. {step}" for index, step in enumerate(context.plan, start=1))
    if context.change_sets:
        lines.extend(["", "## Changes"])
        for index, change_set in enumerate(context.change_sets, start=1):
            touched = ", ".join(change_set.paths) or "no changes"
            lines.append(f"- Iteration {index}: {touched}")
    if context.results:
        lines.extend(["", "## Verification"])
        for index, (passed, _) in enumerate(context.results, start=1):
            lines.append(f"- Iteration {index}: {'PASSED' if passed else 'FAILED'}")
    return "\n".join(lines) + "\n"


class LLMChangeGenerator:
    """ChangeGenerator that prompts an :class:`LLMClient` for JSON responses."""

    def __init__(self, client: LLMClient, *, system_prompt: str = SYSTEM_PROMPT) -> None:
        self.client = client
        self.system_prompt = system_prompt

    def _call(self, stage: str, prompt: str, response_model: Type[ResponseT]) -> Union[ResponseT, GenerationFailure]:
        request = LLMRequest(
            prompt=prompt,
            response_model=response_model,
            system_prompt=self.system_prompt,
            metadata={"stage": stage},
        )
        try:
            return self.client.invoke(request)
        except LLMRetryError as error:
            if error.rate_limited:
                raise GeneratorUnavailable(f"{stage}: rate limit retries exhausted") from error
            reason = str(error.last_error or error)
            LOGGER.warning("Generator returned unusable %s output: %s", stage, reason)
            return GenerationFailure(stage=stage, reason=reason)
        except LLMTransportError as error:
            raise GeneratorUnavailable(f"{stage}: {error}") from error

    def propose(self, task_description: str, repo_summary: RepoSummary) -> GenerationResult:
        plan = self._call("plan", render_plan_prompt(task_description, repo_summary), PlanResponse)
        if isinstance(plan, GenerationFailure):
            return plan
        patches = self._call(
            "patches",
            render_patches_prompt(task_description, plan.plan, repo_summary),
            PatchesResponse,
        )
        if isinstance(patches, GenerationFailure):
            patches.raw = "\n".join(plan.plan)
            return patches
        return PlanResult(
            plan=list(plan.plan),
            change_set=patches.to_change_set(),
            reasoning_summary=plan.reasoning_summary or f"Plan: {' -> '.join(plan.plan)}",
        )

    def diagnose_and_fix(
        self,
        task_description: str,
        last_transcript: str,
        last_change_set: ChangeSet,
        repo_summary: RepoSummary,
        failed_files: Sequence[str] = (),
    ) -> GenerationResult:
        analysis = self._call(
            "analysis",
            render_failure_analysis_prompt(task_description, last_transcript, last_change_set, repo_summary, failed_files),
            FailureAnalysisResponse,
        )
        if isinstance(analysis, GenerationFailure):
            return analysis
        fix = self._call(
            "fix",
            render_fix_prompt(task_description, analysis.analysis, analysis.next_steps, repo_summary),
            PatchesResponse,
        )
        if isinstance(fix, GenerationFailure):
            fix.raw = analysis.analysis
            return fix
        summary = analysis.reasoning_summary or (
            f"Analysis: {analysis.analysis}. Next steps: {', '.join(analysis.next_steps)}"
        )
        return DiagnosisResult(
            analysis=analysis.analysis,
            next_steps=list(analysis.next_steps),
            change_set=fix.to_change_set(),
            reasoning_summary=summary,
        )

    def generate_report(self, context: ReportContext) -> str:
        prompt = render_report_prompt(
            context.task_description,
            context.plan,
            context.change_sets,
            context.results,
            context.iterations,
        )
        try:
            return self.client.complete_text(prompt, system_prompt=self.system_prompt)
        except (LLMRetryError, LLMTransportError) as error:
            raise GeneratorUnavailable(f"report: {error}") from error


__all__ = [
    "ChangeGenerator",
    "FailureAnalysisResponse",
    "GeneratorUnavailable",
    "LLMChangeGenerator",
    "PatchEntry",
    "PatchesResponse",
    "PlanResponse",
    "ReportContext",
    "render_report_fallback",
]
