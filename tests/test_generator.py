from __future__ import annotations

import json
from typing import Any, Dict, List

import pytest

from vibeci.generator import GeneratorUnavailable, LLMChangeGenerator, ReportContext, render_report_fallback
from vibeci.models.llm_client import (
    LLMClient,
    LLMRateLimitError,
    LLMResponseFormatError,
    LLMTransportError,
    RateLimitTable,
)
from vibeci.structured import ChangeSet, DiagnosisResult, GenerationFailure, PlanResult
from vibeci.tools.workspace import FileSummary, RepoSummary


class _StageClient(LLMClient):
    """Answer each generator stage from a lookup table."""

    def __init__(self, answers: Dict[str, Any]) -> None:
        super().__init__(
            "stage-client",
            max_attempts=2,
            retry_delay=0.0,
            rate_limits=RateLimitTable(initial_delay=0.0, sleep=lambda _: None),
            sleep=lambda _: None,
        )
        self.answers = answers
        self.stages: List[str] = []

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        stage = (payload.get("metadata") or {}).get("stage", "report")
        self.stages.append(stage)
        answer = self.answers[stage]
        if isinstance(answer, Exception):
            raise answer
        return answer if isinstance(answer, str) else json.dumps(answer)


def _summary() -> RepoSummary:
    return RepoSummary(
        files=[FileSummary(path="src/sum.js", content="module.exports = () => 0;\n", language="javascript")],
        test_files=[FileSummary(path="src/sum.test.js", content="test('sum', () => {});\n", language="javascript")],
    )


def test_propose_runs_plan_then_patches() -> None:
    client = _StageClient(
        {
            "plan": {"plan": ["Implement sum", "Export it"]},
            "patches": {"patches": [{"file": "src/sum.js", "diff": "module.exports = (a, b) => a + b;\n"}]},
        }
    )

    result = LLMChangeGenerator(client).propose("Add a sum function", _summary())

    assert isinstance(result, PlanResult)
    assert client.stages == ["plan", "patches"]
    assert result.plan == ["Implement sum", "Export it"]
    assert result.change_set.paths == ("src/sum.js",)
    assert result.reasoning_summary == "Plan: Implement sum -> Export it"


def test_patch_entries_accept_path_and_content_aliases() -> None:
    client = _StageClient(
        {
            "plan": {"plan": ["x"], "reasoning_summary": "short"},
            "patches": {"patches": [{"path": "a.py", "content": "x = 1\n"}, {"file": "  ", "diff": "ignored"}]},
        }
    )

    result = LLMChangeGenerator(client).propose("task", _summary())

    assert isinstance(result, PlanResult)
    assert result.change_set == ChangeSet.from_pairs([("a.py", "x = 1\n")])
    assert result.reasoning_summary == "short"


def test_diagnose_and_fix_runs_analysis_then_fix() -> None:
    client = _StageClient(
        {
            "analysis": {"analysis": "sum returns 0", "next_steps": ["return a + b"]},
            "fix": {"patches": [{"file": "src/sum.js", "diff": "module.exports = (a, b) => a + b;\n"}]},
        }
    )

    result = LLMChangeGenerator(client).diagnose_and_fix(
        "Add a sum function",
        "FAIL src/sum.test.js",
        ChangeSet.from_pairs([("src/sum.js", "module.exports = () => 0;\n")]),
        _summary(),
        ["src/broken.js"],
    )

    assert isinstance(result, DiagnosisResult)
    assert client.stages == ["analysis", "fix"]
    assert result.next_steps == ["return a + b"]
    assert "sum returns 0" in result.reasoning_summary


def test_unparseable_output_becomes_generation_failure() -> None:
    client = _StageClient({"plan": "I cannot answer in JSON, sorry."})

    result = LLMChangeGenerator(client).propose("task", _summary())

    assert isinstance(result, GenerationFailure)
    assert result.stage == "plan"
    assert not result.change_set


def test_response_without_text_becomes_generation_failure() -> None:
    client = _StageClient({"plan": {"plan": ["step"]}, "patches": LLMResponseFormatError("no text parts")})

    result = LLMChangeGenerator(client).propose("task", _summary())

    assert isinstance(result, GenerationFailure)
    assert result.stage == "patches"
    assert "no text parts" in result.reason
    assert client.stages == ["plan", "patches", "patches"]


def test_exhausted_rate_limits_make_generator_unavailable() -> None:
    client = _StageClient({"plan": LLMRateLimitError("429")})

    with pytest.raises(GeneratorUnavailable):
        LLMChangeGenerator(client).propose("task", _summary())


def test_transport_failure_makes_generator_unavailable() -> None:
    client = _StageClient({"analysis": LLMTransportError("connection reset")})

    with pytest.raises(GeneratorUnavailable):
        LLMChangeGenerator(client).diagnose_and_fix("task", "", ChangeSet(), _summary())


def test_generate_report_uses_text_completion() -> None:
    client = _StageClient({"report": "# Report\nDone."})

    report = LLMChangeGenerator(client).generate_report(ReportContext(task_description="task", iterations=1, success=True))

    assert report == "# Report\nDone."


def test_report_fallback_lists_outcome() -> None:
    context = ReportContext(
        task_description="Add a sum function",
        plan=["Implement sum"],
        change_sets=[ChangeSet.from_pairs([("src/sum.js", "x")]), ChangeSet()],
        results=[(False, "FAIL"), (True, "ok")],
        iterations=2,
        success=True,
    )

    report = render_report_fallback(context)

    assert report.startswith("# VibeCI Task Report")
    assert "- Status: SUCCESS" in report
    assert "- Iteration 1: src/sum.js" in report
    assert "- Iteration 2: no changes" in report
    assert "- Iteration 2: PASSED" in report
