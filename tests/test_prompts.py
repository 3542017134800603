from __future__ import annotations

from pathlib import Path
import json

from vibereview.models import IssueRef, PullRequestRef, ReviewAgentInput
from vibereview.prompts import build_review_prompt


def _agent_input(*, autofix: bool = True, pr: PullRequestRef | None = None) -> ReviewAgentInput:
    return ReviewAgentInput(
        workspace_root=Path("/work/repo"),
        repo="acme/app",
        issue=IssueRef(id=42, title="Add export", url="https://github.com/acme/app/issues/42"),
        branch="issue-42-export",
        base_branch="main",
        pr=pr,
        attempt=2,
        max_attempts=5,
        autofix=autofix,
    )


def test_review_prompt_lists_passes_and_context() -> None:
    prompt = build_review_prompt(
        _agent_input(pr=PullRequestRef(number=7, url="https://github.com/acme/app/pull/7"))
    )

    assert "repository acme/app" in prompt
    assert "issue #42" in prompt
    assert "implementation, security, quality, ux, growth, ops" in prompt
    assert "attempt 2 of 5" in prompt
    assert "Autofix is enabled" in prompt
    assert "Design Systems" in prompt
    assert "concrete next action" in prompt
    assert "P0|P1|P2|P3" in prompt
    assert "Return ONLY a JSON object" in prompt

    context = json.loads(prompt.split("Review context JSON:\n", 1)[1])
    assert context["pr"] == {"number": 7, "url": "https://github.com/acme/app/pull/7"}
    assert context["workspace_root"] == "/work/repo"
    assert context["passes"][0] == "implementation"


def test_review_prompt_without_autofix_or_pr() -> None:
    prompt = build_review_prompt(_agent_input(autofix=False))

    assert "Autofix is disabled" in prompt
    context = json.loads(prompt.split("Review context JSON:\n", 1)[1])
    assert context["pr"] is None
    assert context["autofix"] is False
