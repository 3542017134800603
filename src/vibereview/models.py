from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal


PassName = Literal["implementation", "security", "quality", "ux", "growth", "ops"]
Severity = Literal["P0", "P1", "P2", "P3"]
FindingKind = Literal[
    "defect", "regression", "security", "improvement", "docs", "refactor", "test"
]
TerminationReason = Literal[
    "resolved",
    "max-attempts-exhausted",
    "strict-failed",
    "dry-run-complete",
    "gate-skipped",
    "agent-error",
]
ProviderMode = Literal["auto", "codex", "claude", "gemini", "command"]
ProviderName = Literal["codex", "claude", "gemini"]
FollowUpLabel = Literal["bug", "enhancement"]
ThreadActionStatus = Literal["planned", "replied", "resolved", "skipped", "failed"]

REVIEW_PASS_ORDER: tuple[PassName, ...] = (
    "implementation",
    "security",
    "quality",
    "ux",
    "growth",
    "ops",
)
SEVERITIES: tuple[Severity, ...] = ("P0", "P1", "P2", "P3")
FINDING_KINDS: tuple[FindingKind, ...] = (
    "defect",
    "regression",
    "security",
    "improvement",
    "docs",
    "refactor",
    "test",
)
AGENT_OUTPUT_VERSION = 1


@dataclass(frozen=True)
class Finding:
    id: str
    pass_name: PassName
    severity: Severity
    title: str
    body: str
    file: str | None = None
    line: int | None = None
    kind: FindingKind | None = None


@dataclass(frozen=True)
class ReviewPassResult:
    name: PassName
    summary: str
    findings: tuple[Finding, ...]


@dataclass(frozen=True)
class AutofixResult:
    applied: bool
    summary: str | None = None
    changed_files: tuple[str, ...] = ()


@dataclass(frozen=True)
class AgentOutput:
    version: int
    run_id: str
    passes: tuple[ReviewPassResult, ...]
    autofix: AutofixResult

    @property
    def findings(self) -> tuple[Finding, ...]:
        return tuple(finding for result in self.passes for finding in result.findings)


@dataclass(frozen=True)
class IssueRef:
    id: int
    title: str
    url: str


@dataclass(frozen=True)
class PullRequestRef:
    number: int
    url: str
    head_sha: str = ""
    base_branch: str | None = None
    body: str = ""


@dataclass(frozen=True)
class ReviewAgentInput:
    workspace_root: Path
    repo: str
    issue: IssueRef
    branch: str
    base_branch: str
    pr: PullRequestRef | None
    attempt: int
    max_attempts: int
    autofix: bool
    passes: tuple[PassName, ...] = REVIEW_PASS_ORDER

    def to_payload(self) -> dict[str, object]:
        return {
            "version": AGENT_OUTPUT_VERSION,
            "workspace_root": str(self.workspace_root),
            "repo": self.repo,
            "issue": {"id": self.issue.id, "title": self.issue.title, "url": self.issue.url},
            "branch": self.branch,
            "base_branch": self.base_branch,
            "pr": (
                None if self.pr is None else {"number": self.pr.number, "url": self.pr.url}
            ),
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "autofix": self.autofix,
            "passes": list(self.passes),
        }


@dataclass(frozen=True)
class IssueSnapshot:
    number: int
    title: str
    body: str
    html_url: str
    state: str = "open"
    labels: tuple[str, ...] = ()
    milestone: str | None = None
    milestone_number: int | None = None


@dataclass(frozen=True)
class IssueComment:
    comment_id: int
    body: str
    user_login: str
    html_url: str


@dataclass(frozen=True)
class ReviewThreadComment:
    comment_id: str
    body: str
    author_login: str
    url: str = ""
    path: str | None = None
    line: int | None = None
    original_line: int | None = None


@dataclass(frozen=True)
class ReviewThread:
    thread_id: str
    is_resolved: bool
    is_outdated: bool
    path: str | None = None
    line: int | None = None
    comments: tuple[ReviewThreadComment, ...] = field(default_factory=tuple)
