from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
import logging
import re
from typing import Protocol

from vibereview.findings import TrackedFinding, format_followup_entry
from vibereview.models import FollowUpLabel, IssueSnapshot
from vibereview.observability import log_event, warn_event
from vibereview.retry import error_text


FOLLOWUP_SOURCE_MARKER_PREFIX = "<!-- vibe:review-followup:source-issue:"
OPTIONAL_FOLLOWUP_LABELS: tuple[str, ...] = ("status:backlog",)
BUG_KINDS = frozenset({"defect", "regression", "security"})
TITLE_LIMIT = 240

_SOURCE_MARKER_PATTERN = re.compile(
    r"<!--\s*vibe:review-followup:source-issue:(\d+)\s*-->", re.IGNORECASE
)

LOGGER = logging.getLogger("vibereview.followup")


class FollowUpGateway(Protocol):
    def list_open_issues(self) -> list[IssueSnapshot]: ...

    def list_repository_labels(self) -> set[str]: ...

    def create_issue(
        self,
        *,
        title: str,
        body: str,
        labels: tuple[str, ...] = (),
        milestone_number: int | None = None,
    ) -> IssueSnapshot: ...

    def update_issue(
        self,
        issue_number: int,
        *,
        title: str,
        body: str,
        add_labels: tuple[str, ...] = (),
        milestone_number: int | None = None,
    ) -> None: ...

    def close_issue(self, issue_number: int, *, comment: str | None = None) -> None: ...


@dataclass(frozen=True)
class FollowUpResult:
    number: int | None
    url: str | None
    label: FollowUpLabel
    created: bool
    updated: bool
    duplicates_closed: tuple[int, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class FollowUpCloseResult:
    closed: tuple[int, ...]
    failed: tuple[int, ...]
    warnings: tuple[str, ...]


def source_marker(source_issue_number: int) -> str:
    return f"{FOLLOWUP_SOURCE_MARKER_PREFIX}{source_issue_number} -->"


def extract_source_issue_number(body: str | None) -> int | None:
    if not body:
        return None
    match = _SOURCE_MARKER_PATTERN.search(body)
    if match is None:
        return None
    value = int(match.group(1))
    return value if value > 0 else None


def classify_followup_label(
    findings: Iterable[TrackedFinding], override: FollowUpLabel | None = None
) -> FollowUpLabel:
    if override is not None:
        return override
    items = list(findings)
    if any(item.kind in BUG_KINDS for item in items):
        return "bug"
    if any(item.severity in ("P0", "P1") for item in items):
        return "bug"
    return "enhancement"


def select_followup_findings(findings: Sequence[TrackedFinding]) -> list[TrackedFinding]:
    """Growth findings plus high-severity others when growth exists, otherwise everything."""

    growth = [item for item in findings if item.pass_name == "growth"]
    if not growth:
        return list(findings)
    urgent = [
        item
        for item in findings
        if item.pass_name != "growth" and item.severity in ("P0", "P1")
    ]
    return growth + urgent


def build_followup_title(source_issue: IssueSnapshot) -> str:
    title = f"review follow-up: unresolved findings for #{source_issue.number} {source_issue.title}"
    return title[:TITLE_LIMIT]


def build_followup_body(
    source_issue_number: int, findings: Sequence[TrackedFinding], review_summary: str
) -> str:
    lines = [
        source_marker(source_issue_number),
        "",
        f"Auto-generated by `vibe review` after unresolved findings remained for #{source_issue_number}.",
        "",
        "## Review Summary",
        review_summary.strip(),
        "",
        "## Unresolved Findings",
    ]
    if findings:
        lines.extend(format_followup_entry(item) for item in findings)
    else:
        lines.append("- none")
    return "\n".join(lines) + "\n"


def find_open_followups(
    gateway: FollowUpGateway, source_issue_number: int
) -> list[IssueSnapshot]:
    return [
        issue
        for issue in gateway.list_open_issues()
        if extract_source_issue_number(issue.body) == source_issue_number
    ]


def select_module_labels(labels: Iterable[str]) -> list[str]:
    picked: list[str] = []
    seen: set[str] = set()
    for label in labels:
        trimmed = label.strip()
        normalized = trimmed.lower()
        if not normalized.startswith("module:") or normalized in seen:
            continue
        seen.add(normalized)
        picked.append(trimmed)
    return picked


def pick_existing_labels(requested: Sequence[str], existing: set[str]) -> list[str]:
    picked: list[str] = []
    seen: set[str] = set()
    for label in requested:
        normalized = label.strip().lower()
        if not normalized or normalized in seen or normalized not in existing:
            continue
        seen.add(normalized)
        picked.append(label)
    return picked


def is_missing_label_error(error: BaseException) -> bool:
    text = error_text(error).lower()
    return "label" in text and (
        "not found" in text or "could not add" in text or "invalid" in text
    )


class FollowUpManager:
    def __init__(self, gateway: FollowUpGateway) -> None:
        self._gateway = gateway

    def sync(
        self,
        *,
        source_issue: IssueSnapshot,
        findings: Sequence[TrackedFinding],
        review_summary: str,
        override_label: FollowUpLabel | None = None,
    ) -> FollowUpResult:
        """Create the follow-up issue for ``source_issue`` or refresh the existing one."""

        selected = select_followup_findings(findings)
        label = classify_followup_label(selected, override_label)
        title = build_followup_title(source_issue)
        body = build_followup_body(source_issue.number, selected, review_summary)
        labels = self._labels_to_apply(label, source_issue)

        existing = sorted(
            find_open_followups(self._gateway, source_issue.number), key=lambda issue: issue.number
        )
        if existing:
            target = existing[0]
            duplicates = self._close_issues(
                existing[1:],
                source_issue.number,
                comment=f"Duplicate of #{target.number}; closing extra review follow-up.",
            )
            try:
                self._gateway.update_issue(
                    target.number,
                    title=title,
                    body=body,
                    add_labels=labels,
                    milestone_number=source_issue.milestone_number,
                )
            except Exception as exc:
                if not labels or not is_missing_label_error(exc):
                    raise
                self._gateway.update_issue(
                    target.number,
                    title=title,
                    body=body,
                    milestone_number=source_issue.milestone_number,
                )
            log_event(
                LOGGER,
                "followup_issue_updated",
                source_issue=source_issue.number,
                issue_number=target.number,
                findings=len(selected),
                label=label,
            )
            return FollowUpResult(
                number=target.number,
                url=target.html_url or None,
                label=label,
                created=False,
                updated=True,
                duplicates_closed=duplicates.closed,
                warnings=duplicates.warnings,
            )

        try:
            created = self._gateway.create_issue(
                title=title,
                body=body,
                labels=labels,
                milestone_number=source_issue.milestone_number,
            )
        except Exception as exc:
            if not labels or not is_missing_label_error(exc):
                raise
            created = self._gateway.create_issue(
                title=title, body=body, milestone_number=source_issue.milestone_number
            )
        log_event(
            LOGGER,
            "followup_issue_created",
            source_issue=source_issue.number,
            issue_number=created.number,
            findings=len(selected),
            label=label,
        )
        return FollowUpResult(
            number=created.number,
            url=created.html_url or None,
            label=label,
            created=True,
            updated=False,
        )

    def close_all(self, source_issue_number: int) -> FollowUpCloseResult:
        """Close every open follow-up for the source issue; failures become warnings."""

        try:
            matches = find_open_followups(self._gateway, source_issue_number)
        except Exception as exc:  # noqa: BLE001
            message = f"follow-up lookup failed for #{source_issue_number}: {_first_line(exc)}"
            warn_event(
                LOGGER,
                "followup_issue_close_failed",
                source_issue=source_issue_number,
                error_type=type(exc).__name__,
            )
            return FollowUpCloseResult(closed=(), failed=(), warnings=(message,))

        return self._close_issues(
            matches,
            source_issue_number,
            comment=f"All review findings for #{source_issue_number} are resolved; closing follow-up.",
        )

    def _close_issues(
        self, issues: Sequence[IssueSnapshot], source_issue_number: int, *, comment: str
    ) -> FollowUpCloseResult:
        closed: list[int] = []
        failed: list[int] = []
        warnings: list[str] = []
        for issue in issues:
            try:
                self._gateway.close_issue(issue.number, comment=comment)
            except Exception as exc:  # noqa: BLE001
                failed.append(issue.number)
                warnings.append(
                    f"follow-up #{issue.number} could not be closed: {_first_line(exc)}"
                )
                warn_event(
                    LOGGER,
                    "followup_issue_close_failed",
                    source_issue=source_issue_number,
                    issue_number=issue.number,
                    error_type=type(exc).__name__,
                )
                continue
            closed.append(issue.number)
            log_event(
                LOGGER,
                "followup_issue_closed",
                source_issue=source_issue_number,
                issue_number=issue.number,
            )
        return FollowUpCloseResult(
            closed=tuple(closed), failed=tuple(failed), warnings=tuple(warnings)
        )

    def _labels_to_apply(self, label: FollowUpLabel, source_issue: IssueSnapshot) -> tuple[str, ...]:
        requested = [label, *OPTIONAL_FOLLOWUP_LABELS, *select_module_labels(source_issue.labels)]
        try:
            available = self._gateway.list_repository_labels()
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "followup_labels_unavailable",
                source_issue=source_issue.number,
                error_type=type(exc).__name__,
            )
            return tuple(requested)
        return tuple(pick_existing_labels(requested, available))


def _first_line(error: BaseException) -> str:
    text = str(error).strip()
    return text.splitlines()[0] if text else type(error).__name__
