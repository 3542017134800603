from __future__ import annotations

import pytest

from vibereview.findings import TrackedFinding, tracked_from_finding
from vibereview.followup import (
    FollowUpManager,
    build_followup_body,
    build_followup_title,
    classify_followup_label,
    extract_source_issue_number,
    find_open_followups,
    is_missing_label_error,
    pick_existing_labels,
    select_followup_findings,
    select_module_labels,
    source_marker,
)
from vibereview.models import Finding, IssueSnapshot
from vibereview.observability import configure_logging
from vibereview.shell import CommandError


def _tracked(pass_name: str = "quality", severity: str = "P2", *, kind: str | None = None, title: str = "T") -> TrackedFinding:
    return tracked_from_finding(
        Finding(
            id=title,
            pass_name=pass_name,  # type: ignore[arg-type]
            severity=severity,  # type: ignore[arg-type]
            title=title,
            body="b",
            file="a.py",
            line=len(title) + 1,
            kind=kind,  # type: ignore[arg-type]
        )
    )


def _source_issue(**overrides: object) -> IssueSnapshot:
    values: dict[str, object] = {
        "number": 42,
        "title": "Add export",
        "body": "",
        "html_url": "https://github.com/acme/app/issues/42",
        "labels": ("module:api", "Module:API", "enhancement"),
        "milestone_number": 6,
    }
    values.update(overrides)
    return IssueSnapshot(**values)  # type: ignore[arg-type]


class FakeFollowUpGateway:
    def __init__(self, open_issues: list[IssueSnapshot] | None = None, labels: set[str] | None = None) -> None:
        self.open_issues = open_issues or []
        self.labels = labels if labels is not None else {"bug", "enhancement", "status:backlog", "module:api"}
        self.created: list[dict[str, object]] = []
        self.updated: list[dict[str, object]] = []
        self.closed: list[tuple[int, str | None]] = []
        self.reject_labels = False
        self.fail_close: set[int] = set()
        self.fail_list = False

    def list_open_issues(self) -> list[IssueSnapshot]:
        if self.fail_list:
            raise RuntimeError("HTTP 500")
        return list(self.open_issues)

    def list_repository_labels(self) -> set[str]:
        return set(self.labels)

    def create_issue(
        self,
        *,
        title: str,
        body: str,
        labels: tuple[str, ...] = (),
        milestone_number: int | None = None,
    ) -> IssueSnapshot:
        if labels and self.reject_labels:
            raise CommandError("Command failed", stderr="HTTP 422: could not add label: 'status:backlog' not found")
        self.created.append({"title": title, "body": body, "labels": labels, "milestone": milestone_number})
        issue = IssueSnapshot(number=100 + len(self.created), title=title, body=body, html_url=f"https://x/{100 + len(self.created)}")
        self.open_issues.append(issue)
        return issue

    def update_issue(
        self,
        issue_number: int,
        *,
        title: str,
        body: str,
        add_labels: tuple[str, ...] = (),
        milestone_number: int | None = None,
    ) -> None:
        if add_labels and self.reject_labels:
            raise CommandError("Command failed", stderr="Label does not exist: invalid label")
        self.updated.append({"number": issue_number, "title": title, "body": body, "labels": add_labels, "milestone": milestone_number})

    def close_issue(self, issue_number: int, *, comment: str | None = None) -> None:
        if issue_number in self.fail_close:
            raise RuntimeError("HTTP 403: Resource not accessible")
        self.closed.append((issue_number, comment))


def _followup_issue(number: int, source: int) -> IssueSnapshot:
    return IssueSnapshot(number=number, title="f", body=f"{source_marker(source)}\n\nbody", html_url=f"https://x/{number}")


def test_source_marker_round_trip() -> None:
    assert source_marker(42) == "<!-- vibe:review-followup:source-issue:42 -->"
    assert extract_source_issue_number("x\n" + source_marker(42)) == 42
    assert extract_source_issue_number("<!-- vibe:review-followup:source-issue:0 -->") is None
    assert extract_source_issue_number(None) is None


def test_classify_label() -> None:
    assert classify_followup_label([_tracked(severity="P3")]) == "enhancement"
    assert classify_followup_label([_tracked(severity="P1")]) == "bug"
    assert classify_followup_label([_tracked(severity="P3", kind="regression")]) == "bug"
    assert classify_followup_label([_tracked(severity="P0")], "enhancement") == "enhancement"


def test_select_followup_findings_prefers_growth() -> None:
    growth = _tracked("growth", "P3", title="Add onboarding email")
    urgent = _tracked("security", "P0", title="Secret leak")
    minor = _tracked("quality", "P3", title="Rename")

    assert select_followup_findings([growth, urgent, minor]) == [growth, urgent]
    assert select_followup_findings([urgent, minor]) == [urgent, minor]


def test_title_and_body() -> None:
    title = build_followup_title(_source_issue(title="x" * 400))
    assert len(title) == 240
    assert title.startswith("review follow-up: unresolved findings for #42")

    tracked = _tracked(title="Missing test")
    body = build_followup_body(42, [tracked], "## vibe review\n")
    assert body.startswith(source_marker(42))
    assert "## Review Summary\n## vibe review" in body
    assert f"<!-- vibe:fingerprint:{tracked.fingerprint} -->" in body
    assert "- none" in build_followup_body(42, [], "s")


def test_label_helpers() -> None:
    assert select_module_labels([" module:api ", "MODULE:API", "bug", "module:web"]) == ["module:api", "module:web"]
    assert pick_existing_labels(["Bug", "bug", "status:backlog", ""], {"bug"}) == ["Bug"]
    assert is_missing_label_error(CommandError("x", stderr="could not add label"))
    assert not is_missing_label_error(RuntimeError("HTTP 500"))


def test_sync_creates_followup_with_labels_and_milestone(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose="low")
    gateway = FakeFollowUpGateway(open_issues=[_followup_issue(7, source=99)])
    tracked = _tracked(severity="P1", title="Crash on save")

    result = FollowUpManager(gateway).sync(
        source_issue=_source_issue(), findings=[tracked], review_summary="summary"
    )

    assert result.created is True
    assert result.number == 101
    assert result.label == "bug"
    created = gateway.created[0]
    assert created["labels"] == ("bug", "status:backlog", "module:api")
    assert created["milestone"] == 6
    assert "event=followup_issue_created" in capsys.readouterr().err


def test_sync_updates_oldest_followup_and_closes_duplicates() -> None:
    gateway = FakeFollowUpGateway(
        open_issues=[_followup_issue(9, source=42), _followup_issue(7, source=42), _followup_issue(8, source=42)]
    )

    result = FollowUpManager(gateway).sync(
        source_issue=_source_issue(), findings=[_tracked()], review_summary="s", override_label="enhancement"
    )

    assert (result.number, result.created, result.updated) == (7, False, True)
    assert result.url == "https://x/7"
    assert gateway.updated[0]["number"] == 7
    assert gateway.created == []
    assert [number for number, _ in gateway.closed] == [8, 9]
    assert all("Duplicate of #7" in (comment or "") for _, comment in gateway.closed)
    assert result.duplicates_closed == (8, 9)
    assert result.warnings == ()


def test_sync_reports_duplicate_close_failure_as_warning() -> None:
    gateway = FakeFollowUpGateway(open_issues=[_followup_issue(7, source=42), _followup_issue(8, source=42)])
    gateway.fail_close = {8}

    result = FollowUpManager(gateway).sync(source_issue=_source_issue(), findings=[_tracked()], review_summary="s")

    assert result.number == 7
    assert result.duplicates_closed == ()
    assert result.warnings == ("follow-up #8 could not be closed: HTTP 403: Resource not accessible",)
    assert gateway.updated[0]["number"] == 7


def test_sync_retries_without_labels_on_label_error() -> None:
    gateway = FakeFollowUpGateway()
    gateway.reject_labels = True

    result = FollowUpManager(gateway).sync(source_issue=_source_issue(), findings=[_tracked()], review_summary="s")
    assert result.created is True
    assert gateway.created[0]["labels"] == ()

    gateway.open_issues = [_followup_issue(7, source=42)]
    FollowUpManager(gateway).sync(source_issue=_source_issue(), findings=[_tracked()], review_summary="s")
    assert gateway.updated[0]["labels"] == ()


def test_sync_only_applies_existing_labels() -> None:
    gateway = FakeFollowUpGateway(labels={"enhancement"})

    FollowUpManager(gateway).sync(source_issue=_source_issue(), findings=[_tracked()], review_summary="s")

    assert gateway.created[0]["labels"] == ("enhancement",)


def test_close_all_reports_failures_as_warnings() -> None:
    gateway = FakeFollowUpGateway(
        open_issues=[_followup_issue(7, source=42), _followup_issue(8, source=42), _followup_issue(9, source=1)]
    )
    gateway.fail_close.add(8)

    result = FollowUpManager(gateway).close_all(42)

    assert result.closed == (7,)
    assert result.failed == (8,)
    assert result.warnings == ("follow-up #8 could not be closed: HTTP 403: Resource not accessible",)
    assert gateway.closed[0][1] is not None and "#42" in gateway.closed[0][1]
    assert [issue.number for issue in find_open_followups(gateway, 1)] == [9]


def test_close_all_lookup_failure() -> None:
    gateway = FakeFollowUpGateway()
    gateway.fail_list = True

    result = FollowUpManager(gateway).close_all(42)

    assert result.closed == ()
    assert "lookup failed" in result.warnings[0]
