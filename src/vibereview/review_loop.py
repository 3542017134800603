from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
import logging
import re
from typing import Protocol

from vibereview.agent_adapter import AgentRunResult, ReviewAgentAdapter
from vibereview.agent_output import SchemaMismatchError
from vibereview.artifacts import append_pass_run_log, append_summary_to_postflight
from vibereview.config import AppConfig, clamp_max_attempts
from vibereview.findings import (
    MergedFindings,
    auto_resolvable_threads,
    build_inline_comment_body,
    compute_fingerprint,
    extract_fingerprints,
    merge_unresolved,
    summarize_thread_lifecycle,
    to_repo_relative_path,
    with_repo_relative_paths,
)
from vibereview.followup import (
    FollowUpCloseResult,
    FollowUpGateway,
    FollowUpManager,
    FollowUpResult,
    find_open_followups,
)
from vibereview.gate import IssueCommentGateway, ReviewGate, ReviewPolicy
from vibereview.models import (
    REVIEW_PASS_ORDER,
    SEVERITIES,
    AgentOutput,
    Finding,
    FollowUpLabel,
    IssueComment,
    IssueRef,
    IssueSnapshot,
    PullRequestRef,
    ReviewAgentInput,
    ReviewThread,
    TerminationReason,
)
from vibereview.observability import log_event, review_log_context, warn_event
from vibereview.provider import ExecutionPlan, ProviderPlan, persist_plan_selection
from vibereview.shell import CommandError
from vibereview.threads import ResolveThreadsOptions, ThreadGateway, ThreadResolver


NO_ISSUE_CONTEXT_EXIT_CODE = 2
INVALID_CONTEXT_EXIT_CODE = 3
UNRESOLVED_FINDINGS_EXIT_CODE = 4
AGENT_ERROR_EXIT_CODE = 1

_ISSUE_BRANCH_PATTERN = re.compile(r"(?:^|/)issue-(\d+)(?:-|$)", re.IGNORECASE)
_WORKFLOW_BRANCH_PATTERN = re.compile(
    r"(?:^|/)(?:feat|fix|chore|docs|refactor|test)/(\d+)(?:-|$)", re.IGNORECASE
)
_CLOSING_KEYWORD_PATTERN = re.compile(
    r"\b(?:close[sd]?|fix(?:e[sd])?|resolve[sd]?)\s+#(\d+)\b", re.IGNORECASE
)

LOGGER = logging.getLogger("vibereview.review_loop")


class ReviewContextError(RuntimeError):
    """The run cannot start: missing issue context or an unsafe workspace."""

    def __init__(self, message: str, *, exit_code: int = INVALID_CONTEXT_EXIT_CODE) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class AutopushIncompleteError(RuntimeError):
    """Tracked changes remained in the workspace after commit and push."""


class ReviewGateway(IssueCommentGateway, ThreadGateway, FollowUpGateway, Protocol):
    @property
    def full_name(self) -> str: ...

    def get_issue(self, issue_number: int) -> IssueSnapshot: ...

    def find_open_pull_request_by_head(self, branch: str) -> PullRequestRef | None: ...

    def create_pull_request(
        self, *, title: str, head: str, base: str, body: str
    ) -> PullRequestRef: ...

    def list_pull_request_review_comments(self, pr_number: int) -> list[IssueComment]: ...

    def post_review_comment(
        self, pr_number: int, *, body: str, commit_id: str, path: str, line: int
    ) -> int: ...


class GitWorkspace(Protocol):
    cwd: Path

    def current_branch(self) -> str: ...

    def head_sha(self) -> str: ...

    def is_clean(self) -> bool: ...

    def has_tracked_changes(self) -> bool: ...

    def commit_all(self, message: str) -> bool: ...

    def push(self) -> None: ...


AgentResolver = Callable[["ReviewOptions"], tuple[ExecutionPlan, ReviewAgentAdapter]]


@dataclass(frozen=True)
class ReviewOptions:
    issue: int | None = None
    branch: str | None = None
    base_branch: str | None = None
    agent_cmd: str | None = None
    agent_provider: str | None = None
    dry_run: bool = False
    autofix: bool = True
    autopush: bool = True
    publish: bool = True
    max_attempts: int = 5
    strict: bool = False
    followup_label: FollowUpLabel | None = None
    skip_review_gate: bool = False
    force: bool = False


@dataclass(frozen=True)
class ReviewContext:
    issue_number: int
    branch: str
    base_branch: str
    current_branch: str
    open_pr: PullRequestRef | None


@dataclass(frozen=True)
class ReviewRunResult:
    termination_reason: TerminationReason
    exit_code: int
    issue_number: int
    branch: str
    policy_key: str
    pr_number: int | None = None
    attempts_used: int = 0
    max_attempts: int = 0
    unresolved: MergedFindings = field(default_factory=lambda: MergedFindings(findings=()))
    run_id: str | None = None
    runner: str | None = None
    provider_source: str | None = None
    resume_attempted: bool = False
    resume_fallback: bool = False
    committed: bool = False
    followup: FollowUpResult | None = None
    followup_close: FollowUpCloseResult | None = None
    summary: str = ""
    warnings: tuple[str, ...] = ()

    @property
    def unresolved_count(self) -> int:
        return self.unresolved.count


def infer_issue_from_branch(branch: str) -> int | None:
    for pattern in (_ISSUE_BRANCH_PATTERN, _WORKFLOW_BRANCH_PATTERN):
        match = pattern.search(branch)
        if match is not None:
            value = int(match.group(1))
            if value > 0:
                return value
    return None


def infer_issue_from_pr_body(body: str | None) -> int | None:
    if not body:
        return None
    for match in _CLOSING_KEYWORD_PATTERN.finditer(body):
        value = int(match.group(1))
        if value > 0:
            return value
    return None


def autofix_can_progress(output: AgentOutput, *, autofix_enabled: bool) -> bool:
    return autofix_enabled and output.autofix.applied and bool(output.autofix.changed_files)


@dataclass
class _AttemptState:
    attempts_used: int = 0
    last_run: AgentRunResult | None = None
    merged: MergedFindings = field(default_factory=lambda: MergedFindings(findings=()))
    resume_attempted: bool = False
    resume_fallback: bool = False
    failures: list[str] = field(default_factory=list)


class ReviewRunner:
    def __init__(
        self,
        config: AppConfig,
        *,
        github: ReviewGateway,
        git: GitWorkspace,
        resolve_agent: AgentResolver,
        persist_plan: Callable[[ExecutionPlan], Path | None] = persist_plan_selection,
    ) -> None:
        self._config = config
        self._github = github
        self._git = git
        self._resolve_agent = resolve_agent
        self._persist_plan = persist_plan
        self._gate = ReviewGate(github)
        self._followups = FollowUpManager(github)

    @property
    def state_dir(self) -> Path:
        state_dir = self._config.review.state_dir
        if state_dir.is_absolute():
            return state_dir
        return self._git.cwd / state_dir

    def run(self, options: ReviewOptions) -> ReviewRunResult:
        max_attempts = clamp_max_attempts(options.max_attempts)
        policy_key = ReviewPolicy(
            autofix=options.autofix,
            autopush=options.autopush,
            publish=options.publish,
            strict=options.strict,
            max_attempts=max_attempts,
        ).key
        context = self.resolve_context(options)
        with review_log_context(issue_number=context.issue_number):
            log_event(
                LOGGER,
                "review_started",
                branch=context.branch,
                dry_run=options.dry_run,
                max_attempts=max_attempts,
                policy_key=policy_key,
            )
            gated = self._check_gate(options, context, policy_key)
            if gated is not None:
                return gated

            plan, agent = self._resolve_agent(options)
            if not options.dry_run:
                self._persist_plan(plan)

            issue = self._github.get_issue(context.issue_number)
            pr = self._resolve_pull_request(options, context, issue)
            with review_log_context(pr_number=pr.number if pr is not None else None):
                return self._review(
                    options,
                    context=context,
                    issue=issue,
                    pr=pr,
                    plan=plan,
                    agent=agent,
                    max_attempts=max_attempts,
                    policy_key=policy_key,
                )

    def _review(
        self,
        options: ReviewOptions,
        *,
        context: ReviewContext,
        issue: IssueSnapshot,
        pr: PullRequestRef | None,
        plan: ExecutionPlan,
        agent: ReviewAgentAdapter,
        max_attempts: int,
        policy_key: str,
    ) -> ReviewRunResult:
        # Remote state is read once, before any mutation.
        threads = self._github.list_review_threads(pr.number) if pr is not None else []
        open_followups = find_open_followups(self._github, context.issue_number)
        followup_body = open_followups[0].body if open_followups else None

        state = self._run_attempts(
            options,
            context=context,
            issue=issue,
            pr=pr,
            agent=agent,
            threads=threads,
            followup_body=followup_body,
            max_attempts=max_attempts,
        )
        reason = self._termination_reason(options, state)
        return self._finish(
            options,
            reason=reason,
            context=context,
            issue=issue,
            pr=pr,
            plan=plan,
            state=state,
            threads=threads,
            followup_body=followup_body,
            max_attempts=max_attempts,
            policy_key=policy_key,
        )

    def resolve_context(self, options: ReviewOptions) -> ReviewContext:
        if options.issue is not None and options.issue <= 0:
            raise ReviewContextError("--issue must be a positive integer")

        current_branch = self._git.current_branch()
        branch = (options.branch or "").strip() or current_branch
        configured_base = (options.base_branch or "").strip() or self._config.review.base_branch

        if not options.dry_run:
            if branch != current_branch:
                raise ReviewContextError(
                    f"target branch '{branch}' is not checked out (current: '{current_branch}'). "
                    "Checkout the target branch or use --dry-run."
                )
            if not self._git.is_clean():
                raise ReviewContextError(
                    "working tree is not clean. Commit or stash changes, or use --dry-run."
                )
            if options.autopush and branch in {configured_base, "main"}:
                raise ReviewContextError(f"autopush blocked on default branch '{branch}'.")

        open_pr: PullRequestRef | None
        try:
            open_pr = self._github.find_open_pull_request_by_head(branch)
        except Exception as exc:  # noqa: BLE001
            log_event(LOGGER, "review_pr_lookup_failed", branch=branch, error_type=type(exc).__name__)
            open_pr = None

        issue_number = (
            options.issue
            or infer_issue_from_branch(branch)
            or infer_issue_from_pr_body(open_pr.body if open_pr is not None else None)
        )
        if issue_number is None:
            raise ReviewContextError(
                "unable to resolve issue context (use --issue <n>).",
                exit_code=NO_ISSUE_CONTEXT_EXIT_CODE,
            )

        base_branch = (
            (options.base_branch or "").strip()
            or (open_pr.base_branch if open_pr is not None else None)
            or self._config.review.base_branch
        )
        return ReviewContext(
            issue_number=issue_number,
            branch=branch,
            base_branch=base_branch,
            current_branch=current_branch,
            open_pr=open_pr,
        )

    def _check_gate(
        self, options: ReviewOptions, context: ReviewContext, policy_key: str
    ) -> ReviewRunResult | None:
        pr = context.open_pr
        if options.skip_review_gate:
            warnings: list[str] = []
            if pr is None or not pr.head_sha:
                warnings.append("no open pull request; nothing to mark as skipped")
            elif options.dry_run:
                warnings.append("dry-run: skip marker not posted")
            else:
                self._gate.post_skip_comment(
                    pr.number, issue_number=context.issue_number, head_sha=pr.head_sha
                )
            return self._gate_skipped_result(context, policy_key, warnings)

        if options.force or pr is None or not pr.head_sha:
            return None
        try:
            local_head = self._git.head_sha()
        except CommandError:
            return None
        if local_head != pr.head_sha:
            return None
        if not self._gate.has_review_for_head(pr.number, pr.head_sha, policy_key=policy_key):
            return None
        return self._gate_skipped_result(
            context,
            policy_key,
            [f"head {pr.head_sha[:12]} already reviewed under policy {policy_key}; use --force to rerun"],
        )

    def _gate_skipped_result(
        self, context: ReviewContext, policy_key: str, warnings: Sequence[str]
    ) -> ReviewRunResult:
        log_event(LOGGER, "review_terminated", reason="gate-skipped", issue_number=context.issue_number)
        return ReviewRunResult(
            termination_reason="gate-skipped",
            exit_code=0,
            issue_number=context.issue_number,
            branch=context.branch,
            policy_key=policy_key,
            pr_number=context.open_pr.number if context.open_pr is not None else None,
            warnings=tuple(warnings),
        )

    def _resolve_pull_request(
        self, options: ReviewOptions, context: ReviewContext, issue: IssueSnapshot
    ) -> PullRequestRef | None:
        if context.open_pr is not None:
            return context.open_pr
        if options.dry_run or not options.publish:
            return None
        self._git.push()
        body = "\n".join(
            (
                f"- Auto-created by `vibe review` for branch `{context.branch}`.",
                f"- Target issue: #{issue.number} ({issue.title}).",
                "",
                f"Refs #{issue.number}",
            )
        )
        return self._github.create_pull_request(
            title=f"review: #{issue.number} {issue.title}",
            head=context.branch,
            base=context.base_branch,
            body=body,
        )

    def _run_attempts(
        self,
        options: ReviewOptions,
        *,
        context: ReviewContext,
        issue: IssueSnapshot,
        pr: PullRequestRef | None,
        agent: ReviewAgentAdapter,
        threads: Sequence[ReviewThread],
        followup_body: str | None,
        max_attempts: int,
    ) -> _AttemptState:
        state = _AttemptState()
        for attempt in range(1, max_attempts + 1):
            state.attempts_used = attempt
            log_event(
                LOGGER,
                "review_attempt_started",
                issue_number=context.issue_number,
                attempt=attempt,
                max_attempts=max_attempts,
            )
            agent_input = ReviewAgentInput(
                workspace_root=self._git.cwd,
                repo=self._github.full_name,
                issue=IssueRef(id=issue.number, title=issue.title, url=issue.html_url),
                branch=context.branch,
                base_branch=context.base_branch,
                pr=pr,
                attempt=attempt,
                max_attempts=max_attempts,
                autofix=options.autofix,
                passes=REVIEW_PASS_ORDER,
            )
            try:
                run = agent.run_review(agent_input=agent_input, cwd=self._git.cwd)
            except (SchemaMismatchError, CommandError) as exc:
                message = str(exc).strip().splitlines()[0] if str(exc).strip() else type(exc).__name__
                state.failures.append(f"attempt {attempt}: {message}")
                warn_event(
                    LOGGER,
                    "review_attempt_failed",
                    attempt=attempt,
                    error_type=type(exc).__name__,
                )
                if options.dry_run:
                    break
                continue

            state.last_run = run
            state.resume_attempted = state.resume_attempted or run.resume_attempted
            state.resume_fallback = state.resume_fallback or run.resume_fallback
            if not options.dry_run:
                for result in run.output.passes:
                    append_pass_run_log(
                        self.state_dir,
                        issue_number=context.issue_number,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        run_id=run.output.run_id,
                        result=result,
                        autofix=run.output.autofix,
                    )

            current = with_repo_relative_paths(run.output.findings, repo_root=str(self._git.cwd))
            effective_threads = list(threads)
            if options.publish and not options.dry_run:
                closable = {
                    thread.thread_id
                    for thread in auto_resolvable_threads(current_findings=current, threads=threads)
                }
                effective_threads = [t for t in threads if t.thread_id not in closable]
            state.merged = merge_unresolved(
                current_findings=current, threads=effective_threads, followup_body=followup_body
            )
            log_event(
                LOGGER,
                "review_attempt_completed",
                attempt=attempt,
                findings=len(current),
                unresolved=state.merged.count,
                autofix_applied=run.output.autofix.applied,
            )

            if options.dry_run or state.merged.is_empty():
                break
            if attempt < max_attempts and not autofix_can_progress(
                run.output, autofix_enabled=options.autofix
            ):
                warn_event(
                    LOGGER, "review_attempt_stalled", attempt=attempt, unresolved=state.merged.count
                )
        return state

    def _termination_reason(
        self, options: ReviewOptions, state: _AttemptState
    ) -> TerminationReason:
        if state.last_run is None:
            return "agent-error"
        if options.dry_run:
            return "dry-run-complete"
        if state.merged.is_empty():
            return "resolved"
        return "max-attempts-exhausted"

    def _finish(
        self,
        options: ReviewOptions,
        *,
        reason: TerminationReason,
        context: ReviewContext,
        issue: IssueSnapshot,
        pr: PullRequestRef | None,
        plan: ExecutionPlan,
        state: _AttemptState,
        threads: Sequence[ReviewThread],
        followup_body: str | None,
        max_attempts: int,
        policy_key: str,
    ) -> ReviewRunResult:
        warnings: list[str] = list(state.failures)
        run = state.last_run
        base_result = ReviewRunResult(
            termination_reason=reason,
            exit_code=0,
            issue_number=context.issue_number,
            branch=context.branch,
            policy_key=policy_key,
            pr_number=pr.number if pr is not None else None,
            attempts_used=state.attempts_used,
            max_attempts=max_attempts,
            unresolved=state.merged,
            run_id=run.output.run_id if run is not None else None,
            runner=run.runner if run is not None else plan.label,
            provider_source=plan.source,
            resume_attempted=state.resume_attempted,
            resume_fallback=state.resume_fallback,
        )

        if reason in ("agent-error", "dry-run-complete") or run is None:
            summary = (
                self._build_summary(base_result, issue=issue, plan=plan, output=run.output)
                if run is not None
                else ""
            )
            log_event(
                LOGGER,
                "review_terminated",
                reason=reason,
                issue_number=context.issue_number,
                attempts=state.attempts_used,
            )
            return replace(
                base_result,
                exit_code=AGENT_ERROR_EXIT_CODE if reason == "agent-error" else 0,
                summary=summary,
                warnings=tuple(warnings),
            )

        output = run.output
        current = with_repo_relative_paths(output.findings, repo_root=str(self._git.cwd))
        merged = state.merged
        summary = self._build_summary(base_result, issue=issue, plan=plan, output=output)
        append_summary_to_postflight(
            self.state_dir, summary=summary, issue_number=context.issue_number, branch=context.branch
        )

        committed = False
        if options.autopush:
            committed = self._autopush(output)

        head_sha = self._current_head(pr)
        followup: FollowUpResult | None = None
        followup_close: FollowUpCloseResult | None = None
        if options.publish and pr is not None:
            warnings.extend(
                self._publish_inline_comments(pr, head_sha=head_sha, findings=current)
            )
            if not current:
                warnings.extend(self._auto_resolve_threads(pr))
                refreshed = self._github.list_review_threads(pr.number)
                merged = merge_unresolved(
                    current_findings=current,
                    threads=refreshed,
                    followup_body=followup_body,
                )
                totals = summarize_thread_lifecycle(refreshed)
                log_event(
                    LOGGER,
                    "review_thread_totals",
                    observed=totals.observed,
                    unresolved=totals.unresolved,
                    resolved=totals.resolved,
                )
        if options.publish:
            if merged.is_empty():
                followup_close = self._followups.close_all(context.issue_number)
                warnings.extend(followup_close.warnings)
            else:
                followup = self._followups.sync(
                    source_issue=issue,
                    findings=merged.findings,
                    review_summary=summary,
                    override_label=options.followup_label,
                )
                warnings.extend(followup.warnings)

        result = replace(
            base_result,
            unresolved=merged,
            committed=committed,
            followup=followup,
            followup_close=followup_close,
        )
        summary = self._build_summary(result, issue=issue, plan=plan, output=output)
        if options.publish and pr is not None and head_sha:
            self._gate.publish_summary(
                pr.number, markdown=summary, head_sha=head_sha, policy_key=policy_key
            )

        exit_code = 0
        if not merged.is_empty():
            if options.strict:
                exit_code = UNRESOLVED_FINDINGS_EXIT_CODE
            else:
                warnings.append(f"{merged.count} unresolved finding(s) remain")
        if merged.unmanaged_unresolved_threads:
            warnings.append(
                f"{merged.unmanaged_unresolved_threads} unresolved review thread(s) are not managed by vibe review"
            )
        log_event(
            LOGGER,
            "review_terminated",
            reason=reason,
            issue_number=context.issue_number,
            attempts=state.attempts_used,
            unresolved=merged.count,
            exit_code=exit_code,
        )
        return replace(result, exit_code=exit_code, summary=summary, warnings=tuple(warnings))

    def _autopush(self, output: AgentOutput) -> bool:
        committed = self._git.commit_all(
            f"chore(review): apply vibe review autofix (run {output.run_id})"
        )
        if committed:
            self._git.push()
        if self._git.has_tracked_changes():
            raise AutopushIncompleteError(
                "review artifacts persistence incomplete: tracked changes remain after autopush"
            )
        log_event(LOGGER, "autopush_completed", committed=committed, run_id=output.run_id)
        return committed

    def _current_head(self, pr: PullRequestRef | None) -> str:
        try:
            return self._git.head_sha()
        except CommandError:
            return pr.head_sha if pr is not None else ""

    def _publish_inline_comments(
        self, pr: PullRequestRef, *, head_sha: str, findings: Sequence[Finding]
    ) -> list[str]:
        located: list[tuple[Finding, str, int]] = []
        for finding in findings:
            path = to_repo_relative_path(finding.file or "", repo_root=str(self._git.cwd))
            if path is None or finding.line is None or finding.line <= 0:
                continue
            located.append((finding, path, finding.line))
        if not located or not head_sha:
            return []

        existing: set[str] = set()
        for comment in self._github.list_pull_request_review_comments(pr.number):
            existing.update(extract_fingerprints(comment.body))

        warnings: list[str] = []
        published = 0
        for finding, path, line in located:
            fingerprint = compute_fingerprint(replace(finding, file=path))
            if fingerprint in existing:
                continue
            try:
                self._github.post_review_comment(
                    pr.number,
                    body=build_inline_comment_body(finding, fingerprint),
                    commit_id=head_sha,
                    path=path,
                    line=line,
                )
            except Exception as exc:  # noqa: BLE001
                warnings.append(f"inline comment skipped for {path}:{line}: {type(exc).__name__}")
                continue
            existing.add(fingerprint)
            published += 1
        log_event(
            LOGGER, "review_inline_published", pr_number=pr.number, published=published
        )
        return warnings

    def _auto_resolve_threads(self, pr: PullRequestRef) -> list[str]:
        try:
            result = ThreadResolver(self._github).resolve_threads(
                ResolveThreadsOptions(pr_number=pr.number, all_unresolved=True, managed_only=True)
            )
        except Exception as exc:  # noqa: BLE001
            return [f"thread auto-resolve failed: {type(exc).__name__}: {exc}"]
        if result.exit_code:
            return [
                f"thread auto-resolve: selected={result.selected_threads} "
                f"resolved={result.count('resolved')} failed={result.failed + result.incomplete}"
            ]
        return []

    def _build_summary(
        self,
        result: ReviewRunResult,
        *,
        issue: IssueSnapshot,
        plan: ExecutionPlan,
        output: AgentOutput,
    ) -> str:
        return build_outcome_summary(result, issue=issue, plan=plan, output=output)


def build_outcome_summary(
    result: ReviewRunResult,
    *,
    issue: IssueSnapshot,
    plan: ExecutionPlan,
    output: AgentOutput,
) -> str:
    counts = {severity: 0 for severity in SEVERITIES}
    for item in result.unresolved.findings:
        if item.severity is not None:
            counts[item.severity] += 1
    lines = [
        "## vibe review",
        f"- Issue: #{issue.number} {issue.title}",
        f"- PR: {f'#{result.pr_number}' if result.pr_number else '-'}",
        f"- Agent provider: {result.runner} (source: {plan.source})",
        f"- Resume: attempted={'yes' if result.resume_attempted else 'no'}, "
        f"fallback={'yes' if result.resume_fallback else 'no'}",
        f"- Run ID: {output.run_id}",
        f"- Attempts: {result.attempts_used}/{result.max_attempts}",
        f"- Termination: {result.termination_reason}",
        f"- Policy: {result.policy_key}",
        f"- Unresolved findings: {result.unresolved.count}",
        "- Severity: " + ", ".join(f"{severity}={counts[severity]}" for severity in SEVERITIES),
    ]
    if isinstance(plan, ProviderPlan) and plan.healed_from_runtime:
        lines.append(f"- Provider auto-heal: {plan.healed_from_runtime} -> {plan.provider}")
    if result.followup is not None and result.followup.url:
        lines.append(f"- Follow-up issue: {result.followup.url} ({result.followup.label})")
    if result.followup_close is not None and result.followup_close.closed:
        closed = ", ".join(f"#{number}" for number in result.followup_close.closed)
        lines.append(f"- Follow-up closed: {closed}")

    lines.extend(["", "### Pass Results"])
    lines.extend(f"- {item.name}: {len(item.findings)} finding(s)" for item in output.passes)

    lines.extend(["", "### Unresolved Findings"])
    if result.unresolved.findings:
        for item in result.unresolved.findings:
            location = ""
            if item.file and item.line:
                location = f" ({item.file}:{item.line})"
            elif item.file:
                location = f" ({item.file})"
            lines.append(f"- [{item.severity or '?'}] {item.title}{location}")
    else:
        lines.append("- none")
    return "\n".join(lines)
