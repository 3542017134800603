from __future__ import annotations

import argparse
from collections.abc import Sequence
import json
import os
from pathlib import Path
import sys

from vibereview.agent_adapter import ReviewAgentAdapter
from vibereview.config import AppConfig, clamp_max_attempts, load_config
from vibereview.gate import ReviewGate, has_skip_marker_for_head
from vibereview.git_ops import WorkspaceGit
from vibereview.github_gateway import GitHubGateway, resolve_repo_name_with_owner
from vibereview.observability import configure_logging
from vibereview.provider import ExecutionPlan, build_agent_adapter, resolve_execution_plan
from vibereview.review_loop import (
    ReviewContextError,
    ReviewOptions,
    ReviewRunResult,
    ReviewRunner,
)
from vibereview.threads import (
    ResolveThreadsOptions,
    ResolveThreadsResult,
    ThreadResolver,
    ThreadSelectionError,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vibe-review")
    subparsers = parser.add_subparsers(dest="command", required=True)

    review_parser = subparsers.add_parser(
        "review", help="Run the multi-pass review loop for the current branch"
    )
    _add_common_arguments(review_parser)
    review_parser.add_argument("--issue", type=int, help="Issue number (inferred from branch/PR)")
    review_parser.add_argument("--branch", type=str, help="Target branch (default: current)")
    review_parser.add_argument("--base", type=str, help="Base branch for a new review PR")
    review_parser.add_argument(
        "--agent-cmd", type=str, help="Direct review agent command (JSON on stdin)"
    )
    review_parser.add_argument(
        "--agent-provider",
        type=str,
        help="Agent provider: auto, codex, claude, gemini or command",
    )
    review_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run one attempt without persisting artifacts or mutating GitHub",
    )
    review_parser.add_argument("--autofix", action=argparse.BooleanOptionalAction, default=None)
    review_parser.add_argument("--autopush", action=argparse.BooleanOptionalAction, default=None)
    review_parser.add_argument("--publish", action=argparse.BooleanOptionalAction, default=None)
    review_parser.add_argument("--max-attempts", type=int, help="Attempt limit (clamped to 1..20)")
    review_parser.add_argument(
        "--strict",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Exit non-zero when unresolved findings remain",
    )
    review_parser.add_argument(
        "--followup-label",
        choices=("bug", "enhancement"),
        help="Override the follow-up issue label",
    )
    review_parser.add_argument(
        "--skip-review-gate",
        action="store_true",
        help="Mark the PR head as review-skipped instead of reviewing",
    )
    review_parser.add_argument(
        "--force",
        action="store_true",
        help="Review even when the head already carries a matching summary",
    )
    review_parser.add_argument("--json", action="store_true", help="Print the outcome as JSON")

    threads_parser = subparsers.add_parser("threads", help="Manage PR review threads")
    threads_subparsers = threads_parser.add_subparsers(dest="threads_command", required=True)
    resolve_parser = threads_subparsers.add_parser(
        "resolve", help="Reply to and resolve review threads"
    )
    _add_common_arguments(resolve_parser)
    resolve_parser.add_argument("--pr", type=int, required=True, help="Pull request number")
    target = resolve_parser.add_mutually_exclusive_group(required=True)
    target.add_argument(
        "--thread-id",
        type=str,
        action="append",
        help="Review thread node id (repeatable)",
    )
    target.add_argument(
        "--all-unresolved", action="store_true", help="Select every unresolved thread"
    )
    resolve_parser.add_argument("--body", type=str, help="Reply body override")
    resolve_parser.add_argument(
        "--managed-only",
        action="store_true",
        help="With --all-unresolved, only threads authored by review automation",
    )
    resolve_parser.add_argument(
        "--dry-run", action="store_true", help="Show the replies without mutating threads"
    )
    resolve_parser.add_argument("--json", action="store_true", help="Print the result as JSON")

    gate_parser = subparsers.add_parser("gate", help="Inspect and mark the review gate")
    gate_subparsers = gate_parser.add_subparsers(dest="gate_command", required=True)
    check_parser = gate_subparsers.add_parser(
        "check", help="Exit 0 when the PR head carries a review summary or skip marker"
    )
    _add_common_arguments(check_parser)
    check_parser.add_argument("--pr", type=int, required=True, help="Pull request number")
    check_parser.add_argument("--head-sha", type=str, help="Head commit (default: PR head)")
    check_parser.add_argument("--policy-key", type=str, help="Required review policy key")
    check_parser.add_argument(
        "--wait",
        type=float,
        default=0.0,
        help="Poll for up to this many seconds before giving up",
    )
    skip_parser = gate_subparsers.add_parser("skip", help="Post the review-skipped marker")
    _add_common_arguments(skip_parser)
    skip_parser.add_argument("--pr", type=int, required=True, help="Pull request number")
    skip_parser.add_argument("--issue", type=int, required=True, help="Source issue number")
    skip_parser.add_argument("--head-sha", type=str, help="Head commit (default: PR head)")

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=None, help="Path to review.toml")
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        choices=("low", "high"),
        default=None,
        help="Enable runtime logging to stderr (low keeps lifecycle events only)",
    )
    parser.add_argument(
        "--log-dir", type=Path, default=None, help="Also write daily log files under this dir"
    )


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, state_dir=args.log_dir)
    try:
        config = load_config(args.config)
        exit_code = _dispatch(config, args)
    except ReviewContextError as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(exc.exit_code) from exc
    except Exception as exc:  # noqa: BLE001
        print(f"error: {_first_line(exc)}", file=sys.stderr)
        raise SystemExit(1) from exc
    if exit_code:
        raise SystemExit(exit_code)


def _dispatch(config: AppConfig, args: argparse.Namespace) -> int:
    if args.command == "review":
        return _cmd_review(config, args)
    if args.command == "threads" and args.threads_command == "resolve":
        return _cmd_threads_resolve(config, args)
    if args.command == "gate" and args.gate_command == "check":
        return _cmd_gate_check(config, args)
    if args.command == "gate" and args.gate_command == "skip":
        return _cmd_gate_skip(config, args)
    raise RuntimeError(f"Unknown command: {args.command}")


def build_review_options(config: AppConfig, args: argparse.Namespace) -> ReviewOptions:
    review = config.review
    max_attempts = review.max_attempts
    if args.max_attempts is not None:
        max_attempts = clamp_max_attempts(int(args.max_attempts))
    return ReviewOptions(
        issue=args.issue,
        branch=args.branch,
        base_branch=args.base,
        agent_cmd=args.agent_cmd,
        agent_provider=args.agent_provider,
        dry_run=bool(args.dry_run),
        autofix=review.autofix if args.autofix is None else bool(args.autofix),
        autopush=review.autopush if args.autopush is None else bool(args.autopush),
        publish=review.publish if args.publish is None else bool(args.publish),
        max_attempts=max_attempts,
        strict=review.strict if args.strict is None else bool(args.strict),
        followup_label=args.followup_label or review.followup_label,
        skip_review_gate=bool(args.skip_review_gate),
        force=bool(args.force),
    )


def _cmd_review(config: AppConfig, args: argparse.Namespace) -> int:
    options = build_review_options(config, args)
    cwd = Path.cwd()
    env = dict(os.environ)

    def resolve_agent(run_options: ReviewOptions) -> tuple[ExecutionPlan, ReviewAgentAdapter]:
        plan = resolve_execution_plan(
            config=config,
            env=env,
            agent_cmd=run_options.agent_cmd,
            agent_provider=run_options.agent_provider,
        )
        return plan, build_agent_adapter(plan, config)

    runner = ReviewRunner(
        config,
        github=_build_gateway(config, cwd),
        git=WorkspaceGit(cwd),
        resolve_agent=resolve_agent,
    )
    result = runner.run(options)
    _print_review_result(result, as_json=bool(args.json))
    return result.exit_code


def _print_review_result(result: ReviewRunResult, *, as_json: bool) -> None:
    for warning in result.warnings:
        print(f"warning: {warning}", file=sys.stderr)
    followup_ref = None
    if result.followup is not None:
        followup_ref = result.followup.url or (
            f"#{result.followup.number}" if result.followup.number else None
        )
    if as_json:
        payload = {
            "termination_reason": result.termination_reason,
            "exit_code": result.exit_code,
            "issue_number": result.issue_number,
            "branch": result.branch,
            "pr_number": result.pr_number,
            "attempts": result.attempts_used,
            "max_attempts": result.max_attempts,
            "policy_key": result.policy_key,
            "run_id": result.run_id,
            "runner": result.runner,
            "provider_source": result.provider_source,
            "resume_attempted": result.resume_attempted,
            "resume_fallback": result.resume_fallback,
            "unresolved": [
                {
                    "fingerprint": item.fingerprint,
                    "pass": item.pass_name,
                    "severity": item.severity,
                    "title": item.title,
                    "file": item.file,
                    "line": item.line,
                    "sources": sorted(item.sources),
                }
                for item in result.unresolved.findings
            ],
            "followup": followup_ref,
            "followup_closed": (
                list(result.followup_close.closed) if result.followup_close is not None else []
            ),
        }
        print(json.dumps(payload, indent=2))
        return

    print(f"termination={result.termination_reason}")
    print(f"unresolved={result.unresolved_count}")
    print(f"attempts={result.attempts_used}/{result.max_attempts}")
    if result.pr_number is not None:
        print(f"pr=#{result.pr_number}")
    if followup_ref is not None:
        print(f"followup={followup_ref}")
    if result.followup_close is not None and result.followup_close.closed:
        print("followup_closed=" + ",".join(f"#{n}" for n in result.followup_close.closed))


def _cmd_threads_resolve(config: AppConfig, args: argparse.Namespace) -> int:
    if args.managed_only and not args.all_unresolved:
        raise ReviewContextError("--managed-only requires --all-unresolved")
    options = ResolveThreadsOptions(
        pr_number=int(args.pr),
        thread_ids=tuple(args.thread_id or ()),
        all_unresolved=bool(args.all_unresolved),
        body_override=args.body,
        dry_run=bool(args.dry_run),
        managed_only=bool(args.managed_only),
    )
    try:
        result = ThreadResolver(_build_gateway(config, Path.cwd())).resolve_threads(options)
    except ThreadSelectionError as exc:
        raise ReviewContextError(str(exc)) from exc
    _print_threads_result(result, as_json=bool(args.json))
    return result.exit_code


def _print_threads_result(result: ResolveThreadsResult, *, as_json: bool) -> None:
    if as_json:
        payload = {
            "pr_number": result.pr_number,
            "head_sha": result.head_sha,
            "target_mode": result.target_mode,
            "dry_run": result.dry_run,
            "total_threads": result.total_threads,
            "selected_threads": result.selected_threads,
            "resolved": result.count("resolved"),
            "planned": result.count("planned"),
            "skipped": result.count("skipped"),
            "failed": result.failed,
            "incomplete": result.incomplete,
            "items": [
                {
                    "thread_id": item.thread_id,
                    "status": item.status,
                    "reason": item.reason,
                    "reply_url": item.reply_url,
                    "path": item.path,
                    "line": item.line,
                    "title": item.title,
                }
                for item in result.items
            ],
        }
        print(json.dumps(payload, indent=2))
        return

    print(
        f"pr=#{result.pr_number} mode={result.target_mode} selected={result.selected_threads} "
        f"resolved={result.count('resolved')} failed={result.failed} incomplete={result.incomplete}"
    )
    for item in result.items:
        location = f" {item.path}:{item.line}" if item.path and item.line else ""
        reason = f" ({item.reason})" if item.reason else ""
        print(f"{item.status} {item.thread_id}{location}{reason}")
        if result.dry_run and item.body:
            print(item.body)
            print()


def _cmd_gate_check(config: AppConfig, args: argparse.Namespace) -> int:
    github = _build_gateway(config, Path.cwd())
    pr_number = int(args.pr)
    head_sha = (args.head_sha or "").strip().lower() or github.get_pull_request(pr_number).head_sha
    gate = ReviewGate(github)
    satisfied = gate.wait_for_review_gate(
        pr_number, head_sha, policy_key=args.policy_key, timeout_seconds=float(args.wait)
    )
    if not satisfied:
        bodies = (comment.body for comment in github.list_issue_comments(pr_number))
        satisfied = has_skip_marker_for_head(bodies, head_sha=head_sha)
    print(f"gate={'satisfied' if satisfied else 'missing'} pr=#{pr_number} head={head_sha[:12]}")
    return 0 if satisfied else 1


def _cmd_gate_skip(config: AppConfig, args: argparse.Namespace) -> int:
    github = _build_gateway(config, Path.cwd())
    pr_number = int(args.pr)
    head_sha = (args.head_sha or "").strip().lower() or github.get_pull_request(pr_number).head_sha
    posted = ReviewGate(github).post_skip_comment(
        pr_number, issue_number=int(args.issue), head_sha=head_sha
    )
    print(f"skip_marker={'posted' if posted else 'present'} pr=#{pr_number} head={head_sha[:12]}")
    return 0


def _build_gateway(config: AppConfig, cwd: Path) -> GitHubGateway:
    policy = config.retry.policy()
    slug = resolve_repo_name_with_owner(cwd=cwd, policy=policy)
    return GitHubGateway.from_slug(slug, retry_policy=policy)


def _first_line(error: BaseException) -> str:
    text = str(error).strip()
    if not text:
        return type(error).__name__
    first_line = text.splitlines()[0]
    if len(first_line) <= 200:
        return first_line
    return f"{first_line[:197]}..."
