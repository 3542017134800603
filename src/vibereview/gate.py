from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
import hashlib
import json
import logging
import re
import time
from typing import Protocol

from vibereview.models import IssueComment
from vibereview.observability import log_event


REVIEW_SUMMARY_MARKER = "<!-- vibe:review-summary -->"
REVIEW_HEAD_MARKER_PREFIX = "<!-- vibe:review-head:"
REVIEW_POLICY_MARKER_PREFIX = "<!-- vibe:review-policy:"
REVIEW_GATE_SKIPPED_MARKER = "<!-- vibe:review-gate-skipped -->"
REVIEW_GATE_HEAD_MARKER_PREFIX = "<!-- vibe:review-gate-head:"
POLICY_KEY_VERSION = "p1"

_HEAD_MARKER_PATTERN = re.compile(r"<!--\s*vibe:review-head:([a-f0-9]+)\s*-->", re.IGNORECASE)
_POLICY_MARKER_PATTERN = re.compile(
    r"<!--\s*vibe:review-policy:([A-Za-z0-9._-]+)\s*-->", re.IGNORECASE
)

LOGGER = logging.getLogger("vibereview.gate")


class IssueCommentGateway(Protocol):
    def list_issue_comments(self, number: int) -> list[IssueComment]: ...

    def post_issue_comment(self, number: int, body: str) -> int: ...


@dataclass(frozen=True)
class ReviewPolicy:
    autofix: bool
    autopush: bool
    publish: bool
    strict: bool
    max_attempts: int

    @property
    def key(self) -> str:
        return build_review_policy_key(
            autofix=self.autofix,
            autopush=self.autopush,
            publish=self.publish,
            strict=self.strict,
            max_attempts=self.max_attempts,
        )


def build_review_policy_key(
    *, autofix: bool, autopush: bool, publish: bool, strict: bool, max_attempts: int
) -> str:
    canonical = json.dumps(
        {
            "autofix": autofix,
            "autopush": autopush,
            "max_attempts": max_attempts,
            "publish": publish,
            "strict": strict,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]
    return f"{POLICY_KEY_VERSION}-{digest}"


def normalize_head_sha(head_sha: str | None) -> str:
    return (head_sha or "").strip().lower()


def build_review_summary_body(
    markdown: str, head_sha: str | None = None, *, policy_key: str | None = None
) -> str:
    lines = [REVIEW_SUMMARY_MARKER]
    normalized_head = normalize_head_sha(head_sha)
    if normalized_head:
        lines.append(f"{REVIEW_HEAD_MARKER_PREFIX}{normalized_head} -->")
        if policy_key:
            lines.append(f"{REVIEW_POLICY_MARKER_PREFIX}{policy_key} -->")
    lines.append(markdown.strip())
    return "\n".join(lines) + "\n"


def build_gate_skip_body(*, issue_number: int, head_sha: str) -> str:
    return "\n".join(
        (
            REVIEW_GATE_SKIPPED_MARKER,
            f"{REVIEW_GATE_HEAD_MARKER_PREFIX}{normalize_head_sha(head_sha)} -->",
            f"review gate skipped via `--skip-review-gate` for issue #{issue_number}.",
            "No review was run for this commit.",
        )
    )


def extract_head_markers(body: str) -> set[str]:
    return {match.group(1).strip().lower() for match in _HEAD_MARKER_PATTERN.finditer(body)}


def extract_policy_markers(body: str) -> set[str]:
    return {match.group(1).strip() for match in _POLICY_MARKER_PATTERN.finditer(body)}


def evaluate_gate(
    comment_bodies: Iterable[str], *, head_sha: str, policy_key: str | None
) -> bool:
    """Decide whether the summary comments already cover ``head_sha``.

    A matching policy marker satisfies the gate. A head-only (legacy) marker
    satisfies it only while no policy marker at all exists for that head.
    Without a ``policy_key`` any summary for the head counts.
    """

    target = normalize_head_sha(head_sha)
    if not target:
        return False

    head_seen = False
    policies_for_head: set[str] = set()
    for body in comment_bodies:
        if not body or REVIEW_SUMMARY_MARKER not in body:
            continue
        if target not in extract_head_markers(body):
            continue
        head_seen = True
        policies_for_head.update(extract_policy_markers(body))

    if not head_seen:
        return False
    if policy_key is None:
        return True
    if policy_key in policies_for_head:
        return True
    return not policies_for_head


def has_skip_marker_for_head(comment_bodies: Iterable[str], *, head_sha: str) -> bool:
    head_marker = f"{REVIEW_GATE_HEAD_MARKER_PREFIX}{normalize_head_sha(head_sha)} -->"
    for body in comment_bodies:
        if body and REVIEW_GATE_SKIPPED_MARKER in body and head_marker in body:
            return True
    return False


class ReviewGate:
    def __init__(self, gateway: IssueCommentGateway) -> None:
        self._gateway = gateway

    def has_review_for_head(
        self, pr_number: int, head_sha: str, *, policy_key: str | None = None
    ) -> bool:
        if pr_number <= 0 or not normalize_head_sha(head_sha):
            return False
        comments = self._gateway.list_issue_comments(pr_number)
        satisfied = evaluate_gate(
            (comment.body for comment in comments), head_sha=head_sha, policy_key=policy_key
        )
        log_event(
            LOGGER,
            "review_gate_checked",
            pr_number=pr_number,
            head_sha=normalize_head_sha(head_sha)[:12],
            policy_key=policy_key,
            satisfied=satisfied,
        )
        return satisfied

    def publish_summary(
        self, pr_number: int, *, markdown: str, head_sha: str, policy_key: str
    ) -> int:
        body = build_review_summary_body(markdown, head_sha, policy_key=policy_key)
        comment_id = self._gateway.post_issue_comment(pr_number, body)
        log_event(
            LOGGER,
            "review_gate_published",
            pr_number=pr_number,
            head_sha=normalize_head_sha(head_sha)[:12],
            policy_key=policy_key,
            comment_id=comment_id,
        )
        return comment_id

    def post_skip_comment(self, pr_number: int, *, issue_number: int, head_sha: str) -> bool:
        """Post the skip marker for ``head_sha`` once; return False when it already exists."""

        if pr_number <= 0 or not normalize_head_sha(head_sha):
            return False
        comments = self._gateway.list_issue_comments(pr_number)
        if has_skip_marker_for_head((comment.body for comment in comments), head_sha=head_sha):
            return False
        self._gateway.post_issue_comment(
            pr_number, build_gate_skip_body(issue_number=issue_number, head_sha=head_sha)
        )
        log_event(
            LOGGER,
            "review_gate_skipped",
            pr_number=pr_number,
            head_sha=normalize_head_sha(head_sha)[:12],
        )
        return True

    def wait_for_review_gate(
        self,
        pr_number: int,
        head_sha: str,
        *,
        policy_key: str | None,
        timeout_seconds: float,
        poll_interval_seconds: float = 10.0,
        now: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> bool:
        deadline = now() + max(0.0, timeout_seconds)
        while True:
            if self.has_review_for_head(pr_number, head_sha, policy_key=policy_key):
                return True
            remaining = deadline - now()
            if remaining <= 0:
                return False
            sleep(min(poll_interval_seconds, remaining))
