from __future__ import annotations

import pytest

from vibereview.gate import (
    REVIEW_SUMMARY_MARKER,
    ReviewGate,
    ReviewPolicy,
    build_gate_skip_body,
    build_review_policy_key,
    build_review_summary_body,
    evaluate_gate,
    extract_head_markers,
    extract_policy_markers,
    has_skip_marker_for_head,
)
from vibereview.models import IssueComment


HEAD = "ABCDEF1234567890abcdef1234567890abcdef12"


class FakeCommentGateway:
    def __init__(self, bodies: list[str] | None = None) -> None:
        self.comments = [
            IssueComment(comment_id=index + 1, body=body, user_login="bot", html_url="")
            for index, body in enumerate(bodies or [])
        ]
        self.posted: list[tuple[int, str]] = []

    def list_issue_comments(self, number: int) -> list[IssueComment]:
        _ = number
        return list(self.comments)

    def post_issue_comment(self, number: int, body: str) -> int:
        self.posted.append((number, body))
        comment_id = 100 + len(self.posted)
        self.comments.append(IssueComment(comment_id=comment_id, body=body, user_login="bot", html_url=""))
        return comment_id


def _key(**overrides: object) -> str:
    values: dict[str, object] = {
        "autofix": True,
        "autopush": True,
        "publish": True,
        "strict": False,
        "max_attempts": 5,
    }
    values.update(overrides)
    return build_review_policy_key(**values)  # type: ignore[arg-type]


def test_policy_key_is_stable_and_sensitive() -> None:
    key = _key()

    assert key.startswith("p1-")
    assert len(key) == len("p1-") + 16
    assert key == _key()
    assert key == ReviewPolicy(autofix=True, autopush=True, publish=True, strict=False, max_attempts=5).key
    assert key != _key(strict=True)
    assert key != _key(max_attempts=4)


def test_summary_body_carries_markers() -> None:
    body = build_review_summary_body("## vibe review\n", HEAD, policy_key="p1-abc")

    assert body.startswith(REVIEW_SUMMARY_MARKER)
    assert extract_head_markers(body) == {HEAD.lower()}
    assert extract_policy_markers(body) == {"p1-abc"}
    assert body.endswith("## vibe review\n")

    headless = build_review_summary_body("text", None, policy_key="p1-abc")
    assert extract_head_markers(headless) == set()
    assert extract_policy_markers(headless) == set()


def test_evaluate_gate_policy_rules() -> None:
    key = _key()
    matching = build_review_summary_body("ok", HEAD, policy_key=key)
    other_policy = build_review_summary_body("ok", HEAD, policy_key=_key(strict=True))
    legacy = build_review_summary_body("ok", HEAD)
    other_head = build_review_summary_body("ok", "1111111", policy_key=key)

    assert evaluate_gate([matching], head_sha=HEAD, policy_key=key) is True
    assert evaluate_gate([other_policy], head_sha=HEAD, policy_key=key) is False
    assert evaluate_gate([legacy], head_sha=HEAD, policy_key=key) is True
    assert evaluate_gate([legacy, other_policy], head_sha=HEAD, policy_key=key) is False
    assert evaluate_gate([other_head], head_sha=HEAD, policy_key=key) is False
    assert evaluate_gate([other_policy], head_sha=HEAD, policy_key=None) is True
    assert evaluate_gate(["<!-- vibe:review-head:abc -->"], head_sha="abc", policy_key=None) is False
    assert evaluate_gate([matching], head_sha="", policy_key=key) is False


def test_gate_has_review_for_head() -> None:
    key = _key()
    gateway = FakeCommentGateway([build_review_summary_body("ok", HEAD, policy_key=key)])
    gate = ReviewGate(gateway)

    assert gate.has_review_for_head(7, HEAD, policy_key=key) is True
    assert gate.has_review_for_head(7, "deadbeef", policy_key=key) is False
    assert gate.has_review_for_head(0, HEAD, policy_key=key) is False


def test_publish_summary_appends_comment() -> None:
    gateway = FakeCommentGateway()
    gate = ReviewGate(gateway)

    comment_id = gate.publish_summary(7, markdown="## vibe review", head_sha=HEAD, policy_key="p1-x")

    assert comment_id == 101
    assert gateway.posted[0][0] == 7
    assert gate.has_review_for_head(7, HEAD, policy_key="p1-x") is True


def test_post_skip_comment_is_idempotent_per_head() -> None:
    gateway = FakeCommentGateway()
    gate = ReviewGate(gateway)

    assert gate.post_skip_comment(7, issue_number=3, head_sha=HEAD) is True
    assert gate.post_skip_comment(7, issue_number=3, head_sha=HEAD.lower()) is False
    assert gate.post_skip_comment(7, issue_number=3, head_sha="feedface") is True
    assert gate.post_skip_comment(7, issue_number=3, head_sha="") is False
    assert len(gateway.posted) == 2
    assert has_skip_marker_for_head([body for _, body in gateway.posted], head_sha=HEAD)


def test_skip_body_mentions_issue() -> None:
    body = build_gate_skip_body(issue_number=3, head_sha=HEAD)

    assert "issue #3" in body
    assert has_skip_marker_for_head([body], head_sha=HEAD)
    assert not has_skip_marker_for_head([body], head_sha="feedface")


def test_wait_for_review_gate_polls_until_deadline() -> None:
    gateway = FakeCommentGateway()
    gate = ReviewGate(gateway)
    clock = {"now": 0.0}
    sleeps: list[float] = []

    def sleep(seconds: float) -> None:
        sleeps.append(seconds)
        clock["now"] += seconds

    satisfied = gate.wait_for_review_gate(
        7,
        HEAD,
        policy_key=None,
        timeout_seconds=25,
        poll_interval_seconds=10,
        now=lambda: clock["now"],
        sleep=sleep,
    )

    assert satisfied is False
    assert sleeps == [10, 10, 5]


def test_wait_for_review_gate_returns_when_summary_appears() -> None:
    gateway = FakeCommentGateway()
    gate = ReviewGate(gateway)
    clock = {"now": 0.0}

    def sleep(seconds: float) -> None:
        clock["now"] += seconds
        gateway.post_issue_comment(7, build_review_summary_body("ok", HEAD, policy_key="p1-x"))

    assert gate.wait_for_review_gate(
        7, HEAD, policy_key="p1-x", timeout_seconds=60, now=lambda: clock["now"], sleep=sleep
    )
    assert clock["now"] == pytest.approx(10.0)
