from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
import json
import logging
import time
from typing import cast
from urllib.parse import urlencode

from vibereview.models import (
    IssueComment,
    IssueSnapshot,
    PullRequestRef,
    ReviewThread,
    ReviewThreadComment,
)
from vibereview.observability import log_event
from vibereview.retry import RetryPolicy, run_with_retry


LOGGER = logging.getLogger("vibereview.github_gateway")
PAGE_SIZE = 100

REVIEW_THREADS_QUERY = """
query($owner:String!, $repo:String!, $pr:Int!, $after:String){
  repository(owner:$owner, name:$repo){
    pullRequest(number:$pr){
      reviewThreads(first:100, after:$after){
        pageInfo { hasNextPage endCursor }
        nodes {
          id
          isResolved
          isOutdated
          path
          line
          comments(first:20){
            nodes { id body url path line originalLine author { login } }
          }
        }
      }
    }
  }
}
""".strip()

REPLY_THREAD_MUTATION = """
mutation($id:ID!, $body:String!){
  addPullRequestReviewThreadReply(input:{pullRequestReviewThreadId:$id, body:$body}){
    comment { url }
  }
}
""".strip()

RESOLVE_THREAD_MUTATION = """
mutation($id:ID!){
  resolveReviewThread(input:{threadId:$id}){
    thread { id isResolved }
  }
}
""".strip()


def resolve_repo_name_with_owner(
    *, cwd: Path | None = None, policy: RetryPolicy | None = None
) -> str:
    raw = run_with_retry(
        ["gh", "repo", "view", "--json", "nameWithOwner", "-q", ".nameWithOwner"],
        cwd=cwd,
        policy=policy,
    )
    slug = raw.strip()
    owner, sep, name = slug.partition("/")
    if not sep or not owner or not name:
        raise RuntimeError("unable to resolve repository owner/name from gh")
    return slug


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    @classmethod
    def from_slug(cls, slug: str, *, retry_policy: RetryPolicy | None = None) -> GitHubGateway:
        owner, sep, name = slug.strip().partition("/")
        if not sep or not owner or not name:
            raise ValueError(f"invalid repository slug {slug!r}")
        return cls(owner=owner, name=name, retry_policy=retry_policy or RetryPolicy())

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    # Issues

    def get_issue(self, issue_number: int) -> IssueSnapshot:
        payload = self._api_json("GET", f"/repos/{self.full_name}/issues/{issue_number}")
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for issue")
        issue = _parse_issue(payload_obj)
        log_event(LOGGER, "github_read", endpoint="issue", issue_number=issue.number)
        return issue

    def list_open_issues(self) -> list[IssueSnapshot]:
        issues: list[IssueSnapshot] = []
        for item_obj in self._paginate(f"/repos/{self.full_name}/issues", {"state": "open"}):
            # The issues endpoint also returns pull requests.
            if "pull_request" in item_obj:
                continue
            issues.append(_parse_issue(item_obj))
        log_event(LOGGER, "github_read", endpoint="open_issues", count=len(issues))
        return issues

    def create_issue(
        self,
        *,
        title: str,
        body: str,
        labels: tuple[str, ...] = (),
        milestone_number: int | None = None,
    ) -> IssueSnapshot:
        request: dict[str, object] = {"title": title, "body": body}
        if labels:
            request["labels"] = list(labels)
        if milestone_number is not None:
            request["milestone"] = milestone_number
        payload = self._api_json(
            "POST", f"/repos/{self.full_name}/issues", payload=request, idempotent=False
        )
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for created issue")
        issue = _parse_issue(payload_obj)
        log_event(LOGGER, "github_issue_created", issue_number=issue.number, labels=len(labels))
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
        request: dict[str, object] = {"title": title, "body": body}
        if milestone_number is not None:
            request["milestone"] = milestone_number
        self._api_json("PATCH", f"/repos/{self.full_name}/issues/{issue_number}", payload=request)
        if add_labels:
            self._api_json(
                "POST",
                f"/repos/{self.full_name}/issues/{issue_number}/labels",
                payload={"labels": list(add_labels)},
            )
        log_event(LOGGER, "github_issue_updated", issue_number=issue_number)

    def close_issue(self, issue_number: int, *, comment: str | None = None) -> None:
        if comment:
            self.post_issue_comment(issue_number, comment)
        self._api_json(
            "PATCH",
            f"/repos/{self.full_name}/issues/{issue_number}",
            payload={"state": "closed", "state_reason": "completed"},
        )
        log_event(LOGGER, "github_issue_closed", issue_number=issue_number)

    def list_repository_labels(self) -> set[str]:
        labels: set[str] = set()
        for item_obj in self._paginate(f"/repos/{self.full_name}/labels", {}):
            name = _as_string(item_obj.get("name")).strip().lower()
            if name:
                labels.add(name)
        log_event(LOGGER, "github_read", endpoint="labels", count=len(labels))
        return labels

    def list_issue_comments(self, issue_number: int) -> list[IssueComment]:
        comments = [
            _parse_issue_comment(item_obj)
            for item_obj in self._paginate(
                f"/repos/{self.full_name}/issues/{issue_number}/comments", {}
            )
        ]
        log_event(
            LOGGER,
            "github_read",
            endpoint="issue_comments",
            issue_number=issue_number,
            count=len(comments),
        )
        return comments

    def post_issue_comment(self, issue_number: int, body: str) -> int:
        path = f"/repos/{self.full_name}/issues/{issue_number}/comments"
        try:
            payload = self._api_json("POST", path, payload={"body": body}, idempotent=False)
        except Exception as exc:
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=self.full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        payload_obj = _as_object_dict(payload) or {}
        comment_id = _as_optional_int(payload_obj.get("id")) or 0
        log_event(
            LOGGER, "github_issue_comment_posted", issue_number=issue_number, comment_id=comment_id
        )
        return comment_id

    # Pull requests

    def find_open_pull_request_by_head(self, branch: str) -> PullRequestRef | None:
        query = {"state": "open", "head": f"{self.owner}:{branch}", "per_page": str(PAGE_SIZE)}
        payload = self._api_json("GET", f"/repos/{self.full_name}/pulls?{urlencode(query)}")
        if not isinstance(payload, list):
            raise RuntimeError("Unexpected GitHub response: expected list for pull request lookup")
        candidates = [
            _parse_pull_request(item_obj)
            for item_obj in (_as_object_dict(item) for item in payload)
            if item_obj is not None
        ]
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_lookup_by_head",
            head=branch,
            found=bool(candidates),
        )
        if not candidates:
            return None
        return max(candidates, key=lambda pr: pr.number)

    def get_pull_request(self, pr_number: int) -> PullRequestRef:
        payload = self._api_json("GET", f"/repos/{self.full_name}/pulls/{pr_number}")
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for pull request")
        pr = _parse_pull_request(payload_obj)
        log_event(LOGGER, "github_read", endpoint="pull_request", pr_number=pr.number)
        return pr

    def create_pull_request(self, *, title: str, head: str, base: str, body: str) -> PullRequestRef:
        try:
            payload = self._api_json(
                "POST",
                f"/repos/{self.full_name}/pulls",
                payload={"title": title, "head": head, "base": base, "body": body},
                idempotent=False,
            )
            payload_obj = _as_object_dict(payload)
            if payload_obj is None:
                raise RuntimeError("Unexpected GitHub response: expected object for PR")
            pr = _parse_pull_request(payload_obj)
        except Exception as exc:
            log_event(
                LOGGER,
                "github_pr_create_failed",
                repo_full_name=self.full_name,
                base=base,
                head=head,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_pr_created", pr_number=pr.number, pr_url=pr.url, head=head)
        return pr

    def list_pull_request_review_comments(self, pr_number: int) -> list[IssueComment]:
        comments = [
            _parse_issue_comment(item_obj)
            for item_obj in self._paginate(
                f"/repos/{self.full_name}/pulls/{pr_number}/comments", {}
            )
        ]
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_review_comments",
            pr_number=pr_number,
            count=len(comments),
        )
        return comments

    def post_review_comment(
        self, pr_number: int, *, body: str, commit_id: str, path: str, line: int
    ) -> int:
        payload = self._api_json(
            "POST",
            f"/repos/{self.full_name}/pulls/{pr_number}/comments",
            payload={
                "body": body,
                "commit_id": commit_id,
                "path": path,
                "line": line,
                "side": "RIGHT",
            },
            idempotent=False,
        )
        payload_obj = _as_object_dict(payload) or {}
        comment_id = _as_optional_int(payload_obj.get("id")) or 0
        log_event(
            LOGGER,
            "github_review_comment_posted",
            pr_number=pr_number,
            path=path,
            line=line,
            comment_id=comment_id,
        )
        return comment_id

    # Review threads

    def list_review_threads(self, pr_number: int) -> list[ReviewThread]:
        threads: list[ReviewThread] = []
        cursor: str | None = None
        while True:
            variables: dict[str, object] = {
                "owner": self.owner,
                "repo": self.name,
                "pr": pr_number,
                "after": cursor,
            }
            root = self._graphql(REVIEW_THREADS_QUERY, variables)
            repository = _as_object_dict(root.get("repository"))
            pull_request = _as_object_dict(repository.get("pullRequest")) if repository else None
            if pull_request is None:
                raise RuntimeError(f"Pull request #{pr_number} not found in {self.full_name}")
            review_threads = _as_object_dict(pull_request.get("reviewThreads"))
            if review_threads is None:
                break
            nodes = review_threads.get("nodes")
            if isinstance(nodes, list):
                for node in nodes:
                    thread = _parse_review_thread(node)
                    if thread is not None:
                        threads.append(thread)
            page_info = _as_object_dict(review_threads.get("pageInfo")) or {}
            end_cursor = _as_optional_str(page_info.get("endCursor"))
            if page_info.get("hasNextPage") is not True or not end_cursor:
                break
            cursor = end_cursor
        log_event(
            LOGGER, "github_read", endpoint="review_threads", pr_number=pr_number, count=len(threads)
        )
        return threads

    def reply_to_review_thread(self, thread_id: str, body: str) -> str | None:
        root = self._graphql(
            REPLY_THREAD_MUTATION, {"id": thread_id, "body": body}, idempotent=False
        )
        reply = _as_object_dict(root.get("addPullRequestReviewThreadReply")) or {}
        comment = _as_object_dict(reply.get("comment")) or {}
        url = _as_optional_str(comment.get("url"))
        log_event(LOGGER, "github_thread_reply_posted", thread_id=thread_id)
        return url

    def resolve_review_thread(self, thread_id: str) -> bool:
        root = self._graphql(RESOLVE_THREAD_MUTATION, {"id": thread_id}, idempotent=False)
        resolved_node = _as_object_dict(root.get("resolveReviewThread")) or {}
        thread = _as_object_dict(resolved_node.get("thread")) or {}
        return thread.get("isResolved") is True

    # Transport

    def _paginate(self, path: str, query: dict[str, str]) -> list[dict[str, object]]:
        rows: list[dict[str, object]] = []
        page = 1
        while True:
            query_items = {**query, "per_page": str(PAGE_SIZE), "page": str(page)}
            payload = self._api_json("GET", f"{path}?{urlencode(query_items)}")
            if not isinstance(payload, list):
                raise RuntimeError(f"Unexpected GitHub response: expected list for {path}")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is not None:
                    rows.append(item_obj)
            if len(payload) < PAGE_SIZE:
                break
            page += 1
        return rows

    def _graphql(
        self, query: str, variables: dict[str, object], *, idempotent: bool = True
    ) -> dict[str, object]:
        raw = run_with_retry(
            ["gh", "api", "graphql", "--input", "-"],
            input_text=json.dumps({"query": query, "variables": variables}),
            policy=self.retry_policy,
            idempotent=idempotent,
            sleep=self.sleep,
        )
        root = _as_object_dict(json.loads(raw))
        if root is None:
            raise RuntimeError("Unexpected GitHub GraphQL response: expected object")
        errors = root.get("errors")
        if isinstance(errors, list) and errors:
            first = _as_object_dict(errors[0]) or {}
            raise RuntimeError(f"GitHub GraphQL error: {_as_string(first.get('message'))}")
        data = _as_object_dict(root.get("data"))
        if data is None:
            raise RuntimeError("Unexpected GitHub GraphQL response: missing data")
        return data

    def _api_json(
        self,
        method: str,
        path: str,
        payload: dict[str, object] | None = None,
        *,
        idempotent: bool = True,
    ) -> object:
        cmd = ["gh", "api", "--method", method.upper(), path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run_with_retry(
            cmd,
            input_text=stdin_payload,
            policy=self.retry_policy,
            idempotent=idempotent,
            sleep=self.sleep,
        )
        if not raw.strip():
            return None
        return json.loads(raw)


def _parse_issue(item_obj: dict[str, object]) -> IssueSnapshot:
    label_names: list[str] = []
    labels_obj = item_obj.get("labels")
    if isinstance(labels_obj, list):
        for entry in labels_obj:
            entry_obj = _as_object_dict(entry)
            if entry_obj is None:
                continue
            name = entry_obj.get("name")
            if isinstance(name, str) and name.strip():
                label_names.append(name.strip())
    milestone_obj = _as_object_dict(item_obj.get("milestone"))
    milestone_title: str | None = None
    milestone_number: int | None = None
    if milestone_obj is not None:
        milestone_title = _as_string(milestone_obj.get("title")).strip() or None
        milestone_number = _as_optional_int(milestone_obj.get("number"))
    return IssueSnapshot(
        number=_as_int(item_obj.get("number"), field="number"),
        title=_as_string(item_obj.get("title")),
        body=_as_string(item_obj.get("body")),
        html_url=_as_string(item_obj.get("html_url")),
        state=_as_string(item_obj.get("state")) or "open",
        labels=tuple(label_names),
        milestone=milestone_title,
        milestone_number=milestone_number,
    )


def _parse_issue_comment(item_obj: dict[str, object]) -> IssueComment:
    user_obj = _as_object_dict(item_obj.get("user"))
    return IssueComment(
        comment_id=_as_int(item_obj.get("id"), field="id"),
        body=_as_string(item_obj.get("body")),
        user_login=_as_login(user_obj.get("login") if user_obj else None),
        html_url=_as_string(item_obj.get("html_url")),
    )


def _parse_pull_request(item_obj: dict[str, object]) -> PullRequestRef:
    head = _as_object_dict(item_obj.get("head")) or {}
    base = _as_object_dict(item_obj.get("base")) or {}
    return PullRequestRef(
        number=_as_int(item_obj.get("number"), field="number"),
        url=_as_string(item_obj.get("html_url")),
        head_sha=_as_string(head.get("sha")).strip().lower(),
        base_branch=_as_optional_str(base.get("ref")),
        body=_as_string(item_obj.get("body")),
    )


def _parse_review_thread(value: object) -> ReviewThread | None:
    node = _as_object_dict(value)
    if node is None:
        return None
    thread_id = _as_string(node.get("id")).strip()
    if not thread_id:
        return None
    comments: list[ReviewThreadComment] = []
    comments_obj = _as_object_dict(node.get("comments")) or {}
    comment_nodes = comments_obj.get("nodes")
    if isinstance(comment_nodes, list):
        for entry in comment_nodes:
            entry_obj = _as_object_dict(entry)
            if entry_obj is None:
                continue
            comment_id = _as_string(entry_obj.get("id")).strip()
            if not comment_id:
                continue
            author = _as_object_dict(entry_obj.get("author")) or {}
            comments.append(
                ReviewThreadComment(
                    comment_id=comment_id,
                    body=_as_string(entry_obj.get("body")),
                    author_login=_as_login(author.get("login")),
                    url=_as_string(entry_obj.get("url")),
                    path=_as_optional_str(entry_obj.get("path")),
                    line=_as_positive_int(entry_obj.get("line")),
                    original_line=_as_positive_int(entry_obj.get("originalLine")),
                )
            )
    return ReviewThread(
        thread_id=thread_id,
        is_resolved=node.get("isResolved") is True,
        is_outdated=node.get("isOutdated") is True,
        path=_as_optional_str(node.get("path")),
        line=_as_positive_int(node.get("line")),
        comments=tuple(comments),
    )


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _as_login(value: object) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")


def _as_optional_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None


def _as_positive_int(value: object) -> int | None:
    parsed = _as_optional_int(value)
    if parsed is None or parsed < 1:
        return None
    return parsed
