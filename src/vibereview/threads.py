from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import logging
from typing import Literal, Protocol

from vibereview.findings import (
    MANAGED_REPLY_SENTINEL,
    extract_fingerprint,
    extract_pass,
    extract_severity_and_title,
    is_managed_thread,
    thread_location,
)
from vibereview.models import PullRequestRef, ReviewThread, ThreadActionStatus
from vibereview.observability import log_event, warn_event


TargetMode = Literal["thread-id", "all-unresolved"]

LOGGER = logging.getLogger("vibereview.threads")


class ThreadGateway(Protocol):
    def get_pull_request(self, pr_number: int) -> PullRequestRef: ...

    def list_review_threads(self, pr_number: int) -> list[ReviewThread]: ...

    def reply_to_review_thread(self, thread_id: str, body: str) -> str | None: ...

    def resolve_review_thread(self, thread_id: str) -> bool: ...


class ThreadSelectionError(ValueError):
    pass


@dataclass(frozen=True)
class ResolveThreadsOptions:
    pr_number: int
    thread_ids: tuple[str, ...] = ()
    all_unresolved: bool = False
    body_override: str | None = None
    dry_run: bool = False
    managed_only: bool = False


@dataclass(frozen=True)
class ThreadResolveItem:
    thread_id: str
    status: ThreadActionStatus
    reason: str | None = None
    reply_url: str | None = None
    body: str | None = None
    path: str | None = None
    line: int | None = None
    title: str | None = None


@dataclass(frozen=True)
class ResolveThreadsResult:
    pr_number: int
    head_sha: str | None
    target_mode: TargetMode
    dry_run: bool
    total_threads: int
    selected_threads: int
    items: tuple[ThreadResolveItem, ...]

    def count(self, status: ThreadActionStatus) -> int:
        return sum(1 for item in self.items if item.status == status)

    @property
    def failed(self) -> int:
        return self.count("failed")

    @property
    def incomplete(self) -> int:
        """Threads that were replied to but not confirmed resolved."""
        return self.count("replied")

    @property
    def exit_code(self) -> int:
        return 1 if self.failed or self.incomplete else 0


def normalize_thread_ids(values: Sequence[str]) -> tuple[str, ...]:
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        trimmed = value.strip()
        if not trimmed or trimmed in seen:
            continue
        seen.add(trimmed)
        out.append(trimmed)
    return tuple(out)


def build_auto_reply_body(*, pr_number: int, head_sha: str | None, thread: ReviewThread) -> str:
    detail = thread.comments[0] if thread.comments else None
    detail_body = detail.body if detail is not None else None
    severity, title = extract_severity_and_title(detail_body)
    fingerprint = extract_fingerprint(detail_body)
    pass_name = extract_pass(detail_body)
    path, line = thread_location(thread)
    location = f"{path}:{line}" if path and line else path

    lines = [
        MANAGED_REPLY_SENTINEL,
        "",
        f"- PR: #{pr_number}",
        f"- HEAD: {head_sha[:12] if head_sha else '(unknown)'}",
        f"- Thread: {thread.thread_id}",
        f"- Outdated: {'yes' if thread.is_outdated else 'no'}",
    ]
    if location:
        lines.append(f"- Location: `{location}`")
    if severity:
        lines.append(f"- Severity: {severity}")
    if title:
        lines.append(f"- Finding: {title}")
    if pass_name:
        lines.append(f"- Pass: `{pass_name}`")
    if fingerprint:
        lines.append(f"- Fingerprint: `{fingerprint}`")
    lines.extend(("", "Marking this thread as resolved."))
    return "\n".join(lines)


class ThreadResolver:
    def __init__(self, gateway: ThreadGateway) -> None:
        self._gateway = gateway

    def resolve_threads(self, options: ResolveThreadsOptions) -> ResolveThreadsResult:
        thread_ids = normalize_thread_ids(options.thread_ids)
        if options.all_unresolved and thread_ids:
            raise ThreadSelectionError("--thread-id and --all-unresolved are mutually exclusive")
        if not options.all_unresolved and not thread_ids:
            raise ThreadSelectionError("provide --thread-id or --all-unresolved")

        target_mode: TargetMode = "all-unresolved" if options.all_unresolved else "thread-id"
        head_sha = self._gateway.get_pull_request(options.pr_number).head_sha or None
        all_threads = self._gateway.list_review_threads(options.pr_number)

        items: list[ThreadResolveItem] = []
        if options.all_unresolved:
            selected = [thread for thread in all_threads if not thread.is_resolved]
            if options.managed_only:
                selected = [thread for thread in selected if is_managed_thread(thread)]
        else:
            by_id = {thread.thread_id: thread for thread in all_threads}
            selected = [by_id[thread_id] for thread_id in thread_ids if thread_id in by_id]
            for thread_id in thread_ids:
                if thread_id not in by_id:
                    items.append(
                        ThreadResolveItem(
                            thread_id=thread_id,
                            status="failed",
                            reason="thread id not found on PR",
                        )
                    )

        for thread in selected:
            items.append(
                self._process_thread(
                    thread,
                    pr_number=options.pr_number,
                    head_sha=head_sha,
                    body_override=options.body_override,
                    dry_run=options.dry_run,
                )
            )

        result = ResolveThreadsResult(
            pr_number=options.pr_number,
            head_sha=head_sha,
            target_mode=target_mode,
            dry_run=options.dry_run,
            total_threads=len(all_threads),
            selected_threads=len(selected),
            items=tuple(items),
        )
        log_event(
            LOGGER,
            "review_threads_processed",
            pr_number=options.pr_number,
            mode=target_mode,
            dry_run=options.dry_run,
            selected=result.selected_threads,
            resolved=result.count("resolved"),
            failed=result.failed,
        )
        return result

    def _process_thread(
        self,
        thread: ReviewThread,
        *,
        pr_number: int,
        head_sha: str | None,
        body_override: str | None,
        dry_run: bool,
    ) -> ThreadResolveItem:
        path, line = thread_location(thread)
        _, title = extract_severity_and_title(thread.comments[0].body if thread.comments else None)
        if thread.is_resolved:
            return ThreadResolveItem(
                thread_id=thread.thread_id,
                status="skipped",
                reason="already resolved",
                path=path,
                line=line,
                title=title,
            )

        body = body_override or build_auto_reply_body(
            pr_number=pr_number, head_sha=head_sha, thread=thread
        )
        if dry_run:
            return ThreadResolveItem(
                thread_id=thread.thread_id,
                status="planned",
                body=body,
                path=path,
                line=line,
                title=title,
            )

        replied = False
        reply_url: str | None = None
        try:
            reply_url = self._gateway.reply_to_review_thread(thread.thread_id, body)
            replied = True
            resolved = self._gateway.resolve_review_thread(thread.thread_id)
        except Exception as exc:  # noqa: BLE001
            warn_event(
                LOGGER,
                "review_thread_failed",
                thread_id=thread.thread_id,
                replied=replied,
                error_type=type(exc).__name__,
            )
            return ThreadResolveItem(
                thread_id=thread.thread_id,
                status="failed",
                reason=str(exc).splitlines()[0] if str(exc) else type(exc).__name__,
                reply_url=reply_url,
                body=body,
                path=path,
                line=line,
                title=title,
            )

        if not resolved:
            warn_event(LOGGER, "review_thread_failed", thread_id=thread.thread_id, replied=True)
            return ThreadResolveItem(
                thread_id=thread.thread_id,
                status="replied",
                reason="resolve mutation did not report isResolved=true",
                reply_url=reply_url,
                body=body,
                path=path,
                line=line,
                title=title,
            )

        log_event(LOGGER, "review_thread_resolved", thread_id=thread.thread_id)
        return ThreadResolveItem(
            thread_id=thread.thread_id,
            status="resolved",
            reply_url=reply_url,
            body=body,
            path=path,
            line=line,
            title=title,
        )
