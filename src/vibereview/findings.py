from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
import hashlib
import posixpath
import re
from typing import Literal, cast

from vibereview.models import (
    REVIEW_PASS_ORDER,
    Finding,
    PassName,
    ReviewThread,
    ReviewThreadComment,
    Severity,
)


FindingSource = Literal["current", "thread", "followup"]

FINGERPRINT_MARKER_PREFIX = "<!-- vibe:fingerprint:"
MANAGED_REPLY_SENTINEL = "Resolved via `vibe review threads resolve`."
EXTERNAL_AUTOMATION_AUTHORS = frozenset(
    {"chatgpt-codex-connector", "chatgpt-codex-connector[bot]"}
)

_FINGERPRINT_PATTERN = re.compile(r"<!--\s*vibe:fingerprint:([a-f0-9]+)\s*-->", re.IGNORECASE)
_PASS_PATTERN = re.compile(r"\bPass:\s*`([^`]+)`", re.IGNORECASE)
_SEVERITY_TITLE_PATTERN = re.compile(r"\*\*\[(P[0-3])\]\s+([^*]+?)\*\*", re.IGNORECASE)
_BADGE_TITLE_PATTERN = re.compile(r"\*\*.*?\s([A-Za-z].+?)\*\*")
_MARKDOWN_IMAGE_PATTERN = re.compile(r"!\[[^\]]*\]\([^)]*\)")
_HTML_TAG_PATTERN = re.compile(r"<[^>]+>")
_MARKDOWN_SYMBOL_PATTERN = re.compile(r"[*_`>#]")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_FOLLOWUP_ENTRY_PATTERN = re.compile(
    r"^- \[(P[0-3])\] `([a-z]+)` (.+?)(?: @ `([^`]+)`)?\s*"
    r"<!--\s*vibe:fingerprint:([a-f0-9]+)\s*-->\s*$"
)


def normalize_finding_text(value: str) -> str:
    return _WHITESPACE_PATTERN.sub(" ", value.strip().lower())


def compute_fingerprint(finding: Finding) -> str:
    """Stable dedup key for a finding across runs, threads and follow-up issues.

    Located findings key on pass, file, line and title. Findings without a
    location add a digest of the body so distinct findings sharing a title
    stay distinct. Severity is excluded so a re-graded finding keeps its key.
    """

    title = normalize_finding_text(finding.title)
    path = _fingerprint_path(finding.file)
    if path and finding.line:
        raw = "|".join(("v2", finding.pass_name, path, str(finding.line), title))
    else:
        body_digest = hashlib.sha1(
            normalize_finding_text(finding.body).encode("utf-8")
        ).hexdigest()
        raw = "|".join(("v2", finding.pass_name, path, title, body_digest))
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


def _fingerprint_path(file: str | None) -> str:
    # "./src/a.py", "src\\a.py" and "src/a.py" must share one key.
    if not file:
        return ""
    return to_repo_relative_path(file) or file.strip()


def fingerprint_marker(fingerprint: str) -> str:
    return f"{FINGERPRINT_MARKER_PREFIX}{fingerprint} -->"


def extract_fingerprint(body: str | None) -> str | None:
    if not body:
        return None
    match = _FINGERPRINT_PATTERN.search(body)
    if match is None:
        return None
    return match.group(1).strip().lower()


def extract_fingerprints(body: str | None) -> set[str]:
    if not body:
        return set()
    return {match.group(1).strip().lower() for match in _FINGERPRINT_PATTERN.finditer(body)}


def extract_pass(body: str | None) -> str | None:
    if not body:
        return None
    match = _PASS_PATTERN.search(body)
    if match is None:
        return None
    value = match.group(1).strip()
    return value or None


def _cleanup_markdown_line(line: str) -> str:
    text = _MARKDOWN_IMAGE_PATTERN.sub(" ", line)
    text = _HTML_TAG_PATTERN.sub(" ", text)
    text = _MARKDOWN_SYMBOL_PATTERN.sub(" ", text)
    return _WHITESPACE_PATTERN.sub(" ", text).strip()


def extract_severity_and_title(body: str | None) -> tuple[Severity | None, str | None]:
    if not body:
        return None, None
    lines = [line.strip() for line in body.splitlines()]

    for line in lines:
        if not line:
            continue
        severity_title = _SEVERITY_TITLE_PATTERN.search(line)
        if severity_title is not None:
            severity = cast(Severity, severity_title.group(1).upper())
            return severity, _cleanup_markdown_line(severity_title.group(2))
        badge = _BADGE_TITLE_PATTERN.search(line)
        if badge is not None:
            cleaned = _cleanup_markdown_line(badge.group(1))
            if cleaned:
                return None, cleaned

    for line in lines:
        cleaned = _cleanup_markdown_line(line)
        if not cleaned or cleaned.lower().startswith("pass:"):
            continue
        return None, cleaned
    return None, None


def build_inline_comment_body(finding: Finding, fingerprint: str) -> str:
    return "\n\n".join(
        (
            f"**[{finding.severity}] {finding.title}**",
            finding.body,
            f"Pass: `{finding.pass_name}`",
            fingerprint_marker(fingerprint),
        )
    )


def to_repo_relative_path(raw_path: str, *, repo_root: str | None = None) -> str | None:
    trimmed = raw_path.strip()
    if not trimmed:
        return None
    normalized = trimmed.replace("\\", "/")
    if normalized.startswith("/"):
        if repo_root is None:
            return None
        relative = posixpath.relpath(posixpath.normpath(normalized), repo_root.replace("\\", "/"))
        if relative == "." or relative.startswith(".."):
            return None
        return relative
    if re.match(r"^[A-Za-z]:/", normalized):
        return None
    while normalized.startswith("./"):
        normalized = normalized[2:]
    if not normalized or normalized.startswith("../"):
        return None
    return normalized


def with_repo_relative_paths(
    findings: Iterable[Finding], *, repo_root: str | None
) -> tuple[Finding, ...]:
    out: list[Finding] = []
    for finding in findings:
        path = to_repo_relative_path(finding.file, repo_root=repo_root) if finding.file else None
        out.append(finding if path is None or path == finding.file else replace(finding, file=path))
    return tuple(out)


# Threads


def _normalize_login(login: str | None) -> str | None:
    if not login:
        return None
    normalized = login.strip().lower()
    return normalized or None


def is_external_automation_author(login: str | None) -> bool:
    normalized = _normalize_login(login)
    return normalized is not None and normalized in EXTERNAL_AUTOMATION_AUTHORS


def is_managed_reply(body: str | None) -> bool:
    return bool(body) and MANAGED_REPLY_SENTINEL in (body or "")


def is_managed_thread(thread: ReviewThread) -> bool:
    """True when the thread opens with a fingerprint marker and only automation replied.

    Other tools' bots may reply on a managed thread, but a thread they opened
    without a marker is never ours to resolve.
    """

    if not thread.comments:
        return False
    if extract_fingerprint(thread.comments[0].body) is None:
        return False
    for comment in thread.comments[1:]:
        if not is_managed_reply(comment.body) and not is_external_automation_author(
            comment.author_login
        ):
            return False
    return True


def thread_location(thread: ReviewThread) -> tuple[str | None, int | None]:
    detail: ReviewThreadComment | None = thread.comments[0] if thread.comments else None
    path = thread.path or (detail.path if detail is not None else None)
    line = thread.line
    if line is None and detail is not None:
        line = detail.line if detail.line is not None else detail.original_line
    return path, line


@dataclass
class TrackedFinding:
    fingerprint: str
    pass_name: str
    severity: Severity | None
    title: str
    file: str | None = None
    line: int | None = None
    kind: str | None = None
    sources: set[FindingSource] = field(default_factory=set)
    thread_ids: list[str] = field(default_factory=list)
    finding: Finding | None = None


@dataclass(frozen=True)
class MergedFindings:
    findings: tuple[TrackedFinding, ...]
    unmanaged_unresolved_threads: int = 0

    @property
    def count(self) -> int:
        return len(self.findings)

    @property
    def fingerprints(self) -> frozenset[str]:
        return frozenset(item.fingerprint for item in self.findings)

    def is_empty(self) -> bool:
        return not self.findings


@dataclass(frozen=True)
class ThreadLifecycleTotals:
    observed: int
    unresolved: int
    resolved: int


def tracked_from_finding(finding: Finding) -> TrackedFinding:
    return TrackedFinding(
        fingerprint=compute_fingerprint(finding),
        pass_name=finding.pass_name,
        severity=finding.severity,
        title=finding.title,
        file=finding.file,
        line=finding.line,
        kind=finding.kind,
        sources={"current"},
        finding=finding,
    )


def tracked_from_thread(thread: ReviewThread) -> TrackedFinding | None:
    if not thread.comments:
        return None
    detail = thread.comments[0]
    fingerprint = extract_fingerprint(detail.body)
    if fingerprint is None:
        return None
    severity, title = extract_severity_and_title(detail.body)
    path, line = thread_location(thread)
    return TrackedFinding(
        fingerprint=fingerprint,
        pass_name=extract_pass(detail.body) or "unknown",
        severity=severity,
        title=title or f"review thread {thread.thread_id}",
        file=path,
        line=line,
        sources={"thread"},
        thread_ids=[thread.thread_id],
    )


def format_followup_entry(item: TrackedFinding) -> str:
    severity = item.severity or "P3"
    title = _WHITESPACE_PATTERN.sub(" ", item.title).strip()
    location = ""
    if item.file and item.line:
        location = f" @ `{item.file}:{item.line}`"
    elif item.file:
        location = f" @ `{item.file}`"
    return f"- [{severity}] `{item.pass_name}` {title}{location} {fingerprint_marker(item.fingerprint)}"


def parse_followup_entries(body: str | None) -> list[TrackedFinding]:
    if not body:
        return []
    out: list[TrackedFinding] = []
    seen: set[str] = set()
    for raw_line in body.splitlines():
        match = _FOLLOWUP_ENTRY_PATTERN.match(raw_line.strip())
        if match is None:
            continue
        fingerprint = match.group(5).lower()
        if fingerprint in seen:
            continue
        seen.add(fingerprint)
        file, line = _split_location(match.group(4))
        out.append(
            TrackedFinding(
                fingerprint=fingerprint,
                pass_name=match.group(2),
                severity=cast(Severity, match.group(1).upper()),
                title=match.group(3).strip(),
                file=file,
                line=line,
                sources={"followup"},
            )
        )
    return out


def _split_location(location: str | None) -> tuple[str | None, int | None]:
    if not location:
        return None, None
    head, sep, tail = location.rpartition(":")
    if sep and head and tail.isdigit() and int(tail) > 0:
        return head, int(tail)
    return location, None


def merge_unresolved(
    *,
    current_findings: Sequence[Finding],
    threads: Sequence[ReviewThread],
    followup_body: str | None = None,
) -> MergedFindings:
    """Union of current findings, unresolved fingerprinted threads and follow-up entries.

    A follow-up entry survives only while its fingerprint is still reported by
    the current run or still sits on an unresolved thread. Threads without a
    fingerprint are never merged; they are counted separately.
    """

    merged: dict[str, TrackedFinding] = {}
    for finding in current_findings:
        tracked = tracked_from_finding(finding)
        existing = merged.get(tracked.fingerprint)
        if existing is None:
            merged[tracked.fingerprint] = tracked
        else:
            existing.sources.add("current")

    unmanaged = 0
    for thread in threads:
        if thread.is_resolved:
            continue
        tracked = tracked_from_thread(thread)
        if tracked is None:
            unmanaged += 1
            continue
        existing = merged.get(tracked.fingerprint)
        if existing is None:
            merged[tracked.fingerprint] = tracked
            continue
        existing.sources.add("thread")
        existing.thread_ids.extend(tracked.thread_ids)

    for entry in parse_followup_entries(followup_body):
        existing = merged.get(entry.fingerprint)
        if existing is not None:
            existing.sources.add("followup")

    ordered = sorted(merged.values(), key=_sort_key)
    return MergedFindings(findings=tuple(ordered), unmanaged_unresolved_threads=unmanaged)


def _sort_key(item: TrackedFinding) -> tuple[int, int, str, int, str]:
    severity_rank = int(item.severity[1]) if item.severity else 9
    try:
        pass_rank = REVIEW_PASS_ORDER.index(cast(PassName, item.pass_name))
    except ValueError:
        pass_rank = len(REVIEW_PASS_ORDER)
    return (severity_rank, pass_rank, item.file or "", item.line or 0, item.fingerprint)


def auto_resolvable_threads(
    *, current_findings: Sequence[Finding], threads: Iterable[ReviewThread]
) -> list[ReviewThread]:
    """Managed, unresolved threads the loop may close after a clean run."""

    if current_findings:
        return []
    return [thread for thread in threads if not thread.is_resolved and is_managed_thread(thread)]


def summarize_thread_lifecycle(
    threads: Iterable[ReviewThread], *, managed_only: bool = True
) -> ThreadLifecycleTotals:
    status: dict[str, tuple[bool, bool]] = {}
    for thread in threads:
        if managed_only and not is_managed_thread(thread):
            continue
        if not thread.comments:
            continue
        fingerprint = extract_fingerprint(thread.comments[0].body)
        key = f"fingerprint:{fingerprint}" if fingerprint else f"thread:{thread.thread_id}"
        unresolved, resolved = status.get(key, (False, False))
        if thread.is_resolved:
            resolved = True
        else:
            unresolved = True
        status[key] = (unresolved, resolved)

    unresolved_count = sum(1 for unresolved, _ in status.values() if unresolved)
    resolved_count = sum(
        1 for unresolved, resolved in status.values() if resolved and not unresolved
    )
    return ThreadLifecycleTotals(
        observed=len(status),
        unresolved=unresolved_count,
        resolved=resolved_count,
    )
