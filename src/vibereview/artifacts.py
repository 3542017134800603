from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
import json
import logging
from typing import cast

from vibereview.models import AutofixResult, Finding, ReviewPassResult
from vibereview.observability import log_event


LOGGER = logging.getLogger("vibereview.artifacts")


def issue_review_dir(state_dir: Path, issue_number: int) -> Path:
    return state_dir / "reviews" / str(issue_number)


def postflight_path(state_dir: Path) -> Path:
    return state_dir / "artifacts" / "postflight.json"


def format_finding_line(finding: Finding) -> str:
    if finding.file and finding.line:
        location = f" ({finding.file}:{finding.line})"
    elif finding.file:
        location = f" ({finding.file})"
    else:
        location = ""
    return f"- [{finding.severity}] {finding.title}{location}"


def append_pass_run_log(
    state_dir: Path,
    *,
    issue_number: int,
    attempt: int,
    max_attempts: int,
    run_id: str,
    result: ReviewPassResult,
    autofix: AutofixResult,
    now: Callable[[], datetime] | None = None,
) -> Path:
    directory = issue_review_dir(state_dir, issue_number)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{result.name}.md"
    timestamp = (now or _utc_now)().astimezone(timezone.utc).isoformat()

    lines: list[str] = []
    if not path.exists():
        lines.append(f"# {result.name.capitalize()} Pass")
    lines.extend(
        [
            "",
            f"## Run {timestamp}",
            f"- run_id: {run_id}",
            f"- attempt: {attempt}/{max_attempts}",
            f"- findings: {len(result.findings)}",
            f"- autofix_applied: {'yes' if autofix.applied else 'no'}",
        ]
    )
    if autofix.changed_files:
        lines.append(f"- changed_files: {', '.join(autofix.changed_files)}")
    lines.extend(["", "### Summary", result.summary, "", "### Findings"])
    if result.findings:
        lines.extend(format_finding_line(finding) for finding in result.findings)
    else:
        lines.append("- none")

    with path.open("a", encoding="utf-8") as fh:
        fh.write("\n".join(lines) + "\n")
    return path


def append_summary_to_postflight(
    state_dir: Path, *, summary: str, issue_number: int, branch: str
) -> Path:
    """Record the review summary as a ``comment_append`` tracker update."""

    path = postflight_path(state_dir)
    root: dict[str, object] = {}
    if path.exists():
        parsed = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(parsed, dict):
            raise ValueError(f"postflight artifact must be a JSON object: {path}")
        root = cast(dict[str, object], parsed)

    work_raw = root.get("work")
    work = cast(dict[str, object], work_raw) if isinstance(work_raw, dict) else {}
    if work.get("issue_id") in (None, ""):
        work["issue_id"] = issue_number
    branch_value = work.get("branch")
    if not isinstance(branch_value, str) or not branch_value.strip():
        work["branch"] = branch
    root["work"] = work

    updates_raw = root.get("tracker_updates")
    updates = list(updates_raw) if isinstance(updates_raw, list) else []
    updates.append({"type": "comment_append", "body": summary})
    root["tracker_updates"] = updates

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(root, indent=2) + "\n", encoding="utf-8")
    log_event(LOGGER, "postflight_summary_appended", path=str(path), updates=len(updates))
    return path


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
