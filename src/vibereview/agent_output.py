from __future__ import annotations

from collections.abc import Iterator
import json
import re
from typing import cast

from vibereview.models import (
    AGENT_OUTPUT_VERSION,
    FINDING_KINDS,
    REVIEW_PASS_ORDER,
    SEVERITIES,
    AgentOutput,
    AutofixResult,
    Finding,
    FindingKind,
    PassName,
    ReviewPassResult,
    Severity,
)


SAMPLE_LIMIT = 500

_FENCED_BLOCK_PATTERN = re.compile(r"```[A-Za-z0-9_+-]*[ \t]*\r?\n?(.*?)```", re.DOTALL)


class SchemaMismatchError(ValueError):
    """No JSON candidate in the agent output satisfied the review schema."""

    def __init__(self, message: str, *, sample: str) -> None:
        super().__init__(message)
        self.sample = sample


class _InvalidCandidate(ValueError):
    pass


def parse_agent_output(raw: str) -> AgentOutput:
    """Extract the first valid review result from free-form agent text.

    Candidates are tried in order: the whole text, each line, fenced code
    blocks, then the span from the first ``{`` to the last ``}``. Every
    candidate is also searched for nested values, including strings that
    themselves hold JSON.
    """

    last_problem: str | None = None
    for candidate in collect_json_candidates(raw):
        for value in (candidate, *collect_nested_values(candidate)):
            try:
                return validate_agent_output(value)
            except _InvalidCandidate as exc:
                last_problem = str(exc)

    sample = raw.strip()[:SAMPLE_LIMIT]
    detail = f" ({last_problem})" if last_problem else ""
    raise SchemaMismatchError(
        f"review agent output schema mismatch{detail}. Sample output: {sample}",
        sample=sample,
    )


def collect_json_candidates(raw: str) -> list[object]:
    candidates: list[object] = []

    whole = _parse_json_candidate(raw)
    if whole is not None:
        candidates.append(whole)

    for line in raw.splitlines():
        parsed = _parse_json_candidate(line)
        if parsed is not None:
            candidates.append(parsed)

    for match in _FENCED_BLOCK_PATTERN.finditer(raw):
        parsed = _parse_json_candidate(match.group(1))
        if parsed is not None:
            candidates.append(parsed)

    first_brace = raw.find("{")
    last_brace = raw.rfind("}")
    if first_brace >= 0 and last_brace > first_brace:
        parsed = _parse_json_candidate(raw[first_brace : last_brace + 1])
        if parsed is not None:
            candidates.append(parsed)

    return candidates


def collect_nested_values(value: object) -> list[object]:
    return list(_iter_nested_values(value))


def _iter_nested_values(value: object) -> Iterator[object]:
    if isinstance(value, str):
        # A JSON-encoded string is decoded once; its contents are not searched further.
        parsed = _parse_json_candidate(value)
        if parsed is not None:
            yield parsed
        return
    if isinstance(value, list):
        for entry in value:
            yield entry
            yield from _iter_nested_values(entry)
        return
    if isinstance(value, dict):
        for entry in value.values():
            yield entry
            yield from _iter_nested_values(entry)


def _parse_json_candidate(value: str) -> object | None:
    text = value.strip()
    if not text:
        return None
    try:
        return cast(object, json.loads(text))
    except json.JSONDecodeError:
        return None
    except RecursionError:
        return None


def validate_agent_output(value: object) -> AgentOutput:
    payload = _require_object(value, "agent output")

    version = payload.get("version")
    if not _is_int(version) or version != AGENT_OUTPUT_VERSION:
        raise _InvalidCandidate(f"version must be {AGENT_OUTPUT_VERSION}")
    run_id = _require_text(payload, "run_id")

    raw_passes = payload.get("passes")
    if not isinstance(raw_passes, list):
        raise _InvalidCandidate("passes must be a list")
    passes = tuple(_parse_pass(item) for item in raw_passes)
    names = [item.name for item in passes]
    if len(names) != len(REVIEW_PASS_ORDER) or set(names) != set(REVIEW_PASS_ORDER):
        raise _InvalidCandidate(
            "passes must include exactly once: " + ", ".join(REVIEW_PASS_ORDER)
        )

    autofix = _parse_autofix(payload.get("autofix"))
    return AgentOutput(
        version=AGENT_OUTPUT_VERSION,
        run_id=run_id,
        passes=passes,
        autofix=autofix,
    )


def _parse_pass(value: object) -> ReviewPassResult:
    payload = _require_object(value, "pass")
    name = _require_pass_name(payload.get("name"), "pass name")
    summary = _require_text(payload, "summary")
    raw_findings = payload.get("findings")
    if not isinstance(raw_findings, list):
        raise _InvalidCandidate(f"pass {name} findings must be a list")
    return ReviewPassResult(
        name=name,
        summary=summary,
        findings=tuple(_parse_finding(item) for item in raw_findings),
    )


def _parse_finding(value: object) -> Finding:
    payload = _require_object(value, "finding")
    severity = payload.get("severity")
    if severity not in SEVERITIES:
        raise _InvalidCandidate("finding severity must be one of P0|P1|P2|P3")

    file_value = payload.get("file")
    if file_value is not None and (not isinstance(file_value, str) or not file_value):
        raise _InvalidCandidate("finding file must be a non-empty string or null")

    line_value = payload.get("line")
    if line_value is not None and (not _is_int(line_value) or line_value < 1):
        raise _InvalidCandidate("finding line must be a positive integer or null")

    kind_value = payload.get("kind")
    if kind_value is not None and kind_value not in FINDING_KINDS:
        raise _InvalidCandidate("finding kind is not recognized")

    return Finding(
        id=_require_text(payload, "id"),
        pass_name=_require_pass_name(payload.get("pass"), "finding pass"),
        severity=cast(Severity, severity),
        title=_require_text(payload, "title"),
        body=_require_text(payload, "body"),
        file=file_value,
        line=cast(int | None, line_value),
        kind=cast(FindingKind | None, kind_value),
    )


def _parse_autofix(value: object) -> AutofixResult:
    payload = _require_object(value, "autofix")
    applied = payload.get("applied")
    if not isinstance(applied, bool):
        raise _InvalidCandidate("autofix.applied must be a boolean")

    summary = payload.get("summary")
    if summary is not None and not isinstance(summary, str):
        raise _InvalidCandidate("autofix.summary must be a string or null")

    raw_changed = payload.get("changed_files", [])
    if not isinstance(raw_changed, list):
        raise _InvalidCandidate("autofix.changed_files must be a list")
    changed: list[str] = []
    for item in raw_changed:
        if not isinstance(item, str) or not item:
            raise _InvalidCandidate("autofix.changed_files entries must be non-empty strings")
        changed.append(item)

    return AutofixResult(applied=applied, summary=summary, changed_files=tuple(changed))


def _require_object(value: object, label: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise _InvalidCandidate(f"{label} must be an object")
    return cast(dict[str, object], value)


def _require_text(payload: dict[str, object], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise _InvalidCandidate(f"{key} must be a non-empty string")
    return value


def _require_pass_name(value: object, label: str) -> PassName:
    if value not in REVIEW_PASS_ORDER:
        raise _InvalidCandidate(f"{label} must be one of: " + "|".join(REVIEW_PASS_ORDER))
    return cast(PassName, value)


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
