from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
import sys
from typing import Final, Literal, cast


_LOGGER_NAME: Final[str] = "vibereview"
_MAX_VALUE_LEN: Final[int] = 120
_MAX_SEQUENCE_ITEMS: Final[int] = 5
_LOG_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s %(message)s"
_LOW_VERBOSITY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "review_attempt_started",
        "review_attempt_failed",
        "review_terminated",
        "review_gate_skipped",
        "review_gate_published",
        "agent_resume_fallback",
        "followup_issue_created",
        "followup_issue_updated",
        "followup_issue_closed",
        "followup_issue_close_failed",
        "review_thread_resolved",
        "review_thread_failed",
        "autopush_completed",
    }
)

VerboseMode = Literal["low", "high"]

_REVIEW_CONTEXT: ContextVar[tuple[tuple[str, object], ...]] = ContextVar(
    "vibereview_review_context", default=()
)


def configure_logging(
    verbose: bool | str | None,
    *,
    state_dir: Path | None = None,
) -> None:
    """Rebuild the handlers of the ``vibereview`` logger.

    ``None``/``False`` silences the package, ``"low"`` keeps lifecycle events
    and warnings, ``True``/``"high"`` keeps everything. With ``state_dir`` the
    same lines are also appended to ``<state_dir>/logs/<UTC date>.log``.
    """

    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    mode = _normalize_verbose_mode(verbose)

    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if state_dir is not None:
        handlers.append(_DailyLogFileHandler(state_dir / "logs"))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        if mode == "low":
            handler.addFilter(_LowVerbosityFilter())
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)


@contextmanager
def review_log_context(**fields: object) -> Iterator[None]:
    """Stamp every event logged inside the block with ``fields``.

    Explicit keyword fields passed to ``log_event`` win over context fields.
    """

    merged = dict(_REVIEW_CONTEXT.get())
    merged.update((key, value) for key, value in fields.items() if value is not None)
    token = _REVIEW_CONTEXT.set(tuple(merged.items()))
    try:
        yield
    finally:
        _REVIEW_CONTEXT.reset(token)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(format_event(event, fields))


def warn_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.warning(format_event(event, fields))


def format_event(event: str, fields: dict[str, object]) -> str:
    combined = dict(_REVIEW_CONTEXT.get())
    combined.update(fields)
    parts = [f"event={_format_value(event)}"]
    parts.extend(f"{key}={_format_value(combined[key])}" for key in sorted(combined))
    return " ".join(parts)


def event_name(message: str) -> str | None:
    head = message.split(" ", 1)[0]
    if not head.startswith("event=") or head == "event=":
        return None
    return head[len("event=") :]


def _format_value(value: object) -> str:
    if value is None:
        text = "null"
    elif isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, int | float):
        text = str(value)
    elif isinstance(value, Path):
        text = value.as_posix()
    elif isinstance(value, str):
        text = " ".join(value.split()) or "<empty>"
    elif isinstance(value, list | tuple | set | frozenset):
        items = sorted(str(item) for item in value) if isinstance(value, set | frozenset) else [
            str(item) for item in value
        ]
        text = ",".join(items[:_MAX_SEQUENCE_ITEMS])
        if len(items) > _MAX_SEQUENCE_ITEMS:
            text += f",+{len(items) - _MAX_SEQUENCE_ITEMS}"
        text = text or "<empty>"
    else:
        text = f"<{type(value).__name__}>"

    if len(text) > _MAX_VALUE_LEN:
        text = f"{text[:_MAX_VALUE_LEN]}..."
    if any(ch.isspace() for ch in text) or "=" in text:
        return json.dumps(text)
    return text


def _normalize_verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None:
        return None
    if isinstance(verbose, bool):
        return "high" if verbose else None
    normalized = verbose.strip().lower()
    if normalized in {"low", "high"}:
        return cast(VerboseMode, normalized)
    raise ValueError(f"Unsupported verbose mode: {verbose!r}")


class _LowVerbosityFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        return event_name(record.getMessage()) in _LOW_VERBOSITY_EVENTS


class _DailyLogFileHandler(logging.FileHandler):
    """Append to ``<logs_dir>/<YYYY-MM-DD>.log``, switching files at UTC midnight."""

    def __init__(self, logs_dir: Path) -> None:
        self._logs_dir = logs_dir
        self._date_key = _utc_date_key()
        super().__init__(self._path_for(self._date_key), encoding="utf-8", delay=True)

    def emit(self, record: logging.LogRecord) -> None:
        date_key = _utc_date_key()
        if date_key != self._date_key:
            self.acquire()
            try:
                self.close()
                self._date_key = date_key
                self.baseFilename = os.path.abspath(self._path_for(date_key))
            finally:
                self.release()
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self.handleError(record)
            return
        super().emit(record)

    def _path_for(self, date_key: str) -> Path:
        return self._logs_dir / f"{date_key}.log"


def _utc_date_key() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")
