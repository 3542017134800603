from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
import logging
import re
import time

from vibereview.observability import log_event
from vibereview.shell import CommandError, run


LOGGER = logging.getLogger("vibereview.retry")

DEFAULT_BACKOFF_SECONDS: tuple[float, ...] = (0.25, 0.75, 1.5)

_TRANSIENT_SUBSTRINGS = (
    "error connecting to",
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "temporary failure",
    "could not resolve host",
    "tls handshake",
    "unexpected eof",
)
# Failures where the request never reached the server; safe to repeat even for mutations.
_PRE_REQUEST_SUBSTRINGS = (
    "error connecting to",
    "connection refused",
    "could not resolve host",
    "temporary failure in name resolution",
    "tls handshake",
)
_HTTP_5XX_PATTERN = re.compile(r"\b(?:http\s*)?5(?:00|02|03|04)\b")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = len(DEFAULT_BACKOFF_SECONDS)
    backoff_seconds: tuple[float, ...] = DEFAULT_BACKOFF_SECONDS

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("RetryPolicy.attempts must be >= 1")
        if any(delay < 0 for delay in self.backoff_seconds):
            raise ValueError("RetryPolicy.backoff_seconds must be non-negative")

    def delay_for(self, attempt: int) -> float:
        if not self.backoff_seconds:
            return 0.0
        index = min(attempt - 1, len(self.backoff_seconds) - 1)
        return self.backoff_seconds[index]


NO_RETRY = RetryPolicy(attempts=1, backoff_seconds=())


def error_text(error: BaseException) -> str:
    parts: list[str] = []
    message = str(error).strip()
    if message:
        parts.append(message)
    if isinstance(error, CommandError):
        for extra in (error.stderr, error.stdout):
            stripped = extra.strip()
            if stripped and stripped not in message:
                parts.append(stripped)
    return "\n".join(parts)


def is_retryable_error(error: BaseException, *, idempotent: bool = True) -> bool:
    text = error_text(error).lower()
    if not text:
        return False
    if not idempotent:
        return any(marker in text for marker in _PRE_REQUEST_SUBSTRINGS)
    if any(marker in text for marker in _TRANSIENT_SUBSTRINGS):
        return True
    return _HTTP_5XX_PATTERN.search(text) is not None


def run_with_retry(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    policy: RetryPolicy | None = None,
    idempotent: bool = True,
    sleep: Callable[[float], None] = time.sleep,
    runner: Callable[..., str] = run,
) -> str:
    effective = policy or RetryPolicy()
    last_error: CommandError | None = None
    for attempt in range(1, effective.attempts + 1):
        try:
            return runner(argv, cwd=cwd, input_text=input_text)
        except CommandError as exc:
            last_error = exc
            can_retry = attempt < effective.attempts and is_retryable_error(
                exc, idempotent=idempotent
            )
            if not can_retry:
                raise
            delay = effective.delay_for(attempt)
            log_event(
                LOGGER,
                "command_retry_scheduled",
                command=" ".join(argv[:3]),
                attempt=attempt,
                max_attempts=effective.attempts,
                delay_seconds=delay,
            )
            if delay > 0:
                sleep(delay)
    assert last_error is not None
    raise last_error
