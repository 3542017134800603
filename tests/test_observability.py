from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timezone
import io
import logging
from pathlib import Path

import pytest

from vibereview import observability
from vibereview.observability import configure_logging, log_event, warn_event


@pytest.fixture(autouse=True)
def restore_vibereview_logger_state() -> Iterator[None]:
    logger = logging.getLogger("vibereview")
    original_handlers = list(logger.handlers)
    original_level = logger.level
    original_propagate = logger.propagate
    try:
        yield
    finally:
        for handler in logger.handlers:
            if handler not in original_handlers:
                handler.close()
        logger.handlers.clear()
        for handler in original_handlers:
            logger.addHandler(handler)
        logger.setLevel(original_level)
        logger.propagate = original_propagate


def test_configure_logging_quiet_mode_is_idempotent() -> None:
    configure_logging(verbose=None)
    configure_logging(verbose=False)
    logger = logging.getLogger("vibereview")

    assert logger.propagate is False
    assert logger.level > logging.CRITICAL
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)


def test_configure_logging_verbose_mode_is_idempotent() -> None:
    configure_logging(verbose=True)
    configure_logging(verbose="high")
    logger = logging.getLogger("vibereview")

    assert logger.level == logging.INFO
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.StreamHandler)


def test_configure_logging_low_mode_filters_to_lifecycle_events(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose="low")
    logger = logging.getLogger("vibereview.tests.low")

    logger.info("event=review_started issue_number=1")
    logger.info("event=review_attempt_started attempt=1")
    logger.info("plain_message=ignored")
    logger.info("event=")
    logger.error("event=command_failed command=git push")

    stderr = capsys.readouterr().err
    assert "event=review_started" not in stderr
    assert "event=review_attempt_started attempt=1" in stderr
    assert "plain_message=ignored" not in stderr
    assert all(not line.endswith("event=") for line in stderr.splitlines())
    assert "event=command_failed command=git push" in stderr


def test_configure_logging_writes_utc_daily_file(tmp_path: Path) -> None:
    configure_logging(verbose="high", state_dir=tmp_path)
    logger = logging.getLogger("vibereview.tests.file")
    log_event(logger, "review_started", issue_number=2)

    date_key = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    log_path = tmp_path / "logs" / f"{date_key}.log"
    assert log_path.exists()
    assert "event=review_started issue_number=2" in log_path.read_text(encoding="utf-8")


def test_configure_logging_rejects_unknown_mode() -> None:
    with pytest.raises(ValueError, match="Unsupported verbose mode"):
        configure_logging(verbose="noisy")


def test_daily_file_handler_reports_unwritable_dir(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    handler = observability._DailyLogFileHandler(blocker / "logs")
    called: dict[str, object] = {}
    monkeypatch.setattr(handler, "handleError", lambda record: called.setdefault("record", record))

    record = logging.LogRecord(
        name="vibereview.tests.observability",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="event=review_started issue_number=1",
        args=(),
        exc_info=None,
    )
    handler.emit(record)
    handler.close()
    assert "record" in called


def test_daily_file_handler_switches_file_on_date_change(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    dates = iter(["2026-03-01", "2026-03-01", "2026-03-02"])
    monkeypatch.setattr(observability, "_utc_date_key", lambda: next(dates))
    handler = observability._DailyLogFileHandler(tmp_path / "logs")
    handler.setFormatter(logging.Formatter("%(message)s"))

    for message in ("event=first", "event=second"):
        handler.emit(
            logging.LogRecord("vibereview.t", logging.INFO, __file__, 1, message, (), None)
        )
    handler.close()

    assert (tmp_path / "logs" / "2026-03-01.log").read_text(encoding="utf-8") == "event=first\n"
    assert (tmp_path / "logs" / "2026-03-02.log").read_text(encoding="utf-8") == "event=second\n"


def test_log_event_formats_and_normalizes_fields() -> None:
    logger = logging.getLogger("vibereview.tests.observability")
    logger.handlers.clear()
    stream = io.StringIO()
    logger.addHandler(logging.StreamHandler(stream))
    logger.setLevel(logging.INFO)
    logger.propagate = False

    log_event(
        logger,
        "test_event",
        b=2,
        a="multi\nline value",
        none_value=None,
        bool_value=True,
        empty="   ",
        long_text="x" * 121,
        complex_value={"k": "v"},
        with_equals="a=b",
    )
    warn_event(logger, "test_warning", attempt=3)

    first, second = stream.getvalue().strip().splitlines()
    assert first.startswith("event=test_event ")
    # sorted field order
    assert first.index("a=") < first.index("b=")
    assert 'a="multi line value"' in first
    assert "none_value=null" in first
    assert "bool_value=true" in first
    assert "empty=<empty>" in first
    assert "complex_value=<dict>" in first
    assert f"long_text={'x' * 120}..." in first
    assert 'with_equals="a=b"' in first
    assert second == "event=test_warning attempt=3"
    logger.handlers.clear()


def test_review_log_context_stamps_nested_fields() -> None:
    logger = logging.getLogger("vibereview.tests.context")
    logger.handlers.clear()
    stream = io.StringIO()
    logger.addHandler(logging.StreamHandler(stream))
    logger.setLevel(logging.INFO)
    logger.propagate = False

    with observability.review_log_context(issue_number=42, pr_number=None):
        log_event(logger, "outer")
        with observability.review_log_context(pr_number=9):
            log_event(logger, "inner", attempt=1)
            log_event(logger, "override", issue_number=7)
    log_event(logger, "after")

    assert stream.getvalue().splitlines() == [
        "event=outer issue_number=42",
        "event=inner attempt=1 issue_number=42 pr_number=9",
        "event=override issue_number=7 pr_number=9",
        "event=after",
    ]
    logger.handlers.clear()


def test_format_event_handles_paths_and_sequences() -> None:
    message = observability.format_event(
        "autopush_completed",
        {
            "changed_files": ("a.py", "b.py"),
            "many": list(range(7)),
            "path": Path("/tmp/state/logs"),
            "sources": {"thread", "current"},
            "empty": [],
        },
    )

    assert message == (
        "event=autopush_completed changed_files=a.py,b.py empty=<empty> "
        "many=0,1,2,3,4,+2 path=/tmp/state/logs sources=current,thread"
    )
    assert observability.event_name(message) == "autopush_completed"
    assert observability.event_name("event=") is None
    assert observability.event_name("plain") is None
