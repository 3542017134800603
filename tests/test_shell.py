from __future__ import annotations

from pathlib import Path
import subprocess

import pytest

from vibereview.observability import configure_logging
from vibereview.shell import CommandError, _preview, run, run_process


def test_run_success(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    called: dict[str, object] = {}

    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        called["args"] = args
        called["kwargs"] = kwargs
        return subprocess.CompletedProcess(args=["echo"], returncode=0, stdout="ok", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)

    out = run(["echo", "hello"], cwd=tmp_path, input_text="hi")

    assert out == "ok"
    kwargs = called["kwargs"]
    assert isinstance(kwargs, dict)
    assert kwargs["cwd"] == str(tmp_path)
    assert kwargs["input"] == "hi"
    assert kwargs["check"] is False


def test_run_failure_raises(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args, kwargs
        return subprocess.CompletedProcess(args=["bad"], returncode=2, stdout="out", stderr="err")

    monkeypatch.setattr(subprocess, "run", fake_run)
    configure_logging(verbose=True)

    with pytest.raises(CommandError, match="Command failed") as exc_info:
        run(["bad"])
    assert exc_info.value.exit_code == 2
    assert exc_info.value.stderr == "err"
    assert exc_info.value.argv == ("bad",)
    stderr = capsys.readouterr().err
    assert "event=command_failed command=bad exit_code=2" in stderr
    assert "stderr=err" in stderr
    assert "stdout=out" in stderr


def test_run_without_check_returns_stdout(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        subprocess,
        "run",
        lambda *a, **k: subprocess.CompletedProcess(args=["x"], returncode=1, stdout="partial", stderr=""),
    )

    assert run(["x"], check=False) == "partial"


def test_run_process_reports_exit_without_raising(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        subprocess,
        "run",
        lambda *a, **k: subprocess.CompletedProcess(args=["x"], returncode=3, stdout=None, stderr="boom"),
    )

    result = run_process(["x"])

    assert result.ok is False
    assert result.exit_code == 3
    assert result.stdout == ""
    assert result.stderr == "boom"


def test_run_process_wraps_missing_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args, kwargs
        raise FileNotFoundError("no such file: codex")

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(CommandError, match="could not start") as exc_info:
        run_process(["codex", "exec"])
    assert exc_info.value.exit_code is None
    assert "no such file" in exc_info.value.stderr


def test_preview_handles_empty_and_truncation() -> None:
    assert _preview("") == "<empty>"
    assert _preview("x" * 10, limit=4) == "xxxx..."
    assert _preview("a\nb") == "a\\nb"
