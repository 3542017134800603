from __future__ import annotations

from pathlib import Path
import runpy
import sys

import pytest


def _run_module(monkeypatch: pytest.MonkeyPatch, *argv: str) -> int | str | None:
    monkeypatch.setattr(sys, "argv", ["vibe-review", *argv])
    with pytest.raises(SystemExit) as excinfo:
        runpy.run_module("vibereview.__main__", run_name="__main__")
    return excinfo.value.code


def test_module_help_uses_console_script_name(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    code = _run_module(monkeypatch, "--help")

    assert code == 0
    out = capsys.readouterr().out
    assert out.startswith("usage: vibe-review")
    for command in ("review", "threads", "gate"):
        assert command in out


def test_module_requires_a_subcommand(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    code = _run_module(monkeypatch)

    assert code == 2
    assert "the following arguments are required: command" in capsys.readouterr().err


def test_module_maps_config_error_to_exit_one(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = tmp_path / "review.toml"
    config_path.write_text("[review\nmax_attempts = 3\n", encoding="utf-8")

    code = _run_module(monkeypatch, "gate", "check", "--pr", "7", "--config", str(config_path))

    assert code == 1
    assert capsys.readouterr().err.startswith("error: Invalid TOML in")


def test_module_propagates_review_exit_code(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    seen: list[str] = []

    def fake_dispatch(config: object, args: object) -> int:
        seen.append(getattr(args, "command"))
        return 4

    monkeypatch.setattr("vibereview.cli._dispatch", fake_dispatch)

    code = _run_module(monkeypatch, "review", "--dry-run")

    assert code == 4
    assert seen == ["review"]
