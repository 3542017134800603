from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from vibereview.agent_adapter import CommandAgentAdapter, PromptAgentAdapter
from vibereview.codex_adapter import CodexAdapter
from vibereview.config import AppConfig, ProviderSettings, ReviewSettings
from vibereview.provider import (
    CommandPlan,
    ProviderPlan,
    ProviderUnavailableError,
    build_agent_adapter,
    command_exists,
    detect_host_provider,
    persist_plan_selection,
    resolve_execution_plan,
)
from vibereview.state import persist_provider_selection, provider_runtime_path, read_persisted_provider


def _config(tmp_path: Path, **provider: object) -> AppConfig:
    return AppConfig(
        review=ReviewSettings(state_dir=tmp_path / ".vibe"),
        provider=ProviderSettings(**provider),  # type: ignore[arg-type]
    )


def _which(*installed: str):
    def which(name: str) -> str | None:
        return f"/usr/bin/{name}" if name in installed else None

    return which


def test_agent_cmd_flag_wins(tmp_path: Path) -> None:
    plan = resolve_execution_plan(
        config=_config(tmp_path),
        env={"VIBE_REVIEW_AGENT_CMD": "env-cmd"},
        agent_cmd=" ./review.sh ",
        agent_provider="codex",
        which=_which("codex"),
    )

    assert plan == CommandPlan(
        command="./review.sh",
        source="flag",
        runtime_path=provider_runtime_path(tmp_path / ".vibe"),
    )
    assert plan.label == "command"


def test_env_command_beats_provider(tmp_path: Path) -> None:
    plan = resolve_execution_plan(
        config=_config(tmp_path),
        env={"VIBE_REVIEW_AGENT_CMD": "env-cmd"},
        which=_which("codex"),
    )

    assert isinstance(plan, CommandPlan)
    assert plan.source == "env"


def test_configured_command_mode(tmp_path: Path) -> None:
    plan = resolve_execution_plan(
        config=_config(tmp_path, name="command", command="make review"), env={}, which=_which()
    )
    assert isinstance(plan, CommandPlan)
    assert plan.command == "make review"
    assert plan.source == "config"

    with pytest.raises(ProviderUnavailableError, match="requires --agent-cmd"):
        resolve_execution_plan(config=_config(tmp_path), env={}, agent_provider="command", which=_which())


def test_explicit_provider_requires_availability(tmp_path: Path) -> None:
    with pytest.raises(ProviderUnavailableError, match="'gemini' is not available"):
        resolve_execution_plan(config=_config(tmp_path), env={}, agent_provider="gemini", which=_which())

    with pytest.raises(ProviderUnavailableError, match="--agent-provider"):
        resolve_execution_plan(config=_config(tmp_path), env={}, agent_provider="copilot", which=_which())


def test_explicit_claude_falls_back_to_claude_code_binary(tmp_path: Path) -> None:
    plan = resolve_execution_plan(
        config=_config(tmp_path),
        env={},
        agent_provider="claude-code",
        which=_which("claude-code"),
    )

    assert isinstance(plan, ProviderPlan)
    assert plan.provider == "claude"
    assert plan.binary == "claude-code"
    assert plan.source == "flag"
    assert plan.auto_mode is False


def test_provider_command_override_from_env(tmp_path: Path) -> None:
    plan = resolve_execution_plan(
        config=_config(tmp_path, name="gemini"),
        env={"VIBE_REVIEW_GEMINI_CMD": "gemini --yolo"},
        which=_which(),
    )

    assert isinstance(plan, ProviderPlan)
    assert plan.source == "config"
    assert plan.command_override == "gemini --yolo"


def test_auto_prefers_persisted_provider(tmp_path: Path) -> None:
    config = _config(tmp_path)
    persist_provider_selection(provider_runtime_path(config.review.state_dir), provider="gemini", source="bin")

    plan = resolve_execution_plan(config=config, env={}, which=_which("codex", "gemini"))

    assert isinstance(plan, ProviderPlan)
    assert plan.provider == "gemini"
    assert plan.source == "runtime"
    assert plan.healed_from_runtime is None


def test_auto_heals_unavailable_persisted_provider(tmp_path: Path) -> None:
    config = _config(tmp_path)
    persist_provider_selection(provider_runtime_path(config.review.state_dir), provider="gemini", source="bin")

    plan = resolve_execution_plan(config=config, env={}, which=_which("claude"))

    assert isinstance(plan, ProviderPlan)
    assert plan.provider == "claude"
    assert plan.source == "bin"
    assert plan.healed_from_runtime == "gemini"


def test_auto_uses_host_agent_and_resume_token(tmp_path: Path) -> None:
    plan = resolve_execution_plan(
        config=_config(tmp_path),
        env={"CODEX_THREAD_ID": "thread-9"},
        which=_which("codex", "claude"),
    )

    assert isinstance(plan, ProviderPlan)
    assert plan.provider == "codex"
    assert plan.source == "host"
    assert plan.resume_thread_id == "thread-9"


def test_auto_priority_order(tmp_path: Path) -> None:
    plan = resolve_execution_plan(config=_config(tmp_path), env={}, which=_which("gemini", "claude"))
    assert isinstance(plan, ProviderPlan)
    assert plan.provider == "claude"

    with pytest.raises(ProviderUnavailableError, match="no agent provider available"):
        resolve_execution_plan(config=_config(tmp_path), env={}, which=_which())


def test_detect_host_provider() -> None:
    assert detect_host_provider({"__CFBundleIdentifier": "com.openai.codex"}) == "codex"
    assert detect_host_provider({"CLAUDE_CODE": "1"}) == "claude"
    assert detect_host_provider({"ANTHROPIC_API_KEY": "x"}) == "claude"
    assert detect_host_provider({"GEMINI_API_KEY": "x"}) == "gemini"
    assert detect_host_provider({"PATH": "/bin"}) is None


def test_command_exists_rejects_unsafe_names() -> None:
    assert command_exists("codex", which=_which("codex")) is True
    assert command_exists("codex; rm -rf /", which=lambda name: "/bin/sh") is False


def test_persist_plan_selection_only_for_auto_plans(tmp_path: Path) -> None:
    runtime_path = provider_runtime_path(tmp_path)
    command = CommandPlan(command="x", source="flag", runtime_path=runtime_path)
    explicit = ProviderPlan(provider="codex", source="flag", runtime_path=runtime_path)

    assert persist_plan_selection(command) is None
    assert persist_plan_selection(explicit) is None
    assert read_persisted_provider(runtime_path) is None

    auto = replace(explicit, source="host", auto_mode=True)
    assert persist_plan_selection(auto) == runtime_path
    saved = read_persisted_provider(runtime_path)
    assert saved is not None
    assert (saved.provider, saved.source) == ("codex", "host")


def test_build_agent_adapter(tmp_path: Path) -> None:
    config = AppConfig()
    runtime_path = provider_runtime_path(tmp_path)

    assert isinstance(
        build_agent_adapter(CommandPlan(command="x", source="flag", runtime_path=runtime_path), config),
        CommandAgentAdapter,
    )
    assert isinstance(
        build_agent_adapter(ProviderPlan(provider="codex", source="bin", runtime_path=runtime_path), config),
        CodexAdapter,
    )
    assert isinstance(
        build_agent_adapter(ProviderPlan(provider="gemini", source="bin", runtime_path=runtime_path), config),
        PromptAgentAdapter,
    )
