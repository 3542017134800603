from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
import logging
import re
import shutil
from typing import Literal

from vibereview.agent_adapter import CommandAgentAdapter, PromptAgentAdapter, ReviewAgentAdapter
from vibereview.codex_adapter import CodexAdapter
from vibereview.config import AppConfig, ConfigError, parse_provider_mode
from vibereview.models import ProviderMode, ProviderName
from vibereview.observability import log_event
from vibereview.state import (
    PersistedSource,
    persist_provider_selection,
    provider_runtime_path,
    read_persisted_provider,
)


CommandSource = Literal["flag", "env", "config"]
ProviderSource = Literal["flag", "config", "runtime", "host", "bin", "env"]

PROVIDER_PRIORITY: tuple[ProviderName, ...] = ("codex", "claude", "gemini")
_COMMAND_OVERRIDE_ENV: dict[ProviderName, str] = {
    "codex": "VIBE_REVIEW_CODEX_CMD",
    "claude": "VIBE_REVIEW_CLAUDE_CMD",
    "gemini": "VIBE_REVIEW_GEMINI_CMD",
}
_BINARY_CANDIDATES: dict[ProviderName, tuple[str, ...]] = {
    "codex": ("codex",),
    "claude": ("claude", "claude-code"),
    "gemini": ("gemini",),
}
_SAFE_BINARY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")

LOGGER = logging.getLogger("vibereview.provider")


class ProviderUnavailableError(RuntimeError):
    pass


@dataclass(frozen=True)
class CommandPlan:
    command: str
    source: CommandSource
    runtime_path: Path

    @property
    def label(self) -> str:
        return "command"


@dataclass(frozen=True)
class ProviderPlan:
    provider: ProviderName
    source: ProviderSource
    runtime_path: Path
    binary: str | None = None
    command_override: str | None = None
    auto_mode: bool = False
    resume_thread_id: str | None = None
    healed_from_runtime: ProviderName | None = None

    @property
    def label(self) -> str:
        return self.provider


ExecutionPlan = CommandPlan | ProviderPlan


@dataclass(frozen=True)
class _Bootstrap:
    available: bool
    source: Literal["env", "bin"] | None
    binary: str | None
    command_override: str | None


def command_exists(name: str, *, which: Callable[[str], str | None] = shutil.which) -> bool:
    if not _SAFE_BINARY_PATTERN.match(name):
        return False
    return which(name) is not None


def detect_host_provider(env: Mapping[str, str]) -> ProviderName | None:
    bundle_id = env.get("__CFBundleIdentifier", "").strip().lower()
    if (
        bundle_id == "com.openai.codex"
        or env.get("CODEX_THREAD_ID")
        or env.get("CODEX_INTERNAL_ORIGINATOR_OVERRIDE")
        or env.get("CODEX_CI")
    ):
        return "codex"
    if env.get("CLAUDE_CODE") or env.get("CLAUDE_SESSION_ID"):
        return "claude"
    if _has_env_prefix(env, ("CLAUDE_", "ANTHROPIC_")):
        return "claude"
    if _has_env_prefix(env, ("GEMINI_", "GOOGLE_GENAI_")):
        return "gemini"
    return None


def _has_env_prefix(env: Mapping[str, str], prefixes: tuple[str, ...]) -> bool:
    return any(key.upper().startswith(prefixes) for key in env)


def _env_text(env: Mapping[str, str], key: str) -> str | None:
    value = env.get(key, "").strip()
    return value or None


def resolve_execution_plan(
    *,
    config: AppConfig,
    env: Mapping[str, str],
    agent_cmd: str | None = None,
    agent_provider: str | None = None,
    which: Callable[[str], str | None] = shutil.which,
) -> ExecutionPlan:
    """Pick exactly one way to invoke the review agent.

    Order: ``--agent-cmd``, ``VIBE_REVIEW_AGENT_CMD``, then the provider named
    by ``--agent-provider`` or the config file (``command`` uses the configured
    command), with auto mode trying the persisted choice, the host agent and
    installed binaries in priority order.
    """

    runtime_path = provider_runtime_path(config.review.state_dir)

    direct = (agent_cmd or "").strip()
    if direct:
        return CommandPlan(command=direct, source="flag", runtime_path=runtime_path)
    env_command = _env_text(env, "VIBE_REVIEW_AGENT_CMD")
    if env_command:
        return CommandPlan(command=env_command, source="env", runtime_path=runtime_path)

    provider_source: ProviderSource = "flag"
    mode: ProviderMode
    if agent_provider is not None and agent_provider.strip():
        try:
            mode = parse_provider_mode(agent_provider, key="--agent-provider")
        except ConfigError as exc:
            raise ProviderUnavailableError(str(exc)) from exc
    else:
        mode = config.provider.name
        provider_source = "config"

    if mode == "command":
        if config.provider.command:
            return CommandPlan(
                command=config.provider.command, source="config", runtime_path=runtime_path
            )
        raise ProviderUnavailableError(
            "provider 'command' requires --agent-cmd or VIBE_REVIEW_AGENT_CMD"
        )

    cache: dict[ProviderName, _Bootstrap] = {}

    def bootstrap(provider: ProviderName) -> _Bootstrap:
        if provider not in cache:
            cache[provider] = _resolve_bootstrap(provider, config=config, env=env, which=which)
        return cache[provider]

    def plan_for(
        provider: ProviderName,
        source: ProviderSource,
        *,
        auto_mode: bool,
        healed_from: ProviderName | None = None,
    ) -> ProviderPlan:
        boot = bootstrap(provider)
        resume = _env_text(env, "CODEX_THREAD_ID") if provider == "codex" else None
        plan = ProviderPlan(
            provider=provider,
            source=source,
            runtime_path=runtime_path,
            binary=boot.binary,
            command_override=boot.command_override,
            auto_mode=auto_mode,
            resume_thread_id=resume,
            healed_from_runtime=healed_from,
        )
        log_event(
            LOGGER,
            "provider_resolved",
            provider=provider,
            source=source,
            auto=auto_mode,
            healed_from=healed_from,
        )
        return plan

    if mode != "auto":
        if not bootstrap(mode).available:
            raise ProviderUnavailableError(
                f"provider '{mode}' is not available in current environment"
            )
        return plan_for(mode, provider_source, auto_mode=False)

    healed_from: ProviderName | None = None
    persisted = read_persisted_provider(runtime_path)
    if persisted is not None:
        if bootstrap(persisted.provider).available:
            return plan_for(persisted.provider, "runtime", auto_mode=True)
        healed_from = persisted.provider

    host = detect_host_provider(env)
    if host is not None and bootstrap(host).available:
        return plan_for(host, "host", auto_mode=True, healed_from=healed_from)

    for provider in PROVIDER_PRIORITY:
        boot = bootstrap(provider)
        if not boot.available:
            continue
        source: ProviderSource = "env" if boot.source == "env" else "bin"
        return plan_for(provider, source, auto_mode=True, healed_from=healed_from)

    raise ProviderUnavailableError(
        "no agent provider available. Configure --agent-cmd / VIBE_REVIEW_AGENT_CMD "
        "or install the codex, claude or gemini CLI."
    )


def _resolve_bootstrap(
    provider: ProviderName,
    *,
    config: AppConfig,
    env: Mapping[str, str],
    which: Callable[[str], str | None],
) -> _Bootstrap:
    override = _env_text(env, _COMMAND_OVERRIDE_ENV[provider])
    if override:
        return _Bootstrap(available=True, source="env", binary=None, command_override=override)

    candidates = _BINARY_CANDIDATES[provider]
    configured_binary = config.provider.binary if config.provider.name == provider else None
    if configured_binary:
        candidates = (configured_binary,)
    for candidate in candidates:
        if command_exists(candidate, which=which):
            return _Bootstrap(available=True, source="bin", binary=candidate, command_override=None)
    return _Bootstrap(available=False, source=None, binary=None, command_override=None)


def persist_plan_selection(plan: ExecutionPlan) -> Path | None:
    if not isinstance(plan, ProviderPlan) or not plan.auto_mode:
        return None
    source: PersistedSource = "bin"
    if plan.source == "runtime":
        source = "runtime"
    elif plan.source == "host":
        source = "host"
    elif plan.source == "env":
        source = "env"
    persist_provider_selection(plan.runtime_path, provider=plan.provider, source=source)
    return plan.runtime_path


def build_agent_adapter(plan: ExecutionPlan, config: AppConfig) -> ReviewAgentAdapter:
    if isinstance(plan, CommandPlan):
        return CommandAgentAdapter(plan.command)
    if plan.provider == "codex":
        return CodexAdapter(
            config.codex,
            binary=plan.binary,
            command_override=plan.command_override,
            resume_thread_id=plan.resume_thread_id,
        )
    return PromptAgentAdapter(
        provider=plan.provider,
        binary=plan.binary,
        command_override=plan.command_override,
    )
