from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import tomllib
from typing import cast

from vibereview.models import FollowUpLabel, ProviderMode
from vibereview.retry import DEFAULT_BACKOFF_SECONDS, RetryPolicy


DEFAULT_CONFIG_PATH = Path(".vibe/review.toml")
MAX_ATTEMPTS_LIMIT = 20


@dataclass(frozen=True)
class ReviewSettings:
    max_attempts: int = 5
    autofix: bool = True
    autopush: bool = True
    publish: bool = True
    strict: bool = False
    followup_label: FollowUpLabel | None = None
    base_branch: str = "main"
    state_dir: Path = Path(".vibe")


@dataclass(frozen=True)
class RetrySettings:
    attempts: int = len(DEFAULT_BACKOFF_SECONDS)
    backoff_seconds: tuple[float, ...] = DEFAULT_BACKOFF_SECONDS

    def policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=self.attempts, backoff_seconds=self.backoff_seconds)


@dataclass(frozen=True)
class ProviderSettings:
    name: ProviderMode = "auto"
    command: str | None = None
    binary: str | None = None


@dataclass(frozen=True)
class CodexConfig:
    model: str | None = None
    sandbox: str | None = None
    profile: str | None = None
    extra_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class AppConfig:
    review: ReviewSettings = field(default_factory=ReviewSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    codex: CodexConfig = field(default_factory=CodexConfig)


class ConfigError(ValueError):
    pass


def load_config(path: Path | None = None) -> AppConfig:
    """Load review settings from TOML, falling back to defaults when the file is absent."""

    config_path = path if path is not None else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        if path is not None:
            raise ConfigError(f"Config file not found: {config_path}")
        return AppConfig()

    with config_path.open("rb") as fh:
        try:
            data = tomllib.load(fh)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc

    review_data = _optional_table(data, "review") or {}
    retry_data = _optional_table(data, "retry") or {}
    provider_data = _optional_table(data, "provider") or {}
    codex_data = _optional_table(data, "codex") or {}

    review = ReviewSettings(
        max_attempts=_int_with_default(review_data, "max_attempts", 5),
        autofix=_bool_with_default(review_data, "autofix", True),
        autopush=_bool_with_default(review_data, "autopush", True),
        publish=_bool_with_default(review_data, "publish", True),
        strict=_bool_with_default(review_data, "strict", False),
        followup_label=_optional_followup_label(review_data, "followup_label"),
        base_branch=_str_with_default(review_data, "base_branch", "main"),
        state_dir=Path(_str_with_default(review_data, "state_dir", ".vibe")).expanduser(),
    )
    if not 1 <= review.max_attempts <= MAX_ATTEMPTS_LIMIT:
        raise ConfigError(f"review.max_attempts must be between 1 and {MAX_ATTEMPTS_LIMIT}")

    retry = RetrySettings(
        attempts=_int_with_default(retry_data, "attempts", len(DEFAULT_BACKOFF_SECONDS)),
        backoff_seconds=_tuple_of_float_with_default(
            retry_data, "backoff_seconds", DEFAULT_BACKOFF_SECONDS
        ),
    )
    if retry.attempts < 1:
        raise ConfigError("retry.attempts must be >= 1")

    provider = ProviderSettings(
        name=_provider_mode_with_default(provider_data, "name", "auto"),
        command=_optional_str(provider_data, "command"),
        binary=_optional_str(provider_data, "binary"),
    )
    if provider.name == "command" and provider.command is None:
        raise ConfigError("provider.command is required when provider.name is 'command'")

    codex = CodexConfig(
        model=_optional_str(codex_data, "model"),
        sandbox=_optional_str(codex_data, "sandbox"),
        profile=_optional_str(codex_data, "profile"),
        extra_args=_tuple_of_str(codex_data, "extra_args"),
    )

    return AppConfig(review=review, retry=retry, provider=provider, codex=codex)


def clamp_max_attempts(value: int) -> int:
    return max(1, min(MAX_ATTEMPTS_LIMIT, value))


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)


def _tuple_of_float_with_default(
    data: dict[str, object], key: str, default: tuple[float, ...]
) -> tuple[float, ...]:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of numbers")
    out: list[float] = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, (int, float)) or item < 0:
            raise ConfigError(f"{key} must be a list of non-negative numbers")
        out.append(float(item))
    return tuple(out)


def _provider_mode_with_default(
    data: dict[str, object], key: str, default: ProviderMode
) -> ProviderMode:
    value = data.get(key, default)
    return parse_provider_mode(value, key=key)


def parse_provider_mode(value: object, *, key: str = "provider") -> ProviderMode:
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be one of: auto, codex, claude, gemini, command")
    normalized = value.strip().lower()
    if normalized == "claude-code":
        normalized = "claude"
    if normalized not in {"auto", "codex", "claude", "gemini", "command"}:
        raise ConfigError(f"{key} must be one of: auto, codex, claude, gemini, command")
    return cast(ProviderMode, normalized)


def _optional_followup_label(data: dict[str, object], key: str) -> FollowUpLabel | None:
    value = data.get(key)
    if value is None:
        return None
    return parse_followup_label(value, key=key)


def parse_followup_label(value: object, *, key: str = "followup_label") -> FollowUpLabel:
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be one of: bug, enhancement")
    normalized = value.strip().lower()
    if normalized not in {"bug", "enhancement"}:
        raise ConfigError(f"{key} must be one of: bug, enhancement")
    return cast(FollowUpLabel, normalized)
