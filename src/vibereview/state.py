from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
import json
import logging
from typing import Literal, cast

from vibereview.models import ProviderName
from vibereview.observability import log_event


PersistedSource = Literal["runtime", "host", "bin", "env"]

PROVIDER_RUNTIME_RELATIVE_PATH = Path("runtime") / "review-agent-provider.json"
_STATE_VERSION = 1
_PROVIDERS = ("codex", "claude", "gemini")
_SOURCES = ("runtime", "host", "bin", "env")

LOGGER = logging.getLogger("vibereview.state")


@dataclass(frozen=True)
class PersistedProvider:
    provider: ProviderName
    source: PersistedSource
    detected_at: str
    last_ok_at: str | None


def provider_runtime_path(state_dir: Path) -> Path:
    return state_dir / PROVIDER_RUNTIME_RELATIVE_PATH


def read_persisted_provider(path: Path) -> PersistedProvider | None:
    """Return the saved provider selection, treating missing or corrupt files as absent."""

    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        log_event(LOGGER, "provider_state_unreadable", path=str(path), error=str(exc))
        return None

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        log_event(LOGGER, "provider_state_malformed", path=str(path))
        return None
    if not isinstance(payload, dict):
        log_event(LOGGER, "provider_state_malformed", path=str(path))
        return None

    version = payload.get("version")
    provider = payload.get("provider")
    source = payload.get("source")
    detected_at = payload.get("detected_at")
    last_ok_at = payload.get("last_ok_at")
    if (
        version != _STATE_VERSION
        or isinstance(version, bool)
        or provider not in _PROVIDERS
        or source not in _SOURCES
        or not isinstance(detected_at, str)
        or not detected_at
        or (last_ok_at is not None and not isinstance(last_ok_at, str))
    ):
        log_event(LOGGER, "provider_state_malformed", path=str(path))
        return None

    return PersistedProvider(
        provider=cast(ProviderName, provider),
        source=cast(PersistedSource, source),
        detected_at=detected_at,
        last_ok_at=cast(str | None, last_ok_at),
    )


def persist_provider_selection(
    path: Path,
    *,
    provider: ProviderName,
    source: PersistedSource,
    now: Callable[[], datetime] | None = None,
) -> PersistedProvider:
    timestamp = _format_timestamp((now or _utc_now)())
    existing = read_persisted_provider(path)
    if existing is not None and existing.provider == provider and existing.source == source:
        detected_at = existing.detected_at
    else:
        detected_at = timestamp

    record = PersistedProvider(
        provider=provider,
        source=source,
        detected_at=detected_at,
        last_ok_at=timestamp,
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "version": _STATE_VERSION,
        "provider": record.provider,
        "source": record.source,
        "detected_at": record.detected_at,
        "last_ok_at": record.last_ok_at,
    }
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    log_event(LOGGER, "provider_state_saved", provider=provider, source=source)
    return record


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
