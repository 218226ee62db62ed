"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

__all__ = [
    "AnalysisLimits",
    "Settings",
    "SettingsStore",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".diffscout"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "DIFFSCOUT_API_KEY": "api_key",
    "DIFFSCOUT_BASE_URL": "base_url",
    "DIFFSCOUT_MODEL": "model",
    "DIFFSCOUT_ORGANIZATION": "organization",
    "DIFFSCOUT_LOG_LEVEL": "log_level",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "DIFFSCOUT_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "DIFFSCOUT_REQUEST_TIMEOUT": "request_timeout",
    "DIFFSCOUT_TOOL_TIMEOUT_SECONDS": "tool_timeout_seconds",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "DIFFSCOUT_MAX_ITERATIONS": "max_iterations",
    "DIFFSCOUT_MAX_TOOL_CALLS": "max_tool_calls",
    "DIFFSCOUT_REQUEST_TIMEOUT_SECONDS": "request_timeout_seconds",
    "DIFFSCOUT_MAX_SUBAGENTS": "max_subagents_per_session",
    "DIFFSCOUT_MAX_INPUT_TOKENS": "max_input_tokens",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


@dataclass(slots=True, frozen=True)
class AnalysisLimits:
    """Read-only limits consumed by the orchestration core.

    Attributes:
        max_iterations: Model round-trips allowed per conversation.
        max_tool_calls: Tool calls allowed per dispatcher (one per analysis or subagent).
        request_timeout_seconds: Wall-clock budget for one subagent investigation.
        max_subagents_per_session: Subagents a single analysis may spawn.
        tool_timeout_seconds: Per-call tool budget; ``None`` disables it.
        context_warning_ratio: Utilization at which old tool output is evicted.
        cleanup_target_ratio: Utilization eviction tries to get back under.
        max_tool_response_chars: Largest successful tool result accepted.
        max_completion_nudges: Reminders sent before plain content is accepted.
        max_input_tokens: Context window override; ``None`` trusts the model.
        default_max_input_tokens: Window assumed when the model reports none.
    """

    max_iterations: int = 100
    max_tool_calls: int = 50
    request_timeout_seconds: float = 300.0
    max_subagents_per_session: int = 10
    tool_timeout_seconds: float | None = 60.0
    context_warning_ratio: float = 0.9
    cleanup_target_ratio: float = 0.8
    max_tool_response_chars: int = 8_000
    max_completion_nudges: int = 2
    max_input_tokens: int | None = None
    default_max_input_tokens: int = 8_000


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between runs."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    temperature: float = 0.1
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_input_tokens: int | None = None
    max_iterations: int = 100
    max_tool_calls: int = 50
    request_timeout_seconds: int = 300
    max_subagents_per_session: int = 10
    tool_timeout_seconds: float = 60.0
    context_warning_ratio: float = 0.9
    cleanup_target_ratio: float = 0.8
    max_tool_response_chars: int = 8_000
    max_completion_nudges: int = 2
    default_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, str] = field(default_factory=dict)
    debug_logging: bool = False
    log_level: str = "INFO"

    def clamp(self) -> Settings:
        """Clamp values into safe operating ranges and return ``self``."""

        self.max_iterations = max(3, min(int(self.max_iterations or 3), 200))
        self.max_tool_calls = max(1, min(int(self.max_tool_calls or 1), 500))
        self.request_timeout_seconds = max(60, min(int(self.request_timeout_seconds or 60), 600))
        self.max_subagents_per_session = max(1, min(int(self.max_subagents_per_session or 1), 50))
        self.tool_timeout_seconds = max(1.0, float(self.tool_timeout_seconds or 1.0))
        self.context_warning_ratio = max(0.1, min(float(self.context_warning_ratio), 1.0))
        self.cleanup_target_ratio = max(0.05, min(float(self.cleanup_target_ratio), self.context_warning_ratio))
        self.max_tool_response_chars = max(256, int(self.max_tool_response_chars or 256))
        self.max_completion_nudges = max(0, int(self.max_completion_nudges))
        self.max_retries = max(1, int(self.max_retries or 1))
        self.retry_min_seconds = max(0.05, float(self.retry_min_seconds))
        self.retry_max_seconds = max(self.retry_min_seconds, float(self.retry_max_seconds))
        if self.max_input_tokens is not None:
            self.max_input_tokens = max(1_000, int(self.max_input_tokens))
        return self

    def analysis_limits(self) -> AnalysisLimits:
        """Project the analysis-related fields onto :class:`AnalysisLimits`."""

        return AnalysisLimits(
            max_iterations=self.max_iterations,
            max_tool_calls=self.max_tool_calls,
            request_timeout_seconds=float(self.request_timeout_seconds),
            max_subagents_per_session=self.max_subagents_per_session,
            tool_timeout_seconds=self.tool_timeout_seconds,
            context_warning_ratio=self.context_warning_ratio,
            cleanup_target_ratio=self.cleanup_target_ratio,
            max_tool_response_chars=self.max_tool_response_chars,
            max_completion_nudges=self.max_completion_nudges,
            max_input_tokens=self.max_input_tokens,
        )


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if payload.get("version") != _SETTINGS_VERSION:
                LOGGER.debug("Settings file %s has version %s", self._path, payload.get("version"))

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")

        settings = self._apply_env_overrides(settings)
        return settings.clamp()

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = asdict(settings)
        payload["version"] = _SETTINGS_VERSION
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            payload = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain a JSON object", self._path)
            return {}
        return payload

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        metadata_override = filtered.get("metadata")
        if isinstance(metadata_override, Mapping):
            merged_metadata = dict(settings.metadata or {})
            merged_metadata.update(metadata_override)
            filtered["metadata"] = merged_metadata
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)}
    return {key: value for key, value in payload.items() if key in allowed}


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
