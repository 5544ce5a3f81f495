"""Configuration models and loaders for ollamakoppler.

This module defines the adapter configuration schema and how values are loaded
from YAML plus environment variable overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_CONFIG_PATH = "ollamakoppler.yaml"
DEFAULT_BASE_URL = "http://127.0.0.1:11434"
DEFAULT_SYNTHESIS_PROMPT = (
    "Based on the tool results above, please provide a comprehensive response to the original question."
)


class LoggingConfig(BaseModel):
    """Logging-related configuration."""

    model_config = ConfigDict(populate_by_name=True)

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")


class BackendConfig(BaseModel):
    """Connection settings shared by every request against one Ollama backend."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    base_url: str = DEFAULT_BASE_URL
    headers: dict[str, str] = Field(default_factory=dict)
    api_key: str | None = None
    connect_retries: int = 0
    retry_interval_ms: int = 1000
    connect_timeout_seconds: float = 10.0
    read_timeout_seconds: float = 300.0

    @field_validator("base_url")
    @classmethod
    def _validate_base_url(cls, value: str) -> str:
        """Require an absolute http(s) URL."""
        parsed = urlparse(value)
        if parsed.scheme not in {"http", "https"} or not parsed.hostname:
            raise ValueError("base_url must be an absolute http(s) URL, e.g. http://127.0.0.1:11434")
        return value

    @field_validator("headers", mode="before")
    @classmethod
    def _none_to_empty_headers(cls, value: Any) -> Any:
        """Treat explicit YAML `null` headers as no headers."""
        if value is None:
            return {}
        return value


class ObjectGenerationOptions(BaseModel):
    """Repair, validation and retries for answers requested as JSON."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    max_retries: int = 3
    enable_text_repair: bool = True
    attempt_recovery: bool = True
    fix_type_mismatches: bool = True
    use_fallbacks: bool = True

    @field_validator("max_retries")
    @classmethod
    def _validate_max_retries(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_retries must be >= 1")
        return value


class ChatSettings(BaseModel):
    """Per-model settings for chat generation."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    structured_outputs: bool = False
    reasoning: bool = False
    # Native backend options applied to every request of this model.
    options: dict[str, Any] = Field(default_factory=dict)
    object_generation: ObjectGenerationOptions = Field(default_factory=ObjectGenerationOptions)


class EnhancedOptions(BaseModel):
    """Reliability options for tool-enabled generation."""

    model_config = ConfigDict(extra="forbid")

    enable_synthesis: bool = True
    min_response_length: int = 10
    max_synthesis_attempts: int = 2
    synthesis_timeout_ms: int = 3000
    synthesis_prompt: str = DEFAULT_SYNTHESIS_PROMPT
    synthesis_chunk_size: int = 32
    max_tool_concurrency: int = 4
    normalize_tool_arguments: bool = True

    @field_validator("min_response_length")
    @classmethod
    def _validate_min_response_length(cls, value: int) -> int:
        if value < 0:
            raise ValueError("min_response_length must be >= 0")
        return value

    @field_validator("max_synthesis_attempts", "synthesis_chunk_size", "max_tool_concurrency")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be >= 1")
        return value

    @field_validator("synthesis_timeout_ms")
    @classmethod
    def _validate_timeout(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("synthesis_timeout_ms must be > 0")
        return value

    @property
    def synthesis_timeout_seconds(self) -> float:
        """Idle timeout of the live stream in seconds."""
        return self.synthesis_timeout_ms / 1000.0


class AdapterConfig(BaseModel):
    """Top-level adapter configuration."""

    model_config = ConfigDict(extra="forbid")

    backend: BackendConfig = Field(default_factory=BackendConfig)
    default_model: str | None = None
    chat: ChatSettings = Field(default_factory=ChatSettings)
    enhanced: EnhancedOptions = Field(default_factory=EnhancedOptions)
    logging: LoggingConfig | None = None

    @model_validator(mode="after")
    def _fill_defaults(self) -> "AdapterConfig":
        """Apply fallback defaults for optional sections."""
        if self.logging is None:
            self.logging = LoggingConfig()
        return self

    @field_validator("backend", "chat", "enhanced", mode="before")
    @classmethod
    def _none_to_empty_section(cls, value: Any) -> Any:
        """Treat explicit YAML `null` sections as defaults."""
        if value is None:
            return {}
        return value


def _load_yaml(path: str | None) -> dict[str, Any]:
    """Load a YAML file into a dictionary.

    Missing files are treated as empty config for environment-only deployments.
    """
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        return {}
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be object: {path}")
    return data


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _override_from_env(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides on top of file configuration."""
    env_map = {
        "backend.base_url": "OLLAMAKOPPLER_BASE_URL",
        "backend.api_key": "OLLAMAKOPPLER_API_KEY",
        "backend.connect_retries": "OLLAMAKOPPLER_CONNECT_RETRIES",
        "backend.retry_interval_ms": "OLLAMAKOPPLER_RETRY_INTERVAL_MS",
        "default_model": "OLLAMAKOPPLER_DEFAULT_MODEL",
        "enhanced.enable_synthesis": "OLLAMAKOPPLER_ENABLE_SYNTHESIS",
        "enhanced.min_response_length": "OLLAMAKOPPLER_MIN_RESPONSE_LENGTH",
        "enhanced.max_synthesis_attempts": "OLLAMAKOPPLER_MAX_SYNTHESIS_ATTEMPTS",
        "enhanced.synthesis_timeout_ms": "OLLAMAKOPPLER_SYNTHESIS_TIMEOUT_MS",
        "logging.level": "OLLAMAKOPPLER_LOG_LEVEL",
        "logging.json": "OLLAMAKOPPLER_LOG_JSON",
    }
    int_keys = {
        "backend.connect_retries",
        "backend.retry_interval_ms",
        "enhanced.min_response_length",
        "enhanced.max_synthesis_attempts",
        "enhanced.synthesis_timeout_ms",
    }
    bool_keys = {"enhanced.enable_synthesis", "logging.json"}

    out = dict(data)
    for key, env_name in env_map.items():
        value = os.getenv(env_name)
        if value is None:
            continue

        parsed: Any = value
        if key in int_keys:
            parsed = int(value)
        elif key in bool_keys:
            parsed = _parse_bool(value)

        if "." not in key:
            out[key] = parsed
            continue
        section, field = key.split(".", 1)
        section_data = dict(out.get(section) or {})
        section_data[field] = parsed
        out[section] = section_data

    return out


def load_config(path: str | None = None) -> AdapterConfig:
    """Load, merge, and validate adapter configuration."""
    final_path = path or os.getenv("OLLAMAKOPPLER_CONFIG") or DEFAULT_CONFIG_PATH
    raw = _load_yaml(final_path)
    raw = _override_from_env(raw)
    return AdapterConfig.model_validate(raw)
