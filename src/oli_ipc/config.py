"""Configuration loading and validation for the IPC core."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
import tomllib
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigValidationError

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "oli"
CONFIG_PATH = CONFIG_DIR / "ipc.toml"

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


class RpcConfig(BaseModel):
    """Child process and JSON-RPC call settings."""

    server_path: str = ""
    server_args: list[str] = Field(default_factory=list)
    # 0 disables the per-call deadline.
    call_timeout_seconds: float = Field(default=0, ge=0, le=86_400)
    malformed_lines: Literal["skip", "abort"] = "skip"
    max_line_bytes: int = Field(default=16 * 1024 * 1024, ge=1024, le=1024**3)
    notification_queue_size: int = Field(default=1000, ge=1, le=1_000_000)
    forward_notifications: bool = True

    @field_validator("server_path", mode="before")
    @classmethod
    def _normalize_server_path(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("server_path must be a string.")
        return value.strip()

    @field_validator("server_args", mode="before")
    @classmethod
    def _validate_server_args(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("server_args must be a list of strings.")
        for item in value:
            if not isinstance(item, str):
                raise ValueError("Each entry in server_args must be a string.")
        return list(value)

    @field_validator("malformed_lines", mode="before")
    @classmethod
    def _normalize_policy(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("malformed_lines must be a string.")
        return value.strip().lower()


class EventBusConfig(BaseModel):
    """Loopback notification server settings."""

    host: str = "127.0.0.1"
    port: int = Field(default=5050, ge=0, le=65535)
    # 0 keeps every event.
    max_events: int = Field(default=10_000, ge=0)
    stream_poll_interval_seconds: float = Field(default=1.0, gt=0, le=60)
    shutdown_timeout_seconds: float = Field(default=5.0, gt=0, le=300)

    @field_validator("host", mode="before")
    @classmethod
    def _validate_loopback_host(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("host must be a string.")
        normalized = value.strip().lower()
        if normalized not in LOOPBACK_HOSTS:
            raise ValueError(
                f"host must be a loopback address ({', '.join(sorted(LOOPBACK_HOSTS))})."
            )
        return normalized


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/oli/ipc.log"

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level {normalized!r}.")
        return normalized

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("log_file_path must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("log_file_path must not be empty.")
        return normalized


class Config(BaseModel):
    """Root configuration model for all sections."""

    rpc: RpcConfig = RpcConfig()
    event_bus: EventBusConfig = EventBusConfig()
    logging: LoggingConfig = LoggingConfig()


DEFAULT_CONFIG: dict[str, dict[str, Any]] = Config().model_dump()


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure that the config directory exists and return its path."""
    directory = config_dir or CONFIG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create config directory %s: %s", directory, exc)
    return directory


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _enforce_private_permissions(path: Path) -> None:
    """Best-effort enforcement of private file permissions on POSIX systems."""
    if os.name != "posix" or not path.exists():
        return
    try:
        path.chmod(0o600)
    except OSError as exc:
        LOGGER.warning("Unable to enforce 0600 permissions for %s: %s", path, exc)


def _validate_config(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Validate merged config and fall back to safe defaults when possible."""
    try:
        return Config.model_validate(raw).model_dump()
    except ValidationError as exc:
        LOGGER.warning("Configuration validation failed, using safe defaults: %s", exc)
        return deepcopy(DEFAULT_CONFIG)
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def load_config(config_path: Path | None = None) -> dict[str, dict[str, Any]]:
    """
    Load configuration from TOML, merge with defaults, and validate.

    The optional ``config_path`` argument is intended for tests and tooling.
    """
    target_path = config_path or CONFIG_PATH
    ensure_config_dir(target_path.parent)

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        _enforce_private_permissions(target_path)
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            LOGGER.warning("Failed to parse config at %s: %s", target_path, exc)
            raw_data = {}

    return _validate_config(_deep_merge(DEFAULT_CONFIG, raw_data))
