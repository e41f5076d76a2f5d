"""Application configuration models and loader utilities."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, cast

from dotenv import dotenv_values
from pydantic import BaseModel, Field


class StorageSettings(BaseModel):
    """Settings for local persistence."""

    db_path: Path = Field(
        default=Path("./mailsync.db"), description="SQLite database path"
    )
    attachments_dir: Path = Field(
        default=Path("./attachments"),
        description="Root directory of the content-addressed attachment store",
    )


class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle JSON structured logging"
    )


class SyncSettings(BaseModel):
    """Settings controlling the look-back windows of a sync."""

    initial_sync_months: int = Field(
        default=3,
        ge=1,
        description="History pulled for accounts without their own initial window",
    )
    overlap_minutes: int = Field(
        default=5,
        ge=0,
        description="Overlap subtracted from the stored watermark to absorb clock skew",
    )
    default_history_months: int = Field(
        default=6, description="Look-back used by historical syncs from the CLI"
    )


class RetrySettings(BaseModel):
    """Backoff parameters for the connectivity and fetch retry policies."""

    connectivity_retries: int = Field(default=3, ge=0)
    connectivity_initial_delay_seconds: float = Field(default=2.0, ge=0.0)
    fetch_retries: int = Field(default=3, ge=0)
    fetch_initial_delay_seconds: float = Field(default=0.25, ge=0.0)
    max_delay_seconds: float = Field(
        default=30.0, ge=0.0, description="Upper bound for a single backoff sleep"
    )
    jitter_seconds: float = Field(
        default=0.5, ge=0.0, description="Random jitter added to each backoff sleep"
    )


class GmailOAuthSettings(BaseModel):
    """OAuth client registration for Google accounts."""

    client_id: str | None = Field(default=None, description="OAuth client id")
    client_secret: str | None = Field(default=None, description="OAuth secret")


class OutlookOAuthSettings(BaseModel):
    """Public client registration for Microsoft accounts."""

    client_id: str | None = Field(default=None, description="Application id")
    tenant_id: str = Field(default="common", description="Directory tenant")


class LlmSettings(BaseModel):
    """Settings for the local LLM used to tag messages."""

    enabled: bool = Field(default=True, description="Call the LLM during sync")
    base_url: str = Field(
        default="http://localhost:11434", description="Ollama server URL"
    )
    model: str = Field(default="gpt-oss:20b", description="Model identifier")
    timeout_seconds: int = Field(
        default=30, description="Request timeout for LLM calls"
    )
    temperature: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Sampling temperature for LLM completions",
    )


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    gmail: GmailOAuthSettings = Field(default_factory=GmailOAuthSettings)
    outlook: OutlookOAuthSettings = Field(default_factory=OutlookOAuthSettings)
    llm: LlmSettings = Field(default_factory=LlmSettings)


ENV_PREFIX = "MAILSYNC_"


def _normalize_key(raw_key: str) -> list[str]:
    """Convert an environment variable key into a nested attribute path."""
    trimmed = raw_key.removeprefix(ENV_PREFIX)
    return [segment.lower() for segment in trimmed.split("__") if segment]


def _merge_into_tree(tree: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a value to a nested dictionary given a path."""
    cursor = tree
    for segment in path[:-1]:
        next_node = cursor.setdefault(segment, {})
        cursor = cast(dict[str, Any], next_node)
    cursor[path[-1]] = value


def _coerce(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    if value == "":
        return None
    lowercase_value = value.lower()
    if lowercase_value == "true":
        return True
    if lowercase_value == "false":
        return False
    return value


def _collect_env_values(
    env_file: Path | str | None, *, include_environment: bool = True
) -> dict[str, Any]:
    """Load configuration values from environment variables and optional file."""
    collected: dict[str, Any] = {}

    file_values: dict[str, Any] = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = {
                key: value
                for key, value in dotenv_values(env_path).items()
                if key and key.startswith(ENV_PREFIX)
            }

    env_values: dict[str, Any] = {}
    if include_environment:
        env_values = {
            key: value
            for key, value in os.environ.items()
            if key.startswith(ENV_PREFIX)
        }

    combined: dict[str, Any] = {**file_values, **env_values}

    for key, value in combined.items():
        path = _normalize_key(key)
        if not path:
            continue
        _merge_into_tree(collected, path, _coerce(value))

    return collected


@lru_cache(maxsize=1)
def load_app_settings(
    env_file: Path | str | None = None,
    *,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load application settings, applying env files and overrides."""
    collected = _collect_env_values(env_file, include_environment=include_environment)
    if overrides:
        collected.update(overrides)
    return AppSettings.model_validate(collected)


__all__ = [
    "AppSettings",
    "GmailOAuthSettings",
    "LlmSettings",
    "LoggingSettings",
    "OutlookOAuthSettings",
    "RetrySettings",
    "StorageSettings",
    "SyncSettings",
    "load_app_settings",
]
