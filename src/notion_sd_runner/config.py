"""Runtime configuration for the Notion queue worker."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from notion_sd_runner.notion import (
    DEFAULT_API_VERSION,
    DEFAULT_BASE_URL,
    DEFAULT_MAX_RETRIES,
    DEFAULT_TIMEOUT_SECONDS,
)
from notion_sd_runner.queue.executor import DEFAULT_EXECUTABLE, DEFAULT_PREFIX_ARGS


@dataclass(frozen=True, slots=True)
class NotionSettings:
    """Record store access settings."""

    token: str = ""
    database_id: str = ""
    base_url: str = DEFAULT_BASE_URL
    api_version: str = DEFAULT_API_VERSION
    request_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES


@dataclass(frozen=True, slots=True)
class QueueSettings:
    """Backoff and reconciliation policy."""

    empty_queue_backoff_seconds: float = 30.0
    error_backoff_seconds: float = 60.0
    stale_in_progress_seconds: float = 0.0


@dataclass(frozen=True, slots=True)
class ToolSettings:
    """Image generator invocation settings."""

    executable: str = DEFAULT_EXECUTABLE
    prefix_args: tuple[str, ...] = DEFAULT_PREFIX_ARGS
    workdir: Path = Path()
    job_timeout_seconds: float = 0.0
    graceful_shutdown_seconds: float = 10.0


@dataclass(frozen=True, slots=True)
class Settings:
    """Application settings grouped by concern, built once at startup."""

    notion: NotionSettings = field(default_factory=NotionSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    tool: ToolSettings = field(default_factory=ToolSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults matching a local setup."""

        prefix_raw = os.getenv("NOTION_SD_PREFIX_ARGS")
        return cls(
            notion=NotionSettings(
                token=os.getenv("NOTION_TOKEN", "").strip(),
                database_id=os.getenv("DATABASE_ID", "").strip(),
                base_url=os.getenv("NOTION_SD_API_BASE_URL", DEFAULT_BASE_URL),
                api_version=os.getenv("NOTION_SD_API_VERSION", DEFAULT_API_VERSION),
                request_timeout_seconds=_env_float(
                    "NOTION_SD_REQUEST_TIMEOUT_SECONDS",
                    DEFAULT_TIMEOUT_SECONDS,
                ),
                max_retries=_env_int("NOTION_SD_REQUEST_RETRIES", DEFAULT_MAX_RETRIES),
            ),
            queue=QueueSettings(
                empty_queue_backoff_seconds=_env_float(
                    "NOTION_SD_EMPTY_QUEUE_BACKOFF_SECONDS",
                    30.0,
                ),
                error_backoff_seconds=_env_float("NOTION_SD_ERROR_BACKOFF_SECONDS", 60.0),
                stale_in_progress_seconds=_env_float(
                    "NOTION_SD_STALE_IN_PROGRESS_SECONDS",
                    0.0,
                ),
            ),
            tool=ToolSettings(
                executable=os.getenv("NOTION_SD_EXECUTABLE", DEFAULT_EXECUTABLE),
                prefix_args=(
                    tuple(shlex.split(prefix_raw))
                    if prefix_raw is not None
                    else DEFAULT_PREFIX_ARGS
                ),
                workdir=Path(os.getenv("NOTION_SD_WORKDIR", ".")),
                job_timeout_seconds=_env_float("NOTION_SD_JOB_TIMEOUT_SECONDS", 0.0),
                graceful_shutdown_seconds=_env_float(
                    "NOTION_SD_GRACEFUL_SHUTDOWN_SECONDS",
                    10.0,
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error before the worker touches the store."""

        if not self.notion.token:
            raise ValueError("Missing NOTION_TOKEN.")
        if not self.notion.database_id:
            raise ValueError("Missing DATABASE_ID.")
        if self.notion.request_timeout_seconds <= 0:
            raise ValueError("NOTION_SD_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.notion.max_retries < 0:
            raise ValueError("NOTION_SD_REQUEST_RETRIES must be >= 0.")
        if self.queue.empty_queue_backoff_seconds <= 0:
            raise ValueError("NOTION_SD_EMPTY_QUEUE_BACKOFF_SECONDS must be > 0.")
        if self.queue.error_backoff_seconds <= 0:
            raise ValueError("NOTION_SD_ERROR_BACKOFF_SECONDS must be > 0.")
        if self.queue.stale_in_progress_seconds < 0:
            raise ValueError("NOTION_SD_STALE_IN_PROGRESS_SECONDS must be >= 0.")
        if not self.tool.executable.strip():
            raise ValueError("NOTION_SD_EXECUTABLE must not be empty.")
        if self.tool.job_timeout_seconds < 0:
            raise ValueError("NOTION_SD_JOB_TIMEOUT_SECONDS must be >= 0.")
        if self.tool.graceful_shutdown_seconds < 0:
            raise ValueError("NOTION_SD_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer for {name}: {value!r}") from error
