"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from notion_sd_runner.queue.models import (
    FieldValue,
    NumberValue,
    QueueRecord,
    SelectValue,
    TextValue,
)

_ENV_KEYS = (
    "NOTION_TOKEN",
    "DATABASE_ID",
    "NOTION_SD_API_BASE_URL",
    "NOTION_SD_API_VERSION",
    "NOTION_SD_REQUEST_TIMEOUT_SECONDS",
    "NOTION_SD_REQUEST_RETRIES",
    "NOTION_SD_EMPTY_QUEUE_BACKOFF_SECONDS",
    "NOTION_SD_ERROR_BACKOFF_SECONDS",
    "NOTION_SD_STALE_IN_PROGRESS_SECONDS",
    "NOTION_SD_EXECUTABLE",
    "NOTION_SD_PREFIX_ARGS",
    "NOTION_SD_WORKDIR",
    "NOTION_SD_JOB_TIMEOUT_SECONDS",
    "NOTION_SD_GRACEFUL_SHUTDOWN_SECONDS",
)


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Drop every runner variable so tests start from defaults."""

    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


@pytest.fixture()
def make_record() -> Callable[..., QueueRecord]:
    """Build a txt2img record; pass a field as None to drop it."""

    def _make(
        record_id: str = "page-1",
        **overrides: FieldValue | None,
    ) -> QueueRecord:
        fields: dict[str, FieldValue | None] = {
            "Type": SelectValue(name="txt2img"),
            "Prompt": TextValue(segments=("a cat",)),
            "Steps": NumberValue(number=None),
            "Width": NumberValue(number=None),
            "Height": NumberValue(number=None),
        }
        fields.update(overrides)
        return QueueRecord(
            record_id=record_id,
            fields={name: value for name, value in fields.items() if value is not None},
        )

    return _make
