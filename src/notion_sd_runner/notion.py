"""Minimal Notion database client used as the job queue store."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx

from notion_sd_runner.queue.models import (
    FieldValue,
    NumberValue,
    QueueRecord,
    RecordId,
    SelectValue,
    Status,
    StatusUpdate,
    StatusValue,
    TextValue,
    UnsupportedValue,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.notion.com/v1"
DEFAULT_API_VERSION = "2022-06-28"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3

STATUS_FIELD = "Status"
PRIORITY_FIELD = "Priority"
ERROR_FIELD = "Error"

MAX_TEXT_CHUNK_CHARS = 2_000
MAX_TEXT_CHUNKS = 100
MAX_PAGE_SIZE = 100


class NotionApiError(RuntimeError):
    """Transport failure or non-2xx response from the Notion API."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotionClient:
    """Query and update pages of one Notion database over httpx."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        token: str,
        database_id: str,
        base_url: str = DEFAULT_BASE_URL,
        api_version: str = DEFAULT_API_VERSION,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.database_id = database_id
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Authorization": f"Bearer {token}",
                "Notion-Version": api_version,
                "Content-Type": "application/json",
            },
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def query_records(
        self,
        status: Status,
        *,
        limit: int = 1,
        edited_before: datetime | None = None,
    ) -> list[QueueRecord]:
        """Return up to ``limit`` records in ``status``, highest priority first."""

        status_filter: dict[str, Any] = {
            "property": STATUS_FIELD,
            "status": {"equals": status.value},
        }
        if edited_before is not None:
            query_filter: dict[str, Any] = {
                "and": [
                    status_filter,
                    {
                        "timestamp": "last_edited_time",
                        "last_edited_time": {"before": edited_before.isoformat()},
                    },
                ],
            }
        else:
            query_filter = status_filter

        records: list[QueueRecord] = []
        cursor: str | None = None
        while len(records) < limit:
            body: dict[str, Any] = {
                "filter": query_filter,
                "sorts": [{"property": PRIORITY_FIELD, "direction": "descending"}],
                "page_size": min(limit - len(records), MAX_PAGE_SIZE),
            }
            if cursor is not None:
                body["start_cursor"] = cursor
            payload = self._request("POST", f"/databases/{self.database_id}/query", json=body)
            try:
                records.extend(parse_page(page) for page in payload.get("results") or [])
            except (KeyError, TypeError, AttributeError) as error:
                raise NotionApiError(f"Unexpected page payload from Notion: {error!r}") from error
            cursor = payload.get("next_cursor")
            if not payload.get("has_more") or cursor is None:
                break
        return records[:limit]

    def update_status(self, record_id: RecordId, update: StatusUpdate) -> None:
        """Overwrite the status field and the error text."""

        self._request(
            "PATCH",
            f"/pages/{record_id}",
            json={"properties": status_properties(update)},
        )

    def _request(self, method: str, url: str, *, json: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self._client.request(method, url, json=json)
        except httpx.TimeoutException as error:
            raise NotionApiError(f"Timeout calling Notion {method} {url}") from error
        except httpx.HTTPError as error:
            raise NotionApiError(f"HTTP error calling Notion {method} {url}: {error}") from error

        if not response.is_success:
            raise NotionApiError(
                f"Notion {method} {url} returned HTTP {response.status_code}: "
                f"{_error_message(response)}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as error:
            raise NotionApiError(f"Notion {method} {url} returned invalid JSON") from error
        if not isinstance(payload, dict):
            raise NotionApiError(f"Notion {method} {url} returned unexpected payload")
        return payload

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> NotionClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def parse_page(page: dict[str, Any]) -> QueueRecord:
    """Convert a Notion page object into a queue record."""

    properties = page.get("properties") or {}
    return QueueRecord(
        record_id=str(page["id"]),
        fields={name: parse_property(value) for name, value in properties.items()},
        last_edited_at=_parse_timestamp(page.get("last_edited_time")),
    )


def parse_property(value: dict[str, Any]) -> FieldValue:
    kind = str(value.get("type", ""))
    if kind in {"rich_text", "title"}:
        return TextValue(
            segments=tuple(
                str(segment.get("plain_text", "")) for segment in value.get(kind) or []
            ),
        )
    if kind == "select":
        selected = value.get("select")
        return SelectValue(name=selected.get("name") if selected else None)
    if kind == "status":
        selected = value.get("status")
        return StatusValue(name=selected.get("name") if selected else None)
    if kind == "number":
        return NumberValue(number=value.get("number"))
    return UnsupportedValue(kind=kind or "unknown")


def status_properties(update: StatusUpdate) -> dict[str, Any]:
    """Overwrite status and error text together; non-failed statuses clear the error."""

    reason = update.reason if update.reason is not None else ""
    return {
        STATUS_FIELD: {"status": {"name": update.status.value}},
        ERROR_FIELD: {"rich_text": rich_text(reason)},
    }


def rich_text(content: str) -> list[dict[str, Any]]:
    """Split text into rich-text objects within Notion's per-object size limit."""

    chunks = [
        content[start : start + MAX_TEXT_CHUNK_CHARS]
        for start in range(0, len(content), MAX_TEXT_CHUNK_CHARS)
    ]
    if len(chunks) > MAX_TEXT_CHUNKS:
        logger.warning(
            "Text of %d chars exceeds Notion limits, keeping first %d chars",
            len(content),
            MAX_TEXT_CHUNK_CHARS * MAX_TEXT_CHUNKS,
        )
        chunks = chunks[:MAX_TEXT_CHUNKS]
    return [{"type": "text", "text": {"content": chunk}} for chunk in chunks]


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return response.text[:200]


def _parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
