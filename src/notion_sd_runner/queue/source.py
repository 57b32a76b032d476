"""Queue source: the only component that reads or writes record state."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable

from notion_sd_runner.notion import NotionApiError
from notion_sd_runner.queue.models import QueueRecord, RecordId, Status, StatusUpdate
from notion_sd_runner.queue.shutdown import ShutdownSignal

logger = logging.getLogger(__name__)

DEFAULT_EMPTY_QUEUE_BACKOFF_SECONDS = 30.0
RECONCILE_BATCH_SIZE = 100


class FetchError(RuntimeError):
    """Store query failed; the caller backs off and retries."""

    transient = True


class PersistError(RuntimeError):
    """Store write failed."""


class QueueShutdown(RuntimeError):
    """Shutdown interrupted a wait for new work."""


class RecordStore(Protocol):
    """Store operations the queue source needs."""

    def query_records(
        self,
        status: Status,
        *,
        limit: int = 1,
        edited_before: datetime | None = None,
    ) -> list[QueueRecord]:
        """Return records in ``status`` ordered by descending priority."""
        raise NotImplementedError

    def update_status(self, record_id: RecordId, update: StatusUpdate) -> None:
        """Overwrite one record's status fields."""
        raise NotImplementedError


class QueueSource(Protocol):
    """Interface the run loop uses to pull work and persist status."""

    def fetch_next(self) -> QueueRecord:
        """Block until an ``On queue`` record is available and return it."""
        raise NotImplementedError

    def mark(self, record_id: RecordId, update: StatusUpdate) -> None:
        """Persist a status update for one record."""
        raise NotImplementedError


@runtime_checkable
class ReconcilingQueueSource(Protocol):
    """Optional hook to requeue records left ``In progress`` by a crash."""

    def reconcile_stale(self, older_than: timedelta) -> list[RecordId]:
        """Reset stale claims to ``On queue`` and return their ids."""
        raise NotImplementedError


class NotionQueueSource:
    """Queue source over a Notion database with backoff on an empty queue."""

    def __init__(
        self,
        *,
        store: RecordStore,
        shutdown: ShutdownSignal | None = None,
        empty_queue_backoff_seconds: float = DEFAULT_EMPTY_QUEUE_BACKOFF_SECONDS,
        sleep: Callable[[float], bool] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.shutdown = shutdown or ShutdownSignal()
        self.empty_queue_backoff_seconds = empty_queue_backoff_seconds
        self._sleep = sleep or self.shutdown.sleep
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def fetch_next(self) -> QueueRecord:
        """Return the highest-priority queued record, waiting while the queue is empty.

        Raises:
            FetchError: the store query failed; no internal retry.
            QueueShutdown: shutdown was requested while waiting.
        """

        while True:
            if self.shutdown.requested:
                raise QueueShutdown("Shutdown requested before fetching next record.")
            try:
                records = self.store.query_records(Status.ON_QUEUE, limit=1)
            except NotionApiError as error:
                raise FetchError(f"Error getting item: {error}") from error
            if records:
                record = records[0]
                logger.info("Fetched record %s", record.record_id)
                logger.debug("Record: %r", record)
                return record

            logger.info(
                "No item in queue, sleeping %gs",
                self.empty_queue_backoff_seconds,
            )
            if not self._sleep(self.empty_queue_backoff_seconds):
                raise QueueShutdown("Shutdown requested while waiting for queued records.")

    def mark(self, record_id: RecordId, update: StatusUpdate) -> None:
        try:
            self.store.update_status(record_id, update)
        except NotionApiError as error:
            raise PersistError(
                f"Failed to mark record {record_id} as {update.status.value}: {error}",
            ) from error
        logger.info("Marked record %s as %s", record_id, update.status.value)

    def reconcile_stale(self, older_than: timedelta) -> list[RecordId]:
        """Requeue ``In progress`` records not edited within ``older_than``.

        Records left behind by a crash between claiming and reporting would
        otherwise stay ``In progress`` forever.
        """

        cutoff = self._clock() - older_than
        try:
            stale = self.store.query_records(
                Status.IN_PROGRESS,
                limit=RECONCILE_BATCH_SIZE,
                edited_before=cutoff,
            )
        except NotionApiError as error:
            raise FetchError(f"Error listing in-progress records: {error}") from error

        reset: list[RecordId] = []
        for record in stale:
            if record.last_edited_at is not None and record.last_edited_at >= cutoff:
                continue
            self.mark(record.record_id, StatusUpdate.on_queue())
            logger.warning(
                "Requeued stale record %s (last edited %s)",
                record.record_id,
                record.last_edited_at.isoformat() if record.last_edited_at else "unknown",
            )
            reset.append(record.record_id)
        return reset
