"""Single-worker run loop: fetch, decode, claim, run, report."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Protocol

from notion_sd_runner.queue.models import (
    ExecutionResult,
    Failed,
    Item,
    QueueRecord,
    StatusUpdate,
)
from notion_sd_runner.queue.shutdown import ShutdownSignal
from notion_sd_runner.queue.source import (
    FetchError,
    PersistError,
    QueueShutdown,
    QueueSource,
    ReconcilingQueueSource,
)
from notion_sd_runner.queue.translator import DecodeError, decode, encode

logger = logging.getLogger(__name__)

DEFAULT_ERROR_BACKOFF_SECONDS = 60.0
DECODE_FAILURE_PREFIX = "Couldn't convert record: "


class WorkerState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DECODING = "decoding"
    CLAIMING = "claiming"
    RUNNING = "running"
    REPORTING = "reporting"


class Executor(Protocol):
    def run(self, item: Item) -> ExecutionResult:
        """Run one item; failures are returned, never raised."""
        raise NotImplementedError


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    decode_failures: int = 0
    fetch_errors: int = 0
    persist_errors: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.decode_failures += other.decode_failures
        self.fetch_errors += other.fetch_errors
        self.persist_errors += other.persist_errors


@dataclass(slots=True)
class Iteration:
    """Values threaded through one pass of the state machine."""

    summary: WorkerRunSummary
    record: QueueRecord | None = None
    item: Item | None = None
    result: ExecutionResult | None = None


class QueueWorker:
    """Consumes queued records one at a time; runs until shutdown."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        source: QueueSource,
        executor: Executor,
        shutdown: ShutdownSignal | None = None,
        error_backoff_seconds: float = DEFAULT_ERROR_BACKOFF_SECONDS,
        stale_in_progress_seconds: float = 0,
    ) -> None:
        self.source = source
        self.executor = executor
        self.shutdown = shutdown or ShutdownSignal()
        self.error_backoff_seconds = error_backoff_seconds
        self.stale_in_progress_seconds = stale_in_progress_seconds
        self._transitions = {
            WorkerState.IDLE: self._idle,
            WorkerState.FETCHING: self._fetching,
            WorkerState.DECODING: self._decoding,
            WorkerState.CLAIMING: self._claiming,
            WorkerState.RUNNING: self._running,
            WorkerState.REPORTING: self._reporting,
        }

    def run_once(self) -> WorkerRunSummary:
        """Drive the state machine from ``IDLE`` back to ``IDLE`` once.

        Raises:
            QueueShutdown: shutdown was requested while waiting for work.
        """

        iteration = Iteration(summary=WorkerRunSummary())
        state = self.step(WorkerState.IDLE, iteration)
        while state is not WorkerState.IDLE:
            state = self.step(state, iteration)
        return iteration.summary

    def run_forever(self) -> WorkerRunSummary:
        """Loop until shutdown; no error escapes an iteration."""

        aggregate = WorkerRunSummary()
        with self.shutdown.signal_handlers():
            self._reconcile_on_start()
            while not self.shutdown.requested:
                try:
                    aggregate.add(self.run_once())
                except QueueShutdown:
                    break
                except Exception:
                    logger.exception("Unexpected worker error")
                    self._backoff()
        logger.info("Worker stopped (%s)", self.shutdown.reason or "no reason")
        return aggregate

    def step(self, state: WorkerState, iteration: Iteration) -> WorkerState:
        return self._transitions[state](iteration)

    def _idle(self, iteration: Iteration) -> WorkerState:  # noqa: ARG002
        if self.shutdown.requested:
            raise QueueShutdown("Shutdown requested.")
        return WorkerState.FETCHING

    def _fetching(self, iteration: Iteration) -> WorkerState:
        try:
            iteration.record = self.source.fetch_next()
        except FetchError as error:
            logger.warning("%s", error)
            iteration.summary.fetch_errors += 1
            self._backoff()
            return WorkerState.IDLE
        return WorkerState.DECODING

    def _decoding(self, iteration: Iteration) -> WorkerState:
        record = iteration.record
        if record is None:
            raise RuntimeError("Decoding requires a fetched record.")
        iteration.summary.processed += 1
        try:
            iteration.item = decode(record)
        except DecodeError as error:
            logger.warning(
                "Failed to convert record %s, marking it as failed. %s",
                record.record_id,
                error,
            )
            iteration.summary.decode_failures += 1
            iteration.result = ExecutionResult(
                record_id=record.record_id,
                outcome=Failed(reason=f"{DECODE_FAILURE_PREFIX}{error}"),
            )
            return WorkerState.REPORTING
        return WorkerState.CLAIMING

    def _claiming(self, iteration: Iteration) -> WorkerState:
        item = iteration.item
        if item is None:
            raise RuntimeError("Claiming requires a decoded item.")
        try:
            self.source.mark(item.record_id, StatusUpdate.in_progress())
        except PersistError as error:
            logger.error("Could not claim record %s, skipping run: %s", item.record_id, error)
            iteration.summary.persist_errors += 1
            # Record stays On queue and comes back on the next fetch.
            self._backoff()
            return WorkerState.IDLE
        return WorkerState.RUNNING

    def _running(self, iteration: Iteration) -> WorkerState:
        if iteration.item is None:
            raise RuntimeError("Running requires a decoded item.")
        iteration.result = self.executor.run(iteration.item)
        return WorkerState.REPORTING

    def _reporting(self, iteration: Iteration) -> WorkerState:
        result = iteration.result
        if result is None:
            raise RuntimeError("Reporting requires an execution result.")
        if result.ok:
            iteration.summary.succeeded += 1
        else:
            iteration.summary.failed += 1
        try:
            self.source.mark(result.record_id, encode(result))
        except PersistError as error:
            logger.error(
                "Could not report outcome of record %s, its status is now stale: %s",
                result.record_id,
                error,
            )
            iteration.summary.persist_errors += 1
            if iteration.item is None:
                # Never claimed, so the record is still On queue.
                self._backoff()
        return WorkerState.IDLE

    def _backoff(self) -> None:
        logger.info("Sleeping %gs", self.error_backoff_seconds)
        self.shutdown.sleep(self.error_backoff_seconds)

    def _reconcile_on_start(self) -> None:
        if self.stale_in_progress_seconds <= 0:
            return
        if not isinstance(self.source, ReconcilingQueueSource):
            return
        try:
            reset = self.source.reconcile_stale(
                timedelta(seconds=self.stale_in_progress_seconds),
            )
        except (FetchError, PersistError) as error:
            logger.warning("Stale record reconciliation failed: %s", error)
            return
        if reset:
            logger.info("Requeued %d stale in-progress record(s)", len(reset))

