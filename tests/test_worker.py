from __future__ import annotations

import logging
from datetime import timedelta

import allure
import pytest

from notion_sd_runner.queue.models import (
    CommonArgs,
    ExecutionResult,
    Failed,
    Item,
    NumberValue,
    Ok,
    QueueRecord,
    Status,
    StatusUpdate,
    Txt2Img,
)
from notion_sd_runner.queue.shutdown import ShutdownSignal
from notion_sd_runner.queue.source import FetchError, PersistError, QueueShutdown
from notion_sd_runner.queue.worker import (
    Iteration,
    QueueWorker,
    WorkerRunSummary,
    WorkerState,
)

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("Run Loop"),
]


class FakeSource:
    """Scripted queue source; raises QueueShutdown once the script runs out."""

    def __init__(self, fetches: list[QueueRecord | Exception]) -> None:
        self._fetches = list(fetches)
        self.marks: list[tuple[str, StatusUpdate]] = []
        self.fail_marks: set[Status] = set()
        self.reconciled: list[timedelta] = []

    def fetch_next(self) -> QueueRecord:
        if not self._fetches:
            raise QueueShutdown("script exhausted")
        response = self._fetches.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def mark(self, record_id: str, update: StatusUpdate) -> None:
        if update.status in self.fail_marks:
            raise PersistError(f"cannot write {update.status.value}")
        self.marks.append((record_id, update))

    def reconcile_stale(self, older_than: timedelta) -> list[str]:
        self.reconciled.append(older_than)
        return ["stale-1"]


class FakeExecutor:
    def __init__(self, outcome: Ok | Failed | None = None) -> None:
        self.outcome = outcome or Ok()
        self.items: list[Item] = []

    def run(self, item: Item) -> ExecutionResult:
        self.items.append(item)
        return ExecutionResult(record_id=item.record_id, outcome=self.outcome)


class RecordingShutdown(ShutdownSignal):
    def __init__(self) -> None:
        super().__init__()
        self.sleeps: list[float] = []

    def sleep(self, seconds: float) -> bool:
        self.sleeps.append(seconds)
        return not self.requested


def _worker(
    source: FakeSource,
    executor: FakeExecutor | None = None,
    **kwargs: float,
) -> tuple[QueueWorker, RecordingShutdown]:
    shutdown = RecordingShutdown()
    worker = QueueWorker(
        source=source,
        executor=executor or FakeExecutor(),
        shutdown=shutdown,
        **kwargs,
    )
    return worker, shutdown


def test_run_once_claims_runs_and_reports_done(make_record) -> None:
    source = FakeSource([make_record("page-1", Steps=NumberValue(number=25))])
    executor = FakeExecutor()
    worker, _ = _worker(source, executor)

    summary = worker.run_once()

    assert summary == WorkerRunSummary(processed=1, succeeded=1)
    assert executor.items == [
        Item(
            record_id="page-1",
            command=Txt2Img(common_args=CommonArgs(prompt="a cat", steps=25)),
        ),
    ]
    assert source.marks == [
        ("page-1", StatusUpdate.in_progress()),
        ("page-1", StatusUpdate.done()),
    ]


def test_run_once_reports_execution_failure(make_record) -> None:
    source = FakeSource([make_record("page-2")])
    worker, _ = _worker(source, FakeExecutor(Failed(reason="Failed to run command: boom")))

    summary = worker.run_once()

    assert summary == WorkerRunSummary(processed=1, failed=1)
    assert source.marks == [
        ("page-2", StatusUpdate.in_progress()),
        ("page-2", StatusUpdate.failed("Failed to run command: boom")),
    ]


def test_decode_failure_skips_claim_and_execution(make_record) -> None:
    record = make_record("page-3", Width=NumberValue(number=512))
    source = FakeSource([record])
    executor = FakeExecutor()
    worker, _ = _worker(source, executor)

    summary = worker.run_once()

    assert summary.decode_failures == 1
    assert summary.failed == 1
    assert executor.items == []
    assert len(source.marks) == 1
    record_id, update = source.marks[0]
    assert record_id == "page-3"
    assert update.status is Status.FAILED
    assert update.reason is not None
    assert update.reason.startswith("Couldn't convert record: Width and Height")


def test_claim_failure_does_not_run_job(make_record) -> None:
    source = FakeSource([make_record("page-4")])
    source.fail_marks = {Status.IN_PROGRESS}
    executor = FakeExecutor()
    worker, _ = _worker(source, executor)

    summary = worker.run_once()

    assert summary.persist_errors == 1
    assert summary.succeeded == 0
    assert executor.items == []
    assert source.marks == []


def test_claim_failure_backs_off_before_refetch(make_record) -> None:
    source = FakeSource([make_record("page-4"), make_record("page-4")])
    source.fail_marks = {Status.IN_PROGRESS}
    worker, shutdown = _worker(source, error_backoff_seconds=60)

    summary = worker.run_forever()

    assert summary.persist_errors == 2
    assert shutdown.sleeps == [60, 60]


def test_unwritable_decode_failure_backs_off_before_refetch(make_record) -> None:
    record = make_record("page-12", Width=NumberValue(number=512))
    source = FakeSource([record, record])
    source.fail_marks = {Status.FAILED}
    worker, shutdown = _worker(source, error_backoff_seconds=60)

    summary = worker.run_forever()

    assert summary.decode_failures == 2
    assert summary.persist_errors == 2
    assert shutdown.sleeps == [60, 60]


def test_report_failure_after_run_does_not_back_off(make_record) -> None:
    source = FakeSource([make_record("page-13")])
    source.fail_marks = {Status.DONE}
    worker, shutdown = _worker(source, error_backoff_seconds=60)

    worker.run_forever()

    assert shutdown.sleeps == []


def test_report_failure_is_logged_and_next_iteration_proceeds(
    make_record,
    caplog: pytest.LogCaptureFixture,
) -> None:
    source = FakeSource([make_record("page-5"), make_record("page-6")])
    source.fail_marks = {Status.DONE}
    executor = FakeExecutor()
    worker, _ = _worker(source, executor)

    with caplog.at_level(logging.ERROR, logger="notion_sd_runner.queue.worker"):
        summary = worker.run_forever()

    assert summary.processed == 2
    assert summary.persist_errors == 2
    assert [item.record_id for item in executor.items] == ["page-5", "page-6"]
    assert "Could not report outcome of record page-5" in caplog.text
    assert "Could not report outcome of record page-6" in caplog.text


def test_fetch_error_backs_off_and_retries(make_record) -> None:
    source = FakeSource([FetchError("Error getting item: offline"), make_record("page-7")])
    worker, shutdown = _worker(source, error_backoff_seconds=60)

    summary = worker.run_forever()

    assert shutdown.sleeps == [60]
    assert summary.fetch_errors == 1
    assert summary.succeeded == 1


def test_unexpected_error_is_logged_and_backed_off(
    make_record,
    caplog: pytest.LogCaptureFixture,
) -> None:
    source = FakeSource([RuntimeError("kaboom"), make_record("page-8")])
    worker, shutdown = _worker(source, error_backoff_seconds=5)

    with caplog.at_level(logging.ERROR, logger="notion_sd_runner.queue.worker"):
        summary = worker.run_forever()

    assert "Unexpected worker error" in caplog.text
    assert shutdown.sleeps == [5]
    assert summary.succeeded == 1


def test_run_forever_returns_when_shutdown_already_requested(make_record) -> None:
    source = FakeSource([make_record("page-9")])
    worker, shutdown = _worker(source)
    shutdown.request(reason="test")

    summary = worker.run_forever()

    assert summary == WorkerRunSummary()
    assert source.marks == []


def test_run_forever_reconciles_stale_claims_when_enabled() -> None:
    source = FakeSource([])
    worker, _ = _worker(source, stale_in_progress_seconds=600)

    worker.run_forever()

    assert source.reconciled == [timedelta(seconds=600)]


def test_run_forever_skips_reconcile_by_default() -> None:
    source = FakeSource([])
    worker, _ = _worker(source)

    worker.run_forever()

    assert source.reconciled == []


def test_step_transitions_follow_lifecycle(make_record) -> None:
    source = FakeSource([make_record("page-10")])
    worker, _ = _worker(source)
    iteration = Iteration(summary=WorkerRunSummary())

    visited = [WorkerState.IDLE]
    state = worker.step(WorkerState.IDLE, iteration)
    while state is not WorkerState.IDLE:
        visited.append(state)
        state = worker.step(state, iteration)

    assert visited == [
        WorkerState.IDLE,
        WorkerState.FETCHING,
        WorkerState.DECODING,
        WorkerState.CLAIMING,
        WorkerState.RUNNING,
        WorkerState.REPORTING,
    ]


def test_decoding_step_routes_failures_to_reporting(make_record) -> None:
    worker, _ = _worker(FakeSource([]))
    iteration = Iteration(
        summary=WorkerRunSummary(),
        record=make_record("page-11", Prompt=None),
    )

    assert worker.step(WorkerState.DECODING, iteration) is WorkerState.REPORTING
    assert iteration.item is None
    assert iteration.result is not None
    assert iteration.result.outcome == Failed(reason="Couldn't convert record: Missing Prompt")
