"""Controllers for worker CLI commands."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from notion_sd_runner.config import Settings
from notion_sd_runner.notion import NotionClient
from notion_sd_runner.queue.executor import (
    JobExecutor,
    ToolInvocation,
    build_argv,
    format_command_line,
)
from notion_sd_runner.queue.models import CommonArgs, Txt2Img
from notion_sd_runner.queue.shutdown import ShutdownSignal
from notion_sd_runner.queue.source import (
    FetchError,
    NotionQueueSource,
    PersistError,
    QueueShutdown,
)
from notion_sd_runner.queue.worker import QueueWorker, WorkerRunSummary


class CommandError(RuntimeError):
    """CLI command cannot proceed: bad configuration or unreachable store."""


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    once: bool


@dataclass(slots=True)
class ReconcileCommand:
    """CLI input for stale claim reconciliation."""

    older_than_seconds: int


@dataclass(slots=True)
class ShowArgsCommand:
    """CLI input for rendering a generator command line."""

    prompt: str
    steps: int | None
    width: int | None
    height: int | None


class RunnerCliController:
    """Wire settings into the queue components for each CLI command."""

    def __init__(self, settings_loader: Callable[[], Settings] | None = None) -> None:
        self._settings_loader = settings_loader

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = self._settings(require_store=True)
        shutdown = ShutdownSignal()
        with _notion_client(settings) as client:
            worker = QueueWorker(
                source=NotionQueueSource(
                    store=client,
                    shutdown=shutdown,
                    empty_queue_backoff_seconds=settings.queue.empty_queue_backoff_seconds,
                ),
                executor=JobExecutor(
                    invocation=_invocation(settings),
                    shutdown=shutdown,
                    timeout_seconds=settings.tool.job_timeout_seconds,
                    graceful_shutdown_seconds=settings.tool.graceful_shutdown_seconds,
                ),
                shutdown=shutdown,
                error_backoff_seconds=settings.queue.error_backoff_seconds,
                stale_in_progress_seconds=settings.queue.stale_in_progress_seconds,
            )
            if command.once:
                try:
                    summary = worker.run_once()
                except QueueShutdown:
                    summary = WorkerRunSummary()
            else:
                summary = worker.run_forever()

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} decode_failures={summary.decode_failures} "
            f"fetch_errors={summary.fetch_errors} persist_errors={summary.persist_errors}",
        ]

    def reconcile(self, command: ReconcileCommand) -> list[str]:
        settings = self._settings(require_store=True)
        with _notion_client(settings) as client:
            source = NotionQueueSource(store=client)
            try:
                reset = source.reconcile_stale(timedelta(seconds=command.older_than_seconds))
            except (FetchError, PersistError) as error:
                raise CommandError(str(error)) from error
        if not reset:
            return ["No stale in-progress records."]
        return [f"Requeued {len(reset)} record(s):", *(f"  {record_id}" for record_id in reset)]

    def show_args(self, command: ShowArgsCommand) -> list[str]:
        settings = self._settings(require_store=False)
        try:
            common_args = CommonArgs(
                prompt=command.prompt,
                steps=command.steps,
                width=command.width,
                height=command.height,
            )
        except ValueError as error:
            raise CommandError(str(error)) from error
        argv = build_argv(Txt2Img(common_args=common_args), _invocation(settings))
        return [f"cwd: {settings.tool.workdir}", format_command_line(argv)]

    def _settings(self, *, require_store: bool) -> Settings:
        try:
            loader = self._settings_loader or Settings.from_env
            settings = loader()
            if require_store:
                settings.validate()
        except ValueError as error:
            raise CommandError(str(error)) from error
        return settings


def _invocation(settings: Settings) -> ToolInvocation:
    return ToolInvocation(
        executable=settings.tool.executable,
        prefix_args=settings.tool.prefix_args,
        workdir=settings.tool.workdir,
    )


@contextmanager
def _notion_client(settings: Settings) -> Iterator[NotionClient]:
    client = NotionClient(
        token=settings.notion.token,
        database_id=settings.notion.database_id,
        base_url=settings.notion.base_url,
        api_version=settings.notion.api_version,
        timeout_seconds=settings.notion.request_timeout_seconds,
        max_retries=settings.notion.max_retries,
    )
    try:
        yield client
    finally:
        client.close()
