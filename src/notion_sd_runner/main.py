"""CLI entrypoint for notion-sd-runner."""

import logging
from collections.abc import Callable
from typing import TypeVar

import rich_click as click

from notion_sd_runner import __version__
from notion_sd_runner.controllers import (
    CommandError,
    ReconcileCommand,
    RunnerCliController,
    ShowArgsCommand,
    WorkerCommand,
)

click.rich_click.USE_MARKDOWN = True
CommandT = TypeVar("CommandT")

CONTROLLER = RunnerCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="notion-sd-runner")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging verbosity.",
)
def notion_sd_runner(log_level: str) -> None:
    """Run Stable Diffusion jobs queued in a Notion database.

    Requires `NOTION_TOKEN` and `DATABASE_ID` in the environment.
    """

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@notion_sd_runner.command("worker")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Process one queued record or keep consuming until SIGINT/SIGTERM.",
)
def worker(once: bool) -> None:
    """Consume queued records: claim, run, report."""

    _emit_lines(_invoke(CONTROLLER.run_worker, WorkerCommand(once=once)))


@notion_sd_runner.command("reconcile")
@click.option(
    "--older-than-seconds",
    type=click.IntRange(min=1),
    default=3600,
    show_default=True,
    help="Requeue in-progress records not edited for this long.",
)
def reconcile(older_than_seconds: int) -> None:
    """Reset records stuck `In progress` after a crash back to `On queue`."""

    _emit_lines(
        _invoke(
            CONTROLLER.reconcile,
            ReconcileCommand(older_than_seconds=older_than_seconds),
        ),
    )


@notion_sd_runner.command("args")
@click.option("--prompt", required=True, help="Prompt text.")
@click.option("--steps", type=click.IntRange(min=1), default=None, help="Sampling steps.")
@click.option("--width", type=click.IntRange(min=1), default=None, help="Image width.")
@click.option("--height", type=click.IntRange(min=1), default=None, help="Image height.")
def show_args(prompt: str, steps: int | None, width: int | None, height: int | None) -> None:
    """Print the generator command line a record would launch."""

    _emit_lines(
        _invoke(
            CONTROLLER.show_args,
            ShowArgsCommand(prompt=prompt, steps=steps, width=width, height=height),
        ),
    )


def _invoke(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except CommandError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    notion_sd_runner()
