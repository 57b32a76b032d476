"""Subprocess executor for decoded items."""

from __future__ import annotations

import logging
import shlex
import signal
import subprocess
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from notion_sd_runner.queue.models import (
    CommonArgs,
    Command,
    ExecutionResult,
    Failed,
    Item,
    Ok,
    Outcome,
    Txt2Img,
)
from notion_sd_runner.queue.shutdown import ShutdownSignal

logger = logging.getLogger(__name__)

DEFAULT_EXECUTABLE = "conda"
DEFAULT_PREFIX_ARGS: tuple[str, ...] = (
    "run",
    "--no-capture-output",
    "--name=ldm",
    "python",
    "optimizedSD/optimized_txt2img.py",
)
FAILURE_PREFIX = "Failed to run command: "
_POLL_INTERVAL_SECONDS = 0.1


@dataclass(frozen=True, slots=True)
class ToolInvocation:
    """Fixed part of the generator command line."""

    executable: str = DEFAULT_EXECUTABLE
    prefix_args: tuple[str, ...] = DEFAULT_PREFIX_ARGS
    workdir: Path = Path()


def build_args(common_args: CommonArgs) -> list[str]:
    """Render generator flags; the prompt always comes first."""

    args = ["--prompt", common_args.prompt]
    if common_args.steps is not None:
        args.append(f"--ddim_steps={common_args.steps}")
    if common_args.width is not None and common_args.height is not None:
        args.extend([f"--W={common_args.width}", f"--H={common_args.height}"])
    return args


def build_argv(command: Command, invocation: ToolInvocation) -> list[str]:
    if isinstance(command, Txt2Img):
        return [
            invocation.executable,
            *invocation.prefix_args,
            *build_args(command.common_args),
        ]
    raise TypeError(f"Unsupported command: {command!r}")


class JobExecutor:
    """Run one item as a child process and report its outcome.

    ``run`` never raises for launch or exit failures; those come back as
    ``Failed``. The child is terminated on shutdown, on timeout, and on any
    exception unwinding through ``run``.
    """

    def __init__(
        self,
        *,
        invocation: ToolInvocation,
        shutdown: ShutdownSignal | None = None,
        timeout_seconds: float = 0,
        graceful_shutdown_seconds: float = 10,
    ) -> None:
        self.invocation = invocation
        self.shutdown = shutdown or ShutdownSignal()
        self.timeout_seconds = timeout_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds

    def run(self, item: Item) -> ExecutionResult:
        outcome = self._run_command(item.command)
        if isinstance(outcome, Failed):
            logger.warning("Record %s failed: %s", item.record_id, outcome.reason)
        else:
            logger.info("Record %s finished successfully", item.record_id)
        return ExecutionResult(record_id=item.record_id, outcome=outcome)

    def _run_command(self, command: Command) -> Outcome:
        try:
            argv = build_argv(command, self.invocation)
        except TypeError as error:
            return _failed(str(error))

        workdir = self.invocation.workdir
        if not workdir.is_dir():
            return _failed(f"working directory not found: {workdir}")

        logger.info("Will run: %s (cwd=%s)", format_command_line(argv), workdir)
        try:
            process = subprocess.Popen(argv, cwd=workdir)  # noqa: S603
        except FileNotFoundError:
            return _failed(f"command not found: {argv[0]}")
        except (OSError, ValueError) as error:
            return _failed(f"failed to start: {error}")

        try:
            return self._wait(process)
        finally:
            if process.poll() is None:
                _terminate_process(process, grace_seconds=self.graceful_shutdown_seconds)

    def _wait(self, process: subprocess.Popen[bytes]) -> Outcome:
        start_monotonic = time.monotonic()
        shutdown_deadline: float | None = None
        while True:
            returncode = process.poll()
            if returncode is not None:
                return _outcome_from_returncode(returncode)

            now = time.monotonic()
            if self.timeout_seconds > 0 and now - start_monotonic >= self.timeout_seconds:
                _terminate_process(process, grace_seconds=self.graceful_shutdown_seconds)
                return _failed(f"timed out after {self.timeout_seconds:g}s")

            if self.shutdown.requested:
                if shutdown_deadline is None:
                    logger.warning(
                        "Shutdown requested, giving child %d up to %gs to finish",
                        process.pid,
                        self.graceful_shutdown_seconds,
                    )
                    shutdown_deadline = now + max(0.0, self.graceful_shutdown_seconds)
                if now >= shutdown_deadline:
                    _terminate_process(process, grace_seconds=2)
                    return _failed("interrupted by worker shutdown")

            time.sleep(_POLL_INTERVAL_SECONDS)


def _outcome_from_returncode(returncode: int) -> Outcome:
    if returncode == 0:
        return Ok()
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return _failed(f"killed by signal {name}")
    return _failed(f"process exited with code {returncode}")


def _failed(diagnostic: str) -> Failed:
    return Failed(reason=FAILURE_PREFIX + diagnostic)


def _terminate_process(process: subprocess.Popen[bytes], *, grace_seconds: float) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=max(grace_seconds, 0.1))
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def format_command_line(argv: Sequence[str]) -> str:
    return shlex.join(argv)
