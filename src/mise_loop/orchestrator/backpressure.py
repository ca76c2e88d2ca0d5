"""Verification commands that gate task completion."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from mise_loop.orchestrator.cancellation import RunContext, supervise_process
from mise_loop.orchestrator.layout import ProjectLayout
from mise_loop.orchestrator.models import CommandResult

logger = logging.getLogger(__name__)

COMMAND_ORDER = ("test", "lint", "build", "typecheck")


@dataclass(slots=True)
class BackpressureReport:
    """Aggregate verification outcome."""

    passed: bool
    results: list[CommandResult] = field(default_factory=list)
    interrupted: bool = False

    @property
    def failed(self) -> list[CommandResult]:
        return [result for result in self.results if not result.passed]


class BackpressureRunner:
    """Run configured commands through the shell and persist their logs.

    Commands are registered with the run context, so a shutdown request
    terminates the running one and no further command starts.
    """

    def __init__(
        self,
        layout: ProjectLayout,
        *,
        timeout_seconds: float = 300,
        context: RunContext | None = None,
    ) -> None:
        self.layout = layout
        self.timeout_seconds = timeout_seconds
        self.context = context

    def run_all(self, cwd: Path, task_id: str, commands: Mapping[str, str]) -> BackpressureReport:
        results: list[CommandResult] = []
        for name, command in ordered_commands(commands):
            if self._stopping():
                logger.warning("Task %s: shutdown requested, skipping %s", task_id, name)
                break
            results.append(self._run_one(cwd=cwd, task_id=task_id, name=name, command=command))
        interrupted = self._stopping() or any(result.interrupted for result in results)
        return BackpressureReport(
            passed=not interrupted and all(result.passed for result in results),
            results=results,
            interrupted=interrupted,
        )

    def _stopping(self) -> bool:
        return self.context is not None and self.context.shutdown_requested()

    def _run_one(self, *, cwd: Path, task_id: str, name: str, command: str) -> CommandResult:
        logger.info("Task %s: running %s (%s)", task_id, name, command)
        log_path = self.layout.logs_dir(task_id) / f"{name}.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("w", encoding="utf-8") as handle:
            process = subprocess.Popen(  # noqa: S602
                command,
                shell=True,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=handle,
                stderr=subprocess.STDOUT,
                text=True,
            )
            exit_code, timed_out, interrupted = supervise_process(
                process,
                context=self.context,
                key=f"{task_id}:{name}",
                timeout_seconds=self.timeout_seconds,
            )
        if timed_out:
            with log_path.open("a", encoding="utf-8") as handle:
                handle.write(f"\n{name} timed out after {self.timeout_seconds:g}s\n")
        output = log_path.read_text("utf-8", errors="replace")
        passed = exit_code == 0 and not timed_out and not interrupted
        if interrupted:
            logger.warning("Task %s: %s interrupted by shutdown", task_id, name)
        elif not passed:
            logger.warning("Task %s: %s failed, see %s", task_id, name, log_path)
        return CommandResult(
            name=name,
            command=command,
            passed=passed,
            output=output,
            log_path=log_path,
            interrupted=interrupted,
        )


def ordered_commands(commands: Mapping[str, str]) -> list[tuple[str, str]]:
    """Known names first in fixed order, then extra names as declared; blanks dropped."""

    names = [name for name in COMMAND_ORDER if name in commands]
    names += [name for name in commands if name not in COMMAND_ORDER]
    return [(name, commands[name].strip()) for name in names if commands[name] and commands[name].strip()]
