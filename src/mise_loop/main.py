"""CLI entrypoint for mise-loop."""

import logging
import os
import sys
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from mise_loop import __version__
from mise_loop.orchestrator.controllers import (
    AnswerCommand,
    CommandResult,
    LogCommand,
    LoopCliController,
    LoopCommand,
    ProjectCommand,
    ResetCommand,
    RunTaskCommand,
)
from mise_loop.orchestrator.errors import (
    BoardNotFoundError,
    BoardValidationError,
    EngineUnavailableError,
    InvalidTransitionError,
    LockContentionError,
)
from mise_loop.orchestrator.scheduler import parse_parallel_mode

click.rich_click.USE_MARKDOWN = True

_T = TypeVar("_T")
_USER_ERRORS = (
    BoardNotFoundError,
    BoardValidationError,
    EngineUnavailableError,
    InvalidTransitionError,
    LockContentionError,
    ValueError,
)

project_dir_option = click.option(
    "--project-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=Path(),
    show_default=True,
    help="Project root containing the `.mise` directory.",
)


@click.group()
@click.version_option(version=__version__, prog_name="mise-loop")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log lifecycle events.")
def mise_loop(verbose: bool) -> None:
    """Run a dependency-ordered board of coding-agent tasks against a git checkout."""

    _configure_logging(verbose=verbose)


@mise_loop.command("loop")
@project_dir_option
@click.option(
    "--skip-failures/--no-skip-failures",
    default=None,
    help="Continue after a failed task instead of stopping.",
)
@click.option("--max-retries", type=click.IntRange(min=0), default=None, help="Verification attempts per task.")
@click.option("--parallel", default=None, help="`off`, `auto` or a positive integer cap.")
@click.option("--max-tasks", type=click.IntRange(min=1), default=None, help="Stop after N executed tasks.")
@click.option("--verbose", is_flag=True, default=False, help="Log lifecycle events.")
def loop_command(  # noqa: PLR0913
    project_dir: Path,
    skip_failures: bool | None,
    max_retries: int | None,
    parallel: str | None,
    max_tasks: int | None,
    verbose: bool,
) -> None:
    """Execute ready tasks until the board drains or a task fails or a signal arrives."""

    if verbose:
        logging.getLogger().setLevel(logging.INFO)
    result = _call(
        lambda: _controller().loop(
            LoopCommand(
                project_dir=project_dir,
                max_retries=max_retries,
                skip_failures=skip_failures,
                parallel=parse_parallel_mode(parallel) if parallel is not None else None,
                max_tasks=max_tasks,
            ),
        ),
    )
    _finish(result)


@mise_loop.command("run")
@project_dir_option
@click.option("--task", "task_id", default=None, help="Task id; defaults to the first ready task.")
@click.option("--max-retries", type=click.IntRange(min=0), default=None, help="Verification attempts.")
def run_command(project_dir: Path, task_id: str | None, max_retries: int | None) -> None:
    """Run one task sequentially in the project directory."""

    result = _call(
        lambda: _controller().run_task(
            RunTaskCommand(project_dir=project_dir, task_id=task_id, max_retries=max_retries),
        ),
    )
    _finish(result)


@mise_loop.command("status")
@project_dir_option
def status_command(project_dir: Path) -> None:
    """Show board tasks with their statuses; ready tasks are marked with `*`."""

    _emit_lines(_call(lambda: _controller().status(ProjectCommand(project_dir=project_dir))))


@mise_loop.command("log")
@project_dir_option
@click.option("-n", "limit", type=click.IntRange(min=1), default=20, show_default=True)
def log_command(project_dir: Path, limit: int) -> None:
    """Show the most recent progress entries."""

    _emit_lines(_call(lambda: _controller().log(LogCommand(project_dir=project_dir, limit=limit))))


@mise_loop.command("questions")
@project_dir_option
def questions_command(project_dir: Path) -> None:
    """List clarification questions waiting for an answer."""

    _emit_lines(_call(lambda: _controller().questions(ProjectCommand(project_dir=project_dir))))


@mise_loop.command("answer")
@project_dir_option
@click.argument("task_id")
@click.argument("text")
def answer_command(project_dir: Path, task_id: str, text: str) -> None:
    """Answer a pending clarification question."""

    _emit_lines(
        _call(
            lambda: _controller().answer(
                AnswerCommand(project_dir=project_dir, task_id=task_id, text=text),
            ),
        ),
    )


@mise_loop.command("reset")
@project_dir_option
@click.argument("task_id")
def reset_command(project_dir: Path, task_id: str) -> None:
    """Move a failed, blocked or skipped task back to pending."""

    _emit_lines(
        _call(lambda: _controller().reset(ResetCommand(project_dir=project_dir, task_id=task_id))),
    )


def _controller() -> LoopCliController:
    answer_provider = _prompt_for_answer if sys.stdin.isatty() else None
    return LoopCliController(answer_provider=answer_provider)


def _prompt_for_answer(task_id: str, question: str) -> str | None:
    click.echo(f"Clarification needed for task {task_id}:")
    click.echo(question)
    answer = click.prompt("Your answer", default="", show_default=False)
    return answer or None


def _call(action: Callable[[], _T]) -> _T:
    try:
        return action()
    except _USER_ERRORS as error:
        raise click.ClickException(str(error)) from error


def _finish(result: CommandResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Loop finished with failures.")


def _configure_logging(*, verbose: bool) -> None:
    level_name = "INFO" if verbose else os.getenv("MISE_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    mise_loop()
