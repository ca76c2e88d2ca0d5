"""Controllers for loop CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from mise_loop.config import Settings
from mise_loop.orchestrator.backend import create_engine
from mise_loop.orchestrator.board import get_ready_tasks, get_task, load_board
from mise_loop.orchestrator.clarifications import ClarificationStore
from mise_loop.orchestrator.errors import BoardValidationError
from mise_loop.orchestrator.loop import AnswerProvider, LoopController, LoopOptions, LoopSummary
from mise_loop.orchestrator.models import TaskStatus
from mise_loop.orchestrator.progress import ProgressLedger, format_entry
from mise_loop.orchestrator.scheduler import ParallelMode
from mise_loop.orchestrator.status_store import StatusStore


@dataclass(slots=True)
class LoopCommand:
    """CLI input for the execution loop."""

    project_dir: Path
    max_retries: int | None = None
    skip_failures: bool | None = None
    parallel: ParallelMode | None = None
    max_tasks: int | None = None


@dataclass(slots=True)
class RunTaskCommand:
    """CLI input for a single sequential task run."""

    project_dir: Path
    task_id: str | None = None
    max_retries: int | None = None


@dataclass(slots=True)
class ProjectCommand:
    """CLI input for read-only project inspection."""

    project_dir: Path


@dataclass(slots=True)
class LogCommand:
    project_dir: Path
    limit: int = 20


@dataclass(slots=True)
class AnswerCommand:
    project_dir: Path
    task_id: str
    text: str


@dataclass(slots=True)
class ResetCommand:
    project_dir: Path
    task_id: str


@dataclass(slots=True)
class CommandResult:
    """Rendered lines plus overall outcome."""

    lines: list[str] = field(default_factory=list)
    success: bool = True


class LoopCliController:
    """Coordinates loop execution and inspection CLI operations."""

    def __init__(self, *, answer_provider: AnswerProvider | None = None) -> None:
        self.answer_provider = answer_provider

    def loop(self, command: LoopCommand) -> CommandResult:
        settings = Settings.load(command.project_dir)
        load_board(settings.layout.board_path)
        controller = LoopController(
            settings=settings,
            engine=create_engine(settings),
            answer_provider=self.answer_provider,
        )
        summary = controller.run(
            LoopOptions(
                max_retries=command.max_retries,
                skip_failures=command.skip_failures,
                parallel=command.parallel,
                max_tasks=command.max_tasks,
            ),
        )
        return _summary_result(summary)

    def run_task(self, command: RunTaskCommand) -> CommandResult:
        settings = Settings.load(command.project_dir)
        board = load_board(settings.layout.board_path)
        status_store = StatusStore(settings.layout)
        task_id = command.task_id
        if task_id is None:
            ready = get_ready_tasks(board, status_store.status_of)
            if not ready:
                return CommandResult(
                    lines=["No ready tasks. All tasks are complete or have unmet dependencies."],
                )
            task_id = ready[0].id
        elif get_task(board, task_id) is None:
            raise BoardValidationError(f"Task not found: {task_id}")

        controller = LoopController(
            settings=settings,
            engine=create_engine(settings),
            answer_provider=self.answer_provider,
        )
        summary = controller.run(
            LoopOptions(
                max_retries=command.max_retries,
                skip_failures=False,
                parallel="off",
                max_tasks=1,
                task_id=task_id,
            ),
        )
        if summary.executed == 0 and not summary.interrupted:
            status = status_store.status_of(task_id).value
            return CommandResult(
                lines=[f"Task {task_id} is not ready (status={status}, or dependencies incomplete)."],
                success=False,
            )
        return _summary_result(summary)

    def status(self, command: ProjectCommand) -> list[str]:
        settings = Settings.load(command.project_dir)
        board = load_board(settings.layout.board_path)
        status_store = StatusStore(settings.layout)
        records = {record.task_id: record for record in status_store.list_records()}
        ready_ids = {task.id for task in get_ready_tasks(board, status_store.status_of)}

        width = max([len(task.id) for task in board.tasks] + [2])
        lines = [
            f"Project: {board.project or settings.project.name}",
            f"{'ID'.ljust(width)}  GRP  {'STATUS'.ljust(11)}  TITLE",
        ]
        counts: dict[str, int] = {}
        for task in board.tasks:
            record = records.get(task.id)
            status = record.status if record is not None else TaskStatus.PENDING
            counts[status.value] = counts.get(status.value, 0) + 1
            marker = " *" if task.id in ready_ids else ""
            line = f"{task.id.ljust(width)}  {task.group:>3}  {status.value.ljust(11)}  {task.title}{marker}"
            if record is not None and (record.error or record.note):
                line += f"  ({record.error or record.note})"
            lines.append(line)
        lines.append(
            "Totals: " + " ".join(f"{name}={counts[name]}" for name in sorted(counts)),
        )
        lines.append(f"Ready: {', '.join(sorted(ready_ids)) or '-'}")
        lock_state = "held" if settings.layout.lock_path.exists() else "free"
        lines.append(f"Run lock: {lock_state}")
        return lines

    def log(self, command: LogCommand) -> list[str]:
        settings = Settings.load(command.project_dir)
        with _progress(settings) as progress:
            entries = progress.recent_entries(command.limit)
            total = progress.total_cost()
        if not entries:
            return ["No progress entries yet."]
        return [*(format_entry(entry) for entry in entries), f"Total cost: ${total:.4f}"]

    def questions(self, command: ProjectCommand) -> list[str]:
        settings = Settings.load(command.project_dir)
        pending = ClarificationStore(settings.layout).pending_questions()
        if not pending:
            return ["No pending questions."]
        lines: list[str] = []
        for item in pending:
            lines.append(f"[{item.task_id}] {item.question}")
        lines.append("Answer with: mise-loop answer <TASK_ID> <TEXT>")
        return lines

    def answer(self, command: AnswerCommand) -> list[str]:
        settings = Settings.load(command.project_dir)
        if not command.text.strip():
            raise ValueError("Answer text must not be empty.")
        if get_task(load_board(settings.layout.board_path), command.task_id) is None:
            raise BoardValidationError(f"Task not found: {command.task_id}")
        ClarificationStore(settings.layout).write_answer(command.task_id, command.text)
        return [f"Answer recorded for task {command.task_id}."]

    def reset(self, command: ResetCommand) -> list[str]:
        settings = Settings.load(command.project_dir)
        board = load_board(settings.layout.board_path)
        if get_task(board, command.task_id) is None:
            raise BoardValidationError(f"Task not found: {command.task_id}")
        record = StatusStore(settings.layout).reset(board, command.task_id)
        return [f"Task {record.task_id} reset to {record.status.value}."]


def _summary_result(summary: LoopSummary) -> CommandResult:
    lines = [
        f"Run ID: {summary.run_id}",
        f"Completed: {len(summary.completed)}",
    ]
    if summary.failed:
        lines.append(f"Failed: {len(summary.failed)} ({', '.join(summary.failed)})")
    if summary.skipped:
        lines.append(f"Skipped: {len(summary.skipped)}")
    if summary.merge_conflicts:
        lines.append(f"Re-queued after merge conflict: {', '.join(summary.merge_conflicts)}")
    if summary.blocked:
        lines.append(f"Blocked by missing inputs: {', '.join(summary.blocked)}")
    lines.extend(result.describe_failure() for result in summary.failures)
    if summary.total_cost_usd > 0:
        lines.append(f"Total cost: ${summary.total_cost_usd:.4f}")

    success = not summary.failures and not summary.interrupted
    if summary.interrupted:
        lines.append("Loop interrupted by signal.")
    elif summary.deadlock:
        lines.append("No runnable tasks remain, but the board is not complete.")
    elif success:
        lines.append("Finished without failures.")
    return CommandResult(lines=lines, success=success)


@contextmanager
def _progress(settings: Settings) -> Iterator[ProgressLedger]:
    progress = ProgressLedger(settings.layout.progress_db_path)
    progress.init_schema()
    try:
        yield progress
    finally:
        progress.close()
