"""Loop controller: lock, schedule, execute and merge until the board drains."""

from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta

from mise_loop.config import Settings
from mise_loop.orchestrator.backend import Engine
from mise_loop.orchestrator.board import get_ready_tasks, load_board
from mise_loop.orchestrator.cancellation import RunContext, signal_handlers
from mise_loop.orchestrator.clarifications import ClarificationStore, format_clarification
from mise_loop.orchestrator.errors import EngineUnavailableError, LockContentionError
from mise_loop.orchestrator.lock import FileLockStorage, Heartbeat, RunLock
from mise_loop.orchestrator.merge import MergeCoordinator
from mise_loop.orchestrator.models import (
    Board,
    ExecuteResult,
    FailureKind,
    Task,
    TaskStatus,
    WorktreeHandle,
)
from mise_loop.orchestrator.progress import ProgressLedger
from mise_loop.orchestrator.readiness import gate
from mise_loop.orchestrator.scheduler import ParallelMode, next_batch
from mise_loop.orchestrator.status_store import StatusStore
from mise_loop.orchestrator.worker import TaskExecutor
from mise_loop.orchestrator.worktree import WorktreeManager

logger = logging.getLogger(__name__)

STALE_RECOVERY_NOTE = "Reset from stale lock recovery"
ORPHAN_RECOVERY_NOTE = "Reset from interrupted run"

AnswerProvider = Callable[[str, str], str | None]


@dataclass(slots=True)
class LoopOptions:
    """Per-invocation overrides of station settings."""

    max_retries: int | None = None
    skip_failures: bool | None = None
    parallel: ParallelMode | None = None
    max_tasks: int | None = None
    task_id: str | None = None


@dataclass(slots=True)
class LoopSummary:
    """Aggregate loop counters for CLI reporting."""

    run_id: str
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    merge_conflicts: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    failures: list[ExecuteResult] = field(default_factory=list)
    interrupted: bool = False
    deadlock: bool = False
    total_cost_usd: float = 0.0

    @property
    def executed(self) -> int:
        return len(self.completed) + len(self.failed)


class LoopController:
    """Thin driver wiring every orchestration component together."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        engine: Engine,
        answer_provider: AnswerProvider | None = None,
        environ: Mapping[str, str] | None = None,
        install_signal_handlers: bool = True,
    ) -> None:
        self.settings = settings
        self.layout = settings.layout
        self.engine = engine
        self.answer_provider = answer_provider
        self.environ = environ
        self.install_signal_handlers = install_signal_handlers
        self.status_store = StatusStore(self.layout)
        self.clarifications = ClarificationStore(self.layout)
        self.worktrees = WorktreeManager(self.layout)
        self.merger = MergeCoordinator(
            self.layout,
            keep_conflicting_branches=settings.mode.keep_conflicting_branches,
        )
        self.lock = RunLock(
            FileLockStorage(self.layout.lock_path),
            stale_after=timedelta(seconds=settings.runtime.stale_threshold_seconds),
            on_stale_recovered=self._recover_stale,
        )
        self.context = RunContext(grace_period_seconds=settings.runtime.grace_period_seconds)

    def run(self, options: LoopOptions | None = None) -> LoopSummary:
        options = options or LoopOptions()
        if not self.engine.check():
            raise EngineUnavailableError(
                f"Engine {self.engine.name!r} is not available. Install it or configure another engine.",
            )
        if not self.lock.acquire():
            raise LockContentionError(
                f"Another loop is already running for {self.layout.project_dir} (lock: {self.layout.lock_path}).",
            )
        heartbeat = Heartbeat(self.lock, interval=self.settings.runtime.heartbeat_interval_seconds)
        heartbeat.start()
        progress = ProgressLedger(self.layout.progress_db_path)
        run_id = str(uuid.uuid4())
        self.context.run_id = run_id
        summary = LoopSummary(run_id=run_id)
        try:
            progress.init_schema()
            self._recover_orphans()
            executor = TaskExecutor(
                settings=self.settings,
                status_store=self.status_store,
                engine=self.engine,
                progress=progress,
                context=self.context,
                clarifications=self.clarifications,
                environ=self.environ,
            )
            if self.install_signal_handlers:
                with signal_handlers(self.context):
                    self._drive(executor, options=options, summary=summary)
            else:
                self._drive(executor, options=options, summary=summary)
        finally:
            summary.interrupted = self.context.shutdown_requested()
            self.context.shutdown(progress=progress, heartbeat=heartbeat, lock=self.lock)
            summary.total_cost_usd = progress.total_cost()
            progress.close()
        return summary

    def _recover_orphans(self) -> None:
        # Holding the lock means no other loop owns these records.
        orphaned = self.status_store.reset_in_progress(ORPHAN_RECOVERY_NOTE)
        if orphaned:
            logger.warning("Reset %d tasks left in progress by a previous run: %s", len(orphaned), ", ".join(orphaned))

    def _recover_stale(self) -> None:
        reset = self.status_store.reset_in_progress(STALE_RECOVERY_NOTE)
        if reset:
            logger.warning("Reset %d in-progress tasks from stale lock: %s", len(reset), ", ".join(reset))

    def _drive(  # noqa: C901, PLR0912
        self,
        executor: TaskExecutor,
        *,
        options: LoopOptions,
        summary: LoopSummary,
    ) -> None:
        mode = self.settings.mode
        max_retries = options.max_retries if options.max_retries is not None else mode.max_retries
        skip_failures = options.skip_failures if options.skip_failures is not None else mode.skip_failures
        parallel = options.parallel if options.parallel is not None else mode.parallel
        environ = self.environ if self.environ is not None else os.environ

        while not self.context.shutdown_requested():
            if options.max_tasks is not None and summary.executed >= options.max_tasks:
                break
            board = load_board(self.layout.board_path)
            status_of = self.status_store.status_of
            ready = get_ready_tasks(board, status_of)
            if options.task_id is not None:
                ready = [task for task in ready if task.id == options.task_id]
            if not ready:
                remaining = [task.id for task in board.tasks if status_of(task.id) != TaskStatus.COMPLETE]
                if remaining and options.task_id is None:
                    summary.deadlock = True
                    logger.warning("No runnable tasks; incomplete: %s", ", ".join(remaining))
                break

            runnable, blocked = gate(ready, environ)
            for task, readiness in blocked:
                logger.warning("Task %s blocked: %s", task.id, ", ".join(readiness.missing))
                if task.id not in summary.blocked:
                    summary.blocked.append(task.id)
            if not runnable:
                logger.warning("All ready tasks are blocked by missing inputs.")
                break

            batch = next_batch(
                board,
                runnable,
                parallel=parallel,
                max_parallel=mode.max_parallel,
                status_of=status_of,
            )
            if batch.is_empty:
                break

            if batch.is_parallel and self.worktrees.is_supported():
                should_stop = self._run_parallel(
                    executor,
                    board=board,
                    tasks=batch.tasks,
                    run_id=summary.run_id,
                    max_retries=max_retries,
                    skip_failures=skip_failures,
                    summary=summary,
                )
            else:
                should_stop = False
                for task in batch.tasks:
                    if self._run_single(
                        executor,
                        board=board,
                        task=task,
                        run_id=summary.run_id,
                        max_retries=max_retries,
                        skip_failures=skip_failures,
                        summary=summary,
                    ):
                        should_stop = True
                        break
            if should_stop:
                break

    def _run_single(  # noqa: PLR0913
        self,
        executor: TaskExecutor,
        *,
        board: Board,
        task: Task,
        run_id: str,
        max_retries: int,
        skip_failures: bool,
        summary: LoopSummary,
    ) -> bool:
        """Execute one task in the project dir; True when the loop must stop."""

        logger.info("Running task %s: %s", task.id, task.title)
        result = executor.execute_task(
            task,
            board=board,
            cwd=self.layout.project_dir,
            run_id=run_id,
            max_retries=max_retries,
            clarifications=self._resume_clarification(task.id),
        )
        if result.failure == FailureKind.CLARIFICATION and self.settings.mode.attended:
            result = self._answer_and_retry(
                executor,
                board=board,
                task=task,
                result=result,
                run_id=run_id,
                max_retries=max_retries,
            )
        return self._record(result, skip_failures=skip_failures, summary=summary)

    def _answer_and_retry(  # noqa: PLR0913
        self,
        executor: TaskExecutor,
        *,
        board: Board,
        task: Task,
        result: ExecuteResult,
        run_id: str,
        max_retries: int,
    ) -> ExecuteResult:
        question = self.clarifications.read_question(task.id) or result.error or ""
        answer = self._obtain_answer(task.id, question)
        if answer is None:
            logger.warning("No answer for task %s; it stays blocked", task.id)
            return result
        self.clarifications.clear_question(task.id)
        return executor.execute_task(
            task,
            board=board,
            cwd=self.layout.project_dir,
            run_id=run_id,
            max_retries=max_retries,
            clarifications=format_clarification(question, answer),
        )

    def _resume_clarification(self, task_id: str) -> str | None:
        """Answer recorded while the loop was stopped, or None; clears a stale question."""

        context = self.clarifications.take_answered(task_id)
        if context is not None:
            logger.info("Resuming task %s with its recorded answer", task_id)
            return context
        if self.clarifications.read_question(task_id) is not None:
            logger.warning("Discarding unanswered question for task %s before rerun", task_id)
            self.clarifications.clear_question(task_id)
        return None

    def _obtain_answer(self, task_id: str, question: str) -> str | None:
        if self.answer_provider is not None:
            answer = self.answer_provider(task_id, question)
            if answer and answer.strip():
                return answer.strip()
        runtime = self.settings.runtime
        logger.warning(
            "Task %s needs clarification; waiting up to %ss for `mise-loop answer %s`",
            task_id,
            runtime.clarification_timeout_seconds,
            task_id,
        )
        return self.clarifications.wait_for_answer(
            task_id,
            timeout_seconds=runtime.clarification_timeout_seconds,
            poll_seconds=runtime.clarification_poll_seconds,
            stop_requested=self.context.shutdown_requested,
        )

    def _run_parallel(  # noqa: PLR0913
        self,
        executor: TaskExecutor,
        *,
        board: Board,
        tasks: list[Task],
        run_id: str,
        max_retries: int,
        skip_failures: bool,
        summary: LoopSummary,
    ) -> bool:
        """Fan a batch out across worktrees, then merge; True when the loop must stop."""

        logger.info("Running %d tasks in parallel: %s", len(tasks), ", ".join(task.id for task in tasks))
        handles: dict[str, WorktreeHandle] = {}
        results: dict[str, ExecuteResult] = {}
        try:
            for task in tasks:
                handles[task.id] = self.worktrees.create(task.id)
            with ThreadPoolExecutor(max_workers=len(tasks), thread_name_prefix="mise-task") as pool:
                futures = {
                    task.id: pool.submit(
                        executor.execute_task,
                        task,
                        board=board,
                        cwd=handles[task.id].path,
                        run_id=run_id,
                        max_retries=max_retries,
                        clarifications=self._resume_clarification(task.id),
                        complete_on_success=False,
                    )
                    for task in tasks
                }
                for task_id, future in futures.items():
                    results[task_id] = future.result()
        finally:
            for task_id in handles:
                self.worktrees.remove_dir(task_id)

        succeeded = [task for task in tasks if results[task.id].success]
        for task in tasks:
            if not results[task.id].success:
                self.worktrees.remove_branch(task.id)
        if self.context.shutdown_requested():
            for task in succeeded:
                self.worktrees.remove_branch(task.id)
            return True

        merged_any = False
        if succeeded:
            merge = self.merger.merge_group([task.id for task in succeeded])
            by_id = {task.id: task for task in succeeded}
            for task_id in merge.merged_tasks:
                executor.complete(by_id[task_id], board=board, result=results[task_id], run_id=run_id)
                summary.completed.append(task_id)
                merged_any = True
            for task_id in merge.failed_tasks:
                executor.requeue_after_conflict(
                    by_id[task_id],
                    board=board,
                    result=results[task_id],
                    run_id=run_id,
                    conflicts=merge.conflicts,
                )
                summary.merge_conflicts.append(task_id)
                summary.failed.append(task_id)
            if not merge.success:
                logger.warning("Merge conflicts detected; re-queued: %s", ", ".join(merge.failed_tasks))

        should_stop = False
        for task in tasks:
            result = results[task.id]
            if result.success:
                continue
            if self._record(result, skip_failures=skip_failures, summary=summary):
                should_stop = True
        if succeeded and not merged_any:
            logger.error("No branch of the batch could be merged; stopping.")
            should_stop = True
        return should_stop

    def _record(self, result: ExecuteResult, *, skip_failures: bool, summary: LoopSummary) -> bool:
        """Count one execution outcome; True when the loop must stop."""

        if result.success:
            if result.task_id not in summary.completed:
                summary.completed.append(result.task_id)
            return False
        if result.failure == FailureKind.INTERRUPTED:
            return True
        if result.failure == FailureKind.READINESS:
            if result.task_id not in summary.blocked:
                summary.blocked.append(result.task_id)
            return not skip_failures
        summary.failed.append(result.task_id)
        summary.failures.append(result)
        if skip_failures:
            summary.skipped.append(result.task_id)
            logger.warning("Task %s failed; continuing (skip failures)", result.task_id)
            return False
        return True
