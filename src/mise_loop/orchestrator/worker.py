"""Execution driver: runs one task through engine, commit, verification and retry."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Mapping
from pathlib import Path

from mise_loop.config import Settings
from mise_loop.orchestrator.backend import Engine, EngineRunRequest, EngineRunResult
from mise_loop.orchestrator.backpressure import BackpressureRunner
from mise_loop.orchestrator.cancellation import RunContext
from mise_loop.orchestrator.clarifications import ClarificationStore
from mise_loop.orchestrator.errors import EngineRunError, GitCommandError
from mise_loop.orchestrator.models import (
    Board,
    ExecuteResult,
    FailureKind,
    ProgressEntry,
    Task,
    TaskStatus,
    TokenUsage,
)
from mise_loop.orchestrator.progress import ProgressLedger
from mise_loop.orchestrator.prompts import build_task_prompt
from mise_loop.orchestrator.readiness import check_task
from mise_loop.orchestrator.status_store import StatusStore
from mise_loop.vcs import git

logger = logging.getLogger(__name__)

CLARIFICATION_NOTE = "Clarification needed"
VERIFICATION_EXHAUSTED = "Backpressure failed after all retries"


class TaskExecutor:
    """Drives a task from ``pending`` to a terminal or blocked state."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        status_store: StatusStore,
        engine: Engine,
        progress: ProgressLedger,
        context: RunContext | None = None,
        backpressure: BackpressureRunner | None = None,
        clarifications: ClarificationStore | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.settings = settings
        self.layout = settings.layout
        self.status_store = status_store
        self.engine = engine
        self.progress = progress
        self.context = context or RunContext(grace_period_seconds=settings.runtime.grace_period_seconds)
        self.backpressure = backpressure or BackpressureRunner(
            self.layout,
            timeout_seconds=settings.runtime.backpressure_timeout_seconds,
            context=self.context,
        )
        self.clarifications = clarifications or ClarificationStore(self.layout)
        self.environ = environ

    def execute_task(  # noqa: C901, PLR0911, PLR0912, PLR0913, PLR0915
        self,
        task: Task,
        *,
        board: Board,
        cwd: Path,
        run_id: str,
        max_retries: int,
        clarifications: str | None = None,
        complete_on_success: bool = True,
    ) -> ExecuteResult:
        """Run ``task`` in ``cwd`` with a bounded number of verification retries.

        With ``complete_on_success=False`` a successful task is left
        ``in_progress`` so the caller can complete it after merging.
        """

        started = time.monotonic()
        usage = TokenUsage()
        prompt = build_task_prompt(
            project=self.settings.project,
            task=task,
            attended=self.settings.mode.attended,
            clarification_path=self.layout.clarification_path(task.id),
            evidence_path=self.layout.evidence_path(task.id),
            clarifications=clarifications,
        )
        interrupted = False
        self.context.add_active_task(task.id)
        attempt = 1
        try:
            while True:
                if self.context.shutdown_requested():
                    # Only a retry has earlier work to record as interrupted.
                    interrupted = attempt > 1
                    return self._interrupted(task, started, usage, attempt=attempt)

                readiness = check_task(task, self.environ if self.environ is not None else os.environ)
                if not readiness.ready:
                    for missing in readiness.missing:
                        logger.warning("Task %s missing input %s", task.id, missing)
                    return self._result(
                        task,
                        started,
                        usage,
                        attempt=attempt,
                        failure=FailureKind.READINESS,
                        error=f"Missing inputs: {', '.join(readiness.missing)}",
                    )

                self.status_store.set_task_status(
                    board,
                    task.id,
                    TaskStatus.IN_PROGRESS,
                    run_id=run_id,
                    attempt=attempt,
                )
                logger.info("Task %s: attempt %d/%d", task.id, attempt, max(1, max_retries))
                baseline = git.snapshot(cwd)
                if self.context.shutdown_requested():
                    interrupted = True
                    return self._interrupted(task, started, usage, attempt=attempt)

                try:
                    engine_result = self._run_engine(task, prompt=prompt, cwd=cwd, run_id=run_id)
                except EngineRunError as error:
                    return self._fail(
                        task,
                        board,
                        started,
                        usage,
                        run_id=run_id,
                        attempt=attempt,
                        failure=FailureKind.ENGINE,
                        error=str(error),
                    )
                _accumulate(usage, engine_result.usage)

                if self.context.shutdown_requested() or engine_result.interrupted:
                    interrupted = True
                    return self._interrupted(task, started, usage, attempt=attempt)

                if engine_result.exit_code != 0:
                    return self._fail(
                        task,
                        board,
                        started,
                        usage,
                        run_id=run_id,
                        attempt=attempt,
                        failure=FailureKind.ENGINE,
                        error=f"Engine exited with code {engine_result.exit_code}",
                    )

                question = self.clarifications.read_question(task.id)
                if question is not None and self.settings.mode.attended:
                    self.status_store.set_task_status(
                        board,
                        task.id,
                        TaskStatus.BLOCKED,
                        run_id=run_id,
                        attempt=attempt,
                        note=CLARIFICATION_NOTE,
                    )
                    return self._result(
                        task,
                        started,
                        usage,
                        attempt=attempt,
                        failure=FailureKind.CLARIFICATION,
                        error=question,
                    )

                try:
                    self._commit_changes(task, cwd=cwd, baseline=baseline, run_id=run_id)
                except GitCommandError as error:
                    return self._fail(
                        task,
                        board,
                        started,
                        usage,
                        run_id=run_id,
                        attempt=attempt,
                        failure=FailureKind.COMMIT,
                        error=f"Commit failed: {error.stderr.strip() or error}",
                    )

                report = self.backpressure.run_all(cwd, task.id, self.settings.backpressure)
                if report.interrupted:
                    interrupted = True
                    return self._interrupted(task, started, usage, attempt=attempt)
                if not report.passed:
                    if attempt < max_retries:
                        logger.warning(
                            "Task %s: backpressure failed (%s), retrying",
                            task.id,
                            ", ".join(result.name for result in report.failed),
                        )
                        self.status_store.set_task_status(
                            board,
                            task.id,
                            TaskStatus.PENDING,
                            run_id=run_id,
                            note=f"Backpressure retry {attempt + 1}",
                        )
                        attempt += 1
                        continue
                    failed = self._fail(
                        task,
                        board,
                        started,
                        usage,
                        run_id=run_id,
                        attempt=attempt,
                        failure=FailureKind.VERIFICATION,
                        error=VERIFICATION_EXHAUSTED,
                    )
                    failed.verification_results = report.results
                    return failed

                if not self.layout.evidence_path(task.id).exists():
                    logger.warning("No evidence file found for task %s", task.id)

                result = self._result(task, started, usage, attempt=attempt)
                result.verification_results = report.results
                if complete_on_success:
                    self.complete(task, board=board, result=result, run_id=run_id)
                return result
        finally:
            if not interrupted:
                self.context.remove_active_task(task.id)

    def complete(self, task: Task, *, board: Board, result: ExecuteResult, run_id: str) -> None:
        """Transition to ``complete`` and record the progress entry."""

        self.status_store.set_task_status(
            board,
            task.id,
            TaskStatus.COMPLETE,
            run_id=run_id,
            attempt=result.attempts,
        )
        self._log_progress(result, status=TaskStatus.COMPLETE.value, run_id=run_id)
        logger.info("Task %s complete in %.1fs", task.id, result.duration_ms / 1000)

    def requeue_after_conflict(
        self,
        task: Task,
        *,
        board: Board,
        result: ExecuteResult,
        run_id: str,
        conflicts: list[str],
    ) -> None:
        """Return an unmerged task to ``pending`` so it runs again on the new trunk."""

        note = f"Merge conflict: {', '.join(conflicts) or 'unknown paths'}"
        self.status_store.set_task_status(board, task.id, TaskStatus.PENDING, run_id=run_id, note=note)
        self._log_progress(result, status=FailureKind.MERGE_CONFLICT.value, run_id=run_id, note=note)

    def _run_engine(self, task: Task, *, prompt: str, cwd: Path, run_id: str) -> EngineRunResult:
        runtime = self.settings.runtime
        request = EngineRunRequest(
            cwd=cwd,
            task_id=task.id,
            model=self.settings.engine.model,
            log_dir=self.layout.logs_dir(task.id),
            timeout_seconds=runtime.engine_timeout_seconds,
            allowed_tools=list(self.settings.engine.allowed_tools),
            max_budget_usd=self.settings.engine.max_budget_usd,
            context=self.context,
            env={
                "MISE_RUN_ID": run_id,
                "MISE_CLARIFICATION_PATH": str(self.layout.clarification_path(task.id)),
                "MISE_EVIDENCE_PATH": str(self.layout.evidence_path(task.id)),
            },
        )
        return self.engine.run(prompt, request)

    def _commit_changes(self, task: Task, *, cwd: Path, baseline: git.FileSnapshot, run_id: str) -> None:
        changed = git.changed_files(cwd, baseline)
        if not changed:
            return
        if not git.is_repo(cwd):
            logger.warning("Task %s changed %d files but %s is not a git repository", task.id, len(changed), cwd)
            return
        git.stage_files(cwd, changed)
        if git.commit_with_trailer(cwd, task_id=task.id, title=task.title, run_id=run_id):
            logger.info("Committed %d changed paths for task %s", len(changed), task.id)

    def _fail(  # noqa: PLR0913
        self,
        task: Task,
        board: Board,
        started: float,
        usage: TokenUsage,
        *,
        run_id: str,
        attempt: int,
        failure: FailureKind,
        error: str,
    ) -> ExecuteResult:
        self.status_store.set_task_status(
            board,
            task.id,
            TaskStatus.FAILED,
            run_id=run_id,
            attempt=attempt,
            error=error,
        )
        result = self._result(task, started, usage, attempt=attempt, failure=failure, error=error)
        self._log_progress(result, status=TaskStatus.FAILED.value, run_id=run_id)
        logger.error("Task %s failed (%s): %s", task.id, failure.value, error)
        return result

    def _interrupted(self, task: Task, started: float, usage: TokenUsage, *, attempt: int) -> ExecuteResult:
        logger.warning("Task %s interrupted before attempt %d finished", task.id, attempt)
        return self._result(
            task,
            started,
            usage,
            attempt=attempt,
            failure=FailureKind.INTERRUPTED,
            error="Interrupted by shutdown request",
        )

    def _result(  # noqa: PLR0913
        self,
        task: Task,
        started: float,
        usage: TokenUsage,
        *,
        attempt: int,
        failure: FailureKind | None = None,
        error: str | None = None,
    ) -> ExecuteResult:
        return ExecuteResult(
            task_id=task.id,
            success=failure is None,
            duration_ms=int((time.monotonic() - started) * 1000),
            attempts=attempt,
            failure=failure,
            error=error,
            tokens_in=usage.input_tokens,
            tokens_out=usage.output_tokens,
            cost_usd=usage.cost_usd,
        )

    def _log_progress(
        self,
        result: ExecuteResult,
        *,
        status: str,
        run_id: str,
        note: str | None = None,
    ) -> None:
        self.progress.log_entry(
            ProgressEntry(
                task_id=result.task_id,
                status=status,
                duration_ms=result.duration_ms,
                tokens_in=result.tokens_in,
                tokens_out=result.tokens_out,
                cost_usd=result.cost_usd,
                run_id=run_id,
                note=note,
            ),
        )


def _accumulate(total: TokenUsage, usage: TokenUsage) -> None:
    if usage.input_tokens is not None:
        total.input_tokens = (total.input_tokens or 0) + usage.input_tokens
    if usage.output_tokens is not None:
        total.output_tokens = (total.output_tokens or 0) + usage.output_tokens
    if usage.cost_usd is not None:
        total.cost_usd = (total.cost_usd or 0.0) + usage.cost_usd
