from __future__ import annotations

import threading
import time
from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from conftest import git
from mise_loop.config import Settings
from mise_loop.orchestrator.backend import create_engine
from mise_loop.orchestrator.board import get_task, load_board
from mise_loop.orchestrator.cancellation import RunContext
from mise_loop.orchestrator.clarifications import ClarificationStore, format_clarification
from mise_loop.orchestrator.models import FailureKind, TaskStatus
from mise_loop.orchestrator.progress import ProgressLedger
from mise_loop.orchestrator.status_store import StatusStore
from mise_loop.orchestrator.worker import CLARIFICATION_NOTE, VERIFICATION_EXHAUSTED, TaskExecutor

pytestmark = [
    allure.epic("Execution Loop"),
    allure.feature("Task Execution Driver"),
]


@pytest.fixture()
def executor_for(tmp_path: Path):
    ledgers: list[ProgressLedger] = []

    def _build(
        project_dir: Path,
        *,
        context: RunContext | None = None,
        environ: dict[str, str] | None = None,
    ) -> tuple[TaskExecutor, Settings]:
        settings = Settings.load(project_dir)
        progress = ProgressLedger(settings.layout.progress_db_path)
        progress.init_schema()
        ledgers.append(progress)
        executor = TaskExecutor(
            settings=settings,
            status_store=StatusStore(settings.layout),
            engine=create_engine(settings),
            progress=progress,
            context=context,
            environ=environ if environ is not None else {},
        )
        return executor, settings

    yield _build
    for ledger in ledgers:
        ledger.close()


def _run(executor: TaskExecutor, settings: Settings, task_id: str = "a", **kwargs):
    board = load_board(settings.layout.board_path)
    task = get_task(board, task_id)
    assert task is not None
    kwargs.setdefault("max_retries", 1)
    return executor.execute_task(
        task,
        board=board,
        cwd=settings.project_dir,
        run_id="run-1",
        **kwargs,
    )


def test_successful_task_is_committed_and_completed(
    make_project: Callable[..., Path],
    executor_for,
) -> None:
    project = make_project(
        [{"id": "a", "title": "Add greeting", "acceptance_criteria": ["hello.txt exists"]}],
        agent_args="--write hello.txt --evidence",
    )
    executor, settings = executor_for(project)

    result = _run(executor, settings)

    assert result.success
    assert result.attempts == 1
    assert result.tokens_in == 120
    assert result.tokens_out == 30
    assert (project / "hello.txt").read_text("utf-8") == "a\n"
    message = git(project, "log", "-1", "--format=%B")
    assert message.startswith("mise(a): Add greeting")
    assert "Mise-Run-Id: run-1" in message
    assert git(project, "status", "--porcelain").strip() == ""

    record = executor.status_store.read("a")
    assert record is not None
    assert record.status == TaskStatus.COMPLETE
    assert record.run_id == "run-1"
    assert load_board(settings.layout.board_path).tasks[0].status == TaskStatus.COMPLETE

    (entry,) = executor.progress.recent_entries(10)
    assert entry.status == "complete"
    assert entry.tokens_in == 120
    logs = settings.layout.logs_dir("a")
    prompt = (logs / "prompt.md").read_text("utf-8")
    assert "## Task a: Add greeting" in prompt
    assert "- hello.txt exists" in prompt
    assert "ATTENDED mode" in prompt
    assert "exit code 0" in (logs / "engine.log").read_text("utf-8")


def test_engine_failure_marks_task_failed(make_project: Callable[..., Path], executor_for) -> None:
    project = make_project([{"id": "a", "title": "Break"}], agent_args="--exit-code 3")
    executor, settings = executor_for(project)

    result = _run(executor, settings)

    assert not result.success
    assert result.failure == FailureKind.ENGINE
    assert result.error == "Engine exited with code 3"
    record = executor.status_store.read("a")
    assert record is not None
    assert record.status == TaskStatus.FAILED
    assert record.error == "Engine exited with code 3"
    assert [entry.status for entry in executor.progress.recent_entries(10)] == ["failed"]


def test_backpressure_failure_retries_then_passes(
    tmp_path: Path,
    make_project: Callable[..., Path],
    executor_for,
) -> None:
    counter = tmp_path / "count.txt"
    project = make_project(
        [{"id": "a", "title": "Flaky"}],
        agent_args=f"--write out.txt --count-file {counter}",
        backpressure={"test": f'test "$(wc -l < {counter})" -ge 2'},
    )
    executor, settings = executor_for(project)

    result = _run(executor, settings, max_retries=3)

    assert result.success
    assert result.attempts == 2
    assert result.tokens_in == 240
    assert counter.read_text("utf-8").splitlines() == ["a", "a"]
    record = executor.status_store.read("a")
    assert record is not None
    assert record.status == TaskStatus.COMPLETE
    assert record.attempt == 2
    assert (settings.layout.logs_dir("a") / "test.log").exists()


def test_backpressure_exhaustion_fails_with_command_output(
    tmp_path: Path,
    make_project: Callable[..., Path],
    executor_for,
) -> None:
    counter = tmp_path / "count.txt"
    project = make_project(
        [{"id": "a", "title": "Never green"}],
        agent_args=f"--write out.txt --count-file {counter}",
        backpressure={"test": "echo assertion failed; exit 1"},
    )
    executor, settings = executor_for(project)

    result = _run(executor, settings, max_retries=2)

    assert result.failure == FailureKind.VERIFICATION
    assert result.error == VERIFICATION_EXHAUSTED
    assert result.attempts == 2
    assert len(counter.read_text("utf-8").splitlines()) == 2
    assert "assertion failed" in result.describe_failure()
    assert executor.status_store.status_of("a") == TaskStatus.FAILED
    # Work from the failed attempts stays committed for inspection.
    assert git(project, "log", "-1", "--format=%s").strip() == "mise(a): Never green"


def test_clarification_blocks_then_answer_completes(
    make_project: Callable[..., Path],
    executor_for,
) -> None:
    project = make_project(
        [{"id": "a", "title": "Pick storage"}],
        agent_args="--clarify 'Which database?' --write storage.txt",
    )
    executor, settings = executor_for(project)

    blocked = _run(executor, settings)

    assert blocked.failure == FailureKind.CLARIFICATION
    assert blocked.error == "Which database?"
    record = executor.status_store.read("a")
    assert record is not None
    assert record.status == TaskStatus.BLOCKED
    assert record.note == CLARIFICATION_NOTE
    assert not (project / "storage.txt").exists()

    store = ClarificationStore(settings.layout)
    store.clear_question("a")
    answered = _run(executor, settings, clarifications=format_clarification("Which database?", "SQLite"))

    assert answered.success
    assert executor.status_store.status_of("a") == TaskStatus.COMPLETE
    assert (project / "storage.txt").exists()
    assert "Answer: SQLite" in (settings.layout.logs_dir("a") / "prompt.md").read_text("utf-8")


def test_unattended_mode_ignores_questions(make_project: Callable[..., Path], executor_for) -> None:
    project = make_project(
        [{"id": "a", "title": "Decide alone"}],
        agent_args="--clarify 'Anything?'",
        mode={"attended": False},
    )
    executor, settings = executor_for(project)

    result = _run(executor, settings)

    assert result.success
    assert executor.status_store.status_of("a") == TaskStatus.COMPLETE
    assert "AUTONOMOUS mode" in (settings.layout.logs_dir("a") / "prompt.md").read_text("utf-8")


def test_missing_env_var_leaves_task_pending(make_project: Callable[..., Path], executor_for) -> None:
    project = make_project(
        [{"id": "a", "title": "Needs token", "required_inputs": {"env_vars": ["DEPLOY_TOKEN"]}}],
        agent_args="--write never.txt",
    )
    executor, settings = executor_for(project, environ={})

    result = _run(executor, settings)

    assert result.failure == FailureKind.READINESS
    assert "env:DEPLOY_TOKEN" in (result.error or "")
    assert executor.status_store.read("a") is None
    assert not (project / "never.txt").exists()


def test_non_git_directory_runs_without_commit(
    tmp_path: Path,
    make_project: Callable[..., Path],
    executor_for,
) -> None:
    plain = tmp_path / "plain"
    make_project([{"id": "a", "title": "No vcs"}], agent_args="--write out.txt", project_dir=plain)
    executor, settings = executor_for(plain)

    result = _run(executor, settings)

    assert result.success
    assert (plain / "out.txt").exists()


def test_shutdown_before_start_spawns_nothing(
    tmp_path: Path,
    make_project: Callable[..., Path],
    executor_for,
) -> None:
    counter = tmp_path / "count.txt"
    project = make_project([{"id": "a", "title": "Never"}], agent_args=f"--count-file {counter}")
    context = RunContext(grace_period_seconds=5)
    context.request_shutdown("SIGINT")
    executor, settings = executor_for(project, context=context)

    result = _run(executor, settings)

    assert result.failure == FailureKind.INTERRUPTED
    assert not counter.exists()
    assert executor.status_store.read("a") is None
    assert context.active_tasks == []


def test_shutdown_during_engine_leaves_task_in_progress(
    make_project: Callable[..., Path],
    executor_for,
) -> None:
    project = make_project([{"id": "a", "title": "Slow"}], agent_args="--sleep 30 --write late.txt")
    context = RunContext(grace_period_seconds=0.5)
    executor, settings = executor_for(project, context=context)
    timer = threading.Timer(0.5, context.request_shutdown, args=("SIGTERM",))
    timer.start()

    started = time.monotonic()
    result = _run(executor, settings)
    timer.join()

    assert result.failure == FailureKind.INTERRUPTED
    assert time.monotonic() - started < 10
    assert executor.status_store.status_of("a") == TaskStatus.IN_PROGRESS
    assert context.active_tasks == ["a"]
    assert not (project / "late.txt").exists()


def test_shutdown_during_backpressure_stops_command_without_retry(
    tmp_path: Path,
    make_project: Callable[..., Path],
    executor_for,
) -> None:
    counter = tmp_path / "count.txt"
    project = make_project(
        [{"id": "a", "title": "Slow checks"}],
        agent_args=f"--write out.txt --count-file {counter}",
        backpressure={"test": "sleep 20; exit 1", "lint": "echo lint-ran"},
    )
    context = RunContext(grace_period_seconds=0.5)
    executor, settings = executor_for(project, context=context)
    timer = threading.Timer(2.0, context.request_shutdown, args=("SIGTERM",))
    timer.start()

    started = time.monotonic()
    result = _run(executor, settings, max_retries=3)
    timer.join()

    assert result.failure == FailureKind.INTERRUPTED
    assert time.monotonic() - started < 8
    assert counter.read_text("utf-8").splitlines() == ["a"]
    assert executor.status_store.status_of("a") == TaskStatus.IN_PROGRESS
    assert not (settings.layout.logs_dir("a") / "lint.log").exists()


def test_commit_failure_is_recorded_as_task_failure(make_project: Callable[..., Path], executor_for) -> None:
    project = make_project([{"id": "a", "title": "Locked index"}], agent_args="--write out.txt")
    (project / ".git" / "index.lock").write_text("", "utf-8")
    executor, settings = executor_for(project)

    result = _run(executor, settings)

    assert result.failure == FailureKind.COMMIT
    assert "index.lock" in (result.error or "")
    record = executor.status_store.read("a")
    assert record is not None
    assert record.status == TaskStatus.FAILED
    assert record.error == result.error
    assert [entry.status for entry in executor.progress.recent_entries(10)] == ["failed"]
