from __future__ import annotations

import threading
import time
from pathlib import Path

import allure

from mise_loop.orchestrator.backpressure import BackpressureRunner, ordered_commands
from mise_loop.orchestrator.cancellation import RunContext
from mise_loop.orchestrator.layout import ProjectLayout

pytestmark = [
    allure.epic("Execution Loop"),
    allure.feature("Verification Commands"),
]


def test_ordered_commands_puts_known_names_first_and_drops_blanks() -> None:
    commands = {"custom": "make docs", "lint": "ruff check", "build": "  ", "test": "pytest"}

    assert ordered_commands(commands) == [
        ("test", "pytest"),
        ("lint", "ruff check"),
        ("custom", "make docs"),
    ]


def test_run_all_collects_failures_and_writes_logs(tmp_path: Path) -> None:
    layout = ProjectLayout(tmp_path)
    runner = BackpressureRunner(layout, timeout_seconds=30)

    report = runner.run_all(
        tmp_path,
        "a",
        {"test": "echo tests-ok", "lint": "echo lint-broken >&2; exit 3"},
    )

    assert not report.passed
    assert [result.name for result in report.failed] == ["lint"]
    test_log = layout.logs_dir("a") / "test.log"
    lint_log = layout.logs_dir("a") / "lint.log"
    assert test_log.read_text("utf-8").strip() == "tests-ok"
    assert "lint-broken" in lint_log.read_text("utf-8")
    assert report.results[1].log_path == lint_log


def test_run_all_passes_with_no_commands(tmp_path: Path) -> None:
    report = BackpressureRunner(ProjectLayout(tmp_path)).run_all(tmp_path, "a", {})

    assert report.passed
    assert report.results == []


def test_timed_out_command_fails(tmp_path: Path) -> None:
    runner = BackpressureRunner(ProjectLayout(tmp_path), timeout_seconds=0.5)

    report = runner.run_all(tmp_path, "a", {"test": "sleep 5"})

    assert not report.passed
    assert "timed out after 0.5s" in report.results[0].output


def test_shutdown_before_run_skips_every_command(tmp_path: Path) -> None:
    context = RunContext(grace_period_seconds=1)
    context.request_shutdown("SIGTERM")
    runner = BackpressureRunner(ProjectLayout(tmp_path), context=context)

    report = runner.run_all(tmp_path, "a", {"test": "echo should-not-run"})

    assert report.interrupted
    assert not report.passed
    assert report.results == []


def test_shutdown_terminates_running_command(tmp_path: Path) -> None:
    context = RunContext(grace_period_seconds=0.5)
    runner = BackpressureRunner(ProjectLayout(tmp_path), timeout_seconds=60, context=context)
    timer = threading.Timer(0.5, context.request_shutdown, args=("SIGTERM",))
    timer.start()

    started = time.monotonic()
    report = runner.run_all(tmp_path, "a", {"test": "sleep 30", "lint": "echo lint-ran"})
    timer.join()

    assert time.monotonic() - started < 10
    assert report.interrupted
    assert [result.name for result in report.results] == ["test"]
    assert report.results[0].interrupted
    assert not (ProjectLayout(tmp_path).logs_dir("a") / "lint.log").exists()
