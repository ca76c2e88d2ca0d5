from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import allure

from mise_loop.orchestrator.cancellation import RunContext, terminate_process
from mise_loop.orchestrator.lock import FileLockStorage, Heartbeat, RunLock
from mise_loop.orchestrator.progress import ProgressLedger

pytestmark = [
    allure.epic("Execution Loop"),
    allure.feature("Graceful Shutdown"),
]


def _sleeper() -> subprocess.Popen[str]:
    return subprocess.Popen(
        [sys.executable, "-c", "import time; time.sleep(60)"],
        text=True,
    )


def test_second_request_escalates_to_force() -> None:
    context = RunContext()

    context.request_shutdown("SIGINT")
    assert context.shutdown_requested()
    assert not context.force_requested()

    context.request_shutdown("SIGINT")
    assert context.force_requested()
    assert context.signal_name == "SIGINT"


def test_terminate_process_stops_child() -> None:
    process = _sleeper()

    terminate_process(process, grace_seconds=5)

    assert process.poll() is not None


def test_shutdown_runs_cleanup_in_order(tmp_path: Path) -> None:
    lock = RunLock(FileLockStorage(tmp_path / "run.lock"))
    assert lock.acquire()
    heartbeat = Heartbeat(lock, interval=10)
    heartbeat.start()
    progress = ProgressLedger(tmp_path / "progress.db")
    progress.init_schema()
    process = _sleeper()

    context = RunContext(run_id="run-1", grace_period_seconds=5)
    context.register_process("a", process)
    context.add_active_task("a")
    context.add_active_task("b")
    context.request_shutdown("SIGTERM")
    context.shutdown(progress=progress, heartbeat=heartbeat, lock=lock)

    assert process.poll() is not None
    entries = progress.recent_entries(10)
    assert [(entry.task_id, entry.status) for entry in entries] == [("a", "interrupted"), ("b", "interrupted")]
    assert entries[0].note == "Interrupted by SIGTERM"
    assert entries[0].run_id == "run-1"
    assert not heartbeat.running
    assert not (tmp_path / "run.lock").exists()
    progress.close()


def test_shutdown_without_signal_logs_nothing(tmp_path: Path) -> None:
    lock = RunLock(FileLockStorage(tmp_path / "run.lock"))
    lock.acquire()
    progress = ProgressLedger(tmp_path / "progress.db")
    progress.init_schema()
    context = RunContext()
    context.add_active_task("a")

    context.shutdown(progress=progress, heartbeat=None, lock=lock)

    assert progress.recent_entries(10) == []
    assert not (tmp_path / "run.lock").exists()
    progress.close()
