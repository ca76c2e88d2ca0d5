"""Cancellation token shared by the loop, the execution driver and engines."""

from __future__ import annotations

import logging
import signal
import subprocess
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mise_loop.orchestrator.lock import Heartbeat, RunLock
    from mise_loop.orchestrator.progress import ProgressLedger

logger = logging.getLogger(__name__)


class RunContext:
    """Shutdown state and active child processes for one loop invocation.

    Signal handlers only flip flags here. Engines poll ``shutdown_requested``
    from their supervision loop and escalate termination themselves.
    """

    def __init__(self, *, run_id: str | None = None, grace_period_seconds: float = 5.0) -> None:
        self.run_id = run_id
        self.grace_period_seconds = grace_period_seconds
        self.signal_name: str | None = None
        self._shutdown = threading.Event()
        self._force = threading.Event()
        self._lock = threading.Lock()
        self._processes: dict[str, subprocess.Popen[bytes] | subprocess.Popen[str]] = {}
        self._active_tasks: set[str] = set()

    def request_shutdown(self, signal_name: str = "shutdown") -> None:
        """First request asks for graceful stop; a second one forces kill."""

        if self._shutdown.is_set():
            self._force.set()
            logger.warning("Second %s received, killing active engines", signal_name)
            return
        self.signal_name = signal_name
        self._shutdown.set()
        logger.warning("%s received, finishing current work and shutting down", signal_name)

    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    def force_requested(self) -> bool:
        return self._force.is_set()

    def register_process(
        self,
        key: str,
        process: subprocess.Popen[bytes] | subprocess.Popen[str],
    ) -> None:
        with self._lock:
            self._processes[key] = process

    def clear_process(self, key: str) -> None:
        with self._lock:
            self._processes.pop(key, None)

    def add_active_task(self, task_id: str) -> None:
        with self._lock:
            self._active_tasks.add(task_id)

    def remove_active_task(self, task_id: str) -> None:
        with self._lock:
            self._active_tasks.discard(task_id)

    @property
    def active_tasks(self) -> list[str]:
        with self._lock:
            return sorted(self._active_tasks)

    def terminate_children(self) -> None:
        """Terminate every registered child still running."""

        with self._lock:
            processes = list(self._processes.items())
        for key, process in processes:
            if process.poll() is not None:
                continue
            logger.warning("Terminating child process %s (pid=%s)", key, process.pid)
            terminate_process(
                process,
                grace_seconds=0 if self.force_requested() else self.grace_period_seconds,
            )
            self.clear_process(key)

    def shutdown(
        self,
        *,
        progress: ProgressLedger | None,
        heartbeat: Heartbeat | None,
        lock: RunLock | None,
        reason: str | None = None,
    ) -> None:
        """Fixed cleanup order: children, interruption entries, heartbeat, lock."""

        self.terminate_children()
        if self.shutdown_requested() and progress is not None:
            note = reason or f"Interrupted by {self.signal_name or 'shutdown'}"
            for task_id in self.active_tasks:
                progress.log_interrupt(task_id, note, run_id=self.run_id)
        if heartbeat is not None:
            heartbeat.stop()
        if lock is not None:
            lock.release()


def supervise_process(
    process: subprocess.Popen[bytes] | subprocess.Popen[str],
    *,
    context: RunContext | None,
    key: str,
    timeout_seconds: float,
    timeout_exit_code: int = 124,
    interrupted_exit_code: int = 130,
) -> tuple[int, bool, bool]:
    """Poll one child until it exits: returns ``(exit_code, timed_out, interrupted)``.

    On shutdown the child gets SIGTERM, then SIGKILL once the grace period
    elapses; a forced shutdown kills at once.
    """

    if context is not None:
        context.register_process(key, process)
    start_monotonic = time.monotonic()
    kill_deadline: float | None = None

    try:
        while True:
            returncode = process.poll()
            if returncode is not None:
                return returncode, False, kill_deadline is not None

            now = time.monotonic()
            if now - start_monotonic >= timeout_seconds:
                logger.warning("%s: timed out after %ss", key, timeout_seconds)
                terminate_process(process, grace_seconds=2)
                return timeout_exit_code, True, False

            if context is not None and context.shutdown_requested():
                if context.force_requested():
                    terminate_process(process, grace_seconds=0)
                    return interrupted_exit_code, False, True
                if kill_deadline is None:
                    kill_deadline = now + context.grace_period_seconds
                    try:
                        process.terminate()
                    except OSError:
                        pass
                elif now >= kill_deadline:
                    terminate_process(process, grace_seconds=0)
                    return interrupted_exit_code, False, True

            time.sleep(0.1)
    finally:
        if context is not None:
            context.clear_process(key)


def terminate_process(
    process: subprocess.Popen[bytes] | subprocess.Popen[str],
    *,
    grace_seconds: float,
) -> None:
    """SIGTERM, wait ``grace_seconds``, then SIGKILL."""

    if grace_seconds <= 0:
        _kill(process)
        return
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        _kill(process)


def _kill(process: subprocess.Popen[bytes] | subprocess.Popen[str]) -> None:
    try:
        process.kill()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        logger.error("Process %s did not exit after SIGKILL", process.pid)


@contextmanager
def signal_handlers(context: RunContext) -> Iterator[None]:
    """Route SIGINT/SIGTERM to ``context.request_shutdown`` while active."""

    if not hasattr(signal, "SIGINT") or threading.current_thread() is not threading.main_thread():
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        context.request_shutdown(name)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
