"""Exclusive run lock with heartbeat-based staleness detection."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

import yaml

from mise_loop.orchestrator.models import LockRecord
from mise_loop.orchestrator.storage import atomic_write_text, dump_yaml, from_iso, utc_now

logger = logging.getLogger(__name__)


class LockStorage(Protocol):
    """Backing store for the lock record."""

    def create_exclusive(self, content: str) -> bool:
        """Create the record only if absent; False when it already exists."""

    def read_text(self) -> str | None:
        """Return raw record content, or None when absent."""

    def write_text(self, content: str) -> None:
        """Replace the record content."""

    def remove(self) -> None:
        """Delete the record; absence is not an error."""


class FileLockStorage:
    """Lock record stored as a YAML file created with ``O_CREAT | O_EXCL``."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def create_exclusive(self, content: str) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        return True

    def read_text(self) -> str | None:
        try:
            return self.path.read_text("utf-8")
        except FileNotFoundError:
            return None

    def write_text(self, content: str) -> None:
        atomic_write_text(self.path, content)

    def remove(self) -> None:
        self.path.unlink(missing_ok=True)


class RunLock:
    """One loop per project; liveness is heartbeat recency, not process existence."""

    def __init__(
        self,
        storage: LockStorage,
        *,
        clock: Callable[[], datetime] = utc_now,
        stale_after: timedelta = timedelta(seconds=120),
        on_stale_recovered: Callable[[], None] | None = None,
    ) -> None:
        self.storage = storage
        self.clock = clock
        self.stale_after = stale_after
        self.on_stale_recovered = on_stale_recovered
        self._touch_lock = threading.Lock()

    def acquire(self) -> bool:
        """Take the lock, recovering a stale one first. Never raises on contention."""

        if self.storage.read_text() is not None:
            if not self.is_stale():
                return False
            previous = self.read()
            self.storage.remove()
            if self.on_stale_recovered is not None:
                self.on_stale_recovered()
            logger.warning(
                "Recovered stale run lock (pid=%s, last heartbeat %s)",
                previous.pid if previous else "unknown",
                previous.heartbeat_at.isoformat() if previous else "unreadable",
            )

        now = self.clock()
        record = LockRecord(pid=os.getpid(), started_at=now, heartbeat_at=now)
        return self.storage.create_exclusive(_dump_record(record))

    def release(self) -> None:
        self.storage.remove()

    def touch(self) -> None:
        """Refresh the heartbeat timestamp if the lock is still held."""

        with self._touch_lock:
            record = self.read()
            if record is None:
                return
            record.heartbeat_at = self.clock()
            self.storage.write_text(_dump_record(record))

    def is_stale(self) -> bool:
        """True when the record is unreadable or its heartbeat is too old."""

        raw = self.storage.read_text()
        if raw is None:
            return False
        record = _parse_record(raw)
        if record is None:
            return True
        return self.clock() - record.heartbeat_at > self.stale_after

    def read(self) -> LockRecord | None:
        raw = self.storage.read_text()
        if raw is None:
            return None
        return _parse_record(raw)


class Heartbeat:
    """Daemon thread refreshing the run lock every ``interval`` seconds."""

    def __init__(self, lock: RunLock, *, interval: float) -> None:
        self.lock = lock
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="mise-heartbeat")
        self._thread.start()

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=max(1.0, self.interval))
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.lock.touch()
            except OSError as error:
                logger.warning("Heartbeat update failed: %s", error)


def _dump_record(record: LockRecord) -> str:
    return dump_yaml(
        {
            "pid": record.pid,
            "started_at": record.started_at.isoformat(),
            "heartbeat_at": record.heartbeat_at.isoformat(),
        },
    )


def _parse_record(raw: str) -> LockRecord | None:
    try:
        payload = yaml.safe_load(raw)
    except yaml.YAMLError:
        return None
    if not isinstance(payload, dict):
        return None
    try:
        return LockRecord(
            pid=int(payload["pid"]),
            started_at=from_iso(str(payload["started_at"])),
            heartbeat_at=from_iso(str(payload["heartbeat_at"])),
        )
    except (KeyError, TypeError, ValueError):
        return None
