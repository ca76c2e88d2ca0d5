"""File-backed task status persistence with transition enforcement."""

from __future__ import annotations

import logging
import threading
from typing import Any

import yaml

from mise_loop.orchestrator.board import get_task, load_board, save_board
from mise_loop.orchestrator.errors import BoardValidationError, InvalidTransitionError
from mise_loop.orchestrator.layout import ProjectLayout
from mise_loop.orchestrator.models import Board, StatusRecord, TaskStatus, is_valid_transition
from mise_loop.orchestrator.storage import from_iso, load_yaml, utc_now, write_yaml

logger = logging.getLogger(__name__)

_RESETTABLE = frozenset({TaskStatus.FAILED, TaskStatus.BLOCKED, TaskStatus.SKIPPED})
_UNSET: Any = object()


class StatusStore:
    """One YAML record per task under ``.mise/status``.

    Absence of a record means ``pending``. Every write is an atomic rename,
    so a crash leaves either the previous or the new record on disk.
    """

    def __init__(self, layout: ProjectLayout) -> None:
        self.layout = layout
        self._board_lock = threading.Lock()

    def read(self, task_id: str) -> StatusRecord | None:
        path = self.layout.status_path(task_id)
        if not path.exists():
            return None
        return _record_from_dict(task_id, load_yaml(path))

    def write(self, task_id: str, record: StatusRecord) -> None:
        write_yaml(self.layout.status_path(task_id), _record_to_dict(record))

    def status_of(self, task_id: str) -> TaskStatus:
        record = self.read(task_id)
        return record.status if record is not None else TaskStatus.PENDING

    def transition(  # noqa: PLR0913
        self,
        task_id: str,
        status_from: TaskStatus,
        status_to: TaskStatus,
        *,
        run_id: str | None = _UNSET,
        attempt: int | None = _UNSET,
        error: str | None = None,
        note: str | None = None,
    ) -> StatusRecord:
        """Validate and persist one status change.

        ``run_id`` and ``attempt`` carry over from the previous record unless
        passed explicitly; ``error`` and ``note`` are only what the caller sets.
        """

        if not is_valid_transition(status_from, status_to):
            raise InvalidTransitionError(
                task_id=task_id,
                status_from=status_from.value,
                status_to=status_to.value,
            )
        previous = self.read(task_id)
        record = StatusRecord(
            task_id=task_id,
            status=status_to,
            updated_at=utc_now(),
            run_id=run_id if run_id is not _UNSET else (previous.run_id if previous else None),
            attempt=attempt if attempt is not _UNSET else (previous.attempt if previous else None),
            error=error,
            note=note,
        )
        self.write(task_id, record)
        return record

    def set_task_status(  # noqa: PLR0913
        self,
        board: Board,
        task_id: str,
        status_to: TaskStatus,
        *,
        run_id: str | None = _UNSET,
        attempt: int | None = _UNSET,
        error: str | None = None,
        note: str | None = None,
    ) -> StatusRecord:
        """Transition from the stored status and mirror the result into the board."""

        with self._board_lock:
            record = self.transition(
                task_id,
                self.status_of(task_id),
                status_to,
                run_id=run_id,
                attempt=attempt,
                error=error,
                note=note,
            )
            task = get_task(board, task_id)
            if task is not None:
                task.status = status_to
                save_board(self.layout.board_path, board)
        logger.info("Task %s -> %s", task_id, status_to.value)
        return record

    def reset_in_progress(self, note: str) -> list[str]:
        """Move every ``in_progress`` record back to ``pending``; return reset ids."""

        reset_ids: list[str] = []
        if not self.layout.status_dir.exists():
            return reset_ids
        for path in sorted(self.layout.status_dir.glob("*.yaml")):
            task_id = path.stem
            try:
                record = self.read(task_id)
            except (OSError, TypeError, ValueError, yaml.YAMLError) as error:
                logger.warning("Skipping unreadable status record %s: %s", path, error)
                continue
            if record is None or record.status != TaskStatus.IN_PROGRESS:
                continue
            self.transition(task_id, TaskStatus.IN_PROGRESS, TaskStatus.PENDING, note=note)
            reset_ids.append(task_id)
        if reset_ids:
            self._mirror_into_board(reset_ids, TaskStatus.PENDING)
        return reset_ids

    def _mirror_into_board(self, task_ids: list[str], status: TaskStatus) -> None:
        if not self.layout.board_path.exists():
            return
        with self._board_lock:
            try:
                board = load_board(self.layout.board_path)
            except BoardValidationError as error:
                logger.warning("Board not updated after reset: %s", error)
                return
            for task_id in task_ids:
                task = get_task(board, task_id)
                if task is not None:
                    task.status = status
            save_board(self.layout.board_path, board)

    def list_records(self) -> list[StatusRecord]:
        if not self.layout.status_dir.exists():
            return []
        records: list[StatusRecord] = []
        for path in sorted(self.layout.status_dir.glob("*.yaml")):
            record = self.read(path.stem)
            if record is not None:
                records.append(record)
        return records

    def reset(self, board: Board, task_id: str) -> StatusRecord:
        """Return a failed, blocked or skipped task to ``pending``."""

        current = self.status_of(task_id)
        if current not in _RESETTABLE:
            raise InvalidTransitionError(
                task_id=task_id,
                status_from=current.value,
                status_to=TaskStatus.PENDING.value,
            )
        return self.set_task_status(board, task_id, TaskStatus.PENDING, note="Manual reset")


def _record_to_dict(record: StatusRecord) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "task_id": record.task_id,
        "status": record.status.value,
        "updated_at": record.updated_at.isoformat(),
    }
    for key in ("run_id", "attempt", "error", "note"):
        value = getattr(record, key)
        if value is not None:
            payload[key] = value
    return payload


def _record_from_dict(task_id: str, payload: dict[str, Any]) -> StatusRecord:
    updated_at = payload.get("updated_at")
    attempt = payload.get("attempt")
    return StatusRecord(
        task_id=str(payload.get("task_id", task_id)),
        status=TaskStatus(str(payload.get("status", TaskStatus.PENDING.value))),
        updated_at=from_iso(updated_at) if updated_at else utc_now(),
        run_id=payload.get("run_id"),
        attempt=int(attempt) if attempt is not None else None,
        error=payload.get("error"),
        note=payload.get("note"),
    )
