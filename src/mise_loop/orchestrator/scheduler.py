"""Batch selection over the ready set."""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from mise_loop.orchestrator.board import get_group_tasks, get_groups
from mise_loop.orchestrator.models import Board, Task, TaskStatus

PARALLEL_OFF = "off"
PARALLEL_AUTO = "auto"

ParallelMode = str | int

_WILDCARD_TAIL = re.compile(r"\*\*?.*$")


@dataclass(slots=True)
class Batch:
    """Tasks selected to run together."""

    tasks: list[Task]

    @property
    def is_parallel(self) -> bool:
        return len(self.tasks) > 1

    @property
    def is_empty(self) -> bool:
        return not self.tasks


def next_batch(  # noqa: PLR0913
    board: Board,
    ready: Sequence[Task],
    *,
    parallel: ParallelMode,
    max_parallel: int,
    status_of: Callable[[str], TaskStatus],
) -> Batch:
    """Pick a singleton or a conflict-free parallel batch from ``ready``.

    An empty batch means nothing can run right now.
    """

    ready = [
        task
        for task in ready
        if status_of(task.id) == TaskStatus.PENDING
        and all(status_of(dependency) == TaskStatus.COMPLETE for dependency in task.depends_on)
    ]
    if not ready:
        return Batch(tasks=[])
    if parallel == PARALLEL_OFF or len(ready) == 1:
        return Batch(tasks=[ready[0]])

    active_group = _active_group(board, status_of)
    candidates = [task for task in ready if task.group == active_group and task.parallel_safe]
    if len(candidates) <= 1:
        return Batch(tasks=[ready[0]])

    cap = parallel if isinstance(parallel, int) else max_parallel
    cap = max(1, cap)
    admitted: list[Task] = []
    for candidate in candidates:
        if len(admitted) >= cap:
            break
        if any(paths_overlap(candidate.owned_paths, other.owned_paths) for other in admitted):
            continue
        admitted.append(candidate)
    return Batch(tasks=admitted)


def parse_parallel_mode(value: str | int) -> ParallelMode:
    """Normalize ``off``, ``auto`` or a positive integer cap."""

    if isinstance(value, bool):
        raise ValueError(f"Invalid parallel mode: {value!r}")
    if isinstance(value, int):
        if value < 1:
            raise ValueError(f"Parallel cap must be >= 1, got {value}")
        return value
    normalized = value.strip().lower()
    if normalized in {PARALLEL_OFF, PARALLEL_AUTO}:
        return normalized
    try:
        cap = int(normalized)
    except ValueError as error:
        raise ValueError(f"Invalid parallel mode: {value!r} (use off, auto or N)") from error
    if cap < 1:
        raise ValueError(f"Parallel cap must be >= 1, got {cap}")
    return cap


def paths_overlap(paths_a: Sequence[str], paths_b: Sequence[str]) -> bool:
    """Conservative ownership conflict check.

    Two tasks without declared paths are assumed to conflict. A task with
    declared paths never conflicts with one that declares none.
    """

    if not paths_a and not paths_b:
        return True
    if not paths_a or not paths_b:
        return False
    return any(_glob_overlap(a, b) for a in paths_a for b in paths_b)


def _glob_overlap(pattern_a: str, pattern_b: str) -> bool:
    if pattern_a == pattern_b:
        return True
    base_a = _static_prefix(pattern_a)
    base_b = _static_prefix(pattern_b)
    if not base_a or not base_b:
        return False
    return base_a.startswith(base_b) or base_b.startswith(base_a)


def _static_prefix(pattern: str) -> str:
    return _WILDCARD_TAIL.sub("", pattern).rstrip("/")


def _active_group(board: Board, status_of: Callable[[str], TaskStatus]) -> int | None:
    for group in get_groups(board):
        tasks = get_group_tasks(board, group)
        if not all(status_of(task.id) == TaskStatus.COMPLETE for task in tasks):
            return group
    return None
