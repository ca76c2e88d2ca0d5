"""Board document persistence, validation and graph helpers."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from mise_loop.orchestrator.errors import BoardNotFoundError, BoardValidationError
from mise_loop.orchestrator.models import Board, RequiredInputs, Task, TaskSize, TaskStatus
from mise_loop.orchestrator.storage import load_yaml, write_yaml

_REQUIRED_INPUT_KEYS = ("env_vars", "services", "credentials", "migrations")
_TASK_ID = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")


def load_board(path: Path) -> Board:
    """Load and validate the board document."""

    if not path.exists():
        raise BoardNotFoundError(f"No board found at {path}. Write a board.yaml first.")
    try:
        raw = load_yaml(path)
    except (TypeError, ValueError) as error:
        raise BoardValidationError(f"Invalid board document at {path}: {error}") from error
    return parse_board(raw)


def save_board(path: Path, board: Board) -> None:
    """Persist the board atomically."""

    write_yaml(path, board_to_dict(board))


def parse_board(raw: dict[str, Any]) -> Board:
    """Build a validated board from its mapping form."""

    raw_tasks = raw.get("tasks")
    if not isinstance(raw_tasks, list):
        raise BoardValidationError("board.tasks must be a list")
    version = raw.get("version", 1)
    if not isinstance(version, int) or version < 1:
        raise BoardValidationError("board.version must be an integer >= 1")
    project = raw.get("project")
    if project is not None and not isinstance(project, str):
        raise BoardValidationError("board.project must be a string when provided")

    tasks = [_parse_task(item, index=index) for index, item in enumerate(raw_tasks)]
    board = Board(tasks=tasks, version=version, project=project)
    validate_board(board)
    return board


def board_to_dict(board: Board) -> dict[str, Any]:
    payload: dict[str, Any] = {"version": board.version}
    if board.project is not None:
        payload["project"] = board.project
    payload["tasks"] = [_task_to_dict(task) for task in board.tasks]
    return payload


def validate_board(board: Board) -> None:
    """Reject duplicate ids, dangling dependencies and dependency cycles."""

    seen: set[str] = set()
    for task in board.tasks:
        if task.id in seen:
            raise BoardValidationError(f"Duplicate task id: {task.id}")
        seen.add(task.id)

    for task in board.tasks:
        for dependency in task.depends_on:
            if dependency not in seen:
                raise BoardValidationError(
                    f"Task {task.id} depends on unknown task {dependency}",
                )
            if dependency == task.id:
                raise BoardValidationError(f"Task {task.id} depends on itself")

    cycle = find_cycle(board)
    if cycle:
        raise BoardValidationError(f"Dependency cycle detected: {' -> '.join(cycle)}")


def find_cycle(board: Board) -> list[str]:
    """Return one dependency cycle as a closed id path, or an empty list."""

    graph = {task.id: list(task.depends_on) for task in board.tasks}
    visiting: list[str] = []
    state: dict[str, int] = {}

    def _visit(node: str) -> list[str]:
        state[node] = 1
        visiting.append(node)
        for dependency in graph.get(node, []):
            mark = state.get(dependency, 0)
            if mark == 1:
                start = visiting.index(dependency)
                return [*visiting[start:], dependency]
            if mark == 0:
                found = _visit(dependency)
                if found:
                    return found
        visiting.pop()
        state[node] = 2
        return []

    for task_id in graph:
        if state.get(task_id, 0) == 0:
            found = _visit(task_id)
            if found:
                return found
    return []


def is_safe_task_id(task_id: str) -> bool:
    """Ids name status files, log directories and ``mise/task-<id>`` branches."""

    return bool(_TASK_ID.fullmatch(task_id)) and ".." not in task_id and not task_id.endswith((".", ".lock"))


def get_task(board: Board, task_id: str) -> Task | None:
    return next((task for task in board.tasks if task.id == task_id), None)


def get_groups(board: Board) -> list[int]:
    """Distinct group numbers in ascending order."""

    return sorted({task.group for task in board.tasks})


def get_group_tasks(board: Board, group: int) -> list[Task]:
    return [task for task in board.tasks if task.group == group]


def get_ready_tasks(board: Board, status_of: Callable[[str], TaskStatus]) -> list[Task]:
    """Pending tasks whose dependencies are all complete, in declaration order."""

    return [
        task
        for task in board.tasks
        if status_of(task.id) == TaskStatus.PENDING
        and all(status_of(dependency) == TaskStatus.COMPLETE for dependency in task.depends_on)
    ]


def _parse_task(item: object, *, index: int) -> Task:  # noqa: C901
    if not isinstance(item, dict):
        raise BoardValidationError(f"board.tasks[{index}] must be a mapping")
    task_id = item.get("id")
    if isinstance(task_id, int) and not isinstance(task_id, bool):
        task_id = str(task_id)
    if not isinstance(task_id, str) or not task_id.strip():
        raise BoardValidationError(f"board.tasks[{index}].id must be a non-empty string")
    if not is_safe_task_id(task_id):
        raise BoardValidationError(
            f"board.tasks[{index}].id {task_id!r} must use letters, digits, '.', '_' or '-' "
            "and be usable as a file name and git branch",
        )
    title = item.get("title", "")
    if not isinstance(title, str):
        raise BoardValidationError(f"Task {task_id}: title must be a string")

    group = item.get("group", 1)
    if not isinstance(group, int) or isinstance(group, bool) or group < 1:
        raise BoardValidationError(f"Task {task_id}: group must be a positive integer")

    try:
        size = TaskSize(str(item.get("size", TaskSize.M.value)))
    except ValueError as error:
        raise BoardValidationError(f"Task {task_id}: size must be one of S, M, L, XL") from error
    try:
        status = TaskStatus(str(item.get("status", TaskStatus.PENDING.value)))
    except ValueError as error:
        raise BoardValidationError(f"Task {task_id}: unknown status {item.get('status')!r}") from error

    parallel_safe = item.get("parallel_safe", False)
    if not isinstance(parallel_safe, bool):
        raise BoardValidationError(f"Task {task_id}: parallel_safe must be a boolean")

    raw_inputs = item.get("required_inputs") or {}
    if not isinstance(raw_inputs, dict):
        raise BoardValidationError(f"Task {task_id}: required_inputs must be a mapping")
    required_inputs = RequiredInputs(
        **{
            key: _string_list(raw_inputs.get(key), task_id=task_id, field_name=f"required_inputs.{key}")
            for key in _REQUIRED_INPUT_KEYS
        },
    )

    return Task(
        id=task_id,
        title=title,
        group=group,
        depends_on=_string_list(item.get("depends_on"), task_id=task_id, field_name="depends_on"),
        size=size,
        parallel_safe=parallel_safe,
        owned_paths=_string_list(item.get("owned_paths"), task_id=task_id, field_name="owned_paths"),
        acceptance_criteria=_string_list(
            item.get("acceptance_criteria"),
            task_id=task_id,
            field_name="acceptance_criteria",
        ),
        required_inputs=required_inputs,
        blocking_questions=_string_list(
            item.get("blocking_questions"),
            task_id=task_id,
            field_name="blocking_questions",
        ),
        assumptions=_string_list(item.get("assumptions"), task_id=task_id, field_name="assumptions"),
        status=status,
    )


def _string_list(value: object, *, task_id: str, field_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise BoardValidationError(f"Task {task_id}: {field_name} must be a list")
    result: list[str] = []
    for entry in value:
        if isinstance(entry, bool) or not isinstance(entry, (str, int)):
            raise BoardValidationError(f"Task {task_id}: {field_name} entries must be strings")
        result.append(str(entry))
    return result


def _task_to_dict(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "group": task.group,
        "depends_on": list(task.depends_on),
        "size": task.size.value,
        "parallel_safe": task.parallel_safe,
        "owned_paths": list(task.owned_paths),
        "acceptance_criteria": list(task.acceptance_criteria),
        "required_inputs": {
            key: list(getattr(task.required_inputs, key)) for key in _REQUIRED_INPUT_KEYS
        },
        "blocking_questions": list(task.blocking_questions),
        "assumptions": list(task.assumptions),
        "status": task.status.value,
    }


def task_ids(tasks: Iterable[Task]) -> list[str]:
    return [task.id for task in tasks]
