"""Exception types raised by the orchestration core."""

from __future__ import annotations


class InvalidTransitionError(ValueError):
    """Requested status change is not allowed by the transition table."""

    def __init__(self, *, task_id: str, status_from: str, status_to: str) -> None:
        super().__init__(
            f"Invalid status transition: {status_from} -> {status_to} for task {task_id}",
        )
        self.task_id = task_id
        self.status_from = status_from
        self.status_to = status_to


class BoardNotFoundError(FileNotFoundError):
    """Board document does not exist yet."""


class BoardValidationError(ValueError):
    """Board document is malformed or its dependency graph is not a DAG."""


class LockContentionError(RuntimeError):
    """Another loop instance holds a live run lock for this project."""


class EngineRunError(RuntimeError):
    """Engine subprocess could not be started."""


class EngineUnavailableError(RuntimeError):
    """Engine preflight check failed."""


class GitCommandError(RuntimeError):
    """A git invocation failed where failure is not an expected outcome."""

    def __init__(self, args: list[str], returncode: int, stderr: str) -> None:
        super().__init__(
            f"git {' '.join(args)} failed with exit code {returncode}: {stderr.strip()}",
        )
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr
