"""Domain models for the task board, status records and execution outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


VALID_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED, TaskStatus.SKIPPED},
    ),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETE, TaskStatus.FAILED, TaskStatus.BLOCKED, TaskStatus.PENDING},
    ),
    TaskStatus.COMPLETE: frozenset(),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.BLOCKED: frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS}),
    TaskStatus.SKIPPED: frozenset({TaskStatus.PENDING}),
}


def is_valid_transition(status_from: TaskStatus, status_to: TaskStatus) -> bool:
    """Return whether ``status_to`` is reachable from ``status_from`` in one step."""

    return status_to in VALID_TRANSITIONS.get(status_from, frozenset())


class TaskSize(str, Enum):
    """Informational size estimate."""

    S = "S"
    M = "M"
    L = "L"
    XL = "XL"


class FailureKind(str, Enum):
    """Normalized failure kinds surfaced by the execution driver and loop."""

    READINESS = "readiness"
    ENGINE = "engine"
    VERIFICATION = "verification"
    CLARIFICATION = "clarification"
    INTERRUPTED = "interrupted"
    MERGE_CONFLICT = "merge_conflict"
    COMMIT = "commit"


@dataclass(slots=True)
class RequiredInputs:
    """External preconditions a task declares."""

    env_vars: list[str] = field(default_factory=list)
    services: list[str] = field(default_factory=list)
    credentials: list[str] = field(default_factory=list)
    migrations: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Task:
    """One declarative unit of work on the board."""

    id: str
    title: str
    group: int = 1
    depends_on: list[str] = field(default_factory=list)
    size: TaskSize = TaskSize.M
    parallel_safe: bool = False
    owned_paths: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    required_inputs: RequiredInputs = field(default_factory=RequiredInputs)
    blocking_questions: list[str] = field(default_factory=list)
    assumptions: list[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING


@dataclass(slots=True)
class Board:
    """Ordered task collection for one project."""

    tasks: list[Task]
    version: int = 1
    project: str | None = None


@dataclass(slots=True)
class StatusRecord:
    """Mutable execution status persisted separately from the task definition."""

    task_id: str
    status: TaskStatus
    updated_at: datetime
    run_id: str | None = None
    attempt: int | None = None
    error: str | None = None
    note: str | None = None


@dataclass(slots=True)
class LockRecord:
    """Exclusive ownership record for the execution loop."""

    pid: int
    started_at: datetime
    heartbeat_at: datetime


@dataclass(slots=True)
class WorktreeHandle:
    """Isolated working copy and branch used by one parallel task."""

    task_id: str
    path: Path
    branch: str


@dataclass(slots=True)
class TokenUsage:
    """Token and cost telemetry reported by an engine run."""

    input_tokens: int | None = None
    output_tokens: int | None = None
    cost_usd: float | None = None


@dataclass(slots=True)
class CommandResult:
    """Outcome of one verification command."""

    name: str
    command: str
    passed: bool
    output: str
    log_path: Path | None = None
    interrupted: bool = False


@dataclass(slots=True)
class ExecuteResult:
    """Final outcome of executing one task (all attempts)."""

    task_id: str
    success: bool
    duration_ms: int
    attempts: int = 1
    failure: FailureKind | None = None
    error: str | None = None
    tokens_in: int | None = None
    tokens_out: int | None = None
    cost_usd: float | None = None
    verification_results: list[CommandResult] = field(default_factory=list)

    def describe_failure(self, *, output_tail_chars: int = 2000) -> str:
        """Render a user-facing failure line with task id, kind and command output."""

        kind = self.failure.value if self.failure is not None else "unknown"
        message = f"Task {self.task_id} failed ({kind}): {self.error or 'unknown error'}"
        if self.failure != FailureKind.VERIFICATION:
            return message
        failed_outputs = [
            f"--- {result.name}: {result.command}\n{result.output[-output_tail_chars:].rstrip()}"
            for result in self.verification_results
            if not result.passed
        ]
        if not failed_outputs:
            return message
        return message + "\n" + "\n".join(failed_outputs)


@dataclass(slots=True)
class MergeResult:
    """Outcome of merging a batch of task branches into trunk."""

    success: bool
    conflicts: list[str] = field(default_factory=list)
    merged_tasks: list[str] = field(default_factory=list)
    failed_tasks: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ProgressEntry:
    """One line of the append-only progress ledger."""

    task_id: str
    status: str
    duration_ms: int | None = None
    tokens_in: int | None = None
    tokens_out: int | None = None
    cost_usd: float | None = None
    run_id: str | None = None
    note: str | None = None
    created_at: datetime | None = None
