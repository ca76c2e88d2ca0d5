"""Precondition checks performed before a task may run."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from mise_loop.orchestrator.models import Task

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReadinessResult:
    """Whether a task may run, with missing env vars and informational notices."""

    ready: bool
    missing: list[str] = field(default_factory=list)
    notices: list[str] = field(default_factory=list)


def check_task(task: Task, environ: Mapping[str, str] | None = None) -> ReadinessResult:
    """Check required env vars; services, credentials and migrations are notices."""

    env = os.environ if environ is None else environ
    inputs = task.required_inputs
    missing = [f"env:{name}" for name in inputs.env_vars if not env.get(name)]

    notices = [
        *(f"service:{name}" for name in inputs.services),
        *(f"credential:{name}" for name in inputs.credentials),
        *(f"migration:{name}" for name in inputs.migrations),
    ]
    for notice in notices:
        logger.info("Task %s expects %s to be available", task.id, notice)

    return ReadinessResult(ready=not missing, missing=missing, notices=notices)


def gate(
    tasks: list[Task],
    environ: Mapping[str, str] | None = None,
) -> tuple[list[Task], list[tuple[Task, ReadinessResult]]]:
    """Split tasks into runnable and blocked, preserving order."""

    ready: list[Task] = []
    blocked: list[tuple[Task, ReadinessResult]] = []
    for task in tasks:
        result = check_task(task, environ)
        if result.ready:
            ready.append(task)
        else:
            blocked.append((task, result))
    return ready, blocked
