"""Task prompt construction."""

from __future__ import annotations

from pathlib import Path

from mise_loop.config import ProjectSettings
from mise_loop.orchestrator.models import Task

_ATTENDED = (
    "You are running in ATTENDED mode. If you have a blocking question, write it to "
    "{clarification_path} and stop without making further changes."
)
_AUTONOMOUS = (
    "You are running in AUTONOMOUS mode. Make reasonable decisions and proceed "
    "without asking questions."
)


def build_task_prompt(  # noqa: PLR0913
    *,
    project: ProjectSettings,
    task: Task,
    attended: bool,
    clarification_path: Path,
    evidence_path: Path,
    clarifications: str | None = None,
) -> str:
    """Render the instructions handed to the engine for one task."""

    mode = _ATTENDED.format(clarification_path=clarification_path) if attended else _AUTONOMOUS
    return (
        f"# Project: {project.name}\n"
        f"Language: {project.language or 'unknown'}\n"
        f"Framework: {project.framework or 'none'}\n"
        f"\n"
        f"## Rules\n{_bullets(project.rules, '_None._')}\n"
        f"\n"
        f"## Boundaries\n{_bullets(project.boundaries, '_None._')}\n"
        f"\n"
        f"## Task {task.id}: {task.title}\n"
        f"\n"
        f"### Acceptance criteria\n{_bullets(task.acceptance_criteria, '_None specified._')}\n"
        f"\n"
        f"### Assumptions\n{_bullets(task.assumptions, '_None._')}\n"
        f"\n"
        f"### Owned paths\n{', '.join(task.owned_paths) or '_No restrictions._'}\n"
        f"\n"
        f"### Clarifications\n{clarifications or '_None._'}\n"
        f"\n"
        f"## Mode\n{mode}\n"
        f"\n"
        f"When done, summarize what you changed and how it meets each acceptance "
        f"criterion in {evidence_path}. Do not commit; changes are committed for you.\n"
    )


def _bullets(items: list[str], empty: str) -> str:
    if not items:
        return empty
    return "\n".join(f"- {item}" for item in items)
