"""Deterministic on-disk layout of the ``.mise`` state directory."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

MISE_DIR_NAME = ".mise"
BRANCH_PREFIX = "mise/task-"


@dataclass(frozen=True, slots=True)
class ProjectLayout:
    """Resolves every state path for one project checkout."""

    project_dir: Path

    @property
    def mise_dir(self) -> Path:
        return self.project_dir / MISE_DIR_NAME

    @property
    def station_path(self) -> Path:
        return self.mise_dir / "station.yaml"

    @property
    def board_path(self) -> Path:
        return self.mise_dir / "board.yaml"

    @property
    def status_dir(self) -> Path:
        return self.mise_dir / "status"

    @property
    def lock_path(self) -> Path:
        return self.mise_dir / "run.lock"

    @property
    def progress_db_path(self) -> Path:
        return self.mise_dir / "progress.db"

    @property
    def worktrees_dir(self) -> Path:
        return self.mise_dir / "worktrees"

    def status_path(self, task_id: str) -> Path:
        return self.status_dir / f"{task_id}.yaml"

    def logs_dir(self, task_id: str) -> Path:
        return self.mise_dir / "logs" / task_id

    def clarification_path(self, task_id: str) -> Path:
        return self.mise_dir / "clarifications" / f"{task_id}.md"

    def answer_path(self, task_id: str) -> Path:
        return self.mise_dir / "answers" / f"{task_id}.md"

    def evidence_path(self, task_id: str) -> Path:
        return self.mise_dir / "evidence" / f"{task_id}.md"

    def worktree_path(self, task_id: str) -> Path:
        return self.worktrees_dir / task_id


def branch_name(task_id: str) -> str:
    """Deterministic per-task branch name."""

    return f"{BRANCH_PREFIX}{task_id}"
