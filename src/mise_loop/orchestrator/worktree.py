"""Per-task git worktrees for parallel execution."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from mise_loop.orchestrator.errors import GitCommandError
from mise_loop.orchestrator.layout import ProjectLayout, branch_name
from mise_loop.orchestrator.models import WorktreeHandle
from mise_loop.vcs import git

logger = logging.getLogger(__name__)


class WorktreeManager:
    """Creates and removes ``.mise/worktrees/<id>`` on branch ``mise/task-<id>``."""

    def __init__(self, layout: ProjectLayout) -> None:
        self.layout = layout

    @property
    def project_dir(self) -> Path:
        return self.layout.project_dir

    def is_supported(self) -> bool:
        if not git.is_repo(self.project_dir):
            return False
        try:
            git.worktree_list(self.project_dir)
        except GitCommandError:
            return False
        return True

    def create(self, task_id: str) -> WorktreeHandle:
        path = self.layout.worktree_path(task_id)
        branch = branch_name(task_id)
        git.worktree_prune(self.project_dir)
        if path.exists():
            logger.warning("Removing stale worktree directory %s", path)
            self._remove_path(path)
        if git.delete_branch(self.project_dir, branch):
            logger.warning("Deleted stale branch %s", branch)

        path.parent.mkdir(parents=True, exist_ok=True)
        git.worktree_add(self.project_dir, path, branch)
        logger.info("Created worktree %s on branch %s", path, branch)
        return WorktreeHandle(task_id=task_id, path=path, branch=branch)

    def remove_dir(self, task_id: str) -> None:
        path = self.layout.worktree_path(task_id)
        self._remove_path(path)

    def remove_branch(self, task_id: str) -> None:
        git.delete_branch(self.project_dir, branch_name(task_id))

    def remove(self, task_id: str) -> None:
        self.remove_dir(task_id)
        self.remove_branch(task_id)

    def _remove_path(self, path: Path) -> None:
        if not git.worktree_remove(self.project_dir, path) and path.exists():
            shutil.rmtree(path, ignore_errors=True)
        git.worktree_prune(self.project_dir)
