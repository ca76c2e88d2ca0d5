"""Reconcile parallel task branches back into trunk."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from mise_loop.orchestrator.layout import ProjectLayout, branch_name
from mise_loop.orchestrator.models import MergeResult
from mise_loop.vcs import git

logger = logging.getLogger(__name__)


class MergeCoordinator:
    """Merge branches in lexicographic id order, tolerating per-branch conflicts."""

    def __init__(self, layout: ProjectLayout, *, keep_conflicting_branches: bool = False) -> None:
        self.layout = layout
        self.keep_conflicting_branches = keep_conflicting_branches

    def merge_group(self, task_ids: Iterable[str]) -> MergeResult:
        ordered = sorted(task_ids)
        project_dir = self.layout.project_dir
        result = MergeResult(success=True)

        for task_id in ordered:
            branch = branch_name(task_id)
            outcome = git.merge_branch(project_dir, branch)
            if outcome.success:
                result.merged_tasks.append(task_id)
                logger.info("Merged task %s (%s)", task_id, branch)
                continue
            result.failed_tasks.append(task_id)
            result.conflicts.extend(outcome.conflicts)
            logger.warning(
                "Merge conflict for task %s: %s",
                task_id,
                ", ".join(outcome.conflicts) or "unknown paths",
            )

        for task_id in ordered:
            if self.keep_conflicting_branches and task_id in result.failed_tasks:
                continue
            git.delete_branch(project_dir, branch_name(task_id))

        result.success = not result.failed_tasks
        return result
