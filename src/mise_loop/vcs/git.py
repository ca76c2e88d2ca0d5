"""Thin git CLI wrapper used for change isolation, worktrees and merges."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

from mise_loop.orchestrator.errors import GitCommandError

logger = logging.getLogger(__name__)

SNAPSHOT_IGNORE = frozenset(
    {".git", ".mise", "node_modules", "__pycache__", ".venv", "dist", ".next", ".pytest_cache"},
)

RUN_ID_TRAILER = "Mise-Run-Id"


@dataclass(frozen=True, slots=True)
class FileStat:
    """Size and mtime of one working-tree file."""

    size: int
    mtime_ns: int


FileSnapshot = dict[str, FileStat]


@dataclass(slots=True)
class BranchMergeOutcome:
    """Result of merging one branch into the current branch."""

    success: bool
    conflicts: list[str]


def run_git(args: list[str], cwd: Path, *, check: bool = True) -> subprocess.CompletedProcess[str]:
    completed = subprocess.run(  # noqa: S603
        ["git", *args],  # noqa: S607
        cwd=cwd,
        capture_output=True,
        text=True,
        check=False,
    )
    if check and completed.returncode != 0:
        raise GitCommandError(args, completed.returncode, completed.stderr)
    return completed


def snapshot(cwd: Path) -> FileSnapshot:
    """Record size and mtime of every file under ``cwd``, skipping tool directories."""

    result: FileSnapshot = {}
    for dirpath, dirnames, filenames in os.walk(cwd):
        dirnames[:] = [name for name in dirnames if name not in SNAPSHOT_IGNORE]
        for filename in filenames:
            if filename in SNAPSHOT_IGNORE:
                continue
            full_path = Path(dirpath) / filename
            try:
                stat = full_path.lstat()
            except OSError:
                continue
            relative = full_path.relative_to(cwd).as_posix()
            result[relative] = FileStat(size=stat.st_size, mtime_ns=stat.st_mtime_ns)
    return result


def changed_files(cwd: Path, before: FileSnapshot) -> list[str]:
    """Paths added, modified or removed since ``before``, sorted."""

    after = snapshot(cwd)
    changed = {path for path, stat in after.items() if before.get(path) != stat}
    changed.update(path for path in before if path not in after)
    return sorted(changed)


def stage_files(cwd: Path, paths: list[str]) -> None:
    """Stage exactly ``paths``; removed files are staged as deletions."""

    if not paths:
        return
    present = [path for path in paths if (cwd / path).exists()]
    removed = [path for path in paths if not (cwd / path).exists()]
    present = _without_ignored(cwd, present)
    if present:
        run_git(["add", "-A", "--", *present], cwd)
    if removed:
        run_git(["rm", "--cached", "--ignore-unmatch", "--quiet", "--", *removed], cwd)


def has_staged_changes(cwd: Path) -> bool:
    return run_git(["diff", "--cached", "--quiet"], cwd, check=False).returncode != 0


def commit_with_trailer(cwd: Path, *, task_id: str, title: str, run_id: str) -> bool:
    """Commit staged changes as ``mise(<id>): <title>``; False when nothing is staged."""

    if not has_staged_changes(cwd):
        return False
    run_git(
        ["commit", "--no-verify", "-m", f"mise({task_id}): {title}", "-m", f"{RUN_ID_TRAILER}: {run_id}"],
        cwd,
    )
    return True


def is_repo(cwd: Path) -> bool:
    try:
        completed = run_git(["rev-parse", "--is-inside-work-tree"], cwd, check=False)
    except OSError:
        return False
    return completed.returncode == 0 and completed.stdout.strip() == "true"


def current_branch(cwd: Path) -> str:
    return run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd).stdout.strip()


def branch_exists(cwd: Path, branch: str) -> bool:
    completed = run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], cwd, check=False)
    return completed.returncode == 0


def delete_branch(cwd: Path, branch: str) -> bool:
    """Force-delete a local branch; False when it did not exist."""

    if not branch_exists(cwd, branch):
        return False
    run_git(["branch", "-D", branch], cwd)
    return True


def worktree_add(cwd: Path, path: Path, branch: str) -> None:
    run_git(["worktree", "add", str(path), "-b", branch], cwd)


def worktree_remove(cwd: Path, path: Path) -> bool:
    return run_git(["worktree", "remove", "--force", str(path)], cwd, check=False).returncode == 0


def worktree_prune(cwd: Path) -> None:
    run_git(["worktree", "prune"], cwd, check=False)


def worktree_list(cwd: Path) -> list[Path]:
    output = run_git(["worktree", "list", "--porcelain"], cwd).stdout
    return [Path(line[len("worktree ") :]) for line in output.splitlines() if line.startswith("worktree ")]


def merge_branch(cwd: Path, branch: str) -> BranchMergeOutcome:
    """``merge --no-ff``; on failure collect unmerged paths and abort."""

    completed = run_git(["merge", "--no-ff", "--no-edit", branch], cwd, check=False)
    if completed.returncode == 0:
        return BranchMergeOutcome(success=True, conflicts=[])

    unmerged = run_git(["diff", "--name-only", "--diff-filter=U"], cwd, check=False).stdout
    conflicts = [line.strip() for line in unmerged.splitlines() if line.strip()]
    abort = run_git(["merge", "--abort"], cwd, check=False)
    if abort.returncode != 0:
        logger.warning("git merge --abort failed for %s: %s", branch, abort.stderr.strip())
    if not conflicts:
        logger.warning("Merge of %s failed without conflicts: %s", branch, completed.stderr.strip())
    return BranchMergeOutcome(success=False, conflicts=conflicts)


def _without_ignored(cwd: Path, paths: list[str]) -> list[str]:
    if not paths:
        return paths
    completed = subprocess.run(  # noqa: S603
        ["git", "check-ignore", "--stdin"],  # noqa: S607
        cwd=cwd,
        input="\n".join(paths) + "\n",
        capture_output=True,
        text=True,
        check=False,
    )
    ignored = {line.strip() for line in completed.stdout.splitlines() if line.strip()}
    return [path for path in paths if path not in ignored]
