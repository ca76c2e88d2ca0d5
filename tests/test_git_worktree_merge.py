from __future__ import annotations

from pathlib import Path

import allure

from conftest import git
from mise_loop.orchestrator.layout import ProjectLayout, branch_name
from mise_loop.orchestrator.merge import MergeCoordinator
from mise_loop.orchestrator.worktree import WorktreeManager
from mise_loop.vcs import git as vcs

pytestmark = [
    allure.epic("Version Control"),
    allure.feature("Change Isolation And Merging"),
]


def _branch_with_file(repo: Path, task_id: str, filename: str, content: str) -> None:
    git(repo, "checkout", "-q", "-b", branch_name(task_id), "main")
    (repo / filename).write_text(content, "utf-8")
    git(repo, "add", filename)
    git(repo, "commit", "-q", "-m", f"task {task_id}")
    git(repo, "checkout", "-q", "main")


def test_changed_files_covers_added_modified_and_removed(git_repo: Path) -> None:
    (git_repo / "old.txt").write_text("old\n", "utf-8")
    before = vcs.snapshot(git_repo)

    (git_repo / "new.txt").write_text("new\n", "utf-8")
    (git_repo / "README.md").write_text("# project\nmore\n", "utf-8")
    (git_repo / "old.txt").unlink()
    (git_repo / ".mise").mkdir()
    (git_repo / ".mise" / "board.yaml").write_text("tasks: []\n", "utf-8")

    assert vcs.changed_files(git_repo, before) == ["README.md", "new.txt", "old.txt"]


def test_commit_stages_only_agent_changes(git_repo: Path) -> None:
    (git_repo / "preexisting.txt").write_text("user edit\n", "utf-8")
    before = vcs.snapshot(git_repo)
    (git_repo / "feature.py").write_text("print('hi')\n", "utf-8")
    (git_repo / "README.md").unlink()

    vcs.stage_files(git_repo, vcs.changed_files(git_repo, before))
    committed = vcs.commit_with_trailer(git_repo, task_id="a", title="Add feature", run_id="run-1")

    assert committed
    message = git(git_repo, "log", "-1", "--format=%B")
    assert message.startswith("mise(a): Add feature")
    assert "Mise-Run-Id: run-1" in message
    files = git(git_repo, "show", "--name-status", "--format=", "HEAD").split("\n")
    assert "A\tfeature.py" in files
    assert "D\tREADME.md" in files
    assert "?? preexisting.txt" in git(git_repo, "status", "--porcelain")


def test_stage_files_skips_gitignored_paths(git_repo: Path) -> None:
    (git_repo / ".gitignore").write_text(".mise/\n*.log\n", "utf-8")
    git(git_repo, "commit", "-q", "-am", "ignore logs")
    before = vcs.snapshot(git_repo)
    (git_repo / "debug.log").write_text("noise\n", "utf-8")

    vcs.stage_files(git_repo, vcs.changed_files(git_repo, before))

    assert not vcs.has_staged_changes(git_repo)
    assert not vcs.commit_with_trailer(git_repo, task_id="a", title="Nothing", run_id="r")


def test_worktree_create_and_remove(git_repo: Path) -> None:
    layout = ProjectLayout(git_repo)
    manager = WorktreeManager(layout)

    assert manager.is_supported()
    handle = manager.create("a")

    assert handle.path == layout.worktree_path("a")
    assert (handle.path / "README.md").exists()
    assert vcs.current_branch(handle.path) == "mise/task-a"

    manager.remove("a")

    assert not handle.path.exists()
    assert not vcs.branch_exists(git_repo, "mise/task-a")


def test_worktree_create_replaces_stale_branch_and_directory(git_repo: Path) -> None:
    layout = ProjectLayout(git_repo)
    git(git_repo, "branch", "mise/task-a")
    stale = layout.worktree_path("a")
    stale.mkdir(parents=True)
    (stale / "leftover.txt").write_text("x", "utf-8")

    handle = WorktreeManager(layout).create("a")

    assert not (handle.path / "leftover.txt").exists()
    assert (handle.path / "README.md").exists()


def test_worktree_not_supported_outside_git(tmp_path: Path) -> None:
    assert not WorktreeManager(ProjectLayout(tmp_path)).is_supported()


def test_merge_group_continues_past_conflicts(git_repo: Path) -> None:
    (git_repo / "shared.txt").write_text("base\n", "utf-8")
    git(git_repo, "add", "shared.txt")
    git(git_repo, "commit", "-q", "-m", "shared")
    _branch_with_file(git_repo, "b", "shared.txt", "from b\n")
    _branch_with_file(git_repo, "a", "shared.txt", "from a\n")
    _branch_with_file(git_repo, "c", "c.txt", "from c\n")

    result = MergeCoordinator(ProjectLayout(git_repo)).merge_group(["c", "b", "a"])

    assert not result.success
    assert result.merged_tasks == ["a", "c"]
    assert result.failed_tasks == ["b"]
    assert result.conflicts == ["shared.txt"]
    assert (git_repo / "shared.txt").read_text("utf-8") == "from a\n"
    assert (git_repo / "c.txt").exists()
    assert git(git_repo, "status", "--porcelain").strip() == ""
    for task_id in ("a", "b", "c"):
        assert not vcs.branch_exists(git_repo, branch_name(task_id))


def test_merge_group_can_keep_conflicting_branches(git_repo: Path) -> None:
    (git_repo / "shared.txt").write_text("base\n", "utf-8")
    git(git_repo, "add", "shared.txt")
    git(git_repo, "commit", "-q", "-m", "shared")
    _branch_with_file(git_repo, "a", "shared.txt", "from a\n")
    _branch_with_file(git_repo, "b", "shared.txt", "from b\n")

    result = MergeCoordinator(ProjectLayout(git_repo), keep_conflicting_branches=True).merge_group(["a", "b"])

    assert result.failed_tasks == ["b"]
    assert not vcs.branch_exists(git_repo, branch_name("a"))
    assert vcs.branch_exists(git_repo, branch_name("b"))
