"""Shared test fixtures."""

from __future__ import annotations

import subprocess
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import yaml

_ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m mise_loop.orchestrator.backend.echo_agent --prompt-file {{prompt_file}}"
)

_MISE_ENV_VARS = (
    "MISE_ENGINE",
    "MISE_MODEL",
    "MISE_ENGINE_COMMAND",
    "MISE_ATTENDED",
    "MISE_PARALLEL",
    "MISE_MAX_PARALLEL",
    "MISE_MAX_RETRIES",
    "MISE_SKIP_FAILURES",
    "MISE_ENGINE_PRICING",
    "MISE_LOG_LEVEL",
    "MISE_HEARTBEAT_INTERVAL_SECONDS",
    "MISE_STALE_THRESHOLD_SECONDS",
    "MISE_GRACE_PERIOD_SECONDS",
    "MISE_ENGINE_TIMEOUT_SECONDS",
    "MISE_BACKPRESSURE_TIMEOUT_SECONDS",
    "MISE_CLARIFICATION_TIMEOUT_SECONDS",
)


def echo_command(agent_args: str = "") -> str:
    """Command-engine template running the bundled echo agent."""

    return f"{_ECHO_AGENT_COMMAND_TEMPLATE} {agent_args}".strip()


def git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=True,
    )
    return completed.stdout


@pytest.fixture(autouse=True)
def _clean_mise_env(monkeypatch):
    for name in _MISE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """Fresh repository on ``main`` with one commit and ``.mise/`` ignored."""

    repo = tmp_path / "project"
    repo.mkdir()
    git(repo, "init", "-q", "-b", "main")
    git(repo, "config", "user.email", "loop@example.com")
    git(repo, "config", "user.name", "Loop Tests")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / ".gitignore").write_text(".mise/\n", "utf-8")
    (repo / "README.md").write_text("# project\n", "utf-8")
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", "initial")
    return repo


@pytest.fixture()
def make_project(git_repo: Path) -> Callable[..., Path]:
    """Write ``.mise/board.yaml`` and ``.mise/station.yaml`` into the git fixture."""

    def _make(  # noqa: PLR0913
        tasks: list[dict[str, Any]],
        *,
        agent_args: str = "",
        backpressure: dict[str, str] | None = None,
        mode: dict[str, Any] | None = None,
        runtime: dict[str, Any] | None = None,
        project_dir: Path | None = None,
    ) -> Path:
        root = project_dir or git_repo
        mise_dir = root / ".mise"
        mise_dir.mkdir(parents=True, exist_ok=True)
        station = {
            "project": {"name": "demo", "language": "python"},
            "engine": {"name": "command", "model": "echo-model", "command": echo_command(agent_args)},
            "mode": {"attended": True, "parallel": "off", "max_retries": 1, **(mode or {})},
            "runtime": {"heartbeat_interval_seconds": 5, "stale_threshold_seconds": 60, **(runtime or {})},
            "backpressure": backpressure or {},
            "rules": ["Keep it simple."],
        }
        (mise_dir / "station.yaml").write_text(yaml.safe_dump(station, sort_keys=False), "utf-8")
        (mise_dir / "board.yaml").write_text(
            yaml.safe_dump({"version": 1, "project": "demo", "tasks": tasks}, sort_keys=False),
            "utf-8",
        )
        return root

    return _make
