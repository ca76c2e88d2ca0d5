"""Engine interface for task execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from mise_loop.orchestrator.models import TokenUsage

if TYPE_CHECKING:
    from mise_loop.orchestrator.cancellation import RunContext


@dataclass(slots=True)
class EngineRunRequest:
    """Inputs required to execute one engine invocation."""

    cwd: Path
    task_id: str
    model: str
    log_dir: Path
    timeout_seconds: float = 3600.0
    allowed_tools: list[str] = field(default_factory=list)
    max_budget_usd: float | None = None
    context: RunContext | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class EngineRunResult:
    """Execution outcome from an engine subprocess."""

    exit_code: int
    stdout: str
    stderr: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    structured_output: dict[str, object] | None = None
    timed_out: bool = False
    interrupted: bool = False


class Engine(Protocol):
    """Protocol implemented by engine runners."""

    name: str

    def check(self) -> bool:
        """Return whether the engine can be invoked on this machine."""

    def run(self, prompt: str, request: EngineRunRequest) -> EngineRunResult:
        """Run the agent on ``prompt`` and return execution metadata."""
