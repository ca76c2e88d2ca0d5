"""Engine implementations."""

from mise_loop.orchestrator.backend.base import Engine, EngineRunRequest, EngineRunResult
from mise_loop.orchestrator.backend.cli_backend import ClaudeEngine, CommandEngine, create_engine

__all__ = [
    "ClaudeEngine",
    "CommandEngine",
    "Engine",
    "EngineRunRequest",
    "EngineRunResult",
    "create_engine",
]
