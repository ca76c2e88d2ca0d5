"""Runtime configuration: ``.mise/station.yaml`` with environment overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from mise_loop.orchestrator.layout import ProjectLayout
from mise_loop.orchestrator.pricing import PRICING_ENV_VAR, TokenPricing, parse_pricing
from mise_loop.orchestrator.scheduler import ParallelMode, parse_parallel_mode
from mise_loop.orchestrator.storage import load_yaml

ENGINE_NAMES = frozenset({"claude", "command"})


@dataclass(slots=True)
class ProjectSettings:
    """Project identity and standing instructions for the agent."""

    name: str = "unnamed"
    language: str | None = None
    framework: str | None = None
    rules: list[str] = field(default_factory=list)
    boundaries: list[str] = field(default_factory=list)


@dataclass(slots=True)
class EngineSettings:
    """Which agent CLI runs tasks and how."""

    name: str = "claude"
    model: str = "sonnet"
    command_template: str | None = None
    max_budget_usd: float | None = None
    allowed_tools: list[str] = field(default_factory=list)
    pricing: TokenPricing | None = None


@dataclass(slots=True)
class ModeSettings:
    """Execution policy."""

    attended: bool = True
    parallel: ParallelMode = "off"
    max_parallel: int = 4
    max_retries: int = 2
    skip_failures: bool = False
    keep_conflicting_branches: bool = False


@dataclass(slots=True)
class RuntimeSettings:
    """Timing knobs for locking, shutdown and subprocesses."""

    heartbeat_interval_seconds: float = 30.0
    stale_threshold_seconds: float = 120.0
    grace_period_seconds: float = 5.0
    engine_timeout_seconds: float = 3600.0
    backpressure_timeout_seconds: float = 300.0
    clarification_timeout_seconds: float = 3600.0
    clarification_poll_seconds: float = 2.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    project_dir: Path = Path()
    project: ProjectSettings = field(default_factory=ProjectSettings)
    engine: EngineSettings = field(default_factory=EngineSettings)
    mode: ModeSettings = field(default_factory=ModeSettings)
    runtime: RuntimeSettings = field(default_factory=RuntimeSettings)
    backpressure: dict[str, str] = field(default_factory=dict)
    log_level: str = "WARNING"

    @property
    def layout(self) -> ProjectLayout:
        return ProjectLayout(self.project_dir)

    @classmethod
    def load(cls, project_dir: Path) -> Settings:
        """Read station.yaml (if present) and apply ``MISE_*`` environment overrides."""

        project_dir = project_dir.resolve()
        station_path = ProjectLayout(project_dir).station_path
        station = load_yaml(station_path) if station_path.exists() else {}

        project_raw = _section(station, "project")
        engine_raw = _section(station, "engine")
        mode_raw = _section(station, "mode")
        runtime_raw = _section(station, "runtime")
        backpressure_raw = _section(station, "backpressure")

        budget = engine_raw.get("max_budget_usd")
        settings = cls(
            project_dir=project_dir,
            project=ProjectSettings(
                name=str(project_raw.get("name") or project_dir.name),
                language=project_raw.get("language"),
                framework=project_raw.get("framework"),
                rules=[str(rule) for rule in station.get("rules") or []],
                boundaries=[str(item) for item in station.get("boundaries") or []],
            ),
            engine=EngineSettings(
                name=os.getenv("MISE_ENGINE", str(engine_raw.get("name", "claude"))),
                model=os.getenv("MISE_MODEL", str(engine_raw.get("model", "sonnet"))),
                command_template=os.getenv("MISE_ENGINE_COMMAND", engine_raw.get("command")),
                max_budget_usd=float(budget) if budget is not None else None,
                allowed_tools=[str(tool) for tool in engine_raw.get("allowed_tools") or []],
                pricing=parse_pricing(os.getenv(PRICING_ENV_VAR) or engine_raw.get("pricing")),
            ),
            mode=ModeSettings(
                attended=_env_bool("MISE_ATTENDED", default=bool(mode_raw.get("attended", True))),
                parallel=parse_parallel_mode(
                    os.getenv("MISE_PARALLEL", _yaml_parallel(mode_raw.get("parallel", "off"))),
                ),
                max_parallel=int(os.getenv("MISE_MAX_PARALLEL", mode_raw.get("max_parallel", 4))),
                max_retries=int(os.getenv("MISE_MAX_RETRIES", mode_raw.get("max_retries", 2))),
                skip_failures=_env_bool(
                    "MISE_SKIP_FAILURES",
                    default=bool(mode_raw.get("skip_failures", False)),
                ),
                keep_conflicting_branches=bool(mode_raw.get("keep_conflicting_branches", False)),
            ),
            runtime=RuntimeSettings(
                heartbeat_interval_seconds=_env_float(
                    "MISE_HEARTBEAT_INTERVAL_SECONDS",
                    runtime_raw.get("heartbeat_interval_seconds", 30),
                ),
                stale_threshold_seconds=_env_float(
                    "MISE_STALE_THRESHOLD_SECONDS",
                    runtime_raw.get("stale_threshold_seconds", 120),
                ),
                grace_period_seconds=_env_float(
                    "MISE_GRACE_PERIOD_SECONDS",
                    runtime_raw.get("grace_period_seconds", 5),
                ),
                engine_timeout_seconds=_env_float(
                    "MISE_ENGINE_TIMEOUT_SECONDS",
                    runtime_raw.get("engine_timeout_seconds", 3600),
                ),
                backpressure_timeout_seconds=_env_float(
                    "MISE_BACKPRESSURE_TIMEOUT_SECONDS",
                    runtime_raw.get("backpressure_timeout_seconds", 300),
                ),
                clarification_timeout_seconds=_env_float(
                    "MISE_CLARIFICATION_TIMEOUT_SECONDS",
                    runtime_raw.get("clarification_timeout_seconds", 3600),
                ),
            ),
            backpressure={
                str(name): str(command)
                for name, command in backpressure_raw.items()
                if command is not None
            },
            log_level=os.getenv("MISE_LOG_LEVEL", "WARNING").upper(),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error on inconsistent values."""

        runtime = self.runtime
        if runtime.heartbeat_interval_seconds <= 0:
            raise ValueError("MISE_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if runtime.stale_threshold_seconds <= runtime.heartbeat_interval_seconds:
            raise ValueError(
                "MISE_STALE_THRESHOLD_SECONDS must be greater than the heartbeat interval.",
            )
        for name in (
            "grace_period_seconds",
            "engine_timeout_seconds",
            "backpressure_timeout_seconds",
            "clarification_timeout_seconds",
        ):
            if getattr(runtime, name) <= 0:
                raise ValueError(f"MISE_{name.upper()} must be > 0.")
        parse_parallel_mode(self.mode.parallel)
        if self.mode.max_parallel < 1:
            raise ValueError("MISE_MAX_PARALLEL must be >= 1.")
        if self.mode.max_retries < 0:
            raise ValueError("MISE_MAX_RETRIES must be >= 0.")
        if self.engine.name not in ENGINE_NAMES:
            raise ValueError(
                f"Unknown engine {self.engine.name!r}. Expected one of: {', '.join(sorted(ENGINE_NAMES))}.",
            )
        if self.engine.name == "command" and not (self.engine.command_template or "").strip():
            raise ValueError("The command engine requires MISE_ENGINE_COMMAND or engine.command.")


def _section(station: dict[str, Any], key: str) -> dict[str, Any]:
    value = station.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"station.yaml: {key} must be a mapping")
    return value


def _yaml_parallel(value: object) -> str | int:
    # YAML 1.1 reads a bare ``off`` as False.
    if value is False:
        return "off"
    if value is True:
        return "auto"
    if isinstance(value, int):
        return value
    return str(value)


def _env_float(name: str, default: object) -> float:
    value = os.getenv(name)
    raw = value if value is not None else default
    try:
        return float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError) as error:
        raise ValueError(f"Invalid numeric value for {name}: {raw!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
