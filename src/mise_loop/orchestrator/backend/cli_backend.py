"""Subprocess-based engines for CLI coding agents."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from contextlib import ExitStack
from pathlib import Path
from typing import IO, TYPE_CHECKING

from mise_loop.orchestrator.backend.base import Engine, EngineRunRequest, EngineRunResult
from mise_loop.orchestrator.cancellation import supervise_process
from mise_loop.orchestrator.errors import EngineRunError
from mise_loop.orchestrator.pricing import TokenPricing
from mise_loop.orchestrator.storage import utc_now
from mise_loop.orchestrator.usage import extract_stream_json_usage, extract_usage

if TYPE_CHECKING:
    from mise_loop.config import Settings
    from mise_loop.orchestrator.cancellation import RunContext

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
INTERRUPTED_EXIT_CODE = 130


class ClaudeEngine:
    """Claude Code CLI in print mode with stream-json output; prompt on stdin."""

    name = "claude"

    def __init__(self, *, executable: str = "claude") -> None:
        self.executable = executable

    def check(self) -> bool:
        try:
            completed = subprocess.run(  # noqa: S603
                [self.executable, "--version"],
                capture_output=True,
                text=True,
                timeout=30,
                check=False,
                env=_engine_env({}),
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return completed.returncode == 0

    def build_args(self, request: EngineRunRequest) -> list[str]:
        args = [self.executable, "-p", "--output-format", "stream-json", "--verbose"]
        if request.allowed_tools:
            args += ["--allowedTools", *request.allowed_tools]
        if request.model:
            args += ["--model", request.model]
        if request.max_budget_usd:
            args += ["--max-budget-usd", str(request.max_budget_usd)]
        args.append("--dangerously-skip-permissions")
        return args

    def run(self, prompt: str, request: EngineRunRequest) -> EngineRunResult:
        prompt_file = _write_prompt(request, prompt)
        result = _run_engine_command(
            run_args=self.build_args(request),
            request=request,
            stdin_path=prompt_file,
            engine_name=self.name,
        )
        usage, structured = extract_stream_json_usage(result.stdout)
        result.usage = usage
        result.structured_output = structured
        return result


class CommandEngine:
    """Any CLI agent driven through a command template.

    Supported placeholders: ``{prompt}``, ``{prompt_file}``, ``{model}``.
    Values are shell-quoted before the template is split into argv.
    """

    name = "command"

    def __init__(self, command_template: str, *, pricing: TokenPricing | None = None) -> None:
        self.command_template = command_template
        self.pricing = pricing

    def check(self) -> bool:
        try:
            argv = build_run_args(
                command_template=self.command_template,
                model="",
                prompt="",
                prompt_file=Path("prompt.md"),
            )
        except EngineRunError:
            return False
        return shutil.which(argv[0]) is not None or Path(argv[0]).is_file()

    def run(self, prompt: str, request: EngineRunRequest) -> EngineRunResult:
        prompt_file = _write_prompt(request, prompt)
        run_args = build_run_args(
            command_template=self.command_template,
            model=request.model,
            prompt=prompt,
            prompt_file=prompt_file,
        )
        result = _run_engine_command(
            run_args=run_args,
            request=request,
            stdin_path=None,
            engine_name=self.name,
        )
        usage = extract_usage(stdout=result.stdout, stderr=result.stderr)
        if usage.cost_usd is None and self.pricing is not None:
            usage.cost_usd = self.pricing.estimate(usage.input_tokens, usage.output_tokens)
        result.usage = usage
        return result


def create_engine(settings: Settings) -> Engine:
    """Pick the engine implementation by configured name."""

    name = settings.engine.name
    if name == "claude":
        return ClaudeEngine()
    if name == "command":
        if not settings.engine.command_template:
            raise ValueError("The command engine requires a command template.")
        return CommandEngine(settings.engine.command_template, pricing=settings.engine.pricing)
    raise ValueError(f"Unknown engine: {name}")


def build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise EngineRunError("Engine command template is empty.")
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise EngineRunError("Engine command template must include {prompt} or {prompt_file}.")
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise EngineRunError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise EngineRunError("Engine command template rendered empty command.")
    return argv


def _write_prompt(request: EngineRunRequest, prompt: str) -> Path:
    request.log_dir.mkdir(parents=True, exist_ok=True)
    prompt_file = request.log_dir / "prompt.md"
    prompt_file.write_text(prompt, "utf-8")
    return prompt_file


def _engine_env(extra: dict[str, str]) -> dict[str, str]:
    env = os.environ.copy()
    # Nested agent sessions refuse to start when this marker is inherited.
    env["CLAUDE_CODE_ENTRYPOINT"] = ""
    env.update(extra)
    return env


def _run_engine_command(
    *,
    run_args: list[str],
    request: EngineRunRequest,
    stdin_path: Path | None,
    engine_name: str,
) -> EngineRunResult:
    request.log_dir.mkdir(parents=True, exist_ok=True)
    stdout_path = request.log_dir / "engine.stdout"
    stderr_path = request.log_dir / "engine.stderr"
    env = _engine_env({"MISE_TASK_ID": request.task_id, "MISE_MODEL": request.model, **request.env})

    logger.info("Task %s: starting %s engine (%s)", request.task_id, engine_name, request.model)
    try:
        with ExitStack() as stack:
            stdout_handle = stack.enter_context(stdout_path.open("w", encoding="utf-8"))
            stderr_handle = stack.enter_context(stderr_path.open("w", encoding="utf-8"))
            stdin_handle: IO[str] | int = (
                stack.enter_context(stdin_path.open("r", encoding="utf-8"))
                if stdin_path is not None
                else subprocess.DEVNULL
            )
            exit_code, timed_out, interrupted = _run_subprocess_with_shutdown(
                run_args=run_args,
                cwd=request.cwd,
                env=env,
                timeout_seconds=request.timeout_seconds,
                stdin_handle=stdin_handle,
                stdout_handle=stdout_handle,
                stderr_handle=stderr_handle,
                context=request.context,
                task_id=request.task_id,
            )
    except FileNotFoundError as error:
        raise EngineRunError(f"Engine command not found: {run_args[0]}") from error
    except OSError as error:
        raise EngineRunError(f"Engine failed to start: {error}") from error

    stdout = stdout_path.read_text("utf-8", errors="replace")
    stderr = stderr_path.read_text("utf-8", errors="replace")
    _append_run_log(
        request.log_dir / "engine.log",
        engine_name=engine_name,
        model=request.model,
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
    )
    return EngineRunResult(
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        timed_out=timed_out,
        interrupted=interrupted,
    )


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    cwd: Path,
    env: dict[str, str],
    timeout_seconds: float,
    stdin_handle: IO[str] | int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    context: RunContext | None,
    task_id: str,
) -> tuple[int, bool, bool]:
    """Start the engine child and supervise it until exit, timeout or shutdown."""

    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=cwd,
        env=env,
        stdin=stdin_handle,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    return supervise_process(
        process,
        context=context,
        key=f"{task_id}:engine",
        timeout_seconds=timeout_seconds,
        timeout_exit_code=TIMEOUT_EXIT_CODE,
        interrupted_exit_code=INTERRUPTED_EXIT_CODE,
    )


def _append_run_log(  # noqa: PLR0913
    path: Path,
    *,
    engine_name: str,
    model: str,
    exit_code: int,
    stdout: str,
    stderr: str,
) -> None:
    with path.open("a", encoding="utf-8") as handle:
        handle.write(f"\n[{utc_now().isoformat()}] {engine_name} ({model}) exit code {exit_code}\n")
        if stdout:
            handle.write("--- stdout\n")
            handle.write(stdout.rstrip() + "\n")
        if stderr:
            handle.write("--- stderr\n")
            handle.write(stderr.rstrip() + "\n")
