"""Local deterministic agent for engine integration tests."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path

ANSWER_MARKER = "Previous question:"


def main(argv: list[str] | None = None) -> int:
    """Apply the requested file edits in cwd and exit with the requested code."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--write", action="append", default=[], help="Relative path to create.")
    parser.add_argument("--content", default=None)
    parser.add_argument("--write-task-file", default=None, help="Directory for <task_id>.txt.")
    parser.add_argument("--delete", action="append", default=[])
    parser.add_argument("--clarify", default=None, help="Question to ask unless already answered.")
    parser.add_argument("--evidence", action="store_true")
    parser.add_argument("--count-file", default=None, help="Append one line per invocation.")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    task_id = os.getenv("MISE_TASK_ID", "unknown")
    content = args.content if args.content is not None else f"{task_id}\n"

    if args.count_file:
        with Path(args.count_file).open("a", encoding="utf-8") as handle:
            handle.write(f"{task_id}\n")

    if args.sleep:
        time.sleep(args.sleep)

    if args.clarify and ANSWER_MARKER not in prompt:
        clarification_path = Path(os.environ["MISE_CLARIFICATION_PATH"])
        clarification_path.parent.mkdir(parents=True, exist_ok=True)
        clarification_path.write_text(args.clarify + "\n", "utf-8")
        return args.exit_code

    for relative in args.write:
        target = Path.cwd() / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, "utf-8")
    if args.write_task_file:
        target = Path.cwd() / args.write_task_file / f"{task_id}.txt"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, "utf-8")
    for relative in args.delete:
        (Path.cwd() / relative).unlink(missing_ok=True)

    if args.evidence:
        evidence_path = Path(os.environ["MISE_EVIDENCE_PATH"])
        evidence_path.parent.mkdir(parents=True, exist_ok=True)
        evidence_path.write_text(f"Task {task_id} done.\n", "utf-8")

    print(json.dumps({"input_tokens": 120, "output_tokens": 30}))  # noqa: T201
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
