"""Question/answer artifacts exchanged between the agent and a human."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

from mise_loop.orchestrator.layout import ProjectLayout
from mise_loop.orchestrator.storage import atomic_write_text


@dataclass(slots=True)
class PendingQuestion:
    task_id: str
    question: str


class ClarificationStore:
    """Questions live in ``.mise/clarifications``, answers in ``.mise/answers``."""

    def __init__(self, layout: ProjectLayout) -> None:
        self.layout = layout

    def read_question(self, task_id: str) -> str | None:
        """Return the non-empty question text, or None."""

        path = self.layout.clarification_path(task_id)
        if not path.exists():
            return None
        text = path.read_text("utf-8").strip()
        return text or None

    def clear_question(self, task_id: str) -> None:
        self.layout.clarification_path(task_id).unlink(missing_ok=True)

    def pending_questions(self) -> list[PendingQuestion]:
        directory = self.layout.mise_dir / "clarifications"
        if not directory.exists():
            return []
        pending: list[PendingQuestion] = []
        for path in sorted(directory.glob("*.md")):
            question = self.read_question(path.stem)
            if question is not None:
                pending.append(PendingQuestion(task_id=path.stem, question=question))
        return pending

    def write_answer(self, task_id: str, answer: str) -> None:
        atomic_write_text(self.layout.answer_path(task_id), answer.strip() + "\n")

    def read_answer(self, task_id: str) -> str | None:
        path = self.layout.answer_path(task_id)
        if not path.exists():
            return None
        text = path.read_text("utf-8").strip()
        return text or None

    def clear_answer(self, task_id: str) -> None:
        self.layout.answer_path(task_id).unlink(missing_ok=True)

    def take_answered(self, task_id: str) -> str | None:
        """Consume a question answered offline; return the prompt context for it."""

        question = self.read_question(task_id)
        answer = self.read_answer(task_id)
        if question is None or answer is None:
            return None
        self.clear_question(task_id)
        self.clear_answer(task_id)
        return format_clarification(question, answer)

    def wait_for_answer(
        self,
        task_id: str,
        *,
        timeout_seconds: float,
        poll_seconds: float = 2.0,
        stop_requested: Callable[[], bool] | None = None,
    ) -> str | None:
        """Poll for an answer file; None on timeout or stop."""

        deadline = time.monotonic() + timeout_seconds
        while True:
            answer = self.read_answer(task_id)
            if answer is not None:
                self.clear_answer(task_id)
                return answer
            if stop_requested is not None and stop_requested():
                return None
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(poll_seconds, remaining))


def format_clarification(question: str, answer: str) -> str:
    return f"Previous question: {question}\nAnswer: {answer}"
