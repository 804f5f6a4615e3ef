"""Turns raw user text into a Task."""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_CONSTRAINTS = "Follow best practices, write clean code, include error handling"


@dataclass(frozen=True)
class Task:
    """A parsed user task. Immutable once interpreted."""

    description: str
    goal: str
    context: str = ""
    constraints: str = DEFAULT_CONSTRAINTS


class TaskInterpreter:
    """Keyword-heuristic interpreter for user requests."""

    def interpret(self, text: str) -> Task:
        """Interpret user input into a Task.

        Args:
            text: Raw request text.

        Returns:
            Task whose goal is prefixed by the detected intent.
        """
        lowered = text.lower()
        if "create" in lowered or "build" in lowered:
            goal = f"Create or build: {text}"
        elif "fix" in lowered or "debug" in lowered:
            goal = f"Fix or debug: {text}"
        elif "test" in lowered:
            goal = f"Test: {text}"
        else:
            goal = f"Complete task: {text}"

        task = Task(
            description=text,
            goal=goal,
            context=f"User request: {text}",
        )
        logger.debug(f"Interpreted task goal: {task.goal}")
        return task
