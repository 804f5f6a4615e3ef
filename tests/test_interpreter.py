"""Tests for the task interpreter."""

from __future__ import annotations

import dataclasses

import pytest

from cliengineer.interpreter import DEFAULT_CONSTRAINTS, TaskInterpreter


class TestTaskInterpreter:
    """Tests for TaskInterpreter.interpret."""

    @pytest.mark.parametrize("text, prefix", [
        ("Create a REST client", "Create or build: "),
        ("build the docs site", "Create or build: "),
        ("Fix the off-by-one in parser.py", "Fix or debug: "),
        ("debug the flaky upload", "Fix or debug: "),
        ("Test the payment module", "Test: "),
        ("Rename the config variables", "Complete task: "),
    ])
    def test_goal_prefix(self, text: str, prefix: str) -> None:
        """Test that the goal is prefixed by the detected intent."""
        task = TaskInterpreter().interpret(text)

        assert task.goal == f"{prefix}{text}"

    def test_create_wins_over_fix(self) -> None:
        """Test keyword precedence."""
        task = TaskInterpreter().interpret("create a fix for the bug")

        assert task.goal.startswith("Create or build: ")

    def test_task_fields(self) -> None:
        """Test description, context and constraints."""
        task = TaskInterpreter().interpret("write a haiku")

        assert task.description == "write a haiku"
        assert task.context == "User request: write a haiku"
        assert task.constraints == DEFAULT_CONSTRAINTS

    def test_task_is_immutable(self) -> None:
        """Test that a Task cannot be modified."""
        task = TaskInterpreter().interpret("anything")

        with pytest.raises(dataclasses.FrozenInstanceError):
            task.goal = "changed"  # type: ignore[misc]
