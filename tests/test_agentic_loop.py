"""Tests for the agentic control loop."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Optional

import pytest

from cliengineer.agentic_loop import AgenticLoop, LoopOutcome, LoopState
from cliengineer.artifacts import ArtifactManager, ArtifactType
from cliengineer.config import ContextSettings
from cliengineer.context import ContextManager
from cliengineer.events import Event, EventBus, EventType
from cliengineer.executor import Executor
from cliengineer.interpreter import Task
from cliengineer.iteration_context import IterationContext
from cliengineer.llm_manager import PLAN_MARKER, LLMManager, MockProvider
from cliengineer.loop_logger import LoopLogger
from cliengineer.planner import Plan, Planner

RUST_FILE = (
    '<artifact filename="a.rs" type="rust">\n'
    "<![CDATA[\n"
    'fn main() {\n    println!("hi");\n}\n'
    "]]>\n"
    "</artifact>\n"
)


class RecordingPlanner(Planner):
    """Planner that records the files it was told about on each call."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.calls: list[list[str]] = []

    def plan(
        self,
        task: Task,
        iteration_context: Optional[IterationContext] = None,
        context_id: Optional[str] = None,
    ) -> Plan:
        known = sorted(iteration_context.existing_files) if iteration_context else []
        self.calls.append(known)
        return super().plan(task, iteration_context, context_id)


class Harness:
    """A loop wired to a mock provider with every collaborator attached."""

    def __init__(self, provider: MockProvider, tmp_path: Path, max_iterations: int = 3) -> None:
        self.provider = provider
        self.event_bus = EventBus()
        self.events: list[Event] = []
        self.event_bus.subscribe(self.events.append)
        self.llm_manager = LLMManager([provider], self.event_bus)
        self.artifact_manager = ArtifactManager(tmp_path / "artifacts", self.event_bus)
        self.context_manager = ContextManager(
            ContextSettings(cache_dir=tmp_path / "cache"), self.llm_manager, self.event_bus
        )
        self.planner = RecordingPlanner(self.llm_manager, self.context_manager)
        self.loop_logger = LoopLogger(log_dir=tmp_path / "logs", task_name="test")
        self.loop_logger.attach(self.event_bus)
        self.loop =AgenticLoop(
            self.llm_manager,
            max_iterations=max_iterations,
            artifact_manager=self.artifact_manager,
            context_manager=self.context_manager,
            event_bus=self.event_bus,
            loop_logger=self.loop_logger,
            planner=self.planner,
            executor=Executor(
                self.llm_manager,
                self.artifact_manager,
                self.context_manager,
                self.event_bus,
                workspace_root=tmp_path,
            ),
        )

    def event_types(self) -> list[EventType]:
        return [e.type for e in self.events]


class TestTermination:
    """Tests for how many iterations the loop runs."""

    def test_deploys_on_first_ready_review(self, tmp_path: Path) -> None:
        """Test the happy path."""
        harness = Harness(MockProvider(), tmp_path)

        result = harness.loop.run("create a greeting script", "main")

        assert result.outcome == LoopOutcome.DEPLOYED
        assert result.success is True
        assert result.iterations == 1
        assert result.error is None
        assert len(harness.planner.calls) == 1
        assert result.last_review.ready_to_deploy is True
        assert harness.loop.state == LoopState.DEPLOYED

    @pytest.mark.parametrize("max_iterations", [1, 2, 4])
    def test_never_ready_plans_exactly_max_times(self, tmp_path: Path, max_iterations: int) -> None:
        """Test that an unready loop plans once per allowed iteration."""
        harness = Harness(MockProvider(ready_after=100), tmp_path, max_iterations=max_iterations)

        result = harness.loop.run("create a greeting script", "main")

        assert result.outcome == LoopOutcome.EXHAUSTED
        assert result.success is False
        assert result.iterations == max_iterations
        assert len(harness.planner.calls) == max_iterations
        assert result.error == (
            f"Max iterations reached: Failed to complete task after {max_iterations} iterations"
        )
        assert len(result.iteration_details) == max_iterations

    def test_stops_as_soon_as_ready(self, tmp_path: Path) -> None:
        """Test that the loop stops planning once a review is ready."""
        harness = Harness(MockProvider(ready_after=2), tmp_path, max_iterations=5)

        result = harness.loop.run("create a greeting script", "main")

        assert result.outcome == LoopOutcome.DEPLOYED
        assert result.iterations == 2
        assert len(harness.planner.calls) == 2

    def test_rejects_zero_iterations(self) -> None:
        """Test that at least one iteration is required."""
        with pytest.raises(ValueError):
            AgenticLoop(LLMManager([MockProvider()]), max_iterations=0)


class TestIterationCarryOver:
    """Tests for state carried between iterations."""

    def test_files_from_iteration_one_known_before_second_plan(self, tmp_path: Path) -> None:
        """Test that iteration 2's planner sees the file iteration 1 created."""
        provider = MockProvider(
            responses={
                PLAN_MARKER: "1. Create a.rs with a main function",
                "(FileOperation): Create a.rs": RUST_FILE,
            },
            ready_after=2,
        )
        harness = Harness(provider, tmp_path, max_iterations=3)

        harness.loop.run("make a rust program", "main")

        assert harness.planner.calls == [[], ["a.rs"]]
        assert harness.loop.iteration_context.existing_files["a.rs"].language == "rust"

    def test_second_plan_prompt_lists_files_and_issues(self, tmp_path: Path) -> None:
        """Test that the planning prompt steers toward modification."""
        harness = Harness(MockProvider(ready_after=2), tmp_path)

        harness.loop.run("create a greeting script", "main")

        plan_prompts = [p for p in harness.provider.prompts if PLAN_MARKER in p]
        assert "Do NOT recreate" not in plan_prompts[0]
        assert "Do NOT recreate" in plan_prompts[1]
        assert "hello.py (python) [HAS ISSUES]" in plan_prompts[1]

    def test_preexisting_artifacts_not_reported(self, tmp_path: Path) -> None:
        """Test that artifacts from earlier runs are not new files."""
        harness = Harness(MockProvider(ready_after=2), tmp_path)
        harness.artifact_manager.create_artifact("old.py", ArtifactType.SOURCE_CODE, "OLD = 1\n")

        harness.loop.run("create a greeting script", "main")

        assert harness.planner.calls == [[], ["hello.py"]]


class TestFailures:
    """Tests for hard failures."""

    def test_planning_failure(self, tmp_path: Path) -> None:
        """Test that a failed planning call ends the run."""
        harness = Harness(MockProvider(fail_on=PLAN_MARKER), tmp_path)

        result = harness.loop.run("create a greeting script", "main")

        assert result.outcome == LoopOutcome.FAILED
        assert result.error.startswith("Planning failed: ")
        assert result.iterations == 1
        assert harness.event_types()[-1] == EventType.TASK_FAILED

    def test_execution_failure(self, tmp_path: Path) -> None:
        """Test that a failed step call ends the run."""
        harness = Harness(MockProvider(fail_on="Step step_1"), tmp_path)

        result = harness.loop.run("create a greeting script", "main")

        assert result.outcome == LoopOutcome.FAILED
        assert result.error.startswith("Execution failed: ")

    def test_review_failure(self, tmp_path: Path) -> None:
        """Test that a failed review call ends the run."""
        harness = Harness(MockProvider(fail_on="READY_TO_DEPLOY:"), tmp_path)

        result = harness.loop.run("create a greeting script", "main")

        assert result.outcome == LoopOutcome.FAILED
        assert result.error.startswith("Review failed: ")

    def test_cancellation(self, tmp_path: Path) -> None:
        """Test that a set cancel event stops before the next iteration."""
        harness = Harness(MockProvider(), tmp_path)
        cancel = threading.Event()
        cancel.set()

        result = harness.loop.run("create a greeting script", "main", cancel_event=cancel)

        assert result.outcome == LoopOutcome.FAILED
        assert result.error == "cancelled"
        assert result.iterations == 0
        assert harness.planner.calls == []


class TestSideEffects:
    """Tests for events, conversation and logging."""

    def test_deploy_events(self, tmp_path: Path) -> None:
        """Test the lifecycle event order on success."""
        harness = Harness(MockProvider(), tmp_path)

        harness.loop.run("create a greeting script", "main")

        lifecycle = [
            t for t in harness.event_types()
            if t in (
                EventType.TASK_STARTED,
                EventType.ITERATION_STARTED,
                EventType.TASK_COMPLETED,
                EventType.TASK_SUMMARY,
                EventType.TASK_FAILED,
            )
        ]
        assert lifecycle == [
            EventType.TASK_STARTED,
            EventType.ITERATION_STARTED,
            EventType.TASK_COMPLETED,
            EventType.TASK_SUMMARY,
        ]
        summary = harness.events[-1].data
        assert summary["quality"] == "Good"
        assert summary["steps_executed"] == 2
        assert harness.event_bus.metrics.tasks_completed == 1

    def test_exhausted_event(self, tmp_path: Path) -> None:
        """Test that exhaustion is reported as a failure event."""
        harness = Harness(MockProvider(ready_after=100), tmp_path, max_iterations=1)

        harness.loop.run("create a greeting script", "main")

        assert harness.events[-1].type == EventType.TASK_FAILED
        assert harness.events[-1].data["error"].startswith("Max iterations reached")
        assert harness.event_bus.metrics.tasks_failed == 1

    def test_conversation_seeded(self, tmp_path: Path) -> None:
        """Test that the request and its interpretation open the conversation."""
        harness = Harness(MockProvider(), tmp_path)

        harness.loop.run("fix the greeting", "main")

        messages = harness.context_manager.get_messages("main")
        assert messages[0].role == "user"
        assert messages[0].content == "fix the greeting"
        assert messages[1].role == "system"
        assert messages[1].content == (
            "Task interpreted as: fix the greeting\nGoal: Fix or debug: fix the greeting"
        )
        assert messages[-1].content.startswith("Review:\n")

    def test_artifact_stats(self, tmp_path: Path) -> None:
        """Test post-processing statistics on success."""
        harness = Harness(MockProvider(), tmp_path)
        harness.artifact_manager.create_artifact("code_block_1.py", ArtifactType.SOURCE_CODE, "X = 1\n")

        result = harness.loop.run("create a greeting script", "main")

        assert result.artifact_stats == {
            "total": 2,
            "generic": 1,
            "by_type": {"SourceCode": 2},
        }

    def test_session_log_written(self, tmp_path: Path) -> None:
        """Test that the loop finalizes its session log."""
        harness = Harness(MockProvider(ready_after=2), tmp_path)

        harness.loop.run("create a greeting script", "main")

        data = json.loads(harness.loop_logger.log_file.read_text())
        assert data["session"]["outcome"] == "Deployed"
        assert len(data["iterations"]) == 2
        assert data["iterations"][0]["review"]["ready_to_deploy"] is False
        assert data["stats"]["api_calls"] == len(harness.provider.prompts)

    def test_minimal_loop_without_collaborators(self) -> None:
        """Test a loop with only a model attached."""
        loop = AgenticLoop(LLMManager([MockProvider()]), max_iterations=2)

        result = loop.run("create a greeting script", "main")

        assert result.outcome == LoopOutcome.DEPLOYED
        assert result.artifact_stats == {}
