"""Tests for loop session logging."""

from __future__ import annotations

import json
from pathlib import Path

from cliengineer.events import EventBus, EventType
from cliengineer.executor import StepResult
from cliengineer.loop_logger import LoopLogger
from cliengineer.planner import parse_plan
from cliengineer.reviewer import parse_review


class TestLoopLogger:
    """Tests for LoopLogger."""

    def test_log_file_name(self, tmp_path: Path) -> None:
        """Test that the file name carries a sanitized task name."""
        loop_logger = LoopLogger(log_dir=tmp_path, task_name="code: hello world")

        assert loop_logger.log_file.parent == tmp_path
        assert loop_logger.log_file.name.endswith("_code__hello_world.json")

    def test_full_session(self, tmp_path: Path) -> None:
        """Test recording one iteration and writing the log."""
        loop_logger = LoopLogger(log_dir=tmp_path, task_name="code")
        plan = parse_plan("1. Create a file\n2. Write tests", goal="Goal")
        results = [
            StepResult(step_id="step_1", success=True, artifacts_created=["id-1"]),
            StepResult(step_id="step_2", success=False, error="boom"),
        ]
        review = parse_review(
            "QUALITY: Fair\n"
            "- SEVERITY: Major | CATEGORY: Testing | DESCRIPTION: No tests | SUGGESTION: Add them\n"
        )

        loop_logger.log_iteration_start(1, 3)
        loop_logger.log_plan(plan)
        loop_logger.log_step_results(results)
        loop_logger.log_review(review)
        path = loop_logger.finalize("Exhausted", "ran out")

        data = json.loads(path.read_text())
        iteration = data["iterations"][0]
        assert iteration["number"] == 1
        assert [s["category"] for s in iteration["plan"]["steps"]] == ["FileOperation", "Testing"]
        assert iteration["results"][1]["error"] == "boom"
        assert iteration["review"]["quality"] == "Fair"
        assert iteration["review"]["issues"][0]["category"] == "Testing"
        assert data["session"]["outcome"] == "Exhausted"
        assert data["session"]["final_summary"] == "ran out"
        stats = data["stats"]
        assert stats["iterations"] == 1
        assert stats["steps"] == {"attempted": 2, "succeeded": 1}
        assert stats["artifacts_created"] == 1
        assert stats["issues_found"] == 1

    def test_attached_to_event_bus(self, tmp_path: Path, event_bus: EventBus) -> None:
        """Test that API events are recorded from the bus."""
        loop_logger = LoopLogger(log_dir=tmp_path)
        loop_logger.attach(event_bus)

        event_bus.emit(EventType.API_CALL_COMPLETED, {
            "provider": "mock",
            "input_tokens": 10,
            "output_tokens": 5,
            "duration_ms": 12,
        })
        event_bus.emit(EventType.API_ERROR, {"provider": "mock", "error": "timeout"})

        assert len(loop_logger.stats.api_calls) == 2
        assert loop_logger.stats.total_tokens == 15
        assert loop_logger.log_data["api_calls"][1]["success"] is False

    def test_log_error(self, tmp_path: Path) -> None:
        """Test error records."""
        loop_logger = LoopLogger(log_dir=tmp_path)

        loop_logger.log_error("Planning failed", {"iteration": 2})

        assert loop_logger.log_data["errors"][0]["context"] == {"iteration": 2}

    def test_events_before_iteration_are_safe(self, tmp_path: Path) -> None:
        """Test logging plans or reviews with no iteration started."""
        loop_logger = LoopLogger(log_dir=tmp_path)

        loop_logger.log_plan(parse_plan("1. Create a file", goal="Goal"))
        loop_logger.log_review(parse_review("QUALITY: Good"))

        assert loop_logger.log_data["iterations"] == []
        assert loop_logger.stats.reviews == 1
