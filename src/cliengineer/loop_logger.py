"""Session logging for agentic loop runs.

Each run gets one JSON file recording iterations, plans, step results,
reviews, API calls and errors.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from .events import Event, EventBus, EventType

if TYPE_CHECKING:
    from .executor import StepResult
    from .planner import Plan
    from .reviewer import ReviewResult

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = Path(".cli_engineer") / "logs"


@dataclass
class APICallLog:
    """Log entry for an API call."""

    timestamp: str
    provider: str
    input_tokens: int = 0
    output_tokens: int = 0
    success: bool = True
    error: Optional[str] = None
    duration_ms: int = 0


@dataclass
class LoopStats:
    """Statistics for one loop run."""

    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    iterations: int = 0
    steps_attempted: int = 0
    steps_succeeded: int = 0
    artifacts_created: int = 0
    reviews: int = 0
    issues_found: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    api_calls: list[APICallLog] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        """Get total tokens used."""
        return self.total_input_tokens + self.total_output_tokens

    @property
    def duration_seconds(self) -> float:
        """Get duration in seconds."""
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
            "iterations": self.iterations,
            "steps": {
                "attempted": self.steps_attempted,
                "succeeded": self.steps_succeeded,
            },
            "artifacts_created": self.artifacts_created,
            "reviews": self.reviews,
            "issues_found": self.issues_found,
            "tokens": {
                "input": self.total_input_tokens,
                "output": self.total_output_tokens,
                "total": self.total_tokens,
            },
            "api_calls": len(self.api_calls),
        }


class LoopLogger:
    """Writes a JSON session log for one loop run."""

    def __init__(
        self,
        log_dir: Optional[Path] = None,
        task_name: str = "task",
    ):
        """Initialize the loop logger.

        Args:
            log_dir: Directory for log files. Defaults to .cli_engineer/logs.
            task_name: Short name of the task, used in the file name.
        """
        self.log_dir = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
        self.task_name = task_name
        self.stats = LoopStats()

        self.log_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        safe_name = "".join(c if c.isalnum() else "_" for c in task_name[:30])
        self.log_file = self.log_dir / f"{timestamp}_{safe_name}.json"

        self.log_data: dict = {
            "session": {
                "id": timestamp,
                "task": task_name,
                "start_time": datetime.now().isoformat(),
            },
            "iterations": [],
            "api_calls": [],
            "errors": [],
        }

        logger.info(f"Loop logger initialized: {self.log_file}")

    def attach(self, event_bus: EventBus) -> None:
        """Record API calls reported on an event bus."""
        event_bus.subscribe(self._on_event)

    def _on_event(self, event: Event) -> None:
        if event.type == EventType.API_CALL_COMPLETED:
            self.log_api_call(
                provider=event.data.get("provider", "unknown"),
                input_tokens=int(event.data.get("input_tokens", 0)),
                output_tokens=int(event.data.get("output_tokens", 0)),
                duration_ms=int(event.data.get("duration_ms", 0)),
            )
        elif event.type == EventType.API_ERROR:
            self.log_api_call(
                provider=event.data.get("provider", "unknown"),
                success=False,
                error=event.data.get("error"),
            )

    def _current_iteration(self) -> Optional[dict]:
        return self.log_data["iterations"][-1] if self.log_data["iterations"] else None

    def log_iteration_start(self, iteration: int, max_iterations: int) -> None:
        """Log the start of an iteration."""
        self.stats.iterations = iteration
        self.log_data["iterations"].append({
            "number": iteration,
            "max": max_iterations,
            "start_time": datetime.now().isoformat(),
        })

    def log_plan(self, plan: Plan) -> None:
        """Log the plan of the current iteration."""
        current = self._current_iteration()
        if current is None:
            return
        current["plan"] = {
            "goal": plan.goal,
            "complexity": plan.estimated_complexity.value,
            "steps": [
                {"id": s.id, "category": s.category.value, "description": s.description}
                for s in plan.steps
            ],
        }

    def log_step_results(self, results: list[StepResult]) -> None:
        """Log the step results of the current iteration."""
        self.stats.steps_attempted += len(results)
        self.stats.steps_succeeded += sum(1 for r in results if r.success)
        self.stats.artifacts_created += sum(len(r.artifacts_created) for r in results)

        current = self._current_iteration()
        if current is None:
            return
        current["results"] = [
            {
                "step_id": r.step_id,
                "success": r.success,
                "artifacts": list(r.artifacts_created),
                "error": r.error,
            }
            for r in results
        ]

    def log_review(self, review: ReviewResult) -> None:
        """Log the review of the current iteration."""
        self.stats.reviews += 1
        self.stats.issues_found += len(review.issues)

        current = self._current_iteration()
        if current is None:
            return
        current["review"] = {
            "quality": review.overall_quality.value,
            "ready_to_deploy": review.ready_to_deploy,
            "summary": review.summary,
            "issues": [
                {
                    "severity": i.severity.value,
                    "category": i.category.value,
                    "description": i.description,
                    "location": i.location,
                }
                for i in review.issues
            ],
        }
        current["end_time"] = datetime.now().isoformat()

    def log_api_call(
        self,
        provider: str,
        input_tokens: int = 0,
        output_tokens: int = 0,
        success: bool = True,
        error: Optional[str] = None,
        duration_ms: int = 0,
    ) -> None:
        """Log an API call."""
        call = APICallLog(
            timestamp=datetime.now().isoformat(),
            provider=provider,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            success=success,
            error=error,
            duration_ms=duration_ms,
        )
        self.stats.api_calls.append(call)
        self.stats.total_input_tokens += input_tokens
        self.stats.total_output_tokens += output_tokens

        self.log_data["api_calls"].append({
            "timestamp": call.timestamp,
            "provider": provider,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "success": success,
            "error": error,
            "duration_ms": duration_ms,
        })

    def log_error(self, error: str, context: Optional[dict] = None) -> None:
        """Log an error."""
        self.log_data["errors"].append({
            "timestamp": datetime.now().isoformat(),
            "error": error,
            "context": context or {},
        })
        logger.error(f"Loop error: {error}")

    def finalize(self, outcome: str, final_summary: Optional[str] = None) -> Path:
        """Finalize the log and write it to file.

        Returns:
            Path of the log file.
        """
        self.stats.end_time = datetime.now()

        self.log_data["session"]["end_time"] = self.stats.end_time.isoformat()
        self.log_data["session"]["outcome"] = outcome
        self.log_data["session"]["final_summary"] = final_summary
        self.log_data["stats"] = self.stats.to_dict()

        try:
            with open(self.log_file, "w", encoding="utf-8") as f:
                json.dump(self.log_data, f, indent=2)
            logger.info(f"Loop log written to: {self.log_file}")
        except OSError as e:
            logger.error(f"Failed to write loop log: {e}")

        return self.log_file
