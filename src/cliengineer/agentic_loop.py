"""The agentic control loop: interpret, then plan, execute and review until done."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .artifacts import ArtifactError, ArtifactManager
from .context import ContextManager
from .events import EventBus, EventType, emit_to
from .executor import Executor, StepResult
from .extraction import GENERIC_NAME_PREFIX
from .interpreter import TaskInterpreter
from .iteration_context import IterationContext
from .llm_manager import LLMError, LLMManager
from .loop_logger import LoopLogger
from .planner import Plan, Planner
from .reviewer import ReviewResult, Reviewer, Severity

logger = logging.getLogger(__name__)

TASK_ID = "main"


class LoopState(str, Enum):
    """States of the loop state machine."""

    INIT = "Init"
    PLANNING = "Planning"
    EXECUTING = "Executing"
    REVIEWING = "Reviewing"
    CONTINUE = "Continue"
    DEPLOYED = "Deployed"
    EXHAUSTED = "Exhausted"
    FAILED = "Failed"


class LoopOutcome(str, Enum):
    """How a run ended."""

    DEPLOYED = "Deployed"
    EXHAUSTED = "Exhausted"
    FAILED = "Failed"


@dataclass
class LoopResult:
    """Result of one loop run."""

    outcome: LoopOutcome
    iterations: int
    max_iterations: int
    error: Optional[str] = None
    last_review: Optional[ReviewResult] = None
    artifact_stats: dict[str, Any] = field(default_factory=dict)
    iteration_details: list[dict] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.outcome == LoopOutcome.DEPLOYED


class AgenticLoop:
    """Orchestrates interpreter, planner, executor and reviewer across iterations."""

    def __init__(
        self,
        llm_manager: LLMManager,
        max_iterations: int = 10,
        artifact_manager: Optional[ArtifactManager] = None,
        context_manager: Optional[ContextManager] = None,
        event_bus: Optional[EventBus] = None,
        loop_logger: Optional[LoopLogger] = None,
        interpreter: Optional[TaskInterpreter] = None,
        planner: Optional[Planner] = None,
        executor: Optional[Executor] = None,
        reviewer: Optional[Reviewer] = None,
    ):
        """Initialize the loop.

        Components not passed in are built from the shared collaborators.

        Raises:
            ValueError: If max_iterations is less than 1.
        """
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")

        self.llm_manager = llm_manager
        self.max_iterations = max_iterations
        self.artifact_manager = artifact_manager
        self.context_manager = context_manager
        self.event_bus = event_bus
        self.loop_logger = loop_logger

        self.interpreter = interpreter or TaskInterpreter()
        self.planner = planner or Planner(llm_manager, context_manager)
        self.executor = executor or Executor(llm_manager, artifact_manager, context_manager, event_bus)
        self.reviewer = reviewer or Reviewer(llm_manager, context_manager)

        self.state = LoopState.INIT
        self.iteration_context = IterationContext()
        self._seen_artifacts: set[str] = set()

    def run(
        self,
        text: str,
        context_id: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> LoopResult:
        """Run the loop on a user request.

        Args:
            text: Raw user request.
            context_id: Conversation handle; created if not yet registered.
            cancel_event: When set, no further iteration is started.

        Returns:
            LoopResult describing how the run ended.
        """
        logger.info(f"Starting agentic loop for input: {text}")
        self.state = LoopState.INIT
        self.iteration_context = IterationContext()
        self._seen_artifacts = self._artifact_ids()
        details: list[dict] = []

        emit_to(self.event_bus, EventType.TASK_STARTED, {"task_id": TASK_ID, "description": text})

        task = self.interpreter.interpret(text)
        logger.info(f"Interpreted task: {task.goal}")

        if self.context_manager is not None:
            if not self.context_manager.has_context(context_id):
                self.context_manager.create_context({"task": task.description}, context_id=context_id)
            self.context_manager.add_message(context_id, "user", text)
            self.context_manager.add_message(
                context_id,
                "system",
                f"Task interpreted as: {task.description}\nGoal: {task.goal}",
            )

        for iteration in range(1, self.max_iterations + 1):
            if cancel_event is not None and cancel_event.is_set():
                return self._fail("Cancelled", "cancelled", iteration - 1, details)

            self._refresh_iteration_context(iteration)
            logger.info(f"Starting iteration {iteration}/{self.max_iterations}")
            emit_to(self.event_bus, EventType.ITERATION_STARTED, {
                "iteration": iteration,
                "max_iterations": self.max_iterations,
            })
            if self.loop_logger:
                self.loop_logger.log_iteration_start(iteration, self.max_iterations)

            self.state = LoopState.PLANNING
            try:
                plan = self.planner.plan(task, self.iteration_context, context_id)
            except LLMError as e:
                return self._fail("Planning failed", str(e), iteration, details)
            if self.loop_logger:
                self.loop_logger.log_plan(plan)

            self.state = LoopState.EXECUTING
            try:
                results = self.executor.execute(plan, context_id)
            except (LLMError, ArtifactError) as e:
                return self._fail("Execution failed", str(e), iteration, details)
            if self.loop_logger:
                self.loop_logger.log_step_results(results)

            self.state = LoopState.REVIEWING
            try:
                review = self.reviewer.review(plan, results, context_id)
            except LLMError as e:
                return self._fail("Review failed", str(e), iteration, details)
            if self.loop_logger:
                self.loop_logger.log_review(review)

            self.iteration_context.update_from_review(review)
            succeeded = sum(1 for r in results if r.success)
            self.iteration_context.progress_summary = (
                f"Iteration {iteration}: {succeeded}/{len(results)} steps succeeded, "
                f"quality {review.overall_quality.value}"
            )
            details.append(self._iteration_detail(iteration, plan, results, review))
            logger.info(f"Review complete: {review.summary}")

            if review.ready_to_deploy:
                self.state = LoopState.DEPLOYED
                logger.info("Task completed successfully")
                stats = self.post_process_artifacts()
                self._emit_completed(plan, results, review)
                if self.loop_logger:
                    self.loop_logger.finalize(LoopOutcome.DEPLOYED.value, review.summary)
                return LoopResult(
                    outcome=LoopOutcome.DEPLOYED,
                    iterations=iteration,
                    max_iterations=self.max_iterations,
                    last_review=review,
                    artifact_stats=stats,
                    iteration_details=details,
                )

            critical = review.count(Severity.CRITICAL)
            if critical:
                logger.warning(f"Found {critical} critical issues, will revise plan")
            self.state = LoopState.CONTINUE

        self.state = LoopState.EXHAUSTED
        message = f"Max iterations reached: Failed to complete task after {self.max_iterations} iterations"
        logger.warning(message)
        emit_to(self.event_bus, EventType.TASK_FAILED, {"task_id": TASK_ID, "error": message})
        if self.loop_logger:
            self.loop_logger.finalize(LoopOutcome.EXHAUSTED.value, message)
        return LoopResult(
            outcome=LoopOutcome.EXHAUSTED,
            iterations=self.max_iterations,
            max_iterations=self.max_iterations,
            error=message,
            last_review=self.iteration_context.last_review,
            iteration_details=details,
        )

    def _artifact_ids(self) -> set[str]:
        if self.artifact_manager is None:
            return set()
        return {a.id for a in self.artifact_manager.list_artifacts()}

    def _refresh_iteration_context(self, iteration: int) -> None:
        """Bump the iteration and merge artifacts created since the last one."""
        self.iteration_context.iteration = iteration
        if self.artifact_manager is None:
            return
        for artifact in self.artifact_manager.list_artifacts():
            if artifact.id in self._seen_artifacts:
                continue
            self._seen_artifacts.add(artifact.id)
            self.iteration_context.add_artifact(artifact)
            logger.debug(f"Iteration {iteration} knows about {artifact.name}")

    def _iteration_detail(
        self,
        iteration: int,
        plan: Plan,
        results: list[StepResult],
        review: ReviewResult,
    ) -> dict:
        return {
            "iteration": iteration,
            "steps": len(plan.steps),
            "complexity": plan.estimated_complexity.value,
            "steps_succeeded": sum(1 for r in results if r.success),
            "artifacts": [a for r in results for a in r.artifacts_created],
            "quality": review.overall_quality.value,
            "issues": len(review.issues),
            "ready_to_deploy": review.ready_to_deploy,
        }

    def _fail(self, reason: str, error: str, iteration: int, details: list[dict]) -> LoopResult:
        self.state = LoopState.FAILED
        message = error if reason == "Cancelled" else f"{reason}: {error}"
        logger.error(message)
        emit_to(self.event_bus, EventType.TASK_FAILED, {"task_id": TASK_ID, "error": message})
        if self.loop_logger:
            self.loop_logger.log_error(message, {"iteration": iteration})
            self.loop_logger.finalize(LoopOutcome.FAILED.value, message)
        return LoopResult(
            outcome=LoopOutcome.FAILED,
            iterations=iteration,
            max_iterations=self.max_iterations,
            error=message,
            last_review=self.iteration_context.last_review,
            iteration_details=details,
        )

    def _emit_completed(self, plan: Plan, results: list[StepResult], review: ReviewResult) -> None:
        artifacts = [a for r in results for a in r.artifacts_created]
        emit_to(self.event_bus, EventType.TASK_COMPLETED, {
            "task_id": TASK_ID,
            "result": (
                f"Task completed successfully. {len(results)} steps executed. "
                f"Quality: {review.overall_quality.value}. {len(artifacts)} artifacts created."
            ),
        })
        emit_to(self.event_bus, EventType.TASK_SUMMARY, {
            "plan_goal": plan.goal,
            "steps_executed": len(results),
            "steps_successful": sum(1 for r in results if r.success),
            "artifacts_created": artifacts,
            "quality": review.overall_quality.value,
            "issues_found": len(review.issues),
            "suggestions": len(review.suggestions),
        })

    def post_process_artifacts(self) -> dict[str, Any]:
        """Count artifacts by type and how many carry generic names."""
        if self.artifact_manager is None:
            return {}

        artifacts = self.artifact_manager.list_artifacts()
        by_type = Counter(a.artifact_type.value for a in artifacts)
        generic = sum(
            1 for a in artifacts
            if a.name.lower().startswith((GENERIC_NAME_PREFIX, "code_"))
        )

        logger.info(f"Post-processing complete. Found {len(artifacts)} total artifacts ({generic} generic)")
        for artifact_type, count in sorted(by_type.items()):
            logger.info(f"  - {artifact_type}: {count}")

        return {"total": len(artifacts), "generic": generic, "by_type": dict(by_type)}
