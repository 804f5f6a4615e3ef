"""Plan synthesis: prompts the model for a numbered plan and parses it.

The parser is deliberately simple and predictable: numbered lines start
steps, other lines continue the current step, and each step is classified
by a first-match keyword scan.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

from .prompts import build_plan_prompt

if TYPE_CHECKING:
    from .context import ContextManager
    from .interpreter import Task
    from .iteration_context import IterationContext
    from .llm_manager import LLMManager

logger = logging.getLogger(__name__)

DEFAULT_ESTIMATED_TOKENS = 1000

# A line that begins a new step: digits followed by a period
NUMBERED_LINE = re.compile(r"^\d+\.")


class StepCategory(str, Enum):
    """Kind of work a step performs."""

    ANALYSIS = "Analysis"
    FILE_OPERATION = "FileOperation"
    CODE_GENERATION = "CodeGeneration"
    CODE_MODIFICATION = "CodeModification"
    TESTING = "Testing"
    DOCUMENTATION = "Documentation"
    RESEARCH = "Research"
    REVIEW = "Review"


class Complexity(str, Enum):
    """Rough plan size."""

    SIMPLE = "Simple"
    MEDIUM = "Medium"
    COMPLEX = "Complex"


# First match wins. Keywords match case-insensitively anywhere in the text.
CATEGORY_KEYWORDS: list[tuple[StepCategory, tuple[str, ...]]] = [
    (StepCategory.FILE_OPERATION, ("create", "new file")),
    (StepCategory.TESTING, ("test", "verify", "validate")),
    (StepCategory.CODE_GENERATION, ("write", "implement", "generate")),
    (StepCategory.CODE_MODIFICATION, ("modify", "update", "change")),
    (StepCategory.DOCUMENTATION, ("document", "comment")),
    (StepCategory.ANALYSIS, ("analyze", "understand", "examine")),
    (StepCategory.RESEARCH, ("research", "look up", "find")),
    (StepCategory.REVIEW, ("review", "check")),
]

_CATEGORY_PATTERNS = [
    (category, re.compile("|".join(re.escape(k) for k in keywords), re.IGNORECASE))
    for category, keywords in CATEGORY_KEYWORDS
]


@dataclass(frozen=True)
class Step:
    """One categorized unit of work within a plan."""

    id: str
    description: str
    category: StepCategory
    success_criteria: list[str] = field(default_factory=list)
    estimated_tokens: int = DEFAULT_ESTIMATED_TOKENS
    default_category: bool = False


@dataclass(frozen=True)
class Plan:
    """Ordered steps with a goal and a complexity estimate."""

    goal: str
    steps: list[Step]
    dependencies: dict[str, list[str]] = field(default_factory=dict)
    estimated_complexity: Complexity = Complexity.SIMPLE


def classify_step(text: str) -> tuple[StepCategory, bool]:
    """Classify step text by keyword scan.

    Returns:
        (category, default_category) where default_category is True when no
        keyword matched and the Analysis fallback was used.
    """
    for category, pattern in _CATEGORY_PATTERNS:
        if pattern.search(text):
            return category, False
    return StepCategory.ANALYSIS, True


def complexity_for(step_count: int) -> Complexity:
    """Simple for 1-3 steps, Medium for 4-10, Complex above."""
    if step_count <= 3:
        return Complexity.SIMPLE
    if step_count <= 10:
        return Complexity.MEDIUM
    return Complexity.COMPLEX


def _make_step(index: int, text: str) -> Step:
    category, defaulted = classify_step(text)
    return Step(
        id=f"step_{index}",
        description=text,
        category=category,
        success_criteria=[f"Completed: {text}"],
        default_category=defaulted,
    )


def parse_plan(text: str, goal: str, fallback_description: str = "") -> Plan:
    """Parse a free-text model response into a Plan.

    Args:
        text: Model response.
        goal: Goal recorded on the plan.
        fallback_description: Step text used when the response is empty.

    Returns:
        Plan with at least one step.
    """
    lines = [line.strip() for line in text.splitlines() if line.strip()]

    chunks: list[str] = []
    for line in lines:
        if NUMBERED_LINE.match(line):
            chunks.append(NUMBERED_LINE.sub("", line, count=1).strip())
        elif chunks:
            chunks[-1] = f"{chunks[-1]} {line}".strip()

    if not chunks:
        whole = " ".join(lines) or fallback_description or goal
        chunks = [whole]
        logger.warning("Plan response had no numbered steps; using a single step")

    steps = [_make_step(i, chunk or f"Step {i}") for i, chunk in enumerate(chunks, start=1)]
    return Plan(
        goal=goal,
        steps=steps,
        dependencies={step.id: [] for step in steps},
        estimated_complexity=complexity_for(len(steps)),
    )


class Planner:
    """Turns a Task into a Plan by prompting the model."""

    def __init__(
        self,
        llm_manager: LLMManager,
        context_manager: Optional[ContextManager] = None,
    ):
        self.llm_manager = llm_manager
        self.context_manager = context_manager

    def plan(
        self,
        task: Task,
        iteration_context: Optional[IterationContext] = None,
        context_id: Optional[str] = None,
    ) -> Plan:
        """Create a plan for a task.

        Args:
            task: Interpreted task.
            iteration_context: State carried from earlier iterations.
            context_id: Conversation that receives the plan, if any.

        Returns:
            Parsed Plan.

        Raises:
            LLMError: If the model call fails.
        """
        prompt = build_plan_prompt(task, iteration_context)
        response = self.llm_manager.send_prompt(prompt)
        plan = parse_plan(response, task.goal, fallback_description=task.description)

        logger.info(
            f"Plan created with {len(plan.steps)} steps, "
            f"complexity: {plan.estimated_complexity.value}"
        )
        for step in plan.steps:
            logger.debug(f"  {step.id} [{step.category.value}] {step.description}")

        if self.context_manager is not None and context_id is not None:
            self.context_manager.add_message(context_id, "assistant", f"Plan:\n{response.strip()}")

        return plan
