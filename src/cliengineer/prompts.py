"""Prompt templates for the planner, executor, reviewer and context summaries."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from jinja2 import Template, UndefinedError

if TYPE_CHECKING:
    from .executor import StepResult
    from .interpreter import Task
    from .iteration_context import IterationContext
    from .planner import Plan, Step

logger = logging.getLogger(__name__)

# Step outputs are truncated to this many characters inside review prompts
MAX_REVIEW_OUTPUT_CHARS = 2000

CATEGORY_VOCABULARY = (
    "Analysis, FileOperation, CodeGeneration, CodeModification, "
    "Testing, Documentation, Research, Review"
)

PLAN_TEMPLATE = """You are a senior software engineer planning work for an autonomous coding agent.

Task: {{ task.description }}
Goal: {{ task.goal }}
{% if task.constraints %}Constraints: {{ task.constraints }}
{% endif %}
Every step must be one of these kinds of work: {{ categories }}.
Start each step with a verb that makes its kind obvious (create, write, modify, test, document, analyze, research, review).
{% if existing_files %}
IMPORTANT: files from previous iterations already exist. Do NOT recreate them.
Prefer CodeModification steps (modify/update/change) that fix the pending issues in place.

{{ iteration_summary }}
{% endif %}
Respond with a numbered list of steps, one step per line, like:
1. <first step>
2. <second step>
"""

STEP_TEMPLATE = """{% if system_context %}{{ system_context }}

---

{% endif %}You are executing one step of a plan for an autonomous coding agent.

Goal: {{ goal }}
Step {{ step.id }} ({{ step.category.value }}): {{ step.description }}

{{ instructions }}
{% if existing_files %}
Current content of files this step refers to:
{% for file in existing_files %}
File: {{ file.name }}
```
{{ file.content }}
```
{% endfor %}{% endif %}
Wrap every file you produce in exactly this format:
<artifact filename="path/to/file.ext" type="language">
<![CDATA[
file content
]]>
</artifact>
{% if diff_mode %}
Because this step modifies existing files, the artifact content must be a unified diff, not the whole file:
--- a/path/to/file.ext
+++ b/path/to/file.ext
@@ -start,count +start,count @@
 unchanged context line
-removed line
+added line
{% endif %}
Do not put shell commands you expect to be run inside artifacts, and never emit placeholder or example files.
"""

REVIEW_TEMPLATE = """You are reviewing the work of an autonomous coding agent.

Goal: {{ plan.goal }}

Executed steps:
{% for entry in entries %}
- {{ entry.id }} [{{ entry.category }}] {{ entry.description }}: {{ entry.status }}{% if entry.error %} ({{ entry.error }}){% endif %}
{% if entry.output %}  Output:
{{ entry.output }}
{% endif %}{% endfor %}
Judge whether the goal is met and the code is ready to ship. Respond in exactly this format:
QUALITY: <Excellent|Good|Fair|Poor>
READY_TO_DEPLOY: <true|false>
SUMMARY: <one line summary>
ISSUES:
- SEVERITY: <Critical|Major|Minor|Info> | CATEGORY: <Logic|Performance|Security|CodeStyle|BestPractices|Documentation|Testing|Dependencies> | DESCRIPTION: <text> | SUGGESTION: <text> | LOCATION: <file path>

List one issue per line. Leave the ISSUES section empty if there are none.
"""

SUMMARY_TEMPLATE = """Please provide a concise summary of the following conversation, focusing on key decisions, code changes, and important context. Format as bullet points.

{{ conversation }}
"""

# Instructions appended to step prompts, keyed by step category value
CATEGORY_INSTRUCTIONS = {
    "FileOperation": "Create the files this step needs. Give the complete content of every file.",
    "CodeGeneration": "Write complete, working code for this step. No stubs or TODO placeholders.",
    "CodeModification": "Modify the existing files this step refers to. Change only what the step requires.",
    "Testing": "Write tests covering the behaviour produced so far. Put them in dedicated test files.",
    "Documentation": "Write the documentation this step asks for as Markdown files.",
    "Analysis": "Analyze the code and task for this step. Record findings worth keeping in a Markdown artifact.",
    "Research": "Research what this step asks for and record the findings in a Markdown artifact.",
    "Review": "Review the work so far for this step. Record findings in a Markdown artifact.",
}


@dataclass
class PromptTemplate:
    """A named Jinja2 prompt template."""

    id: str
    template: str

    def render(self, **variables: Any) -> str:
        """Render the template with variables.

        Returns:
            Rendered prompt, or the raw template if rendering fails.
        """
        try:
            return Template(self.template).render(**variables)
        except UndefinedError as e:
            logger.warning(f"Jinja2 template error in prompt '{self.id}': {e}")
            return self.template


PLAN_PROMPT = PromptTemplate("plan", PLAN_TEMPLATE)
STEP_PROMPT = PromptTemplate("step", STEP_TEMPLATE)
REVIEW_PROMPT = PromptTemplate("review", REVIEW_TEMPLATE)
SUMMARY_PROMPT = PromptTemplate("summary", SUMMARY_TEMPLATE)


def build_plan_prompt(task: Task, iteration_context: Optional[IterationContext] = None) -> str:
    """Build the planning prompt for a task."""
    existing = iteration_context is not None and iteration_context.has_existing_files()
    return PLAN_PROMPT.render(
        task=task,
        categories=CATEGORY_VOCABULARY,
        existing_files=existing,
        iteration_summary=iteration_context.format_for_prompt() if existing else "",
    )


def build_step_prompt(
    step: Step,
    goal: str,
    system_context: str = "",
    existing_files: Optional[list[Any]] = None,
) -> str:
    """Build the execution prompt for one step.

    Args:
        step: Step to execute.
        goal: Plan goal.
        system_context: Joined system-role context messages, placed first.
        existing_files: Objects with `name` and `content` for files the step
            refers to.
    """
    category = step.category.value
    return STEP_PROMPT.render(
        step=step,
        goal=goal,
        system_context=system_context,
        instructions=CATEGORY_INSTRUCTIONS.get(category, CATEGORY_INSTRUCTIONS["Analysis"]),
        existing_files=existing_files or [],
        diff_mode=category == "CodeModification",
    )


def build_review_prompt(plan: Plan, results: list[StepResult]) -> str:
    """Build the review prompt from a plan and its step results."""
    steps = {step.id: step for step in plan.steps}
    entries = []
    for result in results:
        step = steps.get(result.step_id)
        output = result.output
        if len(output) > MAX_REVIEW_OUTPUT_CHARS:
            output = output[:MAX_REVIEW_OUTPUT_CHARS] + "\n... (truncated)"
        entries.append({
            "id": result.step_id,
            "category": step.category.value if step else "Unknown",
            "description": step.description if step else "",
            "status": "succeeded" if result.success else "failed",
            "error": result.error,
            "output": output.strip(),
        })
    return REVIEW_PROMPT.render(plan=plan, entries=entries)


def build_summary_prompt(conversation: str) -> str:
    """Build the prompt asking the model to summarize older messages."""
    return SUMMARY_PROMPT.render(conversation=conversation)
