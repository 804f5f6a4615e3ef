"""Step execution: prompts the model per step and persists its artifacts."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from .artifacts import Artifact, ArtifactError, ArtifactManager, ArtifactType
from .events import EventBus, EventType, emit_to
from .extraction import ExtractedArtifact, clean_filename, extract_artifacts
from .patching import PatchError, apply_patch, is_unified_diff, parse_patches
from .planner import Plan, Step, StepCategory
from .prompts import build_step_prompt

if TYPE_CHECKING:
    from .context import ContextManager
    from .llm_manager import LLMManager

logger = logging.getLogger(__name__)

SOURCE_EXTENSIONS = frozenset({
    ".rs", ".py", ".js", ".ts", ".jsx", ".tsx", ".go", ".java", ".c", ".cpp",
    ".h", ".hpp", ".rb", ".php", ".swift", ".kt", ".scala", ".cs", ".vue", ".svelte",
})
CONFIG_EXTENSIONS = frozenset({".toml", ".json", ".yaml", ".yml", ".ini", ".cfg"})
DOC_EXTENSIONS = frozenset({".md", ".txt", ".rst"})
SCRIPT_EXTENSIONS = frozenset({".sh", ".bash"})


@dataclass(frozen=True)
class StepResult:
    """Outcome of executing one step."""

    step_id: str
    success: bool
    output: str = ""
    artifacts_created: list[str] = field(default_factory=list)
    error: Optional[str] = None


def artifact_type_for(filename: str) -> ArtifactType:
    """Derive an artifact type from a file extension."""
    suffix = Path(filename).suffix.lower()
    if suffix in SOURCE_EXTENSIONS:
        return ArtifactType.SOURCE_CODE
    if suffix in CONFIG_EXTENSIONS:
        return ArtifactType.CONFIGURATION
    if suffix in DOC_EXTENSIONS:
        return ArtifactType.DOCUMENTATION
    if suffix in SCRIPT_EXTENSIONS:
        return ArtifactType.SCRIPT
    return ArtifactType.OTHER


class Executor:
    """Runs a plan's steps in order."""

    def __init__(
        self,
        llm_manager: LLMManager,
        artifact_manager: Optional[ArtifactManager] = None,
        context_manager: Optional[ContextManager] = None,
        event_bus: Optional[EventBus] = None,
        workspace_root: Optional[Path] = None,
    ):
        """Initialize the executor.

        Args:
            llm_manager: Model used for every step.
            artifact_manager: Store receiving extracted files. Without one,
                artifacts are extracted but not persisted.
            context_manager: Conversation store for requests and responses.
            event_bus: Optional bus for step events.
            workspace_root: Directory read for files that are not yet
                artifacts when applying diffs. Defaults to the working directory.
        """
        self.llm_manager = llm_manager
        self.artifact_manager = artifact_manager
        self.context_manager = context_manager
        self.event_bus = event_bus
        self.workspace_root = Path(workspace_root) if workspace_root else Path.cwd()

    def execute(self, plan: Plan, context_id: Optional[str] = None) -> list[StepResult]:
        """Execute every step of a plan in order.

        Args:
            plan: Plan to run.
            context_id: Conversation used for context and recording.

        Returns:
            One StepResult per step.

        Raises:
            LLMError: If a step's model call fails.
        """
        results: list[StepResult] = []
        succeeded: set[str] = set()
        total = len(plan.steps)

        for index, step in enumerate(plan.steps, start=1):
            logger.info(f"Executing {step.id} ({index}/{total}) [{step.category.value}]: {step.description}")
            emit_to(self.event_bus, EventType.STEP_STARTED, {
                "step_id": step.id,
                "description": step.description,
                "category": step.category.value,
                "index": index,
                "total": total,
            })

            unmet = [dep for dep in plan.dependencies.get(step.id, []) if dep not in succeeded]
            if unmet:
                logger.warning(f"Skipping {step.id}: dependencies not met ({', '.join(unmet)})")
                result = StepResult(
                    step_id=step.id,
                    success=False,
                    error=f"Dependencies not met: {', '.join(unmet)}",
                )
            else:
                result = self.execute_step(step, plan.goal, context_id)

            if result.success:
                succeeded.add(step.id)
            results.append(result)

            emit_to(self.event_bus, EventType.STEP_COMPLETED, {
                "step_id": step.id,
                "success": result.success,
                "artifacts": list(result.artifacts_created),
                "error": result.error,
            })
            emit_to(self.event_bus, EventType.TASK_PROGRESS, {
                "progress": index / total * 100.0,
                "message": f"Completed {step.id}: {step.description}",
            })

        successful = len(succeeded)
        logger.info(f"Executed {successful}/{total} steps successfully")
        return results

    def execute_step(self, step: Step, goal: str, context_id: Optional[str] = None) -> StepResult:
        """Execute a single step.

        Raises:
            LLMError: If the model call fails.
        """
        system_context = ""
        if self.context_manager is not None and context_id is not None:
            system_messages = self.context_manager.get_messages(context_id, role="system")
            system_context = "\n\n".join(m.content for m in system_messages)

        prompt = build_step_prompt(
            step,
            goal,
            system_context=system_context,
            existing_files=self._referenced_artifacts(step),
        )

        if self.context_manager is not None and context_id is not None:
            self.context_manager.add_message(
                context_id, "user", f"Execute {step.id} ({step.category.value}): {step.description}"
            )

        response = self.llm_manager.send_prompt(prompt)

        if self.context_manager is not None and context_id is not None:
            self.context_manager.add_message(context_id, "assistant", response)

        artifact_ids: list[str] = []
        errors: list[str] = []
        for block in extract_artifacts(response):
            if self.artifact_manager is None:
                logger.debug(f"No artifact store; not persisting {block.filename}")
                continue
            try:
                artifact_ids.extend(self._persist(block, step))
            except (ArtifactError, PatchError) as e:
                logger.warning(f"Failed to persist {block.filename}: {e}")
                errors.append(f"{block.filename}: {e}")

        return StepResult(
            step_id=step.id,
            success=not errors,
            output=response,
            artifacts_created=artifact_ids,
            error="; ".join(errors) if errors else None,
        )

    def _referenced_artifacts(self, step: Step) -> list[Artifact]:
        """Existing artifacts whose name or basename appears in the step text."""
        if self.artifact_manager is None:
            return []
        text = step.description
        return [
            a for a in self.artifact_manager.list_artifacts()
            if a.content is not None and (a.name in text or Path(a.name).name in text)
        ]

    def _persist(self, block: ExtractedArtifact, step: Step) -> list[str]:
        if step.category == StepCategory.CODE_MODIFICATION and is_unified_diff(block.content):
            ids = []
            for patch in parse_patches(block.content):
                name = clean_filename(patch.target_path or block.filename)
                current, existing = self._current_content(name)
                patched = apply_patch(current, patch)
                logger.info(f"Applied {len(patch.hunks)} hunk(s) to {name}")
                ids.append(self._store(name, patched, existing, block, step))
            return ids

        name = clean_filename(block.filename)
        existing = self.artifact_manager.find_by_name(name)
        return [self._store(name, block.content, existing, block, step)]

    def _current_content(self, name: str) -> tuple[str, Optional[Artifact]]:
        """Current content of a file: artifact store, then disk, then empty."""
        existing = self.artifact_manager.find_by_name(name)
        if existing is not None:
            if existing.content is not None:
                return existing.content, existing
            if existing.path.is_file():
                try:
                    return existing.path.read_text(encoding="utf-8"), existing
                except (OSError, UnicodeDecodeError) as e:
                    logger.warning(f"Could not read {existing.path}: {e}")

        disk_path = self.workspace_root / name
        if disk_path.is_file():
            try:
                return disk_path.read_text(encoding="utf-8"), existing
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Could not read {disk_path}: {e}")

        return "", existing

    def _store(
        self,
        name: str,
        content: str,
        existing: Optional[Artifact],
        block: ExtractedArtifact,
        step: Step,
    ) -> str:
        if existing is not None:
            return self.artifact_manager.update_artifact(existing.id, content).id

        metadata = {"step_id": step.id}
        if block.language:
            metadata["language"] = block.language
        return self.artifact_manager.create_artifact(
            name, artifact_type_for(name), content, metadata
        ).id
