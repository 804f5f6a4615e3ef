"""State carried between iterations of one loop run."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from .artifacts import ArtifactType, normalize_name

if TYPE_CHECKING:
    from .artifacts import Artifact
    from .reviewer import Issue, ReviewResult

logger = logging.getLogger(__name__)

LANGUAGES_BY_EXTENSION = {
    ".py": "python",
    ".rs": "rust",
    ".js": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".go": "go",
    ".java": "java",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".rb": "ruby",
    ".php": "php",
    ".sh": "shell",
    ".bash": "shell",
    ".toml": "toml",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".md": "markdown",
    ".txt": "text",
    ".html": "html",
    ".css": "css",
}

LANGUAGES_BY_TYPE = {
    ArtifactType.CONFIGURATION: "config",
    ArtifactType.DOCUMENTATION: "markdown",
    ArtifactType.SCRIPT: "shell",
    ArtifactType.DATA: "json",
}

# Trailing ":<line>" or ":<line>:<col>" on issue locations
_LINE_SUFFIX = re.compile(r"(:\d+)+$")


def language_for(artifact: Artifact) -> str:
    """Language tag for an artifact, from its extension, metadata or type."""
    suffix = Path(artifact.name).suffix.lower()
    if suffix in LANGUAGES_BY_EXTENSION:
        return LANGUAGES_BY_EXTENSION[suffix]
    if artifact.metadata.get("language"):
        return artifact.metadata["language"].lower()
    return LANGUAGES_BY_TYPE.get(artifact.artifact_type, "unknown")


@dataclass
class FileInfo:
    """A file known to exist from an earlier iteration."""

    path: str
    language: str
    description: str = ""
    has_issues: bool = False
    issues: list[str] = field(default_factory=list)


@dataclass
class IterationContext:
    """Cross-iteration memory of existing files and outstanding issues."""

    iteration: int = 0
    existing_files: dict[str, FileInfo] = field(default_factory=dict)
    last_review: Optional[ReviewResult] = None
    pending_issues: list[Issue] = field(default_factory=list)
    progress_summary: str = ""

    def add_file(self, path: str, info: FileInfo) -> None:
        self.existing_files[path] = info

    def add_artifact(self, artifact: Artifact) -> None:
        """Record an artifact as an existing file, tagging its language."""
        if artifact.name in self.existing_files:
            return
        self.add_file(artifact.name, FileInfo(
            path=artifact.name,
            language=language_for(artifact),
            description=f"{artifact.artifact_type.value} produced by an earlier iteration",
        ))

    def has_existing_files(self) -> bool:
        return bool(self.existing_files)

    def _match_file(self, location: str) -> Optional[FileInfo]:
        location = normalize_name(_LINE_SUFFIX.sub("", location.strip()))
        if location in self.existing_files:
            return self.existing_files[location]
        for path, info in self.existing_files.items():
            if path.endswith("/" + location) or location.endswith("/" + path) or Path(path).name == location:
                return info
        return None

    def update_from_review(self, review: ReviewResult) -> None:
        """Fold a review in: pending issues and per-file issue notes."""
        self.pending_issues = list(review.issues)
        for issue in review.issues:
            if not issue.location:
                continue
            info = self._match_file(issue.location)
            if info is None:
                logger.debug(f"Issue location {issue.location} is not a known file")
                continue
            info.has_issues = True
            info.issues.append(issue.description)
        self.last_review = review

    def format_for_prompt(self) -> str:
        """Render the context for inclusion in a planning prompt."""
        lines = [f"Iteration #{self.iteration}"]

        if self.existing_files:
            lines.append("")
            lines.append("Existing files:")
            for name, info in sorted(self.existing_files.items()):
                marker = " [HAS ISSUES]" if info.has_issues else ""
                lines.append(f"  - {name} ({info.language}){marker}")
                if info.description:
                    lines.append(f"    Description: {info.description}")
                for issue in info.issues:
                    lines.append(f"    Issue: {issue}")

        if self.pending_issues:
            lines.append("")
            lines.append(f"Pending issues ({len(self.pending_issues)}):")
            for issue in self.pending_issues:
                where = f" [{issue.location}]" if issue.location else ""
                lines.append(f"  - {issue.severity.value}{where}: {issue.description}")
                if issue.suggestion:
                    lines.append(f"    Suggestion: {issue.suggestion}")

        if self.last_review is not None:
            lines.append("")
            lines.append(f"Last review: {self.last_review.summary}")

        if self.progress_summary:
            lines.append("")
            lines.append(f"Progress so far: {self.progress_summary}")

        return "\n".join(lines)
