"""Review of executed steps and parsing of the structured critique.

Expected response grammar:

    QUALITY: Good
    READY_TO_DEPLOY: false
    SUMMARY: One line summary
    ISSUES:
    - SEVERITY: Major | CATEGORY: Testing | DESCRIPTION: ... | SUGGESTION: ... | LOCATION: app.py

Lines are dispatched by prefix. Issue lines that do not fit the closed
vocabularies are dropped one by one; the rest of the review still parses.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

from .executor import CONFIG_EXTENSIONS, DOC_EXTENSIONS, SCRIPT_EXTENSIONS, SOURCE_EXTENSIONS
from .prompts import build_review_prompt

if TYPE_CHECKING:
    from .context import ContextManager
    from .executor import StepResult
    from .llm_manager import LLMManager
    from .planner import Plan

logger = logging.getLogger(__name__)


class Quality(str, Enum):
    """Overall quality verdict."""

    EXCELLENT = "Excellent"
    GOOD = "Good"
    FAIR = "Fair"
    POOR = "Poor"
    UNKNOWN = "Unknown"


class Severity(str, Enum):
    """Issue severity."""

    CRITICAL = "Critical"
    MAJOR = "Major"
    MINOR = "Minor"
    INFO = "Info"


class IssueCategory(str, Enum):
    """Issue category."""

    LOGIC = "Logic"
    PERFORMANCE = "Performance"
    SECURITY = "Security"
    CODE_STYLE = "CodeStyle"
    BEST_PRACTICES = "BestPractices"
    DOCUMENTATION = "Documentation"
    TESTING = "Testing"
    DEPENDENCIES = "Dependencies"


# Normalized spellings (lowercase, no spaces/underscores/hyphens) to categories
_CATEGORY_ALIASES = {c.value.lower(): c for c in IssueCategory}
_CATEGORY_ALIASES.update({
    "style": IssueCategory.CODE_STYLE,
    "bestpractice": IssueCategory.BEST_PRACTICES,
    "docs": IssueCategory.DOCUMENTATION,
    "tests": IssueCategory.TESTING,
    "test": IssueCategory.TESTING,
    "dependency": IssueCategory.DEPENDENCIES,
})

ISSUE_LABELS = ("SEVERITY", "CATEGORY", "DESCRIPTION", "SUGGESTION")
LOCATION_LABEL = "LOCATION"
EMPTY_VALUES = ("", "none", "n/a", "na", "-")

PATH_TOKEN = re.compile(r"[\w./-]+\.[A-Za-z0-9]+")
KNOWN_EXTENSIONS = SOURCE_EXTENSIONS | CONFIG_EXTENSIONS | DOC_EXTENSIONS | SCRIPT_EXTENSIONS


@dataclass(frozen=True)
class Issue:
    """One problem found by the review."""

    severity: Severity
    category: IssueCategory
    description: str
    location: Optional[str] = None
    suggestion: Optional[str] = None


@dataclass
class ReviewResult:
    """Structured review verdict."""

    overall_quality: Quality
    issues: list[Issue] = field(default_factory=list)
    ready_to_deploy: bool = False
    summary: str = ""

    @property
    def suggestions(self) -> list[str]:
        """Suggestions attached to issues."""
        return [i.suggestion for i in self.issues if i.suggestion]

    @property
    def has_critical(self) -> bool:
        return any(i.severity == Severity.CRITICAL for i in self.issues)

    def count(self, severity: Severity) -> int:
        return sum(1 for i in self.issues if i.severity == severity)


def _value_after_prefix(line: str, prefix: str) -> Optional[str]:
    if line.upper().startswith(prefix):
        return line[len(prefix):].strip()
    return None


def parse_quality(value: str) -> Quality:
    """Parse a QUALITY value; unrecognized values give Quality.UNKNOWN."""
    word = value.strip().strip("*").split()
    if word:
        for quality in Quality:
            if quality.value.lower() == word[0].lower().rstrip(".,"):
                return quality
    return Quality.UNKNOWN


def parse_ready(value: str) -> Optional[bool]:
    """Parse a READY_TO_DEPLOY value; None if it is neither yes nor no."""
    word = value.strip().strip("*").lower().rstrip(".")
    if word in ("true", "yes"):
        return True
    if word in ("false", "no"):
        return False
    return None


def parse_severity(value: str) -> Optional[Severity]:
    for severity in Severity:
        if severity.value.lower() == value.strip().lower():
            return severity
    return None


def parse_category(value: str) -> Optional[IssueCategory]:
    normalized = re.sub(r"[\s_-]", "", value).lower()
    return _CATEGORY_ALIASES.get(normalized)


def find_path(text: str) -> Optional[str]:
    """First token in text that looks like a file path."""
    for match in PATH_TOKEN.finditer(text):
        token = match.group(0).rstrip(".")
        suffix = "." + token.rsplit(".", 1)[-1].lower() if "." in token else ""
        if suffix in KNOWN_EXTENSIONS:
            return token
    return None


def parse_issue(line: str) -> Optional[Issue]:
    """Parse one issue line; None if any segment is malformed."""
    segments = [s.strip() for s in line.split("|")]
    if len(segments) not in (4, 5):
        return None

    labels = ISSUE_LABELS + ((LOCATION_LABEL,) if len(segments) == 5 else ())
    values = []
    for segment, label in zip(segments, labels):
        name, sep, value = segment.partition(":")
        if not sep or name.strip().upper() != label:
            return None
        values.append(value.strip())

    severity = parse_severity(values[0])
    category = parse_category(values[1])
    if severity is None or category is None:
        return None

    description = values[2]
    suggestion = values[3] if values[3].lower() not in EMPTY_VALUES else None
    location = None
    if len(values) == 5 and values[4].lower() not in EMPTY_VALUES:
        location = values[4]
    if location is None:
        location = find_path(description)

    return Issue(
        severity=severity,
        category=category,
        description=description,
        location=location,
        suggestion=suggestion,
    )


def parse_review(text: str) -> ReviewResult:
    """Parse a review response into a ReviewResult.

    Never raises. A missing READY_TO_DEPLOY is derived from quality and
    issues; a missing SUMMARY is synthesized; a ready verdict next to a
    Critical issue is overridden.
    """
    quality = Quality.UNKNOWN
    ready: Optional[bool] = None
    summary: Optional[str] = None
    issues: list[Issue] = []
    dropped = 0

    for raw in text.splitlines():
        line = raw.strip().replace("**", "")
        if not line:
            continue

        value = _value_after_prefix(line, "QUALITY:")
        if value is not None:
            quality = parse_quality(value)
            continue
        value = _value_after_prefix(line, "READY_TO_DEPLOY:")
        if value is not None:
            ready = parse_ready(value)
            continue
        value = _value_after_prefix(line, "SUMMARY:")
        if value is not None:
            summary = value or summary
            continue
        if line.upper().startswith("ISSUES:"):
            continue

        body = line.lstrip("-*• ").strip()
        if body.upper().startswith("SEVERITY:"):
            issue = parse_issue(body)
            if issue is None:
                dropped += 1
                logger.debug(f"Dropped malformed issue line: {body}")
            else:
                issues.append(issue)

    if dropped:
        logger.warning(f"Dropped {dropped} malformed issue line(s) from review")

    has_critical = any(i.severity == Severity.CRITICAL for i in issues)
    if ready is None:
        ready = quality in (Quality.GOOD, Quality.EXCELLENT) and not has_critical
    elif ready and has_critical:
        logger.warning("Review claimed ready to deploy with critical issues; overriding to not ready")
        ready = False

    if not summary:
        critical = sum(1 for i in issues if i.severity == Severity.CRITICAL)
        major = sum(1 for i in issues if i.severity == Severity.MAJOR)
        summary = (
            f"Quality {quality.value}: {len(issues)} issue(s) found "
            f"({critical} critical, {major} major)."
        )

    return ReviewResult(
        overall_quality=quality,
        issues=issues,
        ready_to_deploy=ready,
        summary=summary,
    )


class Reviewer:
    """Critiques executed results with the model."""

    def __init__(
        self,
        llm_manager: LLMManager,
        context_manager: Optional[ContextManager] = None,
    ):
        self.llm_manager = llm_manager
        self.context_manager = context_manager

    def review(
        self,
        plan: Plan,
        results: list[StepResult],
        context_id: Optional[str] = None,
    ) -> ReviewResult:
        """Review a plan's step results.

        Raises:
            LLMError: If the model call fails.
        """
        response = self.llm_manager.send_prompt(build_review_prompt(plan, results))
        review = parse_review(response)

        if self.context_manager is not None and context_id is not None:
            self.context_manager.add_message(context_id, "assistant", f"Review:\n{response.strip()}")

        logger.info(
            f"Review: quality={review.overall_quality.value}, issues={len(review.issues)}, "
            f"ready_to_deploy={review.ready_to_deploy}"
        )
        return review
