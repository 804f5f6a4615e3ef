"""Artifact extraction from model responses.

Responses carry files as

    <artifact filename="path/to/file.py" type="python">
    <![CDATA[
    ...content...
    ]]>
    </artifact>

The scanner walks the response line by line. Responses without any
artifact tag fall back to fenced Markdown code blocks, which get generic
`code_block_<n>` names. Extracted blocks that look like placeholders,
unfilled documentation templates or shell commands meant to be run are
dropped before anything is persisted.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from typing import Optional

logger = logging.getLogger(__name__)

ARTIFACT_OPEN = re.compile(r"<artifact\b([^>]*)>", re.IGNORECASE)
ARTIFACT_CLOSE = "</artifact>"
CDATA_OPEN = "<![CDATA["
CDATA_CLOSE = "]]>"
ATTRIBUTE = re.compile(r"""(\w+)\s*=\s*(?:"([^"]*)"|'([^']*)')""")
FENCE = re.compile(r"^\s*```\s*([\w+#.-]*)\s*$")

GENERIC_NAME_PREFIX = "code_block_"

# Comment phrases marking a block as an example rather than a real file
PLACEHOLDER_PHRASES = (
    "placeholder",
    "your code here",
    "replace with your",
    "replace this with",
    "insert your",
    "add your code",
    "this is an example",
    "example only",
    "example file",
)

# Phrases of unfilled documentation templates
GENERIC_TEMPLATE_PHRASES = (
    "please specify the actual",
    "please provide the actual",
    "[insert ",
    "lorem ipsum",
    "to be determined",
)

# Command prefixes of shell invocations that should be run, not saved
SHELL_COMMAND_PREFIXES = (
    "$ ", "cargo ", "npm ", "npx ", "yarn ", "pnpm ", "pip ", "pip3 ", "python ",
    "python3 ", "pytest ", "poetry ", "uv ", "go ", "make ", "git ", "cd ", "ls ",
    "mkdir ", "rm ", "cp ", "mv ", "chmod ", "curl ", "wget ", "docker ",
    "kubectl ", "echo ", "export ", "sudo ", "apt ", "apt-get ", "brew ",
    "node ", "rustc ", "rustup ", "bash ", "sh ", "source ",
)

SHELL_OPERATORS = (" | ", " > ", " >> ", " < ", " && ", " || ")

MAX_SHELL_LINES = 3
PLACEHOLDER_SCAN_LINES = 5

COMMENT_PREFIXES = ("#", "//", "--", "/*", "*", "<!--", ";", '"""', "'''")

# Extensions for generic code block names, by fence language
FENCE_EXTENSIONS = {
    "python": ".py", "py": ".py",
    "rust": ".rs", "rs": ".rs",
    "javascript": ".js", "js": ".js",
    "typescript": ".ts", "ts": ".ts",
    "bash": ".sh", "sh": ".sh", "shell": ".sh", "zsh": ".sh",
    "json": ".json",
    "toml": ".toml",
    "yaml": ".yaml", "yml": ".yaml",
    "markdown": ".md", "md": ".md",
    "html": ".html",
    "css": ".css",
    "go": ".go",
    "java": ".java",
    "c": ".c",
    "cpp": ".cpp", "c++": ".cpp",
    "diff": ".diff", "patch": ".diff",
}


class _State(Enum):
    OUTSIDE = "outside"
    IN_TAG = "in_tag"
    IN_CDATA = "in_cdata"
    AFTER_CDATA = "after_cdata"


@dataclass
class ExtractedArtifact:
    """A file block pulled out of a model response."""

    filename: str
    language: str
    content: str
    generic: bool = False

    @property
    def is_markdown(self) -> bool:
        return self.language.lower() in ("markdown", "md") or self.filename.lower().endswith(".md")


def _parse_attributes(raw: str) -> dict[str, str]:
    return {m.group(1).lower(): m.group(2) if m.group(2) is not None else m.group(3)
            for m in ATTRIBUTE.finditer(raw)}


def _finish_content(lines: list[str]) -> str:
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join(lines) + "\n" if lines else ""


def scan_artifact_tags(text: str) -> list[ExtractedArtifact]:
    """Scan a response for <artifact> blocks.

    Blocks without a filename or without a closing tag are skipped.
    """
    artifacts: list[ExtractedArtifact] = []
    state = _State.OUTSIDE
    attrs: dict[str, str] = {}
    content: list[str] = []

    def finish() -> None:
        filename = attrs.get("filename") or attrs.get("name") or ""
        if not filename:
            logger.warning("Skipping artifact block without a filename")
            return
        artifacts.append(ExtractedArtifact(
            filename=filename.strip(),
            language=attrs.get("type", "").strip(),
            content=_finish_content(content),
        ))

    for line in text.splitlines():
        rest: Optional[str] = line
        while rest is not None:
            if state == _State.OUTSIDE:
                match = ARTIFACT_OPEN.search(rest)
                if not match:
                    rest = None
                    continue
                attrs = _parse_attributes(match.group(1))
                content = []
                state = _State.IN_TAG
                rest = rest[match.end():]

            elif state == _State.IN_TAG:
                if ARTIFACT_OPEN.search(rest) and ARTIFACT_CLOSE not in rest:
                    logger.warning("Skipping unterminated artifact block")
                    state = _State.OUTSIDE
                    continue
                if CDATA_OPEN in rest:
                    content = []
                    state = _State.IN_CDATA
                    rest = rest.split(CDATA_OPEN, 1)[1]
                elif ARTIFACT_CLOSE in rest:
                    before, rest = rest.split(ARTIFACT_CLOSE, 1)
                    if before.strip():
                        content.append(before)
                    finish()
                    state = _State.OUTSIDE
                else:
                    content.append(rest)
                    rest = None

            elif state == _State.IN_CDATA:
                if CDATA_CLOSE not in rest and ARTIFACT_OPEN.match(rest.lstrip()):
                    logger.warning("Skipping artifact block missing its closing tag")
                    state = _State.OUTSIDE
                    continue
                if CDATA_CLOSE in rest:
                    before, rest = rest.split(CDATA_CLOSE, 1)
                    if before:
                        content.append(before)
                    state = _State.AFTER_CDATA
                else:
                    content.append(rest)
                    rest = None

            elif state == _State.AFTER_CDATA:
                if ARTIFACT_CLOSE in rest:
                    rest = rest.split(ARTIFACT_CLOSE, 1)[1]
                    finish()
                    state = _State.OUTSIDE
                elif ARTIFACT_OPEN.search(rest):
                    logger.warning("Skipping artifact block missing its closing tag")
                    state = _State.OUTSIDE
                else:
                    rest = None

    if state != _State.OUTSIDE:
        logger.warning("Skipping artifact block truncated at end of response")

    return artifacts


def scan_fenced_blocks(text: str) -> list[ExtractedArtifact]:
    """Extract fenced Markdown code blocks with generic names."""
    blocks: list[ExtractedArtifact] = []
    language: Optional[str] = None
    content: list[str] = []

    for line in text.splitlines():
        match = FENCE.match(line)
        if language is None:
            if match:
                language = match.group(1).lower()
                content = []
        elif match and not match.group(1):
            index = len(blocks) + 1
            extension = FENCE_EXTENSIONS.get(language, ".txt")
            blocks.append(ExtractedArtifact(
                filename=f"{GENERIC_NAME_PREFIX}{index}{extension}",
                language=language,
                content=_finish_content(content),
                generic=True,
            ))
            language = None
        else:
            content.append(line)

    return blocks


def _is_comment(line: str) -> bool:
    return line.lstrip().startswith(COMMENT_PREFIXES)


def looks_like_placeholder(artifact: ExtractedArtifact) -> bool:
    """First lines are comments announcing an example or placeholder."""
    head = [line for line in artifact.content.splitlines() if line.strip()][:PLACEHOLDER_SCAN_LINES]
    for line in head:
        if _is_comment(line) and any(p in line.lower() for p in PLACEHOLDER_PHRASES):
            return True
    return False


def looks_like_template(artifact: ExtractedArtifact) -> bool:
    """Markdown that is an unfilled generic template."""
    if not artifact.is_markdown:
        return False
    lowered = artifact.content.lower()
    return any(p in lowered for p in GENERIC_TEMPLATE_PHRASES)


def looks_like_shell_commands(artifact: ExtractedArtifact) -> bool:
    """A few lines of CLI invocations meant to be run rather than saved."""
    lines = [line.strip() for line in artifact.content.splitlines() if line.strip()]
    commands = [line for line in lines if not line.startswith("#")]
    if not commands or len(lines) > MAX_SHELL_LINES:
        return False
    for line in commands:
        padded = f" {line} "
        if not (line.startswith(SHELL_COMMAND_PREFIXES) or line in ("ls", "make", "pytest")
                or any(op in padded for op in SHELL_OPERATORS)):
            return False
    return True


def skip_reason(artifact: ExtractedArtifact) -> Optional[str]:
    """Return why a block should not be persisted, or None to keep it."""
    if not artifact.content.strip():
        return "empty"
    if looks_like_placeholder(artifact):
        return "placeholder"
    if looks_like_template(artifact):
        return "template"
    if looks_like_shell_commands(artifact):
        return "shell commands"
    return None


def extract_artifacts(text: str) -> list[ExtractedArtifact]:
    """Extract the blocks of a response that should be persisted.

    Args:
        text: Raw model response.

    Returns:
        Blocks in response order, exclusions already applied.
    """
    if ARTIFACT_OPEN.search(text):
        candidates = scan_artifact_tags(text)
    else:
        candidates = scan_fenced_blocks(text)

    kept = []
    for artifact in candidates:
        reason = skip_reason(artifact)
        if reason:
            logger.info(f"Skipping {artifact.filename}: {reason}")
            continue
        kept.append(artifact)
    return kept


def clean_filename(filename: str) -> str:
    """Normalize a filename from an artifact tag to a relative POSIX path."""
    path = PurePosixPath(filename.strip().replace("\\", "/"))
    parts = [p for p in path.parts if p not in ("", ".", "/")]
    return "/".join(parts)
