"""Codebase scanning: loads source and config files into a conversation."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from .events import EventBus, EventType, emit_to

if TYPE_CHECKING:
    from .context import ContextManager

logger = logging.getLogger(__name__)

CODE_EXTENSIONS = frozenset({
    "rs", "py", "js", "ts", "java", "c", "cpp", "h", "hpp", "go",
    "rb", "php", "swift", "kt", "scala", "sh", "bash", "yaml", "yml",
    "json", "toml", "xml", "html", "css", "jsx", "tsx", "vue", "svelte",
})

CONFIG_FILES = frozenset({
    "Cargo.toml", "package.json", "pom.xml", "build.gradle",
    "requirements.txt", "setup.py", "pyproject.toml", "Gemfile", "composer.json",
    "Makefile", "Dockerfile", ".gitignore", "README.md", "README",
})

SKIP_DIRS = frozenset({"target", "node_modules", "venv", "artifacts", "dist", "build", "__pycache__"})

MAX_DEPTH = 5
MAX_FILE_BYTES = 100_000


@dataclass
class ScanResult:
    """Files loaded by a scan."""

    files: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def file_count(self) -> int:
        return len(self.files)

    def summary(self) -> str:
        """Text appended to the task prompt listing the loaded files."""
        if not self.files:
            return ""
        listing = "\n".join(self.files)
        return (
            f"\n\nThe following {len(self.files)} files from this codebase "
            f"have been loaded into context:\n{listing}"
        )


class CodebaseScanner:
    """Walks a directory and adds code files to a conversation as system messages."""

    def __init__(
        self,
        root: Optional[Path] = None,
        max_depth: int = MAX_DEPTH,
        max_file_bytes: int = MAX_FILE_BYTES,
        event_bus: Optional[EventBus] = None,
    ):
        """Initialize the scanner.

        Args:
            root: Directory to scan. Defaults to the working directory.
            max_depth: Maximum directory depth below root.
            max_file_bytes: Larger files are skipped.
            event_bus: Optional bus for progress log events.
        """
        self.root = Path(root) if root else Path.cwd()
        self.max_depth = max_depth
        self.max_file_bytes = max_file_bytes
        self.event_bus = event_bus

    def iter_files(self) -> list[Path]:
        """Candidate files under root, in sorted walk order."""
        found: list[Path] = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            current = Path(dirpath)
            depth = len(current.relative_to(self.root).parts)
            dirnames[:] = sorted(
                d for d in dirnames
                if not d.startswith(".") and d not in SKIP_DIRS and depth < self.max_depth - 1
            )
            for name in sorted(filenames):
                if name.startswith(".") and name not in CONFIG_FILES:
                    continue
                extension = name.rsplit(".", 1)[-1] if "." in name else ""
                if extension in CODE_EXTENSIONS or name in CONFIG_FILES:
                    found.append(current / name)
        return found

    def scan(self, context_manager: ContextManager, context_id: str) -> ScanResult:
        """Add every candidate file to the conversation.

        Each file becomes a system message of the form
        "File: <path>" followed by a fenced block of its content.
        """
        emit_to(self.event_bus, EventType.LOG, {"level": "INFO", "message": "Scanning codebase for context..."})
        result = ScanResult()

        for path in self.iter_files():
            relative = path.relative_to(self.root).as_posix()
            try:
                size = path.stat().st_size
                if size > self.max_file_bytes:
                    logger.info(f"Skipping large file {relative} ({size // 1024}KB)")
                    result.skipped.append(relative)
                    continue
                content = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Failed to read {relative}: {e}")
                result.skipped.append(relative)
                continue

            extension = path.suffix.lstrip(".")
            context_manager.add_message(
                context_id,
                "system",
                f"File: {relative}\n```{extension}\n{content}\n```",
            )
            result.files.append(relative)
            logger.debug(f"Added {relative} to context ({len(content)} bytes)")

        message = f"Scanning complete. Added {result.file_count} files to context"
        logger.info(message)
        emit_to(self.event_bus, EventType.LOG, {"level": "INFO", "message": message})
        return result
