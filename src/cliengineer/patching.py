"""Unified diff parsing and application.

Hunks are replayed against a list of lines: `-` lines advance the read
cursor, `+` lines are emitted, and context lines copy the original line and
advance. Each rebuilt range is spliced back at the hunk's start, shifted by
the line delta of the hunks already applied.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
NULL_PATH = "/dev/null"


class PatchError(Exception):
    """Exception raised when a diff cannot be applied."""

    pass


@dataclass
class Hunk:
    """One `@@ -a,b +c,d @@` section of a diff."""

    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: list[str] = field(default_factory=list)

    def header(self) -> str:
        return f"@@ -{self.old_start},{self.old_count} +{self.new_start},{self.new_count} @@"

    def inverted(self) -> Hunk:
        """The hunk that undoes this one."""
        flipped = []
        for line in self.lines:
            if line.startswith("+"):
                flipped.append("-" + line[1:])
            elif line.startswith("-"):
                flipped.append("+" + line[1:])
            else:
                flipped.append(line)
        return Hunk(self.new_start, self.new_count, self.old_start, self.old_count, flipped)


@dataclass
class FilePatch:
    """The hunks of a diff that apply to one file."""

    old_path: Optional[str] = None
    new_path: Optional[str] = None
    hunks: list[Hunk] = field(default_factory=list)

    @property
    def target_path(self) -> Optional[str]:
        """Path the patch writes to, without `a/` or `b/` prefixes."""
        for path in (self.new_path, self.old_path):
            if path and path != NULL_PATH:
                return _strip_prefix(path)
        return None

    def inverted(self) -> FilePatch:
        """The patch that undoes this one."""
        return FilePatch(
            old_path=self.new_path,
            new_path=self.old_path,
            hunks=[h.inverted() for h in self.hunks],
        )

    def to_text(self) -> str:
        """Render as unified diff text."""
        out = []
        if self.old_path or self.new_path:
            out.append(f"--- {self.old_path or NULL_PATH}")
            out.append(f"+++ {self.new_path or NULL_PATH}")
        for hunk in self.hunks:
            out.append(hunk.header())
            out.extend(hunk.lines)
        return "\n".join(out) + "\n"


def _strip_prefix(path: str) -> str:
    path = path.split("\t", 1)[0].strip()
    if path.startswith(("a/", "b/")):
        path = path[2:]
    return path


def is_unified_diff(text: str) -> bool:
    """Whether text contains at least one hunk header."""
    return any(HUNK_HEADER.match(line) for line in text.splitlines())


def parse_patches(text: str) -> list[FilePatch]:
    """Parse unified diff text into per-file patches.

    Hunks that appear before any file header are collected in a patch with
    no paths.
    """
    patches: list[FilePatch] = []
    current: Optional[FilePatch] = None
    hunk: Optional[Hunk] = None

    for line in text.splitlines():
        if line.startswith("--- ") and (hunk is None or _hunk_complete(hunk)):
            current = FilePatch(old_path=line[4:].strip())
            patches.append(current)
            hunk = None
            continue
        if line.startswith("+++ ") and current is not None and not current.hunks and current.new_path is None:
            current.new_path = line[4:].strip()
            continue

        match = HUNK_HEADER.match(line)
        if match:
            if current is None:
                current = FilePatch()
                patches.append(current)
            hunk = Hunk(
                old_start=int(match.group(1)),
                old_count=int(match.group(2)) if match.group(2) is not None else 1,
                new_start=int(match.group(3)),
                new_count=int(match.group(4)) if match.group(4) is not None else 1,
            )
            current.hunks.append(hunk)
            continue

        if hunk is None or line.startswith("\\"):
            continue
        if line.startswith(("-", "+", " ")):
            hunk.lines.append(line)
        elif line == "":
            hunk.lines.append(" ")
        elif line.startswith("diff "):
            hunk = None

    return [p for p in patches if p.hunks]


def _hunk_complete(hunk: Hunk) -> bool:
    """Whether a hunk has consumed all the lines its header announces."""
    old = sum(1 for line in hunk.lines if not line.startswith("+"))
    new = sum(1 for line in hunk.lines if not line.startswith("-"))
    return old >= hunk.old_count and new >= hunk.new_count


def apply_hunks(original: str, hunks: list[Hunk]) -> str:
    """Apply hunks, in order, to the original text.

    Args:
        original: Current file content.
        hunks: Hunks whose old ranges refer to `original`.

    Returns:
        The patched content.
    """
    lines = original.splitlines()
    offset = 0

    for hunk in hunks:
        start = min(max(hunk.old_start - 1, 0) + offset, len(lines))
        cursor = start
        rebuilt: list[str] = []

        for line in hunk.lines:
            tag, body = line[:1], line[1:]
            if tag == "-":
                cursor += 1
            elif tag == "+":
                rebuilt.append(body)
            else:
                if cursor < len(lines):
                    if lines[cursor] != body:
                        logger.debug(f"Context mismatch at line {cursor + 1}: {body!r}")
                    rebuilt.append(lines[cursor])
                else:
                    rebuilt.append(body)
                cursor += 1

        cursor = min(cursor, len(lines))
        lines[start:cursor] = rebuilt
        offset += len(rebuilt) - (cursor - start)

    if not lines:
        return ""
    trailing = "\n" if original.endswith("\n") or not original else ""
    return "\n".join(lines) + trailing


def apply_patch(original: str, patch: FilePatch) -> str:
    """Apply one file patch to the original text."""
    if not patch.hunks:
        raise PatchError("Patch has no hunks")
    return apply_hunks(original, patch.hunks)
