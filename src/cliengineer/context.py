"""Conversation context management with token accounting and compression.

Each conversation is a `ConversationContext` keyed by id inside one
`ContextManager` registry. Adding a message re-estimates the running token
total; once usage crosses the compression threshold, older non-system
messages are summarised by the model and replaced by a single summary
message. Token counts are heuristic estimates (see `tokens.estimate_tokens`),
not exact tokenizer output.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from .config import ContextSettings
from .events import EventBus, EventType, emit_to
from .llm_manager import LLMError
from .prompts import build_summary_prompt
from .tokens import estimate_tokens

if TYPE_CHECKING:
    from .llm_manager import LLMManager

logger = logging.getLogger(__name__)

# Share of the context window kept verbatim as recent messages
RECENT_BUDGET_RATIO = 0.3

# Trailing window sizes tried in order during compression
WINDOW_SIZES = (30, 25, 20, 15, 10, 5)

# Messages kept when no window fits the budget
FALLBACK_KEEP = 5

SUMMARY_HEADER = "=== Context Summary ==="
SUMMARY_FOOTER = "=== End Summary ==="


class ContextNotFoundError(KeyError):
    """Raised when a context id is not registered."""

    pass


@dataclass
class Message:
    """One message in a conversation."""

    role: str
    content: str
    token_count: int = 0
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "content": self.content,
            "token_count": self.token_count,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Message:
        content = data.get("content", "")
        token_count = data.get("token_count")
        return cls(
            role=data.get("role", "user"),
            content=content,
            token_count=int(token_count) if token_count is not None else estimate_tokens(content),
            timestamp=data.get("timestamp", ""),
        )


@dataclass
class ConversationContext:
    """Message history of one conversation."""

    id: str
    messages: deque[Message] = field(default_factory=deque)
    total_tokens: int = 0
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    updated_at: str = field(default_factory=lambda: datetime.now().isoformat())
    metadata: dict[str, str] = field(default_factory=dict)

    def recount(self) -> int:
        """Recompute total_tokens from the messages."""
        self.total_tokens = sum(m.token_count for m in self.messages)
        return self.total_tokens

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "messages": [m.to_dict() for m in self.messages],
            "total_tokens": self.total_tokens,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ConversationContext:
        context = cls(
            id=data["id"],
            messages=deque(Message.from_dict(m) for m in data.get("messages", [])),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
            metadata=data.get("metadata", {}) or {},
        )
        context.recount()
        return context


@dataclass
class CompressedContext:
    """Archival record of one compression."""

    summary: str
    key_points: list[str] = field(default_factory=list)
    original_token_count: int = 0
    compressed_token_count: int = 0


def wrap_summary(summary: str) -> str:
    """Wrap summary text the way it is stored in the conversation."""
    return f"{SUMMARY_HEADER}\n{summary}\n{SUMMARY_FOOTER}"


class ContextManager:
    """Registry of conversation contexts keyed by id."""

    def __init__(
        self,
        settings: Optional[ContextSettings] = None,
        llm_manager: Optional[LLMManager] = None,
        event_bus: Optional[EventBus] = None,
    ):
        """Initialize the manager.

        Args:
            settings: Token budget and cache settings.
            llm_manager: Model used for summaries and as the source of the
                context window size.
            event_bus: Optional bus for context events.
        """
        self.settings = settings or ContextSettings()
        self.settings.compression_threshold = min(max(self.settings.compression_threshold, 0.0), 1.0)
        self.llm_manager = llm_manager
        self.event_bus = event_bus
        self._lock = threading.RLock()
        self._contexts: dict[str, ConversationContext] = {}
        self._archive: dict[str, CompressedContext] = {}

    def set_llm_manager(self, llm_manager: LLMManager) -> None:
        """Attach the model used for summaries and context size."""
        self.llm_manager = llm_manager

    def set_compression_threshold(self, threshold: float) -> None:
        """Set the compression threshold, clamped to 0.0..1.0."""
        with self._lock:
            self.settings.compression_threshold = min(max(float(threshold), 0.0), 1.0)

    @property
    def compression_threshold(self) -> float:
        return self.settings.compression_threshold

    def max_tokens(self) -> int:
        """Context window used for budgets: the model's when known, else configured."""
        if self.llm_manager is not None:
            size = self.llm_manager.context_size()
            if size > 0:
                return size
        return self.settings.max_tokens

    def _get(self, context_id: str) -> ConversationContext:
        context = self._contexts.get(context_id)
        if context is None:
            raise ContextNotFoundError(f"Context not found: {context_id}")
        return context

    def create_context(
        self,
        metadata: Optional[dict[str, str]] = None,
        context_id: Optional[str] = None,
    ) -> str:
        """Create a new conversation context.

        Args:
            metadata: Optional string metadata stored with the context.
            context_id: Externally allocated id; a UUID is generated if omitted.

        Returns:
            The context id.
        """
        context_id = context_id or str(uuid.uuid4())
        with self._lock:
            self._contexts[context_id] = ConversationContext(
                id=context_id,
                metadata=dict(metadata or {}),
            )
        emit_to(self.event_bus, EventType.CONTEXT_CREATED, {"id": context_id})
        logger.debug(f"Created context {context_id}")
        return context_id

    def has_context(self, context_id: str) -> bool:
        with self._lock:
            return context_id in self._contexts

    def add_message(self, context_id: str, role: str, content: str) -> Message:
        """Append a message, compressing the context if it crossed the threshold.

        Args:
            context_id: Target context.
            role: "system", "user" or "assistant".
            content: Message text.

        Returns:
            The stored Message.

        Raises:
            ContextNotFoundError: If the context does not exist.
        """
        with self._lock:
            context = self._get(context_id)
            message = Message(role=role, content=content, token_count=estimate_tokens(content))
            context.messages.append(message)
            context.total_tokens += message.token_count
            context.updated_at = datetime.now().isoformat()

            max_tokens = self.max_tokens()
            if context.total_tokens / max_tokens > self.settings.compression_threshold:
                self._compress(context, max_tokens)

            usage = context.total_tokens / max_tokens * 100.0
            total = context.total_tokens

        emit_to(self.event_bus, EventType.CONTEXT_USAGE_CHANGED, {
            "id": context_id,
            "usage_percentage": usage,
            "total_tokens": total,
        })
        return message

    def get_messages(
        self,
        context_id: str,
        max_tokens: Optional[int] = None,
        role: Optional[str] = None,
    ) -> list[Message]:
        """Get messages from a context, oldest first.

        Args:
            context_id: Context to read.
            max_tokens: If given, only the most recent messages fitting this
                many tokens are returned.
            role: If given, only messages with this role are returned.

        Raises:
            ContextNotFoundError: If the context does not exist.
        """
        with self._lock:
            messages = list(self._get(context_id).messages)

        if role is not None:
            messages = [m for m in messages if m.role == role]

        if max_tokens is None:
            return messages

        selected: list[Message] = []
        used = 0
        for message in reversed(messages):
            if used + message.token_count > max_tokens:
                break
            selected.append(message)
            used += message.token_count
        selected.reverse()
        return selected

    def get_usage(self, context_id: str) -> tuple[int, float]:
        """Return (total_tokens, percentage of the context window).

        Raises:
            ContextNotFoundError: If the context does not exist.
        """
        with self._lock:
            total = self._get(context_id).total_tokens
        return total, total / self.max_tokens() * 100.0

    def clear_context(self, context_id: str) -> None:
        """Remove all messages from a context."""
        with self._lock:
            context = self._get(context_id)
            context.messages.clear()
            context.total_tokens = 0
            context.updated_at = datetime.now().isoformat()
        emit_to(self.event_bus, EventType.CONTEXT_CLEARED, {"id": context_id})

    def get_compressed_history(self, context_id: str) -> list[CompressedContext]:
        """Archived compression records for a context, oldest first."""
        prefix = f"{context_id}_"
        with self._lock:
            return [record for key, record in sorted(self._archive.items()) if key.startswith(prefix)]

    def _cache_path(self, context_id: str) -> Path:
        return Path(self.settings.cache_dir) / f"{context_id}.json"

    def save_to_cache(self, context_id: str) -> Optional[Path]:
        """Write a context to the cache directory as JSON.

        Returns:
            The written path, or None when caching is disabled.
        """
        if not self.settings.cache_enabled:
            return None

        with self._lock:
            data = self._get(context_id).to_dict()

        path = self._cache_path(context_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        logger.debug(f"Saved context {context_id} to {path}")
        return path

    def load_from_cache(self, context_id: str) -> ConversationContext:
        """Load a context from the cache directory, replacing any live copy.

        Raises:
            ContextNotFoundError: If caching is disabled or no cached file exists.
        """
        if not self.settings.cache_enabled:
            raise ContextNotFoundError(f"Cache is disabled; cannot load {context_id}")

        path = self._cache_path(context_id)
        if not path.exists():
            raise ContextNotFoundError(f"Context not found in cache: {context_id}")

        with open(path, encoding="utf-8") as f:
            context = ConversationContext.from_dict(json.load(f))

        with self._lock:
            self._contexts[context_id] = context
        return context

    def compress(self, context_id: str) -> None:
        """Compress a context now, regardless of the threshold."""
        with self._lock:
            self._compress(self._get(context_id), self.max_tokens())

    def _compress(self, context: ConversationContext, max_tokens: int) -> None:
        """Replace older conversation messages by a summary.

        Must be called with the lock held; the rebuild is atomic for readers.
        """
        system_messages = [m for m in context.messages if m.role == "system"]
        conversation = [m for m in context.messages if m.role != "system"]
        if not conversation:
            return

        budget = int(max_tokens * RECENT_BUDGET_RATIO)
        recent: list[Message] = []
        start = len(conversation)

        for window in WINDOW_SIZES:
            window_start = max(len(conversation) - window, 0)
            recent = []
            used = 0
            for message in reversed(conversation[window_start:]):
                if used + message.token_count > budget:
                    break
                recent.append(message)
                used += message.token_count
            if recent:
                recent.reverse()
                start = len(conversation) - len(recent)
                break

        if not recent:
            keep = min(len(conversation), FALLBACK_KEEP)
            start = len(conversation) - keep
            recent = conversation[start:]

        to_summarize = conversation[:start]
        if not to_summarize:
            logger.debug(f"Context {context.id}: nothing old enough to compress")
            return

        original_total = context.total_tokens
        replaced_tokens = sum(m.token_count for m in to_summarize)

        summary = self._summarize(to_summarize)
        summary_message: Optional[Message] = Message(
            role="system",
            content=wrap_summary(summary),
            token_count=estimate_tokens(wrap_summary(summary)),
        )

        if summary_message.token_count >= replaced_tokens:
            summary = f"Previous {len(to_summarize)} messages were compressed. Key topics discussed."
            summary_message = Message(
                role="system",
                content=wrap_summary(summary),
                token_count=estimate_tokens(wrap_summary(summary)),
            )
            if summary_message.token_count >= replaced_tokens:
                summary_message = None

        rebuilt: deque[Message] = deque(system_messages)
        if summary_message is not None:
            rebuilt.append(summary_message)
        rebuilt.extend(recent)
        context.messages = rebuilt
        context.recount()
        context.updated_at = datetime.now().isoformat()

        if self.settings.cache_enabled:
            self._archive[self._archive_key(context.id)] = CompressedContext(
                summary=summary if summary_message is not None else "",
                key_points=[
                    f"Compressed {len(to_summarize)} messages",
                    f"Original token count: {original_total}",
                ],
                original_token_count=replaced_tokens,
                compressed_token_count=summary_message.token_count if summary_message else 0,
            )

        logger.info(
            f"Compressed context {context.id}: {original_total} -> {context.total_tokens} tokens "
            f"({len(to_summarize)} messages summarized)"
        )
        emit_to(self.event_bus, EventType.CONTEXT_COMPRESSED, {
            "id": context.id,
            "original_tokens": original_total,
            "compressed_tokens": context.total_tokens,
        })

    def _summarize(self, messages: list[Message]) -> str:
        """Summarize messages with the model, or return a placeholder."""
        if self.llm_manager is None:
            return (
                f"Previous {len(messages)} messages were compressed to save tokens. "
                "Unable to generate detailed summary without LLM."
            )

        conversation = "\n\n".join(f"{m.role}: {m.content}" for m in messages)
        try:
            return self.llm_manager.send_prompt(build_summary_prompt(conversation)).strip()
        except LLMError as e:
            logger.warning(f"Failed to generate context summary: {e}")
            return f"Previous {len(messages)} messages were compressed. Key topics discussed."

    def _archive_key(self, context_id: str) -> str:
        key = f"{context_id}_{datetime.now().strftime('%Y%m%d%H%M%S%f')}"
        suffix = 1
        unique = key
        while unique in self._archive:
            unique = f"{key}_{suffix}"
            suffix += 1
        return unique
