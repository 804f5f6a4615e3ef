"""Tests for conversation context management and compression."""

from __future__ import annotations

from pathlib import Path

import pytest

from cliengineer.config import ContextSettings
from cliengineer.context import (
    SUMMARY_HEADER,
    ContextManager,
    ContextNotFoundError,
    ConversationContext,
)
from cliengineer.events import Event, EventBus, EventType
from cliengineer.llm_manager import LLMManager, MockProvider

LONG_MESSAGE = "word " * 200


def _small_manager(
    tmp_path: Path,
    max_tokens: int = 1000,
    threshold: float = 0.8,
    provider: MockProvider | None = None,
    event_bus: EventBus | None = None,
) -> ContextManager:
    """A manager whose window is small enough to compress quickly."""
    settings = ContextSettings(
        max_tokens=max_tokens,
        compression_threshold=threshold,
        cache_dir=tmp_path / "cache",
    )
    llm = LLMManager([provider or MockProvider(context_window=max_tokens)])
    return ContextManager(settings, llm, event_bus)


class TestContextBasics:
    """Tests for context creation and message storage."""

    def test_create_and_add(self, context_manager: ContextManager) -> None:
        """Test that messages are stored with token counts."""
        context_id = context_manager.create_context({"command": "code"})

        message = context_manager.add_message(context_id, "user", "hello there world")

        assert message.token_count > 0
        messages = context_manager.get_messages(context_id)
        assert [m.content for m in messages] == ["hello there world"]
        total, percentage = context_manager.get_usage(context_id)
        assert total == message.token_count
        assert percentage > 0

    def test_explicit_context_id(self, context_manager: ContextManager) -> None:
        """Test registering a context under a caller-chosen id."""
        context_manager.create_context(context_id="main")

        assert context_manager.has_context("main")
        assert not context_manager.has_context("other")

    def test_unknown_context_raises(self, context_manager: ContextManager) -> None:
        """Test that unknown ids raise ContextNotFoundError."""
        with pytest.raises(ContextNotFoundError):
            context_manager.add_message("missing", "user", "hi")
        with pytest.raises(KeyError):
            context_manager.get_messages("missing")

    def test_filter_by_role(self, context_manager: ContextManager) -> None:
        """Test role filtering."""
        context_id = context_manager.create_context()
        context_manager.add_message(context_id, "system", "rules")
        context_manager.add_message(context_id, "user", "question")
        context_manager.add_message(context_id, "assistant", "answer")

        system = context_manager.get_messages(context_id, role="system")

        assert [m.content for m in system] == ["rules"]

    def test_token_limited_read(self, context_manager: ContextManager) -> None:
        """Test that a token limit returns the most recent messages."""
        context_id = context_manager.create_context()
        for i in range(5):
            context_manager.add_message(context_id, "user", f"message number {i}")
        per_message = context_manager.get_messages(context_id)[0].token_count

        recent = context_manager.get_messages(context_id, max_tokens=per_message * 2)

        assert [m.content for m in recent] == ["message number 3", "message number 4"]

    def test_clear_context(self, context_manager: ContextManager, recorded_events: list[Event]) -> None:
        """Test clearing messages."""
        context_id = context_manager.create_context()
        context_manager.add_message(context_id, "user", "hello")

        context_manager.clear_context(context_id)

        assert context_manager.get_messages(context_id) == []
        assert context_manager.get_usage(context_id)[0] == 0
        assert recorded_events[-1].type == EventType.CONTEXT_CLEARED

    def test_usage_event(self, context_manager: ContextManager, recorded_events: list[Event]) -> None:
        """Test that adding a message reports usage."""
        context_id = context_manager.create_context()
        context_manager.add_message(context_id, "user", "hello")

        usage_events = [e for e in recorded_events if e.type == EventType.CONTEXT_USAGE_CHANGED]
        assert usage_events[-1].data["id"] == context_id

    def test_max_tokens_prefers_model(self, tmp_path: Path) -> None:
        """Test that the model's context window wins over configuration."""
        manager = _small_manager(tmp_path, provider=MockProvider(context_window=4321))

        assert manager.max_tokens() == 4321

    def test_max_tokens_without_model(self) -> None:
        """Test the configured fallback."""
        manager = ContextManager(ContextSettings(max_tokens=777))

        assert manager.max_tokens() == 777


class TestThreshold:
    """Tests for compression threshold handling."""

    @pytest.mark.parametrize("value, expected", [(-0.5, 0.0), (0.4, 0.4), (3.0, 1.0)])
    def test_set_threshold_clamps(self, context_manager: ContextManager, value: float, expected: float) -> None:
        """Test that thresholds are clamped to the unit interval."""
        context_manager.set_compression_threshold(value)

        assert context_manager.compression_threshold == expected

    def test_constructor_clamps(self) -> None:
        """Test clamping of configured thresholds."""
        manager = ContextManager(ContextSettings(compression_threshold=7.0))

        assert manager.compression_threshold == 1.0


class TestCompression:
    """Tests for automatic and forced compression."""

    def test_compression_never_increases_tokens(self, tmp_path: Path) -> None:
        """Test that every triggered compression shrinks the context."""
        bus = EventBus()
        compressions: list[Event] = []
        bus.subscribe(lambda e: compressions.append(e) if e.type == EventType.CONTEXT_COMPRESSED else None)
        manager = _small_manager(tmp_path, event_bus=bus)
        context_id = manager.create_context()

        for i in range(12):
            manager.add_message(context_id, "user" if i % 2 == 0 else "assistant", LONG_MESSAGE)

        assert compressions
        for event in compressions:
            assert event.data["compressed_tokens"] < event.data["original_tokens"]
        total, _ = manager.get_usage(context_id)
        assert total <= manager.max_tokens()

    def test_summary_replaces_old_messages(self, tmp_path: Path) -> None:
        """Test that old messages become one summary message."""
        manager = _small_manager(tmp_path)
        context_id = manager.create_context()
        manager.add_message(context_id, "system", "You are helpful.")
        for _ in range(3):
            manager.add_message(context_id, "user", LONG_MESSAGE)

        manager.compress(context_id)

        messages = manager.get_messages(context_id)
        assert messages[0].content == "You are helpful."
        summaries = [m for m in messages if m.content.startswith(SUMMARY_HEADER)]
        assert len(summaries) == 1
        assert "Earlier steps were discussed" in summaries[0].content

    def test_system_messages_survive(self, tmp_path: Path) -> None:
        """Test that system messages are never summarized away."""
        manager = _small_manager(tmp_path)
        context_id = manager.create_context()
        manager.add_message(context_id, "system", "File: app.py")
        for _ in range(10):
            manager.add_message(context_id, "user", LONG_MESSAGE)

        contents = [m.content for m in manager.get_messages(context_id, role="system")]

        assert "File: app.py" in contents

    def test_summary_failure_uses_placeholder(self, tmp_path: Path) -> None:
        """Test the placeholder when the summary call fails."""
        provider = MockProvider(context_window=1000, fail_on="summary of the following conversation")
        manager = _small_manager(tmp_path, provider=provider)
        context_id = manager.create_context()
        for _ in range(3):
            manager.add_message(context_id, "user", LONG_MESSAGE)

        manager.compress(context_id)

        contents = [m.content for m in manager.get_messages(context_id)]
        assert any("messages were compressed. Key topics discussed." in c for c in contents)

    def test_oversized_summary_is_replaced(self, tmp_path: Path) -> None:
        """Test that a summary longer than its source is not kept."""
        provider = MockProvider(
            context_window=1000,
            responses={"summary of the following conversation": "very long summary " * 400},
        )
        manager = _small_manager(tmp_path, provider=provider)
        context_id = manager.create_context()
        for _ in range(3):
            manager.add_message(context_id, "user", LONG_MESSAGE)
        before, _ = manager.get_usage(context_id)

        manager.compress(context_id)

        after, _ = manager.get_usage(context_id)
        assert after < before
        assert all("very long summary" not in m.content for m in manager.get_messages(context_id))

    def test_nothing_to_compress(self, tmp_path: Path) -> None:
        """Test that a short conversation is left alone."""
        manager = _small_manager(tmp_path)
        context_id = manager.create_context()
        manager.add_message(context_id, "user", "short")

        manager.compress(context_id)

        assert [m.content for m in manager.get_messages(context_id)] == ["short"]
        assert manager.get_compressed_history(context_id) == []

    def test_without_model_uses_placeholder(self, tmp_path: Path) -> None:
        """Test summaries when no model is attached."""
        manager = ContextManager(ContextSettings(max_tokens=1000, cache_dir=tmp_path))
        context_id = manager.create_context()
        for _ in range(3):
            manager.add_message(context_id, "user", LONG_MESSAGE)

        manager.compress(context_id)

        contents = " ".join(m.content for m in manager.get_messages(context_id))
        assert "Unable to generate detailed summary without LLM" in contents

    def test_archive_records_compressions(self, tmp_path: Path) -> None:
        """Test that compressions are archived when caching is enabled."""
        manager = _small_manager(tmp_path)
        context_id = manager.create_context()
        for _ in range(3):
            manager.add_message(context_id, "user", LONG_MESSAGE)

        manager.compress(context_id)

        history = manager.get_compressed_history(context_id)
        assert len(history) == 1
        assert history[0].key_points[0].startswith("Compressed ")
        assert history[0].compressed_token_count < history[0].original_token_count

    def test_no_archive_when_cache_disabled(self, tmp_path: Path) -> None:
        """Test that the archive stays empty without caching."""
        manager = _small_manager(tmp_path)
        manager.settings.cache_enabled = False
        context_id = manager.create_context()
        for _ in range(3):
            manager.add_message(context_id, "user", LONG_MESSAGE)

        manager.compress(context_id)

        assert manager.get_compressed_history(context_id) == []


class TestCache:
    """Tests for the on-disk context cache."""

    def test_round_trip(self, context_manager: ContextManager) -> None:
        """Test saving and reloading a context."""
        context_id = context_manager.create_context({"command": "code"})
        context_manager.add_message(context_id, "system", "rules")
        context_manager.add_message(context_id, "user", "question")

        path = context_manager.save_to_cache(context_id)
        context_manager.clear_context(context_id)
        loaded = context_manager.load_from_cache(context_id)

        assert path is not None and path.exists()
        assert isinstance(loaded, ConversationContext)
        assert [m.content for m in loaded.messages] == ["rules", "question"]
        assert loaded.metadata == {"command": "code"}
        assert loaded.total_tokens == sum(m.token_count for m in loaded.messages)
        assert len(context_manager.get_messages(context_id)) == 2

    def test_missing_cache_entry(self, context_manager: ContextManager) -> None:
        """Test loading a context that was never cached."""
        with pytest.raises(ContextNotFoundError):
            context_manager.load_from_cache("never-saved")

    def test_cache_disabled(self, context_manager: ContextManager) -> None:
        """Test that saving is a no-op and loading fails when disabled."""
        context_manager.settings.cache_enabled = False
        context_id = context_manager.create_context()

        assert context_manager.save_to_cache(context_id) is None
        with pytest.raises(ContextNotFoundError):
            context_manager.load_from_cache(context_id)
