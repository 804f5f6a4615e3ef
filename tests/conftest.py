"""Shared test fixtures for cli-engineer tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from cliengineer.artifacts import ArtifactManager
from cliengineer.config import ContextSettings
from cliengineer.context import ContextManager
from cliengineer.events import Event, EventBus
from cliengineer.llm_manager import LLMManager, MockProvider


@pytest.fixture(autouse=True)
def no_dotenv(monkeypatch: pytest.MonkeyPatch) -> None:
    """Prevent a developer's .env file from leaking into tests."""
    monkeypatch.setattr("cliengineer.config.load_dotenv", lambda: None)


@pytest.fixture
def event_bus() -> EventBus:
    """Create a fresh event bus."""
    return EventBus()


@pytest.fixture
def recorded_events(event_bus: EventBus) -> list[Event]:
    """Collect every event emitted on the shared bus."""
    events: list[Event] = []
    event_bus.subscribe(events.append)
    return events


@pytest.fixture
def mock_provider() -> MockProvider:
    """Create a mock provider that is ready after the first review."""
    return MockProvider()


@pytest.fixture
def llm_manager(mock_provider: MockProvider, event_bus: EventBus) -> LLMManager:
    """Create an LLM manager fronting the mock provider."""
    return LLMManager([mock_provider], event_bus)


@pytest.fixture
def artifact_manager(tmp_path: Path, event_bus: EventBus) -> ArtifactManager:
    """Create an artifact manager writing under a temporary directory."""
    return ArtifactManager(tmp_path / "artifacts", event_bus)


@pytest.fixture
def context_settings(tmp_path: Path) -> ContextSettings:
    """Create context settings caching under a temporary directory."""
    return ContextSettings(cache_dir=tmp_path / "context_cache")


@pytest.fixture
def context_manager(
    context_settings: ContextSettings,
    llm_manager: LLMManager,
    event_bus: EventBus,
) -> ContextManager:
    """Create a context manager using the mock model for summaries."""
    return ContextManager(context_settings, llm_manager, event_bus)
