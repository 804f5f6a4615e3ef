"""Tests for the event bus."""

from __future__ import annotations

import json

from cliengineer.events import Event, EventBus, EventType, emit_to


class TestEventBus:
    """Tests for EventBus delivery."""

    def test_subscribers_receive_events(self, event_bus: EventBus) -> None:
        """Test that every subscriber sees emitted events."""
        first: list[Event] = []
        second: list[Event] = []
        event_bus.subscribe(first.append)
        event_bus.subscribe(second.append)

        event_bus.emit(EventType.TASK_STARTED, {"task_id": "main"})

        assert [e.type for e in first] == [EventType.TASK_STARTED]
        assert second[0].data == {"task_id": "main"}

    def test_unsubscribe(self, event_bus: EventBus) -> None:
        """Test that unsubscribed callbacks stop receiving events."""
        received: list[Event] = []
        event_bus.subscribe(received.append)
        event_bus.unsubscribe(received.append)

        event_bus.emit(EventType.LOG, {"message": "hi"})

        assert received == []

    def test_failing_subscriber_does_not_interrupt(self, event_bus: EventBus) -> None:
        """Test that one broken subscriber does not affect the others."""
        received: list[Event] = []

        def broken(event: Event) -> None:
            raise RuntimeError("boom")

        event_bus.subscribe(broken)
        event_bus.subscribe(received.append)

        event = event_bus.emit(EventType.LOG)

        assert received == [event]

    def test_history_is_bounded(self) -> None:
        """Test that only the most recent events are kept."""
        bus = EventBus(history_size=2)
        for i in range(5):
            bus.emit(EventType.LOG, {"n": i})

        assert [e.data["n"] for e in bus.history] == [3, 4]

    def test_emit_to_without_bus(self) -> None:
        """Test that emit_to tolerates a missing bus."""
        emit_to(None, EventType.LOG, {"message": "ignored"})


class TestMetrics:
    """Tests for metric accumulation."""

    def test_api_call_metrics(self, event_bus: EventBus) -> None:
        """Test that completed API calls add tokens and cost."""
        event_bus.emit(EventType.API_CALL_COMPLETED, {"tokens": 100, "cost": 0.5})
        event_bus.emit(EventType.API_CALL_COMPLETED, {"tokens": 50, "cost": 0.25})

        metrics = event_bus.metrics

        assert metrics.total_api_calls == 2
        assert metrics.total_tokens == 150
        assert metrics.total_cost == 0.75

    def test_lifecycle_counters(self, event_bus: EventBus) -> None:
        """Test artifact and task counters."""
        event_bus.emit(EventType.ARTIFACT_CREATED, {"name": "a.py"})
        event_bus.emit(EventType.TASK_COMPLETED)
        event_bus.emit(EventType.TASK_FAILED)
        event_bus.emit(EventType.CONTEXT_USAGE_CHANGED, {"usage_percentage": 42.0})

        metrics = event_bus.metrics

        assert metrics.artifacts_created == 1
        assert metrics.tasks_completed == 1
        assert metrics.tasks_failed == 1
        assert metrics.current_context_usage == 42.0

    def test_metrics_snapshot_is_a_copy(self, event_bus: EventBus) -> None:
        """Test that callers cannot mutate the bus's metrics."""
        snapshot = event_bus.metrics
        snapshot.total_api_calls = 99

        assert event_bus.metrics.total_api_calls == 0


class TestEvent:
    """Tests for Event serialization."""

    def test_to_json(self) -> None:
        """Test JSON output."""
        event = Event(type=EventType.STEP_STARTED, data={"step_id": "step_1"})

        data = json.loads(event.to_json())

        assert data["type"] == "step_started"
        assert data["data"] == {"step_id": "step_1"}
        assert data["timestamp"] == event.timestamp
