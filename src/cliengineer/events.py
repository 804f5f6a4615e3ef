"""Event bus for progress telemetry.

Components emit fire-and-forget events (task lifecycle, per-step progress,
artifact changes, context usage, API calls). Subscribers observe them; the
core never reads events back, and a failing subscriber never interrupts the
emitter.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events emitted while a task runs."""

    # Task lifecycle
    TASK_STARTED = "task_started"
    TASK_PROGRESS = "task_progress"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_SUMMARY = "task_summary"

    # Loop and step tracking
    ITERATION_STARTED = "iteration_started"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"

    # Artifacts
    ARTIFACT_CREATED = "artifact_created"
    ARTIFACT_UPDATED = "artifact_updated"

    # Conversation context
    CONTEXT_CREATED = "context_created"
    CONTEXT_USAGE_CHANGED = "context_usage_changed"
    CONTEXT_COMPRESSED = "context_compressed"
    CONTEXT_CLEARED = "context_cleared"

    # Model calls
    API_CALL_STARTED = "api_call_started"
    API_CALL_COMPLETED = "api_call_completed"
    API_ERROR = "api_error"

    LOG = "log"


@dataclass
class Event:
    """A single event delivered to subscribers."""

    type: EventType
    data: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps({
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
        }, default=str)


@dataclass
class Metrics:
    """Counters accumulated from emitted events."""

    total_api_calls: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    artifacts_created: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    current_context_usage: float = 0.0

    def to_dict(self) -> dict:
        """Convert metrics to dictionary."""
        return asdict(self)


class EventBus:
    """In-process publish/subscribe bus with metric accumulation."""

    def __init__(self, history_size: int = 100) -> None:
        """Initialize the bus.

        Args:
            history_size: Number of recent events kept for inspection.
        """
        self._lock = threading.Lock()
        self._subscribers: list[Callable[[Event], None]] = []
        self._metrics = Metrics()
        self._history: deque[Event] = deque(maxlen=history_size)

    @property
    def metrics(self) -> Metrics:
        """Snapshot of the accumulated metrics."""
        with self._lock:
            return Metrics(**self._metrics.to_dict())

    @property
    def history(self) -> list[Event]:
        """Most recent events, oldest first."""
        with self._lock:
            return list(self._history)

    def subscribe(self, callback: Callable[[Event], None]) -> None:
        """Subscribe to events with a synchronous callback."""
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[Event], None]) -> None:
        """Remove a subscriber."""
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def emit(self, event_type: EventType, data: Optional[dict] = None) -> Event:
        """Emit an event to all subscribers.

        Subscriber exceptions are logged and otherwise ignored.

        Args:
            event_type: Kind of event.
            data: Event payload.

        Returns:
            The emitted Event.
        """
        event = Event(type=event_type, data=data or {})

        with self._lock:
            self._update_metrics(event)
            self._history.append(event)
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in event subscriber: {e}")

        return event

    def _update_metrics(self, event: Event) -> None:
        """Update metrics based on event."""
        data = event.data

        if event.type == EventType.API_CALL_COMPLETED:
            self._metrics.total_api_calls += 1
            self._metrics.total_tokens += int(data.get("tokens", 0))
            self._metrics.total_cost += float(data.get("cost", 0.0))

        elif event.type == EventType.ARTIFACT_CREATED:
            self._metrics.artifacts_created += 1

        elif event.type == EventType.TASK_COMPLETED:
            self._metrics.tasks_completed += 1

        elif event.type == EventType.TASK_FAILED:
            self._metrics.tasks_failed += 1

        elif event.type == EventType.CONTEXT_USAGE_CHANGED:
            self._metrics.current_context_usage = float(data.get("usage_percentage", 0.0))


def emit_to(bus: Optional[EventBus], event_type: EventType, data: Optional[dict] = None) -> None:
    """Emit on `bus` when one is attached; a no-op otherwise."""
    if bus is not None:
        bus.emit(event_type, data)
