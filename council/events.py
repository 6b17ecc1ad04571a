"""Event broadcasting system for pipeline runs.

Provides a lightweight event system for tracking run lifecycle, step
progress and gavel checkpoints. Events can be consumed by:
- SSE streams (see council.sse)
- Logging systems
- Tests (via wildcard subscribers or the bounded history)
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events emitted during pipeline execution."""

    # Run events
    RUN_STARTED = "run:started"
    RUN_COMPLETED = "run:completed"
    RUN_ERROR = "run:error"
    RUN_ABORTING = "run:aborting"
    RUN_ABORTED = "run:aborted"
    RUN_PAUSED = "run:paused"
    RUN_RESUMED = "run:resumed"

    # Phase events
    PHASE_START = "phase:start"
    PHASE_COMPLETE = "phase:complete"

    # Step events
    STEP_START = "step:start"
    STEP_COMPLETE = "step:complete"
    STEP_ERROR = "step:error"
    STEP_RETRY = "step:retry"

    # Progress events
    PROGRESS = "progress"

    # Gavel events
    GAVEL_REQUESTED = "gavel:requested"
    GAVEL_APPROVED = "gavel:approved"
    GAVEL_REJECTED = "gavel:rejected"
    GAVEL_SKIPPED = "gavel:skipped"

    # Delivery events
    INJECTION_APPLIED = "injection:applied"

    # Diagnostics
    WARNING = "warning"


class ProgressStage(str, Enum):
    """Step sub-stages reported through progress events."""

    PROMPT_RESOLVING = "prompt_resolving"
    LLM_CALLING = "llm_calling"
    OUTPUT_PARSING = "output_parsing"
    STORE_WRITING = "store_writing"
    STEP_COMPLETE = "step_complete"


@dataclass
class Event:
    """Base event class."""

    type: EventType
    run_id: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for serialization."""
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }

    def to_json(self) -> str:
        """Convert event to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Event":
        """Create event from dictionary."""
        return Event(
            type=EventType(data["type"]),
            run_id=data["run_id"],
            timestamp=data.get("timestamp", datetime.now(timezone.utc).isoformat()),
            data=data.get("data", {}),
        )


class EventBus:
    """Central event bus for publishing and subscribing to events.

    Supports multiple subscribers per event type and wildcard subscriptions
    (all events). Delivery is synchronous; a failing subscriber is logged and
    never interrupts the run that published the event.
    """

    def __init__(self, max_history: int = 1000):
        """Initialize event bus."""
        self._subscribers: Dict[EventType, List[Callable]] = {}
        self._wildcard_subscribers: List[Callable] = []
        self._event_history: List[Event] = []
        self._max_history = max_history

    def subscribe(self, event_type: Optional[EventType], callback: Callable[[Event], None]):
        """
        Subscribe to events.

        Args:
            event_type: Type of event to subscribe to, or None for all events
            callback: Function to call when event is published
        """
        if event_type is None:
            self._wildcard_subscribers.append(callback)
        else:
            self._subscribers.setdefault(event_type, []).append(callback)

    def unsubscribe(self, event_type: Optional[EventType], callback: Callable[[Event], None]):
        """
        Unsubscribe from events.

        Args:
            event_type: Type of event to unsubscribe from
            callback: Callback function to remove
        """
        if event_type is None:
            if callback in self._wildcard_subscribers:
                self._wildcard_subscribers.remove(callback)
        else:
            if event_type in self._subscribers and callback in self._subscribers[event_type]:
                self._subscribers[event_type].remove(callback)

    def publish(self, event: Event):
        """
        Publish event to all subscribers.

        Args:
            event: Event to publish
        """
        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history.pop(0)

        logger.debug(f"Event published: {event.type.value} for run {event.run_id}")

        for callback in list(self._wildcard_subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in wildcard event callback: {e}")

        for callback in list(self._subscribers.get(event.type, [])):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in event callback for {event.type.value}: {e}")

    def get_history(self, run_id: Optional[str] = None, event_type: Optional[EventType] = None) -> List[Event]:
        """
        Get event history.

        Args:
            run_id: Filter by run ID (optional)
            event_type: Filter by event type (optional)

        Returns:
            List of events matching filters
        """
        events = self._event_history

        if run_id:
            events = [e for e in events if e.run_id == run_id]

        if event_type:
            events = [e for e in events if e.type == event_type]

        return list(events)

    def clear_history(self, run_id: Optional[str] = None):
        """
        Clear event history.

        Args:
            run_id: Clear only events for this run (optional)
        """
        if run_id:
            self._event_history = [e for e in self._event_history if e.run_id != run_id]
        else:
            self._event_history.clear()


class EventEmitter:
    """Helper class for emitting events from the controller, runner and executor."""

    def __init__(self, run_id: str, event_bus: EventBus):
        """
        Initialize event emitter.

        Args:
            run_id: Run ID for all events
            event_bus: EventBus to publish on
        """
        self.run_id = run_id
        self.event_bus = event_bus

    def emit(self, event_type, data: Optional[Dict[str, Any]] = None):
        """
        Emit an event.

        Args:
            event_type: Type of event (EventType enum or string)
            data: Event data (optional)
        """
        if isinstance(event_type, str):
            try:
                event_type = EventType(event_type)
            except ValueError:
                logger.warning(f"Unknown event type: {event_type}")
                return

        payload = {"run_id": self.run_id}
        payload.update(data or {})
        self.event_bus.publish(Event(type=event_type, run_id=self.run_id, data=payload))

    def run_started(self, pipeline_id: str, mode: str):
        self.emit(EventType.RUN_STARTED, {"pipeline_id": pipeline_id, "mode": mode})

    def run_completed(self, pipeline_id: str, duration_ms: int):
        self.emit(EventType.RUN_COMPLETED, {"pipeline_id": pipeline_id, "duration_ms": duration_ms})

    def run_error(self, pipeline_id: str, error: str, duration_ms: int):
        self.emit(EventType.RUN_ERROR, {
            "pipeline_id": pipeline_id,
            "error": error,
            "duration_ms": duration_ms,
        })

    def run_aborting(self, pipeline_id: str):
        self.emit(EventType.RUN_ABORTING, {"pipeline_id": pipeline_id})

    def run_aborted(self, pipeline_id: str, duration_ms: int):
        self.emit(EventType.RUN_ABORTED, {"pipeline_id": pipeline_id, "duration_ms": duration_ms})

    def run_paused(self):
        self.emit(EventType.RUN_PAUSED)

    def run_resumed(self):
        self.emit(EventType.RUN_RESUMED)

    def phase_started(self, phase_id: str, phase_index: int, total_phases: int):
        self.emit(EventType.PHASE_START, {
            "phase_id": phase_id,
            "phase_index": phase_index,
            "total_phases": total_phases,
        })

    def phase_completed(self, phase_id: str, duration_ms: int):
        self.emit(EventType.PHASE_COMPLETE, {"phase_id": phase_id, "duration_ms": duration_ms})

    def step_started(self, step_id: str, step_index: int, total_steps: int, kind: str):
        """Emit step started event."""
        self.emit(EventType.STEP_START, {
            "step_id": step_id,
            "step_index": step_index,
            "total_steps": total_steps,
            "kind": kind,
        })

    def step_completed(self, step_id: str, step_index: int, total_steps: int, duration_ms: int):
        """Emit step completed event."""
        self.emit(EventType.STEP_COMPLETE, {
            "step_id": step_id,
            "step_index": step_index,
            "total_steps": total_steps,
            "duration_ms": duration_ms,
        })

    def step_failed(self, step_id: str, step_index: int, total_steps: int, error: Dict[str, Any]):
        """Emit step failed event."""
        self.emit(EventType.STEP_ERROR, {
            "step_id": step_id,
            "step_index": step_index,
            "total_steps": total_steps,
            "error": error,
        })

    def step_retry(self, step_id: str, attempt: int, max_retries: int, delay: float, error: str):
        """Emit step retry event."""
        self.emit(EventType.STEP_RETRY, {
            "step_id": step_id,
            "attempt": attempt,
            "max_retries": max_retries,
            "delay": delay,
            "previous_error": error,
        })

    def progress(self, stage: str, percentage: int, counters: Dict[str, Any], step_id: Optional[str] = None):
        """Emit progress update event."""
        data = {"phase": stage, "percentage": percentage}
        data.update(counters)
        if step_id:
            data["step_id"] = step_id
        self.emit(EventType.PROGRESS, data)

    def gavel_requested(self, gavel: Dict[str, Any]):
        self.emit(EventType.GAVEL_REQUESTED, {"gavel_id": gavel["gavel_id"], "gavel": gavel})

    def gavel_approved(self, gavel_id: str, modifications: Optional[Dict[str, Any]] = None):
        self.emit(EventType.GAVEL_APPROVED, {"gavel_id": gavel_id, "modifications": modifications})

    def gavel_rejected(self, gavel_id: str, reason: Optional[str] = None):
        self.emit(EventType.GAVEL_REJECTED, {"gavel_id": gavel_id, "reason": reason})

    def gavel_skipped(self, gavel_id: str, automatic: bool = False):
        self.emit(EventType.GAVEL_SKIPPED, {"gavel_id": gavel_id, "automatic": automatic})

    def warning(self, warning_message: str, context: Optional[Dict[str, Any]] = None):
        """Emit warning event."""
        self.emit(EventType.WARNING, {
            "warning": warning_message,
            "context": context or {},
        })
