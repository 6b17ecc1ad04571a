"""Server-Sent Events (SSE) relay for run events.

Provides:
- SSEConnection: One client's queue of pending events for a run
- SSEManager: Tracks connections per run and relays EventBus events to them
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from queue import Empty, Queue
from typing import Any, Dict, List, Optional, Set

from council.events import Event, EventBus

logger = logging.getLogger(__name__)

# Events not bound to a run are relayed to clients connected to this id
ALL_RUNS = "*"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class SSEConnection:
    """Individual SSE connection to a client."""

    run_id: str
    client_id: str
    queue: Queue = field(default_factory=Queue)
    connected_at: datetime = field(default_factory=_now)
    last_activity: datetime = field(default_factory=_now)

    def __hash__(self):
        return hash((self.run_id, self.client_id))

    def __eq__(self, other):
        if not isinstance(other, SSEConnection):
            return False
        return self.run_id == other.run_id and self.client_id == other.client_id

    def send_event(self, event_type: str, data: Dict[str, Any]) -> None:
        """
        Queue an event for this connection.

        Args:
            event_type: Event name (e.g. 'step:start', 'progress')
            data: Event payload
        """
        self.queue.put({"event": event_type, "data": data, "timestamp": _now().isoformat()})
        self.last_activity = _now()

    def get_events(self, timeout: float = 30.0) -> List[Dict[str, Any]]:
        """
        Get pending events, waiting up to 15 seconds for the first one.

        Args:
            timeout: Maximum time to spend draining the queue (seconds)

        Returns:
            List of events (empty when the caller should send a keepalive)
        """
        events = []
        deadline = time.time() + timeout

        try:
            events.append(self.queue.get(timeout=min(timeout, 15.0)))
            while time.time() < deadline:
                try:
                    events.append(self.queue.get_nowait())
                except Empty:
                    break
        except Empty:
            pass

        return events


class SSEManager:
    """
    Manages SSE connections and relays run events to them.

    Thread-safe: events are published from the engine's event loop thread
    while Flask request threads read the queues.

    Usage:
        manager = SSEManager()
        manager.attach(event_bus)

        connection = manager.connect(run_id="run_123")
        ...
        manager.disconnect(run_id="run_123", client_id=connection.client_id)
    """

    def __init__(self):
        self._connections: Dict[str, Set[SSEConnection]] = {}
        self._lock = threading.RLock()
        self._bus: Optional[EventBus] = None

    def attach(self, event_bus: EventBus) -> None:
        """Relay every event published on ``event_bus``."""
        if self._bus is event_bus:
            return
        if self._bus is not None:
            self._bus.unsubscribe(None, self._relay)
        event_bus.subscribe(None, self._relay)
        self._bus = event_bus

    def detach(self) -> None:
        if self._bus is not None:
            self._bus.unsubscribe(None, self._relay)
            self._bus = None

    def _relay(self, event: Event) -> None:
        payload = event.to_dict()
        self.broadcast(event.run_id, event.type.value, payload)
        if event.run_id != ALL_RUNS:
            self.broadcast(ALL_RUNS, event.type.value, payload)

    def connect(self, run_id: str, client_id: Optional[str] = None) -> SSEConnection:
        """
        Register a new SSE connection.

        Args:
            run_id: Run to follow (``*`` follows every run)
            client_id: Optional client identifier (auto-generated if not provided)

        Returns:
            SSEConnection object
        """
        if client_id is None:
            client_id = f"client-{int(time.time() * 1000)}"

        connection = SSEConnection(run_id=run_id, client_id=client_id)
        with self._lock:
            self._connections.setdefault(run_id, set()).add(connection)

        logger.info(f"SSE connection established: run_id={run_id}, client_id={client_id}")
        connection.send_event("connected", {
            "run_id": run_id,
            "client_id": client_id,
            "message": "SSE connection established",
        })
        return connection

    def disconnect(self, run_id: str, client_id: str) -> None:
        with self._lock:
            if run_id in self._connections:
                self._connections[run_id] = {
                    conn for conn in self._connections[run_id] if conn.client_id != client_id
                }
                if not self._connections[run_id]:
                    del self._connections[run_id]

        logger.info(f"SSE connection closed: run_id={run_id}, client_id={client_id}")

    def broadcast(self, run_id: str, event_type: str, data: Dict[str, Any]) -> int:
        """
        Broadcast an event to all connections for a run.

        Returns:
            Number of connections that received the event
        """
        count = 0
        with self._lock:
            for connection in self._connections.get(run_id, set()):
                connection.send_event(event_type, data)
                count += 1

        if count > 0:
            logger.debug(f"Broadcasted {event_type} to {count} client(s) for run {run_id}")
        return count

    def get_connections(self, run_id: str) -> List[SSEConnection]:
        with self._lock:
            return list(self._connections.get(run_id, set()))

    def get_connection_count(self, run_id: str) -> int:
        with self._lock:
            return len(self._connections.get(run_id, set()))

    def cleanup_stale_connections(self, max_age_seconds: float = 3600) -> int:
        """
        Remove connections older than max_age_seconds.

        Returns:
            Number of connections removed
        """
        removed = 0
        now = _now()

        with self._lock:
            for run_id in list(self._connections.keys()):
                stale = {
                    conn for conn in self._connections[run_id]
                    if (now - conn.connected_at).total_seconds() > max_age_seconds
                }
                if stale:
                    self._connections[run_id] -= stale
                    removed += len(stale)
                    if not self._connections[run_id]:
                        del self._connections[run_id]

        if removed > 0:
            logger.info(f"Cleaned up {removed} stale SSE connection(s)")
        return removed


def format_sse_message(event_type: str, data: Dict[str, Any]) -> str:
    """Format an event as an SSE message."""
    return f"event: {event_type}\ndata: {json.dumps(data, default=str)}\n\n"


def format_keepalive() -> str:
    """Format an SSE keepalive comment."""
    return f": keepalive {_now().isoformat()}\n\n"
