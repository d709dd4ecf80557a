"""In-memory per-execution event pub/sub for SSE streaming."""

from __future__ import annotations

import asyncio
import time
from typing import Any

from opskit.models.execution import ExecutionResult, OutputEvent, OutputStream

# Event type constants
EVENT_STARTED = "started"
EVENT_OUTPUT = "output"
EVENT_PROGRESS = "progress"
EVENT_COMPLETE = "complete"
_TERMINAL_EVENTS = frozenset({EVENT_COMPLETE})


class EventBus:
    """In-memory event bus for broadcasting execution events to SSE subscribers.

    Each execution has its own event history and set of subscriber queues.
    Late joiners receive the full event history before live events.
    """

    def __init__(self, history_ttl: float = 300, queue_size: int = 1000) -> None:
        self._events: dict[str, list[dict[str, Any]]] = {}
        self._subscribers: dict[str, list[asyncio.Queue[dict[str, Any]]]] = {}
        self._completed_at: dict[str, float] = {}
        self._history_ttl = history_ttl
        self._queue_size = queue_size

    def emit(self, correlation_id: str, event: dict[str, Any]) -> None:
        """Emit an event for an execution.

        Appends to history, stamps with the correlation id and pushes to all
        subscriber queues (non-blocking). A full queue drops ordinary events
        but evicts its oldest item to make room for a terminal one.
        """
        event = {"timestamp": time.time(), **event, "correlation_id": correlation_id}

        self._events.setdefault(correlation_id, []).append(event)

        terminal = event.get("event") in _TERMINAL_EVENTS
        if terminal:
            self._completed_at[correlation_id] = time.monotonic()

        for queue in self._subscribers.get(correlation_id, []):
            self._deliver(queue, event, force=terminal)

    def subscribe(self, correlation_id: str) -> asyncio.Queue[dict[str, Any]]:
        """Subscribe to events for an execution.

        Returns a queue pre-populated with the newest history events, leaving
        at least one slot free for live delivery.
        """
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)

        history = self._events.get(correlation_id, [])
        replay = history[-(self._queue_size - 1):] if self._queue_size > 1 else []
        for event in replay:
            queue.put_nowait(event)

        self._subscribers.setdefault(correlation_id, []).append(queue)
        return queue

    @staticmethod
    def _deliver(
        queue: asyncio.Queue[dict[str, Any]],
        event: dict[str, Any],
        force: bool = False,
    ) -> None:
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            if not force:
                return  # Subscriber too slow; history() still has it
            queue.get_nowait()
            queue.put_nowait(event)

    def unsubscribe(self, correlation_id: str, queue: asyncio.Queue[dict[str, Any]]) -> None:
        """Remove a subscriber queue. Idempotent."""
        subscribers = self._subscribers.get(correlation_id, [])
        try:
            subscribers.remove(queue)
        except ValueError:
            pass

    def history(self, correlation_id: str) -> list[dict[str, Any]]:
        return list(self._events.get(correlation_id, []))

    def has_terminal_event(self, correlation_id: str) -> bool:
        """Check if the complete event has been emitted."""
        return any(
            event.get("event") in _TERMINAL_EVENTS
            for event in self._events.get(correlation_id, [])
        )

    def cleanup_stale(self) -> int:
        """Remove event data for executions past the history TTL.

        Returns the number of executions cleaned up.
        """
        now = time.monotonic()
        stale = [
            correlation_id
            for correlation_id, completed_at in self._completed_at.items()
            if now - completed_at > self._history_ttl
        ]
        for correlation_id in stale:
            self._events.pop(correlation_id, None)
            self._subscribers.pop(correlation_id, None)
            self._completed_at.pop(correlation_id, None)
        return len(stale)


class EventBusSink:
    """Output sink that publishes execution output onto the event bus."""

    def __init__(self, bus: EventBus, correlation_id: str) -> None:
        self._bus = bus
        self._correlation_id = correlation_id

    async def emit(self, event: OutputEvent) -> None:
        kind = EVENT_PROGRESS if event.stream == OutputStream.PROGRESS else EVENT_OUTPUT
        payload: dict[str, Any] = {
            "event": kind,
            "stream": event.stream.value,
            "line": event.line,
            "timestamp": event.timestamp.timestamp(),
        }
        if event.percent is not None:
            payload["percent"] = event.percent
        self._bus.emit(self._correlation_id, payload)

    async def close(self, result: ExecutionResult) -> None:
        self._bus.emit(self._correlation_id, {
            "event": EVENT_COMPLETE,
            "result": result.model_dump(mode="json"),
        })
