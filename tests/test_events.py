"""Tests for the SSE event bus and its output sink."""

import asyncio
import time
from datetime import UTC, datetime

import pytest

from opskit.api.events import (
    EVENT_COMPLETE,
    EVENT_OUTPUT,
    EVENT_PROGRESS,
    EVENT_STARTED,
    EventBus,
    EventBusSink,
)
from opskit.models.execution import (
    ExecutionResult,
    OutputEvent,
    OutputStream,
    TerminationReason,
)


# ---------------------------------------------------------------------------
# TestEventBusEmit
# ---------------------------------------------------------------------------

class TestEventBusEmit:
    """Verify EventBus.emit() behavior."""

    def test_emit_stores_in_history(self):
        bus = EventBus()
        bus.emit("c1", {"event": EVENT_STARTED})

        assert [e["event"] for e in bus.history("c1")] == [EVENT_STARTED]

    def test_emit_stamps_correlation_id_and_timestamp(self):
        bus = EventBus()
        before = time.time()
        bus.emit("c1", {"event": EVENT_STARTED})

        event = bus.history("c1")[0]
        assert event["correlation_id"] == "c1"
        assert event["timestamp"] >= before

    def test_emit_does_not_mutate_original(self):
        bus = EventBus()
        original = {"event": EVENT_STARTED}
        bus.emit("c1", original)

        assert original == {"event": EVENT_STARTED}

    def test_executions_isolated(self):
        bus = EventBus()
        bus.emit("c1", {"event": EVENT_STARTED})
        bus.emit("c2", {"event": EVENT_STARTED})

        assert len(bus.history("c1")) == 1
        assert len(bus.history("c2")) == 1


# ---------------------------------------------------------------------------
# TestEventBusSubscribe
# ---------------------------------------------------------------------------

class TestEventBusSubscribe:
    """Verify subscription and history replay."""

    @pytest.mark.asyncio
    async def test_late_joiner_gets_history_then_live(self):
        bus = EventBus()
        bus.emit("c1", {"event": EVENT_STARTED})

        queue = bus.subscribe("c1")
        bus.emit("c1", {"event": EVENT_OUTPUT, "line": "hi"})

        first = await asyncio.wait_for(queue.get(), timeout=1.0)
        second = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert first["event"] == EVENT_STARTED
        assert second["line"] == "hi"

    def test_unsubscribe_idempotent(self):
        bus = EventBus()
        queue = bus.subscribe("c1")

        bus.unsubscribe("c1", queue)
        bus.unsubscribe("c1", queue)
        bus.emit("c1", {"event": EVENT_STARTED})

        assert queue.empty()

    def test_full_queue_drops_events(self):
        bus = EventBus(queue_size=1)
        queue = bus.subscribe("c1")

        bus.emit("c1", {"event": EVENT_OUTPUT, "line": "a"})
        bus.emit("c1", {"event": EVENT_OUTPUT, "line": "b"})

        assert queue.qsize() == 1
        assert len(bus.history("c1")) == 2

    def test_late_joiner_to_long_run_still_gets_complete(self):
        bus = EventBus(queue_size=10)
        for i in range(10):
            bus.emit("c1", {"event": EVENT_OUTPUT, "line": str(i)})

        queue = bus.subscribe("c1")
        bus.emit("c1", {"event": EVENT_COMPLETE})

        received = [queue.get_nowait() for _ in range(queue.qsize())]
        assert len(received) == 10
        assert received[0]["line"] == "1"
        assert received[-1]["event"] == EVENT_COMPLETE

    def test_complete_evicts_oldest_from_full_queue(self):
        bus = EventBus(queue_size=2)
        queue = bus.subscribe("c1")

        for line in ("a", "b", "c"):
            bus.emit("c1", {"event": EVENT_OUTPUT, "line": line})
        bus.emit("c1", {"event": EVENT_COMPLETE})

        received = [queue.get_nowait() for _ in range(queue.qsize())]
        assert [e.get("line") for e in received] == ["b", None]
        assert received[-1]["event"] == EVENT_COMPLETE


# ---------------------------------------------------------------------------
# TestEventBusCleanup
# ---------------------------------------------------------------------------

class TestEventBusCleanup:
    """Verify terminal detection and TTL cleanup."""

    def test_has_terminal_event(self):
        bus = EventBus()
        bus.emit("c1", {"event": EVENT_STARTED})
        assert bus.has_terminal_event("c1") is False

        bus.emit("c1", {"event": EVENT_COMPLETE})
        assert bus.has_terminal_event("c1") is True

    def test_cleanup_stale_removes_expired(self):
        bus = EventBus(history_ttl=0)
        bus.emit("c1", {"event": EVENT_COMPLETE})
        bus.emit("c2", {"event": EVENT_STARTED})
        time.sleep(0.01)

        assert bus.cleanup_stale() == 1
        assert bus.history("c1") == []
        assert len(bus.history("c2")) == 1


# ---------------------------------------------------------------------------
# TestEventBusSink
# ---------------------------------------------------------------------------

class TestEventBusSink:
    """Verify the sink translates output into bus events."""

    @pytest.mark.asyncio
    async def test_output_progress_and_complete(self):
        bus = EventBus()
        sink = EventBusSink(bus, "c1")
        now = datetime.now(UTC)

        await sink.emit(OutputEvent(stream=OutputStream.STDERR, line="warn"))
        await sink.emit(OutputEvent(stream=OutputStream.PROGRESS, line="half", percent=50))
        await sink.close(ExecutionResult(
            correlation_id="c1",
            success=True,
            exit_code=0,
            start_time=now,
            end_time=now,
            duration_ms=12,
            termination_reason=TerminationReason.COMPLETED,
        ))

        events = bus.history("c1")
        assert [e["event"] for e in events] == [EVENT_OUTPUT, EVENT_PROGRESS, EVENT_COMPLETE]
        assert events[0]["stream"] == "stderr"
        assert events[1]["percent"] == 50
        assert events[2]["result"]["termination_reason"] == "completed"
        assert bus.has_terminal_event("c1")
