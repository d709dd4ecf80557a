"""Output sinks - how streamed execution output reaches a subscriber.

The execution host only knows the ``OutputSink`` protocol; the shell
adapts it to whatever event model it uses.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, AsyncIterator, Callable, Protocol, runtime_checkable

from opskit.models.execution import ExecutionResult, OutputEvent


@runtime_checkable
class OutputSink(Protocol):
    """Receives output events as they arrive, then the final result."""

    async def emit(self, event: OutputEvent) -> None: ...

    async def close(self, result: ExecutionResult) -> None: ...


class QueueSink:
    """Channel-style sink: consume events with ``async for``.

    Iteration ends once the final result has been delivered.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[OutputEvent | ExecutionResult] = asyncio.Queue()
        self._result: ExecutionResult | None = None
        self._closed = asyncio.Event()

    @property
    def result(self) -> ExecutionResult | None:
        return self._result

    async def emit(self, event: OutputEvent) -> None:
        await self._queue.put(event)

    async def close(self, result: ExecutionResult) -> None:
        self._result = result
        await self._queue.put(result)
        self._closed.set()

    async def events(self) -> AsyncIterator[OutputEvent]:
        """Yield events in arrival order until the execution finishes."""
        while True:
            item = await self._queue.get()
            if isinstance(item, ExecutionResult):
                return
            yield item

    async def wait_closed(self) -> ExecutionResult:
        """Return the final result once the sink has been closed."""
        await self._closed.wait()
        return self._result


class CallbackSink:
    """Adapts plain callbacks (sync or async) to the sink protocol."""

    def __init__(
        self,
        on_event: Callable[[OutputEvent], Any] | None = None,
        on_result: Callable[[ExecutionResult], Any] | None = None,
    ) -> None:
        self._on_event = on_event
        self._on_result = on_result

    async def emit(self, event: OutputEvent) -> None:
        if self._on_event is not None:
            outcome = self._on_event(event)
            if inspect.isawaitable(outcome):
                await outcome

    async def close(self, result: ExecutionResult) -> None:
        if self._on_result is not None:
            outcome = self._on_result(result)
            if inspect.isawaitable(outcome):
                await outcome


class NullSink:
    """Discards all output."""

    async def emit(self, event: OutputEvent) -> None:
        return None

    async def close(self, result: ExecutionResult) -> None:
        return None
