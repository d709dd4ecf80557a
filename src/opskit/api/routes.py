"""FastAPI routes for catalog, pre-flight, execution, history and cache."""

import asyncio
import json
import logging
from datetime import datetime
from typing import Annotated, AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from starlette.responses import StreamingResponse

from opskit import __version__
from opskit.api.events import EVENT_COMPLETE, EVENT_STARTED, EventBusSink
from opskit.engine import Engine
from opskit.exceptions import (
    AlreadyRunningError,
    CatalogError,
    HostFailureError,
    IntegrityError,
    NetworkError,
    OpsKitError,
    PrivilegeError,
    ToolNotFoundError,
)
from opskit.models.execution import ExecutionSubmit, TerminationReason
from opskit.models.history import HistoryFilter

logger = logging.getLogger(__name__)

router = APIRouter()

_ERROR_STATUS: dict[type[OpsKitError], int] = {
    AlreadyRunningError: status.HTTP_409_CONFLICT,
    PrivilegeError: status.HTTP_403_FORBIDDEN,
    IntegrityError: status.HTTP_424_FAILED_DEPENDENCY,
    HostFailureError: status.HTTP_424_FAILED_DEPENDENCY,
    NetworkError: status.HTTP_503_SERVICE_UNAVAILABLE,
    CatalogError: status.HTTP_502_BAD_GATEWAY,
    ToolNotFoundError: status.HTTP_404_NOT_FOUND,
}


def get_engine(request: Request) -> Engine:
    """Get the engine attached to the running app."""
    return request.app.state.engine


def _http_error(error: OpsKitError) -> HTTPException:
    status_code = next(
        (code for kind, code in _ERROR_STATUS.items() if isinstance(error, kind)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    return HTTPException(status_code=status_code, detail=error.to_dict())


def _not_found(what: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{what} not found")


EngineDep = Annotated[Engine, Depends(get_engine)]


@router.get("/health")
async def health(engine: EngineDep) -> dict:
    """Health check endpoint."""
    system = engine.maintenance.health
    active = engine.host.active
    catalog = engine.resolver.current
    return {
        "status": system.status.value,
        "version": __version__,
        "active_execution": active.correlation_id if active else None,
        "catalog_loaded": catalog is not None,
        "catalog_offline": catalog.offline if catalog else None,
        "ledger_failures": engine.host.ledger_failures,
        "health": system.model_dump(mode="json"),
    }


# -----------------------------------------------------------------------------
# Catalog and pre-flight
# -----------------------------------------------------------------------------


@router.get("/catalog")
async def get_catalog(engine: EngineDep, refresh: bool = False) -> dict:
    """Resolve the tool catalog, optionally forcing a remote refresh."""
    try:
        catalog = await engine.resolver.resolve(force_refresh=refresh)
    except OpsKitError as e:
        raise _http_error(e)
    return catalog.model_dump(mode="json")


@router.get("/catalog/update")
async def get_launcher_update(engine: EngineDep) -> dict:
    """Report whether the catalog advertises a newer launcher."""
    update = engine.resolver.update_available
    return {
        "update_available": update is not None,
        "current_version": engine.settings.launcher_version,
        "latest_version": update.latest_version if update else None,
    }


@router.get("/tools/{tool_id}/preflight")
async def preflight_tool(tool_id: str, engine: EngineDep) -> dict:
    """Run pre-flight checks for a tool without starting it."""
    try:
        _, report = await engine.preflight(tool_id)
    except OpsKitError as e:
        raise _http_error(e)
    return report.to_dict()


# -----------------------------------------------------------------------------
# Executions
# -----------------------------------------------------------------------------


@router.post("/executions", status_code=status.HTTP_201_CREATED)
async def start_execution(body: ExecutionSubmit, engine: EngineDep) -> dict:
    """Run pre-flight for a tool and start it.

    Returns immediately with the execution handle; follow progress via
    ``/executions/{correlation_id}/stream``.
    """
    request = body.to_request()
    sink = EventBusSink(engine.event_bus, request.correlation_id)

    try:
        handle = await engine.run_tool(request, sink, max_duration=body.max_duration_seconds)
    except OpsKitError as e:
        logger.warning(f"Execution of {body.tool_id} refused: {e}")
        raise _http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    engine.event_bus.emit(handle.correlation_id, {
        "event": EVENT_STARTED,
        "tool_id": handle.descriptor.id,
    })
    return handle.to_dict()


@router.get("/executions")
async def list_executions(engine: EngineDep) -> list[dict]:
    """List executions started by this process, newest first."""
    return [handle.to_dict() for handle in engine.host.list_handles()]


@router.get("/executions/{correlation_id}")
async def get_execution(correlation_id: str, engine: EngineDep) -> dict:
    handle = engine.host.get_handle(correlation_id)
    if handle is None:
        raise _not_found(f"Execution {correlation_id}")
    return handle.to_dict()


@router.post("/executions/{correlation_id}/cancel")
async def cancel_execution(correlation_id: str, engine: EngineDep) -> dict:
    """Request cancellation. ``cancelled`` is false if it already finished."""
    if engine.host.get_handle(correlation_id) is None:
        raise _not_found(f"Execution {correlation_id}")
    return {
        "correlation_id": correlation_id,
        "cancelled": engine.host.cancel(correlation_id),
    }


@router.get("/executions/{correlation_id}/stream")
async def stream_execution(correlation_id: str, engine: EngineDep) -> StreamingResponse:
    """Stream execution output via Server-Sent Events.

    Late joiners receive the full event history before live events.
    The stream terminates after the complete event.
    """
    if engine.host.get_handle(correlation_id) is None:
        raise _not_found(f"Execution {correlation_id}")

    event_bus = engine.event_bus
    queue = event_bus.subscribe(correlation_id)

    async def event_generator() -> AsyncIterator[str]:
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=30.0)
                    yield f"data: {json.dumps(event)}\n\n"
                    if event.get("event") == EVENT_COMPLETE:
                        break
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    if event_bus.has_terminal_event(correlation_id):
                        break
        finally:
            event_bus.unsubscribe(correlation_id, queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# -----------------------------------------------------------------------------
# History
# -----------------------------------------------------------------------------


@router.get("/history")
async def get_history(
    engine: EngineDep,
    tool_id: str | None = None,
    success: bool | None = None,
    termination_reason: TerminationReason | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: Annotated[int | None, Query(ge=1)] = None,
) -> list[dict]:
    """Query the execution ledger, newest first."""
    criteria = HistoryFilter(
        tool_id=tool_id,
        success=success,
        termination_reason=termination_reason,
        since=since,
        until=until,
        limit=limit,
    )
    entries = await engine.ledger.query(criteria)
    return [entry.model_dump(mode="json") for entry in entries]


@router.get("/history/most-used")
async def get_most_used(
    engine: EngineDep,
    limit: Annotated[int, Query(ge=1, le=100)] = 5,
) -> list[dict]:
    """Tools ranked by number of runs."""
    return [usage.to_dict() for usage in await engine.ledger.most_used(limit)]


@router.get("/history/{entry_id}")
async def get_history_entry(entry_id: str, engine: EngineDep) -> dict:
    entry = await engine.ledger.get(entry_id)
    if entry is None:
        raise _not_found(f"History entry {entry_id}")
    return entry.model_dump(mode="json")


# -----------------------------------------------------------------------------
# Cache
# -----------------------------------------------------------------------------


@router.get("/cache")
async def get_cache(engine: EngineDep) -> dict:
    """Cache statistics and entries."""
    return {
        "stats": engine.cache.stats(),
        "entries": [entry.to_dict() for entry in engine.cache.entries()],
    }


@router.delete("/cache")
async def clear_cache(engine: EngineDep) -> dict:
    return {"removed": engine.cache.clear()}


@router.post("/cache/prune")
async def prune_cache(engine: EngineDep) -> dict:
    return {"pruned": engine.cache.prune()}


@router.delete("/cache/artifacts/{artifact_path:path}")
async def invalidate_artifact(artifact_path: str, engine: EngineDep) -> dict:
    """Drop one cached artifact so it is re-downloaded on next use."""
    try:
        removed = engine.cache.invalidate(artifact_path)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if not removed:
        raise _not_found(f"Cached artifact {artifact_path}")
    return {"invalidated": artifact_path}
