"""Pydantic models for OpsKit - the contracts."""

from opskit.models.cache import CacheEntry, CacheStatus
from opskit.models.catalog import (
    Catalog,
    Category,
    LauncherUpdate,
    Manifest,
    ModuleRef,
    ToolDescriptor,
    ToolParameter,
)
from opskit.models.execution import (
    ExecutionRequest,
    ExecutionResult,
    ExecutionState,
    ExecutionSubmit,
    OutputEvent,
    OutputStream,
    TerminationReason,
)
from opskit.models.health import ComponentHealth, HealthStatus, SystemHealth
from opskit.models.history import ExecutionHistoryEntry, HistoryFilter, ToolUsage
from opskit.models.preflight import (
    PreflightCheck,
    PreflightReport,
    PreflightStatus,
    RemediationAction,
)

__all__ = [
    "CacheEntry",
    "CacheStatus",
    "Catalog",
    "Category",
    "ComponentHealth",
    "ExecutionHistoryEntry",
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionState",
    "ExecutionSubmit",
    "HealthStatus",
    "HistoryFilter",
    "LauncherUpdate",
    "Manifest",
    "ModuleRef",
    "OutputEvent",
    "OutputStream",
    "PreflightCheck",
    "PreflightReport",
    "PreflightStatus",
    "RemediationAction",
    "SystemHealth",
    "TerminationReason",
    "ToolDescriptor",
    "ToolParameter",
    "ToolUsage",
]
