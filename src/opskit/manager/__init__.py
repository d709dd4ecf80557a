"""Catalog resolution, pre-flight, execution and history."""

from opskit.manager.catalog_resolver import CatalogResolver
from opskit.manager.execution_host import ExecutionHandle, ExecutionHost, parse_output_line
from opskit.manager.interpreters import InterpreterRegistry, InterpreterSpec, build_command
from opskit.manager.ledger import ExecutionLedger
from opskit.manager.maintenance import MaintenanceWorker
from opskit.manager.preflight import PreflightValidator
from opskit.manager.sinks import CallbackSink, NullSink, OutputSink, QueueSink

__all__ = [
    "build_command",
    "CallbackSink",
    "CatalogResolver",
    "ExecutionHandle",
    "ExecutionHost",
    "ExecutionLedger",
    "InterpreterRegistry",
    "InterpreterSpec",
    "MaintenanceWorker",
    "NullSink",
    "OutputSink",
    "parse_output_line",
    "PreflightValidator",
    "QueueSink",
]
