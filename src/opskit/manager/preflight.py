"""Pre-flight validator - readiness checks run before a tool may execute.

Checks are independent and run concurrently. The report is advisory data
for the caller, except that any BLOCK entry is enforced by the execution
host.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from opskit.cache.artifact_cache import ArtifactCache
from opskit.exceptions import HostFailureError, OpsKitError
from opskit.manager.interpreters import InterpreterRegistry
from opskit.models.catalog import ModuleRef, ToolDescriptor
from opskit.models.preflight import (
    PreflightCheck,
    PreflightReport,
    PreflightStatus,
    RemediationAction,
)
from opskit.system import is_elevated

logger = logging.getLogger(__name__)

CHECK_DEPENDENCIES = "Dependencies"
CHECK_PRIVILEGES = "Administrator Privileges"
CHECK_EXTERNAL_RESOURCE = "External Resource"
CHECK_TOOL_SCRIPT = "Tool Script"
CHECK_INTERPRETER = "Interpreter"


def parse_endpoint(target: str, default_port: int) -> tuple[str, int]:
    """Split ``host:port``, ``host,port`` or ``host\\instance`` into host and port.

    Raises:
        ValueError: If the host part is empty or the port is not a valid number
    """
    host = target.strip()
    port = default_port

    for separator in (",", ":"):
        if separator in host:
            host, _, port_text = host.partition(separator)
            port_text = port_text.strip()
            if port_text:
                port = int(port_text)
            break

    # Named instances (SERVER\INSTANCE) are reached via the host only
    host = host.split("\\", 1)[0].strip()
    if not host:
        raise ValueError(f"No host in {target!r}")
    if not 0 < port < 65536:
        raise ValueError(f"Port out of range in {target!r}")
    return host, port


async def probe_tcp(host: str, port: int, timeout: float) -> None:
    """Open and close a TCP connection within ``timeout`` seconds.

    Raises:
        OSError: If the connection is refused or the host cannot be resolved
        TimeoutError: If the connection does not complete in time
    """
    _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass  # Peer already gone; reachability is all we needed


class PreflightValidator:
    """Evaluates whether a tool is ready to run on this machine."""

    def __init__(
        self,
        cache: ArtifactCache,
        interpreters: InterpreterRegistry | None = None,
        probe_timeout: float = 5.0,
        default_external_resource: str | None = None,
        default_port: int = 1433,
        privilege_probe: Callable[[], bool] = is_elevated,
    ) -> None:
        self._cache = cache
        self._interpreters = interpreters or InterpreterRegistry()
        self._probe_timeout = probe_timeout
        self._default_external_resource = default_external_resource
        self._default_port = default_port
        self._privilege_probe = privilege_probe

    async def evaluate(self, descriptor: ToolDescriptor) -> PreflightReport:
        """Run the checklist for a tool.

        Args:
            descriptor: The tool about to run

        Returns:
            Ordered report: dependencies, privileges, external resource,
            tool script, interpreter (checks that do not apply are omitted)
        """
        logger.info(f"Running pre-flight checks for tool: {descriptor.id} ({descriptor.name})")

        checks = [self._check_dependencies(descriptor)]
        if descriptor.requires_elevated_privilege:
            checks.append(self._check_privileges())
        if descriptor.requires_external_resource:
            checks.append(self._check_external_resource(descriptor))
        checks.append(self._check_tool_script(descriptor))
        checks.append(self._check_interpreter(descriptor))

        # gather keeps argument order, so the report order is fixed
        results = await asyncio.gather(*checks)
        report = PreflightReport(tool_id=descriptor.id, checks=tuple(results))

        passed = sum(1 for c in report.checks if c.status == PreflightStatus.PASS)
        logger.info(
            f"Pre-flight checks complete for {descriptor.id}: {passed} passed, "
            f"{len(report.warnings)} warnings, {len(report.blocking_checks)} blocking"
        )
        return report

    async def _check_dependencies(self, descriptor: ToolDescriptor) -> PreflightCheck:
        if not descriptor.dependencies:
            return PreflightCheck(
                name=CHECK_DEPENDENCIES,
                status=PreflightStatus.PASS,
                message="Tool has no dependencies.",
            )

        outcomes = await asyncio.gather(
            *(self._resolve_module(module) for module in descriptor.dependencies)
        )
        failures = [message for message in outcomes if message is not None]

        if not failures:
            return PreflightCheck(
                name=CHECK_DEPENDENCIES,
                status=PreflightStatus.PASS,
                message=f"All {len(descriptor.dependencies)} dependencies are available.",
            )

        return PreflightCheck(
            name=CHECK_DEPENDENCIES,
            status=PreflightStatus.BLOCK,
            message=f"Missing {len(failures)} dependencies: {'; '.join(failures)}",
            remediation="Re-download the dependency.",
            action=RemediationAction.REDOWNLOAD,
        )

    async def _resolve_module(self, module: ModuleRef) -> str | None:
        """Resolve one dependency; returns a failure message or None."""
        try:
            await self._cache.resolve(module.artifact_path, module.checksum)
        except (OpsKitError, OSError, ValueError) as e:
            logger.warning(f"Dependency {module.id} unavailable: {e}")
            return f"{module.id} ({e})"
        return None

    async def _check_privileges(self) -> PreflightCheck:
        if self._privilege_probe():
            return PreflightCheck(
                name=CHECK_PRIVILEGES,
                status=PreflightStatus.PASS,
                message="Running with administrator privileges.",
            )

        return PreflightCheck(
            name=CHECK_PRIVILEGES,
            status=PreflightStatus.BLOCK,
            message="This tool requires administrator privileges.",
            remediation="Restart elevated (as administrator).",
            action=RemediationAction.RESTART_ELEVATED,
        )

    async def _check_external_resource(self, descriptor: ToolDescriptor) -> PreflightCheck:
        target = descriptor.external_resource or self._default_external_resource
        if not target:
            return PreflightCheck(
                name=CHECK_EXTERNAL_RESOURCE,
                status=PreflightStatus.WARN,
                message="Tool needs an external resource but none is configured.",
                remediation="Configure the external resource and check connectivity.",
                action=RemediationAction.CHECK_CONNECTIVITY,
            )

        try:
            host, port = parse_endpoint(target, self._default_port)
            await probe_tcp(host, port, self._probe_timeout)
        except TimeoutError:
            message = f"Cannot reach {target}: connection timed out"
        except (OSError, ValueError) as e:
            message = f"Cannot reach {target}: {e}"
        else:
            return PreflightCheck(
                name=CHECK_EXTERNAL_RESOURCE,
                status=PreflightStatus.PASS,
                message=f"Successfully connected to {host}:{port}.",
            )

        logger.warning(message)
        return PreflightCheck(
            name=CHECK_EXTERNAL_RESOURCE,
            status=PreflightStatus.WARN,
            message=message,
            remediation="Check connectivity to the external resource.",
            action=RemediationAction.CHECK_CONNECTIVITY,
        )

    async def _check_tool_script(self, descriptor: ToolDescriptor) -> PreflightCheck:
        try:
            await self._cache.resolve(descriptor.artifact_path, descriptor.checksum)
        except (OpsKitError, OSError, ValueError) as e:
            logger.warning(f"Tool script for {descriptor.id} unavailable: {e}")
            return PreflightCheck(
                name=CHECK_TOOL_SCRIPT,
                status=PreflightStatus.BLOCK,
                message=f"Tool script could not be downloaded: {e}",
                remediation="Re-download the tool.",
                action=RemediationAction.REDOWNLOAD,
            )

        return PreflightCheck(
            name=CHECK_TOOL_SCRIPT,
            status=PreflightStatus.PASS,
            message="Tool script is cached and verified.",
        )

    async def _check_interpreter(self, descriptor: ToolDescriptor) -> PreflightCheck:
        try:
            spec = self._interpreters.for_artifact(descriptor.artifact_path)
        except HostFailureError as e:
            return PreflightCheck(
                name=CHECK_INTERPRETER,
                status=PreflightStatus.BLOCK,
                message=e.message,
                remediation=e.remediation,
                action=RemediationAction.INSTALL_INTERPRETER,
            )

        if not spec.is_available():
            return PreflightCheck(
                name=CHECK_INTERPRETER,
                status=PreflightStatus.BLOCK,
                message=f"Interpreter '{spec.executable}' is not available.",
                remediation=f"Install {spec.executable} and retry.",
                action=RemediationAction.INSTALL_INTERPRETER,
            )

        return PreflightCheck(
            name=CHECK_INTERPRETER,
            status=PreflightStatus.PASS,
            message=f"Interpreter '{spec.executable}' is available.",
        )
