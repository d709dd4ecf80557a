"""Execution host - spawns and supervises the interpreter subprocess.

One host runs at most one execution at a time. Each execution moves
through ``pending -> starting -> running -> terminal`` and, whatever the
outcome, produces exactly one result and one ledger entry. Output is read
from stdout and stderr by two independent readers and pushed to the sink
line by line.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, AsyncIterator

from opskit.cache.artifact_cache import ArtifactCache
from opskit.exceptions import (
    AlreadyRunningError,
    HostFailureError,
    IntegrityError,
    OpsKitError,
    PrivilegeError,
)
from opskit.manager.interpreters import InterpreterRegistry, build_command
from opskit.manager.ledger import ExecutionLedger
from opskit.manager.sinks import OutputSink
from opskit.models.catalog import ToolDescriptor
from opskit.models.execution import (
    ExecutionRequest,
    ExecutionResult,
    ExecutionState,
    OutputEvent,
    OutputStream,
    TerminationReason,
)
from opskit.models.history import ExecutionHistoryEntry
from opskit.models.preflight import PreflightReport, RemediationAction
from opskit.system import current_user, machine_name

logger = logging.getLogger(__name__)

MODULE_PATH_ENV = "OPSKIT_MODULE_PATH"
PROGRESS_MARKER = re.compile(r"^::progress::\s*(\d{1,3})(?:\s+(.*))?$")
_TRUNCATED = "\n... [output truncated]"
_READ_CHUNK = 64 * 1024


def parse_output_line(line: str, stream: OutputStream) -> OutputEvent:
    """Turn one raw line into an output event, recognising progress markers.

    A marker with a percentage outside 0-100 is passed through as plain output.
    """
    match = PROGRESS_MARKER.match(line)
    if match is not None:
        percent = int(match.group(1))
        if 0 <= percent <= 100:
            return OutputEvent(
                stream=OutputStream.PROGRESS,
                line=(match.group(2) or "").strip(),
                percent=percent,
            )
    return OutputEvent(stream=stream, line=line)


@dataclass
class _Transcript:
    """Bounded capture of one stream for the history entry."""

    limit: int
    parts: list[str] = field(default_factory=list)
    size: int = 0
    truncated: bool = False

    def add(self, line: str) -> None:
        if self.truncated:
            return
        if self.size + len(line) + 1 > self.limit:
            self.truncated = True
            self.parts.append(_TRUNCATED)
            return
        self.parts.append(line)
        self.size += len(line) + 1

    def text(self) -> str:
        return "\n".join(self.parts)


@dataclass
class ExecutionHandle:
    """A started execution, used to observe, cancel and await it."""

    request: ExecutionRequest
    descriptor: ToolDescriptor
    state: ExecutionState = ExecutionState.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    result: ExecutionResult | None = None
    pid: int | None = None
    _task: asyncio.Task | None = field(default=None, repr=False)
    _cancel_requested: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def correlation_id(self) -> str:
        return self.request.correlation_id

    @property
    def done(self) -> bool:
        return self.state.is_terminal

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "correlation_id": self.correlation_id,
            "tool_id": self.descriptor.id,
            "tool_name": self.descriptor.name,
            "state": self.state.value,
            "pid": self.pid,
            "created_at": self.created_at.isoformat(),
            "cancel_requested": self.cancel_requested,
            "result": self.result.model_dump(mode="json") if self.result else None,
        }


class ExecutionHost:
    """Runs one artifact at a time in a supervised subprocess."""

    def __init__(
        self,
        cache: ArtifactCache,
        ledger: ExecutionLedger,
        interpreters: InterpreterRegistry | None = None,
        grace_period: float = 5.0,
        drain_timeout: float = 2.0,
        default_max_duration: float | None = None,
        stream_limit: int = 1024 * 1024,
        transcript_limit: int = 200_000,
        encoding: str = "utf-8",
        extra_env: dict[str, str] | None = None,
    ) -> None:
        """Initialize the host.

        Args:
            cache: Resolves artifacts to local paths
            ledger: Receives one entry per execution
            interpreters: Interpreter selection by artifact suffix
            grace_period: Seconds between the graceful and forceful stop
            drain_timeout: Seconds to wait for output streams to close after exit
            default_max_duration: Time limit applied when start() gets none
            stream_limit: Longest output line accepted, in bytes
            transcript_limit: Characters of each stream kept for history
            encoding: How subprocess output is decoded
            extra_env: Variables added to the subprocess environment
        """
        self._cache = cache
        self._ledger = ledger
        self._interpreters = interpreters or InterpreterRegistry()
        self._grace_period = grace_period
        self._drain_timeout = drain_timeout
        self._default_max_duration = default_max_duration
        self._stream_limit = stream_limit
        self._transcript_limit = transcript_limit
        self._encoding = encoding
        self._extra_env = dict(extra_env or {})
        self._machine = machine_name()
        self._user = current_user()

        self._handles: dict[str, ExecutionHandle] = {}
        self._active: ExecutionHandle | None = None
        self._ledger_failures = 0

    @property
    def ledger_failures(self) -> int:
        """Runs whose history entry could not be written."""
        return self._ledger_failures

    @property
    def active(self) -> ExecutionHandle | None:
        """The execution that is not yet terminal, if any."""
        if self._active is not None and not self._active.done:
            return self._active
        return None

    def get_handle(self, correlation_id: str) -> ExecutionHandle | None:
        return self._handles.get(correlation_id)

    def list_handles(self) -> list[ExecutionHandle]:
        return sorted(self._handles.values(), key=lambda h: h.created_at, reverse=True)

    async def start(
        self,
        request: ExecutionRequest,
        descriptor: ToolDescriptor,
        sink: OutputSink,
        report: PreflightReport | None = None,
        max_duration: float | None = None,
    ) -> ExecutionHandle:
        """Start running a tool.

        Args:
            request: What to run and with which parameters
            descriptor: The tool's catalog descriptor
            sink: Receives output events and the final result
            report: Pre-flight report; any BLOCK entry refuses the start
            max_duration: Seconds before the run is stopped as timed out

        Returns:
            Handle for the new execution

        Raises:
            PrivilegeError: If the report blocks on privileges
            IntegrityError: If the report blocks on a missing or corrupt artifact
            HostFailureError: If the report blocks on the interpreter
            AlreadyRunningError: If another execution is still active
            ValueError: If the request does not match the descriptor or reuses
                a correlation id
        """
        if request.tool_id != descriptor.id:
            raise ValueError(
                f"Request is for tool {request.tool_id}, descriptor is {descriptor.id}"
            )
        if report is not None:
            self._enforce_preflight(report, descriptor)

        active = self.active
        if active is not None:
            raise AlreadyRunningError(active.correlation_id)

        if request.correlation_id in self._handles:
            raise ValueError(f"Correlation id already used: {request.correlation_id}")

        handle = ExecutionHandle(request=request, descriptor=descriptor)
        self._handles[handle.correlation_id] = handle
        self._active = handle

        limit = max_duration if max_duration is not None else self._default_max_duration
        handle._task = asyncio.create_task(
            self._supervise(handle, sink, limit),
            name=f"opskit-execution-{handle.correlation_id}",
        )
        logger.info(f"Started execution {handle.correlation_id} of {descriptor.id}")
        return handle

    def cancel(self, correlation_id: str) -> bool:
        """Request cancellation of an execution.

        Returns:
            True if cancellation was initiated, False if unknown or already finished
        """
        handle = self._handles.get(correlation_id)
        if handle is None or handle.done:
            return False

        handle._cancel_requested.set()
        logger.info(f"Requested cancellation of execution {correlation_id}")
        return True

    async def wait(self, handle: ExecutionHandle) -> ExecutionResult:
        """Block until the execution reaches a terminal state."""
        if handle._task is None:
            raise ValueError(f"Execution {handle.correlation_id} was never started")
        # Shielded so a waiter giving up does not tear down supervision
        return await asyncio.shield(handle._task)

    async def shutdown(self) -> None:
        """Cancel the active execution, if any, and wait for it to finish."""
        active = self.active
        if active is None:
            return
        self.cancel(active.correlation_id)
        await self.wait(active)

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    def _enforce_preflight(self, report: PreflightReport, descriptor: ToolDescriptor) -> None:
        if report.tool_id != descriptor.id:
            raise ValueError(
                f"Pre-flight report is for tool {report.tool_id}, not {descriptor.id}"
            )

        blocking = report.blocking_checks
        if not blocking:
            return

        summary = "; ".join(f"{c.name}: {c.message}" for c in blocking)
        actions = {c.action for c in blocking}
        remediation = next((c.remediation for c in blocking if c.remediation), None)

        logger.warning(f"Refusing to start {descriptor.id}, pre-flight blocked: {summary}")
        if RemediationAction.RESTART_ELEVATED in actions:
            raise PrivilegeError(f"Pre-flight blocked: {summary}")
        if RemediationAction.REDOWNLOAD in actions:
            raise IntegrityError(
                descriptor.artifact_path,
                f"Pre-flight blocked: {summary}",
                remediation,
            )
        raise HostFailureError(f"Pre-flight blocked: {summary}", remediation)

    async def _supervise(
        self,
        handle: ExecutionHandle,
        sink: OutputSink,
        max_duration: float | None,
    ) -> ExecutionResult:
        start_time = datetime.now(UTC)
        started = time.monotonic()
        stdout = _Transcript(self._transcript_limit)
        stderr = _Transcript(self._transcript_limit)

        reason = TerminationReason.HOST_FAILURE
        exit_code = -1
        error: str | None = None
        process: asyncio.subprocess.Process | None = None

        try:
            handle.state = ExecutionState.STARTING
            try:
                process = await self._spawn(handle)
            except (OpsKitError, OSError, ValueError) as e:
                error = str(e)
                if isinstance(e, OpsKitError) and e.remediation:
                    error = f"{e} ({e.remediation})"
                logger.error(f"Failed to start {handle.descriptor.id}: {error}")

            if process is None and error is None:
                reason = TerminationReason.CANCELLED
                logger.info(f"Execution {handle.correlation_id} cancelled before spawn")
            elif process is not None:
                handle.pid = process.pid
                handle.state = ExecutionState.RUNNING
                reason, exit_code, error = await self._run(
                    handle, process, sink, max_duration, stdout, stderr,
                )
        except asyncio.CancelledError:
            # Host task torn down (e.g. event loop shutdown)
            if process is not None and process.returncode is None:
                self._signal(process, force=True)
            reason = TerminationReason.CANCELLED
            error = "Execution host was shut down"
            await self._finalize(handle, sink, self._result(
                handle, reason, exit_code, error, start_time, started,
            ), stdout, stderr)
            raise

        result = self._result(handle, reason, exit_code, error, start_time, started)
        return await self._finalize(handle, sink, result, stdout, stderr)

    async def _spawn(self, handle: ExecutionHandle) -> asyncio.subprocess.Process | None:
        """Resolve artifacts and start the interpreter.

        Returns None if cancellation arrived before the process was created,
        including while artifacts were still downloading.
        """
        descriptor = handle.descriptor
        resolving = asyncio.create_task(self._resolve_artifacts(descriptor))
        cancelled = asyncio.create_task(handle._cancel_requested.wait())
        try:
            await asyncio.wait({resolving, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not resolving.done():
                # Downloads are shared in the cache and run on for other callers
                resolving.cancel()

        if handle.cancel_requested:
            if resolving.done() and not resolving.cancelled():
                resolving.exception()  # Mark retrieved; cancellation wins
            return None

        script, modules = resolving.result()

        spec = self._interpreters.for_artifact(script)
        argv = build_command(spec, script, handle.request.parameters)

        env = {**os.environ, **self._extra_env}
        if modules:
            module_dirs = list(dict.fromkeys(str(Path(m).parent) for m in modules))
            env[MODULE_PATH_ENV] = os.pathsep.join(module_dirs)

        kwargs: dict[str, Any] = {}
        if os.name == "posix":
            # Own process group so termination reaches the whole tree
            kwargs["start_new_session"] = True

        logger.debug(f"Spawning {argv[0]} for {descriptor.id}")
        return await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(script.parent),
            env=env,
            limit=self._stream_limit,
            **kwargs,
        )

    async def _resolve_artifacts(self, descriptor: ToolDescriptor) -> tuple[Path, list[Path]]:
        script = await self._cache.resolve(descriptor.artifact_path, descriptor.checksum)
        modules = await asyncio.gather(
            *(self._cache.resolve(m.artifact_path, m.checksum) for m in descriptor.dependencies)
        )
        return script, list(modules)

    async def _run(
        self,
        handle: ExecutionHandle,
        process: asyncio.subprocess.Process,
        sink: OutputSink,
        max_duration: float | None,
        stdout: _Transcript,
        stderr: _Transcript,
    ) -> tuple[TerminationReason, int, str | None]:
        failed_sinks: set[int] = set()
        readers = [
            asyncio.create_task(self._pump(process.stdout, OutputStream.STDOUT, sink, stdout, failed_sinks)),
            asyncio.create_task(self._pump(process.stderr, OutputStream.STDERR, sink, stderr, failed_sinks)),
        ]
        exited = asyncio.create_task(process.wait())
        cancelled = asyncio.create_task(handle._cancel_requested.wait())

        try:
            done, _ = await asyncio.wait(
                {exited, cancelled},
                timeout=max_duration,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if exited in done:
                reason = TerminationReason.COMPLETED
            else:
                reason = (
                    TerminationReason.CANCELLED
                    if cancelled in done
                    else TerminationReason.TIMED_OUT
                )
                logger.info(f"Stopping execution {handle.correlation_id}: {reason.value}")
                await self._terminate(process, exited)
        except asyncio.CancelledError:
            for reader in readers:
                reader.cancel()
            exited.cancel()
            raise
        finally:
            cancelled.cancel()

        await self._drain(handle, readers)

        exit_code = process.returncode if process.returncode is not None else -1
        error = None
        if reason == TerminationReason.COMPLETED and exit_code < 0:
            reason = TerminationReason.HOST_FAILURE
            error = f"Process terminated by signal {-exit_code}"
        elif reason == TerminationReason.TIMED_OUT:
            error = f"Exceeded maximum duration of {max_duration}s"
        return reason, exit_code, error

    async def _terminate(
        self,
        process: asyncio.subprocess.Process,
        exited: asyncio.Task,
    ) -> None:
        """Graceful stop, then kill once the grace period runs out."""
        self._signal(process, force=False)
        try:
            await asyncio.wait_for(asyncio.shield(exited), timeout=self._grace_period)
            return
        except TimeoutError:
            logger.warning(
                f"Process {process.pid} did not exit within {self._grace_period}s, killing"
            )

        self._signal(process, force=True)
        await exited

    def _signal(self, process: asyncio.subprocess.Process, force: bool) -> None:
        try:
            if os.name == "posix":
                os.killpg(process.pid, signal.SIGKILL if force else signal.SIGTERM)
            elif force:
                process.kill()
            else:
                process.terminate()
        except ProcessLookupError:
            pass  # Already exited
        except OSError as e:
            logger.warning(f"Failed to signal process {process.pid}: {e}")

    async def _drain(self, handle: ExecutionHandle, readers: list[asyncio.Task]) -> None:
        """Wait for both readers to reach end-of-stream."""
        _, pending = await asyncio.wait(readers, timeout=self._drain_timeout)
        if pending:
            # A detached child still holds the pipes open
            logger.warning(
                f"Output of {handle.correlation_id} still open {self._drain_timeout}s "
                f"after exit; closing readers"
            )
            for reader in pending:
                reader.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        kind: OutputStream,
        sink: OutputSink,
        transcript: _Transcript,
        failed_sinks: set[int],
    ) -> None:
        if stream is None:
            return

        async for raw in self._read_lines(stream, kind):
            line = raw.decode(self._encoding, errors="replace").rstrip("\r\n")
            event = parse_output_line(line, kind)
            transcript.add(line)

            try:
                await sink.emit(event)
            except Exception:
                if id(sink) not in failed_sinks:
                    failed_sinks.add(id(sink))
                    logger.exception("Output sink failed to accept an event")

    async def _read_lines(
        self,
        stream: asyncio.StreamReader,
        kind: OutputStream,
    ) -> AsyncIterator[bytes]:
        """Yield lines as they arrive. Lines over the stream limit are dropped whole."""
        buffer = bytearray()
        discarding = False

        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                if buffer and not discarding:
                    yield bytes(buffer)
                return

            buffer.extend(chunk)
            while True:
                end = buffer.find(b"\n")
                if end < 0:
                    break
                line = bytes(buffer[:end + 1])
                del buffer[:end + 1]
                if discarding:
                    discarding = False
                elif len(line) > self._stream_limit:
                    logger.warning(f"Dropped {kind.value} line longer than {self._stream_limit} bytes")
                else:
                    yield line

            if len(buffer) > self._stream_limit:
                if not discarding:
                    logger.warning(f"Dropped {kind.value} line longer than {self._stream_limit} bytes")
                    discarding = True
                buffer.clear()

    def _result(
        self,
        handle: ExecutionHandle,
        reason: TerminationReason,
        exit_code: int,
        error: str | None,
        start_time: datetime,
        started: float,
    ) -> ExecutionResult:
        return ExecutionResult(
            correlation_id=handle.correlation_id,
            success=reason == TerminationReason.COMPLETED and exit_code == 0,
            exit_code=exit_code,
            start_time=start_time,
            end_time=datetime.now(UTC),
            duration_ms=int((time.monotonic() - started) * 1000),
            termination_reason=reason,
            error=error,
        )

    async def _finalize(
        self,
        handle: ExecutionHandle,
        sink: OutputSink,
        result: ExecutionResult,
        stdout: _Transcript,
        stderr: _Transcript,
    ) -> ExecutionResult:
        logger.info(
            f"Execution {handle.correlation_id} of {handle.descriptor.id} finished: "
            f"{result.termination_reason.value} (exit={result.exit_code}, "
            f"duration={result.duration_ms}ms)"
        )

        entry = ExecutionHistoryEntry.from_result(
            result,
            tool_id=handle.descriptor.id,
            tool_name=handle.descriptor.name,
            machine=self._machine,
            user=self._user,
            parameters=handle.request.parameters,
            output=stdout.text(),
            error_output=stderr.text(),
        )
        try:
            await self._ledger.record(entry)
        except (OSError, ValueError) as e:
            logger.exception(f"Failed to record history for execution {handle.correlation_id}")
            self._ledger_failures += 1
            note = f"History not recorded: {e}"
            result = result.model_copy(
                update={"error": f"{result.error}; {note}" if result.error else note},
            )
        handle.result = result
        handle.state = result.termination_reason.as_state()

        try:
            await sink.close(result)
        except Exception:
            logger.exception("Output sink failed to accept the result")
        return result
