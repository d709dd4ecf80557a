"""Execution request, state and result models."""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class ExecutionState(str, Enum):
    """Lifecycle state of one execution."""

    PENDING = "pending"
    STARTING = "starting"  # Resolving artifacts and spawning
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    HOST_FAILURE = "host_failure"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({
    ExecutionState.COMPLETED,
    ExecutionState.CANCELLED,
    ExecutionState.TIMED_OUT,
    ExecutionState.HOST_FAILURE,
})


class TerminationReason(str, Enum):
    """Why an execution reached its terminal state."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    HOST_FAILURE = "host_failure"

    def as_state(self) -> ExecutionState:
        """Map to the terminal execution state of the same name."""
        return ExecutionState(self.value)


class OutputStream(str, Enum):
    """Channel an output line arrived on."""

    STDOUT = "stdout"
    STDERR = "stderr"
    PROGRESS = "progress"


class ExecutionRequest(BaseModel):
    """Request to run one tool."""

    model_config = ConfigDict(frozen=True)

    tool_id: str
    parameters: dict[str, str] = Field(default_factory=dict)
    correlation_id: str = Field(default_factory=lambda: str(uuid4()))


class OutputEvent(BaseModel):
    """A single line delivered to an output sink."""

    model_config = ConfigDict(frozen=True)

    stream: OutputStream
    line: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    percent: int | None = None  # Only set on progress events


class ExecutionResult(BaseModel):
    """Terminal outcome of one execution. Written once to the ledger."""

    model_config = ConfigDict(frozen=True)

    correlation_id: str
    success: bool
    exit_code: int
    start_time: datetime
    end_time: datetime
    duration_ms: int
    termination_reason: TerminationReason
    error: str | None = None


class ExecutionSubmit(BaseModel):
    """API body for starting an execution."""

    tool_id: str
    parameters: dict[str, str] = Field(default_factory=dict)
    correlation_id: str | None = None
    max_duration_seconds: float | None = Field(default=None, gt=0)

    def to_request(self) -> ExecutionRequest:
        if self.correlation_id:
            return ExecutionRequest(
                tool_id=self.tool_id,
                parameters=self.parameters,
                correlation_id=self.correlation_id,
            )
        return ExecutionRequest(tool_id=self.tool_id, parameters=self.parameters)
