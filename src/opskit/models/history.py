"""Execution history models."""

from datetime import datetime
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from opskit.models.execution import ExecutionResult, TerminationReason


class ExecutionHistoryEntry(BaseModel):
    """Persisted snapshot of one execution outcome. Append-only."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    correlation_id: str
    tool_id: str
    tool_name: str
    machine: str
    user: str
    success: bool
    exit_code: int
    start_time: datetime
    end_time: datetime
    duration_ms: int
    termination_reason: TerminationReason
    parameters: dict[str, str] = Field(default_factory=dict)
    output: str = ""
    error_output: str = ""
    error: str | None = None

    @classmethod
    def from_result(
        cls,
        result: ExecutionResult,
        tool_id: str,
        tool_name: str,
        machine: str,
        user: str,
        parameters: dict[str, str] | None = None,
        output: str = "",
        error_output: str = "",
    ) -> "ExecutionHistoryEntry":
        """Build a history entry from a terminal execution result."""
        return cls(
            correlation_id=result.correlation_id,
            tool_id=tool_id,
            tool_name=tool_name,
            machine=machine,
            user=user,
            success=result.success,
            exit_code=result.exit_code,
            start_time=result.start_time,
            end_time=result.end_time,
            duration_ms=result.duration_ms,
            termination_reason=result.termination_reason,
            parameters=dict(parameters or {}),
            output=output,
            error_output=error_output,
            error=result.error,
        )


class HistoryFilter(BaseModel):
    """Criteria for querying the ledger. Results are newest first."""

    tool_id: str | None = None
    success: bool | None = None
    termination_reason: TerminationReason | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int | None = Field(default=None, ge=1)

    def matches(self, entry: ExecutionHistoryEntry) -> bool:
        if self.tool_id is not None and entry.tool_id != self.tool_id:
            return False
        if self.success is not None and entry.success != self.success:
            return False
        if (
            self.termination_reason is not None
            and entry.termination_reason != self.termination_reason
        ):
            return False
        if self.since is not None and entry.start_time < self.since:
            return False
        if self.until is not None and entry.start_time > self.until:
            return False
        return True


class ToolUsage(BaseModel):
    """Per-tool usage summary derived from the ledger."""

    tool_id: str
    tool_name: str
    runs: int = 0
    successes: int = 0
    last_run: datetime | None = None

    @property
    def success_rate(self) -> float:
        return self.successes / self.runs if self.runs else 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "tool_id": self.tool_id,
            "tool_name": self.tool_name,
            "runs": self.runs,
            "successes": self.successes,
            "success_rate": self.success_rate,
            "last_run": self.last_run.isoformat() if self.last_run else None,
        }
