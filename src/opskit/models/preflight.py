"""Pre-flight check models."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PreflightStatus(str, Enum):
    """Outcome of a single pre-flight check."""

    PASS = "pass"
    WARN = "warn"  # Advisory only
    BLOCK = "block"  # Execution must not start


class RemediationAction(str, Enum):
    """Action the shell can offer to resolve a failed check."""

    NONE = "none"
    REDOWNLOAD = "redownload"
    RESTART_ELEVATED = "restart_elevated"
    CHECK_CONNECTIVITY = "check_connectivity"
    INSTALL_INTERPRETER = "install_interpreter"


class PreflightCheck(BaseModel):
    """Result of one readiness test."""

    model_config = ConfigDict(frozen=True)

    name: str
    status: PreflightStatus
    message: str = ""
    remediation: str | None = None
    action: RemediationAction = RemediationAction.NONE


class PreflightReport(BaseModel):
    """Ordered checklist produced for one tool."""

    model_config = ConfigDict(frozen=True)

    tool_id: str
    checks: tuple[PreflightCheck, ...] = Field(default_factory=tuple)

    @property
    def blocking_checks(self) -> list[PreflightCheck]:
        return [c for c in self.checks if c.status == PreflightStatus.BLOCK]

    @property
    def warnings(self) -> list[PreflightCheck]:
        return [c for c in self.checks if c.status == PreflightStatus.WARN]

    @property
    def blocked(self) -> bool:
        return bool(self.blocking_checks)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "tool_id": self.tool_id,
            "blocked": self.blocked,
            "checks": [c.model_dump(mode="json") for c in self.checks],
        }
