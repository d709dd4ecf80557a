"""Custom exceptions for OpsKit.

Every error carries a remediation hint where one exists so the shell can
present actionable text instead of raw failure codes.
"""


class OpsKitError(Exception):
    """Base class for all OpsKit errors."""

    default_remediation: str | None = None

    def __init__(self, message: str, remediation: str | None = None) -> None:
        self.message = message
        self.remediation = remediation or self.default_remediation
        super().__init__(message)

    def to_dict(self) -> dict[str, str | None]:
        """Convert to dictionary for API responses."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "remediation": self.remediation,
        }


class NetworkError(OpsKitError):
    """Raised when the catalog or an artifact cannot be fetched."""

    default_remediation = "Check network connectivity and retry."

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        remediation: str | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(message, remediation)


class IntegrityError(OpsKitError):
    """Raised when an artifact does not match its expected checksum."""

    default_remediation = "Re-download the artifact."

    def __init__(
        self,
        artifact_path: str,
        message: str | None = None,
        remediation: str | None = None,
    ) -> None:
        self.artifact_path = artifact_path
        super().__init__(
            message or f"Checksum mismatch for {artifact_path}",
            remediation,
        )


class PrivilegeError(OpsKitError):
    """Raised when a tool needs elevation the current process lacks."""

    default_remediation = "Restart OpsKit elevated (as administrator)."


class AlreadyRunningError(OpsKitError):
    """Raised when an execution is started while another is active."""

    default_remediation = "Wait for the active execution to finish or cancel it."

    def __init__(self, active_correlation_id: str) -> None:
        self.active_correlation_id = active_correlation_id
        super().__init__(
            f"Execution {active_correlation_id} is still active"
        )


class HostFailureError(OpsKitError):
    """Raised when the execution host cannot be prepared to run a tool."""

    default_remediation = "Install the required interpreter and retry."


class CatalogError(OpsKitError):
    """Raised when the remote manifest is malformed."""

    default_remediation = "Refresh the catalog; report the problem if it persists."


class ToolNotFoundError(OpsKitError):
    """Raised when a tool id is not present in the catalog."""

    default_remediation = "Refresh the catalog."

    def __init__(self, tool_id: str) -> None:
        self.tool_id = tool_id
        super().__init__(f"Tool not found in catalog: {tool_id}")
