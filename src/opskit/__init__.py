"""OpsKit - artifact cache and sandboxed execution engine for admin scripts."""

__version__ = "2.0.0"

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

__all__ = [
    "__version__",
    "AlreadyRunningError",
    "CatalogError",
    "HostFailureError",
    "IntegrityError",
    "NetworkError",
    "OpsKitError",
    "PrivilegeError",
    "ToolNotFoundError",
]
