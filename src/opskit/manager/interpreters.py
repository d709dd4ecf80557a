"""Interpreter selection and command-line construction for artifacts.

The host never inspects script content; it only picks an interpreter from
the artifact's file suffix and renders parameters on the command line.
"""

from __future__ import annotations

import shutil
import sys
from dataclasses import dataclass
from pathlib import Path

from opskit.exceptions import HostFailureError


@dataclass(frozen=True)
class InterpreterSpec:
    """How to invoke one kind of artifact.

    Attributes:
        command: Executable and leading arguments; the artifact path follows
        parameter_style: "powershell" renders ``-Name value``,
            "gnu" renders ``--name value``
    """

    command: tuple[str, ...]
    parameter_style: str = "gnu"

    @property
    def executable(self) -> str:
        return self.command[0]

    def is_available(self) -> bool:
        """Whether the executable can be found (absolute path or on PATH)."""
        exe = self.executable
        if Path(exe).is_absolute():
            return Path(exe).is_file()
        return shutil.which(exe) is not None


DEFAULT_INTERPRETERS: dict[str, InterpreterSpec] = {
    ".ps1": InterpreterSpec(
        command=("pwsh", "-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass", "-File"),
        parameter_style="powershell",
    ),
    ".sh": InterpreterSpec(command=("bash",)),
    ".py": InterpreterSpec(command=(sys.executable, "-u")),
}


class InterpreterRegistry:
    """Maps artifact suffixes to interpreters, with configured overrides."""

    def __init__(self, overrides: dict[str, list[str]] | None = None) -> None:
        self._specs = dict(DEFAULT_INTERPRETERS)
        for suffix, command in (overrides or {}).items():
            if not command:
                continue
            suffix = suffix.lower() if suffix.startswith(".") else f".{suffix.lower()}"
            style = "powershell" if suffix == ".ps1" else "gnu"
            self._specs[suffix] = InterpreterSpec(command=tuple(command), parameter_style=style)

    def for_artifact(self, artifact_path: str | Path) -> InterpreterSpec:
        """Pick the interpreter for an artifact.

        Raises:
            HostFailureError: If no interpreter handles the artifact's suffix
        """
        suffix = Path(str(artifact_path)).suffix.lower()
        spec = self._specs.get(suffix)
        if spec is None:
            raise HostFailureError(
                f"No interpreter configured for '{suffix or artifact_path}' artifacts",
                remediation="Configure an interpreter for this artifact type.",
            )
        return spec


def render_parameters(spec: InterpreterSpec, parameters: dict[str, str]) -> list[str]:
    """Render parameters as command-line arguments in the interpreter's style."""
    args: list[str] = []
    for name, value in parameters.items():
        if spec.parameter_style == "powershell":
            args.extend([f"-{name}", value])
        else:
            args.extend([f"--{name}", value])
    return args


def build_command(
    spec: InterpreterSpec,
    script_path: Path,
    parameters: dict[str, str],
) -> list[str]:
    """Full argv for running ``script_path`` with ``parameters``."""
    return [*spec.command, str(script_path), *render_parameters(spec, parameters)]
