"""Error taxonomy shared by the provisioning engine.

Every error that can reach the operator carries a ``remediation`` hint naming
the flag or manual step that resolves it, plus the exit code the CLI should
terminate with.
"""
from __future__ import annotations

from .exit_codes import ExitCode


class ProvisioningError(RuntimeError):
    """Base class for failures surfaced by the provisioning engine."""

    exit_code: ExitCode = ExitCode.PROVIDER

    def __init__(self, message: str, *, remediation: str | None = None) -> None:
        """Store the message alongside an optional remediation hint."""
        super().__init__(message)
        self.remediation = remediation

    def describe(self) -> str:
        """Return the message followed by the remediation, when present."""
        message = str(self)
        if self.remediation:
            return f"{message}\nHint: {self.remediation}"
        return message


class ValidationError(ProvisioningError):
    """Raised for malformed descriptors or invalid domain/email/token input."""

    exit_code = ExitCode.VALIDATION


class ConflictError(ProvisioningError):
    """Raised for unowned port collisions or unresolved credential mismatches."""

    exit_code = ExitCode.CONFLICT


class ExternalToolError(ProvisioningError):
    """Raised when the container engine is unreachable or a command fails."""

    exit_code = ExitCode.PROVIDER


class OperationTimeoutError(ProvisioningError):
    """Raised when a health or probe bound is exceeded."""

    exit_code = ExitCode.TIMEOUT


class PrivilegeError(ProvisioningError):
    """Raised when the caller lacks privileges for a teardown operation."""

    exit_code = ExitCode.ENVIRONMENT


__all__ = [
    "ConflictError",
    "ExternalToolError",
    "OperationTimeoutError",
    "PrivilegeError",
    "ProvisioningError",
    "ValidationError",
]
