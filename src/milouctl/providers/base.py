"""Capability interface for the external container engine."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True, slots=True)
class ContainerState:
    """Process state reported by the engine for one container."""

    name: str
    status: str
    health: str = ""

    @property
    def exists(self) -> bool:
        """Return ``True`` unless the container is missing."""
        return self.status != "missing"

    @classmethod
    def missing(cls, name: str) -> ContainerState:
        """Return the state used for containers the engine does not know."""
        return cls(name=name, status="missing", health="")


@dataclass(frozen=True, slots=True)
class ExecResult:
    """Outcome of a command executed inside a container."""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Return ``True`` when the command exited successfully."""
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Return stderr and stdout combined for diagnostics."""
        return "\n".join(part for part in (self.stderr.strip(), self.stdout.strip()) if part)


@runtime_checkable
class ContainerEngine(Protocol):
    """Operations milouctl needs from a container engine."""

    def ping(self) -> str:
        """Return the engine server version, raising when unreachable."""

    def list_containers(self, prefix: str, *, include_stopped: bool = True) -> list[str]:
        """Return container names starting with *prefix*."""

    def running_containers(self, prefix: str) -> list[str]:
        """Return running container names starting with *prefix*."""

    def container_state(self, name: str) -> ContainerState:
        """Return the process/health state for *name*."""

    def container_logs(self, name: str, *, tail: int = 50) -> str:
        """Return recent log output for *name*."""

    def list_volumes(self, prefix: str) -> list[str]:
        """Return volume names starting with *prefix*."""

    def volume_exists(self, name: str) -> bool:
        """Return ``True`` when the named volume exists."""

    def volume_usage_kb(self, name: str, *, image: str, timeout: float) -> int:
        """Return the disk usage of a volume in KiB."""

    def list_networks(self, prefix: str) -> list[str]:
        """Return network names starting with *prefix*."""

    def port_publishers(self, port: int) -> list[str]:
        """Return container names publishing host *port*."""

    def start_services(self, services: Sequence[str]) -> None:
        """Start the given compose services (the engine may start them concurrently)."""

    def stop_services(self, services: Sequence[str]) -> None:
        """Stop the given compose services."""

    def start_containers(self, names: Sequence[str]) -> None:
        """Start existing containers by name."""

    def down(self, *, remove_volumes: bool = False) -> None:
        """Stop and remove the compose project."""

    def remove_volumes(self, names: Sequence[str]) -> None:
        """Remove the named volumes."""

    def run_detached(
        self,
        name: str,
        image: str,
        *,
        env: Mapping[str, str],
        volumes: Mapping[str, str],
    ) -> None:
        """Run an ephemeral detached container."""

    def exec(
        self,
        name: str,
        command: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        """Execute *command* inside container *name*."""

    def remove_container(self, name: str) -> None:
        """Force-remove container *name*, ignoring missing containers."""


__all__ = ["ContainerEngine", "ContainerState", "ExecResult"]
