"""Port conflict resolution for the published service ports."""
from __future__ import annotations

import logging
import socket
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from .config import PortRule
from .errors import ConflictError, ProvisioningError
from .providers.base import ContainerEngine

LOGGER = logging.getLogger(__name__)


class PortProbe(Protocol):
    """Answer whether a local TCP port is already taken."""

    def in_use(self, port: int) -> bool:
        """Return ``True`` when something is listening on *port*."""


@dataclass(frozen=True, slots=True)
class SocketPortProbe:
    """Detect listeners by attempting a loopback TCP connection."""

    host: str = "127.0.0.1"
    timeout: float = 0.5

    def in_use(self, port: int) -> bool:
        """Return ``True`` when a connection to *port* succeeds."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(self.timeout)
            return sock.connect_ex((self.host, port)) == 0


class PortSource(str, Enum):
    """How a port in the assignment was chosen."""

    DEFAULT = "default"
    OWNED = "owned"
    ALTERNATE = "alternate"


@dataclass(frozen=True, slots=True)
class PortEntry:
    """Resolved port for one logical service."""

    name: str
    port: int
    source: PortSource
    occupant: str | None = None


@dataclass(frozen=True, slots=True)
class PortAssignment:
    """Injective mapping of logical service names to host ports."""

    entries: tuple[PortEntry, ...]

    def __post_init__(self) -> None:
        """Reject assignments where two names share a port."""
        seen: dict[int, str] = {}
        for entry in self.entries:
            if entry.port in seen:
                raise ConflictError(
                    f"Ports for '{seen[entry.port]}' and '{entry.name}' both resolve to "
                    f"{entry.port}.",
                    remediation="Give each service a distinct port in the ports configuration.",
                )
            seen[entry.port] = entry.name

    def __iter__(self) -> Iterator[PortEntry]:
        """Iterate over entries in table order."""
        return iter(self.entries)

    def __getitem__(self, name: str) -> int:
        """Return the port assigned to *name*."""
        for entry in self.entries:
            if entry.name == name:
                return entry.port
        raise KeyError(name)

    def get(self, name: str, default: int | None = None) -> int | None:
        """Return the port for *name* or *default*."""
        try:
            return self[name]
        except KeyError:
            return default

    def as_dict(self) -> dict[str, int]:
        """Return the assignment as a plain mapping."""
        return {entry.name: entry.port for entry in self.entries}

    @property
    def reassigned(self) -> tuple[PortEntry, ...]:
        """Return entries moved to their alternate port."""
        return tuple(entry for entry in self.entries if entry.source is PortSource.ALTERNATE)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            entry.name: {
                "port": entry.port,
                "source": entry.source.value,
                "occupant": entry.occupant,
            }
            for entry in self.entries
        }


@dataclass(frozen=True, slots=True)
class PortResolution:
    """Assignment plus the warnings emitted while resolving it."""

    assignment: PortAssignment
    warnings: tuple[str, ...] = ()


class PortConflictResolver:
    """Probe the port table and move unowned conflicts to documented alternates.

    The alternate for each name is fixed, so repeated runs against the same
    host state always produce the same assignment.
    """

    def __init__(
        self,
        rules: Mapping[str, PortRule],
        *,
        probe: PortProbe,
        engine: ContainerEngine | None,
        container_prefix: str,
    ) -> None:
        """Store the port table and the collaborators used to probe it."""
        self._rules = dict(rules)
        self._probe = probe
        self._engine = engine
        self._container_prefix = container_prefix

    def resolve(self) -> PortResolution:
        """Return a fresh, injective :class:`PortResolution`."""
        entries: list[PortEntry] = []
        warnings: list[str] = []
        taken: dict[int, str] = {}
        defaults = {rule.default: name for name, rule in self._rules.items()}

        for name, rule in self._rules.items():
            entry = self._resolve_one(name, rule, warnings)
            holder = taken.get(entry.port)
            reserved_by = defaults.get(entry.port)
            if holder is not None or (
                entry.source is PortSource.ALTERNATE and reserved_by not in (None, name)
            ):
                other = holder or reserved_by
                raise ConflictError(
                    f"Alternate port {entry.port} for '{name}' collides with '{other}'.",
                    remediation=(
                        f"Set MILOUCTL_PORTS__{name.upper()}__ALTERNATE to an unused port "
                        f"or free port {rule.default}."
                    ),
                )
            taken[entry.port] = name
            entries.append(entry)

        return PortResolution(PortAssignment(tuple(entries)), tuple(warnings))

    def _resolve_one(self, name: str, rule: PortRule, warnings: list[str]) -> PortEntry:
        if not self._probe.in_use(rule.default):
            return PortEntry(name, rule.default, PortSource.DEFAULT)

        owner = self._owned_publisher(rule.default)
        if owner is not None:
            LOGGER.debug("Port %s is held by our container %s; reusing it.", rule.default, owner)
            return PortEntry(name, rule.default, PortSource.OWNED, occupant=owner)

        if self._probe.in_use(rule.alternate) and self._owned_publisher(rule.alternate) is None:
            raise ConflictError(
                f"Port {rule.default} for '{name}' is in use and its alternate "
                f"{rule.alternate} is also taken.",
                remediation=(
                    f"Free port {rule.default} or {rule.alternate}, or set "
                    f"MILOUCTL_PORTS__{name.upper()}__ALTERNATE to an unused port."
                ),
            )
        message = (
            f"Port {rule.default} for '{name}' is in use by another process; "
            f"using alternate port {rule.alternate}."
        )
        LOGGER.warning(message)
        warnings.append(message)
        return PortEntry(name, rule.alternate, PortSource.ALTERNATE)

    def _owned_publisher(self, port: int) -> str | None:
        if self._engine is None:
            return None
        try:
            publishers = self._engine.port_publishers(port)
        except ProvisioningError as exc:
            LOGGER.debug("Could not query publishers of port %s: %s", port, exc)
            return None
        for publisher in publishers:
            if publisher.startswith(self._container_prefix):
                return publisher
        return None


__all__ = [
    "PortAssignment",
    "PortConflictResolver",
    "PortEntry",
    "PortProbe",
    "PortResolution",
    "PortSource",
    "SocketPortProbe",
]
