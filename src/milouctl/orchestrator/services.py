"""Service catalogue and tier ordering for startup."""
from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum


class Tier(str, Enum):
    """Startup tiers, dispatched strictly in declaration order."""

    DATA = "data"
    APPLICATION = "application"
    EDGE = "edge"


TIER_ORDER: tuple[Tier, ...] = (Tier.DATA, Tier.APPLICATION, Tier.EDGE)


@dataclass(frozen=True, slots=True)
class ServiceDefinition:
    """One compose service and the optional application-level readiness signal.

    ``port_name`` refers to an entry of the port assignment. With ``http_path``
    set the port is probed over HTTP, otherwise a TCP connect suffices.
    ``log_pattern`` is a regular expression searched in recent log output.
    """

    name: str
    tier: Tier
    port_name: str | None = None
    http_path: str | None = None
    log_pattern: str | None = None

    def container_name(self, project: str) -> str:
        """Return the container name used by the compose project."""
        return f"{project}-{self.name}"

    @property
    def has_signal(self) -> bool:
        """Return ``True`` when an application-level check is configured."""
        return bool(self.port_name or self.log_pattern)


DEFAULT_SERVICES: tuple[ServiceDefinition, ...] = (
    ServiceDefinition(
        "database",
        Tier.DATA,
        log_pattern=r"database system is ready to accept connections",
    ),
    ServiceDefinition("redis", Tier.DATA),
    ServiceDefinition("rabbitmq", Tier.DATA),
    ServiceDefinition("backend", Tier.APPLICATION, port_name="backend"),
    ServiceDefinition("engine", Tier.APPLICATION),
    ServiceDefinition("frontend", Tier.EDGE),
    ServiceDefinition("nginx", Tier.EDGE, port_name="http", http_path="/"),
)


def services_by_tier(
    services: Iterable[ServiceDefinition],
) -> list[tuple[Tier, tuple[ServiceDefinition, ...]]]:
    """Group *services* by tier in startup order, skipping empty tiers."""
    items = list(services)
    grouped: list[tuple[Tier, tuple[ServiceDefinition, ...]]] = []
    for tier in TIER_ORDER:
        members = tuple(service for service in items if service.tier is tier)
        if members:
            grouped.append((tier, members))
    return grouped


def service_names(services: Sequence[ServiceDefinition]) -> tuple[str, ...]:
    """Return the names of *services* in order."""
    return tuple(service.name for service in services)


__all__ = [
    "DEFAULT_SERVICES",
    "ServiceDefinition",
    "TIER_ORDER",
    "Tier",
    "service_names",
    "services_by_tier",
]
