"""Phased service startup and outcome evaluation."""
from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from ..errors import ProvisioningError
from ..providers.base import ContainerEngine
from .health import HealthMonitor, HealthReport
from .services import DEFAULT_SERVICES, ServiceDefinition, Tier, services_by_tier

LOGGER = logging.getLogger(__name__)


class StartupOutcome(str, Enum):
    """How a startup run ended."""

    SUCCESS = "success"
    DEGRADED = "degraded"
    FAILED = "failed"
    INTERRUPTED = "interrupted"

    @property
    def needs_rollback(self) -> bool:
        """Return ``True`` for outcomes that trigger compensation."""
        return self in {StartupOutcome.FAILED, StartupOutcome.INTERRUPTED}


def evaluate_startup(
    ready: Iterable[str],
    services: Sequence[ServiceDefinition] = DEFAULT_SERVICES,
) -> StartupOutcome:
    """Return the outcome for the set of *ready* services.

    Every service ready is SUCCESS. The core (the whole data tier plus at least
    one application or edge service) being ready is DEGRADED. Anything less is
    FAILED.
    """
    ready_set = set(ready)
    names = {service.name for service in services}
    if names and names <= ready_set:
        return StartupOutcome.SUCCESS
    data = {service.name for service in services if service.tier is Tier.DATA}
    upper = {service.name for service in services if service.tier is not Tier.DATA}
    if data <= ready_set and ready_set & upper:
        return StartupOutcome.DEGRADED
    return StartupOutcome.FAILED


@dataclass(frozen=True)
class StartupReport:
    """Result of :meth:`StartupOrchestrator.start`."""

    outcome: StartupOutcome
    started: tuple[str, ...]
    health: HealthReport | None = None
    errors: tuple[str, ...] = field(default_factory=tuple)

    @property
    def not_ready(self) -> tuple[str, ...]:
        """Return services that did not become healthy."""
        if self.health is None:
            return self.started
        return self.health.not_ready

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "outcome": self.outcome.value,
            "started": list(self.started),
            "not_ready": list(self.not_ready),
            "health": self.health.to_dict() if self.health else None,
            "errors": list(self.errors),
        }


class StartupOrchestrator:
    """Start services tier by tier, then hand over to the health monitor."""

    def __init__(
        self,
        engine: ContainerEngine,
        monitor: HealthMonitor,
        services: Sequence[ServiceDefinition] = DEFAULT_SERVICES,
    ) -> None:
        """Store the engine, the monitor and the service catalogue."""
        self._engine = engine
        self._monitor = monitor
        self._services = tuple(services)

    def start(self) -> StartupReport:
        """Dispatch every tier in order and evaluate the resulting health."""
        started: list[str] = []
        for tier, members in services_by_tier(self._services):
            names = [service.name for service in members]
            LOGGER.info("Starting %s tier: %s", tier.value, ", ".join(names))
            # The engine may have created some containers before failing.
            started.extend(names)
            try:
                self._engine.start_services(names)
            except KeyboardInterrupt:
                LOGGER.warning("Startup interrupted while starting the %s tier.", tier.value)
                return StartupReport(StartupOutcome.INTERRUPTED, tuple(started))
            except ProvisioningError as exc:
                LOGGER.error("Starting the %s tier failed: %s", tier.value, exc)
                return StartupReport(
                    StartupOutcome.FAILED,
                    tuple(started),
                    errors=(str(exc),),
                )

        health = self._monitor.watch(self._services)
        if health.interrupted:
            return StartupReport(StartupOutcome.INTERRUPTED, tuple(started), health)
        outcome = evaluate_startup(health.healthy, self._services)
        errors = tuple(
            f"{name}: {health.details.get(name, health.states[name].value)}"
            for name in health.not_ready
        )
        LOGGER.info("Startup finished: %s", outcome.value)
        return StartupReport(outcome, tuple(started), health, errors)


__all__ = [
    "StartupOrchestrator",
    "StartupOutcome",
    "StartupReport",
    "evaluate_startup",
]
