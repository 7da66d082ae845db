"""Health monitoring for services started by the orchestrator."""
from __future__ import annotations

import logging
import re
import time
import urllib.error
import urllib.request
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from ..config import HealthConfig
from ..errors import ProvisioningError
from ..ports import PortAssignment, PortProbe, SocketPortProbe
from ..providers.base import ContainerEngine, ContainerState
from ..retry import RetryPolicy
from .services import ServiceDefinition

LOGGER = logging.getLogger(__name__)

HttpStatus = Callable[[str], int | None]


class ServiceHealth(str, Enum):
    """Per-service health during one startup run."""

    UNKNOWN = "unknown"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    FAILED = "failed"


_TERMINAL = frozenset({ServiceHealth.HEALTHY, ServiceHealth.FAILED})


def classify_container(state: ContainerState) -> ServiceHealth | None:
    """Map a process state onto :class:`ServiceHealth`.

    ``None`` means the process looks ready and only the application-level
    signal (if any) remains to be checked. ``restarting`` maps to UNHEALTHY;
    the monitor escalates it to FAILED once the restart grace expires.
    """
    status = state.status.lower()
    health = state.health.lower()
    if status == "missing":
        return ServiceHealth.UNKNOWN
    if status in {"exited", "dead"}:
        return ServiceHealth.FAILED
    if status == "restarting":
        return ServiceHealth.UNHEALTHY
    if status != "running":
        return ServiceHealth.STARTING
    if health == "starting":
        return ServiceHealth.STARTING
    if health == "unhealthy":
        return ServiceHealth.UNHEALTHY
    return None


def http_status(url: str, timeout: float = 3.0) -> int | None:
    """Return the HTTP status for a GET of *url*, or ``None`` when unreachable."""
    request = urllib.request.Request(url, method="GET")
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:  # noqa: S310
            return int(response.status)
    except urllib.error.HTTPError as exc:
        return int(exc.code)
    except (urllib.error.URLError, OSError, ValueError):
        return None


@dataclass(frozen=True)
class HealthReport:
    """Final per-service health and how monitoring ended."""

    states: dict[str, ServiceHealth]
    elapsed: float
    timed_out: bool = False
    interrupted: bool = False
    details: dict[str, str] = field(default_factory=dict)

    @property
    def healthy(self) -> tuple[str, ...]:
        """Return services that reached HEALTHY."""
        return tuple(name for name, value in self.states.items() if value is ServiceHealth.HEALTHY)

    @property
    def not_ready(self) -> tuple[str, ...]:
        """Return services that did not reach HEALTHY."""
        return tuple(
            name for name, value in self.states.items() if value is not ServiceHealth.HEALTHY
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "states": {name: value.value for name, value in self.states.items()},
            "elapsed": round(self.elapsed, 2),
            "timed_out": self.timed_out,
            "interrupted": self.interrupted,
            "details": dict(self.details),
        }


class HealthMonitor:
    """Poll services at a fixed interval under one overall timeout."""

    def __init__(
        self,
        engine: ContainerEngine,
        config: HealthConfig,
        *,
        project: str,
        ports: PortAssignment | None = None,
        probe: PortProbe | None = None,
        http_get: HttpStatus = http_status,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Store the engine, bounds and readiness probes."""
        self._engine = engine
        self._config = config
        self._project = project
        self._ports = ports
        self._probe = probe or SocketPortProbe()
        self._http_get = http_get
        self._clock = clock
        self._sleep = sleep

    def watch(self, services: Sequence[ServiceDefinition]) -> HealthReport:
        """Poll *services* until all are terminal, the timeout passes or an interrupt."""
        states = {service.name: ServiceHealth.UNKNOWN for service in services}
        details: dict[str, str] = {}
        restarting_since: dict[str, float] = {}

        def poll() -> bool | None:
            for service in services:
                if states[service.name] in _TERMINAL:
                    continue
                states[service.name] = self._assess(service, restarting_since, details)
            if all(value in _TERMINAL for value in states.values()):
                return True
            return None

        policy = RetryPolicy(
            interval=self._config.interval,
            timeout=self._config.timeout,
            clock=self._clock,
            sleep=self._sleep,
        )
        outcome = policy.run(poll)
        for name, value in states.items():
            LOGGER.debug("Service %s finished monitoring as %s", name, value.value)
        return HealthReport(
            states=dict(states),
            elapsed=outcome.elapsed,
            timed_out=outcome.timed_out,
            interrupted=outcome.interrupted,
            details=details,
        )

    def _assess(
        self,
        service: ServiceDefinition,
        restarting_since: dict[str, float],
        details: dict[str, str],
    ) -> ServiceHealth:
        container = service.container_name(self._project)
        try:
            state = self._engine.container_state(container)
        except ProvisioningError as exc:
            details[service.name] = str(exc)
            return ServiceHealth.UNKNOWN

        mapped = classify_container(state)
        if state.status.lower() == "restarting":
            first_seen = restarting_since.setdefault(service.name, self._clock())
            if self._clock() - first_seen >= self._config.restart_grace:
                details[service.name] = "container kept restarting"
                return ServiceHealth.FAILED
            return ServiceHealth.UNHEALTHY
        restarting_since.pop(service.name, None)
        if mapped is not None:
            if mapped is ServiceHealth.FAILED:
                details[service.name] = f"container {state.status}"
            return mapped
        if not service.has_signal:
            return ServiceHealth.HEALTHY
        if self._signal_passes(service, container, details):
            return ServiceHealth.HEALTHY
        return ServiceHealth.STARTING

    def _signal_passes(
        self,
        service: ServiceDefinition,
        container: str,
        details: dict[str, str],
    ) -> bool:
        if service.port_name:
            port = self._ports.get(service.port_name) if self._ports else None
            if port is not None:
                if service.http_path:
                    status = self._http_get(f"http://127.0.0.1:{port}{service.http_path}")
                    if status is None or status >= 500:
                        details[service.name] = f"HTTP probe on port {port} returned {status}"
                        return False
                elif not self._probe.in_use(port):
                    details[service.name] = f"port {port} not reachable"
                    return False
        if service.log_pattern:
            try:
                logs = self._engine.container_logs(container, tail=200)
            except ProvisioningError as exc:
                details[service.name] = str(exc)
                return False
            if not re.search(service.log_pattern, logs):
                details[service.name] = "readiness message not seen in logs yet"
                return False
        details.pop(service.name, None)
        return True


__all__ = [
    "HealthMonitor",
    "HealthReport",
    "ServiceHealth",
    "classify_container",
    "http_status",
]
